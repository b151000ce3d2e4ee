"""Utilities for working with RFC3339 timestamps and UTC datetimes."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Union

UTC = timezone.utc


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        if "+" in tail:
            frac, tz = tail.split("+", 1)
            sign = "+"
        elif "-" in tail:
            frac, tz = tail.split("-", 1)
            sign = "-"
        else:
            frac, tz = tail, "00:00"
            sign = "+"
        frac = (frac + "000000")[:6]
        value = f"{head}.{frac}{sign}{tz}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def to_rfc3339_utc(dt: Optional[Union[datetime, str]]) -> Optional[str]:
    """Convert a datetime (or string) to RFC3339 in UTC with millisecond precision."""

    if dt is None:
        return None
    if isinstance(dt, str):
        dt = parse_rfc3339(dt)
    if dt is None:
        return None
    dt = ensure_utc(dt)
    millis = dt.microsecond // 1000
    return dt.replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%S") + f".{millis:03d}Z"


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def now_rfc3339() -> str:
    return to_rfc3339_utc(utc_now())


def today_iso(today: Optional[date] = None) -> str:
    """Calendar date in ``YYYY-MM-DD`` form, used for study start defaults."""

    return (today or utc_now().date()).isoformat()


def latest_timestamp(previous: Optional[str], candidate: str) -> str:
    """Return ``candidate`` unless ``previous`` is later (clock moved backwards)."""

    prev_dt = parse_rfc3339(previous)
    cand_dt = parse_rfc3339(candidate)
    if prev_dt and cand_dt and prev_dt > cand_dt:
        return previous  # type: ignore[return-value]
    return candidate


__all__ = [
    "UTC",
    "ensure_utc",
    "latest_timestamp",
    "now_rfc3339",
    "parse_rfc3339",
    "to_rfc3339_utc",
    "today_iso",
    "utc_now",
]
