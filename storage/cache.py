"""Persistent key-value cache over durable local storage."""
from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from core.logs import get_logger
from core.settings import CACHE_KEYS
from models.cache_entry import CacheEntry
from storage.db import get_session
from utils.datetime_utils import utc_now


logger = get_logger("cache")


def data_key(identity: str) -> str:
    """Cache key holding the full record array of ``identity``."""

    return f"{CACHE_KEYS.data_prefix}{identity}"


def _deserialise(key: str, payload: Optional[str]) -> Any:
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Ignoring corrupt cache entry %s", key)
        return None


class CachePort:
    """Interface every cache substrate implements. Values are JSON-serialisable."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class SQLiteCache(CachePort):
    """Cache stored as JSON text in the ``cacheentry`` table."""

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        with self._session_factory() as session:
            row = session.get(CacheEntry, key)
            value = _deserialise(key, row.value if row else None)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self._session_factory() as session:
            row = session.get(CacheEntry, key)
            if row is None:
                row = CacheEntry(key=key, value=payload)
            else:
                row.value = payload
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def delete(self, key: str) -> None:
        with self._session_factory() as session:
            row = session.get(CacheEntry, key)
            if row:
                session.delete(row)
                session.commit()


class MemoryCache(CachePort):
    """Dict-backed cache; values are round-tripped through JSON like the real one."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        value = _deserialise(key, self._data.get(key))
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


__all__ = ["CachePort", "SQLiteCache", "MemoryCache", "data_key"]
