"""The tracked entity and its wire/cache representation."""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from core.errors import MalformedResponseError
from utils.datetime_utils import today_iso


class RecordStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, value: Any) -> "RecordStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(f"Unsupported status: {value!r}") from None


DIFFICULTIES = {"beginner", "intermediate", "advanced"}

# python attribute -> wire key
_WIRE_KEYS = {
    "id": "id",
    "title": "title",
    "description": "description",
    "status": "status",
    "notes": "notes",
    "category": "category",
    "difficulty": "difficulty",
    "resources": "resources",
    "study_start_date": "studyStartDate",
    "study_end_date": "studyEndDate",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}
_ATTRS = {wire: attr for attr, wire in _WIRE_KEYS.items()}
MUTABLE_FIELDS = frozenset(key for key in _ATTRS if key not in ("id", "createdAt", "updatedAt"))


@dataclass
class Record:
    id: int
    title: str
    description: str = ""
    status: RecordStatus = RecordStatus.NOT_STARTED
    notes: str = ""
    category: Optional[str] = None
    difficulty: Optional[str] = None
    resources: List[str] = field(default_factory=list)
    study_start_date: Optional[str] = None
    study_end_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Record":
        """Build a record from its camelCase form; raise on a broken payload."""

        if not isinstance(data, Mapping):
            raise MalformedResponseError(f"Record payload must be an object, got {type(data).__name__}")
        raw_id = data.get("id")
        if (
            isinstance(raw_id, bool)
            or not isinstance(raw_id, (int, float))
            or not math.isfinite(raw_id)
            or int(raw_id) != raw_id
        ):
            raise MalformedResponseError(f"Record id must be an integer, got {raw_id!r}")
        title = data.get("title")
        if not isinstance(title, str):
            raise MalformedResponseError(f"Record {raw_id} has no title")
        try:
            status = RecordStatus.parse(data.get("status") or RecordStatus.NOT_STARTED.value)
        except ValueError as exc:
            raise MalformedResponseError(f"Record {raw_id}: {exc}") from exc

        resources = data.get("resources") or []
        if not isinstance(resources, list):
            resources = [str(resources)]

        return cls(
            id=int(raw_id),
            title=title,
            description=data.get("description") or "",
            status=status,
            notes=data.get("notes") or "",
            category=data.get("category"),
            difficulty=data.get("difficulty"),
            resources=[str(item) for item in resources],
            study_start_date=data.get("studyStartDate"),
            study_end_date=data.get("studyEndDate"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for attr, wire in _WIRE_KEYS.items():
            value = getattr(self, attr)
            if attr == "status":
                value = value.value
            elif attr == "resources":
                value = list(value)
            if value is None and attr in ("category", "difficulty", "study_start_date", "study_end_date", "created_at", "updated_at"):
                continue
            payload[wire] = value
        return payload

    def merged(self, fields: Mapping[str, Any]) -> "Record":
        """Return a copy with camelCase ``fields`` applied on top."""

        changes: Dict[str, Any] = {}
        for key, value in fields.items():
            attr = _ATTRS.get(key)
            if attr is None or attr == "id":
                continue
            if attr == "status":
                value = RecordStatus.parse(value)
            elif attr == "resources":
                value = list(value or [])
            changes[attr] = value
        return replace(self, **changes)

    def copy(self) -> "Record":
        return replace(self, resources=list(self.resources))


def normalize_fetched(record: Record) -> Record:
    """Fill the defaults a fetched record is expected to carry."""

    return replace(
        record,
        study_start_date=record.study_start_date or today_iso(),
        study_end_date=record.study_end_date or "",
        notes=record.notes or "",
        category=record.category or "",
    )


def clean_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a camelCase diff; unknown keys and server-owned ones are dropped."""

    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if key not in MUTABLE_FIELDS:
            continue
        if key == "status":
            value = RecordStatus.parse(value).value
        elif key == "difficulty" and value is not None and value not in DIFFICULTIES:
            raise ValueError(f"Unsupported difficulty: {value!r}")
        cleaned[key] = value
    return cleaned


__all__ = [
    "Record",
    "RecordStatus",
    "DIFFICULTIES",
    "MUTABLE_FIELDS",
    "clean_fields",
    "normalize_fetched",
]
