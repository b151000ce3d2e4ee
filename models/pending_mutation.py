"""SQLModel table for not-yet-acknowledged local changes."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


class PendingMutationRow(SQLModel, table=True):
    __tablename__ = "pendingmutation"

    identity: str = Field(primary_key=True)
    record_id: int = Field(primary_key=True)
    kind: str = Field(index=True)
    payload: str = "{}"
    revision: int = Field(default=1)
    attempts: int = Field(default=0)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["PendingMutationRow"]
