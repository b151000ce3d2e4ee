"""Exception hierarchy for the sync engine."""
from __future__ import annotations

from typing import Any, Optional


class SyncError(Exception):
    """Base exception for the sync engine."""


class TransportError(SyncError):
    """Network failure, timeout or non-2xx response from the remote store."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class NotFoundError(SyncError, LookupError):
    """Mutation attempted against an id the local store does not know."""

    def __init__(self, record_id: int) -> None:
        super().__init__(f"Record {record_id} not found")
        self.record_id = record_id


class MalformedResponseError(SyncError):
    """Payload does not have the expected shape."""


class IdentityRequiredError(SyncError):
    """Mutation attempted while no identity is active."""

    def __init__(self, message: str = "No active identity") -> None:
        super().__init__(message)


__all__ = [
    "SyncError",
    "TransportError",
    "NotFoundError",
    "MalformedResponseError",
    "IdentityRequiredError",
]
