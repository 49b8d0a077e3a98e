"""Domain errors."""

from __future__ import annotations

from dataclasses import dataclass


class NotesError(Exception):
    """Base class for errors surfaced to callers of the sync engine."""


class Unauthorized(NotesError):
    """Missing, expired or rejected bearer credential."""

    def __init__(self, message: str = "Not authorized; please sign in again") -> None:
        super().__init__(message)


class NotFound(NotesError):
    """The entity does not exist (or belongs to someone else)."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Item {entity_id} was not found")
        self.entity_id = entity_id


class NetworkUnavailable(NotesError):
    """The notes server could not be reached in time."""

    def __init__(self, message: str = "Notes server is unreachable") -> None:
        super().__init__(message)


class ValidationError(NotesError):
    """A requested mutation would break the tree invariants."""


class StorageError(NotesError):
    """The local cache could not be read or written."""


@dataclass(frozen=True, slots=True)
class RemoteApiError(NotesError):
    """Raised when the notes API returns an unexpected non-success response."""

    status_code: int
    method: str
    path: str
    response_text: str

    def __str__(self) -> str:  # pragma: no cover
        return f"Notes server error {self.status_code} for {self.method} {self.path}"
