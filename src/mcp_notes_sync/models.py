"""Entity model and its mapping to and from the notes API wire format."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_FILE_TITLE = "Untitled Note"
DEFAULT_FOLDER_TITLE = "New Folder"


class EntityType(str, Enum):
    FILE = "file"
    FOLDER = "folder"


class SortOrder(str, Enum):
    RECENT = "recent"
    ALPHABETICAL = "alphabetical"
    OLDEST = "oldest"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_title(kind: EntityType) -> str:
    return DEFAULT_FOLDER_TITLE if kind is EntityType.FOLDER else DEFAULT_FILE_TITLE


def new_client_id() -> str:
    """Identifier for an entity created while the server is unreachable."""
    return str(uuid.uuid4())


def is_client_id(entity_id: str) -> bool:
    """True for ids minted by `new_client_id`, false for server ids."""
    if "-" not in entity_id:
        return False
    try:
        uuid.UUID(entity_id)
    except ValueError:
        return False
    return True


def parse_tags(raw: str | Iterable[str] | None) -> list[str]:
    """Split a comma-delimited tag string (or list) into clean, ordered tags."""
    if raw is None:
        return []
    parts = raw.split(",") if isinstance(raw, str) else raw
    return [t.strip() for t in parts if t and t.strip()]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _aware(value)
    if isinstance(value, (int, float)):
        # Epoch milliseconds.
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return _aware(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def format_timestamp(value: datetime | None) -> str | None:
    """Render like JavaScript's `Date.toISOString()`."""
    if value is None:
        return None
    value = _aware(value).astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


class Entity(BaseModel):
    """A note (`file`) or a folder; one shape discriminated by `type`."""

    id: str
    title: str
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    type: EntityType = EntityType.FILE
    parent_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    reminder_date: datetime | None = None
    notification_sent: bool = False
    # None: came straight from the server and counts as synced.
    synced: bool | None = None

    @field_validator("created_at", "updated_at", "reminder_date")
    @classmethod
    def _tz_aware(cls, value: datetime | None) -> datetime | None:
        return None if value is None else _aware(value)

    @property
    def is_folder(self) -> bool:
        return self.type is EntityType.FOLDER

    @property
    def pending(self) -> bool:
        """Local changes that still have to be pushed to the server."""
        return self.synced is False


class EntityEdit(BaseModel):
    """Fields a caller wants to change; unset fields keep their last value."""

    title: str | None = None
    content: str | None = None
    tags: list[str] | None = None
    parent_id: str | None = None
    reminder_date: datetime | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return None
        return parse_tags(value)

    @field_validator("reminder_date", mode="before")
    @classmethod
    def _parse_reminder(cls, value: Any) -> Any:
        return parse_timestamp(value)


def from_remote(wire: dict[str, Any]) -> Entity:
    """Build an entity from the server representation."""
    entity_id = wire.get("_id") or wire.get("id")
    if not entity_id:
        raise ValueError("Notes API payload has no id")
    kind = EntityType(wire.get("type") or EntityType.FILE.value)
    now = utcnow()
    parent_id = wire.get("parentId")
    return Entity(
        id=str(entity_id),
        title=wire.get("title") or default_title(kind),
        content="" if kind is EntityType.FOLDER else (wire.get("content") or ""),
        tags=list(wire.get("tags") or []),
        type=kind,
        parent_id=str(parent_id) if parent_id else None,
        created_at=parse_timestamp(wire.get("createdAt")) or now,
        updated_at=parse_timestamp(wire.get("updatedAt")) or now,
        reminder_date=parse_timestamp(wire.get("reminderDate")),
        notification_sent=bool(wire.get("notificationSent") or False),
        synced=True,
    )


def to_remote(entity: Entity) -> dict[str, Any]:
    """The writable field set; PUT replaces all of it."""
    return {
        "title": entity.title,
        "content": "" if entity.is_folder else entity.content,
        "tags": list(entity.tags),
        "type": entity.type.value,
        "parentId": entity.parent_id,
        "reminderDate": format_timestamp(entity.reminder_date),
    }


class ListPage(BaseModel):
    items: list[Entity]
    total_count: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)
    total_pages: int = Field(ge=0)
    offline: bool = False


class SyncReport(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: list[str] = Field(default_factory=list)
    remapped: dict[str, str] = Field(default_factory=dict)


class FolderNode(BaseModel):
    id: str
    title: str | None = None
    children: list[FolderNode] = Field(default_factory=list)
