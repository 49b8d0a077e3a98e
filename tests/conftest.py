from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from mcp_notes_sync.cache import LocalCache
from mcp_notes_sync.engine import SyncEngine
from mcp_notes_sync.errors import NetworkUnavailable, NotFound, Unauthorized
from mcp_notes_sync.models import Entity, from_remote


class FakeNotesServer:
    """In-memory stand-in for the notes API with the same one-level cascade."""

    def __init__(self) -> None:
        self.entities: dict[str, Entity] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.reachable = True
        self.reject_next = 0
        self.refresh_ok = True
        self.refreshes = 0
        self.last_fields: dict[str, Any] | None = None
        self._ids = itertools.count(1)
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _enter(self, op: str, entity_id: str | None = None) -> None:
        if not self.reachable:
            raise NetworkUnavailable()
        if self.reject_next:
            self.reject_next -= 1
            raise Unauthorized()
        self.calls.append((op, entity_id))

    def seed(self, **fields: Any) -> Entity:
        entity_id = f"srv-{next(self._ids)}"
        now = self._tick()
        entity = from_remote({"_id": entity_id, "createdAt": now, "updatedAt": now, **fields})
        self.entities[entity_id] = entity
        return entity

    async def refresh_credentials(self) -> bool:
        self.refreshes += 1
        return self.refresh_ok

    async def list_entities(
        self, parent_id: str | None, *, limit: int = 20, offset: int = 0
    ) -> tuple[list[Entity], int]:
        self._enter("list", parent_id)
        level = [e for e in self.entities.values() if e.parent_id == parent_id]
        level.sort(key=lambda e: e.updated_at, reverse=True)
        return level[offset : offset + limit], len(level)

    async def get_entity(self, entity_id: str) -> Entity:
        self._enter("get", entity_id)
        if entity_id not in self.entities:
            raise NotFound(entity_id)
        return self.entities[entity_id]

    async def create_entity(self, fields: dict[str, Any]) -> Entity:
        self._enter("create", None)
        self.last_fields = dict(fields)
        return self.seed(**fields)

    async def update_entity(self, entity_id: str, fields: dict[str, Any]) -> Entity:
        self._enter("update", entity_id)
        if entity_id not in self.entities:
            raise NotFound(entity_id)
        self.last_fields = dict(fields)
        old = self.entities[entity_id]
        entity = from_remote(
            {
                "_id": entity_id,
                "createdAt": old.created_at,
                "updatedAt": self._tick(),
                **fields,
            }
        )
        self.entities[entity_id] = entity
        return entity

    async def delete_entity(self, entity_id: str) -> None:
        self._enter("delete", entity_id)
        deleted = self.entities.pop(entity_id, None)
        if deleted is None:
            raise NotFound(entity_id)
        if deleted.is_folder:
            for child_id in [e.id for e in self.entities.values() if e.parent_id == entity_id]:
                del self.entities[child_id]

    async def pending_reminders(self) -> list[Entity]:
        self._enter("reminders", None)
        now = datetime.now(timezone.utc)
        return [
            e
            for e in self.entities.values()
            if e.reminder_date is not None and e.reminder_date <= now and not e.notification_sent
        ]

    async def mark_reminder_sent(self, entity_id: str) -> Entity:
        self._enter("mark-sent", entity_id)
        if entity_id not in self.entities:
            raise NotFound(entity_id)
        entity = self.entities[entity_id].model_copy(update={"notification_sent": True})
        self.entities[entity_id] = entity
        return entity


@pytest.fixture
def server() -> FakeNotesServer:
    return FakeNotesServer()


@pytest.fixture
def open_engine(tmp_path, server):
    """Async context manager yielding (engine, cache) over a fresh SQLite file."""

    @asynccontextmanager
    async def _open(*, online: bool = True, page_size: int = 20):
        async with LocalCache(tmp_path / "cache.sqlite") as cache:
            engine = SyncEngine(server, cache, page_size=page_size, online=online)
            await engine.load()
            yield engine, cache

    return _open
