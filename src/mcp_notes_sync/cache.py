"""Durable local cache of entities, backed by SQLite through aiosqlite.

One row per entity keyed by id, the full entity serialized as JSON. A second
table records server ids deleted while offline so the next sync sweep can
replay the deletion; deleted entities never linger in the entity table.
Reminders acknowledged while offline are recorded the same way.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

import aiosqlite
from pydantic import ValidationError as ModelValidationError

from .errors import StorageError
from .models import Entity, EntityType

logger = logging.getLogger(__name__)

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS entities (id TEXT PRIMARY KEY, data TEXT NOT NULL)",
    "CREATE TABLE IF NOT EXISTS tombstones (id TEXT PRIMARY KEY, type TEXT NOT NULL)",
    "CREATE TABLE IF NOT EXISTS reminder_acks (id TEXT PRIMARY KEY)",
)


class LocalCache:
    """Key-value store of entities that survives restarts and offline periods."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the SQLite connection and create the tables."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(self._db_path, timeout=30.0)
            await self._conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await self._conn.execute(statement)
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Cannot open local cache at {self._db_path}") from exc
        logger.info("Local cache opened: %s", self._db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("Local cache closed")

    async def __aenter__(self) -> LocalCache:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _get_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Local cache is not open")
        return self._conn

    async def get_all(self) -> list[Entity]:
        conn = self._get_conn()
        try:
            async with conn.execute("SELECT data FROM entities ORDER BY rowid") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError("Cannot read the local cache") from exc
        entities: list[Entity] = []
        for (data,) in rows:
            try:
                entities.append(Entity.model_validate_json(data))
            except ModelValidationError:
                logger.warning("Skipping unreadable cache record")
        return entities

    async def get(self, entity_id: str) -> Entity | None:
        conn = self._get_conn()
        try:
            async with conn.execute(
                "SELECT data FROM entities WHERE id = ?", (entity_id,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError("Cannot read the local cache") from exc
        return None if row is None else Entity.model_validate_json(row[0])

    async def put(self, entity: Entity) -> None:
        """Insert or replace the record under `entity.id`."""
        await self.put_many([entity])

    async def put_many(self, entities: Iterable[Entity]) -> None:
        rows = [(e.id, e.model_dump_json()) for e in entities]
        if not rows:
            return
        conn = self._get_conn()
        try:
            await conn.executemany(
                "INSERT OR REPLACE INTO entities (id, data) VALUES (?, ?)", rows
            )
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot write to the local cache") from exc

    async def delete(self, entity_id: str) -> None:
        await self.delete_many([entity_id])

    async def delete_many(self, entity_ids: Iterable[str]) -> None:
        rows = [(i,) for i in entity_ids]
        if not rows:
            return
        conn = self._get_conn()
        try:
            await conn.executemany("DELETE FROM entities WHERE id = ?", rows)
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot delete from the local cache") from exc

    async def replace(self, old_id: str, entity: Entity, *, reparent: bool = True) -> None:
        """Move a record to a new id in one transaction.

        The new record is written before the old one is removed; with
        `reparent`, cached children of `old_id` are pointed at the new id.
        """
        conn = self._get_conn()
        try:
            await conn.execute(
                "INSERT OR REPLACE INTO entities (id, data) VALUES (?, ?)",
                (entity.id, entity.model_dump_json()),
            )
            if old_id != entity.id:
                await conn.execute("DELETE FROM entities WHERE id = ?", (old_id,))
            if reparent and old_id != entity.id:
                async with conn.execute("SELECT data FROM entities") as cursor:
                    rows = await cursor.fetchall()
                children = [Entity.model_validate_json(data) for (data,) in rows]
                moved = [
                    (c.model_copy(update={"parent_id": entity.id}).model_dump_json(), c.id)
                    for c in children
                    if c.parent_id == old_id
                ]
                if moved:
                    await conn.executemany(
                        "UPDATE entities SET data = ? WHERE id = ?", moved
                    )
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot remap a local cache record") from exc

    async def add_tombstones(self, entities: Iterable[Entity]) -> None:
        rows = [(e.id, e.type.value) for e in entities]
        if not rows:
            return
        conn = self._get_conn()
        try:
            await conn.executemany(
                "INSERT OR REPLACE INTO tombstones (id, type) VALUES (?, ?)", rows
            )
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot record a pending deletion") from exc

    async def tombstones(self) -> list[tuple[str, EntityType]]:
        conn = self._get_conn()
        try:
            async with conn.execute("SELECT id, type FROM tombstones ORDER BY rowid") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError("Cannot read pending deletions") from exc
        return [(entity_id, EntityType(kind)) for entity_id, kind in rows]

    async def clear_tombstone(self, entity_id: str) -> None:
        conn = self._get_conn()
        try:
            await conn.execute("DELETE FROM tombstones WHERE id = ?", (entity_id,))
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot clear a pending deletion") from exc

    async def add_acknowledgement(self, entity_id: str) -> None:
        conn = self._get_conn()
        try:
            await conn.execute(
                "INSERT OR IGNORE INTO reminder_acks (id) VALUES (?)", (entity_id,)
            )
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot record a reminder acknowledgement") from exc

    async def acknowledgements(self) -> list[str]:
        conn = self._get_conn()
        try:
            async with conn.execute("SELECT id FROM reminder_acks ORDER BY rowid") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError("Cannot read reminder acknowledgements") from exc
        return [entity_id for (entity_id,) in rows]

    async def clear_acknowledgement(self, entity_id: str) -> None:
        conn = self._get_conn()
        try:
            await conn.execute("DELETE FROM reminder_acks WHERE id = ?", (entity_id,))
            await conn.commit()
        except aiosqlite.Error as exc:
            await _rollback(conn)
            raise StorageError("Cannot clear a reminder acknowledgement") from exc


async def _rollback(conn: aiosqlite.Connection) -> None:
    try:
        await conn.rollback()
    except aiosqlite.Error:
        logger.exception("Rollback of the local cache failed")
