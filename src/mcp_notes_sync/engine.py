"""Reconciliation between the notes server and the local cache.

`SyncEngine` owns the in-memory collection that views are derived from and
mediates every mutation. Online, mutations go to the server first and the
result is mirrored into the cache; when the server cannot be reached they
are applied to the cache only and marked pending (`synced=False`). The sync
sweep pushes pending entities once connectivity returns, swapping client ids
for server ids as it goes.
Anything placed in a folder the server has not seen yet stays pending as
well, so it is pushed after its folder.

Every cache write happens before the in-memory collection changes, so a
failing cache leaves the collection in its previous state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, TypeVar

from .cache import LocalCache
from .errors import NetworkUnavailable, NotesError, NotFound, Unauthorized, ValidationError
from .models import (
    Entity,
    EntityEdit,
    EntityType,
    ListPage,
    SyncReport,
    default_title,
    is_client_id,
    new_client_id,
    parse_tags,
    to_remote,
    utcnow,
)
from .notes_client import NotesApiClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
# Page size used when walking a remote folder to find every descendant.
SCAN_PAGE_SIZE = 100


def page_count(total_count: int, page_size: int) -> int:
    return -(-total_count // page_size) if total_count > 0 else 0


def descendants(root_id: str, entities: Iterable[Entity]) -> list[Entity]:
    """Every entity below `root_id`, at any depth."""
    children: dict[str | None, list[Entity]] = {}
    for entity in entities:
        children.setdefault(entity.parent_id, []).append(entity)

    found: list[Entity] = []
    seen = {root_id}
    stack = [root_id]
    while stack:
        for child in children.get(stack.pop(), []):
            if child.id in seen:
                continue
            seen.add(child.id)
            found.append(child)
            stack.append(child.id)
    return found


def _unsynced_parent(parent_id: str | None) -> bool:
    """True when `parent_id` is a folder the server has not assigned an id yet."""
    return parent_id is not None and is_client_id(parent_id)


def _parents_first(entities: list[Entity]) -> list[Entity]:
    by_id = {e.id: e for e in entities}

    def depth(entity: Entity) -> int:
        level = 0
        seen = {entity.id}
        parent_id = entity.parent_id
        while parent_id in by_id and parent_id not in seen:
            seen.add(parent_id)
            level += 1
            parent_id = by_id[parent_id].parent_id
        return level

    return sorted(entities, key=depth)


class SyncEngine:
    """Offline-first mediator between `NotesApiClient` and `LocalCache`."""

    def __init__(
        self,
        remote: NotesApiClient,
        cache: LocalCache,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        online: bool = True,
    ) -> None:
        self._remote = remote
        self._cache = cache
        self._page_size = page_size
        self._online = online
        self._entities: dict[str, Entity] = {}
        self._selected_id: str | None = None
        self._sweep_lock = asyncio.Lock()
        self.total_count = 0

    @property
    def online(self) -> bool:
        return self._online

    @property
    def page_size(self) -> int:
        return self._page_size

    @property
    def entities(self) -> list[Entity]:
        return list(self._entities.values())

    @property
    def selected(self) -> Entity | None:
        if self._selected_id is None:
            return None
        return self._entities.get(self._selected_id)

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
        self._online = online

    async def load(self) -> None:
        """Hydrate the collection from the local cache."""
        cached = await self._cache.get_all()
        self._entities = {e.id: e for e in cached}
        logger.info("Loaded %d cached entities", len(cached))

    async def on_reconnect(self) -> SyncReport:
        self.set_online(True)
        return await self.sync_offline_notes()

    # ----- remote plumbing -----

    async def _remote_call(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Call the server, refreshing the credential once on rejection."""
        try:
            return await func(*args, **kwargs)
        except Unauthorized:
            if not await self._remote.refresh_credentials():
                raise
        logger.info("Retrying %s after refreshing the access token", func.__name__)
        return await func(*args, **kwargs)

    async def _known(self) -> list[Entity]:
        merged = {e.id: e for e in await self._cache.get_all()}
        merged.update(self._entities)
        return list(merged.values())

    async def _lookup(self, entity_id: str) -> Entity:
        entity = self._entities.get(entity_id) or await self._cache.get(entity_id)
        if entity is None:
            raise NotFound(entity_id)
        return entity

    async def _remember(self, entity: Entity) -> Entity:
        await self._cache.put(entity)
        self._entities[entity.id] = entity
        return entity

    async def _drop_local(self, entities: list[Entity]) -> None:
        ids = [e.id for e in entities]
        await self._cache.delete_many(ids)
        for entity_id in ids:
            self._entities.pop(entity_id, None)
        if self._selected_id in ids:
            self._selected_id = None

    async def _drop_stale(self, entity_id: str) -> None:
        stale = self._entities.get(entity_id) or await self._cache.get(entity_id)
        if stale is None:
            return
        logger.info("Dropping %s; it no longer exists on the server", entity_id)
        await self._drop_local([stale, *descendants(entity_id, await self._known())])

    def _rekey(self, old_id: str, entity: Entity) -> None:
        """Swap a client id for the server id, keeping the collection order."""
        if old_id not in self._entities:
            self._entities[entity.id] = entity
        else:
            self._entities = {
                (entity.id if key == old_id else key): (entity if key == old_id else value)
                for key, value in self._entities.items()
            }
        for key, value in list(self._entities.items()):
            if value.parent_id == old_id:
                self._entities[key] = value.model_copy(update={"parent_id": entity.id})
        if self._selected_id == old_id:
            self._selected_id = entity.id

    # ----- listing -----

    async def list_page(self, parent_id: str | None = None, page: int = 1) -> ListPage:
        """One page of the children of `parent_id`; the whole cached level offline."""
        if page < 1:
            raise ValidationError("Page numbers start at 1")
        if self._online and not _unsynced_parent(parent_id):
            try:
                remote, total = await self._remote_call(
                    self._remote.list_entities,
                    parent_id,
                    limit=self._page_size,
                    offset=(page - 1) * self._page_size,
                )
            except NetworkUnavailable:
                logger.info("Server unreachable; listing from the local cache")
            else:
                items = await self._merge_remote(remote)
                self.total_count = total
                return ListPage(
                    items=items,
                    total_count=total,
                    page=page,
                    page_size=self._page_size,
                    total_pages=page_count(total, self._page_size),
                )
        return await self._list_cached(parent_id)

    async def _merge_remote(self, remote: list[Entity]) -> list[Entity]:
        deleted = {entity_id for entity_id, _ in await self._cache.tombstones()}
        acked = set(await self._cache.acknowledgements())
        shown: list[Entity] = []
        fresh: list[Entity] = []
        for entity in remote:
            if entity.id in deleted:
                continue
            local = self._entities.get(entity.id)
            if local is not None and local.pending:
                # Unpushed local edits win until the next sweep.
                shown.append(local)
                continue
            if entity.id in acked:
                entity = entity.model_copy(update={"notification_sent": True})
            fresh.append(entity)
            shown.append(entity)
        await self._cache.put_many(fresh)
        for entity in fresh:
            self._entities[entity.id] = entity
        return shown

    async def _list_cached(self, parent_id: str | None) -> ListPage:
        cached = await self._cache.get_all()
        if not cached:
            raise NetworkUnavailable(
                "Cannot load notes: the server is unreachable and nothing is cached"
            )
        for entity in cached:
            self._entities.setdefault(entity.id, entity)
        items = [e for e in cached if e.parent_id == parent_id]
        self.total_count = len(items)
        return ListPage(
            items=items,
            total_count=len(items),
            page=1,
            page_size=self._page_size,
            total_pages=1 if items else 0,
            offline=True,
        )

    async def get_entity(self, entity_id: str) -> Entity:
        local = self._entities.get(entity_id)
        if self._online and not is_client_id(entity_id) and not (local and local.pending):
            try:
                fetched = await self._remote_call(self._remote.get_entity, entity_id)
            except NetworkUnavailable:
                logger.info("Server unreachable; reading %s from the local cache", entity_id)
            except NotFound:
                await self._drop_stale(entity_id)
                raise
            else:
                if entity_id in await self._cache.acknowledgements():
                    fetched = fetched.model_copy(update={"notification_sent": True})
                return await self._remember(fetched)
        return await self._lookup(entity_id)

    # ----- mutations -----

    async def _check_parent(self, parent_id: str | None, moving: Entity | None = None) -> None:
        if parent_id is None:
            return
        parent = self._entities.get(parent_id) or await self._cache.get(parent_id)
        if parent is None:
            raise ValidationError(f"Folder {parent_id} does not exist")
        if not parent.is_folder:
            raise ValidationError(f"'{parent.title}' is a note; only folders can hold items")
        if moving is None:
            return
        if parent_id == moving.id:
            raise ValidationError("An item cannot be placed inside itself")
        if parent_id in {d.id for d in descendants(moving.id, await self._known())}:
            raise ValidationError("A folder cannot be moved into one of its own subfolders")

    async def create_entity(
        self,
        kind: EntityType | str = EntityType.FILE,
        parent_id: str | None = None,
        *,
        title: str | None = None,
        content: str = "",
        tags: str | list[str] | None = None,
        reminder_date: datetime | None = None,
    ) -> Entity:
        """Create on the server, or locally as pending when it is unreachable."""
        kind = EntityType(kind)
        await self._check_parent(parent_id)
        is_folder = kind is EntityType.FOLDER
        now = utcnow()
        entity = Entity(
            id=new_client_id(),
            title=(title or "").strip() or default_title(kind),
            content="" if is_folder else content,
            tags=[] if is_folder else parse_tags(tags),
            type=kind,
            parent_id=parent_id,
            created_at=now,
            updated_at=now,
            reminder_date=None if is_folder else reminder_date,
            synced=False,
        )
        if self._online and not _unsynced_parent(parent_id):
            try:
                entity = await self._remote_call(self._remote.create_entity, to_remote(entity))
            except NetworkUnavailable:
                logger.info("Server unreachable; %s '%s' saved offline", kind.value, entity.title)
        entity = await self._remember(entity)
        self._selected_id = entity.id
        return entity

    @staticmethod
    def _apply_edit(current: Entity, changes: dict[str, Any]) -> Entity:
        update: dict[str, Any] = {"updated_at": utcnow()}
        if "title" in changes:
            update["title"] = (changes["title"] or "").strip() or default_title(current.type)
        if "parent_id" in changes:
            update["parent_id"] = changes["parent_id"]
        if not current.is_folder:
            if "content" in changes:
                update["content"] = changes["content"] or ""
            if "tags" in changes:
                update["tags"] = changes["tags"] or []
            if "reminder_date" in changes:
                update["reminder_date"] = changes["reminder_date"]
                if changes["reminder_date"] != current.reminder_date:
                    update["notification_sent"] = False
        return current.model_copy(update=update)

    async def save_entity(self, entity_id: str, edit: EntityEdit | dict[str, Any]) -> Entity:
        """Apply an edit; the server receives the full merged field set."""
        if not isinstance(edit, EntityEdit):
            edit = EntityEdit.model_validate(edit)
        current = await self._lookup(entity_id)
        changes = edit.model_dump(include=edit.model_fields_set)
        if "parent_id" in changes and changes["parent_id"] != current.parent_id:
            await self._check_parent(changes["parent_id"], current)
        merged = self._apply_edit(current, changes)

        if self._online and not current.pending and not _unsynced_parent(merged.parent_id):
            try:
                saved = await self._remote_call(
                    self._remote.update_entity, current.id, to_remote(merged)
                )
            except NetworkUnavailable:
                logger.info("Server unreachable; '%s' saved offline", merged.title)
            except NotFound:
                await self._drop_stale(current.id)
                raise
            else:
                return await self._remember(await self._keep_notified(merged, saved))
        return await self._remember(merged.model_copy(update={"synced": False}))

    async def _remote_folder_descendants(self, folder_id: str) -> list[str]:
        """Ids of every folder below `folder_id` on the server, shallowest first."""
        found: list[str] = []
        seen = {folder_id}
        queue = [folder_id]
        while queue:
            parent_id = queue.pop(0)
            offset = 0
            while True:
                page, total = await self._remote_call(
                    self._remote.list_entities, parent_id, limit=SCAN_PAGE_SIZE, offset=offset
                )
                for entity in page:
                    if entity.is_folder and entity.id not in seen:
                        seen.add(entity.id)
                        found.append(entity.id)
                        queue.append(entity.id)
                offset += len(page)
                if not page or offset >= total:
                    break
        return found

    async def _delete_remote_tree(self, entity_id: str, kind: EntityType) -> None:
        # The server only drops direct children of a deleted folder, so
        # nested folders are deleted deepest first before the root.
        if kind is EntityType.FOLDER:
            for folder_id in reversed(await self._remote_folder_descendants(entity_id)):
                try:
                    await self._remote_call(self._remote.delete_entity, folder_id)
                except NotFound:
                    continue
        await self._remote_call(self._remote.delete_entity, entity_id)

    async def delete_entity(self, entity_id: str) -> None:
        """Delete an entity and, for folders, everything below it."""
        target = await self._lookup(entity_id)
        subtree = [target, *descendants(target.id, await self._known())]

        if self._online and not is_client_id(target.id):
            try:
                await self._delete_remote_tree(target.id, target.type)
            except NetworkUnavailable:
                logger.info("Server unreachable; '%s' deleted offline", target.title)
            except NotFound:
                await self._drop_local(subtree)
                raise
            else:
                await self._drop_local(subtree)
                return

        # Server copies are deleted by the next sweep; never-pushed ones just vanish.
        await self._cache.add_tombstones(e for e in subtree if not is_client_id(e.id))
        await self._drop_local(subtree)

    # ----- sync sweep -----

    async def sync_offline_notes(self) -> SyncReport:
        """Push pending deletions, creations and edits to the server."""
        async with self._sweep_lock:
            report = SyncReport()
            if not self._online:
                logger.info("Still offline; sync sweep skipped")
                return report

            await self._push_tombstones(report)
            await self._push_acknowledgements(report)
            pending = [e for e in await self._cache.get_all() if e.pending]
            for entity in _parents_first(pending):
                try:
                    await self._push(entity.id, report)
                except NotesError as exc:
                    logger.warning("Sync of '%s' (%s) failed: %s", entity.title, entity.id, exc)
                    report.failed.append(entity.id)

            if pending or report.deleted or report.failed:
                logger.info(
                    "Sync sweep done: %d created, %d updated, %d deleted, %d left pending",
                    report.created,
                    report.updated,
                    report.deleted,
                    len(report.failed),
                )
            return report

    async def _push_tombstones(self, report: SyncReport) -> None:
        for entity_id, kind in await self._cache.tombstones():
            try:
                try:
                    await self._delete_remote_tree(entity_id, kind)
                except NotFound:
                    logger.debug("%s was already gone from the server", entity_id)
                await self._cache.clear_tombstone(entity_id)
            except NotesError as exc:
                logger.warning("Pending deletion of %s failed: %s", entity_id, exc)
                report.failed.append(entity_id)
                continue
            report.deleted += 1

    async def _push_acknowledgements(self, report: SyncReport) -> None:
        for entity_id in await self._cache.acknowledgements():
            try:
                try:
                    marked = await self._remote_call(self._remote.mark_reminder_sent, entity_id)
                except NotFound:
                    logger.debug("%s was already gone from the server", entity_id)
                else:
                    local = self._entities.get(entity_id)
                    if local is not None and not local.pending:
                        await self._remember(marked)
                await self._cache.clear_acknowledgement(entity_id)
            except NotesError as exc:
                logger.warning("Reminder acknowledgement of %s failed: %s", entity_id, exc)
                report.failed.append(entity_id)

    async def _push(self, entity_id: str, report: SyncReport) -> None:
        # Re-read: an earlier push in this sweep may have re-parented it.
        current = await self._cache.get(entity_id)
        if current is None or not current.pending:
            return
        if _unsynced_parent(current.parent_id):
            logger.info("'%s' waits for its folder to be synced", current.title)
            report.failed.append(current.id)
            return

        if is_client_id(current.id):
            created = await self._remote_call(self._remote.create_entity, to_remote(current))
            await self._cache.replace(current.id, created)
            self._rekey(current.id, created)
            report.created += 1
            report.remapped[current.id] = created.id
            kept = await self._keep_notified(current, created)
            if kept is not created:
                await self._remember(kept)
            return

        try:
            saved = await self._remote_call(
                self._remote.update_entity, current.id, to_remote(current)
            )
        except NotFound:
            await self._drop_stale(current.id)
            raise
        await self._remember(await self._keep_notified(current, saved))
        report.updated += 1

    async def _keep_notified(self, local: Entity, saved: Entity) -> Entity:
        """Re-mark a reminder the server un-notified on write."""
        if not local.notification_sent or saved.notification_sent or saved.reminder_date is None:
            return saved
        try:
            await self._remote_call(self._remote.mark_reminder_sent, saved.id)
        except NotesError as exc:
            logger.info("Reminder of %s stays acknowledged locally: %s", saved.id, exc)
            await self._cache.add_acknowledgement(saved.id)
        return saved.model_copy(update={"notification_sent": True})

    # ----- reminders -----

    def due_reminders(self, now: datetime | None = None) -> list[Entity]:
        """Files whose reminder is due and not yet notified, from the collection."""
        now = now or utcnow()
        return [
            e
            for e in self._entities.values()
            if not e.is_folder
            and e.reminder_date is not None
            and e.reminder_date <= now
            and not e.notification_sent
        ]

    async def pending_reminders(self) -> list[Entity]:
        if self._online:
            try:
                due = await self._remote_call(self._remote.pending_reminders)
            except NetworkUnavailable:
                logger.info("Server unreachable; checking reminders locally")
            else:
                acked = set(await self._cache.acknowledgements())
                return [e for e in due if e.id not in acked]
        return self.due_reminders()

    async def acknowledge_reminder(self, entity_id: str) -> None:
        """Record that the reminder of `entity_id` was shown.

        Acknowledgements that cannot reach the server are replayed by the next
        sync sweep. Never-pushed entities carry the flag in their create.
        """
        if not is_client_id(entity_id):
            marked = False
            if self._online:
                try:
                    await self._remote_call(self._remote.mark_reminder_sent, entity_id)
                    marked = True
                except NetworkUnavailable:
                    logger.info("Server unreachable; reminder of %s marked locally", entity_id)
            if not marked:
                await self._cache.add_acknowledgement(entity_id)
        local = self._entities.get(entity_id)
        if local is not None and not local.notification_sent:
            await self._remember(local.model_copy(update={"notification_sent": True}))
