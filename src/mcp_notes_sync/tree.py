"""Folder view derivation and navigation; pure functions over the collection."""

from __future__ import annotations

import locale
from collections.abc import Iterable

from .models import Entity, EntityType, FolderNode, SortOrder


def _matches(entity: Entity, needle: str) -> bool:
    if needle in entity.title.lower():
        return True
    if entity.type is EntityType.FILE and needle in entity.content.lower():
        return True
    return any(needle in tag.lower() for tag in entity.tags)


def _title_key(entity: Entity) -> tuple[str, str]:
    return locale.strxfrm(entity.title.casefold()), entity.title


def visible_entities(
    entities: Iterable[Entity],
    active_folder_id: str | None,
    search: str | None = None,
    sort: SortOrder | str = SortOrder.RECENT,
) -> list[Entity]:
    """Children of the active folder, search-filtered, folders before files."""
    sort = SortOrder(sort)
    items = [e for e in entities if e.parent_id == active_folder_id]

    needle = (search or "").strip().lower()
    if needle:
        items = [e for e in items if _matches(e, needle)]

    if sort is SortOrder.ALPHABETICAL:
        items.sort(key=_title_key)
    elif sort is SortOrder.OLDEST:
        items.sort(key=lambda e: e.created_at)
    else:
        items.sort(key=lambda e: e.updated_at, reverse=True)
    # Stable: keeps the order above within each group.
    items.sort(key=lambda e: 0 if e.is_folder else 1)
    return items


class FolderNavigation:
    """Stack of opened folder ids; the top is the active folder."""

    def __init__(self) -> None:
        self._history: list[str] = []

    @property
    def history(self) -> list[str]:
        return list(self._history)

    @property
    def active_folder_id(self) -> str | None:
        return self._history[-1] if self._history else None

    def open(self, folder_id: str) -> None:
        if self.active_folder_id == folder_id:
            return
        self._history.append(folder_id)

    def back(self) -> None:
        if self._history:
            self._history.pop()

    def forget(self, folder_ids: Iterable[str]) -> None:
        """Drop deleted folders from the history."""
        gone = set(folder_ids)
        self._history = [f for f in self._history if f not in gone]

    def rename(self, old_id: str, new_id: str) -> None:
        self._history = [new_id if f == old_id else f for f in self._history]


def build_folder_tree(entities: Iterable[Entity]) -> list[FolderNode]:
    by_parent: dict[str | None, list[Entity]] = {}
    for e in entities:
        if e.is_folder:
            by_parent.setdefault(e.parent_id, []).append(e)

    def build(parent_id: str | None, seen: frozenset[str]) -> list[FolderNode]:
        children = []
        for f in sorted(by_parent.get(parent_id, []), key=_title_key):
            if f.id in seen:
                continue
            node = FolderNode(id=f.id, title=f.title, children=build(f.id, seen | {f.id}))
            children.append(node)
        return children

    return build(None, frozenset())
