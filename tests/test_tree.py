from __future__ import annotations

from datetime import datetime, timedelta, timezone

from mcp_notes_sync.models import Entity, EntityType, SortOrder
from mcp_notes_sync.tree import FolderNavigation, build_folder_tree, visible_entities

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _entity(entity_id: str, title: str, *, folder: bool = False, parent: str | None = None,
            created: int = 0, updated: int = 0, **extra) -> Entity:
    return Entity(
        id=entity_id,
        title=title,
        type=EntityType.FOLDER if folder else EntityType.FILE,
        parent_id=parent,
        created_at=T0 + timedelta(minutes=created),
        updated_at=T0 + timedelta(minutes=updated),
        **extra,
    )


def _collection() -> list[Entity]:
    return [
        _entity("n1", "banana", created=1, updated=5),
        _entity("f1", "Zeta", folder=True, created=2, updated=1),
        _entity("n2", "Apple", created=3, updated=3, tags=["fruit"]),
        _entity("f2", "alpha", folder=True, created=4, updated=2),
        _entity("n3", "Deep", parent="f1", created=5, updated=9),
    ]


def test_folders_first_for_every_order() -> None:
    entities = _collection()
    recent = visible_entities(entities, None, sort=SortOrder.RECENT)
    assert [e.id for e in recent] == ["f2", "f1", "n1", "n2"]

    alpha = visible_entities(entities, None, sort=SortOrder.ALPHABETICAL)
    assert [e.id for e in alpha] == ["f2", "f1", "n2", "n1"]

    oldest = visible_entities(entities, None, sort="oldest")
    assert [e.id for e in oldest] == ["f1", "f2", "n1", "n2"]


def test_only_the_active_folder_is_visible() -> None:
    assert [e.id for e in visible_entities(_collection(), "f1")] == ["n3"]


def test_search_matches_title_content_and_tags() -> None:
    entities = _collection() + [_entity("n4", "Plain", content="<p>FRUIT salad</p>")]
    found = visible_entities(entities, None, search="  fruit ")
    assert {e.id for e in found} == {"n2", "n4"}
    assert visible_entities(entities, None, search="nothing-like-this") == []


def test_folder_content_is_not_searched() -> None:
    folder = _entity("f9", "Box", folder=True, content="hidden")
    assert visible_entities([folder], None, search="hidden") == []


def test_navigation_history() -> None:
    nav = FolderNavigation()
    nav.back()
    assert nav.active_folder_id is None

    nav.open("f1")
    nav.open("f1")
    nav.open("f2")
    assert nav.history == ["f1", "f2"]

    nav.rename("f1", "srv-9")
    nav.forget(["f2"])
    assert nav.history == ["srv-9"]

    nav.back()
    assert nav.active_folder_id is None


def test_build_folder_tree_nests_and_ignores_files() -> None:
    entities = _collection() + [_entity("f3", "Inner", folder=True, parent="f1")]
    tree = build_folder_tree(entities)
    assert [n.id for n in tree] == ["f2", "f1"]
    assert [n.id for n in tree[1].children] == ["f3"]
    assert tree[0].children == []


def test_build_folder_tree_survives_cycles() -> None:
    entities = [
        _entity("a", "A", folder=True, parent="b"),
        _entity("b", "B", folder=True, parent="a"),
        _entity("r", "Root", folder=True),
    ]
    assert [n.id for n in build_folder_tree(entities)] == ["r"]
