from __future__ import annotations

from datetime import datetime, timezone

from mcp_notes_sync.models import (
    EntityEdit,
    EntityType,
    from_remote,
    is_client_id,
    new_client_id,
    to_remote,
)

WRITABLE = ("title", "content", "tags", "type", "parentId", "reminderDate")


def test_from_remote_fills_defaults() -> None:
    entity = from_remote({"_id": "64e4c6f5a2c3b6d9f7e2c1a8", "type": "folder", "content": "x"})
    assert entity.id == "64e4c6f5a2c3b6d9f7e2c1a8"
    assert entity.type is EntityType.FOLDER
    assert entity.title == "New Folder"
    assert entity.content == ""
    assert entity.tags == []
    assert entity.notification_sent is False
    assert entity.reminder_date is None
    assert entity.parent_id is None
    assert entity.synced is True
    assert entity.created_at.tzinfo is not None


def test_round_trip_preserves_writable_fields() -> None:
    wire = {
        "_id": "64e4c6f5a2c3b6d9f7e2c1a8",
        "title": "Pasta",
        "content": "<p>boil water</p>",
        "tags": [],
        "user": "64e4c6f5a2c3b6d9f7e2c100",
        "type": "file",
        "parentId": "64e4c6f5a2c3b6d9f7e2c1a7",
        "reminderDate": None,
        "notificationSent": False,
        "createdAt": "2024-05-01T10:00:00.000Z",
        "updatedAt": "2024-05-02T11:30:00.250Z",
    }
    assert to_remote(from_remote(wire)) == {k: wire[k] for k in WRITABLE}

    with_reminder = {**wire, "tags": ["food", "italian"], "reminderDate": "2026-01-20T10:00:00.000Z"}
    assert to_remote(from_remote(with_reminder)) == {k: with_reminder[k] for k in WRITABLE}


def test_from_remote_accepts_epoch_milliseconds() -> None:
    entity = from_remote({"id": "abc", "title": "t", "updatedAt": 1_700_000_000_000})
    assert entity.updated_at == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)


def test_edit_tags_are_split_and_trimmed() -> None:
    edit = EntityEdit(tags=" work, ,ideas ,,")
    assert edit.tags == ["work", "ideas"]
    assert edit.model_fields_set == {"tags"}


def test_edit_tracks_explicit_none() -> None:
    edit = EntityEdit(parent_id=None)
    assert edit.model_fields_set == {"parent_id"}


def test_client_ids_are_distinguishable() -> None:
    assert is_client_id(new_client_id())
    assert not is_client_id("64e4c6f5a2c3b6d9f7e2c1a8")
    assert not is_client_id("srv-1")
