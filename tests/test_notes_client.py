from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from mcp_notes_sync.auth import Credentials
from mcp_notes_sync.errors import NetworkUnavailable, NotFound, RemoteApiError, Unauthorized
from mcp_notes_sync.notes_client import NotesApiClient

BASE_URL = "http://notes.test/api"


def _client(handler, *, token: str | None = "tok", refresh: str | None = None) -> NotesApiClient:
    return NotesApiClient(
        base_url=BASE_URL,
        credentials=Credentials(token, refresh),
        transport=httpx.MockTransport(handler),
    )


def test_list_sends_scope_and_bearer() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "notes": [{"_id": "n1", "title": "One", "type": "file", "parentId": "f1"}],
                "totalCount": 21,
                "limit": 20,
                "offset": 20,
            },
        )

    async def scenario() -> None:
        client = _client(handler)
        try:
            entities, total = await client.list_entities("f1", limit=20, offset=20)
            await client.list_entities(None)
        finally:
            await client.aclose()
        assert total == 21
        assert [e.id for e in entities] == ["n1"]

    asyncio.run(scenario())
    assert seen[0].url.path == "/api/notes"
    assert seen[0].url.params["parentId"] == "f1"
    assert seen[0].url.params["offset"] == "20"
    assert seen[0].headers["authorization"] == "Bearer tok"
    assert "parentId" not in seen[1].url.params


def test_status_codes_map_to_domain_errors() -> None:
    statuses = {"/api/notes/gone": 404, "/api/notes/locked": 401, "/api/notes/broken": 500}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(statuses[request.url.path], json={"error": "nope"})

    async def scenario() -> None:
        client = _client(handler)
        try:
            with pytest.raises(NotFound):
                await client.get_entity("gone")
            with pytest.raises(Unauthorized):
                await client.get_entity("locked")
            with pytest.raises(RemoteApiError) as info:
                await client.get_entity("broken")
            assert info.value.status_code == 500
        finally:
            await client.aclose()

    asyncio.run(scenario())


def test_transport_failures_become_network_unavailable() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async def scenario() -> None:
        for handler in (refuse, stall):
            client = _client(handler)
            try:
                with pytest.raises(NetworkUnavailable):
                    await client.create_entity({"title": "x"})
            finally:
                await client.aclose()

    asyncio.run(scenario())


def test_missing_token_is_unauthorized_without_a_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    async def scenario() -> None:
        client = _client(handler, token=None)
        try:
            with pytest.raises(Unauthorized):
                await client.list_entities(None)
        finally:
            await client.aclose()

    asyncio.run(scenario())
    assert calls == []


def test_update_and_delete() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(204)
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"_id": "n1", **bodies[-1]})

    async def scenario() -> None:
        client = _client(handler)
        try:
            updated = await client.update_entity("n1", {"title": "New", "tags": ["a"]})
            assert updated.title == "New"
            assert updated.tags == ["a"]
            assert await client.delete_entity("n1") is None
        finally:
            await client.aclose()

    asyncio.run(scenario())
    assert bodies == [{"title": "New", "tags": ["a"]}]


def test_refresh_replaces_the_access_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/auth/refresh"
        assert "authorization" not in request.headers
        assert json.loads(request.content) == {"refreshToken": "r1"}
        return httpx.Response(200, json={"token": "tok2"})

    async def scenario() -> Credentials:
        client = _client(handler, token="expired", refresh="r1")
        try:
            assert await client.refresh_credentials() is True
        finally:
            await client.aclose()
        return client.credentials

    credentials = asyncio.run(scenario())
    assert credentials.token == "tok2"
    assert credentials.refresh_token == "r1"


def test_rejected_refresh_clears_credentials() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "expired"})

    async def scenario() -> Credentials:
        client = _client(handler, token="expired", refresh="r1")
        try:
            assert await client.refresh_credentials() is False
        finally:
            await client.aclose()
        return client.credentials

    credentials = asyncio.run(scenario())
    assert credentials.token is None
    assert not credentials.can_refresh


def test_malformed_entity_payloads_are_remote_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/notes/reminders/pending":
            return httpx.Response(200, json=[{"_id": "n1", "type": "sticker"}])
        return httpx.Response(201, json={"title": "no id here"})

    async def scenario() -> None:
        client = _client(handler)
        try:
            with pytest.raises(RemoteApiError) as info:
                await client.create_entity({"title": "no id here"})
            assert info.value.method == "POST"
            with pytest.raises(RemoteApiError):
                await client.pending_reminders()
        finally:
            await client.aclose()

    asyncio.run(scenario())
