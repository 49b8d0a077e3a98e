"""Async client for the notes server (the store of record)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .auth import Credentials
from .errors import NetworkUnavailable, NotFound, RemoteApiError, Unauthorized, ValidationError
from .models import Entity, from_remote

logger = logging.getLogger(__name__)


class NotesApiClient:
    """Thin wrapper around the notes REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        credentials: Credentials,
        timeout_seconds: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        authenticated: bool = True,
    ) -> Any:
        method = method.upper()
        url_path = path if path.startswith("/") else f"/{path}"
        headers = self._credentials.headers() if authenticated else {}

        try:
            resp = await self._client.request(
                method, url_path, params=params, json=json_body, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.warning("Timed out on %s %s", method, url_path)
            raise NetworkUnavailable("Notes server did not answer in time") from exc
        except httpx.TransportError as exc:
            logger.warning("Transport error on %s %s: %s", method, url_path, exc)
            raise NetworkUnavailable() from exc

        if resp.status_code in (401, 403):
            raise Unauthorized()
        if resp.status_code == 404:
            raise NotFound(url_path.rsplit("/", 1)[-1])
        if resp.status_code in (400, 422):
            raise ValidationError(_error_message(resp) or "The server rejected the request")
        if resp.status_code >= 400:
            raise RemoteApiError(
                status_code=resp.status_code,
                method=method,
                path=url_path,
                response_text=(resp.text or "").strip(),
            )

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    async def list_entities(
        self,
        parent_id: str | None,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Entity], int]:
        """One page of the direct children of `parent_id` (root when None)."""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if parent_id:
            params["parentId"] = parent_id
        raw = await self.request_json("GET", "/notes", params=params)
        raw = _expect_dict(raw, "GET", "/notes")
        entities = [_decode(item, "GET", "/notes") for item in raw.get("notes") or []]
        try:
            total = int(raw.get("totalCount") or 0)
        except (TypeError, ValueError) as exc:
            raise _malformed("GET", "/notes", exc) from exc
        return entities, total

    async def get_entity(self, entity_id: str) -> Entity:
        path = f"/notes/{entity_id}"
        return _decode(await self.request_json("GET", path), "GET", path)

    async def create_entity(self, fields: dict[str, Any]) -> Entity:
        raw = await self.request_json("POST", "/notes", json_body=fields)
        return _decode(raw, "POST", "/notes")

    async def update_entity(self, entity_id: str, fields: dict[str, Any]) -> Entity:
        """Full replacement of the writable fields."""
        path = f"/notes/{entity_id}"
        raw = await self.request_json("PUT", path, json_body=fields)
        return _decode(raw, "PUT", path)

    async def delete_entity(self, entity_id: str) -> None:
        """Delete one entity; for folders the server also drops direct children."""
        await self.request_json("DELETE", f"/notes/{entity_id}")

    async def pending_reminders(self) -> list[Entity]:
        path = "/notes/reminders/pending"
        raw = await self.request_json("GET", path) or []
        if not isinstance(raw, list):
            raise _malformed("GET", path, f"expected a list, got {type(raw).__name__}")
        return [_decode(item, "GET", path) for item in raw]

    async def mark_reminder_sent(self, entity_id: str) -> Entity:
        path = f"/notes/reminders/{entity_id}/mark-sent"
        return _decode(await self.request_json("POST", path), "POST", path)

    async def refresh_credentials(self) -> bool:
        """Exchange the refresh token for a new access token."""
        refresh_token = self._credentials.refresh_token
        if not refresh_token:
            return False
        try:
            raw = await self.request_json(
                "POST",
                "/auth/refresh",
                json_body={"refreshToken": refresh_token},
                authenticated=False,
            )
        except (Unauthorized, NotFound, ValidationError):
            logger.info("Refresh token was rejected")
            self._credentials.clear()
            return False
        token = raw.get("token") if isinstance(raw, dict) else None
        if not token:
            self._credentials.clear()
            return False
        self._credentials.update(token, raw.get("refreshToken"))
        logger.info("Access token refreshed")
        return True


def _expect_dict(data: Any, method: str, path: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise RemoteApiError(
            status_code=200,
            method=method,
            path=path,
            response_text=f"Unexpected JSON type: {type(data).__name__}",
        )
    return data


def _malformed(method: str, path: str, reason: object) -> RemoteApiError:
    return RemoteApiError(
        status_code=200,
        method=method,
        path=path,
        response_text=f"Malformed entity payload: {reason}",
    )


def _decode(data: Any, method: str, path: str) -> Entity:
    try:
        return from_remote(_expect_dict(data, method, path))
    except (TypeError, ValueError) as exc:
        raise _malformed(method, path, exc) from exc


def _error_message(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return None
