"""Bearer credentials handed over by the external auth service."""

from __future__ import annotations

from .errors import Unauthorized


class Credentials:
    """Holds the current access token and the refresh token."""

    def __init__(self, token: str | None = None, refresh_token: str | None = None) -> None:
        self._token = token or None
        self._refresh_token = refresh_token or None

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def refresh_token(self) -> str | None:
        return self._refresh_token

    @property
    def can_refresh(self) -> bool:
        return self._refresh_token is not None

    def headers(self) -> dict[str, str]:
        if not self._token:
            raise Unauthorized("No credential available; please sign in")
        return {"Authorization": f"Bearer {self._token}"}

    def update(self, token: str, refresh_token: str | None = None) -> None:
        self._token = token
        if refresh_token:
            self._refresh_token = refresh_token

    def clear(self) -> None:
        self._token = None
        self._refresh_token = None
