"""Application settings (env/.env)."""

from __future__ import annotations

from pathlib import Path

from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SortOrder


def _default_cache_path() -> Path:
    return Path.home() / ".mcp-notes-sync" / "cache.sqlite"


class Settings(BaseSettings):
    """Settings for the MCP server, the notes API and the local cache."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    notes_api_base_url: AnyHttpUrl = Field(
        default="http://localhost:4002/api",
        alias="NOTES_API_BASE_URL",
    )
    # Issued by the external auth service; absence means every remote call is
    # rejected as unauthorized.
    notes_token: str | None = Field(default=None, alias="NOTES_TOKEN")
    notes_refresh_token: str | None = Field(default=None, alias="NOTES_REFRESH_TOKEN")

    notes_cache_path: Path = Field(
        default_factory=_default_cache_path,
        alias="NOTES_CACHE_PATH",
    )
    notes_page_size: int = Field(default=20, alias="NOTES_PAGE_SIZE", ge=1, le=100)
    notes_sort_order: SortOrder = Field(default=SortOrder.RECENT, alias="NOTES_SORT_ORDER")
    notes_start_online: bool = Field(default=True, alias="NOTES_START_ONLINE")

    reminders_enabled: bool = Field(default=True, alias="REMINDERS_ENABLED")
    reminder_poll_seconds: float = Field(
        default=60.0,
        alias="REMINDER_POLL_SECONDS",
        gt=0,
    )

    mcp_api_key: str = Field(alias="MCP_API_KEY", min_length=1)
    mcp_host: str = Field(default="127.0.0.1", alias="MCP_HOST")
    mcp_port: int = Field(default=5005, alias="MCP_PORT", ge=1, le=65535)

    http_timeout_seconds: float = Field(
        default=8.0,
        alias="HTTP_TIMEOUT_SECONDS",
        gt=0,
    )
    log_level: str = Field(default="info", alias="LOG_LEVEL")
