"""Explicitly constructed bundle of the client, cache, engine and pollers."""

from __future__ import annotations

import logging

import httpx

from .auth import Credentials
from .cache import LocalCache
from .engine import SyncEngine
from .errors import NotesError
from .models import SyncReport
from .notes_client import NotesApiClient
from .reminders import ReminderPoller
from .settings import Settings
from .tree import FolderNavigation

logger = logging.getLogger(__name__)


class NotesRuntime:
    """One session's worth of state; create, `start()`, then `aclose()`."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.credentials = Credentials(settings.notes_token, settings.notes_refresh_token)
        self.client = NotesApiClient(
            base_url=str(settings.notes_api_base_url),
            credentials=self.credentials,
            timeout_seconds=settings.http_timeout_seconds,
            transport=transport,
        )
        self.cache = LocalCache(settings.notes_cache_path)
        self.engine = SyncEngine(
            self.client,
            self.cache,
            page_size=settings.notes_page_size,
            online=settings.notes_start_online,
        )
        self.navigation = FolderNavigation()
        self.reminders = ReminderPoller(
            self.engine,
            interval_seconds=settings.reminder_poll_seconds,
        )

    async def start(self) -> None:
        await self.cache.connect()
        await self.engine.load()
        if self.engine.online:
            # Push whatever an earlier offline session left pending.
            try:
                await self.set_connectivity(True)
            except NotesError as exc:
                logger.warning("Startup sync failed: %s", exc)
        if self.settings.reminders_enabled:
            self.reminders.start()

    async def aclose(self) -> None:
        await self.reminders.stop()
        await self.client.aclose()
        await self.cache.close()

    async def __aenter__(self) -> NotesRuntime:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def set_connectivity(self, online: bool) -> SyncReport | None:
        """Connectivity signal; going online runs the sync sweep."""
        if not online:
            self.engine.set_online(False)
            return None
        report = await self.engine.on_reconnect()
        for old_id, new_id in report.remapped.items():
            self.navigation.rename(old_id, new_id)
        return report

    def prune_navigation(self) -> None:
        existing = {e.id for e in self.engine.entities}
        self.navigation.forget(f for f in self.navigation.history if f not in existing)
