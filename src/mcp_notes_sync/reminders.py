"""Periodic reminder check, stoppable with the session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable

from .engine import SyncEngine
from .errors import NotesError
from .models import Entity

logger = logging.getLogger(__name__)

Notifier = Callable[[Entity], Awaitable[None]]

_TAG_RE = re.compile(r"<[^>]*>")


def reminder_text(entity: Entity, limit: int = 100) -> str:
    """Plain-text preview of a note's rich-text content."""
    text = _TAG_RE.sub("", entity.content).strip()
    return text[:limit] or "No content"


async def log_notifier(entity: Entity) -> None:
    logger.info("Reminder: %s - %s", entity.title, reminder_text(entity))


class ReminderPoller:
    """Checks for due reminders on a fixed interval until stopped."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: float = 60.0,
        notify: Notifier = log_notifier,
    ) -> None:
        self._engine = engine
        self._interval = interval_seconds
        self._notify = notify
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="reminder-poller")
        logger.info("Reminder polling every %.0fs", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Reminder polling stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.check()
            except Exception:
                logger.exception("Reminder check crashed; polling continues")

    async def check(self) -> list[Entity]:
        """Notify every due reminder once; returns the ones notified."""
        try:
            due = await self._engine.pending_reminders()
        except NotesError as exc:
            logger.warning("Reminder check failed: %s", exc)
            return []

        notified: list[Entity] = []
        for entity in due:
            try:
                await self._notify(entity)
                await self._engine.acknowledge_reminder(entity.id)
            except NotesError as exc:
                logger.warning("Reminder for '%s' failed: %s", entity.title, exc)
                continue
            notified.append(entity)
        return notified
