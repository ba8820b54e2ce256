"""Coalesce progress updates so a long sync does not hammer the audit table."""
from __future__ import annotations
import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from .models import ProgressUpdate

logger = structlog.get_logger(__name__)


class ProgressThrottler:
    """At most one write per ``min_interval`` seconds, last update wins.

    The first update, a forced update and a 100% update are written
    straight away. Anything else arriving inside the interval is buffered
    and written by a single deferred task when the interval runs out.
    """

    def __init__(
        self,
        writer: Callable[[ProgressUpdate], Awaitable[Any]],
        min_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._writer = writer
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep

        self._last_write: Optional[float] = None
        self._pending: Optional[ProgressUpdate] = None
        self._timer: Optional[asyncio.Task] = None

    @property
    def pending(self) -> Optional[ProgressUpdate]:
        return self._pending

    async def queue_update(self, update: ProgressUpdate, force: bool = False) -> None:
        now = self._clock()
        due = (
            force
            or self._last_write is None
            or update.progress_percentage >= 100
            or now - self._last_write >= self.min_interval
        )
        if due:
            self._cancel_timer()
            self._pending = None
            await self._write(update)
            return

        self._pending = update
        if self._timer is None:
            remaining = self.min_interval - (now - self._last_write)
            self._timer = asyncio.create_task(self._deferred_write(remaining))

    async def flush(self) -> None:
        self._cancel_timer()
        if self._pending is not None:
            update, self._pending = self._pending, None
            await self._write(update)

    async def _deferred_write(self, delay: float) -> None:
        await self._sleep(delay)
        self._timer = None
        if self._pending is not None:
            update, self._pending = self._pending, None
            await self._write(update)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
            self._timer = None

    async def _write(self, update: ProgressUpdate) -> None:
        self._last_write = self._clock()
        try:
            await self._writer(update)
        except Exception as exc:
            logger.warning(
                "Failed to write sync progress",
                sync_id=update.sync_id,
                progress=update.progress_percentage,
                error=str(exc),
            )
