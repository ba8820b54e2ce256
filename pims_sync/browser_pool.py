"""Bounded pool of headless browsers and isolated browser contexts.

One *engine* is a browser process, one *context* is an isolated cookie jar
inside it, one *session* is an open page on a context that a caller has
checked out. All bookkeeping happens under a single lock; callers only
ever see :meth:`BrowserPool.acquire`, :meth:`BrowserPool.release` and
:meth:`BrowserPool.close_idle_contexts` (plus the scoped helpers built on
them).
"""
from __future__ import annotations
import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog

from . import settings
from .errors import PoolExhaustedError

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

    from .auth import PimsAuthClient

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class PlaywrightLauncher:
    """Starts the playwright driver once and launches chromium on demand."""

    def __init__(self, headless: bool = settings.PIMS_HEADLESS) -> None:
        self.headless = headless
        self._playwright: Optional["Playwright"] = None

    async def launch(self) -> "Browser":
        if self._playwright is None:
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-dev-shm-usage", "--no-sandbox"],
        )

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass(eq=False)
class EngineRecord:
    browser: "Browser"
    created_at: float
    last_used: float
    context_count: int = 0


@dataclass(eq=False)
class ContextRecord:
    engine: EngineRecord
    context: "BrowserContext"
    created_at: float
    last_used: float
    in_use: bool = False


@dataclass(eq=False)
class Session:
    page: "Page"
    context: "BrowserContext"
    record: ContextRecord


class BrowserPool:
    def __init__(
        self,
        *,
        max_engines: int = settings.POOL_MAX_BROWSERS,
        max_contexts_per_engine: int = settings.POOL_MAX_CONTEXTS_PER_BROWSER,
        default_timeout: float = settings.POOL_DEFAULT_TIMEOUT,
        acquire_timeout: float = settings.POOL_ACQUIRE_TIMEOUT,
        soft_limit: bool = True,
        launcher: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_engines = max_engines
        self.max_contexts_per_engine = max_contexts_per_engine
        self.default_timeout = default_timeout
        self.acquire_timeout = acquire_timeout
        self.soft_limit = soft_limit
        self._launcher = launcher if launcher is not None else PlaywrightLauncher()
        self._clock = clock

        self._engines: list[EngineRecord] = []
        self._contexts: list[ContextRecord] = []
        self._lock = asyncio.Lock()
        self._released = asyncio.Condition(self._lock)
        self._waiters = 0
        self._closed = False

    # ------------------------------------------------------------ checkout ---
    async def acquire(self) -> Session:
        record = await self._checkout()
        try:
            page = await record.context.new_page()
            page.set_default_timeout(self.default_timeout * 1000)
        except Exception:
            await self._checkin(record)
            raise
        return Session(page=page, context=record.context, record=record)

    async def release(self, session: Session) -> None:
        try:
            await session.page.close()
        except Exception as exc:
            logger.warning("Failed to close pooled page", error=str(exc))
        await self._checkin(session.record)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Scoped acquisition; the session is released on every exit path."""
        session = await self.acquire()
        try:
            yield session
        finally:
            await self.release(session)

    async def with_page(self, fn: Callable[[Session], Awaitable[T]]) -> T:
        async with self.session() as session:
            return await fn(session)

    async def with_authenticated_page(
        self, auth_client: "PimsAuthClient", fn: Callable[[Session], Awaitable[T]]
    ) -> T:
        async with self.session() as session:
            await auth_client.apply_auth(session.page)
            return await fn(session)

    async def _checkout(self) -> ContextRecord:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.acquire_timeout

        async with self._released:
            while True:
                if self._closed:
                    raise PoolExhaustedError("Browser pool is closed")
                self._prune_disconnected()

                record = self._find_idle_context()
                if record is not None:
                    self._mark_in_use(record)
                    return record

                engine = self._engine_with_capacity()
                if engine is None and len(self._engines) < self.max_engines:
                    engine = await self._launch_engine()
                if engine is not None:
                    return await self._open_context(engine)

                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                self._waiters += 1
                try:
                    await asyncio.wait_for(self._released.wait(), remaining)
                except asyncio.TimeoutError:
                    break
                finally:
                    self._waiters -= 1

            if not self.soft_limit or not self._engines:
                raise PoolExhaustedError(
                    f"No browser context available after {self.acquire_timeout}s "
                    f"(max_engines={self.max_engines}, "
                    f"max_contexts_per_engine={self.max_contexts_per_engine})"
                )
            # soft limit: overcommit the least recently used engine rather than fail the caller
            engine = min(self._engines, key=lambda e: e.last_used)
            logger.warning(
                "Browser pool saturated, adding context over limit",
                engine_contexts=engine.context_count,
                max_contexts_per_engine=self.max_contexts_per_engine,
            )
            return await self._open_context(engine)

    async def _checkin(self, record: ContextRecord) -> None:
        async with self._released:
            now = self._clock()
            record.in_use = False
            record.last_used = now
            record.engine.last_used = now
            if record.engine not in self._engines and record in self._contexts:
                # engine died while the page was checked out
                self._contexts.remove(record)
            self._released.notify()

    # ------------------------------------------------------------ internals --
    def _find_idle_context(self) -> Optional[ContextRecord]:
        for record in self._contexts:
            if not record.in_use:
                return record
        return None

    def _engine_with_capacity(self) -> Optional[EngineRecord]:
        for engine in self._engines:
            if engine.context_count < self.max_contexts_per_engine:
                return engine
        return None

    def _mark_in_use(self, record: ContextRecord) -> None:
        now = self._clock()
        record.in_use = True
        record.last_used = now
        record.engine.last_used = now

    async def _launch_engine(self) -> EngineRecord:
        browser = await self._launcher.launch()
        now = self._clock()
        engine = EngineRecord(browser=browser, created_at=now, last_used=now)
        self._engines.append(engine)
        logger.info("Launched browser engine", engines=len(self._engines), max_engines=self.max_engines)
        return engine

    async def _open_context(self, engine: EngineRecord) -> ContextRecord:
        context = await engine.browser.new_context()
        now = self._clock()
        record = ContextRecord(engine=engine, context=context, created_at=now, last_used=now, in_use=True)
        engine.context_count += 1
        engine.last_used = now
        self._contexts.append(record)
        logger.debug("Opened browser context", engine_contexts=engine.context_count, contexts=len(self._contexts))
        return record

    def _prune_disconnected(self) -> None:
        dead = [e for e in self._engines if not e.browser.is_connected()]
        if not dead:
            return
        for engine in dead:
            self._engines.remove(engine)
        self._contexts = [c for c in self._contexts if c.engine not in dead or c.in_use]
        logger.warning("Dropped disconnected browser engines", dropped=len(dead), engines=len(self._engines))

    # ------------------------------------------------------------ eviction ---
    async def close_idle_contexts(self, max_idle: float = settings.POOL_IDLE_TIMEOUT) -> int:
        """Close contexts idle for longer than ``max_idle`` seconds.

        Engines left without contexts are shut down too. Meant to be called
        periodically from outside; the pool never schedules itself.
        """
        async with self._lock:
            now = self._clock()
            stale = [c for c in self._contexts if not c.in_use and now - c.last_used > max_idle]
            for record in stale:
                self._contexts.remove(record)
                record.engine.context_count = max(0, record.engine.context_count - 1)
                try:
                    await record.context.close()
                except Exception as exc:
                    logger.warning("Failed to close idle context", error=str(exc))

            empty = [e for e in self._engines if e.context_count == 0 and now - e.last_used > max_idle]
            for engine in empty:
                self._engines.remove(engine)
                try:
                    await engine.browser.close()
                except Exception as exc:
                    logger.warning("Failed to close idle browser", error=str(exc))

        if stale or empty:
            logger.info("Closed idle browser resources", contexts=len(stale), engines=len(empty))
        return len(stale)

    async def close(self) -> None:
        async with self._released:
            self._closed = True
            for record in self._contexts:
                try:
                    await record.context.close()
                except Exception as exc:
                    logger.warning("Failed to close context", error=str(exc))
            for engine in self._engines:
                try:
                    await engine.browser.close()
                except Exception as exc:
                    logger.warning("Failed to close browser", error=str(exc))
            self._contexts.clear()
            self._engines.clear()
            self._released.notify_all()

        stop = getattr(self._launcher, "stop", None)
        if stop is not None:
            await stop()

    def get_stats(self) -> dict[str, int]:
        in_use = sum(1 for c in self._contexts if c.in_use)
        return {
            "engines": len(self._engines),
            "contexts": len(self._contexts),
            "in_use": in_use,
            "available": len(self._contexts) - in_use,
            "waiters": self._waiters,
            "max_engines": self.max_engines,
            "max_contexts_per_engine": self.max_contexts_per_engine,
        }
