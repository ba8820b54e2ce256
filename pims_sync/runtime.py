"""Process-wide wiring: one pool, one auth session, one orchestrator per process."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

import structlog

from . import settings
from .ai import AiDispatcher, HttpAiGenerator, HttpJobScheduler
from .browser_pool import BrowserPool
from .models import Credentials
from .orchestrator import SyncOrchestrator
from .provider import PimsProvider
from .store import CaseStore, InMemoryCaseStore

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    pool: BrowserPool
    provider: PimsProvider
    store: CaseStore
    dispatcher: AiDispatcher
    orchestrator: SyncOrchestrator

    async def ensure_authenticated(self) -> bool:
        return await self.provider.ensure_authenticated()

    async def close(self) -> None:
        await self.dispatcher.drain()
        await self.provider.close()


def configured_credentials() -> Optional[Credentials]:
    if not settings.PIMS_USERNAME or not settings.PIMS_PASSWORD:
        return None
    return Credentials(username=settings.PIMS_USERNAME, password=settings.PIMS_PASSWORD)


def build_runtime(store: Optional[CaseStore] = None, clinic_id: str = settings.CLINIC_ID) -> Runtime:
    # the clinic database adapter is injected by the host; in-memory otherwise
    store = store or InMemoryCaseStore()
    pool = BrowserPool()
    provider = PimsProvider(pool, credentials=configured_credentials())
    dispatcher = AiDispatcher(
        store,
        generator=HttpAiGenerator(),
        scheduler=HttpJobScheduler() if settings.AI_BACKGROUND_MODE else None,
        background=settings.AI_BACKGROUND_MODE,
    )
    orchestrator = SyncOrchestrator(store, provider, clinic_id, dispatcher=dispatcher)
    logger.info(
        "Sync runtime ready",
        clinic_id=clinic_id,
        provider=provider.name,
        base_url=settings.PIMS_BASE_URL,
        ai_background=dispatcher.background,
    )
    return Runtime(pool=pool, provider=provider, store=store, dispatcher=dispatcher, orchestrator=orchestrator)


_runtime: Optional[Runtime] = None


async def get_runtime() -> Runtime:
    # no await between the check and the build
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


async def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None
