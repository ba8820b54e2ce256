"""Best-effort AI generation after a case is enriched.

Nothing in here is awaited by a sync phase. :class:`AiDispatcher` turns
each job into a detached task (or, in background mode, a queued job) and
reports failures on its own logger. A sync result is final before any AI
call finishes.
"""
from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel

from . import settings
from .metadata import merge_entities
from .models import ExtractedEntities, PimsConsultation
from .store import CaseStore

logger = structlog.get_logger(__name__)


class AiJob(BaseModel):
    case_id: str
    clinic_id: str
    clinical_text: str
    consultation: Optional[PimsConsultation] = None


class AiGenerator(Protocol):
    async def extract_entities(self, text: str) -> Optional[ExtractedEntities]: ...

    async def generate_discharge_summary(self, case_id: str, consultation: Optional[PimsConsultation]) -> Optional[str]: ...

    async def generate_call_intelligence(self, case_id: str) -> Any: ...


class JobScheduler(Protocol):
    async def schedule_batch(self, jobs: list[dict[str, Any]]) -> list[str]: ...


def _headers(token: str) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class HttpAiGenerator:
    def __init__(self, base_url: str = settings.AI_SERVICE_URL, token: str = settings.AI_SERVICE_TOKEN) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        async with httpx.AsyncClient(http2=True, timeout=15) as client:
            resp = await client.post(f"{self.base_url}{path}", headers=_headers(self.token), json=body)
            resp.raise_for_status()
            return resp.json()

    async def extract_entities(self, text: str) -> Optional[ExtractedEntities]:
        payload = await self._post("/entities/extract", {"text": text})
        entities = payload.get("entities") if isinstance(payload, dict) else None
        if not entities:
            return None
        return ExtractedEntities.model_validate(entities)

    async def generate_discharge_summary(self, case_id: str, consultation: Optional[PimsConsultation]) -> Optional[str]:
        body = {
            "caseId": case_id,
            "consultation": consultation.model_dump(by_alias=True, mode="json") if consultation else None,
        }
        payload = await self._post("/discharge-summary", body)
        return payload.get("summary") if isinstance(payload, dict) else None

    async def generate_call_intelligence(self, case_id: str) -> Any:
        return await self._post("/call-intelligence", {"caseId": case_id})


class HttpJobScheduler:
    """Posts a batch of jobs to the background queue; returns the message ids."""

    def __init__(self, url: str = settings.JOB_QUEUE_URL, token: str = settings.JOB_QUEUE_TOKEN) -> None:
        self.url = url
        self.token = token

    async def schedule_batch(self, jobs: list[dict[str, Any]]) -> list[str]:
        async with httpx.AsyncClient(http2=True, timeout=15) as client:
            resp = await client.post(self.url, headers=_headers(self.token), json=jobs)
            resp.raise_for_status()
            payload = resp.json()
        if isinstance(payload, list):
            return [str(item.get("messageId", "")) if isinstance(item, dict) else str(item) for item in payload]
        return [str(m) for m in payload.get("messageIds", [])]


class AiDispatcher:
    def __init__(
        self,
        store: CaseStore,
        generator: Optional[AiGenerator] = None,
        scheduler: Optional[JobScheduler] = None,
        *,
        background: bool = settings.AI_BACKGROUND_MODE,
    ) -> None:
        self._store = store
        self._generator = generator
        self._scheduler = scheduler
        self.background = background and scheduler is not None
        self._queued: list[AiJob] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._generator is not None or self.background

    def dispatch(self, job: AiJob) -> None:
        """Hand a job off. Returns immediately."""
        if self.background:
            self._queued.append(job)
        elif self._generator is not None:
            self._spawn(self._run_inline(job))

    def flush(self) -> None:
        """Ship queued background jobs as one batch, detached."""
        if not self._queued:
            return
        jobs, self._queued = self._queued, []
        self._spawn(self._schedule(jobs))

    async def drain(self) -> None:
        """Wait for outstanding tasks. For shutdown and tests only."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_inline(self, job: AiJob) -> None:
        log = logger.bind(case_id=job.case_id, clinic_id=job.clinic_id)
        try:
            entities = await self._generator.extract_entities(job.clinical_text)
            if entities is not None:
                case = await self._store.get_case(job.case_id)
                if case is not None:
                    metadata = case.metadata.model_copy(
                        update={"entities": merge_entities(case.metadata.entities, entities)}
                    )
                    await self._store.update_case(job.case_id, metadata=metadata, updated_at=datetime.now())

            await self._generator.generate_discharge_summary(job.case_id, job.consultation)
            await self._generator.generate_call_intelligence(job.case_id)
            log.info("AI generation finished")
        except Exception as exc:
            log.warning("AI generation failed", error=str(exc))

    async def _schedule(self, jobs: list[AiJob]) -> None:
        try:
            message_ids = await self._scheduler.schedule_batch(
                [{"type": "case-ai-generation", **job.model_dump(mode="json", by_alias=True)} for job in jobs]
            )
            logger.info("Queued AI generation jobs", jobs=len(jobs), message_ids=len(message_ids))
        except Exception as exc:
            logger.warning("Failed to queue AI generation jobs", jobs=len(jobs), error=str(exc))
