"""Consultation (SOAP notes, discharge summary, billed lines) reads."""
from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Any, Optional

import structlog
from pydantic import BaseModel, Field

from . import settings
from .errors import ErrorType, NotFoundError, classify_error, error_message
from .models import PimsConsultation
from .page_fetch import page_fetch_json
from .retry import with_retry

if TYPE_CHECKING:
    from .auth import PimsAuthClient
    from .browser_pool import BrowserPool, Session

logger = structlog.get_logger(__name__)


def consultation_path(consultation_id: str) -> str:
    return f"/consultations/{consultation_id}/page-data"


class ConsultationFetchError(BaseModel):
    type: ErrorType
    message: str


class ConsultationFetchResult(BaseModel):
    consultation: PimsConsultation | None = None
    error: ConsultationFetchError | None = None


class ConsultationBatchStats(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    network_errors: int = 0
    not_found: int = 0


class ConsultationBatchResult(BaseModel):
    consultations: dict[str, PimsConsultation] = Field(default_factory=dict)
    errors: dict[str, ConsultationFetchError] = Field(default_factory=dict)
    stats: ConsultationBatchStats = Field(default_factory=ConsultationBatchStats)


def format_products_services(lines: Optional[list[dict[str, Any]]], declined: bool) -> Optional[str]:
    if not lines:
        return None
    selected = [line for line in lines if bool(line.get("isDeclined")) == declined]
    if not selected:
        return None
    parts = []
    for line in selected:
        name = str(line.get("productService") or "").strip()
        quantity = line.get("quantity")
        if quantity and quantity != 1:
            parts.append(f"{name} (Qty: {quantity})")
        else:
            parts.append(name)
    return "; ".join(parts)


def map_consultation(payload: dict[str, Any], consultation_id: str) -> PimsConsultation:
    consultation = payload.get("consultation") or {}
    consultation_notes = payload.get("consultationNotes") or {}
    lines = payload.get("consultationLines") or []

    return PimsConsultation(
        id=consultation_id,
        notes=consultation.get("notes") or None,
        discharge_summary=consultation.get("dischargeSummary") or consultation_notes.get("notes") or None,
        products_services=format_products_services(lines, declined=False),
        declined_products_services=format_products_services(lines, declined=True),
        status=consultation.get("status") or "unknown",
        reason=consultation.get("reason") or None,
        date=consultation.get("date") or None,
    )


class ConsultationClient:
    def __init__(
        self,
        pool: "BrowserPool",
        auth: "PimsAuthClient",
        *,
        base_url: str = settings.PIMS_BASE_URL,
        batch_size: int = settings.CONSULTATION_BATCH_SIZE,
        request_delay: float = settings.CONSULTATION_REQUEST_DELAY,
        request_timeout: float = 15.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep=asyncio.sleep,
    ) -> None:
        self._pool = pool
        self._auth = auth
        self.base_url = base_url.rstrip("/")
        self.batch_size = max(1, batch_size)
        self.request_delay = request_delay
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def fetch_consultation(self, consultation_id: str) -> ConsultationFetchResult:
        """Fetch one consultation, retrying transient failures."""
        if not self._auth.is_authenticated():
            return ConsultationFetchResult(
                error=ConsultationFetchError(type=ErrorType.AUTH, message="Not authenticated"),
            )

        url = f"{self.base_url}{consultation_path(consultation_id)}"

        async def _fetch(session: "Session") -> PimsConsultation:
            # fetch() from about:blank would be cross-origin
            await session.page.goto(self.base_url, wait_until="domcontentloaded", timeout=self.request_timeout * 1000)
            payload = await page_fetch_json(session.page, url, timeout=self.request_timeout)
            if not isinstance(payload, dict) or not payload.get("consultation"):
                raise NotFoundError(f"Invalid consultation response for {consultation_id}")
            return map_consultation(payload, consultation_id)

        def _on_retry(error: BaseException, attempt: int, delay: float) -> None:
            logger.info(
                "Retrying consultation fetch",
                consultation_id=consultation_id,
                attempt=attempt,
                delay=round(delay, 2),
                error=error_message(error),
            )

        result = await with_retry(
            lambda: self._pool.with_authenticated_page(self._auth, _fetch),
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            on_retry=_on_retry,
            sleep=self._sleep,
        )
        if result.success and result.data is not None:
            return ConsultationFetchResult(consultation=result.data)

        return ConsultationFetchResult(
            error=ConsultationFetchError(
                type=classify_error(result.error),
                message=error_message(result.error) if result.error else "Unknown error",
            ),
        )

    async def fetch_consultations(
        self, consultation_ids: list[str], batch_size: Optional[int] = None
    ) -> ConsultationBatchResult:
        """Fetch in small concurrent groups with a pause between groups.

        Groups stay small on purpose: each fetch holds a browser context for
        its whole duration and bigger groups exhaust the pool.
        """
        result = ConsultationBatchResult(stats=ConsultationBatchStats(total=len(consultation_ids)))
        stats = result.stats
        total = len(consultation_ids)
        batch_size = max(1, batch_size or self.batch_size)

        for offset in range(0, total, batch_size):
            group = consultation_ids[offset:offset + batch_size]
            fetched = await asyncio.gather(*(self.fetch_consultation(cid) for cid in group))

            for cid, item in zip(group, fetched):
                if item.consultation is not None:
                    result.consultations[cid] = item.consultation
                    stats.successful += 1
                elif item.error is not None:
                    result.errors[cid] = item.error
                    stats.failed += 1
                    if item.error.type == ErrorType.NETWORK:
                        stats.network_errors += 1
                    elif item.error.type == ErrorType.NOT_FOUND:
                        stats.not_found += 1

            processed = min(offset + batch_size, total)
            last_group = processed >= total
            if not last_group:
                await self._sleep(self.request_delay)

            if processed // 10 > offset // 10 or last_group:
                logger.info(
                    "Consultation fetch progress",
                    processed=processed,
                    total=total,
                    successful=stats.successful,
                    failed=stats.failed,
                    network_errors=stats.network_errors,
                    pool=self._pool.get_stats(),
                )

        return result
