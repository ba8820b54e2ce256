"""Phase 2: enrich cases with consultation data (SOAP notes, discharge summary, billed items)."""
from __future__ import annotations
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

import structlog

from .ai import AiDispatcher, AiJob
from .audit import SyncAuditRecorder
from .consultation_client import ConsultationBatchResult
from .errors import ErrorType
from .metadata import apply_consultation
from .models import Case, PimsConsultation, ProgressUpdate, SyncError, SyncResult, SyncStats, SyncType
from .provider import PimsProvider
from .store import CaseStore, fetch_cases_by_ids
from .throttler import ProgressThrottler

logger = structlog.get_logger(__name__)


def needs_enrichment(case: Case) -> bool:
    appointment = case.metadata.pims_appointment
    return bool(appointment and appointment.consultation_id) and case.metadata.pims_consultation is None


def build_consultation_map(cases: list[Case]) -> dict[str, list[str]]:
    """consultation id -> ids of the cases that point at it."""
    mapping: dict[str, list[str]] = {}
    for case in cases:
        consultation_id = case.metadata.pims_appointment.consultation_id
        mapping.setdefault(consultation_id, []).append(case.id)
    return mapping


def clinical_text(consultation: PimsConsultation) -> str:
    return "\n\n".join(part for part in (consultation.notes, consultation.discharge_summary) if part)


class CaseSyncService:
    def __init__(
        self,
        store: CaseStore,
        provider: PimsProvider,
        clinic_id: str,
        *,
        dispatcher: Optional[AiDispatcher] = None,
        audit: Optional[SyncAuditRecorder] = None,
        clock: Callable[[], datetime] = datetime.now,
        progress_interval: float = 1.0,
        network_retry_rounds: int = 1,
    ) -> None:
        self._store = store
        self._provider = provider
        self.clinic_id = clinic_id
        self._dispatcher = dispatcher
        self._audit = audit or SyncAuditRecorder(store, clinic_id, clock=clock)
        self._clock = clock
        self.progress_interval = progress_interval
        self.network_retry_rounds = network_retry_rounds

    async def sync(
        self, start: datetime, end: datetime, parallel_batch_size: Optional[int] = None
    ) -> SyncResult:
        sync_id = str(uuid.uuid4())
        started = time.monotonic()
        stats = SyncStats()
        errors: list[SyncError] = []
        log = logger.bind(sync_id=sync_id, clinic_id=self.clinic_id, provider=self._provider.name)

        # consultations only exist for visits that already happened
        now = self._clock()
        effective_end = min(end, now)
        log.info(
            "Starting case sync",
            start=start.isoformat(),
            end=effective_end.isoformat(),
            capped_at_now=end > now,
        )

        await self._audit.start(sync_id, SyncType.CASES)
        throttler = ProgressThrottler(self._audit.write_progress, min_interval=self.progress_interval)

        try:
            candidates = [
                case for case in await self._store.select_cases(self.clinic_id, start, effective_end)
                if needs_enrichment(case)
            ]
            stats.total = len(candidates)
            log.info("Found cases needing enrichment", count=stats.total)

            if not candidates:
                await throttler.queue_update(ProgressUpdate(
                    sync_id=sync_id, total_items=0, processed_items=0, progress_percentage=100,
                ), force=True)
                await throttler.flush()
                await self._audit.finish(sync_id, stats, success=True)
                return SyncResult(
                    success=True, sync_id=sync_id, stats=stats,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

            consultation_map = build_consultation_map(candidates)
            await throttler.queue_update(ProgressUpdate(
                sync_id=sync_id, total_items=stats.total, processed_items=0, progress_percentage=0,
            ), force=True)

            fetched = await self._fetch_consultations(list(consultation_map), parallel_batch_size, log)
            log.info(
                "Fetched consultations",
                requested=len(consultation_map),
                received=len(fetched.consultations),
                not_found=fetched.stats.not_found,
            )

            # re-read: inbound may have touched these rows since the candidate query
            current = {
                case.id: case
                for case in await fetch_cases_by_ids(self._store, [c.id for c in candidates])
            }

            processed = 0
            for consultation_id, case_ids in consultation_map.items():
                consultation = fetched.consultations.get(consultation_id)
                fetch_error = fetched.errors.get(consultation_id)

                for case_id in case_ids:
                    if consultation is not None:
                        try:
                            await self._enrich_case(current.get(case_id), case_id, consultation)
                            stats.updated += 1
                        except Exception as exc:
                            stats.failed += 1
                            errors.append(SyncError(
                                message=f"Failed to enrich case {case_id}: {exc}",
                                context={"case_id": case_id, "consultation_id": consultation_id},
                            ))
                            log.error("Failed to enrich case", case_id=case_id, consultation_id=consultation_id, error=str(exc))
                    elif fetch_error is None or fetch_error.type == ErrorType.NOT_FOUND:
                        stats.skipped += 1
                        log.debug("Consultation not found for case", case_id=case_id, consultation_id=consultation_id)
                    else:
                        stats.failed += 1
                        errors.append(SyncError(
                            message=f"Failed to fetch consultation {consultation_id}: {fetch_error.message}",
                            context={
                                "case_id": case_id,
                                "consultation_id": consultation_id,
                                "error_type": fetch_error.type.value,
                            },
                        ))

                    processed += 1
                    await throttler.queue_update(ProgressUpdate(
                        sync_id=sync_id,
                        total_items=stats.total,
                        processed_items=processed,
                        progress_percentage=processed * 100 // stats.total,
                    ))

            await throttler.flush()
            if self._dispatcher is not None:
                self._dispatcher.flush()
            await self._audit.finish(sync_id, stats, success=not errors)
        except Exception as exc:
            await throttler.flush()
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error("Case sync failed", error=str(exc), duration_ms=duration_ms)
            await self._audit.finish(sync_id, stats, success=False, error_message=str(exc))
            return SyncResult(
                success=False, sync_id=sync_id, stats=stats, duration_ms=duration_ms,
                errors=[SyncError(message=str(exc))],
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Case sync completed", stats=stats.model_dump(), duration_ms=duration_ms, has_errors=bool(errors))
        return SyncResult(
            success=not errors, sync_id=sync_id, stats=stats, duration_ms=duration_ms, errors=errors or None,
        )

    async def _fetch_consultations(
        self, consultation_ids: list[str], batch_size: Optional[int], log
    ) -> ConsultationBatchResult:
        result = await self._provider.fetch_consultations(consultation_ids, batch_size=batch_size)

        for round_number in range(1, self.network_retry_rounds + 1):
            retry_ids = [cid for cid, err in result.errors.items() if err.type == ErrorType.NETWORK]
            if not retry_ids:
                break
            log.info("Retrying consultations after network errors", round=round_number, count=len(retry_ids))
            retried = await self._provider.fetch_consultations(retry_ids, batch_size=batch_size)
            for cid in retry_ids:
                if cid in retried.consultations:
                    result.consultations[cid] = retried.consultations[cid]
                    del result.errors[cid]
                    result.stats.successful += 1
                    result.stats.failed -= 1
                    result.stats.network_errors -= 1
                elif cid in retried.errors:
                    error = retried.errors[cid]
                    result.errors[cid] = error
                    if error.type != ErrorType.NETWORK:
                        result.stats.network_errors -= 1
                        if error.type == ErrorType.NOT_FOUND:
                            result.stats.not_found += 1
        return result

    async def _enrich_case(self, case: Optional[Case], case_id: str, consultation: PimsConsultation) -> None:
        if case is None:
            raise LookupError(f"case {case_id} could not be loaded")
        await self._store.update_case(
            case_id,
            metadata=apply_consultation(case.metadata, consultation, now=self._clock()),
            updated_at=self._clock(),
        )
        logger.debug(
            "Enriched case with consultation",
            case_id=case_id,
            consultation_id=consultation.id,
            has_notes=bool(consultation.notes),
            has_discharge_summary=bool(consultation.discharge_summary),
        )

        if self._dispatcher is not None and consultation.has_clinical_content:
            self._dispatcher.dispatch(AiJob(
                case_id=case_id,
                clinic_id=self.clinic_id,
                clinical_text=clinical_text(consultation),
                consultation=consultation,
            ))
