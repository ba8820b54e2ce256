"""Phase 1: pull appointments from the PIMS into local cases."""
from __future__ import annotations
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional

import structlog

from .audit import SyncAuditRecorder
from .mapping import (
    build_external_id,
    build_source,
    end_of_day,
    is_urgent_type,
    map_appointment_status,
    map_appointment_type,
    start_of_day,
)
from .metadata import appointment_changed, apply_appointment
from .models import Case, PimsAppointment, ProgressUpdate, SyncError, SyncResult, SyncStats, SyncType
from .provider import PimsProvider
from .store import CaseStore
from .throttler import ProgressThrottler

logger = structlog.get_logger(__name__)

DEFAULT_FORWARD_DAYS = 7

Outcome = Literal["created", "updated", "skipped"]


def default_inbound_range(now: datetime, days: int = DEFAULT_FORWARD_DAYS) -> tuple[datetime, datetime]:
    """Today 00:00 through the end of the day ``days`` from now."""
    return start_of_day(now), end_of_day(now + timedelta(days=days))


class InboundSyncService:
    def __init__(
        self,
        store: CaseStore,
        provider: PimsProvider,
        clinic_id: str,
        *,
        audit: Optional[SyncAuditRecorder] = None,
        clock: Callable[[], datetime] = datetime.now,
        progress_interval: float = 2.0,
    ) -> None:
        self._store = store
        self._provider = provider
        self.clinic_id = clinic_id
        self._audit = audit or SyncAuditRecorder(store, clinic_id, clock=clock)
        self._clock = clock
        self.progress_interval = progress_interval

    async def sync(self, date_range: Optional[tuple[datetime, datetime]] = None) -> SyncResult:
        sync_id = str(uuid.uuid4())
        started = time.monotonic()
        stats = SyncStats()
        errors: list[SyncError] = []
        start, end = date_range or default_inbound_range(self._clock())
        log = logger.bind(sync_id=sync_id, clinic_id=self.clinic_id, provider=self._provider.name)
        log.info("Starting inbound sync", start=start.isoformat(), end=end.isoformat())

        await self._audit.start(sync_id, SyncType.INBOUND)
        throttler = ProgressThrottler(self._audit.write_progress, min_interval=self.progress_interval)

        try:
            appointments = await self._provider.fetch_appointments(
                start, end, raise_on_error=True, include_blocks=True
            )
            stats.total = len(appointments)
            log.info("Fetched appointments from PIMS", count=stats.total)
            await throttler.queue_update(ProgressUpdate(
                sync_id=sync_id, total_items=stats.total, processed_items=0, progress_percentage=0,
            ), force=True)

            for processed, appointment in enumerate(appointments, start=1):
                if appointment.is_block:
                    stats.skipped += 1
                else:
                    try:
                        outcome = await self._process_appointment(appointment)
                        setattr(stats, outcome, getattr(stats, outcome) + 1)
                    except Exception as exc:
                        stats.failed += 1
                        errors.append(SyncError(
                            message=f"Failed to process appointment {appointment.id}: {exc}",
                            context={"appointment_id": appointment.id},
                        ))
                        log.error("Failed to process appointment", appointment_id=appointment.id, error=str(exc))

                await throttler.queue_update(ProgressUpdate(
                    sync_id=sync_id,
                    total_items=stats.total,
                    processed_items=processed,
                    progress_percentage=processed * 100 // stats.total,
                ))

            await throttler.flush()
            await self._audit.finish(sync_id, stats, success=not errors)
        except Exception as exc:
            await throttler.flush()
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error("Inbound sync failed", error=str(exc), duration_ms=duration_ms)
            await self._audit.finish(sync_id, stats, success=False, error_message=str(exc))
            return SyncResult(
                success=False, sync_id=sync_id, stats=stats, duration_ms=duration_ms,
                errors=[SyncError(message=str(exc))],
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Inbound sync completed", stats=stats.model_dump(), duration_ms=duration_ms, has_errors=bool(errors))
        return SyncResult(
            success=not errors, sync_id=sync_id, stats=stats, duration_ms=duration_ms, errors=errors or None,
        )

    async def _process_appointment(self, appointment: PimsAppointment) -> Outcome:
        provider = self._provider.name
        external_id = build_external_id(provider, appointment.id)
        now = self._clock()

        existing = await self._store.find_case_by_external_id(external_id, self.clinic_id)
        if existing is not None:
            if not appointment_changed(existing.metadata.pims_appointment, appointment):
                return "skipped"
            await self._store.update_case(
                existing.id,
                metadata=apply_appointment(existing.metadata, appointment, provider=provider, now=now),
                scheduled_at=appointment.start_time,
                updated_at=now,
            )
            logger.debug("Updated case from appointment", case_id=existing.id, external_id=external_id)
            return "updated"

        case_type = map_appointment_type(appointment.type)
        case = await self._store.insert_case(Case(
            id=str(uuid.uuid4()),
            clinic_id=self.clinic_id,
            external_id=external_id,
            status=map_appointment_status(appointment.status),
            type=case_type,
            scheduled_at=appointment.start_time,
            metadata=apply_appointment(None, appointment, provider=provider, now=now),
            source=build_source(provider),
            is_urgent=is_urgent_type(case_type),
            visibility="private",
            created_at=now,
            updated_at=now,
        ))
        logger.debug("Created case from appointment", case_id=case.id, external_id=external_id)
        return "created"
