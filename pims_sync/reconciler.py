"""Phase 3: bring local case status in line with the PIMS and retire vanished appointments.

Cases are never hard-deleted. A case whose appointment is gone from the
PIMS is closed (status ``reviewed``) and tagged in its metadata so the
move can be told apart from a clinic closing it by hand. If the
appointment shows up again, the marker is cleared and the status follows
the PIMS once more.
"""
from __future__ import annotations
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional

import structlog

from .audit import SyncAuditRecorder
from .mapping import PIMS_SOURCE_PREFIX, build_external_id, end_of_day, map_appointment_status, start_of_day
from .metadata import SOFT_DELETE_REASON, is_soft_deleted, mark_restored, mark_soft_deleted
from .models import ARCHIVED_STATUS, Case, PimsAppointment, ReconciliationResult, SyncError, SyncStats, SyncType
from .provider import PimsProvider
from .store import CaseStore

logger = structlog.get_logger(__name__)

DEFAULT_LOOKBACK_DAYS = 7

Action = Literal["deleted", "updated", "skipped"]


def reconciliation_range(now: datetime, lookback_days: int = DEFAULT_LOOKBACK_DAYS) -> tuple[datetime, datetime]:
    return start_of_day(now - timedelta(days=lookback_days)), end_of_day(now)


class CaseReconciler:
    def __init__(
        self,
        store: CaseStore,
        provider: PimsProvider,
        clinic_id: str,
        *,
        audit: Optional[SyncAuditRecorder] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._provider = provider
        self.clinic_id = clinic_id
        self._audit = audit or SyncAuditRecorder(store, clinic_id, clock=clock)
        self._clock = clock

    async def reconcile(self, lookback_days: int = DEFAULT_LOOKBACK_DAYS) -> ReconciliationResult:
        sync_id = str(uuid.uuid4())
        started = time.monotonic()
        stats = SyncStats()
        errors: list[SyncError] = []
        deleted_cases: list[str] = []
        log = logger.bind(sync_id=sync_id, clinic_id=self.clinic_id, provider=self._provider.name)
        log.info("Starting case reconciliation", lookback_days=lookback_days)

        await self._audit.start(sync_id, SyncType.RECONCILIATION)

        try:
            start, end = reconciliation_range(self._clock(), lookback_days)
            # a failed fetch must abort here, an empty list would retire every case
            appointments = await self._provider.fetch_appointments(start, end, raise_on_error=True)
            remote = {build_external_id(self._provider.name, a.id): a for a in appointments}

            local_cases = await self._store.select_cases(
                self.clinic_id, start, end, source_prefix=PIMS_SOURCE_PREFIX
            )
            stats.total = len(local_cases)
            log.info("Loaded cases for reconciliation", local_cases=stats.total, pims_appointments=len(remote))

            for case in local_cases:
                try:
                    action = await self._reconcile_case(case, remote)
                except Exception as exc:
                    stats.failed += 1
                    errors.append(SyncError(
                        message=f"Failed to reconcile case {case.id}: {exc}",
                        context={"case_id": case.id},
                    ))
                    log.error("Failed to reconcile case", case_id=case.id, error=str(exc))
                    continue

                if action == "deleted":
                    stats.deleted += 1
                    deleted_cases.append(case.id)
                elif action == "updated":
                    stats.updated += 1
                else:
                    stats.skipped += 1

            await self._audit.finish(sync_id, stats, success=not errors)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error("Case reconciliation failed", error=str(exc), duration_ms=duration_ms)
            await self._audit.finish(sync_id, stats, success=False, error_message=str(exc))
            return ReconciliationResult(
                success=False, sync_id=sync_id, stats=stats, duration_ms=duration_ms,
                errors=[SyncError(message=str(exc))],
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info(
            "Case reconciliation completed",
            stats=stats.model_dump(),
            duration_ms=duration_ms,
            deleted_cases=len(deleted_cases),
            has_errors=bool(errors),
        )
        return ReconciliationResult(
            success=not errors,
            sync_id=sync_id,
            stats=stats,
            duration_ms=duration_ms,
            errors=errors or None,
            deleted_cases=deleted_cases or None,
        )

    async def _reconcile_case(self, case: Case, remote: dict[str, PimsAppointment]) -> Action:
        if not case.external_id:
            return "skipped"

        appointment = remote.get(case.external_id)
        now = self._clock()
        if appointment is None:
            if is_soft_deleted(case.metadata):
                return "skipped"
            await self._store.update_case(
                case.id,
                status=ARCHIVED_STATUS,
                metadata=mark_soft_deleted(case.metadata, now=now, reason=SOFT_DELETE_REASON),
                updated_at=now,
            )
            logger.debug("Soft deleted case", case_id=case.id, reason=SOFT_DELETE_REASON)
            return "deleted"

        status = map_appointment_status(appointment.status)
        if is_soft_deleted(case.metadata):
            # the appointment is back on the PIMS
            await self._store.update_case(
                case.id,
                status=status,
                metadata=mark_restored(case.metadata, now=now),
                updated_at=now,
            )
            logger.info("Restored soft deleted case", case_id=case.id, pims_status=appointment.status, status=status.value)
            return "updated"

        if status != case.status:
            await self._store.update_case(case.id, status=status, updated_at=now)
            logger.debug("Updated case status from PIMS", case_id=case.id, pims_status=appointment.status, status=status.value)
            return "updated"
        return "skipped"
