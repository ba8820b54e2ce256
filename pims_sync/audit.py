"""Sync audit rows: one per phase run, written at start, on progress and at the end.

Audit writes are bookkeeping. A failing write is logged and the sync
carries on; it never changes the outcome of the run.
"""
from __future__ import annotations
from datetime import datetime
from typing import Callable, Optional

import structlog

from .models import ProgressUpdate, SyncAuditRecord, SyncStats, SyncType
from .store import CaseStore

logger = structlog.get_logger(__name__)


class SyncAuditRecorder:
    def __init__(self, store: CaseStore, clinic_id: str, clock: Callable[[], datetime] = datetime.now) -> None:
        self._store = store
        self.clinic_id = clinic_id
        self._clock = clock

    async def start(self, sync_id: str, sync_type: SyncType) -> None:
        record = SyncAuditRecord(
            id=sync_id,
            clinic_id=self.clinic_id,
            sync_type=sync_type,
            status="in_progress",
            started_at=self._clock(),
        )
        try:
            await self._store.insert_audit(record)
        except Exception as exc:
            logger.warning("Failed to create sync audit", sync_id=sync_id, sync_type=sync_type.value, error=str(exc))

    async def write_progress(self, update: ProgressUpdate) -> None:
        # errors surface to the throttler, which logs them
        await self._store.update_audit(
            update.sync_id,
            total_items=update.total_items,
            processed_items=update.processed_items,
            progress_percentage=update.progress_percentage,
        )

    async def finish(
        self,
        sync_id: str,
        stats: SyncStats,
        *,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        try:
            await self._store.update_audit(
                sync_id,
                status="completed" if success else "failed",
                appointments_found=stats.total,
                cases_created=stats.created,
                cases_updated=stats.updated,
                cases_skipped=stats.skipped,
                cases_deleted=stats.deleted,
                cases_failed=stats.failed,
                error_message=error_message,
                completed_at=self._clock(),
            )
        except Exception as exc:
            logger.warning("Failed to record sync audit", sync_id=sync_id, error=str(exc))
