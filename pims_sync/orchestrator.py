"""Runs the sync phases in order: inbound, enrichment, reconciliation.

A failed phase marks the whole run unsuccessful but never stops the
phases after it.
"""
from __future__ import annotations
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from .ai import AiDispatcher
from .audit import SyncAuditRecorder
from .case_sync import CaseSyncService
from .inbound_sync import InboundSyncService, default_inbound_range
from .mapping import end_of_day, start_of_day
from .models import BidirectionalSyncResult, FullSyncResult, ReconciliationResult, SyncResult
from .provider import PimsProvider
from .reconciler import DEFAULT_LOOKBACK_DAYS, CaseReconciler
from .store import CaseStore

logger = structlog.get_logger(__name__)

DateRange = tuple[datetime, datetime]


class SyncOrchestrator:
    def __init__(
        self,
        store: CaseStore,
        provider: PimsProvider,
        clinic_id: str,
        *,
        dispatcher: Optional[AiDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.clinic_id = clinic_id
        self._provider = provider
        self._clock = clock
        audit = SyncAuditRecorder(store, clinic_id, clock=clock)
        self.inbound = InboundSyncService(store, provider, clinic_id, audit=audit, clock=clock)
        self.cases = CaseSyncService(store, provider, clinic_id, dispatcher=dispatcher, audit=audit, clock=clock)
        self.reconciler = CaseReconciler(store, provider, clinic_id, audit=audit, clock=clock)

    async def run_inbound_sync(self, date_range: Optional[DateRange] = None) -> SyncResult:
        return await self.inbound.sync(date_range)

    async def run_case_sync(
        self, start: datetime, end: datetime, parallel_batch_size: Optional[int] = None
    ) -> SyncResult:
        return await self.cases.sync(start, end, parallel_batch_size=parallel_batch_size)

    async def run_reconciliation(self, lookback_days: int = DEFAULT_LOOKBACK_DAYS) -> ReconciliationResult:
        return await self.reconciler.reconcile(lookback_days)

    async def run_full_sync(
        self,
        *,
        skip_inbound: bool = False,
        skip_cases: bool = False,
        skip_reconciliation: bool = False,
        inbound_range: Optional[DateRange] = None,
        case_batch_size: Optional[int] = None,
        reconciliation_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ) -> FullSyncResult:
        started = time.monotonic()
        result = FullSyncResult()
        log = logger.bind(clinic_id=self.clinic_id, provider=self._provider.name)
        log.info("Starting full sync", skip_inbound=skip_inbound, skip_cases=skip_cases,
                 skip_reconciliation=skip_reconciliation)

        try:
            if not skip_inbound:
                result.inbound = await self.inbound.sync(inbound_range)
                if not result.inbound.success:
                    result.success = False
                    log.warning("Inbound sync failed, continuing with other phases", errors=_messages(result.inbound))

            if not skip_cases:
                # enrichment caps the window at now itself
                start, end = inbound_range or default_inbound_range(self._clock())
                result.cases = await self.cases.sync(start, end, parallel_batch_size=case_batch_size)
                if not result.cases.success:
                    result.success = False
                    log.warning("Case sync failed, continuing with reconciliation", errors=_messages(result.cases))

            if not skip_reconciliation:
                result.reconciliation = await self.reconciler.reconcile(reconciliation_lookback_days)
                if not result.reconciliation.success:
                    result.success = False
                    log.warning("Reconciliation failed", errors=_messages(result.reconciliation))
        except Exception as exc:
            result.success = False
            log.error("Full sync failed with unexpected error", error=str(exc))

        result.total_duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Full sync completed", success=result.success, total_duration_ms=result.total_duration_ms)
        return result

    async def run_bidirectional_sync(
        self,
        *,
        lookback_days: int = 14,
        forward_days: int = 14,
        reconciliation_lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        skip_backward_sync: bool = False,
        skip_forward_sync: bool = False,
        skip_case_enrichment: bool = False,
        skip_reconciliation: bool = False,
        parallel_batch_size: Optional[int] = None,
    ) -> BidirectionalSyncResult:
        """Backward inbound, enrichment over the same past window, forward inbound, reconciliation."""
        started = time.monotonic()
        result = BidirectionalSyncResult()
        now = self._clock()
        backward = (start_of_day(now - timedelta(days=lookback_days)), end_of_day(now))
        forward = (start_of_day(now), end_of_day(now + timedelta(days=forward_days)))
        log = logger.bind(clinic_id=self.clinic_id, provider=self._provider.name)
        log.info("Starting bidirectional sync", lookback_days=lookback_days, forward_days=forward_days)

        try:
            if not skip_backward_sync:
                result.backward_inbound = await self.inbound.sync(backward)
                if not result.backward_inbound.success:
                    result.success = False
                    log.warning("Backward inbound sync failed, continuing with other phases",
                                errors=_messages(result.backward_inbound))

            if not skip_case_enrichment and result.backward_inbound is not None:
                result.cases = await self.cases.sync(*backward, parallel_batch_size=parallel_batch_size)
                if not result.cases.success:
                    result.success = False
                    log.warning("Case enrichment failed, continuing with other phases", errors=_messages(result.cases))

            if not skip_forward_sync:
                result.forward_inbound = await self.inbound.sync(forward)
                if not result.forward_inbound.success:
                    result.success = False
                    log.warning("Forward inbound sync failed, continuing with reconciliation",
                                errors=_messages(result.forward_inbound))

            if not skip_reconciliation:
                result.reconciliation = await self.reconciler.reconcile(reconciliation_lookback_days)
                if not result.reconciliation.success:
                    result.success = False
                    log.warning("Reconciliation failed", errors=_messages(result.reconciliation))
        except Exception as exc:
            result.success = False
            log.error("Bidirectional sync failed with unexpected error", error=str(exc))

        result.total_duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Bidirectional sync completed", success=result.success, total_duration_ms=result.total_duration_ms)
        return result


def _messages(result: SyncResult) -> list[str]:
    return [e.message for e in result.errors or []]
