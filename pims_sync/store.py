"""Datastore contract for cases and sync audit rows.

The production store lives with the clinic backend; the engine only needs
the handful of calls in :class:`CaseStore`. :class:`InMemoryCaseStore`
backs the tests and ``OFFLINE_MODE``.
"""
from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

import structlog

from .models import Case, SyncAuditRecord
from .retry import with_retry

logger = structlog.get_logger(__name__)

CASE_READ_BATCH_SIZE = 50


class CaseStore(Protocol):
    async def find_case_by_external_id(self, external_id: str, clinic_id: str) -> Optional[Case]: ...

    async def get_case(self, case_id: str) -> Optional[Case]: ...

    async def insert_case(self, case: Case) -> Case: ...

    async def update_case(self, case_id: str, **changes: Any) -> Case: ...

    async def select_cases(
        self,
        clinic_id: str,
        scheduled_from: datetime,
        scheduled_to: datetime,
        source_prefix: Optional[str] = None,
    ) -> list[Case]: ...

    async def select_cases_in(self, case_ids: list[str]) -> list[Case]: ...

    async def insert_audit(self, record: SyncAuditRecord) -> None: ...

    async def update_audit(self, sync_id: str, **changes: Any) -> None: ...


class DuplicateCaseError(ValueError):
    pass


class InMemoryCaseStore:
    """Dict-backed store. Returns copies so callers cannot mutate rows in place."""

    def __init__(self, cases: Iterable[Case] = ()) -> None:
        self._cases: dict[str, Case] = {}
        self._audits: dict[str, SyncAuditRecord] = {}
        self._lock = asyncio.Lock()
        for case in cases:
            self._cases[case.id] = case.model_copy(deep=True)

    @property
    def cases(self) -> list[Case]:
        return [c.model_copy(deep=True) for c in self._cases.values()]

    @property
    def audits(self) -> dict[str, SyncAuditRecord]:
        return {k: v.model_copy(deep=True) for k, v in self._audits.items()}

    async def find_case_by_external_id(self, external_id: str, clinic_id: str) -> Optional[Case]:
        for case in self._cases.values():
            if case.external_id == external_id and case.clinic_id == clinic_id:
                return case.model_copy(deep=True)
        return None

    async def get_case(self, case_id: str) -> Optional[Case]:
        case = self._cases.get(case_id)
        return case.model_copy(deep=True) if case else None

    async def insert_case(self, case: Case) -> Case:
        async with self._lock:
            if case.id in self._cases:
                raise DuplicateCaseError(f"case {case.id} already exists")
            # unique (external_id, clinic_id)
            if case.external_id and any(
                c.external_id == case.external_id and c.clinic_id == case.clinic_id for c in self._cases.values()
            ):
                raise DuplicateCaseError(f"case with external id {case.external_id} already exists")
            self._cases[case.id] = case.model_copy(deep=True)
        return case.model_copy(deep=True)

    async def update_case(self, case_id: str, **changes: Any) -> Case:
        async with self._lock:
            current = self._cases.get(case_id)
            if current is None:
                raise KeyError(case_id)
            updated = Case.model_validate({**current.model_dump(by_alias=True), **_dump(changes)})
            self._cases[case_id] = updated
        return updated.model_copy(deep=True)

    async def select_cases(
        self,
        clinic_id: str,
        scheduled_from: datetime,
        scheduled_to: datetime,
        source_prefix: Optional[str] = None,
    ) -> list[Case]:
        selected = []
        for case in self._cases.values():
            if case.clinic_id != clinic_id or case.scheduled_at is None:
                continue
            if not scheduled_from <= case.scheduled_at <= scheduled_to:
                continue
            if source_prefix is not None and not (case.source or "").startswith(source_prefix):
                continue
            selected.append(case.model_copy(deep=True))
        return selected

    async def select_cases_in(self, case_ids: list[str]) -> list[Case]:
        return [self._cases[i].model_copy(deep=True) for i in case_ids if i in self._cases]

    async def insert_audit(self, record: SyncAuditRecord) -> None:
        self._audits[record.id] = record.model_copy(deep=True)

    async def update_audit(self, sync_id: str, **changes: Any) -> None:
        current = self._audits.get(sync_id)
        if current is None:
            raise KeyError(sync_id)
        self._audits[sync_id] = current.model_copy(update=changes)


def _dump(changes: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value.model_dump(by_alias=True) if hasattr(value, "model_dump") else value
        for key, value in changes.items()
    }


async def fetch_cases_by_ids(
    store: CaseStore,
    case_ids: list[str],
    batch_size: int = CASE_READ_BATCH_SIZE,
    **retry_options: Any,
) -> list[Case]:
    """Read cases in ``IN (...)`` batches, each batch behind the retry executor.

    A batch that still fails after its retries is logged and left out; the
    caller works with whatever came back.
    """
    cases: list[Case] = []
    for offset in range(0, len(case_ids), batch_size):
        batch = case_ids[offset:offset + batch_size]
        result = await with_retry(lambda batch=batch: store.select_cases_in(batch), **retry_options)
        if result.success:
            cases.extend(result.data or [])
        else:
            logger.error(
                "Failed to load case batch",
                batch_start=offset,
                batch_size=len(batch),
                attempts=result.attempts,
                error=str(result.error),
            )
    return cases
