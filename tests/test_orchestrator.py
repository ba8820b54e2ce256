from datetime import datetime

import pytest

from pims_sync.models import CaseStatus
from pims_sync.orchestrator import SyncOrchestrator
from pims_sync.store import InMemoryCaseStore

from conftest import make_appointment, make_consultation, network_error

NOW = datetime(2025, 3, 10, 18, 0)
CLINIC = "clinic-1"


@pytest.fixture
def store():
    return InMemoryCaseStore()


@pytest.fixture
def orchestrator(store, provider):
    return SyncOrchestrator(store, provider, CLINIC, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_full_sync_runs_every_phase(orchestrator, store, provider):
    provider.appointments = [
        make_appointment("1", datetime(2025, 3, 10, 9), consultation_id="c-1"),
        make_appointment("2", datetime(2025, 3, 12, 9)),
    ]
    provider.consultations = {"c-1": make_consultation("c-1")}

    result = await orchestrator.run_full_sync()

    assert result.success
    assert result.inbound.stats.created == 2
    assert result.cases.stats.updated == 1
    assert result.reconciliation.stats.total == 1
    assert result.reconciliation.stats.skipped == 1
    assert {a.sync_type.value for a in store.audits.values()} == {"inbound", "cases", "reconciliation"}
    assert result.total_duration_ms >= 0


@pytest.mark.asyncio
async def test_failed_phase_does_not_stop_the_rest(orchestrator, provider):
    provider.fetch_error = network_error()

    result = await orchestrator.run_full_sync()

    assert not result.success
    assert not result.inbound.success
    # enrichment has nothing to do but still runs
    assert result.cases.success
    assert result.cases.stats.total == 0
    assert not result.reconciliation.success


@pytest.mark.asyncio
async def test_skipped_phases_are_absent(orchestrator, provider):
    result = await orchestrator.run_full_sync(skip_inbound=True, skip_cases=True)

    assert result.inbound is None
    assert result.cases is None
    assert result.reconciliation is not None
    assert len(provider.fetch_calls) == 1


@pytest.mark.asyncio
async def test_individual_phases(orchestrator, provider):
    provider.appointments = [make_appointment("1", datetime(2025, 3, 10, 9), consultation_id="c-1")]
    provider.consultations = {"c-1": make_consultation("c-1")}

    inbound = await orchestrator.run_inbound_sync((datetime(2025, 3, 10), datetime(2025, 3, 10, 23, 59)))
    cases = await orchestrator.run_case_sync(datetime(2025, 3, 10), datetime(2025, 3, 11), parallel_batch_size=5)
    reconciliation = await orchestrator.run_reconciliation(lookback_days=1)

    assert inbound.stats.created == 1
    assert cases.stats.updated == 1
    assert reconciliation.success


@pytest.mark.asyncio
async def test_bidirectional_sync(orchestrator, store, provider):
    provider.appointments = [
        make_appointment("past", datetime(2025, 3, 5, 9), consultation_id="c-1"),
        make_appointment("next", datetime(2025, 3, 20, 9)),
    ]
    provider.consultations = {"c-1": make_consultation("c-1")}

    result = await orchestrator.run_bidirectional_sync()

    assert result.success
    start, end = provider.fetch_calls[0]
    assert start == datetime(2025, 2, 24)
    assert end.date() == NOW.date()
    assert result.backward_inbound.stats.created == 1
    assert result.cases.stats.updated == 1
    assert result.forward_inbound.stats.created == 1
    assert result.reconciliation.stats.total == 1
    assert len(store.cases) == 2


@pytest.mark.asyncio
async def test_bidirectional_enrichment_needs_backward_pass(orchestrator, provider):
    result = await orchestrator.run_bidirectional_sync(skip_backward_sync=True, skip_reconciliation=True)

    assert result.backward_inbound is None
    assert result.cases is None
    assert result.forward_inbound is not None
    assert result.reconciliation is None


@pytest.mark.asyncio
async def test_appointment_lifecycle_end_to_end(orchestrator, store, provider):
    provider.appointments = [make_appointment("A1", datetime(2025, 3, 10, 9), consultation_id="C1")]
    provider.consultations = {"C1": make_consultation("C1", notes="ok")}

    first = await orchestrator.run_full_sync()

    assert first.success
    assert first.inbound.stats.created == 1
    assert first.cases.stats.updated == 1
    [case] = store.cases
    assert case.external_id == "pims-appt-idexx-A1"
    assert case.metadata.pims_consultation.notes == "ok"
    assert case.metadata.entities.clinical.clinical_notes == "ok"

    provider.appointments = []
    second = await orchestrator.run_full_sync()

    assert second.success
    assert second.reconciliation.deleted_cases == [case.id]
    [archived] = store.cases
    assert archived.status == CaseStatus.REVIEWED
    assert archived.metadata.reconciliation.soft_deleted
    # enrichment survives the archive
    assert archived.metadata.pims_consultation.notes == "ok"
