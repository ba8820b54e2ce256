from datetime import datetime

import pytest

from pims_sync.errors import AuthError, RemoteRequestError
from pims_sync.schedule_client import CALENDAR_EVENTS_PATH, ScheduleClient, extract_raw_appointments, map_calendar_event

from conftest import BASE, CREDS

RAW_EVENT = {
    "appointment_id": "1001",
    "consultation_id": "c-77",
    "start": "2025-03-10 09:00:00",
    "end": "2025-03-10 09:45:00",
    "patient_id": "p-1",
    "patient_name": "Rex",
    "species": "Canine",
    "breed": "Beagle",
    "client_id": "cl-1",
    "first_name": "Dana",
    "last_name": "Smith",
    "phone_number": "555-0100",
    "resourceId": "3",
    "provider": "Dr. Vega",
    "type_description": "Wellness Exam",
    "current_status": "Checked In",
    "reason": "Annual checkup",
}

BLOCK_EVENT = {"id": "b-1", "start": "2025-03-10 12:00:00", "end": "2025-03-10 13:00:00", "type": "block"}

START = datetime(2025, 3, 10)
END = datetime(2025, 3, 10, 23, 59, 59)


def test_map_calendar_event():
    appt = map_calendar_event(RAW_EVENT)

    assert appt.id == "1001"
    assert appt.consultation_id == "c-77"
    assert appt.start_time == datetime(2025, 3, 10, 9, 0)
    assert appt.duration == 45
    assert appt.date == "2025-03-10"
    assert appt.client.name == "Dana Smith"
    assert appt.client.phone == "555-0100"
    assert appt.provider.name == "Dr. Vega"
    assert appt.type == "Wellness Exam"
    assert appt.status == "Checked In"


@pytest.mark.parametrize("wrapper", ["appointments", "data", "events"])
def test_extract_accepts_wrapped_payloads(wrapper):
    assert extract_raw_appointments({wrapper: [RAW_EVENT]}) == [RAW_EVENT]


def test_extract_accepts_bare_list_and_ignores_junk():
    assert extract_raw_appointments([RAW_EVENT, "junk"]) == [RAW_EVENT]
    assert extract_raw_appointments({"unexpected": True}) == []
    assert extract_raw_appointments(None) == []


@pytest.mark.asyncio
async def test_fetch_appointments_drops_blocks(pool, auth, site):
    site.json("GET", CALENDAR_EVENTS_PATH, {"events": [RAW_EVENT, BLOCK_EVENT]})
    await auth.authenticate(CREDS)
    client = ScheduleClient(pool, auth, base_url=BASE)

    appointments = await client.fetch_appointments(START, END)

    assert [a.id for a in appointments] == ["1001"]
    request = site.requests[-1]
    assert "start=2025-03-10+00%3A00%3A00" in request["url"]
    assert "end=2025-03-10+23%3A59%3A59" in request["url"]
    assert pool.get_stats()["in_use"] == 0


@pytest.mark.asyncio
async def test_fetch_appointments_can_keep_blocks(pool, auth, site):
    site.json("GET", CALENDAR_EVENTS_PATH, [RAW_EVENT, BLOCK_EVENT])
    await auth.authenticate(CREDS)
    client = ScheduleClient(pool, auth, base_url=BASE)

    appointments = await client.fetch_appointments(START, END, include_blocks=True)

    assert [a.is_block for a in appointments] == [False, True]


@pytest.mark.asyncio
async def test_failure_yields_empty_list_by_default(pool, auth, site):
    site.json("GET", CALENDAR_EVENTS_PATH, None, status=500)
    await auth.authenticate(CREDS)
    client = ScheduleClient(pool, auth, base_url=BASE)

    assert await client.fetch_appointments(START, END) == []
    with pytest.raises(RemoteRequestError):
        await client.fetch_appointments(START, END, raise_on_error=True)


@pytest.mark.asyncio
async def test_unauthenticated_fetch_raises_when_strict(pool, auth):
    client = ScheduleClient(pool, auth, base_url=BASE)

    with pytest.raises(AuthError):
        await client.fetch_appointments(START, END, raise_on_error=True)
    assert pool.get_stats()["in_use"] == 0
