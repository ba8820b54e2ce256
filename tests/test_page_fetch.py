from datetime import datetime

import pytest

from pims_sync.errors import RemoteRequestError
from pims_sync.page_fetch import (
    extract_csrf_token,
    format_pims_datetime,
    page_fetch,
    page_fetch_json,
    parse_pims_datetime,
)

from conftest import BASE


def test_pims_datetime_format():
    assert format_pims_datetime(datetime(2025, 3, 10, 9, 5)) == "2025-03-10 09:05:00"


@pytest.mark.parametrize("raw,expected", [
    ("2025-03-10 09:05:00", datetime(2025, 3, 10, 9, 5)),
    ("2025-03-10  09:05:00", datetime(2025, 3, 10, 9, 5)),
    ("2025-03-10T09:05:00", datetime(2025, 3, 10, 9, 5)),
    ("", None),
    (None, None),
    ("next tuesday", None),
])
def test_parse_pims_datetime(raw, expected):
    assert parse_pims_datetime(raw) == expected


def test_parse_pims_datetime_drops_offset():
    parsed = parse_pims_datetime("2025-03-10T09:05:00Z")

    assert parsed.tzinfo is None


@pytest.mark.asyncio
async def test_page_fetch_passes_request_through_page(pool, site):
    site.json("POST", "/echo", {"saved": True}, status=201)

    async with pool.session() as session:
        response = await page_fetch(
            session.page, f"{BASE}/echo", method="POST", body={"a": 1}, csrf_token="t", timeout=2,
        )
        token = await extract_csrf_token(session.page)

    assert response.ok and response.status == 201
    assert response.data == {"saved": True}
    assert site.requests[-1] == {
        "url": f"{BASE}/echo", "method": "POST", "body": {"a": 1}, "csrfToken": "t", "timeoutMs": 2000,
    }
    assert token == "csrf-123"


@pytest.mark.asyncio
async def test_page_fetch_json_raises_on_error_status(pool, site):
    site.json("GET", "/broken", None, status=503)

    async with pool.session() as session:
        with pytest.raises(RemoteRequestError) as info:
            await page_fetch_json(session.page, f"{BASE}/broken")

    assert info.value.status == 503
