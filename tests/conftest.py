"""Stand-ins for playwright objects and for the PIMS provider.

The fakes model only what the engine touches: a browser that hands out
contexts, contexts that hold cookies and open pages, and pages whose
``evaluate`` answers same-origin fetches from a route table on
:class:`FakeSite`.
"""
import re
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import pytest

from pims_sync.auth import PimsAuthClient
from pims_sync.browser_pool import BrowserPool
from pims_sync.consultation_client import (
    ConsultationBatchResult,
    ConsultationBatchStats,
    ConsultationFetchError,
)
from pims_sync.errors import ErrorType, TransientNetworkError
from pims_sync.models import Credentials, PimsAppointment, PimsClient, PimsConsultation, PimsPatient, PimsProviderRef

BASE = "https://pims.test"
CREDS = Credentials(username="front-desk", password="s3cret")


class FakeSite:
    def __init__(self, base_url: str = BASE, credentials: Credentials = CREDS):
        self.base_url = base_url
        self.credentials = credentials
        self.session_valid = True
        self.csrf_token: Optional[str] = "csrf-123"
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[dict[str, Any]] = []
        self.logins = 0

    def route(self, method: str, path: str, handler: Any) -> None:
        """``handler`` is a response dict, an exception, or a callable returning either."""
        self.routes[(method.upper(), path)] = handler

    def json(self, method: str, path: str, data: Any, status: int = 200) -> None:
        self.route(method, path, {"ok": 200 <= status < 300, "status": status, "statusText": "", "data": data})

    def handle_fetch(self, arg: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(arg)
        path = urlsplit(arg["url"]).path
        handler = self.routes.get((arg["method"].upper(), path))
        if handler is None:
            return {"ok": False, "status": 404, "statusText": "Not Found", "data": None}
        if callable(handler) and not isinstance(handler, dict):
            handler = handler(arg)
        if isinstance(handler, BaseException):
            raise handler
        return handler


class FakePage:
    def __init__(self, context: "FakeContext"):
        self.context = context
        self.site: FakeSite = context.browser.site
        self.url = "about:blank"
        self.closed = False
        self.default_timeout: Optional[float] = None
        self.filled: dict[str, str] = {}
        self.clicks: list[str] = []
        self.selected: list[tuple[str, dict]] = []

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def goto(self, url: str, **kwargs: Any) -> None:
        path = urlsplit(url).path
        has_session = any(c["name"] == "PHPSESSID" for c in self.context.jar)
        if path not in ("/login",) and not (has_session and self.site.session_valid):
            self.url = f"{self.site.base_url}/login"
        else:
            self.url = url

    async def fill(self, selector: str, value: str, **kwargs: Any) -> None:
        self.filled[selector] = value

    async def click(self, selector: str, **kwargs: Any) -> None:
        self.clicks.append(selector)
        if "submit" in selector:
            self.site.logins += 1
            values = list(self.filled.values())
            if values[-2:] == [self.site.credentials.username, self.site.credentials.password]:
                self.context.jar.append({"name": "PHPSESSID", "value": f"sess-{self.site.logins}", "domain": "pims.test", "path": "/"})
                self.url = f"{self.site.base_url}/dashboard"
        elif "Save" in selector:
            self.url = f"{self.site.base_url}/schedule"

    async def wait_for_load_state(self, state: str = "load", **kwargs: Any) -> None:
        return None

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> None:
        return None

    async def wait_for_url(self, pattern: Any, **kwargs: Any) -> None:
        if isinstance(pattern, re.Pattern) and not pattern.search(self.url):
            raise TimeoutError(f"waiting for url {pattern.pattern}")

    async def select_option(self, selector: str, **kwargs: Any) -> None:
        self.selected.append((selector, kwargs))

    async def text_content(self, selector: str, **kwargs: Any) -> Optional[str]:
        return None

    async def query_selector(self, selector: str) -> None:
        return None

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return self.site.csrf_token
        return self.site.handle_fetch(arg)

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser"):
        self.browser = browser
        self.jar: list[dict[str, Any]] = []
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        names = {c["name"] for c in cookies}
        self.jar = [c for c in self.jar if c["name"] not in names] + list(cookies)

    async def cookies(self) -> list[dict[str, Any]]:
        return list(self.jar)

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, site: FakeSite):
        self.site = site
        self.contexts: list[FakeContext] = []
        self.connected = True
        self.closed = False

    async def new_context(self) -> FakeContext:
        context = FakeContext(self)
        self.contexts.append(context)
        return context

    def is_connected(self) -> bool:
        return self.connected and not self.closed

    async def close(self) -> None:
        self.closed = True


class FakeLauncher:
    def __init__(self, site: FakeSite):
        self.site = site
        self.browsers: list[FakeBrowser] = []
        self.stopped = False

    async def launch(self) -> FakeBrowser:
        browser = FakeBrowser(self.site)
        self.browsers.append(browser)
        return browser

    async def stop(self) -> None:
        self.stopped = True


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def launcher(site) -> FakeLauncher:
    return FakeLauncher(site)


@pytest.fixture
def pool(launcher) -> BrowserPool:
    return BrowserPool(
        max_engines=2,
        max_contexts_per_engine=3,
        default_timeout=5,
        acquire_timeout=0.2,
        launcher=launcher,
    )


@pytest.fixture
def auth(pool) -> PimsAuthClient:
    return PimsAuthClient(pool, base_url=BASE)


# Provider double for the phase services ------------------------------------

def make_appointment(
    appointment_id: str,
    start: datetime,
    *,
    status: str = "Scheduled",
    consultation_id: Optional[str] = None,
    type: str = "Wellness Exam",
    patient: str = "Rex",
    species: str = "Canine",
    client_phone: str = "555-0100",
    reason: str = "Annual checkup",
) -> PimsAppointment:
    return PimsAppointment(
        id=appointment_id,
        consultation_id=consultation_id,
        start_time=start,
        duration=30,
        date=start.strftime("%Y-%m-%d"),
        patient=PimsPatient(id=f"p-{appointment_id}", name=patient, species=species, breed="Beagle"),
        client=PimsClient(id=f"c-{appointment_id}", name="Dana Smith", phone=client_phone, email="dana@example.com"),
        provider=PimsProviderRef(id="1", name="Dr. Vega"),
        type=type,
        status=status,
        reason=reason,
    )


def make_consultation(consultation_id: str, notes: str = "Healthy. Weight stable.") -> PimsConsultation:
    return PimsConsultation(
        id=consultation_id,
        notes=notes,
        discharge_summary="Continue current diet.",
        products_services="Rabies vaccine; Nail trim (Qty: 2)",
        declined_products_services="Dental cleaning",
        status="completed",
        reason="Annual checkup",
    )


class FakeProvider:
    """Answers from in-memory appointments/consultations; can be told to fail."""

    def __init__(self, name: str = "idexx"):
        self.name = name
        self.appointments: list[PimsAppointment] = []
        self.consultations: dict[str, PimsConsultation] = {}
        self.consultation_errors: dict[str, ErrorType] = {}
        self.fetch_error: Optional[Exception] = None
        self.fetch_calls: list[tuple[datetime, datetime]] = []
        self.consultation_calls: list[list[str]] = []
        self.on_consultation: Optional[Callable[[str, int], Optional[ErrorType]]] = None

    async def fetch_appointments(self, start, end, *, raise_on_error=False, include_blocks=False):
        self.fetch_calls.append((start, end))
        if self.fetch_error is not None:
            if raise_on_error:
                raise self.fetch_error
            return []
        return [
            a for a in self.appointments
            if a.start_time and start <= a.start_time <= end and (include_blocks or not a.is_block)
        ]

    async def fetch_consultations(self, consultation_ids, batch_size=None):
        self.consultation_calls.append(list(consultation_ids))
        result = ConsultationBatchResult(stats=ConsultationBatchStats(total=len(consultation_ids)))
        for cid in consultation_ids:
            error = self.consultation_errors.get(cid)
            if self.on_consultation is not None:
                error = self.on_consultation(cid, len(self.consultation_calls))
            if error is not None:
                result.errors[cid] = ConsultationFetchError(type=error, message=f"{error.value} failure")
                result.stats.failed += 1
                if error == ErrorType.NETWORK:
                    result.stats.network_errors += 1
                elif error == ErrorType.NOT_FOUND:
                    result.stats.not_found += 1
            elif cid in self.consultations:
                result.consultations[cid] = self.consultations[cid]
                result.stats.successful += 1
            else:
                result.errors[cid] = ConsultationFetchError(type=ErrorType.NOT_FOUND, message="not found")
                result.stats.failed += 1
                result.stats.not_found += 1
        return result


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def network_error() -> TransientNetworkError:
    return TransientNetworkError("fetch failed: ECONNRESET")
