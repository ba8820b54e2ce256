"""Create, cancel and look up appointments in the PIMS.

The remote binds its CSRF token to the page that loaded it, so every
mutating call here checks out exactly one pooled session and does all of
its work (login or cookie replay, navigation, token read, submit) on that
one page before giving it back.
"""
from __future__ import annotations
import re
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlencode

import structlog

from . import settings
from .models import (
    AppointmentDetails,
    AppointmentOperationResult,
    CancelAppointmentInput,
    CreateAppointmentInput,
    OperationError,
    PatientMatch,
    PatientSearchResult,
)
from .page_fetch import extract_csrf_token, page_fetch, parse_pims_datetime

if TYPE_CHECKING:
    from playwright.async_api import Page

    from .auth import PimsAuthClient
    from .browser_pool import BrowserPool, Session

logger = structlog.get_logger(__name__)

PATIENT_SEARCH_PATH = "/search/patients"
GET_APPOINTMENT_PATH = "/appointments/getAppointment"
DELETE_APPOINTMENT_PATH = "/appointments/delete"
NEW_APPOINTMENT_FORM_PATH = "/schedule/appointments/new"

FORM_SELECTORS = {
    "save": 'button:has-text("Save")',
    "patient_combo": 'span.select2-selection--single:has-text("Search")',
    "patient_search": "input.select2-search__field",
    "patient_option": "li.select2-results__option",
    "provider": 'select[name*="provider"], select[name*="user_id"]',
    "reason": 'select[name*="type"], select[name*="reason"]',
    "room": 'select[name*="room"], select[name*="resource"]',
    "note": 'textarea[name*="note"], textarea[name*="comment"]',
    "error": '.error-message, .alert-danger, [role="alert"]',
}


def _safe(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def parse_patient_search(payload: Any) -> list[PatientMatch]:
    if isinstance(payload, list):
        raw_patients = payload
    elif isinstance(payload, dict):
        raw_patients = next(
            (payload[key] for key in ("patients", "data", "results") if isinstance(payload.get(key), list)),
            [],
        )
    else:
        raw_patients = []

    patients = []
    for raw in raw_patients:
        if not isinstance(raw, dict):
            continue
        patient_id = _safe(raw.get("id")) or _safe(raw.get("patient_id"))
        if not patient_id:
            continue
        client_name = (
            _safe(raw.get("client_name"))
            or _safe(raw.get("clientName"))
            or f"{_safe(raw.get('client_first_name'))} {_safe(raw.get('client_last_name'))}".strip()
        )
        patients.append(
            PatientMatch(
                id=patient_id,
                name=_safe(raw.get("name")) or _safe(raw.get("patient_name")),
                client_id=_safe(raw.get("client_id")) or _safe(raw.get("clientId")),
                client_name=client_name,
                species=_safe(raw.get("species")),
                breed=_safe(raw.get("breed")) or None,
                age=_safe(raw.get("age")) or None,
                sex=_safe(raw.get("sex")) or None,
                weight=_safe(raw.get("weight")) or None,
            )
        )
    return patients


def _form_time(value: str) -> str:
    # the form wants HH:MM
    match = re.match(r"^(\d{1,2}):(\d{2})", value.strip())
    if not match:
        return value
    return f"{int(match.group(1)):02d}:{match.group(2)}"


class AppointmentClient:
    def __init__(
        self,
        pool: "BrowserPool",
        auth: "PimsAuthClient",
        *,
        base_url: str = settings.PIMS_BASE_URL,
        request_timeout: float = 15.0,
        form_timeout: float = 30.0,
    ) -> None:
        self._pool = pool
        self._auth = auth
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.form_timeout = form_timeout

    async def _open_origin(self, session: "Session") -> None:
        await self._auth.apply_auth(session.page)
        await session.page.goto(self.base_url, wait_until="domcontentloaded", timeout=self.request_timeout * 1000)

    # --------------------------------------------------------------- reads --
    async def search_patients(self, query: str, limit: int = 10) -> PatientSearchResult:
        url = f"{self.base_url}{PATIENT_SEARCH_PATH}?{urlencode({'q': query, 'limit': limit})}"
        try:
            async with self._pool.session() as session:
                await self._open_origin(session)
                response = await page_fetch(session.page, url, timeout=self.request_timeout)
        except Exception as exc:
            logger.error("Patient search failed", query=query, error=str(exc))
            return PatientSearchResult()

        if not response.ok:
            logger.error("Patient search rejected", query=query, status=response.status)
            return PatientSearchResult()
        patients = parse_patient_search(response.data)[:limit]
        return PatientSearchResult(patients=patients, total_count=len(patients))

    async def get_appointment(self, appointment_id: str) -> Optional[AppointmentDetails]:
        url = f"{self.base_url}{GET_APPOINTMENT_PATH}?{urlencode({'id': appointment_id})}"
        try:
            async with self._pool.session() as session:
                await self._open_origin(session)
                response = await page_fetch(session.page, url, timeout=self.request_timeout)
        except Exception as exc:
            logger.error("Appointment lookup failed", appointment_id=appointment_id, error=str(exc))
            return None

        if not response.ok or not isinstance(response.data, dict):
            logger.warning("Appointment lookup failed", appointment_id=appointment_id, status=response.status)
            return None
        raw = response.data.get("appointment") if isinstance(response.data.get("appointment"), dict) else response.data
        return AppointmentDetails(
            id=_safe(raw.get("id")) or appointment_id,
            patient_id=_safe(raw.get("patient_id")) or None,
            patient_name=_safe(raw.get("patient_name")) or None,
            client_name=" ".join(p for p in (_safe(raw.get("first_name")), _safe(raw.get("last_name"))) if p) or None,
            start=parse_pims_datetime(_safe(raw.get("start"))),
            end=parse_pims_datetime(_safe(raw.get("end"))),
            status=_safe(raw.get("current_status")) or _safe(raw.get("status")) or None,
            reason=_safe(raw.get("reason")) or None,
            provider=_safe(raw.get("provider")) or None,
        )

    # ----------------------------------------------------------- mutations --
    async def cancel_appointment(self, request: CancelAppointmentInput) -> AppointmentOperationResult:
        url = f"{self.base_url}{DELETE_APPOINTMENT_PATH}/{request.appointment_id}"
        payload = {"action": request.action, "reason": request.reason}
        log = logger.bind(appointment_id=request.appointment_id, action=request.action)

        try:
            async with self._pool.session() as session:
                await self._open_origin(session)
                csrf_token = await extract_csrf_token(session.page)
                log.debug("Cancelling appointment", has_csrf_token=bool(csrf_token))
                response = await page_fetch(
                    session.page,
                    url,
                    method="POST",
                    body=payload,
                    csrf_token=csrf_token,
                    timeout=self.request_timeout,
                )
        except Exception as exc:
            log.error("Cancel appointment failed", error=str(exc))
            return AppointmentOperationResult(
                success=False,
                appointment_id=request.appointment_id,
                error=OperationError(code="api_error", message=str(exc)),
            )

        if not response.ok:
            log.warning("Cancel appointment rejected", status=response.status)
            return AppointmentOperationResult(
                success=False,
                appointment_id=request.appointment_id,
                error=OperationError(
                    code=str(response.status),
                    message=response.status_text or "Failed to cancel appointment",
                    details=response.data,
                ),
            )

        log.info("Appointment cancelled")
        return AppointmentOperationResult(
            success=True,
            appointment_id=request.appointment_id,
            message="Appointment cancelled successfully",
        )

    async def create_appointment(self, request: CreateAppointmentInput) -> AppointmentOperationResult:
        """Fill and submit the PIMS appointment form on one logged-in page."""
        log = logger.bind(patient_id=request.patient_id, date=request.date, time=request.start_time)
        try:
            async with self._pool.session() as session:
                page = session.page
                # log in on this very page so the form's CSRF token belongs to it
                if not await self._auth.authenticate_on_page(page):
                    return AppointmentOperationResult(
                        success=False,
                        error=OperationError(code="auth_failed", message="Failed to authenticate on page for form submission"),
                    )

                query = urlencode({"date": request.date, "time": _form_time(request.start_time)})
                await page.goto(
                    f"{self.base_url}{NEW_APPOINTMENT_FORM_PATH}?{query}",
                    wait_until="networkidle",
                    timeout=self.form_timeout * 1000,
                )
                await page.wait_for_selector(FORM_SELECTORS["save"], timeout=10_000)

                await self._select_patient(page, request)
                await self._fill_details(page, request)

                log.debug("Submitting appointment form")
                await page.click(FORM_SELECTORS["save"])
                return await self._await_submission(page, log)
        except Exception as exc:
            log.error("Form-based appointment creation failed", error=str(exc))
            return AppointmentOperationResult(
                success=False,
                error=OperationError(code="form_error", message=str(exc)),
            )

    async def _select_patient(self, page: "Page", request: CreateAppointmentInput) -> None:
        await page.click(FORM_SELECTORS["patient_combo"])
        await page.wait_for_selector(FORM_SELECTORS["patient_search"], timeout=5_000)
        await page.fill(FORM_SELECTORS["patient_search"], request.patient_name or request.patient_id)

        # option text reads "<patient> <client surname> (ID:<patient id>)"
        option = f'{FORM_SELECTORS["patient_option"]}:has-text("ID:{request.patient_id}")'
        try:
            await page.wait_for_selector(option, timeout=5_000)
            await page.click(option)
        except Exception:
            first = await page.query_selector(FORM_SELECTORS["patient_option"])
            if first is None:
                raise ValueError(f"Patient not found in search results: {request.patient_id}")
            logger.debug("Exact patient option missing, taking first result", patient_id=request.patient_id)
            await first.click()

    async def _fill_details(self, page: "Page", request: CreateAppointmentInput) -> None:
        optional_selects = (
            ("provider", request.provider_id, {"value": request.provider_id}),
            ("reason", request.reason, {"label": request.reason}),
            ("room", request.room_id, {"value": request.room_id}),
        )
        for field, wanted, option in optional_selects:
            if not wanted:
                continue
            try:
                await page.select_option(FORM_SELECTORS[field], **option, timeout=5_000)
            except Exception as exc:
                # the form keeps its default; not worth failing the booking
                logger.debug("Could not set appointment form field", field=field, error=str(exc))

        if request.note:
            await page.fill(FORM_SELECTORS["note"], request.note)

    async def _await_submission(self, page: "Page", log: Any) -> AppointmentOperationResult:
        try:
            await page.wait_for_url(re.compile(r"/schedule(?:\?|$)"), timeout=15_000)
            log.info("Appointment created via form")
            return AppointmentOperationResult(success=True, message="Appointment created successfully via form")
        except Exception:
            pass

        error_text = None
        try:
            error_text = await page.text_content(FORM_SELECTORS["error"], timeout=2_000)
        except Exception:
            error_text = None
        if error_text:
            log.warning("Appointment form rejected", error=error_text)
            return AppointmentOperationResult(
                success=False,
                error=OperationError(code="form_validation_error", message=error_text.strip()),
            )

        if "/schedule" in page.url and "/new" not in page.url:
            return AppointmentOperationResult(success=True, message="Appointment created successfully via form")
        return AppointmentOperationResult(
            success=False,
            error=OperationError(code="form_submission_timeout", message="Form submission did not complete as expected"),
        )
