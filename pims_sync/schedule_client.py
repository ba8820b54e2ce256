"""Calendar reads from the PIMS schedule view."""
from __future__ import annotations
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlencode

import structlog

from . import settings
from .models import PimsAppointment, PimsClient, PimsPatient, PimsProviderRef
from .page_fetch import format_pims_datetime, page_fetch_json, parse_pims_datetime

if TYPE_CHECKING:
    from .auth import PimsAuthClient
    from .browser_pool import BrowserPool, Session

logger = structlog.get_logger(__name__)

CALENDAR_EVENTS_PATH = "/appointments/getCalendarEventData"


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def extract_raw_appointments(payload: Any) -> list[dict[str, Any]]:
    """The endpoint answers with a bare list or wraps it in appointments/data/events."""
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("appointments") or payload.get("data") or payload.get("events") or []
    else:
        items = []
    if not isinstance(items, list):
        logger.warning("Unexpected calendar payload", payload_type=type(items).__name__)
        return []
    return [item for item in items if isinstance(item, dict)]


def is_block_entry(raw: dict[str, Any]) -> bool:
    if raw.get("is_block") or raw.get("isBlock"):
        return True
    kind = _text(raw.get("type")) or _text(raw.get("event_type")) or ""
    return kind.lower() == "block"


def map_calendar_event(raw: dict[str, Any]) -> PimsAppointment:
    appointment_id = _text(raw.get("appointment_id")) or _text(raw.get("id"))
    if appointment_id is None:
        raise ValueError("calendar event without an id")

    start = parse_pims_datetime(_text(raw.get("start")))
    end = parse_pims_datetime(_text(raw.get("end")))
    duration = round((end - start).total_seconds() / 60) if start and end else None

    client_name = " ".join(p for p in (_text(raw.get("first_name")), _text(raw.get("last_name"))) if p) or None

    return PimsAppointment(
        id=appointment_id,
        consultation_id=_text(raw.get("consultation_id")),
        start_time=start,
        duration=duration,
        date=start.strftime("%Y-%m-%d") if start else None,
        patient=PimsPatient(
            id=_text(raw.get("patient_id")),
            name=_text(raw.get("patient_name")),
            species=_text(raw.get("species")),
            breed=_text(raw.get("breed")),
        ),
        client=PimsClient(
            id=_text(raw.get("client_id")),
            name=client_name,
            phone=_text(raw.get("phone_number")),
            email=_text(raw.get("email")),
        ),
        provider=PimsProviderRef(
            id=_text(raw.get("resourceId")),
            name=_text(raw.get("provider")) or _text(raw.get("popup_title_text")),
        ),
        type="block" if is_block_entry(raw) else (_text(raw.get("type_description")) or "Appointment"),
        status=_text(raw.get("current_status")) or _text(raw.get("status_label")) or "Scheduled",
        reason=_text(raw.get("reason")),
        notes=_text(raw.get("reason")),
    )


class ScheduleClient:
    def __init__(
        self,
        pool: "BrowserPool",
        auth: "PimsAuthClient",
        *,
        base_url: str = settings.PIMS_BASE_URL,
        request_timeout: float = settings.POOL_DEFAULT_TIMEOUT,
    ) -> None:
        self._pool = pool
        self._auth = auth
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout

    async def fetch_appointments(
        self,
        start: datetime,
        end: datetime,
        *,
        raise_on_error: bool = False,
        include_blocks: bool = False,
    ) -> list[PimsAppointment]:
        """Appointments between ``start`` and ``end`` (clinic local time).

        A failed fetch yields ``[]`` so callers that only want "whatever is
        there" keep going; pass ``raise_on_error=True`` where an empty list
        would be mistaken for an empty schedule.
        """
        query = urlencode({"start": format_pims_datetime(start), "end": format_pims_datetime(end)})
        url = f"{self.base_url}{CALENDAR_EVENTS_PATH}?{query}"

        async def _fetch(session: "Session") -> Any:
            await session.page.goto(self.base_url, wait_until="domcontentloaded", timeout=self.request_timeout * 1000)
            return await page_fetch_json(session.page, url, timeout=self.request_timeout)

        try:
            payload = await self._pool.with_authenticated_page(self._auth, _fetch)
        except Exception as exc:
            logger.error("Failed to fetch appointments", start=str(start), end=str(end), error=str(exc))
            if raise_on_error:
                raise
            return []

        appointments: list[PimsAppointment] = []
        skipped_blocks = 0
        for raw in extract_raw_appointments(payload):
            try:
                appointment = map_calendar_event(raw)
            except ValueError as exc:
                logger.warning("Skipping malformed calendar event", error=str(exc))
                continue
            if appointment.is_block and not include_blocks:
                skipped_blocks += 1
                continue
            appointments.append(appointment)

        logger.info("Fetched appointments", count=len(appointments), blocks=skipped_blocks)
        return appointments
