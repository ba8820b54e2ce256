"""The PIMS as the sync phases see it: one object per remote system."""
from __future__ import annotations
from datetime import datetime
from typing import Optional

import structlog

from . import settings
from .appointment_client import AppointmentClient
from .auth import PimsAuthClient
from .browser_pool import BrowserPool
from .consultation_client import ConsultationBatchResult, ConsultationClient, ConsultationFetchResult
from .models import Credentials, PimsAppointment
from .schedule_client import ScheduleClient

logger = structlog.get_logger(__name__)


class PimsProvider:
    def __init__(
        self,
        pool: BrowserPool,
        *,
        name: str = settings.PIMS_PROVIDER_NAME,
        base_url: str = settings.PIMS_BASE_URL,
        auth: Optional[PimsAuthClient] = None,
        credentials: Optional[Credentials] = None,
        consultation_options: Optional[dict] = None,
    ) -> None:
        self.name = name
        self.pool = pool
        self.auth = auth or PimsAuthClient(pool, base_url=base_url)
        self.credentials = credentials
        self.schedule = ScheduleClient(pool, self.auth, base_url=base_url)
        self.consultations = ConsultationClient(pool, self.auth, base_url=base_url, **(consultation_options or {}))
        self.appointments = AppointmentClient(pool, self.auth, base_url=base_url)

    async def authenticate(self, credentials: Optional[Credentials] = None) -> bool:
        credentials = credentials or self.credentials
        if credentials is None:
            logger.error("No PIMS credentials configured", provider=self.name)
            return False
        self.credentials = credentials
        return await self.auth.authenticate(credentials)

    async def ensure_authenticated(self) -> bool:
        """Log in with the stored credentials unless the session is still live."""
        if self.auth.is_authenticated():
            return True
        return await self.authenticate()

    async def restore_session(self, serialized: str) -> bool:
        if not self.auth.restore_from_cache(serialized):
            return False
        return await self.auth.verify_session()

    def is_authenticated(self) -> bool:
        return self.auth.is_authenticated()

    async def fetch_appointments(
        self, start: datetime, end: datetime, *, raise_on_error: bool = False, include_blocks: bool = False
    ) -> list[PimsAppointment]:
        return await self.schedule.fetch_appointments(
            start, end, raise_on_error=raise_on_error, include_blocks=include_blocks
        )

    async def fetch_consultation(self, consultation_id: str) -> ConsultationFetchResult:
        return await self.consultations.fetch_consultation(consultation_id)

    async def fetch_consultations(
        self, consultation_ids: list[str], batch_size: Optional[int] = None
    ) -> ConsultationBatchResult:
        return await self.consultations.fetch_consultations(consultation_ids, batch_size=batch_size)

    async def close(self) -> None:
        self.auth.clear()
        await self.pool.close()
