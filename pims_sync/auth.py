"""Login to the PIMS web UI and replay the session cookie onto pooled pages.

The remote system has no token endpoint; a session is whatever cookie jar
the login form leaves behind. We keep it for a fixed lifetime (8h by
default, the remote's own session length) and copy it into each fresh
browser context before making requests.
"""
from __future__ import annotations
import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

import structlog

from . import settings
from .errors import AuthError
from .models import Credentials

if TYPE_CHECKING:
    from playwright.async_api import Page

    from .browser_pool import BrowserPool

logger = structlog.get_logger(__name__)

LOGIN_SELECTORS = {
    "username": 'input[name="username"], input[type="email"], #username',
    "password": 'input[name="password"], input[type="password"], #password',
    "submit": 'button[type="submit"], input[type="submit"]',
}


class AuthStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    CLEARED = "cleared"


@dataclass(frozen=True)
class AuthState:
    authenticated: bool = False
    session_credential: Optional[str] = None  # JSON cookie jar
    expires_at: float = 0.0


class PimsAuthClient:
    def __init__(
        self,
        pool: "BrowserPool",
        *,
        base_url: str = settings.PIMS_BASE_URL,
        login_path: str = settings.PIMS_LOGIN_PATH,
        session_cookie: str = settings.PIMS_SESSION_COOKIE,
        session_ttl: float = settings.PIMS_SESSION_TTL_SECONDS,
        login_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool = pool
        self.base_url = base_url.rstrip("/")
        self.login_path = login_path
        self.session_cookie = session_cookie
        self.session_ttl = session_ttl
        self.login_timeout = login_timeout
        self._clock = clock

        self._state = AuthState()
        self._status = AuthStatus.UNAUTHENTICATED
        self._credentials: Optional[Credentials] = None
        self._login_lock = asyncio.Lock()

    @property
    def status(self) -> AuthStatus:
        self.is_authenticated()
        return self._status

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def expires_at(self) -> float:
        return self._state.expires_at

    # ---------------------------------------------------------------- login --
    async def authenticate(self, credentials: Credentials) -> bool:
        """Log in with a pooled page. ``False`` on rejected credentials.

        Infrastructure failures (browser crash, navigation timeout) are
        raised. Concurrent callers are serialized; a successful login fully
        replaces whatever state was there before.
        """
        async with self._login_lock:
            self._status = AuthStatus.AUTHENTICATING
            self._credentials = credentials
            try:
                async with self._pool.session() as session:
                    ok = await self._login(session.page, credentials)
            except Exception:
                self._status = AuthStatus.UNAUTHENTICATED
                raise
            if not ok:
                self._state = AuthState()
                self._status = AuthStatus.UNAUTHENTICATED
            return ok

    async def authenticate_on_page(self, page: "Page", credentials: Optional[Credentials] = None) -> bool:
        """Log in on a page the caller keeps using afterwards.

        Mutating form flows need this: the CSRF token the remote issues is
        bound to the page session that logged in.
        """
        credentials = credentials or self._credentials
        if credentials is None:
            logger.error("No credentials available for page login")
            return False
        async with self._login_lock:
            return await self._login(page, credentials)

    async def _login(self, page: "Page", credentials: Credentials) -> bool:
        login_url = f"{self.base_url}{self.login_path}"
        logger.info("Logging into PIMS", url=login_url, username=credentials.username)

        await page.goto(login_url, wait_until="domcontentloaded", timeout=self.login_timeout * 1000)
        await page.fill(LOGIN_SELECTORS["username"], credentials.username)
        await page.fill(LOGIN_SELECTORS["password"], credentials.password)
        await page.click(LOGIN_SELECTORS["submit"])
        await page.wait_for_load_state("networkidle", timeout=self.login_timeout * 1000)

        cookies = await page.context.cookies()
        has_session = any(c.get("name") == self.session_cookie for c in cookies)
        if not has_session or self.login_path in page.url:
            logger.warning("PIMS login rejected", has_session_cookie=has_session, url=page.url)
            return False

        self._store(cookies)
        logger.info("PIMS login succeeded", expires_at=self._state.expires_at)
        return True

    def _store(self, cookies: list[dict[str, Any]]) -> None:
        self._state = AuthState(
            authenticated=True,
            session_credential=json.dumps(cookies),
            expires_at=self._clock() + self.session_ttl,
        )
        self._status = AuthStatus.AUTHENTICATED

    # ---------------------------------------------------------------- state --
    def is_authenticated(self) -> bool:
        if not self._state.authenticated:
            return False
        if self._clock() >= self._state.expires_at:
            logger.info("PIMS session expired", expires_at=self._state.expires_at)
            self._state = AuthState()
            self._status = AuthStatus.EXPIRED
            return False
        return True

    async def apply_auth(self, page: "Page") -> None:
        if not self.is_authenticated():
            if self._status == AuthStatus.EXPIRED:
                raise AuthError("Session expired")
            raise AuthError("Not authenticated")
        cookies = json.loads(self._state.session_credential or "[]")
        await page.context.add_cookies(cookies)

    def serialize(self) -> Optional[str]:
        """The credential to persist for :meth:`restore_from_cache`."""
        return self._state.session_credential if self.is_authenticated() else None

    def restore_from_cache(self, serialized: str) -> bool:
        """Rehydrate a persisted cookie jar and restart its TTL.

        Restoring proves nothing about the remote session; run
        :meth:`verify_session` (or any cheap authenticated read) before
        relying on it.
        """
        try:
            payload = json.loads(serialized)
        except (TypeError, ValueError):
            logger.warning("Cached PIMS session is not valid JSON")
            return False
        cookies = payload.get("cookies") if isinstance(payload, dict) else payload
        if not isinstance(cookies, list) or not cookies:
            logger.warning("Cached PIMS session has no cookies")
            return False
        self._store(cookies)
        logger.info("Restored PIMS session from cache", cookies=len(cookies))
        return True

    async def verify_session(self) -> bool:
        """One authenticated page load; clears state if we land on the login page."""
        if not self.is_authenticated():
            return False
        try:
            async with self._pool.session() as session:
                await self.apply_auth(session.page)
                await session.page.goto(self.base_url, wait_until="domcontentloaded")
                valid = self.login_path not in session.page.url
        except Exception as exc:
            logger.warning("PIMS session verification failed", error=str(exc))
            valid = False
        if not valid:
            self.clear()
        return valid

    def clear(self) -> None:
        self._state = AuthState()
        self._status = AuthStatus.CLEARED
