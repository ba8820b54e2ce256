"""Same-origin requests issued from inside an authenticated browser page.

The PIMS only honours its session cookie on requests that originate from
its own pages, so every call goes through ``page.evaluate(fetch(...))``
after navigating to the PIMS origin.
"""
from __future__ import annotations
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel

from .errors import RemoteRequestError

if TYPE_CHECKING:
    from playwright.async_api import Page

PIMS_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_PIMS_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}$")

_FETCH_JS = """
async ({ url, method, body, csrfToken, timeoutMs }) => {
  const headers = { Accept: "application/json", "X-Requested-With": "XMLHttpRequest" };
  if (body !== null) headers["Content-Type"] = "application/json";
  if (csrfToken) {
    headers["X-CSRF-TOKEN"] = csrfToken;
    headers["X-XSRF-TOKEN"] = csrfToken;
  }
  const controller = new AbortController();
  const timer = setTimeout(() => controller.abort(), timeoutMs);
  try {
    const res = await fetch(url, {
      method,
      credentials: "include",
      headers,
      body: body === null ? undefined : JSON.stringify(body),
      signal: controller.signal,
    });
    const text = await res.text();
    let data = null;
    try { data = text ? JSON.parse(text) : null; } catch (e) { data = text; }
    return { ok: res.ok, status: res.status, statusText: res.statusText, data };
  } catch (e) {
    if (e && e.name === "AbortError") throw new Error(`Request timeout after ${timeoutMs}ms: ${url}`);
    throw new Error(`fetch failed: ${e && e.message ? e.message : e}`);
  } finally {
    clearTimeout(timer);
  }
}
"""

_CSRF_JS = """
() => {
  const meta = document.querySelector('meta[name="csrf-token"], meta[name="_csrf"], meta[name="csrf_token"]');
  if (meta && meta.getAttribute("content")) return meta.getAttribute("content");
  const match = document.cookie.match(/(?:^|;\\s*)(?:XSRF-TOKEN|csrf_token|csrftoken)=([^;]+)/);
  if (match) return decodeURIComponent(match[1]);
  const input = document.querySelector('input[name="_token"], input[name="csrf_token"], input[name="_csrf"]');
  if (input && input.value) return input.value;
  return null;
}
"""


class PageResponse(BaseModel):
    ok: bool
    status: int
    status_text: str = ""
    data: Any = None


async def page_fetch(
    page: "Page",
    url: str,
    *,
    method: str = "GET",
    body: Any = None,
    csrf_token: Optional[str] = None,
    timeout: float = 30.0,
) -> PageResponse:
    raw = await page.evaluate(
        _FETCH_JS,
        {"url": url, "method": method, "body": body, "csrfToken": csrf_token, "timeoutMs": int(timeout * 1000)},
    )
    return PageResponse(
        ok=bool(raw.get("ok")),
        status=int(raw.get("status", 0)),
        status_text=raw.get("statusText") or "",
        data=raw.get("data"),
    )


async def page_fetch_json(page: "Page", url: str, **kwargs: Any) -> Any:
    """Like :func:`page_fetch` but raises :class:`RemoteRequestError` on non-2xx."""
    response = await page_fetch(page, url, **kwargs)
    if not response.ok:
        raise RemoteRequestError(response.status, response.status_text)
    return response.data


async def extract_csrf_token(page: "Page") -> Optional[str]:
    """CSRF token of the loaded page: meta tag, then cookie, then hidden field."""
    return await page.evaluate(_CSRF_JS)


def format_pims_datetime(value: datetime) -> str:
    return value.strftime(PIMS_DATETIME_FORMAT)


def parse_pims_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse the PIMS clinic-local ``YYYY-MM-DD HH:MM:SS`` format (ISO as fallback)."""
    if not value:
        return None
    value = value.strip()
    if _PIMS_DATETIME_RE.match(value):
        return datetime.strptime(re.sub(r"\s+", " ", value), PIMS_DATETIME_FORMAT)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    # everything downstream works in naive clinic-local time
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed
