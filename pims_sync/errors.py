"""Error taxonomy for the sync engine.

The remote system has no structured error codes, so :func:`classify_error`
falls back to inspecting the message text when the exception type alone
does not say what went wrong.
"""
from __future__ import annotations
import asyncio
from enum import Enum

import httpx


class PimsSyncError(Exception):
    """Base class for everything raised by the engine."""


class TransientNetworkError(PimsSyncError):
    """Connection reset, timeout, DNS failure. Safe to retry."""


class AuthError(PimsSyncError):
    """Session missing or expired. Needs re-authentication, not a blind retry."""


class NotFoundError(PimsSyncError):
    """The remote record is gone. Terminal for that item."""


class ValidationError(PimsSyncError):
    """Malformed local data. The item is skipped and recorded."""


class UnknownError(PimsSyncError):
    pass


class PoolExhaustedError(PimsSyncError):
    """The browser pool could not hand out a session. A configuration fault."""


class RemoteRequestError(PimsSyncError):
    """Non-2xx answer to a same-origin request made from inside a page."""

    def __init__(self, status: int, status_text: str = "", message: str | None = None):
        self.status = status
        self.status_text = status_text
        super().__init__(message or f"API error: {status} {status_text}".rstrip())


class ErrorType(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


TRANSIENT_ERROR_SIGNATURES = (
    "econnreset",
    "connection reset",
    "econnrefused",
    "connection refused",
    "etimedout",
    "timed out",
    "timeout",
    "enotfound",
    "getaddrinfo",
    "name resolution",
    "socket hang up",
    "fetch failed",
    "failed to fetch",
    "network error",
    "net::err_",
)

_AUTH_SIGNATURES = ("not authenticated", "session expired", "401", "unauthorized")
_NOT_FOUND_SIGNATURES = ("404", "not found", "invalid consultation")


def error_message(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    return repr(error)


def is_retryable_error(error: object) -> bool:
    """True for transient network failures only."""
    if isinstance(error, TransientNetworkError):
        return True
    if isinstance(error, (AuthError, NotFoundError, ValidationError, PoolExhaustedError)):
        return False
    if isinstance(error, (asyncio.TimeoutError, httpx.TransportError)):
        return True
    message = error_message(error).lower()
    return any(signature in message for signature in TRANSIENT_ERROR_SIGNATURES)


def classify_error(error: object) -> ErrorType:
    if error is None:
        return ErrorType.UNKNOWN
    if isinstance(error, AuthError):
        return ErrorType.AUTH
    if isinstance(error, NotFoundError):
        return ErrorType.NOT_FOUND
    if isinstance(error, RemoteRequestError):
        if error.status in (401, 403):
            return ErrorType.AUTH
        if error.status == 404:
            return ErrorType.NOT_FOUND
    if is_retryable_error(error):
        return ErrorType.NETWORK

    message = error_message(error).lower()
    if any(signature in message for signature in _AUTH_SIGNATURES):
        return ErrorType.AUTH
    if any(signature in message for signature in _NOT_FOUND_SIGNATURES):
        return ErrorType.NOT_FOUND
    return ErrorType.UNKNOWN
