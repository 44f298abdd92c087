"""
Error taxonomy for the sync engine.

Backends raise ``BackendError`` with the HTTP-style status they got back
(or none for network-level failures). Callers of the engine only ever see
``SyncError``, which carries a classified kind and a short message that can
be shown to a user as is.
"""

import asyncio
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"


TRANSIENT_STATUSES = {408, 500, 502, 503, 504}


class BackendError(Exception):
    def __init__(self, status: Optional[int] = None, detail: str = ""):
        self.status = status
        self.detail = detail
        super().__init__(f"HTTP {status}: {detail}" if status else detail or "network error")


class SyncError(Exception):
    """A classified, user-presentable failure of a sync operation."""

    def __init__(self, kind: ErrorKind, message: str, status: Optional[int] = None):
        self.kind = kind
        self.message = message
        self.status = status
        super().__init__(message)


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, SyncError):
        return error.kind
    if isinstance(error, BackendError):
        if error.status is None:
            return ErrorKind.TRANSIENT
        if error.status == 429:
            return ErrorKind.RATE_LIMITED
        if error.status in TRANSIENT_STATUSES or error.status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT
    if isinstance(error, (asyncio.TimeoutError, httpx.TransportError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def is_transient(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.TRANSIENT


def user_message(error: BaseException) -> str:
    status = getattr(error, "status", None)

    if status is None:
        if isinstance(error, asyncio.TimeoutError):
            return "The request timed out. Please try again shortly."
        if classify_error(error) is ErrorKind.TRANSIENT:
            return "Temporary network issue. Please try again."
        return "Unexpected error. Please try again shortly."

    messages = {
        400: "Invalid request. Please check your input.",
        401: "Authentication required. Please sign in again.",
        403: "You are not allowed to perform this action.",
        404: "The requested item was not found.",
        409: "The data changed elsewhere. Refresh to see the latest state.",
        429: "Rate limited. Try again later.",
        500: "Server error. Please try again shortly.",
    }
    if status in messages:
        return messages[status]
    if status in (502, 503, 504):
        return "Service temporarily unavailable. Please try again shortly."
    return f"Request failed ({status}). Please try again shortly."


def to_sync_error(error: BaseException) -> SyncError:
    if isinstance(error, SyncError):
        return error
    return SyncError(
        classify_error(error), user_message(error), status=getattr(error, "status", None)
    )
