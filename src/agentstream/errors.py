"""Failure taxonomy for a single turn and the classifier that turns any
failure into the assistant message's terminal error text.

Exceptions keep the exact text to show in ``full_message``; ``str(exc)``
collapses blank-line separators so it stays readable in logs.
"""

from __future__ import annotations

import asyncio
import json
import logging

import httpx

from agentstream.constants import (
    API_ERROR,
    CONNECTION_LOST,
    CONNECTION_LOST_TIP,
    ERROR_PREFIX,
    NO_READABLE_STREAM,
    STREAM_STALLED,
    UNKNOWN_ERROR,
    USER_CANCELED,
)

logger = logging.getLogger(__name__)

# Any other timeout (connect, write, pool) means the backend was not reached.
_CONNECTION_ERRORS = (
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    httpx.TimeoutException,
)


class AgentStreamError(Exception):
    """Base class for failures raised while running a turn."""

    def __init__(self, message: str = ""):
        self.full_message = message
        super().__init__(" ".join(message.split("\n\n")))


class HttpError(AgentStreamError):
    """The agent service answered with a non-2xx status."""

    def __init__(self, status_code: int, reason: str, detail: str):
        self.status_code = status_code
        self.reason = reason
        super().__init__(detail)


class StreamUnavailable(AgentStreamError):
    def __init__(self, message: str = NO_READABLE_STREAM):
        super().__init__(message)


class ConnectionLost(AgentStreamError):
    """The connection dropped before the stream finished."""


class StreamStalled(AgentStreamError):
    """No data arrived within the configured idle timeout."""


class UserCanceled(AgentStreamError):
    def __init__(self, message: str = USER_CANCELED):
        super().__init__(message)


class MalformedPayload(AgentStreamError):
    """A single stream record could not be interpreted.

    Always recovered locally by dropping the record.
    """


async def http_error_from_response(response: httpx.Response) -> HttpError:
    """Build an :class:`HttpError` from a non-2xx streaming response.

    JSON bodies may carry ``errorParts`` (preferred, joined with blank
    lines) or a single ``error``/``message`` string.
    """
    detail = f"{API_ERROR}: {response.status_code} {response.reason_phrase}"
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = json.loads(await response.aread())
        except (json.JSONDecodeError, UnicodeDecodeError, httpx.HTTPError) as e:
            logger.debug(f"Could not parse error body: {e}")
        else:
            detail = _detail_from_body(body) or detail
    return HttpError(response.status_code, response.reason_phrase, detail)


def _detail_from_body(body) -> str | None:
    if not isinstance(body, dict):
        return None
    parts = body.get("errorParts")
    if isinstance(parts, list) and parts:
        return "\n\n".join(str(p) for p in parts)
    for key in ("error", "message"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def classify_error(
    exc: BaseException,
    backend_url: str,
    idle_timeout: float | None = None,
) -> str:
    """Return the terminal error text for a failed turn."""
    if isinstance(exc, (UserCanceled, asyncio.CancelledError)):
        return f"{ERROR_PREFIX}\n\n{USER_CANCELED}"
    if isinstance(exc, (StreamStalled, httpx.ReadTimeout)):
        seconds = f"{idle_timeout:g}" if idle_timeout is not None else "several"
        return f"{ERROR_PREFIX}\n\n{STREAM_STALLED.format(seconds=seconds)}"
    if isinstance(exc, (ConnectionLost, *_CONNECTION_ERRORS)):
        tip = CONNECTION_LOST_TIP.format(backend_url=backend_url)
        return f"{ERROR_PREFIX}\n\n{CONNECTION_LOST}\n\n{tip}"
    if isinstance(exc, AgentStreamError):
        return exc.full_message or UNKNOWN_ERROR
    return str(exc) or UNKNOWN_ERROR
