import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import httpx

from agentstream.config import Settings
from agentstream.errors import (
    ConnectionLost,
    StreamStalled,
    StreamUnavailable,
    http_error_from_response,
)

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "text/event-stream",
}


async def _body(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except (httpx.StreamConsumed, httpx.StreamClosed) as e:
        raise StreamUnavailable() from e
    except httpx.ReadTimeout as e:
        raise StreamStalled(str(e)) from e
    except (httpx.NetworkError, httpx.RemoteProtocolError) as e:
        raise ConnectionLost(str(e)) from e


def build_request_body(text: str) -> dict[str, Any]:
    """Request body for a single user message, streamed."""
    return {
        "messages": [
            {
                "role": "user",
                "content": [{"type": "text", "text": text}],
            }
        ],
        "tool_choice": {"type": "auto"},
        "stream": True,
    }


class AgentClient:
    """HTTP transport to the agent backend.

    Args:
        settings: Backend address and timeouts.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``
            in tests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or Settings()
        timeout = httpx.Timeout(
            self.settings.connect_timeout,
            read=self.settings.idle_timeout,
        )
        self.client = httpx.AsyncClient(
            base_url=self.settings.backend_url,
            timeout=timeout,
            transport=transport,
        )

    @property
    def backend_url(self) -> str:
        return self.settings.backend_url

    def endpoint(self, agent_id: str) -> str:
        return f"/api/agents/{quote(agent_id, safe='')}/messages"

    @asynccontextmanager
    async def stream_message(
        self, agent_id: str, text: str
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST one message and yield the response body as byte chunks.

        Raises:
            HttpError: The backend answered with a non-2xx status.
            StreamUnavailable: The response has no body left to read.
            ConnectionLost: The connection dropped while reading the body.
            StreamStalled: No chunk arrived within the idle timeout.
        """
        url = self.endpoint(agent_id)
        logger.info(f"POST {url}")
        async with self.client.stream(
            "POST", url, json=build_request_body(text), headers=STREAM_HEADERS,
        ) as response:
            if not response.is_success:
                raise await http_error_from_response(response)
            yield _body(response)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
