import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from agentstream.chat import ChatController
from agentstream.client import AgentClient
from agentstream.config import Settings
from agentstream.sse import format_sse

BACKEND_URL = "http://agent.test"


# ---------------------------------------------------------------------------
# Stream builders
# ---------------------------------------------------------------------------

def sse(event: str, data) -> bytes:
    """One encoded event block."""
    return format_sse(event, data).encode("utf-8")


def text_delta(text: str) -> bytes:
    return sse("response.text.delta", {"text": text})


def sse_body(*blocks: bytes) -> bytes:
    return b"".join(blocks)


async def iter_chunks(chunks: list[bytes], delay: float = 0):
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


def stream_response(chunks: list[bytes], status_code: int = 200) -> httpx.Response:
    """A streaming response that yields *chunks* one at a time."""
    return httpx.Response(
        status_code,
        headers={"content-type": "text/event-stream"},
        content=iter_chunks(chunks),
    )


def json_error_response(status_code: int, body) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"content-type": "application/json"},
        content=json.dumps(body).encode(),
    )


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------

class MockBackend:
    """Records requests and answers them with queued handlers.

    Each queued item is a response, or a callable taking the request and
    returning a response (sync or async).
    """

    def __init__(self):
        self.responses: list = []
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0)
        if callable(item):
            item = item(request)
            if asyncio.iscoroutine(item):
                item = await item
        return item

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class Gate:
    """A byte stream that blocks after its first chunks until released."""

    def __init__(self, head: list[bytes], tail: list[bytes] | None = None):
        self.head = head
        self.tail = tail or []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __aiter__(self):
        for chunk in self.head:
            yield chunk
        self.started.set()
        await self.release.wait()
        for chunk in self.tail:
            yield chunk

    def response(self) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=self,
        )


@pytest.fixture
def settings():
    return Settings(backend_url=BACKEND_URL, agent_id="sales_agent")


@pytest.fixture
def backend():
    return MockBackend()


@pytest.fixture
def make_controller(settings, backend) -> Callable[..., ChatController]:
    """Factory fixture for a controller wired to the mock backend."""
    def _make(agent_id: str | None = None, max_messages: int = 100, **overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        client = AgentClient(cfg, transport=backend.transport())
        return ChatController(
            agent_id=agent_id, settings=cfg, client=client,
            max_messages=max_messages,
        )
    return _make
