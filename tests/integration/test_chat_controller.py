"""End-to-end tests for ChatController against a mocked agent backend."""

import asyncio
import json

import httpx
import pytest

from agentstream.constants import (
    ERROR_PREFIX,
    PROCESSING_RESULTS,
    PROCESSING_THINKING,
    RESPONSE_COMPLETED,
    USER_CANCELED,
)
from agentstream.message import MessageRole, MessageStatus, TimelineKind

from tests.conftest import (
    BACKEND_URL,
    Gate,
    json_error_response,
    sse,
    sse_body,
    stream_response,
    text_delta,
)

pytestmark = pytest.mark.integration


def _failing_response(chunks: list[bytes], exc: Exception) -> httpx.Response:
    async def body():
        for chunk in chunks:
            yield chunk
        raise exc

    return httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=body(),
    )


# ---------------------------------------------------------------------------
# Successful turns
# ---------------------------------------------------------------------------

class TestSuccessfulTurn:
    @pytest.mark.asyncio
    async def test_full_event_mix(self, make_controller, backend):
        tool_result = {
            "content": [{"type": "json", "json": {"sql": "SELECT region, SUM(x)", "query_verified": True}}]
        }
        backend.responses = [stream_response([
            sse_body(
                sse("response.status", {"message": "Planning the next steps"}),
                sse("response.thinking", {"thinking": {"text": "Need revenue by region."}}),
                sse("response.thinking.delta", {"text": " Then sort."}),
            ),
            sse_body(
                sse("response.tool_result", tool_result),
                sse("response.chart", {"chart_spec": '{"mark":"bar"}'}),
                sse("response.chart", {"chart_spec": "not-json"}),
                b"event: response.text.delta\ndata: {broken\n",
                sse("response.unknown", {"x": 1}),
            ),
            sse_body(
                text_delta("West leads "),
                text_delta("with $1.2M."),
                sse("response.text.annotation", {
                    "start_index": 0,
                    "annotation": {"doc_id": "https://docs/r", "doc_title": "Revenue"},
                }),
                b"data: [DONE]\n\n",
            ),
        ])]
        chat = make_controller()

        result = await chat.send_message("  Revenue by region?  ")

        assert result.success is True
        assert len(chat.messages) == 2
        user, assistant = chat.messages
        assert user.role is MessageRole.USER
        assert user.text == "Revenue by region?"
        assert result.assistant_message_id == assistant.id
        assert user.id.removesuffix("_user") == assistant.id.removesuffix("_assistant")

        assert assistant.status is MessageStatus.SENT
        assert assistant.is_streaming is False
        assert assistant.streaming_status is None
        assert assistant.text == "West leads with $1.2M."
        assert assistant.thinking_steps == ("Planning the next steps", PROCESSING_RESULTS)
        assert assistant.thinking_texts == ("Need revenue by region. Then sort.",)
        assert [q.sql for q in assistant.sql_queries] == ["SELECT region, SUM(x)"]
        assert assistant.sql_queries[0].verification.query_verified is True
        assert [c.chart_spec for c in assistant.charts] == [{"mark": "bar"}]
        assert assistant.annotations[0].url == "https://docs/r"
        assert [e.type for e in assistant.timeline] == [
            TimelineKind.STATUS,
            TimelineKind.THINKING,
            TimelineKind.TOOL,
            TimelineKind.SQL,
            TimelineKind.CHART,
            TimelineKind.ANNOTATION,
        ]
        assert assistant.timeline[-1].content == "Citation: Revenue"
        assert chat.is_loading is False

    @pytest.mark.asyncio
    async def test_sends_one_post_to_agent_endpoint(self, make_controller, backend):
        backend.responses = [stream_response([text_delta("ok")])]
        chat = make_controller(agent_id="finance agent")

        await chat.send_message("hello")

        assert len(backend.requests) == 1
        request = backend.requests[0]
        assert request.method == "POST"
        assert request.url.raw_path == b"/api/agents/finance%20agent/messages"
        assert request.headers["accept"] == "text/event-stream"
        body = json.loads(request.content)
        assert body["messages"][0]["content"][0] == {"type": "text", "text": "hello"}
        assert body["tool_choice"] == {"type": "auto"}
        assert body["stream"] is True

    @pytest.mark.asyncio
    async def test_no_text_uses_completed_fallback(self, make_controller, backend):
        backend.responses = [stream_response([sse("response.status", {"message": "Done"})])]
        chat = make_controller()

        await chat.send_message("hi")

        assert chat.messages[-1].text == RESPONSE_COMPLETED
        assert chat.messages[-1].status is MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_reasoning_delta_without_segment(self, make_controller, backend):
        backend.responses = [stream_response([
            sse("response.thinking.delta", {"text": "Hel"}),
            sse("response.thinking.delta", {"text": "lo"}),
        ])]
        chat = make_controller()

        await chat.send_message("hi")

        assistant = chat.messages[-1]
        assert assistant.thinking_texts == ("Hello",)
        assert [e.content for e in assistant.timeline] == [PROCESSING_THINKING]

    @pytest.mark.asyncio
    async def test_text_split_mid_character(self, make_controller, backend):
        body = text_delta("naïve")
        split = body.index("ï".encode()) + 1
        backend.responses = [stream_response([body[:split], body[split:]])]
        chat = make_controller()

        await chat.send_message("hi")

        assert chat.messages[-1].text == "naïve"


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

class TestAdmission:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_blank_text_ignored(self, make_controller, backend, text):
        chat = make_controller()

        assert await chat.send_message(text) is None
        assert chat.messages == ()
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_no_agent_selected_ignored(self, make_controller, backend):
        chat = make_controller()
        chat.agent_id = None

        assert await chat.send_message("hi") is None
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_send_while_active_is_ignored(self, make_controller, backend):
        gate = Gate([text_delta("a")], [text_delta("b")])
        backend.responses = [gate.response()]
        chat = make_controller()

        first = asyncio.create_task(chat.send_message("one"))
        await gate.started.wait()
        assert chat.is_loading is True

        assert await chat.send_message("two") is None
        assert len(chat.messages) == 2
        assert len(backend.requests) == 1

        gate.release.set()
        result = await first
        assert result.success is True
        assert chat.messages[-1].text == "ab"

    @pytest.mark.asyncio
    async def test_ids_unique_within_same_millisecond(self, make_controller, backend, monkeypatch):
        monkeypatch.setattr("agentstream.chat.time.time", lambda: 1700000000.0)
        backend.responses = [
            stream_response([text_delta("1")]),
            stream_response([text_delta("2")]),
        ]
        chat = make_controller()

        await chat.send_message("a")
        await chat.send_message("b")

        ids = [m.id for m in chat.messages]
        assert len(set(ids)) == 4
        assert ids == [
            "1700000000000_user",
            "1700000000000_assistant",
            "1700000000001_user",
            "1700000000001_assistant",
        ]

    @pytest.mark.asyncio
    async def test_capacity_evicts_oldest_pairs(self, make_controller, backend):
        turns = 55
        backend.responses = [stream_response([text_delta(f"a{n}")]) for n in range(turns)]
        chat = make_controller()

        for n in range(turns):
            await chat.send_message(f"q{n}")
            assert len(chat.messages) <= 100

        assert len(chat.messages) == 100
        assert chat.messages[0].text == "q5"
        assert chat.messages[0].role is MessageRole.USER
        assert chat.messages[-1].text == f"a{turns - 1}"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_http_error_parts(self, make_controller, backend):
        backend.responses = [json_error_response(400, {"errorParts": ["A", "B"]})]
        chat = make_controller()

        result = await chat.send_message("hi")

        assistant = chat.messages[-1]
        assert result.success is False
        assert assistant.status is MessageStatus.ERROR
        assert assistant.error == "A\n\nB"
        assert assistant.text == ""
        assert assistant.is_streaming is False
        assert chat.is_loading is False

    @pytest.mark.asyncio
    async def test_http_error_without_json(self, make_controller, backend):
        backend.responses = [httpx.Response(500, text="oops")]
        chat = make_controller()

        await chat.send_message("hi")

        assert chat.messages[-1].error == "API Error: 500 Internal Server Error"

    @pytest.mark.asyncio
    async def test_connection_lost_keeps_collections(self, make_controller, backend):
        backend.responses = [_failing_response(
            [
                sse("response.status", {"message": "Running SQL"}),
                text_delta("partial answer"),
            ],
            httpx.ReadError("connection reset by peer"),
        )]
        chat = make_controller()

        result = await chat.send_message("hi")

        assistant = chat.messages[-1]
        assert result.success is False
        assert assistant.status is MessageStatus.ERROR
        assert assistant.text == ""
        assert assistant.error.startswith(ERROR_PREFIX)
        assert "Connection lost during streaming." in assistant.error
        assert BACKEND_URL in assistant.error
        assert assistant.thinking_steps == ("Running SQL",)
        assert len(assistant.timeline) == 1
        assert chat.is_loading is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ConnectTimeout])
    async def test_connect_failure(self, make_controller, backend, error):
        def refuse(request):
            raise error("connection refused", request=request)

        backend.responses = [refuse]
        chat = make_controller()

        await chat.send_message("hi")

        assert "Connection lost during streaming." in chat.messages[-1].error
        assert "stalled" not in chat.messages[-1].error

    @pytest.mark.asyncio
    async def test_stalled_stream(self, make_controller, backend):
        backend.responses = [_failing_response(
            [text_delta("slow")], httpx.ReadTimeout("timed out"),
        )]
        chat = make_controller(idle_timeout=5.0)

        await chat.send_message("hi")

        assistant = chat.messages[-1]
        assert assistant.status is MessageStatus.ERROR
        assert "no data received for 5 seconds" in assistant.error

    @pytest.mark.asyncio
    async def test_unexpected_error_message_kept(self, make_controller, backend):
        backend.responses = [_failing_response([], ValueError("decoder exploded"))]
        chat = make_controller()

        result = await chat.send_message("hi")

        assert result.error == "decoder exploded"
        assert chat.messages[-1].error == "decoder exploded"

    @pytest.mark.asyncio
    async def test_failed_turn_does_not_block_next(self, make_controller, backend):
        backend.responses = [
            json_error_response(503, {"error": "busy"}),
            stream_response([text_delta("ok")]),
        ]
        chat = make_controller()

        await chat.send_message("one")
        result = await chat.send_message("two")

        assert result.success is True
        assert [m.status for m in chat.messages if m.role is MessageRole.ASSISTANT] == [
            MessageStatus.ERROR,
            MessageStatus.SENT,
        ]


# ---------------------------------------------------------------------------
# Cancellation and clearing
# ---------------------------------------------------------------------------

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_active_turn(self, make_controller, backend):
        gate = Gate([
            sse("response.status", {"message": "Thinking"}),
            text_delta("partial"),
        ])
        backend.responses = [gate.response()]
        chat = make_controller()

        task = asyncio.create_task(chat.send_message("hi"))
        await gate.started.wait()
        assert chat.messages[-1].text == "partial"

        assert chat.cancel_request() is True
        result = await task

        assistant = chat.messages[-1]
        assert result.success is False
        assert assistant.status is MessageStatus.ERROR
        assert assistant.is_streaming is False
        assert assistant.text == ""
        assert assistant.error == f"{ERROR_PREFIX}\n\n{USER_CANCELED}"
        assert assistant.thinking_steps == ("Thinking",)
        assert chat.is_loading is False

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, make_controller, backend):
        backend.responses = [stream_response([text_delta("done")])]
        chat = make_controller()

        assert chat.cancel_request() is False
        await chat.send_message("hi")
        assert chat.cancel_request() is False
        assert chat.messages[-1].status is MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_clear_while_active(self, make_controller, backend):
        gate = Gate([text_delta("partial")])
        backend.responses = [gate.response()]
        chat = make_controller()

        task = asyncio.create_task(chat.send_message("hi"))
        await gate.started.wait()

        chat.clear_messages()
        assert chat.messages == ()
        assert chat.is_loading is False

        result = await task
        assert result.success is False
        assert chat.messages == ()
        assert chat.is_loading is False

    @pytest.mark.asyncio
    async def test_clear_when_idle(self, make_controller, backend):
        backend.responses = [stream_response([text_delta("done")])]
        chat = make_controller()
        await chat.send_message("hi")

        chat.clear_messages()

        assert chat.messages == ()
        assert chat.is_loading is False

    @pytest.mark.asyncio
    async def test_external_cancellation_propagates(self, make_controller, backend):
        gate = Gate([text_delta("partial")])
        backend.responses = [gate.response()]
        chat = make_controller()

        task = asyncio.create_task(chat.send_message("hi"))
        await gate.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert chat.messages[-1].status is MessageStatus.ERROR
        assert USER_CANCELED in chat.messages[-1].error
        assert chat.is_loading is False


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------

class TestSubscribers:
    @pytest.mark.asyncio
    async def test_one_snapshot_per_chunk(self, make_controller, backend):
        backend.responses = [stream_response([
            sse_body(text_delta("a"), text_delta("b"), text_delta("c")),
            text_delta("d"),
        ])]
        chat = make_controller()
        snapshots = []
        chat.subscribe(snapshots.append)

        await chat.send_message("hi")

        texts = [s.messages[-1].text for s in snapshots]
        assert texts == ["", "abc", "abcd", "abcd"]
        assert snapshots[-1].messages[-1].status is MessageStatus.SENT
        assert snapshots[0].messages[0] is snapshots[-1].messages[0]

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_turn(self, make_controller, backend, caplog):
        backend.responses = [stream_response([text_delta("ok")])]
        chat = make_controller()
        seen = []

        def broken(conversation):
            raise RuntimeError("render failed")

        chat.subscribe(broken)
        chat.subscribe(seen.append)

        result = await chat.send_message("hi")

        assert result.success is True
        assert seen[-1].messages[-1].text == "ok"
        assert any(r.exc_info for r in caplog.records)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_controller, backend):
        backend.responses = [stream_response([text_delta("ok")])]
        chat = make_controller()
        seen = []
        unsubscribe = chat.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        await chat.send_message("hi")

        assert seen == []
