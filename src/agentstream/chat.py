import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from agentstream.accumulator import (
    Patch,
    apply_action,
    error_patch,
    finalize_patch,
    update_message,
)
from agentstream.client import AgentClient
from agentstream.config import Settings
from agentstream.dispatcher import dispatch
from agentstream.errors import UserCanceled, classify_error
from agentstream.events import TextDelta
from agentstream.instrumentation import record_error, record_stream_stats, turn_span
from agentstream.message import (
    MAX_MESSAGES,
    Conversation,
    Message,
    MessageRole,
    MessageStatus,
)
from agentstream.sse import aiter_records

logger = logging.getLogger(__name__)

Listener = Callable[[Conversation], None]


@dataclass
class TurnResult:
    """Outcome of one ``send_message()`` call."""

    success: bool
    assistant_message_id: str
    error: str | None = None


class CancellationHandle:
    """Cancels the task running one turn.

    Safe to call any number of times, including after the turn finished.
    """

    def __init__(self, task: asyncio.Task):
        self._task = task
        self.requested = False

    def cancel(self) -> bool:
        if self._task.done():
            return False
        self.requested = True
        self._task.cancel()
        return True


class ChatController:
    """Owns the conversation and runs one streamed turn at a time.

    ``send_message()`` appends a user/assistant pair, streams the agent's
    reply into the assistant message and always leaves it ``sent`` or
    ``error``. Observers read :attr:`conversation` or ``subscribe()`` to be
    called with every new snapshot.

    Args:
        agent_id: Agent to talk to. Defaults to ``settings.agent_id``.
        settings: Client configuration, or settings read from the
            environment.
        client: Transport, or a default ``AgentClient`` built from
            *settings*.
        max_messages: Conversation capacity; the oldest messages are
            evicted first.
    """

    def __init__(
        self,
        agent_id: str | None = None,
        settings: Settings | None = None,
        client: AgentClient | None = None,
        max_messages: int = MAX_MESSAGES,
    ):
        self.settings = settings or (client.settings if client else Settings.from_env())
        self.agent_id = agent_id or self.settings.agent_id
        self.client = client or AgentClient(self.settings)
        self.max_messages = max_messages

        self._conversation = Conversation()
        self._is_loading = False
        self._handle: CancellationHandle | None = None
        self._listeners: list[Listener] = []
        self._last_base_id = 0

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._conversation.messages

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for new snapshots; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_conversation(self, conversation: Conversation) -> None:
        self._conversation = conversation
        for listener in list(self._listeners):
            try:
                listener(conversation)
            except Exception:
                logger.exception(f"Conversation listener {listener!r} raised")

    def _update(self, message_id: str, patch: Patch) -> None:
        self._set_conversation(
            update_message(self._conversation, message_id, patch)
        )

    def _next_base_id(self) -> str:
        # Strictly increasing so ids are never reused within a millisecond.
        base = max(int(time.time() * 1000), self._last_base_id + 1)
        self._last_base_id = base
        return str(base)

    async def send_message(self, text: str) -> TurnResult | None:
        """Send *text* and stream the reply into the conversation.

        Returns ``None`` without doing anything when *text* is blank, a
        turn is already in flight, or no agent is selected.
        """
        text = text.strip()
        if not text or self._is_loading:
            return None
        agent_id = self.agent_id
        if not agent_id:
            logger.warning("No agent selected; message not sent")
            return None

        base_id = self._next_base_id()
        assistant_id = f"{base_id}_assistant"
        user_message = Message(
            id=f"{base_id}_user",
            role=MessageRole.USER,
            text=text,
            status=MessageStatus.SENT,
        )
        assistant_message = Message(
            id=assistant_id,
            role=MessageRole.ASSISTANT,
            status=MessageStatus.THINKING,
            is_streaming=True,
        )
        self._set_conversation(
            self._conversation.append_pair(
                user_message, assistant_message, self.max_messages,
            )
        )
        self._is_loading = True

        task = asyncio.ensure_future(
            self._stream_turn(agent_id, text, assistant_id)
        )
        handle = CancellationHandle(task)
        self._handle = handle
        logger.info(f"Turn {base_id} started for agent {agent_id}")
        try:
            await task
        except asyncio.CancelledError:
            error = self._fail(assistant_id, UserCanceled())
            if not handle.requested:
                raise
            return TurnResult(False, assistant_id, error)
        except Exception as e:
            error = self._fail(assistant_id, e)
            return TurnResult(False, assistant_id, error)
        finally:
            if self._handle is handle:
                self._handle = None
                self._is_loading = False
        logger.info(f"Turn {base_id} completed")
        return TurnResult(True, assistant_id)

    async def _stream_turn(self, agent_id: str, text: str, assistant_id: str) -> None:
        answer = ""
        records = dropped = 0
        async with turn_span(agent_id, assistant_id) as span:
            try:
                async with self.client.stream_message(agent_id, text) as chunks:
                    async for batch in aiter_records(chunks):
                        conversation = self._conversation
                        for record in batch:
                            records += 1
                            action = dispatch(record)
                            if action is None:
                                dropped += 1
                                continue
                            if isinstance(action, TextDelta):
                                answer += action.text
                            conversation = update_message(
                                conversation, assistant_id, apply_action(action),
                            )
                        self._set_conversation(conversation)
            except BaseException as e:
                record_error(span, e)
                raise
            finally:
                record_stream_stats(span, records, dropped, len(answer))
        logger.debug(f"{records} records received, {dropped} skipped")
        self._update(assistant_id, finalize_patch(answer))

    def _fail(self, assistant_id: str, exc: BaseException) -> str:
        error = classify_error(
            exc, self.client.backend_url, self.settings.idle_timeout,
        )
        logger.warning(f"Turn for {assistant_id} failed: {type(exc).__name__}: {exc}")
        self._update(assistant_id, error_patch(error))
        return error

    def cancel_request(self) -> bool:
        """Cancel the turn in flight. No-op when nothing is running."""
        if self._handle is None or not self._is_loading:
            return False
        logger.info("Cancelling active turn")
        return self._handle.cancel()

    def clear_messages(self) -> None:
        """Cancel any active turn and empty the conversation."""
        self.cancel_request()
        self._handle = None
        self._is_loading = False
        self._set_conversation(Conversation())

    async def aclose(self) -> None:
        await self.client.aclose()
