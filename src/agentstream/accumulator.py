"""Pure update functions over conversation snapshots.

:func:`update_message` is the only way a message changes. Dispatcher
actions are turned into patches by :func:`apply_action`; the controller
uses :func:`finalize_patch` and :func:`error_patch` to end a turn.

Patches are cumulative: applying the same delta twice appends it twice.
"""

import logging
from collections.abc import Callable, Mapping
from functools import singledispatch
from typing import Any

from agentstream.constants import (
    CHART_ADDED,
    CITATION_PREFIX,
    DEFAULT_REFERENCE_TITLE,
    PROCESSING_THINKING,
    RESPONSE_COMPLETED,
)
from agentstream.events import (
    AnnotationAdded,
    ChartAdded,
    ReasoningDelta,
    ReasoningSegment,
    StatusUpdate,
    StreamAction,
    TextDelta,
    ToolResult,
)
from agentstream.message import (
    Conversation,
    Message,
    MessageStatus,
    SqlQuery,
    TimelineEntry,
    TimelineKind,
)

logger = logging.getLogger(__name__)

Patch = Mapping[str, Any] | Callable[[Message], Mapping[str, Any]]


def update_message(
    conversation: Conversation, message_id: str, patch: Patch
) -> Conversation:
    """Return a new conversation with one message patched.

    Every other message is carried over as the same object. Messages that
    already reached a terminal status are left untouched.
    """
    messages = list(conversation.messages)
    for i, message in enumerate(messages):
        if message.id != message_id:
            continue
        if message.status is not None and message.status.is_terminal:
            logger.debug(f"Ignoring update to finished message {message_id}")
            return conversation
        update = patch(message) if callable(patch) else patch
        messages[i] = message.model_copy(update=dict(update))
        return Conversation(messages=tuple(messages))
    return conversation


def _with_step(steps: tuple[str, ...], label: str) -> tuple[str, ...]:
    return steps if label in steps else (*steps, label)


def _entry(kind: TimelineKind, content: str) -> TimelineEntry:
    return TimelineEntry(type=kind, content=content)


@singledispatch
def apply_action(action: StreamAction) -> Callable[[Message], dict[str, Any]]:
    """Return the patch that folds *action* into a message."""
    raise TypeError(f"Unsupported action: {type(action).__name__}")


@apply_action.register
def _(action: TextDelta):
    def patch(message: Message) -> dict[str, Any]:
        return {
            "text": message.text + action.text,
            "status": MessageStatus.THINKING,
            "is_streaming": True,
        }
    return patch


@apply_action.register
def _(action: StatusUpdate):
    def patch(message: Message) -> dict[str, Any]:
        return {
            "status": MessageStatus.THINKING,
            "streaming_status": action.label,
            "thinking_steps": _with_step(message.thinking_steps, action.label),
            "timeline": (
                *message.timeline,
                _entry(TimelineKind.STATUS, action.label),
            ),
        }
    return patch


@apply_action.register
def _(action: ToolResult):
    def patch(message: Message) -> dict[str, Any]:
        update = {
            "status": MessageStatus.THINKING,
            "streaming_status": action.label,
            "thinking_steps": _with_step(message.thinking_steps, action.label),
        }
        entries = [_entry(TimelineKind.TOOL, action.label)]
        if action.sql:
            update["sql_queries"] = (
                *message.sql_queries,
                SqlQuery(sql=action.sql, verification=action.verification),
            )
            entries.append(_entry(TimelineKind.SQL, action.sql))
        update["timeline"] = (*message.timeline, *entries)
        return update
    return patch


@apply_action.register
def _(action: ReasoningSegment):
    def patch(message: Message) -> dict[str, Any]:
        return {
            "status": MessageStatus.THINKING,
            "thinking_texts": (*message.thinking_texts, action.text),
            "timeline": (
                *message.timeline,
                _entry(TimelineKind.THINKING, action.text),
            ),
        }
    return patch


@apply_action.register
def _(action: ReasoningDelta):
    def patch(message: Message) -> dict[str, Any]:
        if message.thinking_texts:
            *head, last = message.thinking_texts
            return {
                "status": MessageStatus.THINKING,
                "thinking_texts": (*head, last + action.text),
            }
        return {
            "status": MessageStatus.THINKING,
            "thinking_texts": (action.text,),
            "timeline": (
                *message.timeline,
                _entry(TimelineKind.THINKING, PROCESSING_THINKING),
            ),
        }
    return patch


@apply_action.register
def _(action: ChartAdded):
    def patch(message: Message) -> dict[str, Any]:
        return {
            "charts": (*message.charts, action.chart),
            "timeline": (*message.timeline, _entry(TimelineKind.CHART, CHART_ADDED)),
        }
    return patch


@apply_action.register
def _(action: AnnotationAdded):
    def patch(message: Message) -> dict[str, Any]:
        title = action.annotation.title or DEFAULT_REFERENCE_TITLE
        return {
            "annotations": (*message.annotations, action.annotation),
            "timeline": (
                *message.timeline,
                _entry(TimelineKind.ANNOTATION, f"{CITATION_PREFIX}{title}"),
            ),
        }
    return patch


def finalize_patch(text: str) -> dict[str, Any]:
    """Patch for a stream that ended cleanly."""
    return {
        "text": text or RESPONSE_COMPLETED,
        "status": MessageStatus.SENT,
        "is_streaming": False,
        "streaming_status": None,
    }


def error_patch(error: str) -> dict[str, Any]:
    """Terminal patch for a failed turn; collected details are kept."""
    return {
        "text": "",
        "status": MessageStatus.ERROR,
        "is_streaming": False,
        "streaming_status": None,
        "error": error,
    }
