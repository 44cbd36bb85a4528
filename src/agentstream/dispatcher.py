"""Maps framed stream records to typed update actions.

Every recognised event kind is listed in :class:`EventKind`; anything else
is ignored. A record that fails to parse is dropped on its own and never
interrupts the stream.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

from pydantic import ValidationError

from agentstream.constants import PROCESSING_RESULTS
from agentstream.errors import MalformedPayload
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
from agentstream.extraction import (
    extract_sql_query,
    extract_verification_info,
    status_label,
)
from agentstream.message import Annotation, Chart
from agentstream.sse import SSERecord

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    TEXT_DELTA = "response.text.delta"
    STATUS = "response.status"
    TOOL_RESULT = "response.tool_result"
    THINKING = "response.thinking"
    THINKING_DELTA = "response.thinking.delta"
    CHART = "response.chart"
    ANNOTATION = "response.text.annotation"

    @classmethod
    def parse(cls, name: str) -> EventKind | None:
        try:
            return cls(name)
        except ValueError:
            return None


def dispatch(record: SSERecord) -> StreamAction | None:
    """Return the update action for one record, or ``None`` to skip it."""
    kind = EventKind.parse(record.event)
    if kind is None:
        logger.debug(f"Ignoring unrecognised event: {record.event!r}")
        return None
    try:
        payload = json.loads(record.data)
        if not isinstance(payload, dict):
            raise MalformedPayload(f"{kind.value} payload is not an object")
        return _to_action(kind, payload)
    except (ValueError, RecursionError, MalformedPayload, ValidationError) as e:
        logger.debug(f"Dropping malformed {kind.value} record: {e}")
        return None


def _to_action(kind: EventKind, payload: dict[str, Any]) -> StreamAction | None:
    match kind:
        case EventKind.TEXT_DELTA:
            text = payload.get("text")
            return TextDelta(text=text) if _is_text(text) else None
        case EventKind.STATUS:
            message = payload.get("message")
            if not _is_text(message):
                return None
            return StatusUpdate(label=status_label(message))
        case EventKind.TOOL_RESULT:
            return ToolResult(
                label=PROCESSING_RESULTS,
                sql=extract_sql_query(payload),
                verification=extract_verification_info(payload),
            )
        case EventKind.THINKING:
            thinking = payload.get("thinking")
            text = thinking.get("text") if isinstance(thinking, dict) else None
            if not _is_text(text) or not text.strip():
                return None
            return ReasoningSegment(text=text.strip())
        case EventKind.THINKING_DELTA:
            text = payload.get("text")
            return ReasoningDelta(text=text) if _is_text(text) else None
        case EventKind.CHART:
            return _chart_action(payload)
        case EventKind.ANNOTATION:
            return AnnotationAdded(annotation=_normalize_annotation(payload))
        case _:
            return None


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _chart_action(payload: dict[str, Any]) -> ChartAdded | None:
    raw_spec = payload.get("chart_spec")
    if not raw_spec:
        return None
    if not isinstance(raw_spec, str):
        raise MalformedPayload("chart_spec is not a JSON string")
    spec = json.loads(raw_spec)
    if not isinstance(spec, (dict, list)):
        raise MalformedPayload("chart_spec does not decode to an object")
    return ChartAdded(chart=Chart(chart_spec=spec))


def _normalize_annotation(payload: dict[str, Any]) -> Annotation:
    source = payload.get("annotation", payload)
    if not isinstance(source, dict):
        raise MalformedPayload("annotation is not an object")
    known = {
        "type": source.get("type") or "citation",
        "start_index": payload.get("start_index"),
        "end_index": payload.get("end_index"),
        "annotation_index": payload.get("annotation_index"),
        "content_index": payload.get("content_index"),
        "text": source.get("text"),
        "url": source.get("url") or source.get("doc_id"),
        "title": source.get("title") or source.get("doc_title"),
        "source": source.get("source"),
        "doc_id": source.get("doc_id"),
        "search_result_id": source.get("search_result_id"),
        "index": source.get("index"),
    }
    extra = {k: v for k, v in source.items() if k not in known}
    return Annotation(**extra, **known)
