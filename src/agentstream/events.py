"""Update actions produced by the dispatcher from stream records."""

from __future__ import annotations

from dataclasses import dataclass

from agentstream.message import Annotation, Chart, Verification


@dataclass(frozen=True)
class StreamAction:
    """Base for all update actions."""


@dataclass(frozen=True)
class TextDelta(StreamAction):
    """Fragment of the answer text."""

    text: str


@dataclass(frozen=True)
class StatusUpdate(StreamAction):
    label: str


@dataclass(frozen=True)
class ToolResult(StreamAction):
    """A tool finished; carries the SQL it ran, if any."""

    label: str
    sql: str | None = None
    verification: Verification | None = None


@dataclass(frozen=True)
class ReasoningSegment(StreamAction):
    """A complete block of reasoning text that opens a new buffer."""

    text: str


@dataclass(frozen=True)
class ReasoningDelta(StreamAction):
    """Fragment appended to the most recent reasoning buffer."""

    text: str


@dataclass(frozen=True)
class ChartAdded(StreamAction):
    chart: Chart


@dataclass(frozen=True)
class AnnotationAdded(StreamAction):
    annotation: Annotation
