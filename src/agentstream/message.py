from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_serializer

MAX_MESSAGES = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(Enum):
    THINKING = "thinking"
    SENT = "sent"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.THINKING


class TimelineKind(Enum):
    STATUS = "status"
    THINKING = "thinking"
    TOOL = "tool"
    SQL = "sql"
    CHART = "chart"
    ANNOTATION = "annotation"


class TimelineEntry(BaseModel):
    model_config = {"frozen": True}

    type: TimelineKind
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    content_index: int | None = None

    @field_serializer("type")
    def serialize_type(self, kind: TimelineKind, _info) -> str:
        return kind.value


class Verification(BaseModel):
    """Verification metadata reported alongside a generated SQL query."""

    model_config = {"frozen": True}

    verified_query_used: bool | None = None
    query_verified: bool | None = None
    validated: bool | None = None
    verification: Any = None


class SqlQuery(BaseModel):
    model_config = {"frozen": True}

    sql: str
    verification: Verification | None = None


class Chart(BaseModel):
    model_config = {"frozen": True}

    type: str = "vega-lite"
    chart_spec: dict | list


class Annotation(BaseModel):
    """A citation, source or reference attached to the response text.

    Unknown keys sent by the service are kept as extra fields.
    """

    model_config = {"frozen": True, "extra": "allow", "coerce_numbers_to_str": True}

    type: str = "citation"
    start_index: int | None = None
    end_index: int | None = None
    annotation_index: int | None = None
    content_index: int | None = None
    text: str | None = None
    url: str | None = None
    title: str | None = None
    source: str | None = None
    doc_id: str | None = None
    search_result_id: str | None = None
    index: int | None = None

    @property
    def link(self) -> str | None:
        """The url to link to, falling back to the document id."""
        candidate = self.url or self.doc_id
        if candidate and candidate.strip():
            return candidate
        return None


class Message(BaseModel):
    """One entry in the conversation.

    Messages are immutable snapshots. The accumulator derives a new
    ``Message`` for every update with ``model_copy(update=...)``.
    """

    model_config = {"frozen": True}

    id: str
    role: MessageRole
    text: str = ""
    status: MessageStatus | None = None
    is_streaming: bool = False
    streaming_status: str | None = None
    thinking_steps: tuple[str, ...] = ()
    thinking_texts: tuple[str, ...] = ()
    sql_queries: tuple[SqlQuery, ...] = ()
    charts: tuple[Chart, ...] = ()
    annotations: tuple[Annotation, ...] = ()
    timeline: tuple[TimelineEntry, ...] = ()
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @field_serializer("status")
    def serialize_status(self, status: MessageStatus | None, _info) -> str | None:
        return status.value if status is not None else None

    def citations(self) -> list[tuple[int, Annotation]]:
        """Annotations numbered from 1 in arrival order."""
        return list(enumerate(self.annotations, start=1))


class Conversation(BaseModel):
    """Ordered, capacity-bounded sequence of messages."""

    model_config = {"frozen": True}

    messages: tuple[Message, ...] = ()

    def __len__(self) -> int:
        return len(self.messages)

    def get(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def append_pair(
        self,
        user: Message,
        assistant: Message,
        max_messages: int = MAX_MESSAGES,
    ) -> "Conversation":
        """Append a user/assistant pair, evicting the oldest entries."""
        messages = (*self.messages, user, assistant)
        if len(messages) > max_messages:
            messages = messages[-max_messages:]
        return Conversation(messages=messages)
