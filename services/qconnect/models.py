"""
Data models for the QConnect client.

Conversations and messages arrive from the backend as loose JSON; they are
parsed into these Pydantic models once, at the client boundary, so the rest
of the package never inspects raw payload keys.

Generation responses are modelled as a tagged union discriminated on
``kind``: ``QueryResult`` for a generated query and
``SchemaDescriptionResult`` for explanatory schema text.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from services.common.http_errors import MalformedResponseError
from services.qconnect.ids import new_message_id

QUERY_LABEL = "Generated query"
SCHEMA_LABEL = "Schema information"
FALLBACK_LABEL = "Improved query (offline placeholder)"
ERROR_LABEL = "Error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 string (or epoch seconds) from the backend."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ResultKind(str, Enum):
    QUERY = "query"
    SCHEMA_DESCRIPTION = "schema_description"


class FeedbackType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"


class OperationOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Message(BaseModel):
    """
    A single chat message.

    ``content`` is what is sent to the backend as history: the user's text,
    or for assistant messages the generated query / schema explanation.
    ``label`` is the display text shown above an assistant result.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    label: Optional[str] = None
    kind: Optional[ResultKind] = None
    thinking: Optional[List[str]] = None
    execution_id: Optional[str] = None
    is_error: bool = False
    is_degraded: bool = False

    @property
    def is_user(self) -> bool:
        return self.role == MessageRole.USER

    @classmethod
    def from_api(cls, record: Dict[str, Any]) -> "Message":
        """Hydrate a backend message record."""
        timestamp = parse_timestamp(
            record.get("timestamp") or record.get("created_at")
        ) or utc_now()
        content = record.get("content") or ""
        if record.get("role") == MessageRole.USER.value:
            return cls(
                id=str(record.get("id") or new_message_id("remote")),
                role=MessageRole.USER,
                content=content,
                timestamp=timestamp,
            )

        metadata = record.get("metadata") or {}
        response_type = record.get("response_type") or metadata.get("response_type")
        kind = (
            ResultKind.SCHEMA_DESCRIPTION
            if response_type == ResultKind.SCHEMA_DESCRIPTION.value
            else ResultKind.QUERY
        )
        return cls(
            id=str(record.get("id") or new_message_id("remote")),
            role=MessageRole.ASSISTANT,
            content=content,
            timestamp=timestamp,
            label=SCHEMA_LABEL if kind == ResultKind.SCHEMA_DESCRIPTION else QUERY_LABEL,
            kind=kind,
            thinking=metadata.get("thinking"),
            execution_id=metadata.get("execution_id"),
        )


class Conversation(BaseModel):
    """A titled, ordered sequence of messages with a server-assigned id."""

    id: str
    user_id: str = ""
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    is_archived: bool = False
    messages: List[Message] = Field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Conversation":
        if not isinstance(data, dict) or not data.get("id"):
            raise MalformedResponseError(
                "Malformed conversation payload: missing 'id'",
                details={"payload_type": type(data).__name__},
            )
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("user_id") or ""),
            title=data.get("title") or None,
            created_at=parse_timestamp(data.get("created_at")),
            last_accessed_at=parse_timestamp(data.get("last_accessed_at")),
            is_archived=bool(data.get("is_archived", False)),
            messages=[Message.from_api(m) for m in data.get("messages") or []],
        )


class ConversationSummary(BaseModel):
    """A directory row: a conversation with its resolved display title."""

    id: str
    title: str
    created_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    is_archived: bool = False


class _GenerationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    content: str
    thinking: Optional[List[str]] = None
    execution_id: Optional[str] = None
    is_degraded: bool = False


class QueryResult(_GenerationBase):
    kind: Literal[ResultKind.QUERY] = ResultKind.QUERY

    @property
    def label(self) -> str:
        return FALLBACK_LABEL if self.is_degraded else QUERY_LABEL


class SchemaDescriptionResult(_GenerationBase):
    kind: Literal[ResultKind.SCHEMA_DESCRIPTION] = ResultKind.SCHEMA_DESCRIPTION

    @property
    def label(self) -> str:
        return SCHEMA_LABEL


GenerationResult = Union[QueryResult, SchemaDescriptionResult]


def parse_generation_result(payload: Any) -> GenerationResult:
    """
    Resolve a generate/retry response into the tagged union.

    ``response_type == "schema_description"`` selects the schema variant;
    anything else is treated as a generated query.
    """
    if not isinstance(payload, dict):
        raise MalformedResponseError(
            "Malformed generation response: expected a JSON object",
            details={"payload_type": type(payload).__name__},
        )

    thinking = payload.get("thinking")
    if thinking is not None and not isinstance(thinking, list):
        thinking = [str(thinking)]
    execution_id = payload.get("execution_id")

    if payload.get("response_type") == ResultKind.SCHEMA_DESCRIPTION.value:
        content = payload.get("generated_content") or payload.get("generated_query")
        if not content:
            raise MalformedResponseError(
                "Malformed generation response: missing generated content"
            )
        return SchemaDescriptionResult(
            content=content, thinking=thinking, execution_id=execution_id
        )

    content = payload.get("generated_query") or payload.get("generated_content")
    if not content:
        raise MalformedResponseError(
            "Malformed generation response: missing generated query"
        )
    return QueryResult(content=content, thinking=thinking, execution_id=execution_id)


class FeedbackMetadata(BaseModel):
    """Caller-supplied context recorded with a vote."""

    original_text: str = ""
    generated_query: str = ""
    conversation_id: Optional[str] = None
    user_id: str = ""


class FeedbackEntry(BaseModel):
    query_id: str
    feedback_type: FeedbackType
    original_text: str = ""
    generated_query: str = ""
    conversation_id: Optional[str] = None
    user_id: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    synced: bool = False


class SyncResult(BaseModel):
    success: bool
    message: str


class SendResult(BaseModel):
    user_message: Message
    assistant_message: Message
    outcome: OperationOutcome


class DeleteResult(BaseModel):
    deleted: bool = False
    requires_confirmation: bool = False
    cancelled: bool = False
    error: Optional[str] = None
