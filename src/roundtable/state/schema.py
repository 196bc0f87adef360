"""State schema definitions for Roundtable.

This module defines the round/message data model shared by the store, the
flow state machine and the stream resumption manager. Entities are frozen
dataclasses; every update produces a new instance through
``dataclasses.replace`` so a store transition can never half-apply.

Message metadata is a tagged variant over user, participant and moderator
payloads instead of one loosely-typed bag of optional fields.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Union


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Author role of a message."""

    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    """Lifecycle shared by pre-search and analysis records."""

    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETE, MessageStatus.FAILED)

    @property
    def is_in_progress(self) -> bool:
        return self in (MessageStatus.PENDING, MessageStatus.STREAMING)


class StreamStatus(str, Enum):
    """Status of a buffered network stream."""

    ACTIVE = "active"
    COMPLETED = "completed"


class FinishReason(str, Enum):
    """Completion signal carried by a finished assistant message."""

    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    TOOL_CALLS = "tool-calls"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"


class ErrorCategory(str, Enum):
    """Error categories surfaced on failed messages."""

    RATE_LIMIT = "rate_limit"
    MODEL_UNAVAILABLE = "model_unavailable"
    MODEL_ERROR = "model_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    SERVER_ERROR = "server_error"
    SILENT_FAILURE = "silent_failure"


class ChatMode(str, Enum):
    """Conversation mode of a thread."""

    ANALYZING = "analyzing"
    BRAINSTORMING = "brainstorming"
    DEBATING = "debating"
    SOLVING = "solving"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ChatMode"]:
        """Handle case-insensitive mode names."""
        if isinstance(value, str):
            value_lower = value.lower()
            for member in cls:
                if member.value == value_lower:
                    return member
        return None


DEFAULT_CHAT_MODE = ChatMode.ANALYZING


class ThreadStatus(str, Enum):
    """Lifecycle status of a thread."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class ScreenMode(str, Enum):
    """Which screen the store is serving."""

    OVERVIEW = "overview"
    THREAD = "thread"
    PUBLIC = "public"


class TextPartState(str, Enum):
    """Streaming state of a text part."""

    STREAMING = "streaming"
    DONE = "done"


class FlowState(str, Enum):
    """Discrete states of the round flow."""

    IDLE = "idle"
    CREATING_THREAD = "creating_thread"
    STREAMING_PARTICIPANTS = "streaming_participants"
    CREATING_MODERATOR = "creating_moderator"
    STREAMING_MODERATOR = "streaming_moderator"
    NAVIGATING = "navigating"
    COMPLETE = "complete"


class FlowActionType(str, Enum):
    """Side effects the flow controller can request."""

    CREATE_THREAD = "CREATE_THREAD"
    START_PARTICIPANT_STREAMING = "START_PARTICIPANT_STREAMING"
    CREATE_MODERATOR = "CREATE_MODERATOR"
    START_MODERATOR_STREAMING = "START_MODERATOR_STREAMING"
    INVALIDATE_CACHE = "INVALIDATE_CACHE"
    NAVIGATE = "NAVIGATE"
    COMPLETE_FLOW = "COMPLETE_FLOW"
    RESET = "RESET"


@dataclass(frozen=True)
class FlowAction:
    """A side effect requested on a flow state transition."""

    type: FlowActionType
    slug: Optional[str] = None


# ---------------------------------------------------------------------------
# Thread and participants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Thread:
    """A conversation. One per loaded store."""

    id: str
    slug: Optional[str] = None
    title: Optional[str] = None
    mode: ChatMode = DEFAULT_CHAT_MODE
    enable_web_search: bool = False
    status: ThreadStatus = ThreadStatus.ACTIVE
    is_ai_generated_title: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Participant:
    """A model slot within a thread, ordered by zero-based priority."""

    id: str
    model_id: str
    priority: int = 0
    thread_id: Optional[str] = None
    is_enabled: bool = True
    role: Optional[str] = None
    custom_role_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Message parts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextPart:
    text: str
    state: TextPartState = TextPartState.DONE
    type: ClassVar[str] = "text"


@dataclass(frozen=True)
class FilePart:
    url: str
    media_type: str
    filename: Optional[str] = None
    type: ClassVar[str] = "file"


@dataclass(frozen=True)
class GenericPart:
    """Any part the core does not interpret (reasoning, tool calls, ...)."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)


MessagePart = Union[TextPart, FilePart, GenericPart]


# ---------------------------------------------------------------------------
# Message metadata (tagged variant)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserMetadata:
    """Metadata of the single user message of a round."""

    round_number: int
    is_optimistic: bool = False
    created_at: Optional[datetime] = None

    role: ClassVar[MessageRole] = MessageRole.USER
    is_moderator: ClassVar[bool] = False


@dataclass(frozen=True)
class ParticipantMetadata:
    """Metadata of one participant's response in a round."""

    round_number: int
    participant_index: int
    participant_id: Optional[str] = None
    model_id: Optional[str] = None
    finish_reason: Optional[str] = None
    has_error: bool = False
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    is_optimistic: bool = False

    role: ClassVar[MessageRole] = MessageRole.ASSISTANT
    is_moderator: ClassVar[bool] = False

    @property
    def is_terminal(self) -> bool:
        return bool(self.finish_reason) or (
            self.has_error and self.error_category is not None
        )


@dataclass(frozen=True)
class ModeratorMetadata:
    """Metadata of the synthesis message of a round."""

    round_number: int
    finish_reason: Optional[str] = None
    has_error: bool = False
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    role: ClassVar[MessageRole] = MessageRole.ASSISTANT
    is_moderator: ClassVar[bool] = True
    participant_index: ClassVar[int] = -1
    is_optimistic: ClassVar[bool] = False

    @property
    def is_terminal(self) -> bool:
        return bool(self.finish_reason) or (
            self.has_error and self.error_category is not None
        )


MessageMetadata = Union[UserMetadata, ParticipantMetadata, ModeratorMetadata]


@dataclass(frozen=True)
class Message:
    """A chat message with its role-specific metadata."""

    id: str
    role: MessageRole
    parts: Tuple[MessagePart, ...]
    metadata: MessageMetadata

    def __post_init__(self):
        if not isinstance(self.parts, tuple):
            object.__setattr__(self, "parts", tuple(self.parts))
        if self.metadata.role != self.role:
            raise ValueError(
                f"Message {self.id}: role {self.role.value} does not match "
                f"{type(self.metadata).__name__}"
            )

    @property
    def round_number(self) -> int:
        return self.metadata.round_number

    @property
    def participant_index(self) -> Optional[int]:
        """Participant index, -1 for the moderator and None for users."""
        if isinstance(self.metadata, UserMetadata):
            return None
        return self.metadata.participant_index

    @property
    def is_user(self) -> bool:
        return self.role == MessageRole.USER

    @property
    def is_participant(self) -> bool:
        return isinstance(self.metadata, ParticipantMetadata)

    @property
    def is_moderator(self) -> bool:
        return self.metadata.is_moderator

    @property
    def is_optimistic(self) -> bool:
        return self.metadata.is_optimistic

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def has_text_content(self) -> bool:
        return any(isinstance(p, TextPart) and p.text for p in self.parts)

    @property
    def has_streaming_parts(self) -> bool:
        return any(
            isinstance(p, TextPart) and p.state == TextPartState.STREAMING
            for p in self.parts
        )

    @property
    def finish_reason(self) -> Optional[str]:
        return getattr(self.metadata, "finish_reason", None)

    @property
    def has_error(self) -> bool:
        return getattr(self.metadata, "has_error", False)

    @property
    def is_terminal(self) -> bool:
        """Whether the message carries a completion signal.

        User messages are always terminal.
        """
        if isinstance(self.metadata, UserMetadata):
            return True
        return self.metadata.is_terminal


# ---------------------------------------------------------------------------
# Round-scoped records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PreSearchResult:
    """Search payload attached to a completed pre-search."""

    queries: Tuple[str, ...] = ()
    results: Tuple[Dict[str, Any], ...] = ()
    summary: str = ""
    total_results: int = 0
    total_time: float = 0.0


@dataclass(frozen=True)
class PreSearch:
    """Web-search pre-step for one round."""

    id: str
    thread_id: str
    round_number: int
    user_query: str
    status: MessageStatus = MessageStatus.PENDING
    search_data: Optional[PreSearchResult] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Analysis:
    """Moderator analysis record for one round."""

    id: str
    thread_id: str
    round_number: int
    mode: ChatMode = DEFAULT_CHAT_MODE
    user_question: str = ""
    status: MessageStatus = MessageStatus.PENDING
    participant_message_ids: Tuple[str, ...] = ()
    analysis_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class StreamResumptionState:
    """A network stream that may still be running after a reload."""

    stream_id: str
    thread_id: str
    round_number: int
    participant_index: int
    state: StreamStatus = StreamStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
