"""Core type definitions for the streaming turn pipeline.

This module defines the immutable values that flow between the converter,
the turn engine and the tool scheduler. Content and parts are frozen so a
turn can share them freely; wire messages stay plain OpenAI dicts because
they are rebuilt for every outbound request.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

__all__ = [
    # Content model
    "ContentRole",
    "TextPart",
    "ThoughtPart",
    "FunctionCall",
    "FunctionResponse",
    "MediaPart",
    "Part",
    "Content",
    "FunctionDeclaration",
    # Model output
    "FinishReason",
    "UsageMetadata",
    "ModelChunk",
    "StreamSignalType",
    "StreamSignal",
    # Tool calls
    "ToolCallRequest",
    "ToolCallResponse",
    # Events
    "EventType",
    "StructuredError",
    "ThoughtSummary",
    "FinishedInfo",
    "TurnEvent",
    "TERMINAL_EVENT_TYPES",
]


# -----------------------------------------------------------------------------
# Content Model
# -----------------------------------------------------------------------------

ContentRole = Literal["user", "model", "tool"]


@dataclass(slots=True, frozen=True)
class TextPart:
    """Visible text produced by the user or the model."""

    text: str


@dataclass(slots=True, frozen=True)
class ThoughtPart:
    """Reasoning text. Never rendered as part of the visible transcript."""

    text: str


@dataclass(slots=True, frozen=True)
class FunctionCall:
    """A model request to invoke a tool.

    Attributes:
        name: Registered tool name.
        args: Decoded JSON arguments.
        id: Provider call identifier, when one was issued.
    """

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(slots=True, frozen=True)
class FunctionResponse:
    """The result of a tool call, addressed to the call that produced it."""

    id: str | None
    name: str
    response: Any = None


@dataclass(slots=True, frozen=True)
class MediaPart:
    """Inline or referenced media. Exactly one of ``data``/``uri`` is expected."""

    mime_type: str
    data: str | None = None
    uri: str | None = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")


Part = Union[TextPart, ThoughtPart, FunctionCall, FunctionResponse, MediaPart]


@dataclass(slots=True, frozen=True)
class Content:
    """One history entry: a role and an ordered tuple of parts."""

    role: ContentRole
    parts: tuple[Part, ...] = ()

    @classmethod
    def user(cls, message: str | Sequence[Part]) -> Content:
        """Create user content from plain text or a sequence of parts."""
        if isinstance(message, str):
            return cls(role="user", parts=(TextPart(message),))
        return cls(role="user", parts=tuple(message))

    @classmethod
    def model(cls, parts: Sequence[Part]) -> Content:
        """Create model content from a sequence of parts."""
        return cls(role="model", parts=tuple(parts))

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def function_calls(self) -> tuple[FunctionCall, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionCall))

    @property
    def function_responses(self) -> tuple[FunctionResponse, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionResponse))


@dataclass(slots=True, frozen=True)
class FunctionDeclaration:
    """Tool declaration advertised to the model."""

    name: str
    description: str = ""
    parameters: Mapping[str, Any] | None = None


# -----------------------------------------------------------------------------
# Model Output
# -----------------------------------------------------------------------------


class FinishReason(str, enum.Enum):
    """Normalized reason the model stopped generating."""

    STOP = "STOP"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    OTHER = "OTHER"


@dataclass(slots=True, frozen=True)
class UsageMetadata:
    """Token accounting reported (or estimated) for a response."""

    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0
    thoughts_token_count: int | None = None
    cached_content_token_count: int | None = None


@dataclass(slots=True, frozen=True)
class ModelChunk:
    """A single inbound streaming chunk after normalization.

    Attributes:
        response_id: Provider response identifier.
        model_version: Model name echoed by the provider.
        parts: Thought, text and function-call parts in emission order.
        finish_reason: Set only on the chunk that closed the choice.
        usage: Token accounting when the chunk carried any.
        citations: Source references attached by search-backed providers.
    """

    response_id: str | None = None
    model_version: str | None = None
    parts: tuple[Part, ...] = ()
    finish_reason: FinishReason | None = None
    usage: UsageMetadata | None = None
    citations: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @property
    def thought_text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, ThoughtPart))

    @property
    def function_calls(self) -> tuple[FunctionCall, ...]:
        return tuple(part for part in self.parts if isinstance(part, FunctionCall))


class StreamSignalType(str, enum.Enum):
    CHUNK = "chunk"
    RETRY = "retry"


@dataclass(slots=True, frozen=True)
class StreamSignal:
    """Item delivered by the transport: a chunk, or notice that it is retrying."""

    type: StreamSignalType
    chunk: Any = None

    @classmethod
    def of(cls, chunk: Any) -> StreamSignal:
        return cls(type=StreamSignalType.CHUNK, chunk=chunk)

    @classmethod
    def retry(cls) -> StreamSignal:
        return cls(type=StreamSignalType.RETRY)


# -----------------------------------------------------------------------------
# Tool Calls
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool invocation waiting to be scheduled.

    Attributes:
        call_id: Identifier unique within the request.
        name: Tool name as requested.
        args: Decoded arguments.
        is_client_initiated: True when issued by the user rather than the model.
        prompt_id: Correlation id of the prompt that produced the call.
        response_id: Provider response that carried the call, if known.
    """

    call_id: str
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)
    is_client_initiated: bool = False
    prompt_id: str = ""
    response_id: str | None = None


@dataclass(slots=True, frozen=True)
class ToolCallResponse:
    """Terminal outcome of one tool call, ready to be sent back to the model."""

    call_id: str
    response_parts: tuple[Part, ...] = ()
    result_display: str | None = None
    error: str | None = None
    error_type: str | None = None


# -----------------------------------------------------------------------------
# Turn Events
# -----------------------------------------------------------------------------


class EventType(str, enum.Enum):
    """Kinds of events a turn or session can emit."""

    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"
    CHAT_COMPRESSED = "chat_compressed"
    MAX_SESSION_TURNS = "max_session_turns"
    SESSION_TOKEN_LIMIT_EXCEEDED = "session_token_limit_exceeded"
    FINISHED = "finished"
    LOOP_DETECTED = "loop_detected"
    CITATION = "citation"
    RETRY = "retry"


TERMINAL_EVENT_TYPES: frozenset[EventType] = frozenset(
    {EventType.FINISHED, EventType.USER_CANCELLED, EventType.ERROR}
)


@dataclass(slots=True, frozen=True)
class StructuredError:
    """User-presentable error: a message and, when known, an HTTP status."""

    message: str
    status: int | None = None


@dataclass(slots=True, frozen=True)
class ThoughtSummary:
    subject: str
    description: str


@dataclass(slots=True, frozen=True)
class FinishedInfo:
    reason: FinishReason | None
    usage: UsageMetadata | None = None


@dataclass(slots=True, frozen=True)
class TurnEvent:
    """One item of the ordered event sequence produced for the caller.

    The ``value`` type depends on ``type``: ``str`` for content and
    citations, :class:`ThoughtSummary`, :class:`ToolCallRequest`,
    :class:`ToolCallResponse`, :class:`StructuredError` for errors,
    :class:`FinishedInfo` for finished, ``None`` for retry and cancellation.
    """

    type: EventType
    value: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES
