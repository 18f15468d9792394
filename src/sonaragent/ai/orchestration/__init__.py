"""Streaming orchestration: content model, parsers, conversion and turns.

Only the dependency-free building blocks are re-exported here; the turn
engine, scheduler and session live in their own modules.
"""

from .converter import ContentConverter, DEFAULT_PROMPT_TOKEN_SHARE, repair_wire_messages
from .tag_parsers import TagParserState, TagStripper, strip_think_tags, strip_tool_call_tags
from .tool_call_accumulator import StreamingToolCallAccumulator
from .tool_call_parser import TextToolCall, parse_tool_call_payload
from .types import (
    Content,
    EventType,
    FinishReason,
    FunctionCall,
    FunctionResponse,
    MediaPart,
    ModelChunk,
    TextPart,
    ThoughtPart,
    ToolCallRequest,
    ToolCallResponse,
    TurnEvent,
    UsageMetadata,
)

__all__ = [
    "Content",
    "TextPart",
    "ThoughtPart",
    "FunctionCall",
    "FunctionResponse",
    "MediaPart",
    "ModelChunk",
    "UsageMetadata",
    "FinishReason",
    "EventType",
    "TurnEvent",
    "ToolCallRequest",
    "ToolCallResponse",
    "TagParserState",
    "TagStripper",
    "strip_think_tags",
    "strip_tool_call_tags",
    "TextToolCall",
    "parse_tool_call_payload",
    "StreamingToolCallAccumulator",
    "ContentConverter",
    "DEFAULT_PROMPT_TOKEN_SHARE",
    "repair_wire_messages",
]
