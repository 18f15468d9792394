"""Translate between the internal content model and OpenAI chat messages.

Outbound, a history of :class:`Content` values becomes a list of chat
completion message dicts that satisfy the provider rules: every assistant
``tool_calls`` entry is answered by exactly one later ``tool`` message, and
assistant messages never repeat back to back.

Inbound, each streaming chunk is normalized into a :class:`ModelChunk`. Text
goes through the citation-marker filter and the ``<think>``/``<tool_call>``
strippers; native tool-call deltas go into the accumulator. Tool calls from
both sources are released on the chunk that carries the finish reason.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .tag_parsers import (
    THINK_TAG_PARSER,
    TOOL_CALL_TAG_PARSER,
    TagParserState,
    strip_think_tags,
    strip_tool_call_tags,
)
from .tool_call_accumulator import StreamingToolCallAccumulator
from .tool_call_parser import TextToolCall
from .types import (
    Content,
    FinishReason,
    FunctionCall,
    FunctionDeclaration,
    FunctionResponse,
    MediaPart,
    ModelChunk,
    Part,
    TextPart,
    ThoughtPart,
    UsageMetadata,
)

__all__ = [
    "DEFAULT_PROMPT_TOKEN_SHARE",
    "CITATION_MARKER_RE",
    "InboundState",
    "ContentConverter",
    "clean_orphaned_tool_calls",
    "merge_consecutive_assistant_messages",
    "repair_wire_messages",
    "function_response_body",
    "convert_usage",
    "estimate_token_split",
    "map_finish_reason",
    "message_text",
]

LOGGER = logging.getLogger(__name__)

# Share of an unsplit total attributed to the prompt when a provider reports
# only ``total_tokens``. An approximation, not a measurement.
DEFAULT_PROMPT_TOKEN_SHARE = 0.7

CITATION_MARKER_RE = re.compile(r"\[\d+\]")

_NUMERIC_SCHEMA_KEYS = frozenset(
    {
        "minimum",
        "maximum",
        "exclusiveMinimum",
        "exclusiveMaximum",
        "multipleOf",
        "minLength",
        "maxLength",
        "minItems",
        "maxItems",
        "minProperties",
        "maxProperties",
    }
)

_FINISH_REASONS: Mapping[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.SAFETY,
    "tool_calls": FinishReason.STOP,
    "function_call": FinishReason.STOP,
}


@dataclass(slots=True, frozen=True)
class InboundState:
    """Parser state for one response stream, replaced after every chunk."""

    think: TagParserState = field(default_factory=TagParserState)
    tool_tags: TagParserState = field(default_factory=TagParserState)
    text_tool_calls: tuple[TextToolCall, ...] = ()


class ContentConverter:
    """Bidirectional converter owned by one conversation.

    The inbound state and the native tool-call accumulator belong to the
    stream currently being read; :meth:`reset_stream` must be called before
    each new stream.
    """

    def __init__(self, *, prompt_token_share: float = DEFAULT_PROMPT_TOKEN_SHARE) -> None:
        if not 0.0 <= prompt_token_share <= 1.0:
            raise ValueError("prompt_token_share must be between 0 and 1")
        self.prompt_token_share = prompt_token_share
        self._state = InboundState()
        self._accumulator = StreamingToolCallAccumulator()

    @property
    def state(self) -> InboundState:
        return self._state

    def reset_stream(self) -> None:
        self._state = InboundState()
        self._accumulator.reset()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    def to_wire_messages(
        self,
        contents: str | Content | Iterable[Content | str],
        *,
        system_instruction: str | Content | Sequence[Part] | None = None,
    ) -> list[dict[str, Any]]:
        """Build the chat message list for an outbound request."""

        messages: list[dict[str, Any]] = []
        system_text = _system_text(system_instruction)
        if system_text:
            messages.append({"role": "system", "content": system_text})
        for content in _normalize_contents(contents):
            messages.extend(self._content_to_messages(content))
        return repair_wire_messages(messages)

    def convert_tools(
        self, declarations: Iterable[FunctionDeclaration | Mapping[str, Any]] | None
    ) -> list[dict[str, Any]]:
        """Convert tool declarations into OpenAI ``tools`` entries."""

        tools: list[dict[str, Any]] = []
        for declaration in declarations or ():
            name = _get(declaration, "name")
            if not name:
                continue
            parameters = _get(declaration, "parameters")
            schema = _normalize_schema(parameters) if parameters else {"type": "object", "properties": {}}
            tools.append(
                {
                    "type": "function",
                    "function": {
                        "name": name,
                        "description": _get(declaration, "description") or "",
                        "parameters": schema,
                    },
                }
            )
        return tools

    def _content_to_messages(self, content: Content) -> list[dict[str, Any]]:
        responses = content.function_responses
        if responses:
            messages: list[dict[str, Any]] = [
                {
                    "role": "tool",
                    "tool_call_id": response.id or "",
                    "content": function_response_body(response.response),
                }
                for response in responses
            ]
            remainder = [part for part in content.parts if not isinstance(part, FunctionResponse)]
            follow_up = _multimodal_message("user", remainder) if remainder else None
            if follow_up is not None:
                messages.append(follow_up)
            return messages

        calls = content.function_calls
        if content.role == "model" and calls:
            text = content.text
            message: dict[str, Any] = {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": call.id or f"call_{index}",
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(dict(call.args or {}), ensure_ascii=False),
                        },
                    }
                    for index, call in enumerate(calls)
                ],
            }
            reasoning = _thought_text(content.parts)
            if reasoning:
                message["reasoning_content"] = reasoning
            return [message]

        role = "assistant" if content.role == "model" else "user"
        message = _multimodal_message(role, content.parts)
        return [message] if message is not None else []

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    def convert_chunk(self, chunk: Any) -> ModelChunk:
        """Normalize one streaming chunk, advancing the stream state."""

        state = self._state
        parts: list[Part] = []
        finish_reason: FinishReason | None = None

        choices = _get(chunk, "choices") or ()
        choice = choices[0] if choices else None
        if choice is not None:
            delta = _get(choice, "delta")
            reasoning = _get(delta, "reasoning_content")
            if reasoning:
                parts.append(ThoughtPart(str(reasoning)))

            content = _get(delta, "content")
            if content:
                visible, state = self._strip_text(str(content), state)
                if visible:
                    parts.append(TextPart(visible))

            for tool_delta in _get(delta, "tool_calls") or ():
                function = _get(tool_delta, "function")
                self._accumulator.add_chunk(
                    _get(tool_delta, "index") or 0,
                    _get(function, "arguments"),
                    id=_get(tool_delta, "id"),
                    name=_get(function, "name"),
                )

            raw_reason = _get(choice, "finish_reason")
            if raw_reason:
                finish_reason = map_finish_reason(raw_reason)
                remainder, state = self._flush_text(state)
                if remainder:
                    parts.append(TextPart(remainder))
                parts.extend(self._drain_tool_calls(state))
                state = InboundState()
                self._accumulator.reset()

        self._state = state
        return ModelChunk(
            response_id=_get(chunk, "id"),
            model_version=_get(chunk, "model"),
            parts=tuple(parts),
            finish_reason=finish_reason,
            usage=convert_usage(_get(chunk, "usage"), prompt_token_share=self.prompt_token_share),
            citations=_extract_citations(chunk),
        )

    def flush_stream(self) -> str:
        """Release text withheld by the strippers and reset the stream state.

        Used when a stream is abandoned before its finish chunk arrived.
        """
        visible, _ = self._flush_text(self._state)
        self.reset_stream()
        return visible

    def _strip_text(self, text: str, state: InboundState) -> tuple[str, InboundState]:
        text = CITATION_MARKER_RE.sub("", text)
        think = strip_think_tags(text, state.think)
        tags = strip_tool_call_tags(think.visible, state.tool_tags)
        new_state = InboundState(
            think=think.state,
            tool_tags=tags.state,
            text_tool_calls=state.text_tool_calls + tags.extracted,
        )
        return tags.visible, new_state

    def _flush_text(self, state: InboundState) -> tuple[str, InboundState]:
        think = THINK_TAG_PARSER.flush(state.think)
        tags = strip_tool_call_tags(think.visible, state.tool_tags)
        tail = TOOL_CALL_TAG_PARSER.flush(tags.state)
        new_state = InboundState(text_tool_calls=state.text_tool_calls + tags.extracted)
        return tags.visible + tail.visible, new_state

    def _drain_tool_calls(self, state: InboundState) -> list[FunctionCall]:
        # Native and text-embedded calls are both forwarded as-is.
        calls: list[FunctionCall] = []
        for completed in self._accumulator.get_completed_tool_calls():
            if not completed.name:
                LOGGER.debug("Dropping streamed tool call %s without a name", completed.index)
                continue
            calls.append(FunctionCall(name=completed.name, args=completed.args, id=completed.id or _new_call_id()))
        for parsed in state.text_tool_calls:
            calls.append(FunctionCall(name=parsed.name, args=dict(parsed.arguments), id=_new_call_id()))
        return calls


# -----------------------------------------------------------------------------
# Outbound helpers
# -----------------------------------------------------------------------------


def function_response_body(response: Any) -> str:
    """Render a function response as the string body of a ``tool`` message."""
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    for key in ("output", "error"):
        value = _get(response, key)
        if isinstance(value, str):
            return value
    try:
        return json.dumps(response, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(response)


def message_text(content: Any) -> str:
    """Text of a wire message ``content`` value, whether string or array."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    pieces: list[str] = []
    for item in content:
        if isinstance(item, Mapping) and item.get("type") == "text":
            pieces.append(str(item.get("text") or ""))
    return "".join(pieces)


def clean_orphaned_tool_calls(messages: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Drop tool calls without a later response and responses without a call.

    An assistant message that loses all of its calls is kept only when it
    still carries non-blank text.
    """

    issued: set[str] = set()
    answered: set[str] = set()
    kept_responses: set[int] = set()
    for position, message in enumerate(messages):
        role = message.get("role")
        if role == "assistant":
            for call in message.get("tool_calls") or ():
                call_id = _get(call, "id")
                if call_id:
                    issued.add(call_id)
        elif role == "tool":
            call_id = message.get("tool_call_id")
            if call_id in issued and call_id not in answered:
                answered.add(call_id)
                kept_responses.add(position)

    cleaned: list[dict[str, Any]] = []
    for position, message in enumerate(messages):
        role = message.get("role")
        if role == "tool":
            if position in kept_responses:
                cleaned.append(dict(message))
            else:
                LOGGER.debug("Dropping orphaned tool response %s", message.get("tool_call_id"))
            continue
        if role == "assistant" and message.get("tool_calls"):
            valid = [call for call in message["tool_calls"] if _get(call, "id") in answered]
            updated = dict(message)
            if valid:
                updated["tool_calls"] = valid
                cleaned.append(updated)
                continue
            updated.pop("tool_calls", None)
            if message_text(updated.get("content")).strip():
                cleaned.append(updated)
            continue
        cleaned.append(dict(message))
    return cleaned


def merge_consecutive_assistant_messages(messages: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for message in messages:
        previous = merged[-1] if merged else None
        if previous is None or message.get("role") != "assistant" or previous.get("role") != "assistant":
            merged.append(dict(message))
            continue
        text = "".join(
            piece for piece in (message_text(previous.get("content")), message_text(message.get("content"))) if piece
        )
        combined = dict(previous)
        combined["content"] = text or None
        calls = list(previous.get("tool_calls") or ()) + list(message.get("tool_calls") or ())
        if calls:
            combined["tool_calls"] = calls
        reasoning = "".join(
            str(piece) for piece in (previous.get("reasoning_content"), message.get("reasoning_content")) if piece
        )
        if reasoning:
            combined["reasoning_content"] = reasoning
        merged[-1] = combined
    return merged


def repair_wire_messages(messages: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Clean orphans, merge assistant runs, then clean again.

    Merging can leave a call without its response, so cleanup runs twice.
    """
    return clean_orphaned_tool_calls(merge_consecutive_assistant_messages(clean_orphaned_tool_calls(messages)))


def _multimodal_message(role: str, parts: Sequence[Part]) -> dict[str, Any] | None:
    texts: list[str] = []
    entries: list[dict[str, Any]] = []
    has_media = False
    for part in parts:
        if isinstance(part, TextPart):
            texts.append(part.text)
            entries.append({"type": "text", "text": part.text})
        elif isinstance(part, MediaPart):
            entry = _media_entry(part)
            if entry is not None:
                entries.append(entry)
                has_media = True
    text = "".join(texts)
    reasoning = _thought_text(parts)

    if role == "assistant":
        if not text and not reasoning:
            return None
        message: dict[str, Any] = {"role": "assistant", "content": text}
        if reasoning:
            message["reasoning_content"] = reasoning
        return message

    if has_media:
        return {"role": role, "content": entries}
    if not text:
        return None
    return {"role": role, "content": text}


def _media_entry(part: MediaPart) -> dict[str, Any] | None:
    if part.is_image:
        url = part.uri or (f"data:{part.mime_type};base64,{part.data}" if part.data else None)
        if url is None:
            return None
        return {"type": "image_url", "image_url": {"url": url}}
    if part.is_audio and part.data:
        audio_format = _audio_format(part.mime_type)
        if audio_format is None:
            LOGGER.debug("Skipping audio part with unsupported type %s", part.mime_type)
            return None
        return {"type": "input_audio", "input_audio": {"data": part.data, "format": audio_format}}
    LOGGER.debug("Skipping unsupported media part %s", part.mime_type)
    return None


def _audio_format(mime_type: str) -> str | None:
    lowered = mime_type.lower()
    if "wav" in lowered:
        return "wav"
    if "mp3" in lowered or "mpeg" in lowered:
        return "mp3"
    return None


def _thought_text(parts: Iterable[Part]) -> str:
    return "".join(part.text for part in parts if isinstance(part, ThoughtPart))


def _system_text(instruction: str | Content | Sequence[Part] | None) -> str:
    if instruction is None:
        return ""
    if isinstance(instruction, str):
        return instruction
    if isinstance(instruction, Content):
        return instruction.text
    return "".join(part.text for part in instruction if isinstance(part, TextPart))


def _normalize_contents(contents: str | Content | Iterable[Content | str]) -> list[Content]:
    if isinstance(contents, (str, Content)):
        contents = [contents]
    normalized: list[Content] = []
    for item in contents:
        normalized.append(Content.user(item) if isinstance(item, str) else item)
    return normalized


def _normalize_schema(schema: Any) -> Any:
    if isinstance(schema, Mapping):
        normalized: dict[str, Any] = {}
        for key, value in schema.items():
            if key == "type" and isinstance(value, str):
                normalized[key] = value.lower()
            elif key in _NUMERIC_SCHEMA_KEYS and isinstance(value, str):
                normalized[key] = _coerce_number(value)
            else:
                normalized[key] = _normalize_schema(value)
        return normalized
    if isinstance(schema, (list, tuple)):
        return [_normalize_schema(item) for item in schema]
    return schema


def _coerce_number(value: str) -> Any:
    try:
        number = float(value)
    except ValueError:
        return value
    return int(number) if number.is_integer() else number


# -----------------------------------------------------------------------------
# Inbound helpers
# -----------------------------------------------------------------------------


def map_finish_reason(reason: str | None) -> FinishReason | None:
    if not reason:
        return None
    return _FINISH_REASONS.get(str(reason), FinishReason.OTHER)


def estimate_token_split(total: int, prompt_share: float = DEFAULT_PROMPT_TOKEN_SHARE) -> tuple[int, int]:
    """Split ``total`` into (prompt, completion) estimates, rounding half up."""
    prompt = math.floor(total * prompt_share + 0.5)
    completion = math.floor(total * (1.0 - prompt_share) + 0.5)
    return prompt, completion


def convert_usage(usage: Any, *, prompt_token_share: float = DEFAULT_PROMPT_TOKEN_SHARE) -> UsageMetadata | None:
    if usage is None:
        return None
    prompt = int(_get(usage, "prompt_tokens") or 0)
    completion = int(_get(usage, "completion_tokens") or 0)
    total = int(_get(usage, "total_tokens") or 0)
    cached = _get(_get(usage, "prompt_tokens_details"), "cached_tokens")
    if cached is None:
        cached = _get(usage, "cached_tokens")
    thoughts = _get(_get(usage, "completion_tokens_details"), "reasoning_tokens")
    if total > 0 and prompt == 0 and completion == 0:
        prompt, completion = estimate_token_split(total, prompt_token_share)
    return UsageMetadata(
        prompt_token_count=prompt,
        candidates_token_count=completion,
        total_token_count=total,
        thoughts_token_count=int(thoughts) if thoughts is not None else None,
        cached_content_token_count=int(cached) if cached is not None else None,
    )


def _extract_citations(chunk: Any) -> tuple[str, ...]:
    citations: list[str] = [str(url) for url in _get(chunk, "citations") or () if url]
    for result in _get(chunk, "search_results") or ():
        url = _get(result, "url")
        if not url:
            continue
        title = _get(result, "title")
        citations.append(f"({title}) {url}" if title else str(url))
    return tuple(citations)


def _new_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)
