"""Conversation state and request assembly on top of :class:`AIClient`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable, Sequence

from .cancellation import CancelSignal
from .client import AIClient
from .orchestration.converter import ContentConverter
from .orchestration.types import (
    Content,
    FunctionDeclaration,
    Part,
    StreamSignal,
    StreamSignalType,
    TextPart,
    ThoughtPart,
)

__all__ = ["GenerationConfig", "ConversationChat"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class GenerationConfig:
    """Sampling parameters forwarded with every request."""

    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None


class ConversationChat:
    """Owns the in-memory history and the converter for one conversation.

    ``send_message_stream`` builds the outbound request from the history
    plus the new message, streams normalized chunks, and records the
    exchange in the history once the model finished.
    """

    def __init__(
        self,
        client: AIClient,
        *,
        converter: ContentConverter | None = None,
        system_instruction: str | None = None,
        tools: Sequence[FunctionDeclaration] = (),
        config: GenerationConfig | None = None,
        history: Iterable[Content] = (),
    ) -> None:
        self._client = client
        self._converter = converter or ContentConverter()
        self._system_instruction = system_instruction
        self._tools = list(tools)
        self._config = config or GenerationConfig()
        self._history: list[Content] = list(history)
        self.last_prompt_token_count = 0

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------
    @property
    def history(self) -> tuple[Content, ...]:
        return tuple(self._history)

    def add_history(self, content: Content) -> None:
        self._history.append(content)

    def set_history(self, history: Iterable[Content]) -> None:
        self._history = list(history)

    def clear_history(self) -> None:
        self._history.clear()

    def set_tools(self, tools: Sequence[FunctionDeclaration]) -> None:
        self._tools = list(tools)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def build_payload(self, model: str, contents: Sequence[Content], prompt_id: str) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "messages": self._converter.to_wire_messages(contents, system_instruction=self._system_instruction),
            "stream_options": {"include_usage": True},
        }
        tools = self._converter.convert_tools(self._tools)
        if tools:
            request["tools"] = tools
        if self._config.temperature is not None:
            request["temperature"] = self._config.temperature
        if self._config.top_p is not None:
            request["top_p"] = self._config.top_p
        if self._config.max_tokens is not None:
            request["max_tokens"] = self._config.max_tokens
        return self._client.provider.build_request(request, prompt_id)

    async def send_message_stream(
        self,
        model: str,
        message: str | Sequence[Part] | Content,
        prompt_id: str,
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[StreamSignal]:
        """Yield ``retry`` signals and :class:`ModelChunk` values for one request."""

        user_content = message if isinstance(message, Content) else Content.user(message)
        payload = self.build_payload(model, [*self._history, user_content], prompt_id)
        self._converter.reset_stream()
        output: list[Part] = []
        finished = False

        async for item in self._client.stream_chat(payload):
            if item.type is StreamSignalType.RETRY:
                self._converter.reset_stream()
                output.clear()
                finished = False
                yield item
                continue
            chunk = self._converter.convert_chunk(item.chunk)
            output.extend(chunk.parts)
            if chunk.usage is not None and chunk.usage.prompt_token_count:
                self.last_prompt_token_count = chunk.usage.prompt_token_count
            if chunk.finish_reason is not None:
                finished = True
            yield StreamSignal.of(chunk)

        if finished:
            self._record(user_content, output)
        else:
            LOGGER.debug("Stream for prompt %s ended without a finish reason; history unchanged", prompt_id)

    def flush_pending_text(self) -> str:
        """Text withheld by the tag strippers of an abandoned stream."""
        return self._converter.flush_stream()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _record(self, user_content: Content, output: Sequence[Part]) -> None:
        self._history.append(user_content)
        parts = _consolidate(output)
        if parts:
            self._history.append(Content.model(parts))


def _consolidate(parts: Sequence[Part]) -> list[Part]:
    """Join adjacent text (and thought) fragments produced by streaming."""
    merged: list[Part] = []
    for part in parts:
        previous = merged[-1] if merged else None
        if isinstance(part, TextPart) and isinstance(previous, TextPart):
            merged[-1] = TextPart(previous.text + part.text)
        elif isinstance(part, ThoughtPart) and isinstance(previous, ThoughtPart):
            merged[-1] = ThoughtPart(previous.text + part.text)
        elif isinstance(part, TextPart) and not part.text:
            continue
        else:
            merged.append(part)
    return merged
