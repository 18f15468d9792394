"""Turn engine: one request/response cycle as an ordered event sequence.

A :class:`Turn` consumes the normalized chunk stream for a single request
and yields :class:`TurnEvent` values in the order their content arrived. The
sequence always ends with exactly one terminal event: ``FINISHED``,
``ERROR`` or ``USER_CANCELLED``.

Example:
    turn = Turn(chat, prompt_id="p-1")
    async for event in turn.run("sonar-pro", "Explain this repo", signal):
        render(event)
    requests = turn.pending_tool_calls
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any, AsyncIterator, Protocol, Sequence

from ..cancellation import CancelledByUser, CancelSignal, next_or_cancel
from ..errors import ErrorReporter, LoggingErrorReporter, UnauthorizedError, to_friendly_error, to_structured_error
from .types import (
    Content,
    EventType,
    FinishedInfo,
    FinishReason,
    FunctionCall,
    ModelChunk,
    Part,
    StreamSignal,
    StreamSignalType,
    ThoughtSummary,
    ToolCallRequest,
    TurnEvent,
    UsageMetadata,
)

__all__ = ["ChatStream", "Turn", "parse_thought"]

LOGGER = logging.getLogger(__name__)

_THOUGHT_SUBJECT_RE = re.compile(r"^\s*\*\*(?P<subject>.+?)\*\*\s*(?P<description>.*)$", re.DOTALL)
_UNDEFINED_TOOL_NAME = "undefined_tool_name"


class ChatStream(Protocol):
    """What a turn needs from the conversation it runs in."""

    @property
    def history(self) -> Sequence[Content]:
        ...

    def send_message_stream(
        self,
        model: str,
        message: str | Sequence[Part] | Content,
        prompt_id: str,
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[StreamSignal]:
        ...

    def flush_pending_text(self) -> str:
        ...


def parse_thought(text: str) -> ThoughtSummary:
    """Split ``**Subject** description`` reasoning text into its two halves."""
    match = _THOUGHT_SUBJECT_RE.match(text)
    if match is None:
        return ThoughtSummary(subject="", description=text)
    return ThoughtSummary(subject=match.group("subject").strip(), description=match.group("description"))


class Turn:
    """Drive a single streamed request and translate it into events.

    Tool calls found in the stream are reported as ``TOOL_CALL_REQUEST``
    events and collected in :attr:`pending_tool_calls`; executing them is
    the caller's job once the terminal event was seen.

    Attributes:
        prompt_id: Correlation id shared by every call of this turn.
        pending_tool_calls: Requests issued by the model during the turn.
        finish_reason: Finish reason of the response, once known.
        usage: Latest usage reported by the stream.
        current_response_id: Provider id of the response being streamed.
        debug_responses: Every normalized chunk, for diagnostics.
    """

    def __init__(
        self,
        chat: ChatStream,
        prompt_id: str,
        *,
        error_reporter: ErrorReporter | None = None,
    ) -> None:
        self._chat = chat
        self.prompt_id = prompt_id
        self._error_reporter = error_reporter or LoggingErrorReporter()
        self.pending_tool_calls: list[ToolCallRequest] = []
        self.finish_reason: FinishReason | None = None
        self.usage: UsageMetadata | None = None
        self.current_response_id: str | None = None
        self.debug_responses: list[ModelChunk] = []
        self._citations: set[str] = set()

    async def run(
        self,
        model: str,
        request: str | Sequence[Part] | Content,
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[TurnEvent]:
        """Stream ``request`` to ``model`` and yield the resulting events.

        Args:
            model: Model identifier for this request.
            request: New user input: text, parts, or a prepared Content.
            signal: Cooperative cancellation signal, checked at every await.

        Yields:
            Events in stream order, ending with exactly one terminal event.

        Raises:
            UnauthorizedError: The API rejected the credentials.
        """
        stream = self._chat.send_message_stream(model, request, self.prompt_id, signal)
        try:
            while True:
                has_item, item = await next_or_cancel(stream, signal)
                if signal is not None and signal.cancelled:
                    raise CancelledByUser(signal.reason or "Operation cancelled")
                if not has_item:
                    break
                if item.type is StreamSignalType.RETRY:
                    yield TurnEvent(EventType.RETRY)
                    continue
                for event in self._chunk_events(item.chunk):
                    yield event

            if self._citations:
                yield TurnEvent(EventType.CITATION, "Citations:\n" + "\n".join(sorted(self._citations)))
            if self.finish_reason is None:
                LOGGER.warning("Stream for prompt %s ended without a finish reason", self.prompt_id)
            yield TurnEvent(EventType.FINISHED, FinishedInfo(reason=self.finish_reason, usage=self.usage))
        except CancelledByUser:
            for event in self._cancelled_events():
                yield event
        except Exception as exc:
            if signal is not None and signal.cancelled:
                for event in self._cancelled_events():
                    yield event
                return
            friendly = to_friendly_error(exc)
            if isinstance(friendly, UnauthorizedError):
                raise friendly from exc
            self._error_reporter.report(
                exc,
                {"history": list(self._chat.history), "request": request},
                message="Error when talking to the model API.",
                error_type="turn.run-send_message_stream",
            )
            structured = to_structured_error(friendly)
            LOGGER.debug("Turn %s failed: %s", self.prompt_id, structured.message)
            yield TurnEvent(EventType.ERROR, structured)
        finally:
            await _aclose(stream)

    def _chunk_events(self, chunk: ModelChunk) -> list[TurnEvent]:
        self.debug_responses.append(chunk)
        if chunk.response_id:
            self.current_response_id = chunk.response_id

        events: list[TurnEvent] = []
        thought = chunk.thought_text
        if thought:
            events.append(TurnEvent(EventType.THOUGHT, parse_thought(thought)))
        text = chunk.text
        if text:
            events.append(TurnEvent(EventType.CONTENT, text))
        for call in chunk.function_calls:
            events.append(TurnEvent(EventType.TOOL_CALL_REQUEST, self._register_call(call)))

        self._citations.update(chunk.citations)
        if chunk.usage is not None:
            self.usage = chunk.usage
        if chunk.finish_reason is not None:
            self.finish_reason = chunk.finish_reason
        return events

    def _register_call(self, call: FunctionCall) -> ToolCallRequest:
        name = call.name or _UNDEFINED_TOOL_NAME
        request = ToolCallRequest(
            call_id=call.id or f"{name}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:16]}",
            name=name,
            args=dict(call.args or {}),
            is_client_initiated=False,
            prompt_id=self.prompt_id,
            response_id=self.current_response_id,
        )
        self.pending_tool_calls.append(request)
        return request

    def _cancelled_events(self) -> list[TurnEvent]:
        events: list[TurnEvent] = []
        pending = self._chat.flush_pending_text()
        if pending:
            events.append(TurnEvent(EventType.CONTENT, pending))
        events.append(TurnEvent(EventType.USER_CANCELLED))
        return events


async def _aclose(stream: Any) -> None:
    close = getattr(stream, "aclose", None)
    if close is not None:
        await close()
