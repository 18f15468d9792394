"""Session loop: submit a query, run turns, dispatch tools, continue.

:class:`AgentSession` owns the single in-flight submission of a conversation.
It runs a :class:`Turn`, dispatches the tool calls the model requested once
the turn finished, and resubmits their results as a continuation turn until
the model stops asking for tools.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, Sequence

from ..cancellation import CancelSignal
from ..errors import AgentError, ErrorReporter
from ..models import DEFAULT_MODEL, get_effective_model
from ..tools.registry import ToolRegistry
from .scheduler import ApprovalMode, ToolCallScheduler, ToolCallStatus, TrackedToolCall
from .turn import ChatStream, Turn
from .types import Content, EventType, Part, ToolCallRequest, TurnEvent

__all__ = ["SessionConfig", "SubmissionInFlightError", "AgentSession"]

LOGGER = logging.getLogger(__name__)


class SubmissionInFlightError(AgentError):
    """A query was submitted while another one is still being answered."""


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """Limits applied across the turns of a session.

    Attributes:
        model: Model used for every turn until a fallback switches it.
        max_session_turns: Turns allowed per session; zero or less disables the limit.
        session_token_limit: Prompt tokens allowed; ``0`` disables the limit.
        loop_threshold: Identical consecutive tool batches treated as a loop.
    """

    model: str = DEFAULT_MODEL
    max_session_turns: int = -1
    session_token_limit: int = 0
    loop_threshold: int = 5


class SessionChat(ChatStream, Protocol):
    """Conversation interface needed by a session."""

    last_prompt_token_count: int

    def add_history(self, content: Content) -> None:
        ...


class AgentSession:
    """Sequence turns and tool batches for one conversation."""

    def __init__(
        self,
        chat: SessionChat,
        registry: ToolRegistry,
        *,
        config: SessionConfig | None = None,
        approval_mode: ApprovalMode = ApprovalMode.DEFAULT,
        error_reporter: ErrorReporter | None = None,
    ) -> None:
        self._chat = chat
        self._config = config or SessionConfig()
        self._model = self._config.model
        self._error_reporter = error_reporter
        self._scheduler = ToolCallScheduler(registry, approval_mode=approval_mode, on_update=self._on_tool_update)
        self._updates: asyncio.Queue[TurnEvent] | None = None
        self._in_flight = False
        self._model_switched = False
        self._turn_count = 0
        self._last_batch_key: str | None = None
        self._batch_repeats = 0
        self.current_turn: Turn | None = None

    @property
    def scheduler(self) -> ToolCallScheduler:
        return self._scheduler

    @property
    def model(self) -> str:
        return self._model

    @property
    def is_responding(self) -> bool:
        return self._in_flight

    @property
    def turn_count(self) -> int:
        return self._turn_count

    def notify_model_switched(self) -> None:
        """Record a quota fallback; pending tool results are not resubmitted."""
        self._model_switched = True
        self._model = get_effective_model(self._model, fallback_active=True)
        LOGGER.info("Model switched to %s after quota fallback", self._model)

    def reset(self) -> None:
        self._turn_count = 0
        self._last_batch_key = None
        self._batch_repeats = 0

    async def aclose(self) -> None:
        """Release the transport behind the conversation, if it holds one."""
        close = getattr(self._chat, "aclose", None)
        if close is not None:
            await close()

    async def submit_query(
        self,
        query: str | Sequence[Part],
        *,
        is_continuation: bool = False,
        prompt_id: str | None = None,
        signal: CancelSignal | None = None,
    ) -> AsyncIterator[TurnEvent]:
        """Answer ``query``, including any tool round trips, as one event stream.

        Raises:
            SubmissionInFlightError: Another submission is running and this
                one is not a continuation.
        """
        if self._in_flight and not is_continuation:
            raise SubmissionInFlightError("A response is already in progress")
        owns_gate = not self._in_flight
        self._in_flight = True
        if not is_continuation:
            self._model_switched = False
            self._last_batch_key = None
            self._batch_repeats = 0
        signal = signal or CancelSignal()
        prompt_id = prompt_id or f"prompt-{uuid.uuid4().hex[:12]}"
        next_query: str | Sequence[Part] | None = query

        try:
            while next_query is not None:
                limit_event = self._check_limits()
                if limit_event is not None:
                    yield limit_event
                    return
                self._turn_count += 1
                turn = Turn(self._chat, prompt_id, error_reporter=self._error_reporter)
                self.current_turn = turn
                terminal: TurnEvent | None = None
                async for event in turn.run(self._model, next_query, signal):
                    if event.is_terminal:
                        terminal = event
                    yield event
                if terminal is None or terminal.type is not EventType.FINISHED:
                    return
                requests = list(turn.pending_tool_calls)
                if not requests:
                    return
                if self._detect_loop(requests):
                    LOGGER.warning("Tool call loop detected after %d identical batches", self._batch_repeats)
                    yield TurnEvent(EventType.LOOP_DETECTED, requests[0].name)
                    return

                batch: list[TrackedToolCall] = []
                async for event in self._dispatch(requests, signal, batch):
                    yield event
                next_query, prompt_id = self._handle_completed_tools(batch, prompt_id)
        finally:
            if owns_gate:
                self._in_flight = False

    async def run_client_tool(
        self, name: str, args: dict | None = None, signal: CancelSignal | None = None
    ) -> TrackedToolCall:
        """Execute a user-issued tool call immediately, outside the model loop."""
        request = ToolCallRequest(
            call_id=f"{name}-{uuid.uuid4().hex[:16]}",
            name=name,
            args=dict(args or {}),
            is_client_initiated=True,
            prompt_id=f"client-{uuid.uuid4().hex[:12]}",
        )
        (call,) = await self._scheduler.schedule([request], signal)
        call.response_submitted = True
        return call

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check_limits(self) -> TurnEvent | None:
        limit = self._config.max_session_turns
        if limit > 0 and self._turn_count >= limit:
            return TurnEvent(EventType.MAX_SESSION_TURNS, limit)
        token_limit = self._config.session_token_limit
        used = getattr(self._chat, "last_prompt_token_count", 0) or 0
        if token_limit > 0 and used > token_limit:
            return TurnEvent(
                EventType.SESSION_TOKEN_LIMIT_EXCEEDED,
                {"current_tokens": used, "limit": token_limit},
            )
        return None

    def _detect_loop(self, requests: Sequence[ToolCallRequest]) -> bool:
        key = json.dumps([[request.name, dict(request.args)] for request in requests], sort_keys=True, default=str)
        if key == self._last_batch_key:
            self._batch_repeats += 1
        else:
            self._last_batch_key = key
            self._batch_repeats = 1
        return self._batch_repeats >= self._config.loop_threshold

    async def _dispatch(
        self, requests: Sequence[ToolCallRequest], signal: CancelSignal, batch: list[TrackedToolCall]
    ) -> AsyncIterator[TurnEvent]:
        updates: asyncio.Queue[TurnEvent] = asyncio.Queue()
        self._updates = updates
        task = asyncio.ensure_future(self._scheduler.schedule(requests, signal))
        getter: asyncio.Future[TurnEvent] | None = None
        try:
            while True:
                getter = asyncio.ensure_future(updates.get())
                done, _ = await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not updates.empty():
                yield updates.get_nowait()
            batch.extend(task.result())
        finally:
            self._updates = None
            if getter is not None and not getter.done():
                getter.cancel()
            if not task.done():
                task.cancel()

    def _on_tool_update(self, call: TrackedToolCall) -> None:
        if self._updates is None:
            return
        if call.status is ToolCallStatus.AWAITING_APPROVAL:
            self._updates.put_nowait(TurnEvent(EventType.TOOL_CALL_CONFIRMATION, call))
        elif call.is_terminal and call.response is not None:
            self._updates.put_nowait(TurnEvent(EventType.TOOL_CALL_RESPONSE, call.response))

    def _handle_completed_tools(
        self, batch: Sequence[TrackedToolCall], prompt_id: str
    ) -> tuple[list[Part] | None, str]:
        for call in batch:
            if call.request.is_client_initiated:
                call.response_submitted = True
        model_calls = [call for call in batch if not call.request.is_client_initiated]
        if not model_calls:
            return None, prompt_id

        parts: list[Part] = []
        for call in model_calls:
            if call.response is not None:
                parts.extend(call.response.response_parts)
            call.response_submitted = True

        if all(call.status is ToolCallStatus.CANCELLED for call in model_calls):
            self._chat.add_history(Content.user(parts))
            LOGGER.debug("All %d tool call(s) cancelled; not continuing", len(model_calls))
            return None, prompt_id
        if self._model_switched:
            LOGGER.info("Skipping tool result submission after model switch")
            return None, prompt_id
        return parts, model_calls[0].request.prompt_id
