"""Tests for the session loop: turns, tool dispatch and continuation."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from sonaragent.ai.cancellation import CancelSignal
from sonaragent.ai.orchestration.scheduler import CANCELLED_RESPONSE_MESSAGE, ToolCallStatus
from sonaragent.ai.orchestration.session import AgentSession, SessionConfig, SubmissionInFlightError
from sonaragent.ai.orchestration.types import (
    Content,
    EventType,
    FinishReason,
    FunctionCall,
    FunctionResponse,
    ModelChunk,
    StreamSignal,
    TextPart,
    TurnEvent,
)
from sonaragent.ai.tools import BaseTool, ToolConfirmationDetails, ToolConfirmationOutcome, ToolRegistry, ToolResult


class _EchoTool(BaseTool):
    name = "echo"
    description = "Echo text back"
    parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

    async def execute(self, args: Mapping[str, Any], signal: CancelSignal) -> ToolResult:
        return ToolResult(llm_content=str(args.get("text", "")))


class _CountingEchoTool(_EchoTool):
    def __init__(self) -> None:
        self.executed = 0

    async def execute(self, args: Mapping[str, Any], signal: CancelSignal) -> ToolResult:
        self.executed += 1
        return await super().execute(args, signal)

class _GuardedTool(_EchoTool):
    name = "guarded"

    async def should_confirm_execute(self, args: Mapping[str, Any], signal: CancelSignal) -> ToolConfirmationDetails:
        return ToolConfirmationDetails(title="Run guarded tool?")


class _ScriptedChat:
    """Plays back one scripted stream per turn and records what was sent."""

    def __init__(self, *turns: list[Any], prompt_tokens: int = 0) -> None:
        self._turns = list(turns)
        self.history: list[Content] = []
        self.requests: list[dict[str, Any]] = []
        self.last_prompt_token_count = prompt_tokens
        self.closed = False

    async def send_message_stream(self, model: str, message: Any, prompt_id: str, signal: Any = None):
        self.requests.append({"model": model, "message": message, "prompt_id": prompt_id})
        for item in self._turns.pop(0):
            if isinstance(item, BaseException):
                raise item
            yield item

    def flush_pending_text(self) -> str:
        return ""

    def add_history(self, content: Content) -> None:
        self.history.append(content)

    async def aclose(self) -> None:
        self.closed = True


def _say(text: str) -> list[StreamSignal]:
    return [StreamSignal.of(ModelChunk(parts=(TextPart(text),), finish_reason=FinishReason.STOP))]


def _call(name: str, call_id: str, **args: Any) -> list[StreamSignal]:
    return [
        StreamSignal.of(
            ModelChunk(parts=(FunctionCall(name=name, args=args, id=call_id),), finish_reason=FinishReason.STOP)
        )
    ]


def _types(events: list[TurnEvent]) -> list[EventType]:
    return [event.type for event in events]


async def _submit(session: AgentSession, query: Any = "hi", **kwargs: Any) -> list[TurnEvent]:
    return [event async for event in session.submit_query(query, **kwargs)]


@pytest.mark.asyncio
async def test_single_turn_without_tools() -> None:
    chat = _ScriptedChat(_say("Hello"))
    session = AgentSession(chat, ToolRegistry())

    events = await _submit(session)

    assert _types(events) == [EventType.CONTENT, EventType.FINISHED]
    assert session.turn_count == 1
    assert not session.is_responding
    assert chat.requests[0]["model"] == "sonar-pro"


@pytest.mark.asyncio
async def test_second_submission_is_rejected_while_in_flight() -> None:
    chat = _ScriptedChat(_say("first answer"))
    session = AgentSession(chat, ToolRegistry())

    first = session.submit_query("one")
    assert (await first.__anext__()).type is EventType.CONTENT
    assert session.is_responding

    with pytest.raises(SubmissionInFlightError):
        await session.submit_query("two").__anext__()

    remaining = [event async for event in first]
    assert _types(remaining) == [EventType.FINISHED]
    assert not session.is_responding


@pytest.mark.asyncio
async def test_tool_results_are_sent_as_continuation() -> None:
    chat = _ScriptedChat(_call("echo", "c1", text="hi"), _say("done"))
    session = AgentSession(chat, ToolRegistry([_EchoTool()]))

    events = await _submit(session, "use the tool")

    assert _types(events) == [
        EventType.TOOL_CALL_REQUEST,
        EventType.FINISHED,
        EventType.TOOL_CALL_RESPONSE,
        EventType.CONTENT,
        EventType.FINISHED,
    ]
    assert chat.requests[1]["message"] == [FunctionResponse(id="c1", name="echo", response={"output": "hi"})]
    assert chat.requests[0]["prompt_id"] == chat.requests[1]["prompt_id"]
    assert session.turn_count == 2


@pytest.mark.asyncio
async def test_all_cancelled_tools_are_recorded_without_continuation() -> None:
    chat = _ScriptedChat(_call("guarded", "g1"))
    session = AgentSession(chat, ToolRegistry([_GuardedTool()]))
    events: list[TurnEvent] = []

    async for event in session.submit_query("go"):
        events.append(event)
        if event.type is EventType.TOOL_CALL_CONFIRMATION:
            session.scheduler.resolve_confirmation(event.value.call_id, ToolConfirmationOutcome.CANCEL)

    assert _types(events) == [
        EventType.TOOL_CALL_REQUEST,
        EventType.FINISHED,
        EventType.TOOL_CALL_CONFIRMATION,
        EventType.TOOL_CALL_RESPONSE,
    ]
    assert len(chat.requests) == 1
    assert chat.history == [
        Content.user([FunctionResponse(id="g1", name="guarded", response={"error": CANCELLED_RESPONSE_MESSAGE})])
    ]


@pytest.mark.asyncio
async def test_user_cancel_mid_turn_ends_submission_without_dispatch() -> None:
    tool = _CountingEchoTool()
    signal = CancelSignal()
    chat = _ScriptedChat(
        [
            StreamSignal.of(ModelChunk(parts=(FunctionCall(name="echo", args={"text": "hi"}, id="c1"),))),
            StreamSignal.of(ModelChunk(parts=(TextPart("more"),), finish_reason=FinishReason.STOP)),
        ]
    )
    session = AgentSession(chat, ToolRegistry([tool]))
    events: list[TurnEvent] = []

    async for event in session.submit_query("go", signal=signal):
        events.append(event)
        if event.type is EventType.TOOL_CALL_REQUEST:
            signal.cancel("user pressed escape")

    assert _types(events) == [EventType.TOOL_CALL_REQUEST, EventType.USER_CANCELLED]
    assert tool.executed == 0
    assert len(chat.requests) == 1
    assert chat.history == []
    assert not session.is_responding

@pytest.mark.asyncio
async def test_model_switch_stops_resubmission() -> None:
    chat = _ScriptedChat(_call("echo", "c1", text="x"), _say("unused"))
    session = AgentSession(chat, ToolRegistry([_EchoTool()]))

    async for event in session.submit_query("go"):
        if event.type is EventType.TOOL_CALL_REQUEST:
            session.notify_model_switched()

    assert len(chat.requests) == 1
    assert session.model == "sonar"


@pytest.mark.asyncio
async def test_max_session_turns_stops_continuation() -> None:
    chat = _ScriptedChat(_call("echo", "c1", text="x"), _say("unused"))
    session = AgentSession(chat, ToolRegistry([_EchoTool()]), config=SessionConfig(max_session_turns=1))

    events = await _submit(session)

    assert events[-1] == TurnEvent(EventType.MAX_SESSION_TURNS, 1)
    assert len(chat.requests) == 1


@pytest.mark.asyncio
async def test_session_token_limit_blocks_request() -> None:
    chat = _ScriptedChat(_say("unused"), prompt_tokens=500)
    session = AgentSession(chat, ToolRegistry(), config=SessionConfig(session_token_limit=100))

    events = await _submit(session)

    assert events == [
        TurnEvent(EventType.SESSION_TOKEN_LIMIT_EXCEEDED, {"current_tokens": 500, "limit": 100}),
    ]
    assert chat.requests == []


@pytest.mark.asyncio
async def test_repeated_identical_tool_batches_are_reported_as_loop() -> None:
    chat = _ScriptedChat(_call("echo", "c1", text="again"), _call("echo", "c2", text="again"))
    session = AgentSession(chat, ToolRegistry([_EchoTool()]), config=SessionConfig(loop_threshold=2))

    events = await _submit(session)

    assert events[-1] == TurnEvent(EventType.LOOP_DETECTED, "echo")
    assert len(chat.requests) == 2


@pytest.mark.asyncio
async def test_error_event_ends_session() -> None:
    class _SilentReporter:
        def report(self, error: BaseException, context: Any = None, **kwargs: Any) -> None:
            pass

    chat = _ScriptedChat([RuntimeError("connection reset")])
    session = AgentSession(chat, ToolRegistry(), error_reporter=_SilentReporter())

    events = await _submit(session)

    assert _types(events) == [EventType.ERROR]
    assert events[0].value.message == "connection reset"
    assert not session.is_responding


@pytest.mark.asyncio
async def test_run_client_tool_executes_immediately() -> None:
    session = AgentSession(_ScriptedChat(), ToolRegistry([_EchoTool()]))

    call = await session.run_client_tool("echo", {"text": "ping"})

    assert call.status is ToolCallStatus.SUCCESS
    assert call.request.is_client_initiated
    assert call.response_submitted
    assert call.response.response_parts[0].response == {"output": "ping"}


@pytest.mark.asyncio
async def test_aclose_closes_chat() -> None:
    chat = _ScriptedChat()

    await AgentSession(chat, ToolRegistry()).aclose()

    assert chat.closed
