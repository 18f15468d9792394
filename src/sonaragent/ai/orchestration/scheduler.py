"""Lifecycle coordinator for the tool calls of one batch.

Every call moves through ``validating``, optionally ``awaiting_approval``,
then ``scheduled`` and ``executing`` before it ends in ``success``,
``error`` or ``cancelled``. Calls of a batch progress independently and
execute concurrently; :meth:`ToolCallScheduler.schedule` returns once all of
them are terminal.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ..cancellation import CancelSignal
from ..tools.base import Tool, ToolConfirmationDetails, ToolConfirmationOutcome, ToolKind, ToolResult
from ..tools.errors import ToolError, ToolErrorType
from ..tools.registry import ToolRegistry
from .types import FunctionResponse, Part, TextPart, ToolCallRequest, ToolCallResponse

__all__ = [
    "ApprovalMode",
    "ToolCallStatus",
    "TERMINAL_STATUSES",
    "TrackedToolCall",
    "ToolCallScheduler",
    "CANCELLED_RESPONSE_MESSAGE",
    "convert_to_function_response",
]

LOGGER = logging.getLogger(__name__)

CANCELLED_RESPONSE_MESSAGE = "[Operation Cancelled] Reason: User cancelled tool execution."


class ApprovalMode(str, enum.Enum):
    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"


class ToolCallStatus(str, enum.Enum):
    VALIDATING = "validating"
    AWAITING_APPROVAL = "awaiting_approval"
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[ToolCallStatus] = frozenset(
    {ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED}
)


@dataclass(slots=True)
class TrackedToolCall:
    """Mutable bookkeeping for one call while its batch is in flight."""

    request: ToolCallRequest
    status: ToolCallStatus = ToolCallStatus.VALIDATING
    tool: Tool | None = None
    confirmation: ToolConfirmationDetails | None = None
    outcome: ToolConfirmationOutcome | None = None
    response: ToolCallResponse | None = None
    response_submitted: bool = False
    duration_ms: float = 0.0

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


UpdateListener = Callable[[TrackedToolCall], None]


def convert_to_function_response(name: str, call_id: str, content: str | Sequence[Part]) -> tuple[Part, ...]:
    """Wrap tool output as a function response, followed by any media parts."""
    if isinstance(content, str):
        return (FunctionResponse(id=call_id, name=name, response={"output": content}),)
    texts = [part.text for part in content if isinstance(part, TextPart)]
    extras = [part for part in content if not isinstance(part, TextPart)]
    if texts:
        output = "\n".join(texts)
    elif extras:
        output = f"Binary content provided ({len(extras)} item(s))."
    else:
        output = ""
    return (FunctionResponse(id=call_id, name=name, response={"output": output}), *extras)


class ToolCallScheduler:
    """Validate, approve and execute batches of tool calls.

    Args:
        registry: Tools that may be called.
        approval_mode: Which calls skip user confirmation.
        on_update: Called after every status change.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        approval_mode: ApprovalMode = ApprovalMode.DEFAULT,
        on_update: UpdateListener | None = None,
    ) -> None:
        self._registry = registry
        self._approval_mode = approval_mode
        self._on_update = on_update
        self._decisions: dict[str, asyncio.Future[ToolConfirmationOutcome]] = {}
        self._awaiting: dict[str, TrackedToolCall] = {}
        self._always_allowed: set[str] = set()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def approval_mode(self) -> ApprovalMode:
        return self._approval_mode

    @property
    def awaiting_approval(self) -> list[TrackedToolCall]:
        return list(self._awaiting.values())

    def set_on_update(self, listener: UpdateListener | None) -> None:
        self._on_update = listener

    def set_approval_mode(self, mode: ApprovalMode) -> None:
        """Switch modes; calls the new mode would not ask about are approved now."""
        self._approval_mode = mode
        for call in list(self._awaiting.values()):
            if call.tool is not None and not self._requires_confirmation(call.tool):
                self.resolve_confirmation(call.call_id, ToolConfirmationOutcome.PROCEED_ONCE)

    def resolve_confirmation(self, call_id: str, outcome: ToolConfirmationOutcome) -> bool:
        """Deliver the user's decision for a call awaiting approval."""
        decision = self._decisions.get(call_id)
        if decision is None or decision.done():
            LOGGER.debug("No pending confirmation for tool call %s", call_id)
            return False
        decision.set_result(outcome)
        return True

    async def schedule(
        self, requests: Iterable[ToolCallRequest], signal: CancelSignal | None = None
    ) -> list[TrackedToolCall]:
        """Run every request to a terminal state and return the tracked calls."""
        signal = signal or CancelSignal()
        calls = [TrackedToolCall(request=request) for request in requests]
        if not calls:
            return calls
        LOGGER.debug("Scheduling %d tool call(s)", len(calls))
        await asyncio.gather(*(self._run(call, signal) for call in calls))
        return calls

    # ------------------------------------------------------------------
    # Per-call lifecycle
    # ------------------------------------------------------------------
    async def _run(self, call: TrackedToolCall, signal: CancelSignal) -> None:
        request = call.request
        self._set_status(call, ToolCallStatus.VALIDATING)
        tool = self._registry.get(request.name)
        if tool is None:
            self._fail(call, ToolErrorType.TOOL_NOT_REGISTERED, f'Tool "{request.name}" not found in registry.')
            return
        call.tool = tool
        problem = tool.validate_params(request.args)
        if problem:
            self._fail(call, ToolErrorType.INVALID_TOOL_PARAMS, problem)
            return

        started = time.perf_counter()
        try:
            if signal.cancelled:
                self._cancel(call)
                return
            if self._requires_confirmation(tool):
                details = await tool.should_confirm_execute(request.args, signal)
                if details:
                    approved = await self._await_approval(call, details, signal)
                    if not approved:
                        self._cancel(call)
                        return

            self._set_status(call, ToolCallStatus.SCHEDULED)
            if signal.cancelled:
                self._cancel(call)
                return
            self._set_status(call, ToolCallStatus.EXECUTING)
            result = await tool.execute(request.args, signal)
        except ToolError as error:
            self._fail(call, error.error_type, error.message)
            return
        except Exception as exc:
            LOGGER.exception("Tool %s raised while executing", request.name)
            self._fail(call, ToolErrorType.UNHANDLED_EXCEPTION, str(exc) or exc.__class__.__name__)
            return
        finally:
            call.duration_ms = (time.perf_counter() - started) * 1000.0

        if signal.cancelled:
            self._cancel(call)
        elif result.error is not None:
            self._fail(call, result.error.error_type, result.error.message, display=result.return_display)
        else:
            self._succeed(call, result)

    async def _await_approval(
        self, call: TrackedToolCall, details: ToolConfirmationDetails, signal: CancelSignal
    ) -> bool:
        loop = asyncio.get_running_loop()
        decision: asyncio.Future[ToolConfirmationOutcome] = loop.create_future()
        self._decisions[call.call_id] = decision
        self._awaiting[call.call_id] = call
        call.confirmation = details
        self._set_status(call, ToolCallStatus.AWAITING_APPROVAL)
        waiter = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({decision, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            self._decisions.pop(call.call_id, None)
            self._awaiting.pop(call.call_id, None)

        if not decision.done() or signal.cancelled:
            decision.cancel()
            return False
        outcome = decision.result()
        call.outcome = outcome
        await details.notify(outcome)
        if outcome is ToolConfirmationOutcome.PROCEED_ALWAYS and call.tool is not None:
            self._always_allowed.add(call.tool.name)
        return outcome is not ToolConfirmationOutcome.CANCEL

    def _requires_confirmation(self, tool: Tool) -> bool:
        if self._approval_mode is ApprovalMode.YOLO:
            return False
        if self._approval_mode is ApprovalMode.AUTO_EDIT and tool.kind is ToolKind.EDIT:
            return False
        return tool.name not in self._always_allowed

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    def _succeed(self, call: TrackedToolCall, result: ToolResult) -> None:
        request = call.request
        call.response = ToolCallResponse(
            call_id=request.call_id,
            response_parts=convert_to_function_response(request.name, request.call_id, result.llm_content),
            result_display=result.return_display,
        )
        self._set_status(call, ToolCallStatus.SUCCESS)

    def _fail(self, call: TrackedToolCall, error_type: str, message: str, *, display: str | None = None) -> None:
        request = call.request
        LOGGER.debug("Tool call %s (%s) failed: %s", request.call_id, request.name, message)
        call.response = ToolCallResponse(
            call_id=request.call_id,
            response_parts=(FunctionResponse(id=request.call_id, name=request.name, response={"error": message}),),
            result_display=display or message,
            error=message,
            error_type=error_type,
        )
        self._set_status(call, ToolCallStatus.ERROR)

    def _cancel(self, call: TrackedToolCall) -> None:
        request = call.request
        call.response = ToolCallResponse(
            call_id=request.call_id,
            response_parts=(
                FunctionResponse(id=request.call_id, name=request.name, response={"error": CANCELLED_RESPONSE_MESSAGE}),
            ),
            result_display="Tool call cancelled by user.",
            error_type=ToolErrorType.EXECUTION_CANCELLED,
        )
        self._set_status(call, ToolCallStatus.CANCELLED)

    def _set_status(self, call: TrackedToolCall, status: ToolCallStatus) -> None:
        call.status = status
        if self._on_update is not None:
            self._on_update(call)
