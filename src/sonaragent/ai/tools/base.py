"""Base classes for agent tools.

A tool is anything the scheduler can validate, optionally ask the user to
approve, and execute with a cancellation signal. Concrete capabilities (shell,
file editing, web search) live outside the runtime core and plug in through
:class:`Tool`.
"""

from __future__ import annotations

import enum
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Literal,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from jsonschema import Draft7Validator, SchemaError, ValidationError

from ..orchestration.types import FunctionDeclaration, Part
from .errors import ToolError

if TYPE_CHECKING:
    from ..cancellation import CancelSignal

__all__ = [
    "ToolKind",
    "ToolConfirmationOutcome",
    "ToolConfirmationDetails",
    "ToolResult",
    "Tool",
    "BaseTool",
]

LOGGER = logging.getLogger(__name__)


class ToolKind(str, enum.Enum):
    READ = "read"
    EDIT = "edit"
    EXECUTE = "execute"
    SEARCH = "search"
    OTHER = "other"


class ToolConfirmationOutcome(str, enum.Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    CANCEL = "cancel"


@dataclass(slots=True)
class ToolConfirmationDetails:
    """What to show the user before a tool runs, and a hook for the answer.

    Attributes:
        title: Short heading, e.g. ``"Confirm shell command"``.
        prompt: The command, diff or description being approved.
        kind: Tool kind, used by approval modes that auto-approve edits.
        on_confirm: Called with the outcome once the user decides.
    """

    title: str
    prompt: str = ""
    kind: ToolKind = ToolKind.OTHER
    on_confirm: Callable[[ToolConfirmationOutcome], Awaitable[None] | None] | None = None

    async def notify(self, outcome: ToolConfirmationOutcome) -> None:
        if self.on_confirm is None:
            return
        result = self.on_confirm(outcome)
        if inspect.isawaitable(result):
            await result


@dataclass(slots=True)
class ToolResult:
    """Standardized result container for tool execution.

    Attributes:
        llm_content: What the model sees: text, or parts (e.g. an image).
        return_display: What the user sees, when different from ``llm_content``.
        error: Set when the call failed.
    """

    llm_content: str | Sequence[Part] = ""
    return_display: str | None = None
    error: ToolError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def from_error(cls, error: ToolError) -> ToolResult:
        return cls(llm_content=f"Error: {error.message}", return_display=error.message, error=error)


@runtime_checkable
class Tool(Protocol):
    """Protocol every schedulable tool implements."""

    name: str
    description: str
    kind: ToolKind

    @property
    def declaration(self) -> FunctionDeclaration:
        ...

    def validate_params(self, args: Mapping[str, Any]) -> str | None:
        ...

    async def should_confirm_execute(
        self, args: Mapping[str, Any], signal: CancelSignal
    ) -> ToolConfirmationDetails | Literal[False] | None:
        """Details to show before running, or ``None``/``False`` when no approval is needed."""
        ...

    async def execute(self, args: Mapping[str, Any], signal: CancelSignal) -> ToolResult:
        ...


class BaseTool(ABC):
    """Convenience base class: schema validation and no confirmation by default.

    Subclasses set ``name``, ``description``, ``parameters`` and optionally
    ``kind``, and implement :meth:`execute`.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    kind: ClassVar[ToolKind] = ToolKind.OTHER
    parameters: ClassVar[Mapping[str, Any]] = {"type": "object", "properties": {}}

    @property
    def declaration(self) -> FunctionDeclaration:
        return FunctionDeclaration(name=self.name, description=self.description, parameters=self.parameters)

    def validate_params(self, args: Mapping[str, Any]) -> str | None:
        """Return a readable message when ``args`` violate the schema, else ``None``."""
        schema = dict(self.parameters)
        try:
            Draft7Validator.check_schema(schema)
            Draft7Validator(schema).validate(dict(args))
        except ValidationError as error:
            return _format_validation_error(error)
        except SchemaError as error:
            LOGGER.warning("Tool %s declares an invalid schema: %s", self.name, error.message)
        return None

    async def should_confirm_execute(
        self, args: Mapping[str, Any], signal: CancelSignal
    ) -> ToolConfirmationDetails | Literal[False] | None:
        return None

    @abstractmethod
    async def execute(self, args: Mapping[str, Any], signal: CancelSignal) -> ToolResult:
        ...


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message
