"""Tool interfaces, results and the tool registry."""

from .base import (
    BaseTool,
    Tool,
    ToolConfirmationDetails,
    ToolConfirmationOutcome,
    ToolKind,
    ToolResult,
)
from .errors import ToolError, ToolErrorType
from .registry import ToolRegistry

__all__ = [
    "BaseTool",
    "Tool",
    "ToolConfirmationDetails",
    "ToolConfirmationOutcome",
    "ToolKind",
    "ToolResult",
    "ToolError",
    "ToolErrorType",
    "ToolRegistry",
]
