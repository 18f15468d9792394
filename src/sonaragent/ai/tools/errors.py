"""Error codes and the exception tools raise to report a failed call."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ToolErrorType:
    """Constants for error codes attached to failed tool calls."""

    # Scheduling errors
    TOOL_NOT_REGISTERED = "tool_not_registered"
    INVALID_TOOL_PARAMS = "invalid_tool_params"

    # Execution errors
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"
    UNHANDLED_EXCEPTION = "unhandled_exception"
    TIMEOUT = "timeout"

    # Input errors
    FILE_NOT_FOUND = "file_not_found"
    PERMISSION_DENIED = "permission_denied"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Exception a tool raises to fail its call with a specific code.

    Attributes:
        error_type: Machine-readable error identifier from :class:`ToolErrorType`.
        message: Human-readable error description, also sent to the model.
        details: Additional structured error information.
    """

    error_type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_type, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_type}] {self.message}"
