"""Error taxonomy and error-reporting sinks for the agent runtime."""

from __future__ import annotations

import dataclasses
import json
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from openai import APIStatusError, AuthenticationError, PermissionDeniedError

from .orchestration.types import StructuredError

__all__ = [
    "AgentError",
    "UnauthorizedError",
    "ForbiddenError",
    "BadRequestError",
    "ProviderContentError",
    "to_friendly_error",
    "get_error_message",
    "get_error_status",
    "to_structured_error",
    "ErrorReporter",
    "LoggingErrorReporter",
    "FileErrorReporter",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class AgentError(RuntimeError):
    """Base class for errors raised by the runtime itself."""

    status: int | None = None


class UnauthorizedError(AgentError):
    """The API rejected the credentials; the caller must re-authenticate."""

    status = 401


class ForbiddenError(AgentError):
    status = 403


class BadRequestError(AgentError):
    status = 400


class ProviderContentError(AgentError):
    """A message contains content the selected provider cannot accept."""


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------


def get_error_status(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def get_error_message(error: BaseException | Any) -> str:
    if isinstance(error, BaseException):
        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message
        text = str(error)
        return text or error.__class__.__name__
    try:
        return json.dumps(error)
    except (TypeError, ValueError):
        return str(error)


def to_friendly_error(error: BaseException) -> BaseException:
    """Map transport errors with well-known statuses onto runtime exceptions.

    Anything without a recognised status is returned unchanged.
    """
    if isinstance(error, AgentError):
        return error
    status = get_error_status(error)
    message = get_error_message(error)
    if isinstance(error, AuthenticationError) or status == 401:
        return UnauthorizedError(message)
    if isinstance(error, PermissionDeniedError) or status == 403:
        return ForbiddenError(message)
    if isinstance(error, APIStatusError) and status == 400:
        return BadRequestError(message)
    return error


def to_structured_error(error: BaseException) -> StructuredError:
    return StructuredError(message=get_error_message(error), status=get_error_status(error))


# -----------------------------------------------------------------------------
# Reporting
# -----------------------------------------------------------------------------


@runtime_checkable
class ErrorReporter(Protocol):
    """Sink that records failures together with the context that produced them."""

    def report(
        self,
        error: BaseException,
        context: Any = None,
        *,
        message: str = "",
        error_type: str = "general",
    ) -> None:
        ...


class LoggingErrorReporter:
    """Report errors to the module logger."""

    def report(
        self,
        error: BaseException,
        context: Any = None,
        *,
        message: str = "",
        error_type: str = "general",
    ) -> None:
        LOGGER.error(
            "%s [%s]: %s",
            message or "Unexpected error",
            error_type,
            get_error_message(error),
            exc_info=(type(error), error, error.__traceback__),
        )
        if context is not None:
            LOGGER.debug("Error context: %s", _dump(context))


class FileErrorReporter:
    """Write each error and its context to a JSON report file."""

    def __init__(self, report_dir: Path | str | None = None) -> None:
        self._report_dir = Path(report_dir) if report_dir else Path(tempfile.gettempdir())

    @property
    def report_dir(self) -> Path:
        return self._report_dir

    def report(
        self,
        error: BaseException,
        context: Any = None,
        *,
        message: str = "",
        error_type: str = "general",
    ) -> None:
        stamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime())
        target = self._report_dir / f"sonaragent-error-{error_type}-{stamp}-{time.time_ns() % 1_000_000}.json"
        payload = {
            "message": message,
            "error": {"type": error.__class__.__name__, "message": get_error_message(error)},
            "status": get_error_status(error),
            "context": context,
        }
        try:
            self._report_dir.mkdir(parents=True, exist_ok=True)
            target.write_text(_dump(payload), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.error("%s Additionally, failed to write error report: %s", message, exc)
            LOGGER.error("Original error: %s", get_error_message(error))
            return
        LOGGER.error("%s Full report available at: %s", message or get_error_message(error), target)


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def _dump(value: Any) -> str:
    return json.dumps(value, default=_jsonable, ensure_ascii=False, indent=2)
