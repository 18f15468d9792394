"""Command line entry point: answer one prompt as a streamed agent session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.cancellation import CancelSignal
from .ai.chat import ConversationChat, GenerationConfig
from .ai.client import AIClient
from .ai.errors import FileErrorReporter, UnauthorizedError
from .ai.orchestration.converter import ContentConverter
from .ai.orchestration.scheduler import ApprovalMode, TrackedToolCall
from .ai.orchestration.session import AgentSession, SessionConfig
from .ai.orchestration.types import EventType, StructuredError, ThoughtSummary, TurnEvent
from .ai.tools import ToolConfirmationOutcome, ToolRegistry
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

__all__ = ["main", "build_session", "render_event"]

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_CONFIRM_ANSWERS: Mapping[str, ToolConfirmationOutcome] = {
    "y": ToolConfirmationOutcome.PROCEED_ONCE,
    "yes": ToolConfirmationOutcome.PROCEED_ONCE,
    "a": ToolConfirmationOutcome.PROCEED_ALWAYS,
    "always": ToolConfirmationOutcome.PROCEED_ALWAYS,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``sonaragent`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("SONARAGENT_DEBUG")
    logging_utils.setup_logging(logging.DEBUG if debug else logging.INFO)

    settings_path = args.settings_path or os.environ.get("SONARAGENT_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    if args.model:
        overrides["model"] = args.model
    if args.yolo:
        overrides["approval_mode"] = ApprovalMode.YOLO.value
    settings = store.load(overrides=overrides or None)

    if args.dump_settings:
        _dump_settings(settings, store, overrides=overrides)
        return 0

    if settings.debug_logging and not debug:
        logging_utils.setup_logging(logging.DEBUG, force=True)
        debug = True

    prompt = " ".join(args.prompt).strip() or _read_stdin_prompt()
    if not prompt:
        print("No prompt given.", file=sys.stderr)
        return 2
    if not settings.api_key:
        print("No API key configured; set PERPLEXITY_API_KEY.", file=sys.stderr)
        return 2

    try:
        return asyncio.run(_run_prompt(settings, prompt, debug=debug, show_thoughts=args.show_thoughts))
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted by user.")
        return 130


def build_session(
    settings: Settings,
    *,
    registry: ToolRegistry | None = None,
    client: AIClient | None = None,
    debug_logging: bool = False,
) -> AgentSession:
    """Wire client, conversation and session together from ``settings``."""

    active_client = client or AIClient(settings.to_client_settings(debug_logging=debug_logging))
    tools = registry if registry is not None else ToolRegistry()
    chat = ConversationChat(
        active_client,
        converter=ContentConverter(prompt_token_share=settings.prompt_token_share),
        system_instruction=settings.system_prompt,
        tools=tools.function_declarations(),
        config=GenerationConfig(
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_tokens=settings.max_tokens,
        ),
    )
    return AgentSession(
        chat,
        tools,
        config=SessionConfig(
            model=settings.model,
            max_session_turns=settings.max_session_turns,
            session_token_limit=settings.session_token_limit,
        ),
        approval_mode=ApprovalMode(settings.approval_mode),
        error_reporter=FileErrorReporter(Path.home() / ".sonaragent" / "errors"),
    )


def render_event(event: TurnEvent, *, out: TextIO, err: TextIO, show_thoughts: bool = False) -> None:
    """Write one session event to the terminal streams."""

    kind = event.type
    if kind is EventType.CONTENT:
        out.write(str(event.value))
        out.flush()
    elif kind is EventType.THOUGHT and show_thoughts:
        thought: ThoughtSummary = event.value
        label = f"[{thought.subject}] " if thought.subject else ""
        err.write(f"{label}{thought.description}\n")
    elif kind is EventType.CITATION:
        out.write(f"\n\n{event.value}\n")
    elif kind is EventType.TOOL_CALL_REQUEST:
        err.write(f"-> {event.value.name}({json.dumps(event.value.args, ensure_ascii=False)})\n")
    elif kind is EventType.TOOL_CALL_RESPONSE:
        err.write(f"<- {event.value.result_display or ''}\n")
    elif kind is EventType.RETRY:
        err.write("\n[retrying request]\n")
    elif kind is EventType.ERROR:
        error: StructuredError = event.value
        status = f" (status {error.status})" if error.status is not None else ""
        err.write(f"\nError{status}: {error.message}\n")
    elif kind is EventType.USER_CANCELLED:
        err.write("\n[cancelled]\n")
    elif kind is EventType.MAX_SESSION_TURNS:
        err.write(f"\nReached the maximum of {event.value} turns for this session.\n")
    elif kind is EventType.SESSION_TOKEN_LIMIT_EXCEEDED:
        err.write(f"\nSession token limit exceeded: {event.value['current_tokens']} > {event.value['limit']}\n")
    elif kind is EventType.LOOP_DETECTED:
        err.write(f"\nStopped: repeated calls to {event.value} look like a loop.\n")
    elif kind is EventType.FINISHED:
        out.write("\n")
        out.flush()


async def _run_prompt(settings: Settings, prompt: str, *, debug: bool, show_thoughts: bool) -> int:
    session = build_session(settings, debug_logging=debug)
    signal = CancelSignal()
    exit_code = 0
    try:
        async for event in session.submit_query(prompt, signal=signal):
            if event.type is EventType.TOOL_CALL_CONFIRMATION:
                await _confirm(session, event.value)
                continue
            render_event(event, out=sys.stdout, err=sys.stderr, show_thoughts=show_thoughts)
            if event.type is EventType.ERROR:
                exit_code = 1
    except UnauthorizedError as exc:
        print(f"Authentication failed: {exc}", file=sys.stderr)
        exit_code = 3
    finally:
        await session.aclose()
    return exit_code


async def _confirm(session: AgentSession, call: TrackedToolCall) -> None:
    details = call.confirmation
    title = details.title if details is not None else call.request.name
    prompt = details.prompt if details is not None else ""
    question = f"\n{title}\n{prompt}\nAllow? [y]es / [a]lways / [N]o: "
    answer = await asyncio.to_thread(input, question)
    outcome = _CONFIRM_ANSWERS.get(answer.strip().lower(), ToolConfirmationOutcome.CANCEL)
    session.scheduler.resolve_confirmation(call.call_id, outcome)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sonaragent",
        description="Answer a prompt with a streamed, tool-augmented Sonar agent session.",
    )
    parser.add_argument("prompt", nargs="*", help="Prompt text; read from stdin when omitted.")
    parser.add_argument("--model", metavar="NAME", help="Model to use for this run.")
    parser.add_argument(
        "--yolo",
        action="store_true",
        help="Run every tool call without asking for confirmation.",
    )
    parser.add_argument("--show-thoughts", action="store_true", help="Print reasoning summaries to stderr.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.sonaragent/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    if optional and raw_value.lower() in {"none", "null"}:
        return None
    target = _resolve_annotation(annotation)
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is dict:
        try:
            value = json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
        if not isinstance(value, dict):
            raise ValueError("Dict overrides must be valid JSON objects")
        return value
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _read_stdin_prompt() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read().strip()


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(
            name for name in os.environ if name.startswith("SONARAGENT_") or name == "PERPLEXITY_API_KEY"
        ),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover - manual invocation
    raise SystemExit(main())
