"""Tests for the command line entry point."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any

import pytest

from sonaragent import cli
from sonaragent.ai.client import ClientSettings
from sonaragent.ai.orchestration.scheduler import ApprovalMode
from sonaragent.ai.orchestration.types import (
    EventType,
    FinishedInfo,
    StreamSignal,
    StructuredError,
    ThoughtSummary,
    ToolCallRequest,
    ToolCallResponse,
    TurnEvent,
)
from sonaragent.ai.providers import create_provider
from sonaragent.services.settings import Settings


class _ScriptedClient:
    def __init__(self, *chunks: dict[str, Any]) -> None:
        self._chunks = list(chunks)
        self.payloads: list[dict[str, Any]] = []
        self.provider = create_provider(
            ClientSettings(base_url="http://localhost:8000/v1", api_key="test-key", model="local")
        )
        self.closed = False

    async def stream_chat(self, payload: dict[str, Any]):
        self.payloads.append(payload)
        for chunk in self._chunks:
            yield StreamSignal.of(chunk)

    async def aclose(self) -> None:
        self.closed = True


def _answer(text: str) -> _ScriptedClient:
    return _ScriptedClient(
        {"id": "r1", "choices": [{"delta": {"content": text}, "finish_reason": None}]},
        {"id": "r1", "choices": [{"delta": {}, "finish_reason": "stop"}]},
    )


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = cli._coerce_cli_overrides(
        [
            "temperature=0.5",
            "max_tokens=100",
            "debug_logging=yes",
            "organization=none",
            'metadata={"team": "core"}',
            "model = sonar ",
        ]
    )

    assert overrides == {
        "temperature": 0.5,
        "max_tokens": 100,
        "debug_logging": True,
        "organization": None,
        "metadata": {"team": "core"},
        "model": "sonar",
    }


@pytest.mark.parametrize(
    "entry",
    ["model", "=sonar", "colour=blue", "debug_logging=maybe", "metadata=[1]", "max_retries=three"],
)
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        cli._coerce_cli_overrides([entry])


def test_dump_settings_applies_overrides(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], restore_root_logging: Any
) -> None:
    settings_path = tmp_path / "settings.json"

    exit_code = cli.main(
        ["--dump-settings", "--settings-path", str(settings_path), "--set", "model=sonar", "--yolo"]
    )

    assert exit_code == 0
    dumped = json.loads(capsys.readouterr().out)
    assert dumped["settings"]["model"] == "sonar"
    assert dumped["settings"]["approval_mode"] == "yolo"
    assert dumped["settings"]["api_key"] == ""
    assert dumped["meta"]["path"] == str(settings_path)
    assert dumped["meta"]["cli_overrides"] == ["approval_mode", "model"]
    assert dumped["meta"]["secret_backend"] == "fernet"


def test_dump_settings_redacts_api_key(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
    restore_root_logging: Any,
) -> None:
    monkeypatch.setenv("PERPLEXITY_API_KEY", "pplx-abcdef")

    cli.main(["--dump-settings", "--settings-path", str(tmp_path / "settings.json")])

    dumped = json.loads(capsys.readouterr().out)
    assert dumped["settings"]["api_key"] == "pp*******ef"
    assert "PERPLEXITY_API_KEY" in dumped["meta"]["environment_variables"]


def test_invalid_override_exits_with_usage_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], restore_root_logging: Any
) -> None:
    exit_code = cli.main(["hi", "--settings-path", str(tmp_path / "s.json"), "--set", "colour=blue"])

    assert exit_code == 2
    assert "Unknown setting 'colour'" in capsys.readouterr().err


def test_missing_api_key_exits_with_usage_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], restore_root_logging: Any
) -> None:
    exit_code = cli.main(["hello", "--settings-path", str(tmp_path / "settings.json")])

    assert exit_code == 2
    assert "No API key configured" in capsys.readouterr().err


def test_main_streams_answer_to_stdout(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
    restore_root_logging: Any,
) -> None:
    client = _answer("Paris.")
    real_build_session = cli.build_session
    monkeypatch.setenv("PERPLEXITY_API_KEY", "pplx-test")
    monkeypatch.setattr(
        cli,
        "build_session",
        lambda settings, **kwargs: real_build_session(settings, client=client),
    )

    exit_code = cli.main(["capital", "of", "France?", "--settings-path", str(tmp_path / "settings.json")])

    assert exit_code == 0
    assert capsys.readouterr().out == "Paris.\n"
    assert client.payloads[0]["messages"][-1] == {"role": "user", "content": "capital of France?"}
    assert client.closed


@pytest.mark.asyncio
async def test_build_session_wires_settings_into_requests() -> None:
    client = _answer("Hi")
    settings = Settings(
        api_key="k",
        model="sonar-reasoning-pro",
        system_prompt="You are terse.",
        temperature=0.1,
        approval_mode="auto_edit",
    )

    session = cli.build_session(settings, client=client)
    events = [event async for event in session.submit_query("hello")]

    assert [event.type for event in events] == [EventType.CONTENT, EventType.FINISHED]
    assert session.model == "sonar-reasoning-pro"
    assert session.scheduler.approval_mode is ApprovalMode.AUTO_EDIT
    payload = client.payloads[0]
    assert payload["model"] == "sonar-reasoning-pro"
    assert payload["temperature"] == 0.1
    assert payload["messages"][0] == {"role": "system", "content": "You are terse."}


@pytest.mark.parametrize(
    "event, stdout, stderr",
    [
        (TurnEvent(EventType.CONTENT, "Hello"), "Hello", ""),
        (TurnEvent(EventType.FINISHED, FinishedInfo(reason=None)), "\n", ""),
        (TurnEvent(EventType.CITATION, "Citations:\nhttps://a"), "\n\nCitations:\nhttps://a\n", ""),
        (TurnEvent(EventType.THOUGHT, ThoughtSummary("Plan", "read files")), "", ""),
        (TurnEvent(EventType.RETRY), "", "\n[retrying request]\n"),
        (TurnEvent(EventType.USER_CANCELLED), "", "\n[cancelled]\n"),
        (TurnEvent(EventType.ERROR, StructuredError("quota", 429)), "", "\nError (status 429): quota\n"),
        (TurnEvent(EventType.ERROR, StructuredError("broken")), "", "\nError: broken\n"),
        (
            TurnEvent(EventType.TOOL_CALL_REQUEST, ToolCallRequest(call_id="c1", name="ls", args={"path": "."})),
            "",
            '-> ls({"path": "."})\n',
        ),
        (
            TurnEvent(EventType.TOOL_CALL_RESPONSE, ToolCallResponse(call_id="c1", result_display="2 files")),
            "",
            "<- 2 files\n",
        ),
        (TurnEvent(EventType.MAX_SESSION_TURNS, 5), "", "\nReached the maximum of 5 turns for this session.\n"),
        (
            TurnEvent(EventType.SESSION_TOKEN_LIMIT_EXCEEDED, {"current_tokens": 12, "limit": 10}),
            "",
            "\nSession token limit exceeded: 12 > 10\n",
        ),
        (TurnEvent(EventType.LOOP_DETECTED, "ls"), "", "\nStopped: repeated calls to ls look like a loop.\n"),
    ],
)
def test_render_event(event: TurnEvent, stdout: str, stderr: str) -> None:
    out, err = io.StringIO(), io.StringIO()

    cli.render_event(event, out=out, err=err)

    assert out.getvalue() == stdout
    assert err.getvalue() == stderr


def test_render_event_shows_thoughts_when_requested() -> None:
    out, err = io.StringIO(), io.StringIO()

    cli.render_event(TurnEvent(EventType.THOUGHT, ThoughtSummary("Plan", "read files")), out=out, err=err, show_thoughts=True)

    assert err.getvalue() == "[Plan] read files\n"
