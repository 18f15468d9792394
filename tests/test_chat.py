"""Tests for conversation history handling in ConversationChat."""

from __future__ import annotations

from typing import Any

import pytest

from sonaragent.ai.chat import ConversationChat, GenerationConfig
from sonaragent.ai.client import ClientSettings
from sonaragent.ai.orchestration.types import (
    Content,
    FunctionCall,
    FunctionDeclaration,
    StreamSignal,
    StreamSignalType,
    TextPart,
    ThoughtPart,
)
from sonaragent.ai.providers import create_provider


class _ScriptedClient:
    """Replays one list of stream signals per request."""

    def __init__(self, *scripts: list[StreamSignal]) -> None:
        self._scripts = list(scripts)
        self.payloads: list[dict[str, Any]] = []
        self.provider = create_provider(
            ClientSettings(base_url="http://localhost:8000/v1", api_key="test-key", model="local")
        )
        self.closed = False

    async def stream_chat(self, payload: dict[str, Any]):
        self.payloads.append(payload)
        for item in self._scripts.pop(0):
            yield item

    async def aclose(self) -> None:
        self.closed = True


def _chunk(content: str | None = None, *, finish: str | None = None, **delta: Any) -> StreamSignal:
    if content is not None:
        delta["content"] = content
    chunk: dict[str, Any] = {"id": "resp-1", "choices": [{"delta": delta, "finish_reason": finish}]}
    return StreamSignal.of(chunk)


async def _drain(chat: ConversationChat, message: Any) -> list[StreamSignal]:
    return [item async for item in chat.send_message_stream("local", message, "prompt-1")]


@pytest.mark.asyncio
async def test_exchange_is_recorded_after_finish() -> None:
    client = _ScriptedClient([_chunk("Hel"), _chunk("lo"), _chunk(finish="stop")])
    chat = ConversationChat(client, system_instruction="Be helpful.")

    items = await _drain(chat, "hi")

    assert [item.chunk.text for item in items] == ["Hel", "lo", ""]
    assert chat.history == (Content.user("hi"), Content.model([TextPart("Hello")]))
    assert client.payloads[0]["messages"] == [
        {"role": "system", "content": "Be helpful."},
        {"role": "user", "content": "hi"},
    ]


@pytest.mark.asyncio
async def test_history_unchanged_without_finish_reason() -> None:
    chat = ConversationChat(_ScriptedClient([_chunk("partial")]))

    await _drain(chat, "hi")

    assert chat.history == ()


@pytest.mark.asyncio
async def test_retry_discards_partial_output() -> None:
    client = _ScriptedClient([_chunk("stale"), StreamSignal.retry(), _chunk("fresh"), _chunk(finish="stop")])
    chat = ConversationChat(client)

    items = await _drain(chat, "hi")

    assert StreamSignalType.RETRY in [item.type for item in items]
    assert chat.history[-1] == Content.model([TextPart("fresh")])


@pytest.mark.asyncio
async def test_previous_history_is_sent_with_new_message() -> None:
    client = _ScriptedClient(
        [_chunk("one"), _chunk(finish="stop")],
        [_chunk("two"), _chunk(finish="stop")],
    )
    chat = ConversationChat(client)

    await _drain(chat, "first")
    await _drain(chat, "second")

    assert [message["content"] for message in client.payloads[1]["messages"]] == ["first", "one", "second"]
    assert len(chat.history) == 4


@pytest.mark.asyncio
async def test_streamed_fragments_are_consolidated() -> None:
    client = _ScriptedClient(
        [
            _chunk(reasoning_content="think "),
            _chunk(reasoning_content="more"),
            _chunk("x"),
            _chunk("y"),
            _chunk(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "ls", "arguments": "{}"}}]),
            _chunk(finish="tool_calls"),
        ]
    )
    chat = ConversationChat(client)

    await _drain(chat, "list files")

    assert chat.history[-1].parts == (
        ThoughtPart("think more"),
        TextPart("xy"),
        FunctionCall(name="ls", args={}, id="call_1"),
    )


@pytest.mark.asyncio
async def test_prompt_token_count_tracks_reported_usage() -> None:
    usage_chunk = StreamSignal.of(
        {"id": "resp-1", "choices": [], "usage": {"prompt_tokens": 42, "completion_tokens": 3, "total_tokens": 45}}
    )
    chat = ConversationChat(_ScriptedClient([_chunk("ok", finish="stop"), usage_chunk]))

    await _drain(chat, "hi")

    assert chat.last_prompt_token_count == 42


@pytest.mark.asyncio
async def test_flush_pending_text_releases_withheld_prefix() -> None:
    chat = ConversationChat(_ScriptedClient([_chunk("abc <thi")]))

    items = await _drain(chat, "hi")

    assert items[0].chunk.text == "abc "
    assert chat.flush_pending_text() == "<thi"
    assert chat.flush_pending_text() == ""


def test_build_payload_includes_tools_and_sampling() -> None:
    chat = ConversationChat(
        _ScriptedClient(),
        tools=[FunctionDeclaration(name="ls", description="List files", parameters={"type": "object"})],
        config=GenerationConfig(temperature=0.2, max_tokens=64),
    )

    payload = chat.build_payload("local", [Content.user("hi")], "prompt-1")

    assert payload["model"] == "local"
    assert payload["tools"][0]["function"]["name"] == "ls"
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 64
    assert "top_p" not in payload
    assert payload["stream_options"] == {"include_usage": True}


def test_history_mutators() -> None:
    chat = ConversationChat(_ScriptedClient(), history=[Content.user("a")])

    chat.add_history(Content.user("b"))
    assert [content.text for content in chat.history] == ["a", "b"]

    chat.set_history([Content.user("c")])
    assert [content.text for content in chat.history] == ["c"]

    chat.clear_history()
    assert chat.history == ()


@pytest.mark.asyncio
async def test_aclose_closes_client() -> None:
    client = _ScriptedClient()
    chat = ConversationChat(client)

    await chat.aclose()

    assert client.closed
