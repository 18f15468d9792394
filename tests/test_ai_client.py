"""Tests for the streaming AI client and its retry behaviour."""

from __future__ import annotations

import logging
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

from sonaragent.ai.client import AIClient, ClientSettings, is_retryable_error
from sonaragent.ai.orchestration.types import StreamSignalType


_REQUEST = httpx.Request("POST", "https://api.perplexity.ai/chat/completions")


class _FakeStream:
    def __init__(self, chunks: list[Any], error: BaseException | None = None) -> None:
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    async def __aenter__(self) -> "_FakeStream":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration


class _FakeCompletions:
    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _FakeOpenAI:
    def __init__(self, outcomes: list[Any]) -> None:
        self.completions = _FakeCompletions(outcomes)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _settings(**overrides: Any) -> ClientSettings:
    values = dict(
        base_url="https://api.perplexity.ai",
        api_key="test-key",
        model="sonar-pro",
        max_retries=3,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    values.update(overrides)
    return ClientSettings(**values)


async def _collect(client: AIClient, payload: dict[str, Any]) -> list[Any]:
    return [signal async for signal in client.stream_chat(payload)]


def _connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=_REQUEST)


@pytest.mark.asyncio
async def test_stream_chat_yields_chunks_and_forces_streaming() -> None:
    fake = _FakeOpenAI([_FakeStream([{"id": "1"}, {"id": "2"}])])
    client = AIClient(_settings(), client=fake)

    signals = await _collect(client, {"model": "sonar", "messages": [{"role": "user", "content": "hi"}]})

    assert [signal.type for signal in signals] == [StreamSignalType.CHUNK, StreamSignalType.CHUNK]
    assert [signal.chunk["id"] for signal in signals] == ["1", "2"]
    assert fake.completions.calls[0]["stream"] is True
    assert fake.completions.calls[0]["model"] == "sonar"


@pytest.mark.asyncio
async def test_connection_error_before_first_chunk_is_retried() -> None:
    stream = _FakeStream([{"id": "ok"}])
    fake = _FakeOpenAI([_connection_error(), stream])
    client = AIClient(_settings(), client=fake)

    signals = await _collect(client, {"model": "sonar", "messages": []})

    assert [signal.type for signal in signals] == [StreamSignalType.RETRY, StreamSignalType.CHUNK]
    assert len(fake.completions.calls) == 2
    assert stream.closed


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately() -> None:
    fake = _FakeOpenAI([ValueError("bad payload")])
    client = AIClient(_settings(), client=fake)

    with pytest.raises(ValueError, match="bad payload"):
        await _collect(client, {"model": "sonar", "messages": []})

    assert len(fake.completions.calls) == 1


@pytest.mark.asyncio
async def test_no_retry_once_a_chunk_was_delivered() -> None:
    fake = _FakeOpenAI([_FakeStream([{"id": "first"}], error=_connection_error())])
    client = AIClient(_settings(), client=fake)
    received: list[Any] = []

    with pytest.raises(openai.APIConnectionError):
        async for signal in client.stream_chat({"model": "sonar", "messages": []}):
            received.append(signal)

    assert [signal.chunk for signal in received] == [{"id": "first"}]
    assert len(fake.completions.calls) == 1


@pytest.mark.asyncio
async def test_retries_are_bounded_by_max_retries() -> None:
    fake = _FakeOpenAI([_connection_error()])
    client = AIClient(_settings(max_retries=2), client=fake)
    received: list[Any] = []

    with pytest.raises(openai.APIConnectionError):
        async for signal in client.stream_chat({"model": "sonar", "messages": []}):
            received.append(signal)

    assert len(fake.completions.calls) == 2
    assert [signal.type for signal in received] == [StreamSignalType.RETRY]


@pytest.mark.parametrize(
    "error, expected",
    [
        (openai.APIConnectionError(request=_REQUEST), True),
        (openai.APITimeoutError(request=_REQUEST), True),
        (openai.RateLimitError("slow down", response=httpx.Response(429, request=_REQUEST), body=None), True),
        (openai.InternalServerError("boom", response=httpx.Response(503, request=_REQUEST), body=None), True),
        (openai.BadRequestError("bad", response=httpx.Response(400, request=_REQUEST), body=None), False),
        (httpx.ReadTimeout("timed out"), True),
        (ValueError("nope"), False),
    ],
)
def test_is_retryable_error(error: BaseException, expected: bool) -> None:
    assert is_retryable_error(error) is expected


@pytest.mark.asyncio
async def test_debug_logging_dumps_prompt_payload(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="sonaragent.ai.client")
    fake = _FakeOpenAI([_FakeStream([])])
    client = AIClient(_settings(debug_logging=True), client=fake)

    await _collect(client, {"model": "sonar", "messages": [{"role": "user", "content": "secret question"}]})

    assert "AI prompt payload" in caplog.text
    assert "secret question" in caplog.text


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    fake = _FakeOpenAI([_FakeStream([])])
    client = AIClient(_settings(), client=fake)

    await client.aclose()

    assert fake.closed
    assert client.provider.kind.value == "perplexity"
