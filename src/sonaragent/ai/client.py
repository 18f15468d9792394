"""Async streaming client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Mapping

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .orchestration.types import StreamSignal
from .providers import Provider, create_provider

__all__ = ["ClientSettings", "AIClient", "is_retryable_error"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    search_mode: str | None = None
    search_type: str | None = None
    debug_logging: bool = False


def is_retryable_error(error: BaseException) -> bool:
    """True for rate limits, connection failures, timeouts and 5xx responses."""
    if isinstance(error, (RateLimitError, APIConnectionError, APITimeoutError, httpx.TimeoutException)):
        return True
    if isinstance(error, APIStatusError):
        return error.status_code >= 500
    return False


class AIClient:
    """Open streamed completions and retry them until the first chunk arrives.

    Each retry is announced to the consumer with a ``retry`` stream signal so
    that partially rendered output can be discarded. Once a chunk has been
    delivered, failures propagate unchanged.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        provider: Provider | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._provider = provider or create_provider(settings)
        self._client = client or self._provider.build_client()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def provider(self) -> Provider:
        return self._provider

    async def stream_chat(self, payload: Mapping[str, Any]) -> AsyncIterator[StreamSignal]:
        """Stream raw completion chunks for an already built request payload."""

        request = dict(payload)
        request["stream"] = True
        LOGGER.debug(
            "Starting streamed chat completion via %s (%s) with %s message(s)",
            request.get("model", self._settings.model),
            self._provider.kind.value,
            len(request.get("messages") or ()),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(request)

        started = False

        def _should_retry(error: BaseException) -> bool:
            return not started and is_retryable_error(error)

        async for attempt in self._retrying(_should_retry):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    LOGGER.info("Retrying chat completion (attempt %s)", attempt.retry_state.attempt_number)
                    yield StreamSignal.retry()
                stream = await self._client.chat.completions.create(**request)
                async with stream:
                    async for chunk in stream:
                        started = True
                        yield StreamSignal.of(chunk)

    def _retrying(self, predicate) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(predicate),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
