"""Provider-specific client construction and request shaping.

The provider kind is resolved once from the configured base URL. Each kind
maps to a capability object exposing ``build_headers``, ``build_client`` and
``build_request``; nothing downstream probes the provider type again.
"""

from __future__ import annotations

import enum
import json
import logging
import platform
import sys
from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence, runtime_checkable
from urllib.parse import urlparse

from openai import AsyncOpenAI

from .. import __version__
from .errors import ProviderContentError
from .orchestration.converter import message_text
from .orchestration.tool_call_parser import format_tool_call_text

if TYPE_CHECKING:
    from .client import ClientSettings

__all__ = [
    "ProviderKind",
    "Provider",
    "OpenAICompatibleProvider",
    "PerplexityProvider",
    "DeepSeekProvider",
    "OpenRouterProvider",
    "PERPLEXITY_BASE_URL",
    "resolve_provider_kind",
    "create_provider",
    "build_tool_instructions",
]

LOGGER = logging.getLogger(__name__)

PERPLEXITY_BASE_URL = "https://api.perplexity.ai"
_DROPPED_PERPLEXITY_PARAMS: tuple[str, ...] = (
    "tools",
    "tool_choice",
    "parallel_tool_calls",
    "logprobs",
    "top_logprobs",
    "n",
    "seed",
    "stream_options",
)


class ProviderKind(str, enum.Enum):
    DEFAULT = "default"
    PERPLEXITY = "perplexity"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"


def resolve_provider_kind(base_url: str | None) -> ProviderKind:
    url = (base_url or "").strip().lower()
    if "perplexity" in url:
        return ProviderKind.PERPLEXITY
    hostname = urlparse(url).hostname or ""
    if hostname == "api.deepseek.com":
        return ProviderKind.DEEPSEEK
    if "openrouter.ai" in url:
        return ProviderKind.OPENROUTER
    return ProviderKind.DEFAULT


@runtime_checkable
class Provider(Protocol):
    """Capabilities that differ between OpenAI-compatible backends."""

    kind: ProviderKind

    def build_headers(self) -> dict[str, str]:
        ...

    def build_client(self) -> AsyncOpenAI:
        ...

    def build_request(self, request: Mapping[str, Any], prompt_id: str) -> dict[str, Any]:
        ...


def _platform_tag() -> str:
    return f"{sys.platform}; {platform.machine() or 'unknown'}"


class OpenAICompatibleProvider:
    """Plain OpenAI-compatible backend with native tool calling."""

    kind = ProviderKind.DEFAULT
    user_agent_product = "SonarAgent"
    default_base_url: str | None = None

    def __init__(self, settings: ClientSettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def build_headers(self) -> dict[str, str]:
        headers = {"User-Agent": f"{self.user_agent_product}/{__version__} ({_platform_tag()})"}
        if self._settings.default_headers:
            headers.update(self._settings.default_headers)
        return headers

    def build_client(self) -> AsyncOpenAI:
        # Retries are driven by AIClient so that each one can be surfaced.
        return AsyncOpenAI(
            api_key=self._settings.api_key,
            base_url=self._settings.base_url or self.default_base_url,
            organization=self._settings.organization,
            timeout=self._settings.request_timeout,
            max_retries=0,
            default_headers=self.build_headers(),
        )

    def build_request(self, request: Mapping[str, Any], prompt_id: str) -> dict[str, Any]:
        payload = dict(request)
        if self._settings.metadata:
            payload["metadata"] = {**self._settings.metadata, **dict(payload.get("metadata") or {})}
        return payload


class PerplexityProvider(OpenAICompatibleProvider):
    """Perplexity Sonar: no native tool calling, strict role alternation.

    Tools are described in the system prompt and the model answers with
    ``<tool_call>`` blocks. Prior tool traffic in the history is rewritten
    into plain user/assistant text in the same convention.
    """

    kind = ProviderKind.PERPLEXITY
    user_agent_product = "PerplexityCLI"
    default_base_url = PERPLEXITY_BASE_URL

    def build_request(self, request: Mapping[str, Any], prompt_id: str) -> dict[str, Any]:
        payload = super().build_request(request, prompt_id)
        messages = payload.get("messages") or []
        tools = payload.get("tools") or []
        for key in _DROPPED_PERPLEXITY_PARAMS:
            payload.pop(key, None)
        payload.pop("metadata", None)
        if self._settings.search_mode:
            payload["search_mode"] = self._settings.search_mode
        if self._settings.search_type:
            options = dict(payload.get("web_search_options") or {})
            options["search_type"] = self._settings.search_type
            payload["web_search_options"] = options
        if not messages:
            return payload

        rewritten = [self._rewrite_message(message) for message in messages]
        rewritten = [message for message in rewritten if message.get("content", "").strip()]
        instructions = build_tool_instructions(tools)
        if instructions:
            if rewritten and rewritten[0].get("role") == "system":
                rewritten[0] = {**rewritten[0], "content": rewritten[0]["content"] + instructions}
            else:
                rewritten.insert(0, {"role": "system", "content": instructions.strip()})
        payload["messages"] = _merge_same_role(rewritten)
        return payload

    def _rewrite_message(self, message: Mapping[str, Any]) -> dict[str, Any]:
        role = message.get("role")
        if role == "tool":
            body = message.get("content")
            text = body if isinstance(body, str) else json.dumps(body, ensure_ascii=False)
            return {
                "role": "user",
                "content": f"[Tool Result for {message.get('tool_call_id') or 'unknown'}]:\n{text}",
            }
        if role == "assistant" and message.get("tool_calls"):
            rendered = "\n".join(
                format_tool_call_text(call["function"]["name"], call["function"].get("arguments"))
                for call in message["tool_calls"]
                if call.get("type", "function") == "function" and call.get("function")
            )
            content = message_text(message.get("content"))
            return {"role": "assistant", "content": "\n".join(piece for piece in (content, rendered) if piece)}
        updated = {key: value for key, value in message.items() if key != "reasoning_content"}
        content = updated.get("content")
        if content is None:
            updated["content"] = ""
        elif not isinstance(content, str):
            updated["content"] = "\n".join(
                str(item.get("text") or "")
                for item in content
                if isinstance(item, Mapping) and item.get("type") == "text" and item.get("text")
            )
        return updated


class DeepSeekProvider(OpenAICompatibleProvider):
    """DeepSeek accepts text content only; array content is flattened."""

    kind = ProviderKind.DEEPSEEK

    def build_request(self, request: Mapping[str, Any], prompt_id: str) -> dict[str, Any]:
        payload = super().build_request(request, prompt_id)
        payload["messages"] = [self._flatten(message) for message in payload.get("messages") or []]
        return payload

    def _flatten(self, message: Mapping[str, Any]) -> dict[str, Any]:
        content = message.get("content")
        if content is None or isinstance(content, str):
            return dict(message)
        pieces: list[str] = []
        for item in content:
            item_type = item.get("type") if isinstance(item, Mapping) else type(item).__name__
            if item_type != "text":
                raise ProviderContentError(
                    f"DeepSeek provider only supports text content. Found non-text part of type "
                    f"'{item_type}' in message with role '{message.get('role')}'."
                )
            pieces.append(str(item.get("text") or ""))
        return {**message, "content": "\n".join(pieces)}


class OpenRouterProvider(OpenAICompatibleProvider):
    kind = ProviderKind.OPENROUTER

    def build_headers(self) -> dict[str, str]:
        headers = {
            "HTTP-Referer": "https://github.com/sonaragent/sonaragent",
            "X-Title": "SonarAgent",
        }
        headers.update(super().build_headers())
        return headers


_PROVIDERS: Mapping[ProviderKind, type[OpenAICompatibleProvider]] = {
    ProviderKind.DEFAULT: OpenAICompatibleProvider,
    ProviderKind.PERPLEXITY: PerplexityProvider,
    ProviderKind.DEEPSEEK: DeepSeekProvider,
    ProviderKind.OPENROUTER: OpenRouterProvider,
}


def create_provider(settings: ClientSettings, kind: ProviderKind | None = None) -> OpenAICompatibleProvider:
    resolved = kind or resolve_provider_kind(settings.base_url)
    LOGGER.debug("Using %s provider for %s", resolved.value, settings.base_url)
    return _PROVIDERS[resolved](settings)


def build_tool_instructions(tools: Sequence[Mapping[str, Any]]) -> str:
    """Describe ``tools`` in prose for models without native tool calling."""

    descriptions: list[str] = []
    for tool in tools or ():
        function = tool.get("function") if tool.get("type", "function") == "function" else None
        if not function:
            continue
        parameters = json.dumps(function.get("parameters") or {}, indent=2)
        descriptions.append(
            f"### {function.get('name')}\n{function.get('description') or 'No description'}\nParameters: {parameters}"
        )
    if not descriptions:
        return ""
    listing = "\n\n".join(descriptions)
    return (
        "\n\n## Tool Calling Instructions\n"
        "You have access to the following tools. To call a tool, output your tool call in this exact format:\n\n"
        "<tool_call>\n"
        '{"name": "tool_name", "arguments": {"param1": "value1", "param2": "value2"}}\n'
        "</tool_call>\n\n"
        "IMPORTANT:\n"
        "- Output the tool call exactly as shown, with valid JSON inside the tags\n"
        "- Wait for the tool result before continuing\n"
        "- You can call multiple tools in sequence\n"
        "- After seeing a tool result, use it to continue your response\n\n"
        f"## Available Tools\n\n{listing}\n"
    )


def _merge_same_role(messages: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    last_role: str | None = None
    for message in messages:
        role = message.get("role")
        if role == "system":
            merged.append(dict(message))
            last_role = None
            continue
        if role == last_role and merged:
            previous = merged[-1]
            previous["content"] = f"{message_text(previous.get('content'))}\n{message_text(message.get('content'))}"
            continue
        merged.append(dict(message))
        last_role = role
    return merged
