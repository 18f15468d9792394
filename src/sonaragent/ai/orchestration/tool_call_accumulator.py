"""Reassemble native streaming tool calls from indexed argument deltas."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

__all__ = ["AccumulatorEntry", "CompletedToolCall", "StreamingToolCallAccumulator"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AccumulatorEntry:
    """Partial state for the tool call streamed at one index."""

    id: str | None = None
    name: str | None = None
    arguments: list[str] = field(default_factory=list)

    @property
    def buffer(self) -> str:
        return "".join(self.arguments)


@dataclass(slots=True, frozen=True)
class CompletedToolCall:
    index: int
    id: str | None
    name: str | None
    args: dict[str, Any]


class StreamingToolCallAccumulator:
    """Collect tool-call deltas keyed by their stream index.

    Providers stream a call's id and name once (usually on the first delta)
    and its JSON arguments as string fragments. Several calls may be open at
    once, each under its own index.
    """

    def __init__(self) -> None:
        self._entries: dict[int, AccumulatorEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add_chunk(
        self,
        index: int,
        delta: str | None,
        id: str | None = None,
        name: str | None = None,
    ) -> None:
        entry = self._entries.get(index)
        if entry is None:
            entry = self._entries[index] = AccumulatorEntry()
        if id and not entry.id:
            entry.id = id
        if name and not entry.name:
            entry.name = name
        if delta:
            entry.arguments.append(delta)

    def get_completed_tool_calls(self) -> list[CompletedToolCall]:
        """Decode every buffered call. Only meaningful after the stream finished.

        Arguments that are empty, malformed or not a JSON object decode to ``{}``.
        """

        completed: list[CompletedToolCall] = []
        for index in sorted(self._entries):
            entry = self._entries[index]
            completed.append(
                CompletedToolCall(index=index, id=entry.id, name=entry.name, args=_decode_arguments(entry))
            )
        return completed

    def reset(self) -> None:
        self._entries.clear()


def _decode_arguments(entry: AccumulatorEntry) -> dict[str, Any]:
    raw = entry.buffer.strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.debug("Tool call %s streamed malformed arguments: %.120s", entry.name, raw)
        return {}
    if not isinstance(parsed, dict):
        return {}
    return parsed
