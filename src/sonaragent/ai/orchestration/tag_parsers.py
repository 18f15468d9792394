"""Incremental strippers for markup embedded in streamed model text.

Each stripper is a small automaton over four phases:

* ``OUTSIDE``: plain text, emitted as visible output.
* ``PARTIAL_OPEN``: the text seen so far ends with a prefix of the open tag.
* ``INSIDE``: between the open and close tags.
* ``PARTIAL_CLOSE``: inside, and the text ends with a prefix of the close tag.

In the partial phases ``state.buffer`` holds the withheld prefix, so its
length is the number of tag characters matched. When the next character
does not continue the tag, the longest suffix of ``buffer + char`` that is
still a tag prefix stays withheld and everything before it is released.
The output is therefore independent of where the stream was split.

The functions are pure: ``strip(chunk, state)`` returns the visible text and
a new state and never mutates the state it was given.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable

from .tool_call_parser import TextToolCall, parse_tool_call_payload

__all__ = [
    "ParserPhase",
    "TagParserState",
    "TagStripResult",
    "TagStripper",
    "THINK_TAG_PARSER",
    "TOOL_CALL_TAG_PARSER",
    "strip_think_tags",
    "strip_tool_call_tags",
]

LOGGER = logging.getLogger(__name__)


class ParserPhase(enum.Enum):
    OUTSIDE = "outside"
    PARTIAL_OPEN = "partial_open"
    INSIDE = "inside"
    PARTIAL_CLOSE = "partial_close"


@dataclass(slots=True, frozen=True)
class TagParserState:
    """Immutable stripper state threaded between chunks.

    Attributes:
        phase: Current automaton phase.
        buffer: Withheld characters that may be the start of a tag.
        captured: Text captured inside the tag so far (capturing strippers only).
    """

    phase: ParserPhase = ParserPhase.OUTSIDE
    buffer: str = ""
    captured: str = ""

    @property
    def inside_tag(self) -> bool:
        return self.phase in (ParserPhase.INSIDE, ParserPhase.PARTIAL_CLOSE)

    @property
    def matched(self) -> int:
        return len(self.buffer)


@dataclass(slots=True, frozen=True)
class TagStripResult:
    """Output of one strip step.

    ``extracted`` holds the parsed payloads of blocks closed during the step.
    """

    visible: str
    state: TagParserState
    extracted: tuple[Any, ...] = ()


def _longest_tag_prefix_suffix(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if tag.startswith(text[-size:]):
            return size
    return 0


class TagStripper:
    """Strip ``open_tag ... close_tag`` regions from a stream of text chunks.

    With ``capture`` enabled the text between the tags is collected, trimmed,
    passed to ``payload_parser`` and handed out through
    :attr:`TagStripResult.extracted`. Payloads the parser rejects (returns
    ``None`` for) are dropped. Without ``capture`` the inner text is
    discarded as it arrives.
    """

    def __init__(
        self,
        open_tag: str,
        close_tag: str,
        *,
        capture: bool = False,
        payload_parser: Callable[[str], Any] | None = None,
    ) -> None:
        if not open_tag or not close_tag:
            raise ValueError("open_tag and close_tag must be non-empty")
        self.open_tag = open_tag
        self.close_tag = close_tag
        self.capture = capture
        self._payload_parser = payload_parser

    def strip(self, chunk: str, state: TagParserState | None = None) -> TagStripResult:
        """Consume ``chunk`` and return the visible text plus the next state."""

        state = state or TagParserState()
        phase = state.phase
        buffer = state.buffer
        captured: list[str] = [state.captured] if state.captured else []
        visible: list[str] = []
        extracted: list[Any] = []

        for char in chunk:
            candidate = buffer + char
            if phase in (ParserPhase.OUTSIDE, ParserPhase.PARTIAL_OPEN):
                if candidate == self.open_tag:
                    phase, buffer = ParserPhase.INSIDE, ""
                    continue
                keep = _longest_tag_prefix_suffix(candidate, self.open_tag)
                released = candidate[: len(candidate) - keep]
                if released:
                    visible.append(released)
                buffer = candidate[len(candidate) - keep :]
                phase = ParserPhase.PARTIAL_OPEN if keep else ParserPhase.OUTSIDE
            else:
                if candidate == self.close_tag:
                    self._close("".join(captured), extracted)
                    captured = []
                    phase, buffer = ParserPhase.OUTSIDE, ""
                    continue
                keep = _longest_tag_prefix_suffix(candidate, self.close_tag)
                released = candidate[: len(candidate) - keep]
                if released and self.capture:
                    captured.append(released)
                buffer = candidate[len(candidate) - keep :]
                phase = ParserPhase.PARTIAL_CLOSE if keep else ParserPhase.INSIDE

        new_state = TagParserState(
            phase=phase,
            buffer=buffer,
            captured="".join(captured) if self.capture else "",
        )
        return TagStripResult(visible="".join(visible), state=new_state, extracted=tuple(extracted))

    def flush(self, state: TagParserState | None = None) -> TagStripResult:
        """End the stream: release withheld outside text, abandon anything inside a tag."""

        state = state or TagParserState()
        if state.inside_tag:
            if self.capture and (state.captured or state.buffer):
                LOGGER.debug(
                    "Abandoning unterminated %s block (%d chars)",
                    self.open_tag,
                    len(state.captured) + len(state.buffer),
                )
            return TagStripResult(visible="", state=TagParserState())
        return TagStripResult(visible=state.buffer, state=TagParserState())

    def _close(self, payload: str, extracted: list[Any]) -> None:
        if not self.capture:
            return
        payload = payload.strip()
        if not payload:
            return
        if self._payload_parser is None:
            extracted.append(payload)
            return
        parsed = self._payload_parser(payload)
        if parsed is None:
            LOGGER.debug("Dropping unparseable %s payload", self.open_tag)
            return
        extracted.append(parsed)


THINK_TAG_PARSER = TagStripper("<think>", "</think>")
TOOL_CALL_TAG_PARSER = TagStripper(
    "<tool_call>",
    "</tool_call>",
    capture=True,
    payload_parser=parse_tool_call_payload,
)


def strip_think_tags(chunk: str, state: TagParserState | None = None) -> TagStripResult:
    """Remove ``<think>`` regions from ``chunk``; their content is never surfaced."""
    return THINK_TAG_PARSER.strip(chunk, state)


def strip_tool_call_tags(chunk: str, state: TagParserState | None = None) -> TagStripResult:
    """Remove ``<tool_call>`` regions from ``chunk``.

    ``extracted`` holds a :class:`TextToolCall` for every block closed in this
    chunk whose payload parsed.
    """
    result = TOOL_CALL_TAG_PARSER.strip(chunk, state)
    calls = tuple(item for item in result.extracted if isinstance(item, TextToolCall))
    return TagStripResult(visible=result.visible, state=result.state, extracted=calls)
