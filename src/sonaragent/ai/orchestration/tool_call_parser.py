"""Parsing utilities for tool calls embedded in model text.

Providers without native tool calling are instructed to answer with
``<tool_call>...</tool_call>`` blocks. The tag parser captures the block
payload; this module turns that payload into a name and an argument mapping.
Two payload shapes are understood:

* JSON: ``{"name": "read_file", "arguments": {"path": "a.py"}}`` (the key
  ``parameters`` is accepted in place of ``arguments``).
* XML-like: ``<function=read_file><parameter=path>a.py</parameter></function>``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

__all__ = [
    "TextToolCall",
    "FUNCTION_TAG_RE",
    "PARAMETER_TAG_RE",
    "parse_tool_call_payload",
    "parse_json_tool_call",
    "parse_xml_tool_call",
    "coerce_parameter_value",
    "format_tool_call_text",
    "try_parse_json_block",
]

LOGGER = logging.getLogger(__name__)

FUNCTION_TAG_RE = re.compile(r"<function[=\s]+\"?([^\">\s]+)\"?>")
PARAMETER_TAG_RE = re.compile(r"<parameter[=\s]+\"?([^\">\s]+)\"?>([^<]*)</parameter>")
_NUMBER_RE = re.compile(r"-?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


@dataclass(slots=True, frozen=True)
class TextToolCall:
    """A tool call recovered from model text."""

    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


def parse_tool_call_payload(payload: str) -> TextToolCall | None:
    """Parse the inner text of a ``<tool_call>`` block.

    Returns ``None`` when the payload matches neither supported form.
    """
    text = (payload or "").strip()
    if not text:
        return None
    if text.startswith("{"):
        return parse_json_tool_call(text)
    if text.startswith("<function"):
        return parse_xml_tool_call(text)
    LOGGER.debug("Ignoring tool call payload in unknown format: %.80s", text)
    return None


def parse_json_tool_call(text: str) -> TextToolCall | None:
    parsed = try_parse_json_block(text)
    if parsed is None:
        LOGGER.debug("Dropping malformed JSON tool call payload: %.80s", text)
        return None
    name = parsed.get("name")
    if not isinstance(name, str) or not name:
        return None
    raw_args = parsed.get("arguments")
    if raw_args is None:
        raw_args = parsed.get("parameters")
    if isinstance(raw_args, str):
        raw_args = try_parse_json_block(raw_args)
    arguments = dict(raw_args) if isinstance(raw_args, Mapping) else {}
    return TextToolCall(name=name, arguments=arguments)


def parse_xml_tool_call(text: str) -> TextToolCall | None:
    match = FUNCTION_TAG_RE.search(text)
    if match is None:
        LOGGER.debug("Dropping XML tool call payload without a function tag: %.80s", text)
        return None
    arguments = {
        param.group(1): coerce_parameter_value(param.group(2))
        for param in PARAMETER_TAG_RE.finditer(text)
    }
    return TextToolCall(name=match.group(1), arguments=arguments)


def coerce_parameter_value(raw: str) -> Any:
    """Convert an XML parameter body into the closest JSON value."""
    value = raw.strip()
    if value.startswith(("[", "{")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if value and _NUMBER_RE.fullmatch(value):
        number = float(value)
        if number.is_integer() and "." not in value and "e" not in lowered:
            return int(value)
        return number
    return value


def format_tool_call_text(name: str, arguments: Any) -> str:
    """Render a call in the JSON tag form understood by :func:`parse_tool_call_payload`."""
    if isinstance(arguments, str):
        decoded = try_parse_json_block(arguments)
        arguments = decoded if decoded is not None else {}
    body = json.dumps({"name": name, "arguments": arguments or {}}, ensure_ascii=False)
    return f"<tool_call>\n{body}\n</tool_call>"


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(result, dict):
        return result
    return None
