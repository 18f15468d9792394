"""Name-indexed registry of the tools available to a session."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from ..orchestration.types import FunctionDeclaration
from .base import Tool

__all__ = ["ToolRegistry", "ToolRegistrationError"]

LOGGER = logging.getLogger(__name__)


class ToolRegistrationError(ValueError):
    """Raised when a tool is registered under a name already taken."""


class ToolRegistry:
    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool, *, replace: bool = False) -> None:
        if not tool.name:
            raise ToolRegistrationError("Tools must declare a name")
        if tool.name in self._tools and not replace:
            raise ToolRegistrationError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        LOGGER.debug("Registered tool %s", tool.name)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def function_declarations(self) -> list[FunctionDeclaration]:
        return [tool.declaration for tool in self._tools.values()]
