"""Tool registry: name-based lookup and execution of LangChain tools.

Builtin tools are Python functions decorated with ``@register`` and
``@tool``; ``@register`` only adds them to the catalogue. Engines get an
explicit ``ToolRegistry`` holding the tools enabled for them, so runs never
share mutable process-wide state.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from aigent.errors import ToolExecutionError, ToolNotFoundError

if TYPE_CHECKING:
    from langchain_core.tools import BaseTool

logger = logging.getLogger(__name__)

_catalogue: dict[str, BaseTool] = {}


def register(tool: BaseTool) -> BaseTool:
    """Add a BaseTool to the builtin catalogue by its ``.name``.

    Can be used as a decorator (applied *outside* ``@tool``)::

        @register
        @tool
        def my_tool(query: str) -> str:
            ...
    """
    _catalogue[tool.name] = tool
    return tool


def builtin_tools() -> list[str]:
    """Return all builtin tool names."""
    return list(_catalogue.keys())


class ToolInfo(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]


class ToolRegistry:
    """Thread-safe set of tools available to an engine."""

    def __init__(self, tools: list[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._lock = threading.Lock()
        for t in tools or []:
            self.register(t)

    def register(self, tool: BaseTool) -> BaseTool:
        with self._lock:
            if tool.name in self._tools:
                raise ValueError(f"Tool '{tool.name}' is already registered")
            self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> BaseTool | None:
        with self._lock:
            return self._tools.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._tools)

    def list_tools(self) -> list[ToolInfo]:
        with self._lock:
            tools = list(self._tools.values())
        return [
            ToolInfo(name=t.name, description=t.description, parameters=t.args)
            for t in tools
        ]

    async def execute(self, name: str, tool_input: str) -> str:
        """Run a tool with string input.

        Input that decodes to a JSON object is passed as the tool's argument
        mapping; anything else is passed through as the single string argument.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(
                f"Tool '{name}' not found. Available: {self.names()}"
            )

        payload: str | dict = tool_input
        try:
            decoded = json.loads(tool_input)
        except (json.JSONDecodeError, TypeError):
            decoded = None
        if isinstance(decoded, dict):
            payload = decoded

        logger.info(f"Executing tool '{name}'")
        try:
            result = await tool.ainvoke(payload)
        except Exception as e:
            raise ToolExecutionError(f"Tool '{name}' failed: {e}") from e
        return str(result)


def resolve_tools(names: list[str]) -> list[BaseTool]:
    """Look up builtin tool names and return the corresponding ``BaseTool`` objects.

    Raises ``ValueError`` if any name is not in the catalogue.
    """
    missing = [n for n in names if n not in _catalogue]
    if missing:
        raise ValueError(
            f"Unknown tool(s): {missing}. Available: {list(_catalogue.keys())}"
        )
    return [_catalogue[n] for n in names]


def default_registry(names: list[str]) -> ToolRegistry:
    """Build a registry holding the named builtin tools."""
    return ToolRegistry(resolve_tools(names))


# Auto-import builtins so the catalogue is populated on first access.
import aigent.tools.builtins as _builtins  # noqa: E402, F401
import aigent.tools.search as _search  # noqa: E402, F401
