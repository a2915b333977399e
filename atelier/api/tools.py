"""Tool catalog and dispatcher for direct Anthropic API integration.

Provides:
- ToolDefinition: immutable name/description/schema triple
- ToolOk / ToolErr: result variant, serialized to a JSON string only
  at the boundary to the model
- ToolDispatcher: name -> executor lookup table; never raises

Tool families (file tools, WordPress tools) implement ToolExecutor and
are registered once at startup.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Definitions and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class ToolOk:
    payload: dict[str, Any]

    is_error = False

    def to_content(self) -> str:
        return json.dumps(self.payload, default=str)


@dataclass(frozen=True)
class ToolErr:
    """A tool failure, fed back to the model as data.

    ``meta`` carries extra fields such as the upstream status and body.
    """

    kind: str
    message: str
    meta: dict[str, Any] = field(default_factory=dict)

    is_error = True

    def to_content(self) -> str:
        return json.dumps({"error": self.message, **self.meta}, default=str)


ToolResult = Union[ToolOk, ToolErr]


class ToolExecutor(Protocol):
    """One family of tools sharing an implementation."""

    def definitions(self) -> list[ToolDefinition]: ...

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        *,
        notify_watcher: bool = False,
    ) -> ToolResult: ...


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Routes tool calls from the model to the executor that owns the name.

    The catalog is fixed once startup registration is done and is sent
    verbatim on every model round.
    """

    def __init__(self) -> None:
        self._executors: dict[str, ToolExecutor] = {}
        self._definitions: dict[str, ToolDefinition] = {}

    def register(self, executor: ToolExecutor) -> None:
        """Register every tool an executor defines.

        Raises ValueError on a duplicate tool name.
        """
        for definition in executor.definitions():
            if definition.name in self._executors:
                raise ValueError(f"Duplicate tool name: {definition.name}")
            self._executors[definition.name] = executor
            self._definitions[definition.name] = definition

    @property
    def tool_names(self) -> list[str]:
        return list(self._definitions)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [d.to_api_dict() for d in self._definitions.values()]

    async def dispatch(
        self,
        name: str,
        tool_input: dict[str, Any],
        *,
        notify_watcher: bool = False,
    ) -> ToolResult:
        """Execute a tool call, converting every failure into ToolErr."""
        executor = self._executors.get(name)
        if executor is None:
            logger.warning("Model requested unknown tool: %s", name)
            return ToolErr(kind="unknown_tool", message=f"Unknown tool: {name}")
        try:
            return await executor.execute(name, tool_input or {}, notify_watcher=notify_watcher)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return ToolErr(kind="tool_error", message=str(e) or type(e).__name__)

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        *,
        notify_watcher: bool = False,
    ) -> str:
        """Dispatch and serialize for the model's tool_result content."""
        result = await self.dispatch(name, tool_input, notify_watcher=notify_watcher)
        return result.to_content()
