"""Workspace file tools: read_file, write_file, list_files, search_files, delete_file.

Thin adapters from model tool calls onto Workspace.  Access-denied and
OS errors come back as ToolErr so the model can correct itself.
"""

from __future__ import annotations

import logging
from typing import Any

from atelier.api.tools import ToolDefinition, ToolErr, ToolOk, ToolResult
from atelier.errors import AccessDeniedError
from atelier.workspace import Workspace

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_PATH_PROPERTY = {
    "type": "string",
    "description": "The relative path to the file from the workspace root",
}

FILE_TOOLS: list[ToolDefinition] = [
    ToolDefinition(
        name="read_file",
        description=(
            "Read the contents of a file in the workspace. Use this to examine code, "
            "configuration files, or any text-based files."
        ),
        input_schema={
            "type": "object",
            "properties": {"path": _PATH_PROPERTY},
            "required": ["path"],
        },
    ),
    ToolDefinition(
        name="write_file",
        description=(
            "Write or update a file in the workspace. Use this to create new files "
            "or modify existing ones."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": _PATH_PROPERTY,
                "content": {"type": "string", "description": "The content to write to the file"},
            },
            "required": ["path", "content"],
        },
    ),
    ToolDefinition(
        name="list_files",
        description=(
            "List files and directories in a given path. Use this to explore the "
            "project structure."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": 'The relative path to the directory from the workspace root (use "." for root)',
                },
            },
            "required": ["path"],
        },
    ),
    ToolDefinition(
        name="search_files",
        description=(
            "Search for files containing specific text or patterns. Use this to find "
            "code, functions, or specific content."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "The text or pattern to search for"},
                "path": {"type": "string", "description": "Optional: limit search to a specific directory"},
            },
            "required": ["query"],
        },
    ),
    ToolDefinition(
        name="delete_file",
        description=(
            "Delete a file or directory from the workspace. Use this to remove files "
            "that are no longer needed. Be careful - this action cannot be undone."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "The relative path to the file or directory from the workspace root",
                },
            },
            "required": ["path"],
        },
    ),
]


class FileToolExecutor:
    """Executes file tools against a Workspace."""

    def __init__(self, workspace: Workspace) -> None:
        self._workspace = workspace
        self._handlers = {
            "read_file": self._read_file,
            "write_file": self._write_file,
            "list_files": self._list_files,
            "search_files": self._search_files,
            "delete_file": self._delete_file,
        }

    def definitions(self) -> list[ToolDefinition]:
        return list(FILE_TOOLS)

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        *,
        notify_watcher: bool = False,
    ) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolErr(kind="unknown_tool", message=f"Unknown file tool: {name}")
        try:
            return await handler(tool_input, notify_watcher)
        except AccessDeniedError as e:
            return ToolErr(kind=e.kind, message=e.message)
        except KeyError as e:
            return ToolErr(kind="invalid_input", message=f"Missing required argument: {e.args[0]}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _read_file(self, tool_input: dict[str, Any], notify: bool) -> ToolResult:
        path = tool_input["path"]
        try:
            content = await self._workspace.read(path)
        except (OSError, UnicodeDecodeError) as e:
            return ToolErr(kind="io_error", message=str(e))
        return ToolOk({"content": content, "path": path})

    async def _write_file(self, tool_input: dict[str, Any], notify: bool) -> ToolResult:
        path = tool_input["path"]
        content = tool_input["content"]
        try:
            await self._workspace.write(path, content, notify=notify)
        except OSError as e:
            logger.error("write_file failed for %s: %s", path, e)
            return ToolErr(kind="io_error", message=f"Failed to write file: {e}")
        return ToolOk({"success": True, "path": path})

    async def _list_files(self, tool_input: dict[str, Any], notify: bool) -> ToolResult:
        path = tool_input.get("path") or "."
        try:
            files = await self._workspace.list(path)
        except OSError as e:
            return ToolErr(kind="io_error", message=str(e))
        return ToolOk({"files": files, "path": path})

    async def _search_files(self, tool_input: dict[str, Any], notify: bool) -> ToolResult:
        query = tool_input["query"]
        try:
            results = await self._workspace.search(query, tool_input.get("path"))
        except OSError as e:
            return ToolErr(kind="io_error", message=str(e))
        return ToolOk({"results": results, "query": query})

    async def _delete_file(self, tool_input: dict[str, Any], notify: bool) -> ToolResult:
        path = tool_input["path"]
        try:
            await self._workspace.delete(path, notify=notify)
        except OSError as e:
            logger.error("delete_file failed for %s: %s", path, e)
            return ToolErr(kind="io_error", message=f"Failed to delete file: {e}")
        return ToolOk({"success": True, "path": path})
