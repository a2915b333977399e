"""Data contract between the AgentRunner and its consumers (REST, SSE).

StreamEvent is what the incremental mode yields; its ``to_dict()`` is the
exact JSON shape written in each ``data:`` frame.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class StreamEventType(StrEnum):
    CONVERSATION_ID = "conversation_id"
    CONTENT = "content"
    TOOL_USE = "tool_use"
    TOOL_EXECUTING = "tool_executing"
    TOOL_RESULT = "tool_result"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({StreamEventType.DONE, StreamEventType.ERROR})


@dataclass
class StreamEvent:
    """One client-facing event from an incremental agent turn."""

    type: StreamEventType
    conversation_id: str = ""
    content: str = ""
    tool_name: str = ""
    tool_id: str = ""
    result: str = ""
    is_error: bool = False
    error: str = ""
    kind: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        t = self.type
        if t == StreamEventType.CONVERSATION_ID:
            return {"type": t.value, "conversationId": self.conversation_id}
        if t == StreamEventType.CONTENT:
            return {"type": t.value, "content": self.content}
        if t in (StreamEventType.TOOL_USE, StreamEventType.TOOL_EXECUTING):
            return {"type": t.value, "toolName": self.tool_name, "toolId": self.tool_id}
        if t == StreamEventType.TOOL_RESULT:
            return {
                "type": t.value,
                "toolName": self.tool_name,
                "toolId": self.tool_id,
                "isError": self.is_error,
                "result": self.result,
            }
        if t == StreamEventType.DONE:
            return {"type": t.value, "done": True}
        return {"type": t.value, "error": self.error, "kind": self.kind}

    @classmethod
    def failure(cls, error: str, kind: str) -> StreamEvent:
        return cls(type=StreamEventType.ERROR, error=error, kind=kind)


@dataclass
class TurnResult:
    """Outcome of a blocking agent turn."""

    conversation_id: str
    message: str
    tools_used: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"conversationId": self.conversation_id, "message": self.message}
        if self.tools_used:
            data["toolsUsed"] = self.tools_used
        return data
