"""Pydantic DTOs for the conversation store.

Serialized with camelCase aliases (``model_dump(by_alias=True)``) since
that is the shape the editor client consumes.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Turn(_CamelModel):
    """One persisted message in a conversation."""

    role: Role
    content: str
    created_at: int  # epoch ms


class Conversation(_CamelModel):
    id: str
    messages: list[Turn] = []
    created_at: int
    updated_at: int


class ConversationSummary(_CamelModel):
    id: str
    created_at: int
    updated_at: int
    message_count: int
    preview: str


class StoreStats(_CamelModel):
    conversations: int
    messages: int
    db_size: int
