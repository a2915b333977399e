"""Storage module -- durable conversation history.

Public API: Database, ConversationStore and the schema types.
"""

from atelier.storage.conversations import ConversationStore, new_conversation_id
from atelier.storage.database import Database
from atelier.storage.schemas import (
    Conversation,
    ConversationSummary,
    Role,
    StoreStats,
    Turn,
)

__all__ = [
    "Conversation",
    "ConversationStore",
    "ConversationSummary",
    "Database",
    "Role",
    "StoreStats",
    "Turn",
    "new_conversation_id",
]
