"""
Conversation Module

Persistent per-phone sessions: state, collected context, message history
and the human-intervention pause.
"""

from appointment_bot.core.conversation.store import (
    ConversationStore,
    Conversation,
    StoredMessage,
    HUMAN_INTERVENTION,
    get_conversation_store,
)

__all__ = [
    "ConversationStore",
    "Conversation",
    "StoredMessage",
    "HUMAN_INTERVENTION",
    "get_conversation_store",
]
