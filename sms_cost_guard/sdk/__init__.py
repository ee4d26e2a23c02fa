"""
SDK for SMS Cost Guard.

Provides the conversation service boundary the engine fetches from.
"""

from .conversation_service import (
    ConversationService,
    ConversationServiceConfigError,
    ConversationServiceError,
    RateLimitError,
    StaticConversationService,
    load_conversations,
)

__all__ = [
    "ConversationService",
    "ConversationServiceConfigError",
    "ConversationServiceError",
    "RateLimitError",
    "StaticConversationService",
    "load_conversations",
]
