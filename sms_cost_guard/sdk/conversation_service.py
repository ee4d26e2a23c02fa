"""
Conversation service boundary.

The chat provider's HTTP client lives outside this package; the engine
only depends on the small async protocol below.
"""

import json
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from ..storage.models import Conversation, FullConversation


class ConversationServiceError(Exception):
    """A full-conversation fetch failed (network, malformed response, ...)."""


class RateLimitError(ConversationServiceError):
    """The provider rejected the request for rate limiting (HTTP 429)."""

    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ConversationServiceConfigError(ConversationServiceError):
    """The service is not usable as configured (e.g. missing credentials).

    Unlike other fetch errors this one is surfaced to the caller.
    """


class ConversationService(Protocol):
    """Fetches full conversation content by id."""

    async def fetch_full_conversation(self, conversation_id: str) -> FullConversation:
        ...


class StaticConversationService:
    """Serves full conversations from an in-memory mapping.

    Useful when the caller already holds complete content, e.g. an export
    file. Unknown ids are reported as errors.
    """

    def __init__(self, conversations: Iterable[Conversation]):
        self._conversations: Dict[str, Conversation] = {
            c.conversation_id: c for c in conversations
        }

    async def fetch_full_conversation(self, conversation_id: str) -> FullConversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationServiceError(f"Unknown conversation: {conversation_id}")
        return FullConversation(
            conversation_id=conversation_id,
            messages=conversation.messages,
        )


def load_conversations(path: str) -> list:
    """Load conversations from a JSON export.

    The file holds either a list of chat payloads or an object with a
    ``chats`` (or ``conversations``) list.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the content is not a list of conversations
    """
    export_path = Path(path)
    if not export_path.exists():
        raise FileNotFoundError(f"Conversation file not found: {path}")

    with open(export_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("chats", data.get("conversations"))
    if not isinstance(data, list):
        raise ValueError("Conversation file must contain a list of conversations")

    return [Conversation.from_dict(item) for item in data]
