"""
Data models for storage layer.

Defines conversation inputs and segment cache entries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class CacheTier(Enum):
    """Origin of a cached segment count, ordered by priority."""
    QUICK = "quick"                  # Heuristic estimate from partial data
    AUTHORITATIVE = "authoritative"  # Computed from fully fetched content

    @property
    def priority(self) -> int:
        return 1 if self is CacheTier.AUTHORITATIVE else 0


@dataclass(frozen=True)
class Message:
    """A single message inside a conversation."""
    content: str
    role: str = "user"

    @property
    def is_empty(self) -> bool:
        return not isinstance(self.content, str) or not self.content.strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        content = data.get("content")
        return cls(content="" if content is None else content, role=data.get("role") or "user")


@dataclass(frozen=True)
class Conversation:
    """Read-only conversation handed to the engine by its caller.

    Carries either a structured message list, a raw transcript, or both.
    """
    conversation_id: str
    start_timestamp: datetime
    messages: Tuple[Message, ...] = ()
    transcript: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        """Build a conversation from a chat-provider payload.

        Accepts both the provider shape (``chat_id``, ``message_with_tool_calls``,
        ``chat_status``) and this package's own field names. Start timestamps
        may be epoch seconds or epoch milliseconds.

        Raises:
            ValueError: If the payload has no conversation id
        """
        conversation_id = data.get("conversation_id") or data.get("chat_id") or data.get("id")
        if not conversation_id:
            raise ValueError("conversation payload is missing an id")

        raw_messages = data.get("messages")
        if raw_messages is None:
            raw_messages = data.get("message_with_tool_calls")
        messages = tuple(
            Message.from_dict(m) for m in (raw_messages or []) if isinstance(m, dict)
        )

        return cls(
            conversation_id=str(conversation_id),
            start_timestamp=_parse_timestamp(data.get("start_timestamp")),
            messages=messages,
            transcript=data.get("transcript"),
            status=data.get("status") or data.get("chat_status"),
        )


@dataclass(frozen=True)
class FullConversation:
    """Fully fetched conversation content from the conversation service.

    An empty message list is a valid result (some conversations come back
    without content).
    """
    conversation_id: str
    messages: Tuple[Message, ...] = ()


@dataclass(frozen=True)
class SegmentCacheEntry:
    """Cached segment count for one conversation.

    Entries are replaced whole, never merged.
    """
    conversation_id: str
    segment_count: int
    computed_at: datetime
    tier: CacheTier = field(default=CacheTier.QUICK)

    def __post_init__(self):
        """Validate the entry is usable."""
        if not self.conversation_id:
            raise ValueError("conversation_id cannot be empty")
        if isinstance(self.segment_count, bool) or not isinstance(self.segment_count, int):
            raise ValueError("segment_count must be an integer")
        if self.segment_count < 1:
            raise ValueError("segment_count must be >= 1")


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Ten digits or fewer is epoch seconds
        seconds = value if value < 10_000_000_000 else value / 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(0, tz=timezone.utc)
