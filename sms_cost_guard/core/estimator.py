"""
Segment estimation for conversations.

Picks the best available content for a conversation and turns it into a
segment count. Estimation never fails: calculator errors degrade to a
character-count heuristic, and missing content counts as one segment.

Content priority:
1. Structured messages with content (empty messages ignored)
2. Raw transcript as a single synthetic message
3. Nothing to measure - minimum of one segment
"""

import logging
import math
from enum import Enum
from typing import Callable, Optional, Sequence, Tuple

from .segment_counter import GSM7_SINGLE_LIMIT, calculate_segments
from sms_cost_guard.storage.models import Conversation, Message

log = logging.getLogger(__name__)

MIN_SEGMENTS = 1

SegmentCalculator = Callable[[Sequence[Message]], int]


class ContentSource(Enum):
    """Which representation of a conversation was measured."""
    MESSAGES = "messages"
    TRANSCRIPT = "transcript"
    NONE = "none"


def default_calculator(messages: Sequence[Message]) -> int:
    return calculate_segments(messages).segment_count


class SegmentEstimator:
    """Pure conversation-to-segment-count estimator."""

    def __init__(self, calculator: Optional[SegmentCalculator] = None):
        """Initialize the estimator.

        Args:
            calculator: Provider segment calculator; defaults to GSM-7/UCS-2 rules
        """
        self.calculator = calculator or default_calculator

    def select_content(self, conversation: Conversation) -> Tuple[ContentSource, Tuple[Message, ...]]:
        """Choose the content set to measure for a conversation."""
        with_content = tuple(m for m in (conversation.messages or ()) if not m.is_empty)
        if with_content:
            return ContentSource.MESSAGES, with_content

        transcript = conversation.transcript
        if isinstance(transcript, str) and transcript.strip():
            return ContentSource.TRANSCRIPT, (Message(content=transcript, role="user"),)

        return ContentSource.NONE, ()

    def estimate(self, conversation: Conversation) -> int:
        """Estimate segments for a conversation from whatever it carries.

        Returns:
            Segment count, always >= 1
        """
        try:
            source, messages = self.select_content(conversation)
        except Exception as e:
            log.warning("Could not read content of %s, using minimum: %s",
                        getattr(conversation, "conversation_id", "?"), e)
            return MIN_SEGMENTS

        if source is ContentSource.NONE:
            return MIN_SEGMENTS
        return self._measure(conversation.conversation_id, messages)

    def estimate_messages(self, messages: Sequence[Message], conversation_id: str = "") -> int:
        """Authoritative path: measure fully fetched structured messages only.

        The transcript is never consulted here. An empty or content-less
        message list counts as one segment.
        """
        with_content = tuple(m for m in (messages or ()) if not m.is_empty)
        if not with_content:
            return MIN_SEGMENTS
        return self._measure(conversation_id, with_content)

    def _measure(self, conversation_id: str, messages: Sequence[Message]) -> int:
        try:
            segments = int(self.calculator(messages))
        except Exception as e:
            segments = _heuristic_segments(messages)
            log.warning("Segment calculator failed for %s, using heuristic (%d): %s",
                        conversation_id or "conversation", segments, e)
        return max(segments, MIN_SEGMENTS)


def _heuristic_segments(messages: Sequence[Message]) -> int:
    total_characters = 0
    for message in messages:
        content = message.content
        total_characters += len(content if isinstance(content, str) else str(content))
    return max(math.ceil(total_characters / GSM7_SINGLE_LIMIT), MIN_SEGMENTS)
