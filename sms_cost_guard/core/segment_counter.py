"""
SMS segment counting.

Applies carrier segmentation rules to message content: GSM-7 messages
pack 160 septets into a single SMS (153 per part once concatenated),
anything outside the GSM-7 alphabet falls back to UCS-2 (70 / 67).
"""

import math
import re
from dataclasses import dataclass
from typing import Iterable

from sms_cost_guard.storage.models import Message

GSM7_SINGLE_LIMIT = 160
GSM7_MULTIPART_LIMIT = 153
UCS2_SINGLE_LIMIT = 70
UCS2_MULTIPART_LIMIT = 67

GSM7_BASIC_CHARS = frozenset(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)
# Extension table characters take an escape septet plus the character
GSM7_EXTENSION_CHARS = frozenset("^{}\\[~]|€\f")

_ROLE_LABEL = re.compile(r"^\s*(patient|ai assistant|assistant|agent|user)\s*:?\s*\n", re.IGNORECASE)


@dataclass(frozen=True)
class SegmentUsage:
    """Segment count for a set of messages.

    Contains exact provider-rule counts without fallback heuristics.
    """
    message_count: int
    character_count: int
    segment_count: int


def clean_content(content: str) -> str:
    """Strip a leading role label line and surrounding whitespace."""
    if not isinstance(content, str):
        raise TypeError(f"message content must be str, got {type(content).__name__}")
    return _ROLE_LABEL.sub("", content, count=1).strip()


def is_gsm7(text: str) -> bool:
    return all(ch in GSM7_BASIC_CHARS or ch in GSM7_EXTENSION_CHARS for ch in text)


def count_message_segments(content: str) -> int:
    """Count billable segments for one message.

    Args:
        content: Raw message text

    Returns:
        Number of segments (0 for empty content)

    Raises:
        TypeError: If content is not a string
    """
    text = clean_content(content)
    if not text:
        return 0

    if is_gsm7(text):
        units = sum(2 if ch in GSM7_EXTENSION_CHARS else 1 for ch in text)
        single, multipart = GSM7_SINGLE_LIMIT, GSM7_MULTIPART_LIMIT
    else:
        # UCS-2 counts UTF-16 code units; astral characters take two
        units = len(text.encode("utf-16-le")) // 2
        single, multipart = UCS2_SINGLE_LIMIT, UCS2_MULTIPART_LIMIT

    if units <= single:
        return 1
    return math.ceil(units / multipart)


def calculate_segments(messages: Iterable[Message]) -> SegmentUsage:
    """Count segments across a set of messages.

    Each message is billed as its own SMS, so segments are summed per
    message rather than computed over the concatenated text.

    Raises:
        TypeError: If any message content is not a string
    """
    message_count = 0
    character_count = 0
    segment_count = 0
    for message in messages:
        message_count += 1
        character_count += len(clean_content(message.content))
        segment_count += count_message_segments(message.content)
    return SegmentUsage(
        message_count=message_count,
        character_count=character_count,
        segment_count=segment_count,
    )
