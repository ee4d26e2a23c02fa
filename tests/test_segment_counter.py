"""
Unit tests for SMS segment counting.

Tests GSM-7 and UCS-2 segmentation boundaries, extension characters
and role label handling.
"""

import pytest

from sms_cost_guard.core.segment_counter import (
    calculate_segments,
    clean_content,
    count_message_segments,
    is_gsm7,
)
from sms_cost_guard.storage.models import Message


class TestGsm7Segments:
    """Test GSM-7 segmentation limits."""

    def test_short_message_is_one_segment(self):
        """Verify a short message fits one segment."""
        assert count_message_segments("Hello, your appointment is at 3pm.") == 1

    def test_single_segment_boundary(self):
        """Verify 160 characters is one segment and 161 is two."""
        assert count_message_segments("a" * 160) == 1
        assert count_message_segments("a" * 161) == 2

    def test_multipart_boundary(self):
        """Verify concatenated parts hold 153 characters each."""
        assert count_message_segments("a" * 306) == 2
        assert count_message_segments("a" * 307) == 3

    def test_extension_characters_count_double(self):
        """Verify extension table characters take two septets."""
        assert count_message_segments("{" * 80) == 1
        assert count_message_segments("{" * 81) == 2
        assert count_message_segments("€" * 80) == 1

    def test_gsm7_detection(self):
        """Verify alphabet detection."""
        assert is_gsm7("Hello [world] £5 é")
        assert not is_gsm7("Hello 你好")
        assert not is_gsm7("Thanks 👍")


class TestUcs2Segments:
    """Test UCS-2 segmentation limits."""

    def test_single_segment_boundary(self):
        """Verify 70 UCS-2 characters is one segment and 71 is two."""
        assert count_message_segments("你" * 70) == 1
        assert count_message_segments("你" * 71) == 2

    def test_multipart_boundary(self):
        """Verify concatenated UCS-2 parts hold 67 characters each."""
        assert count_message_segments("你" * 134) == 2
        assert count_message_segments("你" * 135) == 3

    def test_one_non_gsm_character_switches_encoding(self):
        """Verify a single emoji forces UCS-2 for the whole message."""
        text = "a" * 69 + "👍"
        # 69 + 2 UTF-16 units for the emoji
        assert count_message_segments(text) == 2

    def test_astral_characters_use_two_units(self):
        """Verify emoji count as two UTF-16 code units."""
        assert count_message_segments("😀" * 35) == 1
        assert count_message_segments("😀" * 36) == 2


class TestContentCleaning:
    """Test content cleanup before counting."""

    def test_empty_content_is_zero_segments(self):
        """Verify empty and whitespace content costs nothing."""
        assert count_message_segments("") == 0
        assert count_message_segments("   \n  ") == 0

    def test_role_label_line_is_stripped(self):
        """Verify a leading role label line is not billed."""
        assert clean_content("Patient:\nHi there") == "Hi there"
        assert clean_content("AI Assistant:\nHello") == "Hello"
        assert count_message_segments("Agent:\n" + "a" * 160) == 1

    def test_label_without_newline_is_kept(self):
        """Verify inline text that starts like a label is left alone."""
        assert clean_content("User: hello") == "User: hello"

    def test_non_string_content_raises(self):
        """Verify non-string content is rejected."""
        with pytest.raises(TypeError, match="message content must be str"):
            count_message_segments(None)


class TestCalculateSegments:
    """Test segment totals across messages."""

    def test_segments_are_summed_per_message(self):
        """Verify each message is billed separately."""
        usage = calculate_segments([Message("a" * 161), Message("hi")])

        assert usage.message_count == 2
        assert usage.character_count == 163
        assert usage.segment_count == 3

    def test_no_messages(self):
        """Verify an empty list yields zero usage."""
        usage = calculate_segments([])
        assert usage.segment_count == 0
        assert usage.message_count == 0

    def test_bad_content_raises(self):
        """Verify calculator errors surface to the caller."""
        with pytest.raises(TypeError):
            calculate_segments([Message(content=12345)])
