"""
Unit tests for segment estimation.

Tests content selection priority, the minimum count and the
heuristic fallback when the calculator fails.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

from sms_cost_guard.core.estimator import ContentSource, SegmentEstimator
from sms_cost_guard.storage.models import Conversation, Message


def _conversation(messages=(), transcript=None, conversation_id="chat-1"):
    return Conversation(
        conversation_id=conversation_id,
        start_timestamp=datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc),
        messages=tuple(messages),
        transcript=transcript,
    )


class TestContentSelection:
    """Test which representation is measured."""

    def test_messages_take_priority_over_transcript(self):
        """Verify structured messages win when present."""
        estimator = SegmentEstimator()
        conversation = _conversation(
            messages=[Message("Hi"), Message("Hello back", role="agent")],
            transcript="x" * 1000,
        )

        source, messages = estimator.select_content(conversation)

        assert source is ContentSource.MESSAGES
        assert len(messages) == 2
        assert estimator.estimate(conversation) == 2

    def test_empty_messages_are_ignored(self):
        """Verify content-less messages fall through to the transcript."""
        estimator = SegmentEstimator()
        conversation = _conversation(
            messages=[Message(""), Message("   ")],
            transcript="a" * 200,
        )

        source, messages = estimator.select_content(conversation)

        assert source is ContentSource.TRANSCRIPT
        assert messages == (Message("a" * 200),)
        assert estimator.estimate(conversation) == 2

    def test_transcript_is_one_synthetic_message(self):
        """Verify a transcript is measured as a single message."""
        estimator = SegmentEstimator()
        assert estimator.estimate(_conversation(transcript="a" * 161)) == 2

    def test_nothing_to_measure_is_one_segment(self):
        """Verify the minimum when there is no content at all."""
        calculator = Mock()
        estimator = SegmentEstimator(calculator=calculator)

        assert estimator.estimate(_conversation()) == 1
        assert estimator.estimate(_conversation(transcript="  ")) == 1
        calculator.assert_not_called()


class TestEstimateFallbacks:
    """Test that estimation never fails."""

    def test_calculator_error_uses_character_heuristic(self):
        """Verify ceil(chars / 160) when the calculator raises."""
        calculator = Mock(side_effect=RuntimeError("calculator crashed"))
        estimator = SegmentEstimator(calculator=calculator)

        conversation = _conversation(messages=[Message("a" * 200), Message("b" * 200)])

        assert estimator.estimate(conversation) == 3

    def test_heuristic_is_at_least_one(self):
        """Verify short content still counts one segment on fallback."""
        estimator = SegmentEstimator(calculator=Mock(side_effect=ValueError("bad")))
        assert estimator.estimate(_conversation(messages=[Message("hi")])) == 1

    def test_zero_from_calculator_is_floored(self):
        """Verify calculator results below one are raised to one."""
        estimator = SegmentEstimator(calculator=lambda messages: 0)
        assert estimator.estimate(_conversation(messages=[Message("hi")])) == 1

    def test_calculator_receives_only_messages_with_content(self):
        """Verify empty messages are filtered before calculation."""
        calculator = Mock(return_value=4)
        estimator = SegmentEstimator(calculator=calculator)

        result = estimator.estimate(_conversation(messages=[Message(""), Message("hello")]))

        assert result == 4
        (messages,), _ = calculator.call_args
        assert messages == (Message("hello"),)


class TestEstimateMessages:
    """Test the fully-fetched message path."""

    def test_counts_structured_messages(self):
        """Verify fetched messages are measured with the calculator."""
        estimator = SegmentEstimator()
        assert estimator.estimate_messages([Message("a" * 307)], "chat-1") == 3

    def test_empty_result_is_one_segment(self):
        """Verify an empty fetch counts one segment."""
        estimator = SegmentEstimator()
        assert estimator.estimate_messages([]) == 1
        assert estimator.estimate_messages([Message("  ")]) == 1

    def test_calculator_error_uses_heuristic(self):
        """Verify the heuristic also covers the fetched path."""
        estimator = SegmentEstimator(calculator=Mock(side_effect=RuntimeError("boom")))
        assert estimator.estimate_messages([Message("a" * 321)]) == 3
