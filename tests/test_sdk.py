"""
Tests for the conversation service boundary.
"""

import json
import os
import tempfile

import pytest

from sms_cost_guard.sdk.conversation_service import (
    ConversationServiceConfigError,
    ConversationServiceError,
    RateLimitError,
    StaticConversationService,
    load_conversations,
)
from sms_cost_guard.storage.models import Conversation, Message


class TestErrors:
    """Test the service error hierarchy."""

    def test_rate_limit_is_service_error(self):
        """Verify rate limits can be caught as service errors."""
        error = RateLimitError(retry_after=2.5)
        assert isinstance(error, ConversationServiceError)
        assert error.retry_after == 2.5
        assert str(error) == "rate limited"

    def test_config_error_is_service_error(self):
        """Verify configuration errors share the base class."""
        assert issubclass(ConversationServiceConfigError, ConversationServiceError)


class TestStaticConversationService:
    """Test the in-memory conversation service."""

    @pytest.mark.asyncio
    async def test_fetch_returns_messages(self):
        """Verify known ids return their full content."""
        conversation = Conversation.from_dict({
            "chat_id": "chat-1",
            "message_with_tool_calls": [{"role": "user", "content": "Hi"}],
        })
        service = StaticConversationService([conversation])

        full = await service.fetch_full_conversation("chat-1")

        assert full.conversation_id == "chat-1"
        assert full.messages == (Message("Hi", role="user"),)

    @pytest.mark.asyncio
    async def test_unknown_id_raises(self):
        """Verify unknown ids are reported as fetch errors."""
        service = StaticConversationService([])

        with pytest.raises(ConversationServiceError, match="Unknown conversation"):
            await service.fetch_full_conversation("missing")


class TestLoadConversations:
    """Test loading conversation exports."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_export(self, data) -> str:
        path = os.path.join(self.temp_dir, "chats.json")
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f)
        return path

    def test_load_list(self):
        """Verify a bare list of chats loads."""
        path = self._write_export([
            {"chat_id": "a", "transcript": "hello"},
            {"chat_id": "b", "message_with_tool_calls": [{"role": "agent", "content": "hi"}]},
        ])

        conversations = load_conversations(path)

        assert [c.conversation_id for c in conversations] == ["a", "b"]
        assert conversations[0].transcript == "hello"
        assert conversations[1].messages[0].role == "agent"

    def test_load_wrapped_list(self):
        """Verify an object with a chats list loads."""
        path = self._write_export({"chats": [{"chat_id": "a"}], "has_more": False})
        assert len(load_conversations(path)) == 1

    def test_missing_file(self):
        """Verify a missing export raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Conversation file not found"):
            load_conversations(os.path.join(self.temp_dir, "missing.json"))

    def test_invalid_shape(self):
        """Verify non-list content is rejected."""
        path = self._write_export({"something": "else"})
        with pytest.raises(ValueError, match="must contain a list"):
            load_conversations(path)
