"""
Unit tests for storage layer.

Tests schema creation, record persistence and model parsing.
"""

import os
import tempfile
from datetime import datetime, timezone

import pytest

from sms_cost_guard.storage.db import get_connection
from sms_cost_guard.storage.models import (
    CacheTier,
    Conversation,
    Message,
    SegmentCacheEntry,
)
from sms_cost_guard.storage.repository import (
    InMemoryRecordStore,
    SqliteRecordStore,
    initialize_schema,
)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("""
                    SELECT name FROM sqlite_master
                    WHERE type='table' AND name='segment_cache_record'
                """)
                tables = cursor.fetchall()
                assert len(tables) == 1

                cursor = conn.execute("PRAGMA table_info(segment_cache_record)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == ['scope', 'record', 'updated_at']
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        """Verify initializing twice is harmless."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_connection_has_no_foreign_key_enforcement(self):
        """Verify connections only add a busy timeout to SQLite defaults."""
        with tempfile.TemporaryDirectory() as temp_dir:
            conn = get_connection(os.path.join(temp_dir, "test.db"))
            try:
                assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 0
                assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
            finally:
                conn.close()


class TestSqliteRecordStore:
    """Test SQLite record persistence."""

    def test_read_missing_scope(self):
        """Verify None for a scope that was never written."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SqliteRecordStore(os.path.join(temp_dir, "test.db"))
            assert store.read("default") is None

    def test_write_then_read(self):
        """Verify a record round-trips through the database."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SqliteRecordStore(os.path.join(temp_dir, "test.db"))
            store.write("default", '{"entries": []}')
            assert store.read("default") == '{"entries": []}'

    def test_write_replaces_whole_record(self):
        """Verify one row per scope, replaced on every write."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            store = SqliteRecordStore(db_path)
            store.write("default", "first")
            store.write("default", "second")

            assert store.read("default") == "second"
            conn = get_connection(db_path)
            try:
                count = conn.execute("SELECT COUNT(*) FROM segment_cache_record").fetchone()[0]
            finally:
                conn.close()
            assert count == 1

    def test_scopes_are_isolated(self):
        """Verify records for different scopes do not collide."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SqliteRecordStore(os.path.join(temp_dir, "test.db"))
            store.write("user-1", "a")
            store.write("user-2", "b")
            assert store.read("user-1") == "a"
            assert store.read("user-2") == "b"

    def test_delete(self):
        """Verify a deleted scope reads as missing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SqliteRecordStore(os.path.join(temp_dir, "test.db"))
            store.write("default", "record")
            store.delete("default")
            assert store.read("default") is None


class TestInMemoryRecordStore:
    """Test the in-memory record store."""

    def test_read_write_delete(self):
        """Verify basic record operations."""
        store = InMemoryRecordStore()
        assert store.read("default") is None
        store.write("default", "record")
        assert store.read("default") == "record"
        store.delete("default")
        assert store.read("default") is None
        store.delete("default")


class TestModels:
    """Test model validation and parsing."""

    def test_cache_entry_validation(self):
        """Verify invalid entries are rejected."""
        now = datetime.now(timezone.utc)
        with pytest.raises(ValueError, match="conversation_id cannot be empty"):
            SegmentCacheEntry("", 1, now)
        with pytest.raises(ValueError, match="segment_count must be >= 1"):
            SegmentCacheEntry("chat-1", 0, now)
        with pytest.raises(ValueError, match="segment_count must be an integer"):
            SegmentCacheEntry("chat-1", 2.5, now)
        with pytest.raises(ValueError, match="segment_count must be an integer"):
            SegmentCacheEntry("chat-1", True, now)

    def test_cache_entry_defaults_to_quick(self):
        """Verify the default tier."""
        entry = SegmentCacheEntry("chat-1", 3, datetime.now(timezone.utc))
        assert entry.tier is CacheTier.QUICK
        assert CacheTier.AUTHORITATIVE.priority > CacheTier.QUICK.priority

    def test_conversation_from_provider_payload(self):
        """Verify the chat provider's field names are understood."""
        conversation = Conversation.from_dict({
            "chat_id": "chat-42",
            "start_timestamp": 1760864400,
            "chat_status": "ended",
            "message_with_tool_calls": [
                {"role": "user", "content": "Hi"},
                {"role": "agent", "content": None},
                {"tool_call_id": "t1"},
                "not a message",
            ],
        })

        assert conversation.conversation_id == "chat-42"
        assert conversation.status == "ended"
        assert conversation.start_timestamp == datetime.fromtimestamp(1760864400, tz=timezone.utc)
        assert len(conversation.messages) == 3
        assert conversation.messages[0] == Message("Hi", role="user")
        assert conversation.messages[1].is_empty
        assert conversation.transcript is None

    def test_conversation_from_millisecond_timestamp(self):
        """Verify epoch milliseconds are detected."""
        conversation = Conversation.from_dict({"id": "c1", "start_timestamp": 1760864400000})
        assert conversation.start_timestamp == datetime.fromtimestamp(1760864400, tz=timezone.utc)

    def test_conversation_from_iso_timestamp(self):
        """Verify ISO strings are parsed as UTC when naive."""
        conversation = Conversation.from_dict({
            "conversation_id": "c1",
            "start_timestamp": "2026-10-19T09:00:00",
            "transcript": "Agent: hello",
        })
        assert conversation.start_timestamp == datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
        assert conversation.transcript == "Agent: hello"

    def test_conversation_requires_id(self):
        """Verify a payload without an id is rejected."""
        with pytest.raises(ValueError, match="missing an id"):
            Conversation.from_dict({"transcript": "hello"})
