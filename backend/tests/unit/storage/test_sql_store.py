"""SQLAlchemy store: conflict recovery and error translation."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from chatline.core.config import Settings
from chatline.core.exceptions import RepositoryException
from chatline.database import build_engine
from chatline.repositories.conversation_repository import ConversationRepository
from chatline.storage import build_directory_store
from chatline.storage.memory import InMemoryDirectoryStore
from chatline.storage.sql import SqlDirectoryStore
from tests._utils.realtime import TEST_SECRET


class TestDirectConversationRace:
    @pytest.mark.asyncio
    async def test_losing_insert_returns_the_winner(self, sql_store):
        winner, _ = await sql_store.get_or_create_direct_conversation("alice", "bob", "alice")
        original = ConversationRepository.find_by_direct_key
        calls = {"n": 0}

        def stale_first_lookup(self, direct_key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return original(self, direct_key)

        with patch.object(ConversationRepository, "find_by_direct_key", stale_first_lookup):
            conversation, created = await sql_store.get_or_create_direct_conversation(
                "bob", "alice", "bob"
            )

        assert created is False
        assert conversation.id == winner.id
        assert calls["n"] == 2


class TestErrorTranslation:
    @pytest.mark.asyncio
    async def test_transient_lock_is_retried(self, sql_store):
        original = ConversationRepository.find_for_user
        attempts = {"n": 0}

        def locked_once(self, user_id):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return original(self, user_id)

        with patch.object(ConversationRepository, "find_for_user", locked_once), patch(
            "chatline.database.time.sleep"
        ):
            assert await sql_store.list_conversations_for_user("alice") == []

        assert attempts["n"] == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_becomes_repository_exception(self, sql_store):
        def broken(self, user_id):
            raise OperationalError("SELECT", {}, Exception("no such table: conversations"))

        with patch.object(ConversationRepository, "find_for_user", broken):
            with pytest.raises(RepositoryException):
                await sql_store.list_conversations_for_user("alice")


class TestStoreFactory:
    def test_memory_backend(self):
        config = Settings(secret_key=TEST_SECRET, storage_backend="memory")
        assert isinstance(build_directory_store(config), InMemoryDirectoryStore)

    @pytest.mark.asyncio
    async def test_sql_backend_creates_schema(self):
        config = Settings(
            secret_key=TEST_SECRET,
            storage_backend="sql",
            database_url="sqlite+pysqlite:///:memory:",
        )

        store = build_directory_store(config)

        assert isinstance(store, SqlDirectoryStore)
        conversation, created = await store.get_or_create_direct_conversation("a", "b")
        assert created and sorted(conversation.participant_ids) == ["a", "b"]
        await store.close()

    def test_in_memory_sqlite_uses_one_shared_connection(self):
        engine = build_engine("sqlite:///:memory:")
        assert isinstance(engine.pool, StaticPool)
        engine.dispose()
