"""Shared fixtures: stores and a fresh RealtimeHub per test."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from chatline.auth import JwtIdentityVerifier
from chatline.core.config import Settings
from chatline.database import Base, build_session_factory
import chatline.models  # noqa: F401
from chatline.services.realtime.hub import RealtimeHub
from chatline.storage.memory import InMemoryDirectoryStore
from chatline.storage.sql import SqlDirectoryStore
from tests._utils.realtime import TEST_SECRET


@pytest.fixture
def test_settings() -> Settings:
    return Settings(secret_key=TEST_SECRET, is_testing=True, ws_outbound_queue_size=64)


@pytest.fixture
def memory_store() -> InMemoryDirectoryStore:
    return InMemoryDirectoryStore()


@pytest.fixture
def hub(memory_store, test_settings) -> RealtimeHub:
    return RealtimeHub(memory_store, verifier=JwtIdentityVerifier(test_settings), config=test_settings)


@pytest.fixture
def sql_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def sql_store(sql_engine) -> SqlDirectoryStore:
    return SqlDirectoryStore(sql_engine, build_session_factory(sql_engine))
