"""Directory storage backends and the factory that picks one from settings."""

import logging

from ..core.config import Settings
from .base import DirectoryStore, direct_pair_key
from .memory import InMemoryDirectoryStore

logger = logging.getLogger(__name__)


def build_directory_store(settings: Settings) -> DirectoryStore:
    """Create the configured store. SQL tables are created if missing."""
    if settings.storage_backend == "sql":
        from ..database import build_engine
        from .sql import SqlDirectoryStore

        store = SqlDirectoryStore(build_engine(settings.database_url, echo=settings.database_echo))
        store.create_schema()
        logger.info("[STORAGE] Using SQL directory store")
        return store

    logger.info("[STORAGE] Using in-memory directory store")
    return InMemoryDirectoryStore()


__all__ = [
    "DirectoryStore",
    "InMemoryDirectoryStore",
    "build_directory_store",
    "direct_pair_key",
]
