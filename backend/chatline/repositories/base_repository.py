# backend/chatline/repositories/base_repository.py
"""
Base Repository Pattern for the chat backend.

Provides the common CRUD operations used by the SQL directory store. A
repository never commits; the store owns the unit of work and commits or
rolls back around each operation.

Error handling:
- IntegrityError propagates untouched so the store can tell a lost race
  (duplicate direct pair, duplicate read receipt) from a failure
- OperationalError propagates untouched so ``with_db_retry`` can retry
  transient disconnects and lock contention
- any other SQLAlchemyError becomes RepositoryException
"""

from abc import ABC, abstractmethod
import logging
from typing import Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)

_PASSTHROUGH_ERRORS = (IntegrityError, OperationalError)


class IRepository(ABC, Generic[T]):
    """Core data access methods every repository provides."""

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[T]:
        """Return the entity with this primary key, or None."""

    @abstractmethod
    def create(self, **kwargs) -> T:
        """Insert and flush a new entity."""

    @abstractmethod
    def update(self, id: str, **kwargs) -> Optional[T]:
        """Update provided fields; None if the entity does not exist."""

    @abstractmethod
    def delete(self, id: str) -> bool:
        """True if deleted, False if not found."""


class BaseRepository(IRepository[T]):
    """
    Concrete base repository.

    Attributes:
        db: SQLAlchemy session owned by the caller
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def _fail(self, action: str, exc: SQLAlchemyError) -> RepositoryException:
        self.logger.error(f"Error during {action} on {self.model.__name__}: {exc}")
        return RepositoryException(f"Failed to {action} {self.model.__name__}: {exc}")

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except _PASSTHROUGH_ERRORS:
            raise
        except SQLAlchemyError as e:
            raise self._fail("get", e) from e

    def create(self, **kwargs) -> T:
        """Add and flush. Does NOT commit."""
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()
            return entity
        except _PASSTHROUGH_ERRORS:
            raise
        except SQLAlchemyError as e:
            raise self._fail("create", e) from e

    def update(self, id: str, **kwargs) -> Optional[T]:
        """Only updates provided fields, preserves others."""
        try:
            entity = self.get_by_id(id)
            if entity is None:
                return None
            for key, value in kwargs.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)
            self.db.flush()
            return entity
        except _PASSTHROUGH_ERRORS:
            raise
        except SQLAlchemyError as e:
            raise self._fail("update", e) from e

    def delete(self, id: str) -> bool:
        try:
            entity = self.get_by_id(id)
            if entity is None:
                return False
            self.db.delete(entity)
            self.db.flush()
            return True
        except _PASSTHROUGH_ERRORS:
            raise
        except SQLAlchemyError as e:
            raise self._fail("delete", e) from e

    def find_one_by(self, **kwargs) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except _PASSTHROUGH_ERRORS:
            raise
        except SQLAlchemyError as e:
            raise self._fail("find", e) from e

    def count(self, **kwargs) -> int:
        try:
            return self.db.query(self.model).filter_by(**kwargs).count()
        except _PASSTHROUGH_ERRORS:
            raise
        except SQLAlchemyError as e:
            raise self._fail("count", e) from e
