"""
Base repository shared by all SQL repositories.

Provides:
- Exception mapping from SQLAlchemy to domain exceptions
- Lookup by primary key
- Insert with flush (the unit of work owns commit/rollback)

Concrete repositories set ``_model_class`` and implement ``_to_domain``
and ``_to_db``.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from turnloop.domain.exceptions import (
    ConnectionError as DomainConnectionError,
    DuplicateEntityError,
    RepositoryError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M")


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by drivers without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def handle_db_errors(entity_type: str = "Entity") -> Callable[..., Any]:
    """
    Decorator to handle database errors and convert to domain exceptions.

    Args:
        entity_type: Name of the entity type for error messages

    Returns:
        Decorated function that maps SQLAlchemy errors to domain exceptions
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except IntegrityError as e:
                error_str = str(e.orig) if e.orig else str(e)
                lowered = error_str.lower()
                if "unique" in lowered or "duplicate" in lowered:
                    field_name = "id"
                    if "Key" in error_str and "=" in error_str:
                        # PostgreSQL format: Key (field)=(value) already exists
                        with suppress(IndexError, AttributeError):
                            field_name = error_str.split("Key (")[1].split(")")[0]
                    elif "UNIQUE constraint failed:" in error_str:
                        # SQLite format: UNIQUE constraint failed: table.col, table.col
                        with suppress(IndexError):
                            field_name = error_str.split("failed:")[1].strip()
                    raise DuplicateEntityError(
                        entity_type=entity_type,
                        field_name=field_name,
                        field_value="<unknown>",
                        message=f"Duplicate {entity_type} detected",
                    ) from e
                raise RepositoryError(
                    f"Integrity error while operating on {entity_type}",
                    original_error=e,
                ) from e
            except DBAPIError as e:
                error_str = str(e).lower()
                if "connection" in error_str or "timeout" in error_str:
                    raise DomainConnectionError(
                        database="PostgreSQL",
                        message=f"Database connection error while operating on {entity_type}",
                        original_error=e,
                    ) from e
                raise RepositoryError(
                    f"Database error while operating on {entity_type}",
                    original_error=e,
                ) from e

        return wrapper

    return decorator


class BaseRepository(ABC, Generic[T, M]):
    """
    Base repository class providing common database operations.

    Attributes:
        _model_class: SQLAlchemy model class (must be set by subclasses)
        _entity_name: Human-readable entity name for error messages
    """

    _model_class: type[M] = None
    _entity_name: str | None = None

    def __init__(self, session: AsyncSession) -> None:
        if session is None:
            raise ValueError("Session cannot be None")
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def entity_name(self) -> str:
        if self._entity_name:
            return self._entity_name
        if self._model_class:
            return self._model_class.__name__
        return "Entity"

    @abstractmethod
    def _to_domain(self, db_model: M | None) -> T | None:
        """Convert database model to domain entity."""

    @abstractmethod
    def _to_db(self, domain_entity: T) -> M:
        """Convert domain entity to a new database model."""

    async def find_by_id(self, entity_id: str) -> T | None:
        """
        Find an entity by its ID.

        Raises:
            ValueError: If entity_id is empty
        """
        if not entity_id:
            raise ValueError("ID cannot be empty")
        return self._to_domain(await self._find_db_model_by_id(entity_id))

    async def _find_db_model_by_id(self, entity_id: str) -> M | None:
        query = select(self._model_class).where(self._model_class.id == entity_id)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def _create(self, domain_entity: T) -> T:
        """Insert a new row and flush so constraint violations surface here."""
        self._session.add(self._to_db(domain_entity))
        await self._session.flush()
        return domain_entity

    async def _fetch_all(self, query: Any) -> list[T]:
        result = await self._session.execute(query)
        return [self._to_domain(m) for m in result.scalars().all() if m is not None]
