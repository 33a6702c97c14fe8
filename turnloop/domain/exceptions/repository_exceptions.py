"""
Repository-related domain exceptions.

These exceptions provide a clean abstraction over infrastructure-level
database errors, allowing the orchestration layer to handle persistence
failures without knowledge of the underlying store.

Exception Hierarchy:
    RepositoryError (base)
    ├── EntityNotFoundError    - Entity not found by ID/query
    ├── DuplicateEntityError   - Unique constraint violation
    ├── TransactionError       - Transaction commit/rollback failure
    ├── ConnectionError        - Database connection issues
    └── OptimisticLockError    - Concurrent modification detected
"""

from typing import Any, Optional


class RepositoryError(Exception):
    """
    Base exception for all repository-related errors.

    Attributes:
        message: Human-readable error description
        original_error: The underlying exception (if any)
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.details = details or {}

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message} (caused by: {self.original_error})"
        return self.message


class EntityNotFoundError(RepositoryError):
    """Raised when an entity cannot be found by its identifier."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        message: Optional[str] = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        msg = message or f"{entity_type} with ID '{entity_id}' not found"
        super().__init__(msg, details={"entity_type": entity_type, "entity_id": entity_id})


class DuplicateEntityError(RepositoryError):
    """
    Raised when attempting to create an entity that violates a unique constraint.

    For chat messages this is how a replayed user message (same external id)
    surfaces when the idempotency lookup races with another writer.
    """

    def __init__(
        self,
        entity_type: str,
        field_name: str,
        field_value: Any,
        message: Optional[str] = None,
    ) -> None:
        self.entity_type = entity_type
        self.field_name = field_name
        self.field_value = field_value
        msg = message or f"{entity_type} with {field_name}='{field_value}' already exists"
        super().__init__(
            msg,
            details={
                "entity_type": entity_type,
                "field_name": field_name,
                "field_value": str(field_value),
            },
        )


class TransactionError(RepositoryError):
    """Raised when a transaction operation fails."""

    def __init__(
        self,
        operation: str,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        self.operation = operation
        msg = message or f"Transaction {operation} failed"
        super().__init__(msg, original_error=original_error, details={"operation": operation})


class ConnectionError(RepositoryError):
    """Raised when the database connection cannot be established or is lost."""

    def __init__(
        self,
        database: str,
        message: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        self.database = database
        msg = message or f"Connection to {database} failed"
        super().__init__(msg, original_error=original_error, details={"database": database})


class OptimisticLockError(RepositoryError):
    """
    Raised when a compare-and-swap update finds the row already changed.

    Attributes:
        entity_type: Name of the entity type
        entity_id: ID of the entity
        expected_version: Version the caller read
    """

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        message: Optional[str] = None,
    ) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        msg = message or (
            f"{entity_type} '{entity_id}' was modified concurrently "
            f"(expected version {expected_version})"
        )
        super().__init__(
            msg,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "expected_version": expected_version,
            },
        )
