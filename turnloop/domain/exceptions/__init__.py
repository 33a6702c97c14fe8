"""
Domain exceptions for turnloop.

Repository exceptions abstract the persistence layer; orchestration
exceptions carry the error codes that end or redirect a turn.
"""

from turnloop.domain.exceptions.orchestration_errors import (
    GENERIC_FAILURE_MESSAGE,
    ActionExecutionError,
    ConfigurationError,
    ContextIntegrityError,
    ErrorCode,
    InvalidStateTransitionError,
    MaxTurnsExceededError,
    OrchestrationError,
    PrerequisiteNotMetError,
    ProviderError,
    SessionNotFoundError,
    ToolValidationError,
    TurnInProgressError,
    TurnLifecycleError,
    UnexpectedOrchestrationError,
    sanitize_error_detail,
)
from turnloop.domain.exceptions.repository_exceptions import (
    ConnectionError,
    DuplicateEntityError,
    EntityNotFoundError,
    OptimisticLockError,
    RepositoryError,
    TransactionError,
)

__all__ = [
    "GENERIC_FAILURE_MESSAGE",
    "ActionExecutionError",
    "ConfigurationError",
    "ConnectionError",
    "ContextIntegrityError",
    "DuplicateEntityError",
    "EntityNotFoundError",
    "ErrorCode",
    "InvalidStateTransitionError",
    "MaxTurnsExceededError",
    "OptimisticLockError",
    "OrchestrationError",
    "PrerequisiteNotMetError",
    "ProviderError",
    "RepositoryError",
    "SessionNotFoundError",
    "ToolValidationError",
    "TransactionError",
    "TurnInProgressError",
    "TurnLifecycleError",
    "UnexpectedOrchestrationError",
    "sanitize_error_detail",
]
