"""
Orchestration errors raised while driving a turn.

Every OrchestrationError carries a machine-readable ErrorCode, a short
user-facing message and an optional diagnostic detail. The detail is kept
in internal storage only; callers and the LLM see the user message.

Exception Hierarchy:
    OrchestrationError (base)
    ├── ConfigurationError            - capability/agent/LLM config missing or inactive
    ├── ToolValidationError           - LLM supplied bad tool arguments
    ├── ActionExecutionError          - action failed and the capability halts on error
    ├── PrerequisiteNotMetError       - required capabilities have no recorded success
    ├── ProviderError                 - the LLM call failed
    ├── MaxTurnsExceededError         - turn would exceed its cycle limit
    ├── ContextIntegrityError         - stored history breaks tool-call pairing
    └── UnexpectedOrchestrationError  - catch-all

    TurnLifecycleError (base for state machine misuse)
    ├── SessionNotFoundError
    ├── TurnInProgressError
    └── InvalidStateTransitionError
"""

from enum import Enum
from typing import Optional, Sequence

from turnloop.domain.shared_kernel import DomainException


class ErrorCode(str, Enum):
    """Machine-readable failure codes stored on the session and published to listeners."""

    LLM_CALL_FAILED = "LLM_CALL_FAILED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ACTION_EXECUTION_FAILED = "ACTION_EXECUTION_FAILED"
    PREREQUISITE_NOT_MET = "PREREQUISITE_NOT_MET"
    MAX_TURNS_EXCEEDED = "MAX_TURNS_EXCEEDED"
    EMPTY_LLM_RESPONSE = "EMPTY_LLM_RESPONSE"
    APPROVAL_SUBMISSION_FAILED = "APPROVAL_SUBMISSION_FAILED"
    USER_REJECTED = "USER_REJECTED"
    CONTEXT_INTEGRITY_ERROR = "CONTEXT_INTEGRITY_ERROR"
    DISPATCH_FAILED = "DISPATCH_FAILED"
    ADMIN_CANCELLED = "ADMIN_CANCELLED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


GENERIC_FAILURE_MESSAGE = "Something went wrong while processing your request. Please try again."


def sanitize_error_detail(detail: Optional[str], max_length: int) -> str:
    """Collapse whitespace and truncate a detail string for storage or display."""
    if not detail:
        return ""
    text = " ".join(str(detail).split())
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    return text[: max_length - 3] + "..."


class OrchestrationError(DomainException):
    """Base class for failures that end (or redirect) a turn."""

    default_code: ErrorCode = ErrorCode.UNEXPECTED_ERROR
    default_message: str = GENERIC_FAILURE_MESSAGE

    def __init__(
        self,
        user_message: Optional[str] = None,
        *,
        code: Optional[ErrorCode] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.code = code or self.default_code
        self.user_message = user_message or self.default_message
        self.detail = detail
        super().__init__(self.user_message)

    @property
    def internal_detail(self) -> str:
        """Full diagnostic text for internal storage."""
        if self.detail:
            return f"{self.code.value}: {self.user_message} | {self.detail}"
        return f"{self.code.value}: {self.user_message}"


class ConfigurationError(OrchestrationError):
    default_code = ErrorCode.CONFIGURATION_ERROR
    default_message = "The assistant is not configured correctly for this request."


class ToolValidationError(OrchestrationError):
    default_code = ErrorCode.VALIDATION_ERROR
    default_message = "The assistant supplied invalid tool arguments."


class ActionExecutionError(OrchestrationError):
    default_code = ErrorCode.ACTION_EXECUTION_FAILED
    default_message = "An action failed while processing your request."


class PrerequisiteNotMetError(OrchestrationError):
    """Soft failure: surfaced to the LLM as tool feedback, never fails a turn."""

    default_code = ErrorCode.PREREQUISITE_NOT_MET
    default_message = "Required steps must run before this action."

    def __init__(self, capability_name: str, missing: Sequence[str]) -> None:
        self.capability_name = capability_name
        self.missing = list(missing)
        super().__init__(
            f"'{capability_name}' requires {', '.join(self.missing)} to succeed first.",
            detail=f"missing prerequisites: {self.missing}",
        )


class ProviderError(OrchestrationError):
    default_code = ErrorCode.LLM_CALL_FAILED
    default_message = "The language model request failed."


class MaxTurnsExceededError(OrchestrationError):
    default_code = ErrorCode.MAX_TURNS_EXCEEDED
    default_message = "The request needed too many steps and was stopped."

    def __init__(self, cycle: int, max_turns: int) -> None:
        self.cycle = cycle
        self.max_turns = max_turns
        super().__init__(detail=f"cycle {cycle} reached limit {max_turns}")


class ContextIntegrityError(OrchestrationError):
    default_code = ErrorCode.CONTEXT_INTEGRITY_ERROR
    default_message = "The conversation history is inconsistent."


class UnexpectedOrchestrationError(OrchestrationError):
    default_code = ErrorCode.UNEXPECTED_ERROR


class TurnLifecycleError(DomainException):
    """Base class for session state machine misuse."""

    def __init__(self, session_id: str, message: str) -> None:
        self.session_id = session_id
        super().__init__(message)


class SessionNotFoundError(TurnLifecycleError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id, f"Chat session '{session_id}' not found")


class TurnInProgressError(TurnLifecycleError):
    def __init__(self, session_id: str, turn_identifier: Optional[str]) -> None:
        self.turn_identifier = turn_identifier
        super().__init__(
            session_id,
            f"Session '{session_id}' is still processing turn '{turn_identifier}'",
        )


class InvalidStateTransitionError(TurnLifecycleError):
    def __init__(self, session_id: str, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            session_id,
            f"Session '{session_id}' cannot move from {from_status} to {to_status}",
        )
