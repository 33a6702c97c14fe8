"""Chat session entity and its turn processing state machine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from turnloop.domain.exceptions import InvalidStateTransitionError
from turnloop.domain.shared_kernel import Entity, utc_now


class ProcessingStatus(str, Enum):
    """Status of the session's current turn.

    State transitions:
    - IDLE/FAILED -> PROCESSING: user sends a message
    - PROCESSING -> AWAITING_ACTION: action queued for async execution
    - PROCESSING/AWAITING_ACTION -> AWAITING_FOLLOWUP: another LLM call queued
    - PROCESSING -> AWAITING_USER_CONFIRMATION: action needs human approval
    - AWAITING_* -> PROCESSING: a queued continuation picked up the turn
    - any non-terminal -> IDLE: final answer persisted
    - any non-terminal -> FAILED: unrecoverable error
    """

    IDLE = "idle"
    PROCESSING = "processing"
    AWAITING_FOLLOWUP = "awaiting_followup"
    AWAITING_ACTION = "awaiting_action"
    AWAITING_USER_CONFIRMATION = "awaiting_user_confirmation"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ProcessingStatus.IDLE, ProcessingStatus.FAILED})

# Non-terminal targets only; terminal targets are reachable from every
# non-terminal state through complete()/fail().
ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.IDLE: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.FAILED: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset(
        {
            ProcessingStatus.PROCESSING,
            ProcessingStatus.AWAITING_ACTION,
            ProcessingStatus.AWAITING_FOLLOWUP,
            ProcessingStatus.AWAITING_USER_CONFIRMATION,
        }
    ),
    ProcessingStatus.AWAITING_ACTION: frozenset(
        {ProcessingStatus.PROCESSING, ProcessingStatus.AWAITING_FOLLOWUP}
    ),
    ProcessingStatus.AWAITING_FOLLOWUP: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.AWAITING_USER_CONFIRMATION: frozenset(
        {
            ProcessingStatus.PROCESSING,
            ProcessingStatus.AWAITING_ACTION,
            ProcessingStatus.AWAITING_FOLLOWUP,
        }
    ),
}


@dataclass(kw_only=True)
class ChatSession(Entity):
    """
    One conversation between a user and an agent.

    The processing fields are only ever changed through the transition
    methods below, which keep the invariant that a turn identifier is set
    exactly while the status is non-terminal.
    """

    user_id: str
    agent_definition_id: str
    page_record_id: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.IDLE
    current_turn_identifier: Optional[str] = None
    current_job_id: Optional[str] = None
    current_step_description: Optional[str] = None
    last_processing_error: Optional[str] = None
    summary: Optional[str] = None
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    last_activity_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.check_invariant()

    @property
    def is_terminal(self) -> bool:
        return self.processing_status.is_terminal

    def check_invariant(self) -> None:
        """Turn identifier is non-null iff status is non-terminal."""
        has_turn = bool(self.current_turn_identifier)
        if has_turn == self.is_terminal:
            raise ValueError(
                f"Session {self.id}: status {self.processing_status.value} "
                f"inconsistent with turn identifier {self.current_turn_identifier!r}"
            )

    def owns_turn(self, turn_identifier: Optional[str]) -> bool:
        """True when the persisted turn matches the caller's in-hand turn."""
        return bool(turn_identifier) and self.current_turn_identifier == turn_identifier

    def start_turn(self, turn_identifier: str, step_description: Optional[str] = None) -> None:
        """Begin a new turn from a terminal state."""
        self._require_turn_identifier(turn_identifier, ProcessingStatus.PROCESSING)
        if not self.is_terminal:
            raise InvalidStateTransitionError(
                self.id, self.processing_status.value, ProcessingStatus.PROCESSING.value
            )
        self.processing_status = ProcessingStatus.PROCESSING
        self.current_turn_identifier = turn_identifier
        self.current_job_id = None
        self.current_step_description = step_description
        self.last_processing_error = None
        self._touch()

    def move_to(
        self,
        new_status: ProcessingStatus,
        *,
        job_id: Optional[str] = None,
        step_description: Optional[str] = None,
    ) -> None:
        """Move between non-terminal states of the current turn."""
        if new_status.is_terminal:
            raise InvalidStateTransitionError(
                self.id, self.processing_status.value, new_status.value
            )
        self._require_turn_identifier(self.current_turn_identifier, new_status)
        allowed = ALLOWED_TRANSITIONS.get(self.processing_status, frozenset())
        if new_status not in allowed:
            raise InvalidStateTransitionError(
                self.id, self.processing_status.value, new_status.value
            )
        self.processing_status = new_status
        self.current_job_id = job_id
        if step_description is not None:
            self.current_step_description = step_description
        self._touch()

    def complete(self) -> None:
        """Finish the current turn successfully."""
        self._finish(ProcessingStatus.IDLE)
        self.last_processing_error = None

    def fail(self, error_detail: str) -> None:
        """Finish the current turn with an error."""
        self._finish(ProcessingStatus.FAILED)
        self.last_processing_error = error_detail

    def _finish(self, status: ProcessingStatus) -> None:
        if self.is_terminal:
            raise InvalidStateTransitionError(
                self.id, self.processing_status.value, status.value
            )
        self.processing_status = status
        self.current_turn_identifier = None
        self.current_job_id = None
        self.current_step_description = None
        self._touch()

    def _require_turn_identifier(
        self, turn_identifier: Optional[str], target: ProcessingStatus
    ) -> None:
        if not turn_identifier or not turn_identifier.strip():
            raise InvalidStateTransitionError(
                self.id,
                self.processing_status.value,
                f"{target.value} (missing turn identifier)",
            )

    def _touch(self) -> None:
        self.last_activity_at = utc_now()
