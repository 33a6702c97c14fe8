"""Turn-scoped value objects: the in-hand turn context and decision outcomes."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from turnloop.domain.exceptions import ErrorCode
from turnloop.domain.shared_kernel import ValueObject


class TurnOutcome(str, Enum):
    """What a single orchestration decision produced."""

    COMPLETED = "completed"
    QUEUED_FOLLOWUP = "queued_followup"
    QUEUED_ACTION = "queued_action"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    FAILED = "failed"
    STALE = "stale"
    # A decision on an approval the turn no longer waits for.
    APPROVAL_RECORDED = "approval_recorded"


@dataclass(frozen=True)
class TurnContext(ValueObject):
    """
    The caller's view of the turn being worked on.

    Attributes:
        session_id: Session being processed
        user_id: Owner of the session
        agent_definition_id: Agent bound to the session
        turn_identifier: Turn the caller believes is current
        cycle: LLM round-trip number within the turn, starting at 1
        user_message: Text of the user message (first cycle only)
        page_record_id: Record the user is looking at, if any
    """

    session_id: str
    user_id: str
    agent_definition_id: str
    turn_identifier: str
    cycle: int = 1
    user_message: Optional[str] = None
    page_record_id: Optional[str] = None

    def next_cycle(self) -> "TurnContext":
        return replace(self, cycle=self.cycle + 1, user_message=None)


@dataclass(frozen=True)
class OrchestrationResult(ValueObject):
    """Result of one pass through the orchestration core."""

    outcome: TurnOutcome
    session_id: str
    turn_identifier: Optional[str]
    cycle: int
    message_id: Optional[str] = None
    content: Optional[str] = None
    job_id: Optional[str] = None
    approval_request_id: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome in (TurnOutcome.COMPLETED, TurnOutcome.FAILED)
