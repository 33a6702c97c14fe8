"""Approval request entity for human sign-off on gated capabilities.

An approval request captures the exact tool call the LLM asked for so that
the turn can resume from persisted state once a human decides.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from turnloop.domain.shared_kernel import Entity, utc_now


class ApprovalStatus(str, Enum):
    """Status of an approval request.

    State transitions:
    - PENDING -> APPROVED: approver accepted the action
    - PENDING -> REJECTED: approver declined the action
    - PENDING -> ERROR: submission to the approval workflow failed
    """

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(kw_only=True)
class ApprovalRequest(Entity):
    """
    A pending gated tool call.

    Attributes:
        session_id: Session the request belongs to
        turn_identifier: Turn that raised the request
        cycle: Cycle of the turn when the request was raised
        assistant_message_id: Assistant message carrying the tool call
        tool_call_id: Provider call id of the gated tool call
        capability_name: Name of the gated capability
        tool_arguments: Parsed arguments the LLM supplied
        justification: Confirmation text the LLM supplied for the approver
        status: Current status
        decision_comment: Optional approver comment
        workflow_reference: Handle returned by the approval workflow
        execution_result: Serialized action outcome when executed out of band
    """

    session_id: str
    turn_identifier: str
    cycle: int
    assistant_message_id: str
    tool_call_id: str
    capability_name: str
    justification: str
    tool_arguments: Dict[str, Any] = field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    decision_comment: Optional[str] = None
    workflow_reference: Optional[str] = None
    execution_result: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    decided_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("session_id is required")
        if not self.turn_identifier:
            raise ValueError("turn_identifier is required")
        if not self.tool_call_id:
            raise ValueError("tool_call_id is required")
        if not self.justification:
            raise ValueError("justification is required")

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def approve(self, comment: Optional[str] = None) -> None:
        self._decide(ApprovalStatus.APPROVED, comment)

    def reject(self, comment: Optional[str] = None) -> None:
        self._decide(ApprovalStatus.REJECTED, comment)

    def mark_error(self, comment: Optional[str] = None) -> None:
        self._decide(ApprovalStatus.ERROR, comment)

    def _decide(self, status: ApprovalStatus, comment: Optional[str]) -> None:
        if not self.is_pending:
            raise ValueError(f"Cannot move approval {self.id} from {self.status.value}")
        self.status = status
        self.decision_comment = comment
        self.decided_at = utc_now()
