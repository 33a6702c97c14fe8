"""
Approval Workflow Port - hands a gated tool call to a human approver.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.approval import ApprovalRequest


class ApprovalWorkflowPort(ABC):
    @abstractmethod
    async def submit(self, request: ApprovalRequest) -> str:
        """
        Submit a request for approval.

        The decision comes back later through ``ChatService.resolve_approval``.

        Args:
            request: The persisted approval request

        Returns:
            External workflow reference

        Raises:
            Exception: Any failure means the submission did not happen
        """
