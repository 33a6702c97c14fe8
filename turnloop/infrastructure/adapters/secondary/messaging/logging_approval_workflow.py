"""
Default ApprovalWorkflowPort adapter.

Records the submission in the log and returns a reference. Approvers act
through ``ChatService.resolve_approval``; deployments with a real approval
system plug their own adapter in behind the port.
"""

import logging

from turnloop.domain.model.approval import ApprovalRequest
from turnloop.domain.ports.services.approval_workflow_port import ApprovalWorkflowPort

logger = logging.getLogger(__name__)


class LoggingApprovalWorkflow(ApprovalWorkflowPort):
    REFERENCE_PREFIX = "approval:"

    async def submit(self, request: ApprovalRequest) -> str:
        reference = f"{self.REFERENCE_PREFIX}{request.id}"
        logger.info(
            f"[ApprovalWorkflow] Approval requested: id={request.id} "
            f"capability={request.capability_name} session={request.session_id} "
            f"justification={request.justification!r}"
        )
        return reference
