from turnloop.domain.model.approval.approval_request import ApprovalRequest, ApprovalStatus

__all__ = ["ApprovalRequest", "ApprovalStatus"]
