"""
ApprovalRequestRepository port for human sign-off persistence.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.approval import ApprovalRequest


class ApprovalRequestRepositoryPort(ABC):
    """Repository port for approval requests."""

    @abstractmethod
    async def create(self, request: ApprovalRequest) -> ApprovalRequest:
        """
        Create a new approval request.

        Args:
            request: Request to create

        Returns:
            The created request
        """

    @abstractmethod
    async def find_by_id(self, request_id: str) -> ApprovalRequest | None:
        """Get an approval request by its ID."""

    @abstractmethod
    async def save(self, request: ApprovalRequest) -> ApprovalRequest:
        """
        Persist status, decision and workflow fields of a request.

        Raises:
            EntityNotFoundError: If the request does not exist
        """
