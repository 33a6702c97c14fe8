"""
MessageStore port: the durable, append-only history of a session.

Messages are ordered by a per-session ``sequence_number`` assigned on
append. The only in-place update is clearing a pending confirmation.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from turnloop.domain.model.message import ChatMessage


class MessageStorePort(ABC):
    """Repository port for chat messages."""

    @abstractmethod
    async def append(self, message: ChatMessage) -> ChatMessage:
        """
        Append a message, assigning the next sequence number of its session.

        Args:
            message: Message to append

        Returns:
            The stored message with ``sequence_number`` set

        Raises:
            DuplicateEntityError: If the (session, external id) pair exists
        """

    @abstractmethod
    async def find_by_id(self, message_id: str) -> ChatMessage | None:
        """Find a message by its ID."""

    @abstractmethod
    async def find_by_external_id(self, session_id: str, external_id: str) -> ChatMessage | None:
        """Find a message by its idempotency key within a session."""

    @abstractmethod
    async def find_tool_result(self, session_id: str, tool_call_id: str) -> ChatMessage | None:
        """Find the tool message answering a given call id, if any."""

    @abstractmethod
    async def list_for_session(self, session_id: str) -> list[ChatMessage]:
        """All messages of a session in sequence order."""

    @abstractmethod
    async def list_recent(self, session_id: str, limit: int) -> list[ChatMessage]:
        """
        The last ``limit`` messages of a session.

        Args:
            session_id: Session ID
            limit: Maximum number of messages

        Returns:
            Messages in ascending sequence order
        """

    @abstractmethod
    async def list_for_turn(self, session_id: str, turn_identifier: str) -> list[ChatMessage]:
        """All messages of one turn in sequence order."""

    @abstractmethod
    async def find_successful_capability_names(
        self,
        session_id: str,
        turn_identifier: str | None = None,
    ) -> set[str]:
        """
        Names of capabilities with a recorded successful tool result.

        Args:
            session_id: Session ID
            turn_identifier: Restrict to one turn; None means the whole session

        Returns:
            Set of capability names
        """

    @abstractmethod
    async def list_history_page(
        self,
        session_id: str,
        limit: int,
        before: datetime | None = None,
    ) -> list[ChatMessage]:
        """
        A page of user-visible history.

        Tool messages and assistant messages without content are excluded.

        Args:
            session_id: Session ID
            limit: Page size
            before: Only messages created strictly before this instant

        Returns:
            Messages in ascending order (the newest ``limit`` before the cursor)
        """

    @abstractmethod
    async def update_pending_confirmation(
        self,
        message_id: str,
        payload: dict | None,
    ) -> bool:
        """
        Set or clear the pending-confirmation payload of a message.

        Returns:
            True if the message exists
        """

    @abstractmethod
    async def delete_from_sequence(self, session_id: str, sequence_number: int) -> int:
        """
        Delete all messages of a session from a sequence number onwards.

        Returns:
            Number of messages deleted
        """
