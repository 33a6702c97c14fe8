"""
ChatSessionRepository port for session persistence.

Sessions are mutated only under an exclusive row lock. ``save`` performs a
compare-and-swap on the session version so a writer that bypassed the lock
cannot silently overwrite a newer state.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.session import ChatSession


class ChatSessionRepositoryPort(ABC):
    """Repository port for chat sessions."""

    @abstractmethod
    async def add(self, session: ChatSession) -> ChatSession:
        """
        Insert a new session.

        Args:
            session: Session to insert

        Returns:
            The inserted session

        Raises:
            DuplicateEntityError: If a session with the same id exists
        """

    @abstractmethod
    async def find_by_id(self, session_id: str) -> ChatSession | None:
        """
        Read a session without locking.

        Args:
            session_id: Session ID

        Returns:
            Session if found, None otherwise
        """

    @abstractmethod
    async def find_and_lock(self, session_id: str) -> ChatSession | None:
        """
        Read a session and hold an exclusive row lock until the transaction ends.

        Args:
            session_id: Session ID

        Returns:
            Session if found, None otherwise
        """

    @abstractmethod
    async def save(self, session: ChatSession) -> ChatSession:
        """
        Persist the session's mutable fields and bump its version.

        Args:
            session: Session previously read in this transaction

        Returns:
            The session with its new version

        Raises:
            OptimisticLockError: If the stored version no longer matches
        """

    @abstractmethod
    async def find_most_recent(
        self,
        user_id: str,
        agent_definition_id: str,
        page_record_id: str | None = None,
    ) -> ChatSession | None:
        """
        Find the user's most recently active session with an agent.

        Args:
            user_id: Owning user
            agent_definition_id: Agent the session is bound to
            page_record_id: If given, only sessions opened on this record

        Returns:
            The latest session, or None
        """
