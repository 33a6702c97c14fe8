"""
Record Context Port - describes the record a session is anchored to.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.session import ChatSession


class RecordContextProviderPort(ABC):
    @abstractmethod
    async def describe(self, record_id: str, session: ChatSession) -> str | None:
        """
        Produce a short text block describing a record for the system prompt.

        Args:
            record_id: Record the user is looking at
            session: The session being processed

        Returns:
            Text to inject, or None when nothing is known about the record
        """
