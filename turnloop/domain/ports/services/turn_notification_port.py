"""
Turn Notification Port - outbound channel for turn events.

Publishing is at-most-once and best effort. Callers log and ignore
failures.
"""

from abc import ABC, abstractmethod

from turnloop.domain.events import TurnDomainEvent


class TurnNotificationPort(ABC):
    @abstractmethod
    async def publish(self, event: TurnDomainEvent) -> None:
        """Publish a turn event to listeners of its session."""
