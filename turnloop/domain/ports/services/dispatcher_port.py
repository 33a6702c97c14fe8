"""
Dispatcher Port - schedules the next unit of work for a turn.

Delivery is at-least-once. Consumers detect stale or duplicate jobs by
comparing the job against the session's persisted turn and job handle.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.turn import AsyncActionJob, FollowUpJob


class DispatcherPort(ABC):
    @abstractmethod
    async def enqueue_follow_up(self, job: FollowUpJob) -> str:
        """
        Queue another LLM call for the turn.

        Returns:
            Queue-assigned message reference
        """

    @abstractmethod
    async def enqueue_async_action(self, job: AsyncActionJob) -> str:
        """
        Queue an out-of-band action execution.

        Returns:
            Queue-assigned message reference
        """
