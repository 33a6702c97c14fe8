"""
Action Executor Port - runs one capability implementation.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.action import ActionContext, ActionResult
from turnloop.domain.model.capability import Capability


class ActionExecutorPort(ABC):
    @abstractmethod
    async def execute(
        self,
        capability: Capability,
        arguments_json: str,
        context: ActionContext,
    ) -> ActionResult:
        """
        Execute a capability.

        Implementations never raise: every failure is returned as an
        ActionResult with ``success=False`` and an ActionErrorCode.

        Args:
            capability: Resolved capability configuration
            arguments_json: Raw JSON arguments from the LLM
            context: Invocation context

        Returns:
            Structured action outcome
        """
