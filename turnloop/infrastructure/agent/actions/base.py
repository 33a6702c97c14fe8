"""Base action class and the exceptions actions raise to classify failures.

An action implementation either returns its output (wrapped into a
successful ActionResult by the executor), returns an ActionResult itself,
or raises. Raised exceptions are mapped to an ActionErrorCode by the
executor; raising one of the ActionError subclasses below picks the code
explicitly.
"""

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Dict, Optional, Union

from turnloop.domain.model.action import ActionContext, ActionErrorCode


class Action(ABC):
    """Abstract base class for capability implementations."""

    @abstractmethod
    async def run(self, arguments: Dict[str, Any], context: ActionContext) -> Any:
        """
        Execute the action.

        Args:
            arguments: Parsed tool arguments supplied by the LLM
            context: Invocation context, including the capability's
                implementation_config

        Returns:
            Output for the LLM, or an ActionResult

        Raises:
            ActionError: To fail with a specific error code
        """


ActionFunction = Callable[[Dict[str, Any], ActionContext], Union[Any, Awaitable[Any]]]


class FunctionAction(Action):
    """Adapts a plain ``fn(arguments, context)``, sync or async, to the Action interface."""

    def __init__(self, func: ActionFunction) -> None:
        self._func = func

    async def run(self, arguments: Dict[str, Any], context: ActionContext) -> Any:
        result = self._func(arguments, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class ActionError(Exception):
    """Base exception for classified action failures."""

    code: ActionErrorCode = ActionErrorCode.UNEXPECTED

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ActionValidationError(ActionError):
    code = ActionErrorCode.VALIDATION


class ActionSecurityError(ActionError):
    code = ActionErrorCode.SECURITY


class ActionStorageError(ActionError):
    code = ActionErrorCode.DML


class ActionQueryError(ActionError):
    code = ActionErrorCode.QUERY


class ExternalCallError(ActionError):
    code = ActionErrorCode.EXTERNAL_CALL


class SystemLimitError(ActionError):
    code = ActionErrorCode.SYSTEM_LIMIT
