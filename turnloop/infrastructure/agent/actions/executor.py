"""
Registry-backed ActionExecutor.

Never raises across its boundary: missing implementations, bad arguments
and exceptions thrown by actions all come back as failed ActionResults
with an ActionErrorCode. Diagnostic details (exception type and message)
stay on the result for internal storage only.
"""

import asyncio
import json
import logging
from typing import Any, Dict

from sqlalchemy.exc import MultipleResultsFound, NoResultFound, SQLAlchemyError

from turnloop.domain.model.action import ActionContext, ActionErrorCode, ActionResult
from turnloop.domain.model.capability import CONFIRMATION_ARGUMENT, Capability
from turnloop.domain.ports.services.action_executor_port import ActionExecutorPort
from turnloop.infrastructure.agent.actions.action_registry import ActionRegistry
from turnloop.infrastructure.agent.actions.base import ActionError

logger = logging.getLogger(__name__)

# Order matters: first match wins.
_EXCEPTION_CODES: tuple[tuple[tuple[type[BaseException], ...], ActionErrorCode], ...] = (
    ((PermissionError,), ActionErrorCode.SECURITY),
    ((NoResultFound, MultipleResultsFound), ActionErrorCode.QUERY),
    ((SQLAlchemyError,), ActionErrorCode.DML),
    ((asyncio.TimeoutError, TimeoutError, ConnectionError), ActionErrorCode.EXTERNAL_CALL),
    ((MemoryError, RecursionError), ActionErrorCode.SYSTEM_LIMIT),
    ((ValueError, TypeError, KeyError), ActionErrorCode.VALIDATION),
)


def classify_exception(error: BaseException) -> ActionErrorCode:
    """Map an exception raised by an action to its machine-readable code."""
    if isinstance(error, ActionError):
        return error.code
    for exc_types, code in _EXCEPTION_CODES:
        if isinstance(error, exc_types):
            return code
    return ActionErrorCode.UNEXPECTED


class RegistryActionExecutor(ActionExecutorPort):
    def __init__(self, registry: ActionRegistry) -> None:
        self._registry = registry

    async def execute(
        self,
        capability: Capability,
        arguments_json: str,
        context: ActionContext,
    ) -> ActionResult:
        name = capability.name
        try:
            action = self._registry.create(capability.implementation_key)
        except Exception as e:
            logger.error(
                f"[ActionExecutor] Failed to instantiate '{capability.implementation_key}': {e}",
                exc_info=True,
            )
            return ActionResult.failure(
                name,
                ActionErrorCode.UNEXPECTED,
                f"Action '{name}' could not be started.",
                diagnostic_details=f"{type(e).__name__}: {e}",
            )
        if action is None:
            logger.warning(
                f"[ActionExecutor] No implementation registered for key "
                f"'{capability.implementation_key}' (capability {name})"
            )
            return ActionResult.failure(
                name,
                ActionErrorCode.NOT_IMPLEMENTED,
                f"Action '{name}' is not available.",
                diagnostic_details=f"implementation key '{capability.implementation_key}' not registered",
            )

        try:
            arguments = self._parse_arguments(arguments_json)
        except ValueError as e:
            return ActionResult.failure(
                name,
                ActionErrorCode.VALIDATION,
                f"Invalid arguments for '{name}'.",
                diagnostic_details=str(e),
            )

        try:
            output = await action.run(arguments, context)
        except Exception as e:
            code = classify_exception(e)
            message = e.message if isinstance(e, ActionError) else f"Action '{name}' failed."
            details = f"{type(e).__name__}: {e}"
            if isinstance(e, ActionError) and e.details:
                details = f"{details} | {e.details}"
            log = logger.warning if code != ActionErrorCode.UNEXPECTED else logger.error
            log(
                f"[ActionExecutor] {name} failed with {code.value} "
                f"session={context.session_id} turn={context.turn_identifier}: {details}",
                exc_info=code == ActionErrorCode.UNEXPECTED,
            )
            return ActionResult.failure(name, code, message, diagnostic_details=details)

        if isinstance(output, ActionResult):
            return output
        return ActionResult.ok(name, output=output)

    @staticmethod
    def _parse_arguments(arguments_json: str) -> Dict[str, Any]:
        if not arguments_json or not arguments_json.strip():
            return {}
        parsed = json.loads(arguments_json)
        if not isinstance(parsed, dict):
            raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
        parsed.pop(CONFIRMATION_ARGUMENT, None)
        return parsed
