from turnloop.infrastructure.agent.actions.action_registry import ActionFactory, ActionRegistry
from turnloop.infrastructure.agent.actions.base import (
    Action,
    ActionError,
    ActionQueryError,
    ActionSecurityError,
    ActionStorageError,
    ActionValidationError,
    ExternalCallError,
    FunctionAction,
    SystemLimitError,
)
from turnloop.infrastructure.agent.actions.executor import (
    RegistryActionExecutor,
    classify_exception,
)

__all__ = [
    "Action",
    "ActionError",
    "ActionFactory",
    "ActionQueryError",
    "ActionRegistry",
    "ActionSecurityError",
    "ActionStorageError",
    "ActionValidationError",
    "ExternalCallError",
    "FunctionAction",
    "RegistryActionExecutor",
    "SystemLimitError",
    "classify_exception",
]
