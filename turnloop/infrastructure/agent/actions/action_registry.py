"""Action registry: implementation key -> action factory.

Populated once at process start from ``ACTION_IMPLEMENTATIONS``
(``{"key": "package.module:attribute"}``) and by explicit registration.
"""

import importlib
import inspect
import logging
from collections.abc import Callable
from typing import Dict, List, Optional

from turnloop.infrastructure.agent.actions.base import Action, ActionFunction, FunctionAction

logger = logging.getLogger(__name__)

ActionFactory = Callable[[], Action]


class ActionRegistry:
    """Central registry of capability implementations."""

    def __init__(self) -> None:
        self._factories: Dict[str, ActionFactory] = {}

    def register(self, key: str, factory: ActionFactory) -> None:
        """
        Register an action factory.

        Args:
            key: Implementation key referenced by capabilities
            factory: Zero-argument callable returning an Action (an Action
                subclass works)

        Raises:
            ValueError: If the key is already registered
        """
        if not key:
            raise ValueError("Implementation key cannot be empty")
        if key in self._factories:
            raise ValueError(f"Action '{key}' already registered")
        self._factories[key] = factory
        logger.info(f"Registered action: {key}")

    def register_function(self, key: str, func: ActionFunction) -> None:
        """Register a sync or async ``fn(arguments, context)`` as an action."""
        self.register(key, lambda: FunctionAction(func))

    def keys(self) -> List[str]:
        return sorted(self._factories)

    def create(self, key: str) -> Optional[Action]:
        """Instantiate the action for a key, or None when unregistered."""
        factory = self._factories.get(key)
        if factory is None:
            return None
        return factory()

    def load_from_mapping(self, mapping: Dict[str, str]) -> None:
        """
        Register actions from ``{"key": "package.module:attribute"}`` entries.

        The attribute may be an Action subclass, a zero-argument factory
        returning an Action, or a sync or async function taking
        ``(arguments, context)``.

        Raises:
            ValueError: If a target is malformed or cannot be imported
        """
        for key, target in mapping.items():
            self.register(key, self._resolve_target(key, target))

    @staticmethod
    def _resolve_target(key: str, target: str) -> ActionFactory:
        module_name, _, attribute = target.partition(":")
        if not module_name or not attribute:
            raise ValueError(f"Action '{key}': target '{target}' must be 'module:attribute'")
        try:
            module = importlib.import_module(module_name)
            obj = getattr(module, attribute)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Action '{key}': cannot import '{target}': {e}") from e

        if inspect.isclass(obj):
            if not issubclass(obj, Action):
                raise ValueError(f"Action '{key}': '{target}' is not an Action subclass")
            return obj
        if not callable(obj):
            raise ValueError(f"Action '{key}': '{target}' is not callable")
        if inspect.iscoroutinefunction(obj) or _takes_call_arguments(obj):
            return lambda: FunctionAction(obj)
        return obj


def _takes_call_arguments(func: Callable) -> bool:
    """True when ``func`` needs positional ``(arguments, context)`` rather than nothing."""
    try:
        parameters = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False
    required = [
        p
        for p in parameters
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD) and p.default is p.empty
    ]
    return len(required) >= 2
