"""Agent definitions and the capabilities (tools) bound to them."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from turnloop.domain.shared_kernel import Entity

# Name of the argument an approval-gated capability must receive. It is
# injected into the tool schema and shown to the approver.
CONFIRMATION_ARGUMENT = "confirmation_message"


class PrerequisiteScope(str, Enum):
    """Where a prerequisite success must have been recorded."""

    TURN = "turn"
    SESSION = "session"


class MemoryStrategy(str, Enum):
    """How much history is sent to the LLM."""

    FULL_HISTORY = "full_history"
    BUFFER_WINDOW = "buffer_window"


@dataclass(kw_only=True)
class Capability(Entity):
    """
    A named tool the LLM may invoke for a given agent.

    Attributes:
        agent_definition_id: Agent this capability belongs to
        name: Tool name exposed to the LLM (unique per agent)
        implementation_key: Key into the action registry
        parameters_schema: JSON schema of the tool arguments
        requires_approval: Execution waits for a human sign-off
        run_asynchronously: Execution happens in a queued job
        execution_prerequisites: Capabilities that must have succeeded first
        prerequisite_validation_scope: Turn or session scope for prerequisites
        halt_and_report_error: Fail the turn when the action fails
        picklist_values: Allowed values per argument, injected as JSON enums
        implementation_config: Opaque configuration passed to the action
    """

    agent_definition_id: str
    name: str
    implementation_key: str
    description: str = ""
    parameters_schema: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    requires_approval: bool = False
    run_asynchronously: bool = False
    execution_prerequisites: List[str] = field(default_factory=list)
    prerequisite_validation_scope: PrerequisiteScope = PrerequisiteScope.TURN
    halt_and_report_error: bool = False
    picklist_values: Dict[str, List[str]] = field(default_factory=dict)
    implementation_config: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    display_order: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("name is required")
        if not self.implementation_key:
            raise ValueError("implementation_key is required")
        if self.name in self.execution_prerequisites:
            raise ValueError(f"Capability '{self.name}' cannot be its own prerequisite")

    @property
    def has_prerequisites(self) -> bool:
        return len(self.execution_prerequisites) > 0


@dataclass(kw_only=True)
class AgentDefinition(Entity):
    """Configuration of one assistant: prompt, limits and model settings."""

    developer_name: str
    display_name: str = ""
    system_prompt: str = ""
    welcome_message: Optional[str] = None
    is_active: bool = True
    is_default: bool = False
    memory_strategy: MemoryStrategy = MemoryStrategy.BUFFER_WINDOW
    history_window: Optional[int] = None
    max_turns: Optional[int] = None
    llm_configuration: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.developer_name:
            raise ValueError("developer_name is required")
        if self.history_window is not None and self.history_window < 1:
            raise ValueError("history_window must be positive")
        if self.max_turns is not None and self.max_turns < 1:
            raise ValueError("max_turns must be positive")
