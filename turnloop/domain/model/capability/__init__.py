from turnloop.domain.model.capability.capability import (
    CONFIRMATION_ARGUMENT,
    AgentDefinition,
    Capability,
    MemoryStrategy,
    PrerequisiteScope,
)

__all__ = [
    "CONFIRMATION_ARGUMENT",
    "AgentDefinition",
    "Capability",
    "MemoryStrategy",
    "PrerequisiteScope",
]
