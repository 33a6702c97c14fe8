"""
CapabilityRepository port: agent definitions and their capabilities.

This data is read-mostly. The orchestration core reads it fresh per
decision through a request-scoped cache.
"""

from abc import ABC, abstractmethod

from turnloop.domain.model.capability import AgentDefinition, Capability


class CapabilityRepositoryPort(ABC):
    """Repository port for agent definitions and capabilities."""

    @abstractmethod
    async def find_agent_by_id(self, agent_definition_id: str) -> AgentDefinition | None:
        """Get an agent definition by its ID."""

    @abstractmethod
    async def find_agent_by_developer_name(self, developer_name: str) -> AgentDefinition | None:
        """Get an agent definition by its unique developer name."""

    @abstractmethod
    async def find_default_agent(self) -> AgentDefinition | None:
        """Get the active agent flagged as default, if any."""

    @abstractmethod
    async def find_capability(self, agent_definition_id: str, name: str) -> Capability | None:
        """
        Get one capability of an agent by name, active or not.

        Args:
            agent_definition_id: Agent ID
            name: Capability name as exposed to the LLM

        Returns:
            Capability if found, None otherwise
        """

    @abstractmethod
    async def list_active_capabilities(self, agent_definition_id: str) -> list[Capability]:
        """Active capabilities of an agent ordered by display order, then name."""

    @abstractmethod
    async def add_agent(self, agent: AgentDefinition) -> AgentDefinition:
        """Insert an agent definition."""

    @abstractmethod
    async def add_capability(self, capability: Capability) -> Capability:
        """Insert a capability."""
