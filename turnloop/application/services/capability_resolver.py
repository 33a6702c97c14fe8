"""Capability Resolver - looks up agent and capability configuration.

Configuration is read fresh per decision. A ResolutionCache is created per
request (one user message, one job) and passed explicitly, so repeated
lookups inside that request hit the database once and nothing is cached
across requests.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from turnloop.domain.exceptions import ConfigurationError
from turnloop.domain.model.capability import AgentDefinition, Capability
from turnloop.domain.ports.repositories import UnitOfWorkFactory

logger = logging.getLogger(__name__)


@dataclass
class ResolutionCache:
    """Request-scoped memo of configuration reads."""

    agents: Dict[str, Optional[AgentDefinition]] = field(default_factory=dict)
    capabilities: Dict[Tuple[str, str], Optional[Capability]] = field(default_factory=dict)
    active_lists: Dict[str, List[Capability]] = field(default_factory=dict)


class CapabilityResolver:
    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def get_agent(
        self, agent_definition_id: str, cache: Optional[ResolutionCache] = None
    ) -> AgentDefinition:
        """
        Load an active agent definition.

        Raises:
            ConfigurationError: If the agent is missing or inactive
        """
        cache = cache if cache is not None else ResolutionCache()
        if agent_definition_id not in cache.agents:
            async with self._uow_factory() as uow:
                cache.agents[agent_definition_id] = await uow.capabilities.find_agent_by_id(
                    agent_definition_id
                )
        agent = cache.agents[agent_definition_id]
        if agent is None or not agent.is_active:
            raise ConfigurationError(
                detail=f"agent definition {agent_definition_id} missing or inactive"
            )
        return agent

    async def resolve_agent(self, developer_name_hint: Optional[str] = None) -> AgentDefinition:
        """
        Pick the agent for a new session: by developer name, else the default.

        Raises:
            ConfigurationError: If no active agent matches
        """
        async with self._uow_factory() as uow:
            if developer_name_hint:
                agent = await uow.capabilities.find_agent_by_developer_name(developer_name_hint)
            else:
                agent = await uow.capabilities.find_default_agent()
        if agent is None or not agent.is_active:
            target = developer_name_hint or "<default>"
            raise ConfigurationError(
                "No active assistant is available.",
                detail=f"agent '{target}' missing or inactive",
            )
        return agent

    async def resolve(
        self,
        agent_definition_id: str,
        name: str,
        cache: Optional[ResolutionCache] = None,
    ) -> Optional[Capability]:
        """Active capability by name, or None when missing or inactive."""
        cache = cache if cache is not None else ResolutionCache()
        key = (agent_definition_id, name)
        if key not in cache.capabilities:
            async with self._uow_factory() as uow:
                cache.capabilities[key] = await uow.capabilities.find_capability(
                    agent_definition_id, name
                )
        capability = cache.capabilities[key]
        if capability is None or not capability.is_active:
            return None
        return capability

    async def require(
        self,
        agent_definition_id: str,
        name: str,
        cache: Optional[ResolutionCache] = None,
    ) -> Capability:
        """
        Active capability by name.

        Raises:
            ConfigurationError: If the capability is missing or inactive
        """
        capability = await self.resolve(agent_definition_id, name, cache)
        if capability is None:
            logger.warning(
                f"[CapabilityResolver] Capability '{name}' not available for agent "
                f"{agent_definition_id}"
            )
            raise ConfigurationError(
                f"The assistant requested an unavailable action '{name}'.",
                detail=f"capability '{name}' missing or inactive for agent {agent_definition_id}",
            )
        return capability

    async def list_active(
        self, agent_definition_id: str, cache: Optional[ResolutionCache] = None
    ) -> List[Capability]:
        cache = cache if cache is not None else ResolutionCache()
        if agent_definition_id not in cache.active_lists:
            async with self._uow_factory() as uow:
                capabilities = await uow.capabilities.list_active_capabilities(agent_definition_id)
            cache.active_lists[agent_definition_id] = capabilities
            for capability in capabilities:
                cache.capabilities.setdefault((agent_definition_id, capability.name), capability)
        return list(cache.active_lists[agent_definition_id])
