"""
SQLAlchemy implementation of CapabilityRepository.

Agent definitions and capabilities share one repository since every read
of a capability is scoped by its agent.
"""

import logging

from sqlalchemy import select

from turnloop.domain.model.capability import (
    AgentDefinition,
    Capability,
    MemoryStrategy,
    PrerequisiteScope,
)
from turnloop.domain.ports.repositories.capability_repository import CapabilityRepositoryPort
from turnloop.infrastructure.adapters.secondary.common.base_repository import (
    BaseRepository,
    handle_db_errors,
)
from turnloop.infrastructure.adapters.secondary.persistence.models import (
    AgentCapability as AgentCapabilityRecord,
    AgentDefinition as AgentDefinitionRecord,
)

logger = logging.getLogger(__name__)


class SqlCapabilityRepository(
    BaseRepository[Capability, AgentCapabilityRecord], CapabilityRepositoryPort
):
    _model_class = AgentCapabilityRecord
    _entity_name = "Capability"

    @handle_db_errors("AgentDefinition")
    async def find_agent_by_id(self, agent_definition_id: str) -> AgentDefinition | None:
        result = await self._session.execute(
            select(AgentDefinitionRecord).where(AgentDefinitionRecord.id == agent_definition_id)
        )
        return self._agent_to_domain(result.scalar_one_or_none())

    @handle_db_errors("AgentDefinition")
    async def find_agent_by_developer_name(self, developer_name: str) -> AgentDefinition | None:
        result = await self._session.execute(
            select(AgentDefinitionRecord).where(
                AgentDefinitionRecord.developer_name == developer_name
            )
        )
        return self._agent_to_domain(result.scalar_one_or_none())

    @handle_db_errors("AgentDefinition")
    async def find_default_agent(self) -> AgentDefinition | None:
        result = await self._session.execute(
            select(AgentDefinitionRecord)
            .where(
                AgentDefinitionRecord.is_default.is_(True),
                AgentDefinitionRecord.is_active.is_(True),
            )
            .order_by(AgentDefinitionRecord.created_at)
            .limit(1)
        )
        return self._agent_to_domain(result.scalar_one_or_none())

    @handle_db_errors("Capability")
    async def find_capability(self, agent_definition_id: str, name: str) -> Capability | None:
        result = await self._session.execute(
            select(AgentCapabilityRecord).where(
                AgentCapabilityRecord.agent_definition_id == agent_definition_id,
                AgentCapabilityRecord.name == name,
            )
        )
        return self._to_domain(result.scalar_one_or_none())

    @handle_db_errors("Capability")
    async def list_active_capabilities(self, agent_definition_id: str) -> list[Capability]:
        return await self._fetch_all(
            select(AgentCapabilityRecord)
            .where(
                AgentCapabilityRecord.agent_definition_id == agent_definition_id,
                AgentCapabilityRecord.is_active.is_(True),
            )
            .order_by(AgentCapabilityRecord.display_order, AgentCapabilityRecord.name)
        )

    @handle_db_errors("AgentDefinition")
    async def add_agent(self, agent: AgentDefinition) -> AgentDefinition:
        self._session.add(
            AgentDefinitionRecord(
                id=agent.id,
                developer_name=agent.developer_name,
                display_name=agent.display_name,
                system_prompt=agent.system_prompt,
                welcome_message=agent.welcome_message,
                is_active=agent.is_active,
                is_default=agent.is_default,
                memory_strategy=agent.memory_strategy.value,
                history_window=agent.history_window,
                max_turns=agent.max_turns,
                llm_configuration=agent.llm_configuration,
            )
        )
        await self._session.flush()
        return agent

    @handle_db_errors("Capability")
    async def add_capability(self, capability: Capability) -> Capability:
        return await self._create(capability)

    def _agent_to_domain(self, db_model: AgentDefinitionRecord | None) -> AgentDefinition | None:
        if db_model is None:
            return None
        return AgentDefinition(
            id=db_model.id,
            developer_name=db_model.developer_name,
            display_name=db_model.display_name,
            system_prompt=db_model.system_prompt,
            welcome_message=db_model.welcome_message,
            is_active=db_model.is_active,
            is_default=db_model.is_default,
            memory_strategy=MemoryStrategy(db_model.memory_strategy),
            history_window=db_model.history_window,
            max_turns=db_model.max_turns,
            llm_configuration=db_model.llm_configuration or {},
        )

    def _to_domain(self, db_model: AgentCapabilityRecord | None) -> Capability | None:
        if db_model is None:
            return None
        return Capability(
            id=db_model.id,
            agent_definition_id=db_model.agent_definition_id,
            name=db_model.name,
            implementation_key=db_model.implementation_key,
            description=db_model.description,
            parameters_schema=db_model.parameters_schema or {"type": "object", "properties": {}},
            requires_approval=db_model.requires_approval,
            run_asynchronously=db_model.run_asynchronously,
            execution_prerequisites=list(db_model.execution_prerequisites or []),
            prerequisite_validation_scope=PrerequisiteScope(db_model.prerequisite_validation_scope),
            halt_and_report_error=db_model.halt_and_report_error,
            picklist_values=db_model.picklist_values or {},
            implementation_config=db_model.implementation_config or {},
            is_active=db_model.is_active,
            display_order=db_model.display_order,
        )

    def _to_db(self, domain_entity: Capability) -> AgentCapabilityRecord:
        return AgentCapabilityRecord(
            id=domain_entity.id,
            agent_definition_id=domain_entity.agent_definition_id,
            name=domain_entity.name,
            implementation_key=domain_entity.implementation_key,
            description=domain_entity.description,
            parameters_schema=domain_entity.parameters_schema,
            requires_approval=domain_entity.requires_approval,
            run_asynchronously=domain_entity.run_asynchronously,
            execution_prerequisites=list(domain_entity.execution_prerequisites),
            prerequisite_validation_scope=domain_entity.prerequisite_validation_scope.value,
            halt_and_report_error=domain_entity.halt_and_report_error,
            picklist_values=domain_entity.picklist_values,
            implementation_config=domain_entity.implementation_config,
            is_active=domain_entity.is_active,
            display_order=domain_entity.display_order,
        )
