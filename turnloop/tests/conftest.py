"""Pytest configuration and shared fixtures for testing."""

from collections.abc import Callable
from typing import Any, AsyncGenerator, Dict

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from turnloop.application.services import ChatService
from turnloop.configuration.config import Settings
from turnloop.configuration.di_container import DIContainer
from turnloop.domain.model.action import ActionContext
from turnloop.domain.model.capability import AgentDefinition, Capability, PrerequisiteScope
from turnloop.domain.ports.repositories import UnitOfWorkFactory
from turnloop.infrastructure.adapters.secondary.persistence.models import Base
from turnloop.infrastructure.adapters.secondary.persistence.unit_of_work import SqlUnitOfWork
from turnloop.infrastructure.agent.actions import ActionRegistry, ExternalCallError
from turnloop.tests.fakes import (
    RecordingApprovalWorkflow,
    RecordingDispatcher,
    RecordingNotifier,
    ScriptedLLMAdapter,
)

TEST_USER_ID = "550e8400-e29b-41d4-a716-446655440000"
OTHER_USER_ID = "550e8400-e29b-41d4-a716-446655440099"
TEST_RECORD_ID = "001-ACME"

# --- Database Fixtures ---


@pytest.fixture
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine so every unit of work gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'turnloop.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    return lambda: SqlUnitOfWork(session_factory)


# --- Fakes ---


@pytest.fixture
def llm() -> ScriptedLLMAdapter:
    return ScriptedLLMAdapter()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def approval_workflow() -> RecordingApprovalWorkflow:
    return RecordingApprovalWorkflow()


# --- Actions ---


async def get_weather(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    return {"city": arguments["city"], "forecast": "sunny", "temperatureC": 21}


async def verify_customer(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    return {"customerId": arguments.get("customer_id"), "verified": True}


async def send_invoice(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    return {"invoiceId": "INV-1", "record_id": arguments.get("customer_id")}


async def delete_account(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    return {"deleted": True, "accountId": arguments.get("account_id")}


async def generate_report(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    return {"reportId": "R-1", "period": arguments.get("period")}


async def lookup_order(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    raise PermissionError("user may not read orders")


async def charge_card(arguments: Dict[str, Any], context: ActionContext) -> Dict[str, Any]:
    raise ExternalCallError("Payment gateway unavailable.", details="HTTP 503")


@pytest.fixture
def action_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register_function("weather.get", get_weather)
    registry.register_function("crm.verify_customer", verify_customer)
    registry.register_function("billing.send_invoice", send_invoice)
    registry.register_function("crm.delete_account", delete_account)
    registry.register_function("reports.generate", generate_report)
    registry.register_function("orders.lookup", lookup_order)
    registry.register_function("billing.charge_card", charge_card)
    return registry


# --- Container ---


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {"AGENT_MAX_TURNS": 5, "AGENT_APPROVAL_MODE": "workflow"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def container_factory(
    session_factory,
    llm,
    dispatcher,
    notifier,
    approval_workflow,
    action_registry,
) -> Callable[..., DIContainer]:
    def create(record_context_provider: Any = None, **setting_overrides: Any) -> DIContainer:
        return DIContainer(
            settings=make_settings(**setting_overrides),
            record_context_provider=record_context_provider,
            session_factory=session_factory,
            llm_adapter=llm,
            dispatcher=dispatcher,
            notifier=notifier,
            approval_workflow=approval_workflow,
            action_registry=action_registry,
        )

    return create


@pytest.fixture
def container(container_factory) -> DIContainer:
    return container_factory()


@pytest.fixture
def chat_service(container: DIContainer) -> ChatService:
    return container.chat_service()


# --- Seed data ---


def make_agent(
    developer_name: str = "support_agent",
    is_default: bool = True,
    max_turns: int | None = None,
    history_window: int | None = None,
    **kwargs: Any,
) -> AgentDefinition:
    return AgentDefinition(
        developer_name=developer_name,
        display_name="Support Agent",
        system_prompt="You are a helpful support assistant.",
        welcome_message="Hi! How can I help?",
        is_default=is_default,
        max_turns=max_turns,
        history_window=history_window,
        llm_configuration={"model": "fake-model", "temperature": 0.2},
        **kwargs,
    )


def make_capability(agent_id: str, name: str, implementation_key: str, **kwargs: Any) -> Capability:
    return Capability(
        agent_definition_id=agent_id,
        name=name,
        implementation_key=implementation_key,
        description=kwargs.pop("description", f"{name} tool"),
        **kwargs,
    )


def default_capabilities(agent_id: str) -> list[Capability]:
    return [
        make_capability(
            agent_id,
            "get_weather",
            "weather.get",
            parameters_schema={
                "type": "object",
                "properties": {"city": {"type": "string"}, "unit": {"type": "string"}},
                "required": ["city"],
            },
            picklist_values={"unit": ["celsius", "fahrenheit"]},
        ),
        make_capability(
            agent_id,
            "verify_customer",
            "crm.verify_customer",
            parameters_schema={
                "type": "object",
                "properties": {"customer_id": {"type": "string"}},
            },
        ),
        make_capability(
            agent_id,
            "send_invoice",
            "billing.send_invoice",
            parameters_schema={
                "type": "object",
                "properties": {"customer_id": {"type": "string"}},
            },
            execution_prerequisites=["verify_customer"],
            prerequisite_validation_scope=PrerequisiteScope.TURN,
        ),
        make_capability(
            agent_id,
            "delete_account",
            "crm.delete_account",
            parameters_schema={
                "type": "object",
                "properties": {"account_id": {"type": "string"}},
            },
            requires_approval=True,
        ),
        make_capability(agent_id, "generate_report", "reports.generate", run_asynchronously=True),
        make_capability(agent_id, "lookup_order", "orders.lookup"),
        make_capability(agent_id, "charge_card", "billing.charge_card", halt_and_report_error=True),
        make_capability(agent_id, "legacy_export", "legacy.export", is_active=False),
    ]


async def seed_agent(
    uow_factory: UnitOfWorkFactory,
    agent: AgentDefinition,
    capabilities: list[Capability] | None = None,
) -> AgentDefinition:
    async with uow_factory() as uow:
        await uow.capabilities.add_agent(agent)
        for capability in capabilities if capabilities is not None else default_capabilities(agent.id):
            await uow.capabilities.add_capability(capability)
        await uow.commit()
    return agent


@pytest.fixture
async def agent(uow_factory) -> AgentDefinition:
    return await seed_agent(uow_factory, make_agent())


@pytest.fixture
async def session_view(chat_service: ChatService, agent: AgentDefinition):
    return await chat_service.create_session(TEST_USER_ID)
