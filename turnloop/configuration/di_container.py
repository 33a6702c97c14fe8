"""Dependency Injection Container.

Builds the orchestration services over SQLAlchemy, Redis and the action
registry. Every collaborator can be injected, which is how tests and the
worker swap in their own adapters.
"""

import importlib
import logging
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from turnloop.application.services import (
    CapabilityResolver,
    ChatService,
    ContextAssembler,
    LLMInteractionLoop,
    OrchestrationCore,
    PrerequisiteChecker,
    TurnLifecycleService,
)
from turnloop.configuration.config import Settings, get_settings
from turnloop.domain.exceptions import ConfigurationError
from turnloop.domain.ports.repositories import UnitOfWorkFactory, UnitOfWorkPort
from turnloop.domain.ports.services import (
    ActionExecutorPort,
    ApprovalWorkflowPort,
    DispatcherPort,
    LLMAdapterPort,
    RecordContextProviderPort,
    TurnNotificationPort,
)
from turnloop.infrastructure.adapters.secondary.messaging import (
    LoggingApprovalWorkflow,
    RedisTurnNotifier,
    RedisWorkQueue,
)
from turnloop.infrastructure.adapters.secondary.persistence.database import (
    build_engine,
    build_session_factory,
)
from turnloop.infrastructure.adapters.secondary.persistence.unit_of_work import SqlUnitOfWork
from turnloop.infrastructure.agent.actions import ActionRegistry, RegistryActionExecutor

logger = logging.getLogger(__name__)


class DIContainer:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[redis.Redis] = None,
        llm_adapter: Optional[LLMAdapterPort] = None,
        dispatcher: Optional[DispatcherPort] = None,
        notifier: Optional[TurnNotificationPort] = None,
        approval_workflow: Optional[ApprovalWorkflowPort] = None,
        action_registry: Optional[ActionRegistry] = None,
        record_context_provider: Optional[RecordContextProviderPort] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory = session_factory
        self._redis_client = redis_client
        self._llm_adapter = llm_adapter
        self._dispatcher = dispatcher
        self._notifier = notifier
        self._approval_workflow = approval_workflow
        self._action_registry = action_registry
        self._record_context_provider = record_context_provider

    @property
    def settings(self) -> Settings:
        return self._settings

    # === Infrastructure ===

    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_engine(self._settings)
        return self._engine

    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = build_session_factory(self.engine())
        return self._session_factory

    def uow_factory(self) -> UnitOfWorkFactory:
        session_factory = self.session_factory()

        def create() -> UnitOfWorkPort:
            return SqlUnitOfWork(session_factory)

        return create

    def redis(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.from_url(self._settings.redis_url, decode_responses=True)
        return self._redis_client

    def work_queue(self) -> RedisWorkQueue:
        return RedisWorkQueue(
            self.redis(),
            stream_key=self._settings.turn_queue_stream,
            consumer_group=self._settings.turn_queue_group,
        )

    def dispatcher(self) -> DispatcherPort:
        if self._dispatcher is None:
            self._dispatcher = self.work_queue()
        return self._dispatcher

    def notifier(self) -> TurnNotificationPort:
        if self._notifier is None:
            self._notifier = RedisTurnNotifier(
                self.redis(), channel_prefix=self._settings.turn_event_channel_prefix
            )
        return self._notifier

    def approval_workflow(self) -> ApprovalWorkflowPort:
        if self._approval_workflow is None:
            self._approval_workflow = LoggingApprovalWorkflow()
        return self._approval_workflow

    def action_registry(self) -> ActionRegistry:
        if self._action_registry is None:
            registry = ActionRegistry()
            registry.load_from_mapping(self._settings.action_implementations)
            logger.info(f"[DIContainer] Registered actions: {registry.keys()}")
            self._action_registry = registry
        return self._action_registry

    def action_executor(self) -> ActionExecutorPort:
        return RegistryActionExecutor(self.action_registry())

    def llm_adapter(self) -> LLMAdapterPort:
        """
        The injected adapter, else the one built from ``LLM_ADAPTER``.

        Raises:
            ConfigurationError: If no adapter is configured
        """
        if self._llm_adapter is None:
            target = self._settings.llm_adapter
            if not target:
                raise ConfigurationError(detail="LLM_ADAPTER is not configured")
            module_name, _, attribute = target.partition(":")
            if not module_name or not attribute:
                raise ConfigurationError(detail=f"LLM_ADAPTER '{target}' must be 'module:attribute'")
            factory = getattr(importlib.import_module(module_name), attribute)
            self._llm_adapter = factory()
        return self._llm_adapter

    # === Application services ===

    def turn_lifecycle(self) -> TurnLifecycleService:
        return TurnLifecycleService(
            self.uow_factory(),
            notifier=self.notifier(),
            error_message_max_length=self._settings.error_message_max_length,
            error_detail_max_length=self._settings.error_detail_max_length,
        )

    def capability_resolver(self) -> CapabilityResolver:
        return CapabilityResolver(self.uow_factory())

    def context_assembler(self) -> ContextAssembler:
        return ContextAssembler(
            self.uow_factory(),
            record_context_provider=self._record_context_provider,
            default_history_window=self._settings.agent_history_window,
        )

    def orchestration_core(self) -> OrchestrationCore:
        return OrchestrationCore(
            self.uow_factory(),
            self.turn_lifecycle(),
            self.capability_resolver(),
            PrerequisiteChecker(self.uow_factory()),
            self.action_executor(),
            self.dispatcher(),
            self.approval_workflow(),
            max_turns=self._settings.agent_max_turns,
            approval_mode=self._settings.agent_approval_mode,
            diagnostic_max_length=self._settings.error_detail_max_length,
        )

    def llm_interaction_loop(self) -> LLMInteractionLoop:
        return LLMInteractionLoop(
            self.turn_lifecycle(),
            self.capability_resolver(),
            self.context_assembler(),
            self.llm_adapter(),
            self.orchestration_core(),
        )

    def chat_service(self) -> ChatService:
        return ChatService(
            self.uow_factory(),
            self.turn_lifecycle(),
            self.capability_resolver(),
            self.llm_interaction_loop(),
            self.orchestration_core(),
            history_page_size=self._settings.history_page_size,
            error_message_max_length=self._settings.error_message_max_length,
        )

    async def shutdown(self) -> None:
        if self._redis_client is not None:
            await self._redis_client.aclose()
        if self._engine is not None:
            await self._engine.dispose()
