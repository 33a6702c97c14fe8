"""
Chat Service - inbound facade used by controllers and the worker.

Starts turns, serves history, resolves approvals and routes dequeued jobs
to the loop or the core.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from turnloop.application.services.capability_resolver import CapabilityResolver
from turnloop.application.services.llm_interaction_loop import LLMInteractionLoop
from turnloop.application.services.orchestration_core import STEP_THINKING, OrchestrationCore
from turnloop.application.services.turn_lifecycle import TurnLifecycleService
from turnloop.domain.exceptions import (
    EntityNotFoundError,
    ErrorCode,
    SessionNotFoundError,
    TurnInProgressError,
    sanitize_error_detail,
)
from turnloop.domain.model.message import ChatMessage
from turnloop.domain.model.session import ChatSession
from turnloop.domain.model.turn import (
    AnyTurnJob,
    AsyncActionJob,
    FollowUpJob,
    OrchestrationResult,
    TurnContext,
    TurnOutcome,
)
from turnloop.domain.ports.repositories import UnitOfWorkFactory

logger = logging.getLogger(__name__)

ADMIN_CANCEL_MESSAGE = "The request was cancelled by an administrator."


class ChatOutcome(str, Enum):
    """Outcome reported to the caller of an inbound operation."""

    SUCCESS_COMPLETED = "success_completed"
    SUCCESS_PROCESSING = "success_processing"
    SUCCESS_AWAITING_CONFIRMATION = "success_awaiting_confirmation"
    FAILURE = "failure"


_OUTCOME_MAP = {
    TurnOutcome.COMPLETED: ChatOutcome.SUCCESS_COMPLETED,
    TurnOutcome.QUEUED_FOLLOWUP: ChatOutcome.SUCCESS_PROCESSING,
    TurnOutcome.QUEUED_ACTION: ChatOutcome.SUCCESS_PROCESSING,
    TurnOutcome.AWAITING_CONFIRMATION: ChatOutcome.SUCCESS_AWAITING_CONFIRMATION,
    TurnOutcome.FAILED: ChatOutcome.FAILURE,
    TurnOutcome.STALE: ChatOutcome.SUCCESS_PROCESSING,
    TurnOutcome.APPROVAL_RECORDED: ChatOutcome.SUCCESS_PROCESSING,
}


@dataclass
class ChatResponse:
    outcome: ChatOutcome
    session_id: str
    turn_identifier: Optional[str] = None
    message_id: Optional[str] = None
    content: Optional[str] = None
    approval_request_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_result(cls, result: OrchestrationResult) -> "ChatResponse":
        return cls(
            outcome=_OUTCOME_MAP[result.outcome],
            session_id=result.session_id,
            turn_identifier=result.turn_identifier,
            message_id=result.message_id,
            content=result.content,
            approval_request_id=result.approval_request_id,
            error_code=result.error_code.value if result.error_code else None,
            error_message=result.error_message,
        )


@dataclass
class SessionView:
    """What a client needs to render a session header."""

    session_id: str
    agent_definition_id: str
    agent_developer_name: str
    processing_status: str
    current_turn_identifier: Optional[str] = None
    current_step_description: Optional[str] = None
    page_record_id: Optional[str] = None
    welcome_message: Optional[str] = None


class ChatService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        lifecycle: TurnLifecycleService,
        resolver: CapabilityResolver,
        loop: LLMInteractionLoop,
        core: OrchestrationCore,
        history_page_size: int = 25,
        error_message_max_length: int = 255,
    ) -> None:
        self._uow_factory = uow_factory
        self._lifecycle = lifecycle
        self._resolver = resolver
        self._loop = loop
        self._core = core
        self._history_page_size = history_page_size
        self._error_message_max_length = error_message_max_length

    # === Sessions ===

    async def create_session(
        self,
        user_id: str,
        page_record_id: Optional[str] = None,
        agent_name_hint: Optional[str] = None,
    ) -> SessionView:
        """
        Create a session bound to the hinted (or default) agent.

        Raises:
            ConfigurationError: If no active agent matches
        """
        agent = await self._resolver.resolve_agent(agent_name_hint)
        session = ChatSession(
            user_id=user_id,
            agent_definition_id=agent.id,
            page_record_id=page_record_id,
        )
        async with self._uow_factory() as uow:
            await uow.sessions.add(session)
            await uow.commit()
        logger.info(
            f"[ChatService] Created session {session.id} for user {user_id} "
            f"with agent {agent.developer_name}"
        )
        return self._view(session, agent.developer_name, agent.welcome_message)

    async def get_most_recent_session(
        self,
        user_id: str,
        agent_name_hint: Optional[str] = None,
        page_record_id: Optional[str] = None,
    ) -> Optional[SessionView]:
        agent = await self._resolver.resolve_agent(agent_name_hint)
        async with self._uow_factory() as uow:
            session = await uow.sessions.find_most_recent(user_id, agent.id, page_record_id)
        if session is None:
            return None
        return self._view(session, agent.developer_name, agent.welcome_message)

    @staticmethod
    def _view(
        session: ChatSession, developer_name: str, welcome_message: Optional[str]
    ) -> SessionView:
        return SessionView(
            session_id=session.id,
            agent_definition_id=session.agent_definition_id,
            agent_developer_name=developer_name,
            processing_status=session.processing_status.value,
            current_turn_identifier=session.current_turn_identifier,
            current_step_description=session.current_step_description,
            page_record_id=session.page_record_id,
            welcome_message=welcome_message,
        )

    # === Turns ===

    async def send_message(
        self,
        session_id: str,
        user_id: str,
        text: str,
        page_record_id: Optional[str] = None,
    ) -> ChatResponse:
        """
        Start a turn for the user's message and run its first cycle.

        Raises:
            ValueError: If the message is blank
            SessionNotFoundError: If the session does not exist or belongs to another user
            TurnInProgressError: If the previous turn is still active
        """
        if not text or not text.strip():
            raise ValueError("Message text cannot be empty")

        session = await self._lifecycle.get_session(session_id)
        if session.user_id != user_id:
            raise SessionNotFoundError(session_id)

        turn_identifier = str(uuid.uuid4())
        session = await self._lifecycle.start_turn(
            session_id, turn_identifier, STEP_THINKING, page_record_id
        )
        ctx = TurnContext(
            session_id=session.id,
            user_id=session.user_id,
            agent_definition_id=session.agent_definition_id,
            turn_identifier=turn_identifier,
            cycle=1,
            user_message=text.strip(),
            page_record_id=session.page_record_id,
        )
        result = await self._loop.run_turn(ctx)
        return ChatResponse.from_result(result)

    async def resolve_approval(
        self,
        approval_request_id: str,
        approved: bool,
        comment: Optional[str] = None,
    ) -> ChatResponse:
        result = await self._core.resolve_approval(approval_request_id, approved, comment)
        return ChatResponse.from_result(result)

    async def fail_turn(self, session_id: str, reason: Optional[str] = None) -> bool:
        """
        Administratively fail whatever turn is active.

        Queued jobs of that turn become stale and are ignored when dequeued.

        Returns:
            False when the session had no active turn
        """
        user_message = sanitize_error_detail(
            reason or ADMIN_CANCEL_MESSAGE, self._error_message_max_length
        )
        failed = await self._lifecycle.fail_turn(
            session_id,
            None,
            ErrorCode.ADMIN_CANCELLED,
            user_message,
            "administrative cancel",
        )
        if failed:
            logger.info(f"[ChatService] Session {session_id} turn cancelled: {user_message}")
        return failed

    async def handle_job(self, job: AnyTurnJob) -> OrchestrationResult:
        """Route a dequeued job to its entry point."""
        if isinstance(job, FollowUpJob):
            return await self._loop.run_follow_up(job)
        if isinstance(job, AsyncActionJob):
            return await self._core.run_async_action(job)
        raise ValueError(f"Unsupported job type: {type(job).__name__}")

    # === History ===

    async def get_history(
        self,
        session_id: str,
        limit: Optional[int] = None,
        before: Optional[datetime] = None,
    ) -> List[ChatMessage]:
        """User-visible history page: no tool messages, no empty assistant messages."""
        page_size = limit if limit and limit > 0 else self._history_page_size
        async with self._uow_factory() as uow:
            session = await uow.sessions.find_by_id(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return await uow.messages.list_history_page(session_id, page_size, before)

    async def start_over_from_message(self, session_id: str, external_id: str) -> int:
        """
        Delete the message with ``external_id`` and everything after it.

        Returns:
            Number of deleted messages

        Raises:
            SessionNotFoundError: If the session does not exist
            TurnInProgressError: If a turn is still active
            EntityNotFoundError: If no message has that external id
        """
        async with self._uow_factory() as uow:
            session = await uow.sessions.find_and_lock(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if not session.is_terminal:
                raise TurnInProgressError(session_id, session.current_turn_identifier)
            anchor = await uow.messages.find_by_external_id(session_id, external_id)
            if anchor is None:
                raise EntityNotFoundError("ChatMessage", external_id)
            deleted = await uow.messages.delete_from_sequence(session_id, anchor.sequence_number)
            await uow.commit()
        logger.info(
            f"[ChatService] Session {session_id}: removed {deleted} messages "
            f"from {external_id} onwards"
        )
        return deleted
