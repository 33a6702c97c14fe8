"""Turn Lifecycle Service - the session's turn state machine under row locking.

Every bookkeeping change to a session happens inside ``locked()``:

1. Open a unit of work and ``SELECT ... FOR UPDATE`` the session
2. Compare the persisted turn (and optionally status / job handle) with
   what the caller holds in hand
3. If they differ the work is stale: nothing is written
4. Otherwise the caller mutates, the session is saved with a version
   compare-and-swap and the transaction commits

LLM calls and action executions never run inside ``locked()``.
Completion events are published after commit, at most once, and a
publishing failure is only logged.
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from turnloop.domain.events import TurnCompletedEvent, TurnDomainEvent
from turnloop.domain.exceptions import (
    ErrorCode,
    SessionNotFoundError,
    TurnInProgressError,
    sanitize_error_detail,
)
from turnloop.domain.model.message import ChatMessage
from turnloop.domain.model.session import ChatSession, ProcessingStatus
from turnloop.domain.ports.repositories import UnitOfWorkFactory, UnitOfWorkPort
from turnloop.domain.ports.services import TurnNotificationPort

logger = logging.getLogger(__name__)

_ANY_JOB = object()


@dataclass
class TurnGuard:
    """
    Handle for one locked bookkeeping transaction.

    Attributes:
        uow: Unit of work holding the session lock
        session: The locked session (mutate through its transition methods)
        stale: True when the caller's view no longer matches; writes are discarded
        event: Completion event to publish after commit, set by mark_* helpers
    """

    uow: UnitOfWorkPort
    session: ChatSession
    stale: bool
    event: Optional[TurnDomainEvent] = None


class TurnLifecycleService:
    """Owns every processing-status transition of a chat session."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        notifier: Optional[TurnNotificationPort] = None,
        error_message_max_length: int = 255,
        error_detail_max_length: int = 32000,
    ) -> None:
        self._uow_factory = uow_factory
        self._notifier = notifier
        self._error_message_max_length = error_message_max_length
        self._error_detail_max_length = error_detail_max_length

    @asynccontextmanager
    async def locked(
        self,
        session_id: str,
        turn_identifier: Optional[str],
        *,
        expected_statuses: Optional[Iterable[ProcessingStatus]] = None,
        expected_job_id: object = _ANY_JOB,
    ) -> AsyncIterator[TurnGuard]:
        """
        Lock the session and validate the caller's in-hand turn.

        Args:
            session_id: Session to lock
            turn_identifier: Turn the caller holds; None accepts any active turn
            expected_statuses: Statuses the caller requires, if any
            expected_job_id: Job handle the caller requires, if given

        Yields:
            TurnGuard. Callers must check ``guard.stale`` before writing.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        async with self._uow_factory() as uow:
            session = await uow.sessions.find_and_lock(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            reason = self._stale_reason(session, turn_identifier, expected_statuses, expected_job_id)
            if reason:
                logger.info(f"[TurnLifecycle] Stale work on session {session_id}: {reason}")
            guard = TurnGuard(uow=uow, session=session, stale=reason is not None)
            yield guard
            if guard.stale:
                return
            await uow.sessions.save(session)
            await uow.commit()
        if guard.event is not None:
            await self.notify(guard.event)

    @staticmethod
    def _stale_reason(
        session: ChatSession,
        turn_identifier: Optional[str],
        expected_statuses: Optional[Iterable[ProcessingStatus]],
        expected_job_id: object,
    ) -> Optional[str]:
        if session.is_terminal:
            return f"session is {session.processing_status.value}"
        if turn_identifier is not None and not session.owns_turn(turn_identifier):
            return f"turn {turn_identifier} is not current ({session.current_turn_identifier})"
        if expected_statuses is not None and session.processing_status not in set(expected_statuses):
            return f"status is {session.processing_status.value}"
        if expected_job_id is not _ANY_JOB and session.current_job_id != expected_job_id:
            return f"job {expected_job_id} is not current ({session.current_job_id})"
        return None

    async def get_session(self, session_id: str) -> ChatSession:
        async with self._uow_factory() as uow:
            session = await uow.sessions.find_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def start_turn(
        self,
        session_id: str,
        turn_identifier: str,
        step_description: Optional[str] = None,
        page_record_id: Optional[str] = None,
    ) -> ChatSession:
        """
        Move a terminal session to PROCESSING for a new turn.

        Raises:
            SessionNotFoundError: If the session does not exist
            TurnInProgressError: If another turn is still active
        """
        async with self._uow_factory() as uow:
            session = await uow.sessions.find_and_lock(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if not session.is_terminal:
                raise TurnInProgressError(session_id, session.current_turn_identifier)
            session.start_turn(turn_identifier, step_description)
            if page_record_id:
                session.page_record_id = page_record_id
            await uow.sessions.save(session)
            await uow.commit()
        logger.info(f"[TurnLifecycle] Started turn {turn_identifier} on session {session_id}")
        return session

    async def transition(
        self,
        session_id: str,
        turn_identifier: str,
        new_status: ProcessingStatus,
        *,
        job_id: Optional[str] = None,
        step_description: Optional[str] = None,
        expected_statuses: Optional[Iterable[ProcessingStatus]] = None,
        expected_job_id: object = _ANY_JOB,
    ) -> bool:
        """
        Move the current turn to another non-terminal status.

        Returns:
            False when the work was stale and nothing changed
        """
        async with self.locked(
            session_id,
            turn_identifier,
            expected_statuses=expected_statuses,
            expected_job_id=expected_job_id,
        ) as guard:
            if guard.stale:
                return False
            guard.session.move_to(new_status, job_id=job_id, step_description=step_description)
        logger.info(
            f"[TurnLifecycle] Session {session_id} turn {turn_identifier} -> {new_status.value}"
        )
        return True

    async def claim_job(
        self,
        session_id: str,
        turn_identifier: str,
        job_id: str,
        awaiting_status: ProcessingStatus,
        step_description: Optional[str] = None,
    ) -> bool:
        """
        Claim a queued job: move the turn from ``awaiting_status`` to PROCESSING.

        The job handle stays on the session while the job runs, so a
        redelivered entry whose claim already committed (the worker died
        mid-cycle) claims the turn again instead of being dropped.

        Returns:
            False when the job is stale
        """
        async with self.locked(
            session_id,
            turn_identifier,
            expected_statuses=(awaiting_status, ProcessingStatus.PROCESSING),
            expected_job_id=job_id,
        ) as guard:
            if guard.stale:
                return False
            if guard.session.processing_status == ProcessingStatus.PROCESSING:
                logger.warning(
                    f"[TurnLifecycle] Job {job_id} redelivered for session {session_id}; "
                    f"resuming turn {turn_identifier}"
                )
                guard.stale = True
                return True
            guard.session.move_to(
                ProcessingStatus.PROCESSING, job_id=job_id, step_description=step_description
            )
        logger.info(f"[TurnLifecycle] Session {session_id} claimed job {job_id}")
        return True

    async def complete_turn(
        self,
        session_id: str,
        turn_identifier: str,
        final_message: Optional[ChatMessage] = None,
    ) -> bool:
        async with self.locked(session_id, turn_identifier) as guard:
            if guard.stale:
                return False
            self.mark_completed(guard, final_message)
        return True

    async def fail_turn(
        self,
        session_id: str,
        turn_identifier: Optional[str],
        code: ErrorCode,
        user_message: str,
        detail: Optional[str] = None,
        *,
        expected_job_id: object = _ANY_JOB,
    ) -> bool:
        """
        Fail the active turn.

        Passing ``turn_identifier=None`` fails whatever turn is active
        (administrative cancel). In-flight jobs of that turn become stale.

        Returns:
            False when there was nothing to fail
        """
        async with self.locked(session_id, turn_identifier, expected_job_id=expected_job_id) as guard:
            if guard.stale:
                return False
            self.mark_failed(guard, code, user_message, detail)
        return True

    def mark_completed(self, guard: TurnGuard, final_message: Optional[ChatMessage]) -> None:
        """Complete the turn inside an open ``locked()`` block."""
        session = guard.session
        turn_identifier = session.current_turn_identifier
        session.complete()
        guard.event = TurnCompletedEvent(
            session_id=session.id,
            turn_identifier=turn_identifier,
            success=True,
            final_message_id=final_message.id if final_message else None,
            final_message_content=final_message.content if final_message else None,
        )
        logger.info(f"[TurnLifecycle] Session {session.id} turn {turn_identifier} completed")

    def mark_failed(
        self,
        guard: TurnGuard,
        code: ErrorCode,
        user_message: str,
        detail: Optional[str] = None,
    ) -> None:
        """Fail the turn inside an open ``locked()`` block."""
        session = guard.session
        turn_identifier = session.current_turn_identifier
        full_detail = f"{code.value}: {user_message}"
        if detail:
            full_detail = f"{full_detail} | {detail}"
        session.fail(sanitize_error_detail(full_detail, self._error_detail_max_length))
        guard.event = TurnCompletedEvent(
            session_id=session.id,
            turn_identifier=turn_identifier,
            success=False,
            error_code=code.value,
            error_detail=sanitize_error_detail(user_message, self._error_message_max_length),
        )
        logger.warning(
            f"[TurnLifecycle] Session {session.id} turn {turn_identifier} failed: "
            f"{code.value} {user_message}"
        )

    async def notify(self, event: TurnDomainEvent) -> None:
        """Publish an event; failures are logged and swallowed."""
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(event)
        except Exception as e:
            logger.warning(
                f"[TurnLifecycle] Failed to publish {event.event_type.value} "
                f"for session {event.session_id}: {e}"
            )
