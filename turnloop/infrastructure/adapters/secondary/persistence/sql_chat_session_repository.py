"""
SQLAlchemy implementation of ChatSessionRepository.
"""

import logging

from sqlalchemy import select, update

from turnloop.domain.exceptions import OptimisticLockError
from turnloop.domain.model.session import ChatSession, ProcessingStatus
from turnloop.domain.ports.repositories.chat_session_repository import ChatSessionRepositoryPort
from turnloop.infrastructure.adapters.secondary.common.base_repository import (
    BaseRepository,
    as_utc,
    handle_db_errors,
)
from turnloop.infrastructure.adapters.secondary.persistence.models import (
    ChatSession as ChatSessionRecord,
)

logger = logging.getLogger(__name__)


class SqlChatSessionRepository(
    BaseRepository[ChatSession, ChatSessionRecord], ChatSessionRepositoryPort
):
    _model_class = ChatSessionRecord
    _entity_name = "ChatSession"

    @handle_db_errors("ChatSession")
    async def add(self, session: ChatSession) -> ChatSession:
        return await self._create(session)

    @handle_db_errors("ChatSession")
    async def find_by_id(self, session_id: str) -> ChatSession | None:
        return await super().find_by_id(session_id)

    @handle_db_errors("ChatSession")
    async def find_and_lock(self, session_id: str) -> ChatSession | None:
        # populate_existing: a row already in the identity map must be refreshed
        # with the state read under the lock.
        query = (
            select(ChatSessionRecord)
            .where(ChatSessionRecord.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(query)
        return self._to_domain(result.scalar_one_or_none())

    @handle_db_errors("ChatSession")
    async def save(self, session: ChatSession) -> ChatSession:
        expected_version = session.version
        result = await self._session.execute(
            update(ChatSessionRecord)
            .where(
                ChatSessionRecord.id == session.id,
                ChatSessionRecord.version == expected_version,
            )
            .values(
                page_record_id=session.page_record_id,
                processing_status=session.processing_status.value,
                current_turn_identifier=session.current_turn_identifier,
                current_job_id=session.current_job_id,
                current_step_description=session.current_step_description,
                last_processing_error=session.last_processing_error,
                summary=session.summary,
                last_activity_at=session.last_activity_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise OptimisticLockError("ChatSession", session.id, expected_version)
        session.version = expected_version + 1
        logger.debug(
            f"Saved session {session.id} status={session.processing_status.value} "
            f"turn={session.current_turn_identifier} version={session.version}"
        )
        return session

    @handle_db_errors("ChatSession")
    async def find_most_recent(
        self,
        user_id: str,
        agent_definition_id: str,
        page_record_id: str | None = None,
    ) -> ChatSession | None:
        query = select(ChatSessionRecord).where(
            ChatSessionRecord.user_id == user_id,
            ChatSessionRecord.agent_definition_id == agent_definition_id,
        )
        if page_record_id:
            query = query.where(ChatSessionRecord.page_record_id == page_record_id)
        query = query.order_by(
            ChatSessionRecord.last_activity_at.desc(), ChatSessionRecord.created_at.desc()
        ).limit(1)
        result = await self._session.execute(query)
        return self._to_domain(result.scalar_one_or_none())

    def _to_domain(self, db_model: ChatSessionRecord | None) -> ChatSession | None:
        if db_model is None:
            return None
        return ChatSession(
            id=db_model.id,
            user_id=db_model.user_id,
            agent_definition_id=db_model.agent_definition_id,
            page_record_id=db_model.page_record_id,
            processing_status=ProcessingStatus(db_model.processing_status),
            current_turn_identifier=db_model.current_turn_identifier,
            current_job_id=db_model.current_job_id,
            current_step_description=db_model.current_step_description,
            last_processing_error=db_model.last_processing_error,
            summary=db_model.summary,
            version=db_model.version,
            created_at=as_utc(db_model.created_at),
            last_activity_at=as_utc(db_model.last_activity_at),
        )

    def _to_db(self, domain_entity: ChatSession) -> ChatSessionRecord:
        return ChatSessionRecord(
            id=domain_entity.id,
            user_id=domain_entity.user_id,
            agent_definition_id=domain_entity.agent_definition_id,
            page_record_id=domain_entity.page_record_id,
            processing_status=domain_entity.processing_status.value,
            current_turn_identifier=domain_entity.current_turn_identifier,
            current_job_id=domain_entity.current_job_id,
            current_step_description=domain_entity.current_step_description,
            last_processing_error=domain_entity.last_processing_error,
            summary=domain_entity.summary,
            version=domain_entity.version,
            created_at=domain_entity.created_at,
            last_activity_at=domain_entity.last_activity_at,
        )
