"""
SQLAlchemy implementation of the MessageStore.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update

from turnloop.domain.model.message import ChatMessage, MessageRole, ToolCallRequest
from turnloop.domain.ports.repositories.message_store import MessageStorePort
from turnloop.infrastructure.adapters.secondary.common.base_repository import (
    BaseRepository,
    as_utc,
    handle_db_errors,
)
from turnloop.infrastructure.adapters.secondary.persistence.models import (
    ChatMessage as ChatMessageRecord,
)

logger = logging.getLogger(__name__)


class SqlMessageStore(BaseRepository[ChatMessage, ChatMessageRecord], MessageStorePort):
    _model_class = ChatMessageRecord
    _entity_name = "ChatMessage"

    @handle_db_errors("ChatMessage")
    async def append(self, message: ChatMessage) -> ChatMessage:
        result = await self._session.execute(
            select(func.max(ChatMessageRecord.sequence_number)).where(
                ChatMessageRecord.session_id == message.session_id
            )
        )
        message.sequence_number = (result.scalar() or 0) + 1
        await self._create(message)
        logger.debug(
            f"Appended {message.role.value} message {message.id} "
            f"session={message.session_id} seq={message.sequence_number}"
        )
        return message

    @handle_db_errors("ChatMessage")
    async def find_by_id(self, message_id: str) -> ChatMessage | None:
        return await super().find_by_id(message_id)

    @handle_db_errors("ChatMessage")
    async def find_by_external_id(self, session_id: str, external_id: str) -> ChatMessage | None:
        result = await self._session.execute(
            select(ChatMessageRecord).where(
                ChatMessageRecord.session_id == session_id,
                ChatMessageRecord.external_id == external_id,
            )
        )
        return self._to_domain(result.scalar_one_or_none())

    @handle_db_errors("ChatMessage")
    async def find_tool_result(self, session_id: str, tool_call_id: str) -> ChatMessage | None:
        result = await self._session.execute(
            select(ChatMessageRecord)
            .where(
                ChatMessageRecord.session_id == session_id,
                ChatMessageRecord.role == MessageRole.TOOL.value,
                ChatMessageRecord.tool_call_id == tool_call_id,
            )
            .order_by(ChatMessageRecord.sequence_number)
            .limit(1)
        )
        return self._to_domain(result.scalar_one_or_none())

    @handle_db_errors("ChatMessage")
    async def list_for_session(self, session_id: str) -> list[ChatMessage]:
        return await self._fetch_all(
            select(ChatMessageRecord)
            .where(ChatMessageRecord.session_id == session_id)
            .order_by(ChatMessageRecord.sequence_number)
        )

    @handle_db_errors("ChatMessage")
    async def list_recent(self, session_id: str, limit: int) -> list[ChatMessage]:
        if limit <= 0:
            return []
        messages = await self._fetch_all(
            select(ChatMessageRecord)
            .where(ChatMessageRecord.session_id == session_id)
            .order_by(ChatMessageRecord.sequence_number.desc())
            .limit(limit)
        )
        messages.reverse()
        return messages

    @handle_db_errors("ChatMessage")
    async def list_for_turn(self, session_id: str, turn_identifier: str) -> list[ChatMessage]:
        return await self._fetch_all(
            select(ChatMessageRecord)
            .where(
                ChatMessageRecord.session_id == session_id,
                ChatMessageRecord.turn_identifier == turn_identifier,
            )
            .order_by(ChatMessageRecord.sequence_number)
        )

    @handle_db_errors("ChatMessage")
    async def find_successful_capability_names(
        self,
        session_id: str,
        turn_identifier: str | None = None,
    ) -> set[str]:
        query = select(ChatMessageRecord.capability_name).where(
            ChatMessageRecord.session_id == session_id,
            ChatMessageRecord.role == MessageRole.TOOL.value,
            ChatMessageRecord.is_success.is_(True),
            ChatMessageRecord.capability_name.is_not(None),
        )
        if turn_identifier is not None:
            query = query.where(ChatMessageRecord.turn_identifier == turn_identifier)
        result = await self._session.execute(query.distinct())
        return {name for name in result.scalars().all() if name}

    @handle_db_errors("ChatMessage")
    async def list_history_page(
        self,
        session_id: str,
        limit: int,
        before: datetime | None = None,
    ) -> list[ChatMessage]:
        if limit <= 0:
            return []
        has_content = and_(
            ChatMessageRecord.content.is_not(None),
            func.length(func.trim(ChatMessageRecord.content)) > 0,
        )
        query = select(ChatMessageRecord).where(
            ChatMessageRecord.session_id == session_id,
            ChatMessageRecord.role != MessageRole.TOOL.value,
            or_(ChatMessageRecord.role != MessageRole.ASSISTANT.value, has_content),
        )
        if before is not None:
            query = query.where(ChatMessageRecord.created_at < before)
        messages = await self._fetch_all(
            query.order_by(ChatMessageRecord.sequence_number.desc()).limit(limit)
        )
        messages.reverse()
        return messages

    @handle_db_errors("ChatMessage")
    async def update_pending_confirmation(self, message_id: str, payload: dict | None) -> bool:
        result = await self._session.execute(
            update(ChatMessageRecord)
            .where(ChatMessageRecord.id == message_id)
            .values(pending_confirmation=payload)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    @handle_db_errors("ChatMessage")
    async def delete_from_sequence(self, session_id: str, sequence_number: int) -> int:
        result = await self._session.execute(
            delete(ChatMessageRecord)
            .where(
                ChatMessageRecord.session_id == session_id,
                ChatMessageRecord.sequence_number >= sequence_number,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            f"Deleted {result.rowcount} messages from seq {sequence_number} in session {session_id}"
        )
        return result.rowcount

    def _to_domain(self, db_model: ChatMessageRecord | None) -> ChatMessage | None:
        if db_model is None:
            return None
        return ChatMessage(
            id=db_model.id,
            session_id=db_model.session_id,
            turn_identifier=db_model.turn_identifier,
            role=MessageRole(db_model.role),
            content=db_model.content,
            tool_calls=[ToolCallRequest.from_dict(c) for c in (db_model.tool_calls or [])],
            tool_call_id=db_model.tool_call_id,
            parent_message_id=db_model.parent_message_id,
            pending_confirmation=db_model.pending_confirmation,
            capability_name=db_model.capability_name,
            is_success=db_model.is_success,
            record_context_id=db_model.record_context_id,
            record_context_data=db_model.record_context_data,
            external_id=db_model.external_id,
            processing_duration_ms=db_model.processing_duration_ms,
            diagnostic_details=db_model.diagnostic_details,
            token_usage=db_model.token_usage or {},
            sequence_number=db_model.sequence_number,
            created_at=as_utc(db_model.created_at),
        )

    def _to_db(self, domain_entity: ChatMessage) -> ChatMessageRecord:
        return ChatMessageRecord(
            id=domain_entity.id,
            session_id=domain_entity.session_id,
            turn_identifier=domain_entity.turn_identifier,
            role=domain_entity.role.value,
            content=domain_entity.content,
            tool_calls=[c.to_dict() for c in domain_entity.tool_calls] or None,
            tool_call_id=domain_entity.tool_call_id,
            parent_message_id=domain_entity.parent_message_id,
            pending_confirmation=domain_entity.pending_confirmation,
            capability_name=domain_entity.capability_name,
            is_success=domain_entity.is_success,
            record_context_id=domain_entity.record_context_id,
            record_context_data=domain_entity.record_context_data,
            external_id=domain_entity.external_id,
            processing_duration_ms=domain_entity.processing_duration_ms,
            diagnostic_details=domain_entity.diagnostic_details,
            token_usage=domain_entity.token_usage or None,
            sequence_number=domain_entity.sequence_number,
            created_at=domain_entity.created_at,
        )
