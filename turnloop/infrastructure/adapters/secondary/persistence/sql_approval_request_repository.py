"""
SQLAlchemy implementation of ApprovalRequestRepository.
"""

import logging

from turnloop.domain.exceptions import EntityNotFoundError
from turnloop.domain.model.approval import ApprovalRequest, ApprovalStatus
from turnloop.domain.ports.repositories.approval_request_repository import (
    ApprovalRequestRepositoryPort,
)
from turnloop.infrastructure.adapters.secondary.common.base_repository import (
    BaseRepository,
    as_utc,
    handle_db_errors,
)
from turnloop.infrastructure.adapters.secondary.persistence.models import (
    ApprovalRequest as ApprovalRequestRecord,
)

logger = logging.getLogger(__name__)


class SqlApprovalRequestRepository(
    BaseRepository[ApprovalRequest, ApprovalRequestRecord], ApprovalRequestRepositoryPort
):
    _model_class = ApprovalRequestRecord
    _entity_name = "ApprovalRequest"

    @handle_db_errors("ApprovalRequest")
    async def create(self, request: ApprovalRequest) -> ApprovalRequest:
        await self._create(request)
        logger.info(
            f"Created approval request: {request.id} capability={request.capability_name} "
            f"session={request.session_id}"
        )
        return request

    @handle_db_errors("ApprovalRequest")
    async def find_by_id(self, request_id: str) -> ApprovalRequest | None:
        return await super().find_by_id(request_id)

    @handle_db_errors("ApprovalRequest")
    async def save(self, request: ApprovalRequest) -> ApprovalRequest:
        db_record = await self._find_db_model_by_id(request.id)
        if db_record is None:
            raise EntityNotFoundError("ApprovalRequest", request.id)
        db_record.status = request.status.value
        db_record.decision_comment = request.decision_comment
        db_record.workflow_reference = request.workflow_reference
        db_record.execution_result = request.execution_result
        db_record.decided_at = request.decided_at
        await self._session.flush()
        return request

    def _to_domain(self, db_model: ApprovalRequestRecord | None) -> ApprovalRequest | None:
        if db_model is None:
            return None
        return ApprovalRequest(
            id=db_model.id,
            session_id=db_model.session_id,
            turn_identifier=db_model.turn_identifier,
            cycle=db_model.cycle,
            assistant_message_id=db_model.assistant_message_id,
            tool_call_id=db_model.tool_call_id,
            capability_name=db_model.capability_name,
            justification=db_model.justification,
            tool_arguments=db_model.tool_arguments or {},
            status=ApprovalStatus(db_model.status),
            decision_comment=db_model.decision_comment,
            workflow_reference=db_model.workflow_reference,
            execution_result=db_model.execution_result,
            created_at=as_utc(db_model.created_at),
            decided_at=as_utc(db_model.decided_at),
        )

    def _to_db(self, domain_entity: ApprovalRequest) -> ApprovalRequestRecord:
        return ApprovalRequestRecord(
            id=domain_entity.id,
            session_id=domain_entity.session_id,
            turn_identifier=domain_entity.turn_identifier,
            cycle=domain_entity.cycle,
            assistant_message_id=domain_entity.assistant_message_id,
            tool_call_id=domain_entity.tool_call_id,
            capability_name=domain_entity.capability_name,
            justification=domain_entity.justification,
            tool_arguments=domain_entity.tool_arguments,
            status=domain_entity.status.value,
            decision_comment=domain_entity.decision_comment,
            workflow_reference=domain_entity.workflow_reference,
            execution_result=domain_entity.execution_result,
            created_at=domain_entity.created_at,
            decided_at=domain_entity.decided_at,
        )
