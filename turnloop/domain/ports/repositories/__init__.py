from turnloop.domain.ports.repositories.approval_request_repository import (
    ApprovalRequestRepositoryPort,
)
from turnloop.domain.ports.repositories.capability_repository import CapabilityRepositoryPort
from turnloop.domain.ports.repositories.chat_session_repository import ChatSessionRepositoryPort
from turnloop.domain.ports.repositories.message_store import MessageStorePort
from turnloop.domain.ports.repositories.unit_of_work import UnitOfWorkFactory, UnitOfWorkPort

__all__ = [
    "ApprovalRequestRepositoryPort",
    "CapabilityRepositoryPort",
    "ChatSessionRepositoryPort",
    "MessageStorePort",
    "UnitOfWorkFactory",
    "UnitOfWorkPort",
]
