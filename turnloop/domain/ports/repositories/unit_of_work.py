"""
Unit of work port.

One unit of work is one database transaction. Repositories obtained from
it share that transaction. Leaving the ``async with`` block without calling
``commit`` rolls back.

Usage:
    async with uow_factory() as uow:
        session = await uow.sessions.find_and_lock(session_id)
        ...
        await uow.commit()
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from types import TracebackType

from turnloop.domain.ports.repositories.approval_request_repository import (
    ApprovalRequestRepositoryPort,
)
from turnloop.domain.ports.repositories.capability_repository import CapabilityRepositoryPort
from turnloop.domain.ports.repositories.chat_session_repository import ChatSessionRepositoryPort
from turnloop.domain.ports.repositories.message_store import MessageStorePort


class UnitOfWorkPort(ABC):
    sessions: ChatSessionRepositoryPort
    messages: MessageStorePort
    approvals: ApprovalRequestRepositoryPort
    capabilities: CapabilityRepositoryPort

    @abstractmethod
    async def __aenter__(self) -> "UnitOfWorkPort": ...

    @abstractmethod
    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWorkPort]
