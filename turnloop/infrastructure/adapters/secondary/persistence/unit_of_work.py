"""
SQLAlchemy unit of work: one AsyncSession, one transaction.
"""

import logging
from types import TracebackType

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from turnloop.domain.exceptions import TransactionError
from turnloop.domain.ports.repositories.unit_of_work import UnitOfWorkPort
from turnloop.infrastructure.adapters.secondary.persistence.sql_approval_request_repository import (
    SqlApprovalRequestRepository,
)
from turnloop.infrastructure.adapters.secondary.persistence.sql_capability_repository import (
    SqlCapabilityRepository,
)
from turnloop.infrastructure.adapters.secondary.persistence.sql_chat_session_repository import (
    SqlChatSessionRepository,
)
from turnloop.infrastructure.adapters.secondary.persistence.sql_message_store import (
    SqlMessageStore,
)

logger = logging.getLogger(__name__)


class SqlUnitOfWork(UnitOfWorkPort):
    """
    Bundles the repositories over a single database session.

    Example:
        async with SqlUnitOfWork(session_factory) as uow:
            await uow.messages.append(message)
            await uow.commit()
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._session: AsyncSession | None = None

    async def __aenter__(self) -> "SqlUnitOfWork":
        self._session = self._session_factory()
        self.sessions = SqlChatSessionRepository(self._session)
        self.messages = SqlMessageStore(self._session)
        self.approvals = SqlApprovalRequestRepository(self._session)
        self.capabilities = SqlCapabilityRepository(self._session)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            if self._session.in_transaction():
                await self._session.rollback()
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            await self._session.rollback()
            logger.error(f"[UnitOfWork] Commit failed: {e}")
            raise TransactionError(
                operation="commit",
                message=f"Transaction failed: {e!s}",
                original_error=e,
            ) from e

    async def rollback(self) -> None:
        await self._session.rollback()
