"""Prerequisite gating: only recorded successes satisfy a prerequisite."""

import logging
from typing import List

from turnloop.domain.model.capability import Capability, PrerequisiteScope
from turnloop.domain.ports.repositories import UnitOfWorkFactory

logger = logging.getLogger(__name__)


class PrerequisiteChecker:
    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def find_missing(
        self,
        capability: Capability,
        session_id: str,
        turn_identifier: str,
    ) -> List[str]:
        """
        Prerequisites of ``capability`` without a successful tool result.

        Turn scope only counts successes recorded in ``turn_identifier``;
        session scope counts any success in the session.

        Returns:
            Missing capability names in declaration order
        """
        if not capability.has_prerequisites:
            return []
        scope_turn = (
            turn_identifier
            if capability.prerequisite_validation_scope == PrerequisiteScope.TURN
            else None
        )
        async with self._uow_factory() as uow:
            succeeded = await uow.messages.find_successful_capability_names(session_id, scope_turn)
        missing = [name for name in capability.execution_prerequisites if name not in succeeded]
        if missing:
            logger.info(
                f"[Prerequisites] {capability.name} blocked in session {session_id}: "
                f"missing {missing} (scope={capability.prerequisite_validation_scope.value})"
            )
        return missing
