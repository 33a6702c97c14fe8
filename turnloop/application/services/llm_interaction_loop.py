"""LLM Interaction Loop - one LLM round-trip per cycle.

assemble context -> call the adapter -> hand the result to the core.
The adapter call never runs while the session row is locked.
"""

import logging
from typing import Optional

from turnloop.application.services.capability_resolver import CapabilityResolver, ResolutionCache
from turnloop.application.services.context_assembler import ContextAssembler
from turnloop.application.services.orchestration_core import STEP_THINKING, OrchestrationCore
from turnloop.application.services.turn_lifecycle import TurnLifecycleService
from turnloop.domain.exceptions import (
    GENERIC_FAILURE_MESSAGE,
    OrchestrationError,
    UnexpectedOrchestrationError,
)
from turnloop.domain.model.llm import LLMRequestConfig, ProviderResult
from turnloop.domain.model.session import ProcessingStatus
from turnloop.domain.model.turn import FollowUpJob, OrchestrationResult, TurnContext, TurnOutcome
from turnloop.domain.ports.services import LLMAdapterPort

logger = logging.getLogger(__name__)


class LLMInteractionLoop:
    def __init__(
        self,
        lifecycle: TurnLifecycleService,
        resolver: CapabilityResolver,
        assembler: ContextAssembler,
        llm_adapter: LLMAdapterPort,
        core: OrchestrationCore,
    ) -> None:
        self._lifecycle = lifecycle
        self._resolver = resolver
        self._assembler = assembler
        self._llm_adapter = llm_adapter
        self._core = core

    async def run_turn(
        self, ctx: TurnContext, cache: Optional[ResolutionCache] = None
    ) -> OrchestrationResult:
        """
        Run one cycle of the turn.

        Returns:
            The decision of the orchestration core, or STALE when the
            turn is no longer current
        """
        cache = cache if cache is not None else ResolutionCache()

        session = await self._lifecycle.get_session(ctx.session_id)
        if session.is_terminal or not session.owns_turn(ctx.turn_identifier):
            logger.info(
                f"[LLMLoop] Turn {ctx.turn_identifier} of session {ctx.session_id} "
                f"is no longer current; skipping LLM call"
            )
            return OrchestrationResult(
                outcome=TurnOutcome.STALE,
                session_id=ctx.session_id,
                turn_identifier=ctx.turn_identifier,
                cycle=ctx.cycle,
            )

        try:
            agent = await self._resolver.get_agent(ctx.agent_definition_id, cache)
            capabilities = await self._resolver.list_active(agent.id, cache)
            assembled = await self._assembler.assemble(
                session,
                agent,
                capabilities,
                ctx.turn_identifier,
                pending_user_message=ctx.user_message if ctx.cycle == 1 else None,
            )
            config = LLMRequestConfig.from_dict(agent.llm_configuration)
        except OrchestrationError as e:
            logger.warning(f"[LLMLoop] Context assembly failed: {e.internal_detail}")
            return await self._core.fail(ctx, e)
        except Exception as e:
            logger.error(
                f"[LLMLoop] Unexpected error assembling context for session {ctx.session_id}: {e}",
                exc_info=True,
            )
            return await self._core.fail(
                ctx,
                UnexpectedOrchestrationError(
                    GENERIC_FAILURE_MESSAGE, detail=f"{type(e).__name__}: {e}"
                ),
            )

        logger.debug(
            f"[LLMLoop] Session {ctx.session_id} cycle {ctx.cycle}: "
            f"{len(assembled.messages)} messages, {len(assembled.tools)} tools"
        )
        try:
            result = await self._llm_adapter.send(assembled.messages, assembled.tools, config)
        except Exception as e:
            logger.error(
                f"[LLMLoop] LLM adapter raised for session {ctx.session_id}: {e}",
                exc_info=True,
            )
            result = ProviderResult.failed(f"{type(e).__name__}: {e}", error_code="adapter_exception")

        return await self._core.handle_llm_result(ctx, result, cache)

    async def run_follow_up(self, job: FollowUpJob) -> OrchestrationResult:
        """Claim a queued follow-up and run its cycle."""
        session = await self._lifecycle.get_session(job.session_id)
        ctx = TurnContext(
            session_id=session.id,
            user_id=session.user_id,
            agent_definition_id=session.agent_definition_id,
            turn_identifier=job.turn_identifier,
            cycle=job.cycle,
            page_record_id=session.page_record_id,
        )
        claimed = await self._lifecycle.claim_job(
            job.session_id,
            job.turn_identifier,
            job.job_id,
            ProcessingStatus.AWAITING_FOLLOWUP,
            step_description=STEP_THINKING,
        )
        if not claimed:
            logger.info(f"[LLMLoop] Ignoring stale follow-up job {job.job_id}")
            return OrchestrationResult(
                outcome=TurnOutcome.STALE,
                session_id=job.session_id,
                turn_identifier=job.turn_identifier,
                cycle=job.cycle,
            )
        return await self.run_turn(ctx)
