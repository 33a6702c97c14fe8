"""Orchestration Core - decides and executes the next step of a turn.

Entry points:
- handle_llm_result: after every LLM round-trip
- run_async_action: a queued action job was dequeued
- resolve_approval: a human decided on a gated tool call

Decision steps after an LLM result:
1. Provider failure -> fail the turn (LLM_CALL_FAILED)
2. Persist the user message (idempotent per turn)
3. Text only -> persist the answer and complete the turn
4. Tool call -> only the first call is processed; resolve its capability
5. Prerequisites missing -> synthetic PREREQUISITE_NOT_MET result, continue
6. Approval required -> pause for a human (workflow) or record
   pending_approval and continue (inline)
7. Execute asynchronously (queue a job) or synchronously (record result)
8. Continue: fail on the turn limit, else queue a follow-up LLM call

Every write goes through TurnLifecycleService.locked(), so work whose turn
is no longer current is discarded. Decision errors are caught here and
converted into a failed turn.
"""

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Dict, List, Optional

from turnloop.application.services.capability_resolver import CapabilityResolver, ResolutionCache
from turnloop.application.services.prerequisite_checker import PrerequisiteChecker
from turnloop.application.services.turn_lifecycle import TurnLifecycleService
from turnloop.domain.events import TransientMessageEvent
from turnloop.domain.exceptions import (
    GENERIC_FAILURE_MESSAGE,
    ActionExecutionError,
    ContextIntegrityError,
    EntityNotFoundError,
    ErrorCode,
    MaxTurnsExceededError,
    OrchestrationError,
    PrerequisiteNotMetError,
    ProviderError,
    ToolValidationError,
    UnexpectedOrchestrationError,
    sanitize_error_detail,
)
from turnloop.domain.model.action import ActionContext, ActionResult
from turnloop.domain.model.approval import ApprovalRequest
from turnloop.domain.model.capability import CONFIRMATION_ARGUMENT, Capability
from turnloop.domain.model.llm import ContentResponse, ProviderResult, ToolCallResponse
from turnloop.domain.model.message import ChatMessage, MessageRole, ToolCallRequest
from turnloop.domain.model.session import ProcessingStatus
from turnloop.domain.model.turn import (
    AsyncActionJob,
    FollowUpJob,
    OrchestrationResult,
    TurnContext,
    TurnJob,
    TurnOutcome,
)
from turnloop.domain.ports.repositories import UnitOfWorkFactory
from turnloop.domain.ports.services import (
    ActionExecutorPort,
    ApprovalWorkflowPort,
    DispatcherPort,
)

logger = logging.getLogger(__name__)

STEP_THINKING = "Thinking"
STEP_AWAITING_APPROVAL = "Waiting for approval"

APPROVAL_MODE_WORKFLOW = "workflow"
APPROVAL_MODE_INLINE = "inline"

_PROCESSING = (ProcessingStatus.PROCESSING,)


def running_step(capability_name: str) -> str:
    return f"Running {capability_name}"


class OrchestrationCore:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        lifecycle: TurnLifecycleService,
        resolver: CapabilityResolver,
        prerequisite_checker: PrerequisiteChecker,
        action_executor: ActionExecutorPort,
        dispatcher: DispatcherPort,
        approval_workflow: ApprovalWorkflowPort,
        max_turns: int = 5,
        approval_mode: str = APPROVAL_MODE_WORKFLOW,
        diagnostic_max_length: int = 32000,
    ) -> None:
        self._uow_factory = uow_factory
        self._lifecycle = lifecycle
        self._resolver = resolver
        self._prerequisites = prerequisite_checker
        self._action_executor = action_executor
        self._dispatcher = dispatcher
        self._approval_workflow = approval_workflow
        self._max_turns = max_turns
        self._approval_mode = approval_mode
        self._diagnostic_max_length = diagnostic_max_length

    # === Entry points ===

    async def handle_llm_result(
        self,
        ctx: TurnContext,
        result: ProviderResult,
        cache: Optional[ResolutionCache] = None,
    ) -> OrchestrationResult:
        """Decide and execute the next step after an LLM round-trip."""
        cache = cache if cache is not None else ResolutionCache()
        return await self._guarded(ctx, lambda: self._handle_llm_result(ctx, result, cache))

    async def run_async_action(self, job: AsyncActionJob) -> OrchestrationResult:
        """Execute a queued action, then continue the turn."""
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
            ProcessingStatus.AWAITING_ACTION,
            step_description=running_step(job.capability_name),
        )
        if not claimed:
            logger.info(f"[Orchestration] Ignoring stale action job {job.job_id}")
            return self._stale(ctx)
        return await self._guarded(ctx, lambda: self._resume_async_action(ctx, job))

    async def resolve_approval(
        self,
        approval_request_id: str,
        approved: bool,
        comment: Optional[str] = None,
    ) -> OrchestrationResult:
        """
        Apply a human decision to a pending approval request.

        Resolving a request that is no longer pending is a no-op.

        Raises:
            EntityNotFoundError: If the request does not exist
        """
        async with self._uow_factory() as uow:
            approval = await uow.approvals.find_by_id(approval_request_id)
            if approval is None:
                raise EntityNotFoundError("ApprovalRequest", approval_request_id)
            existing_result = await uow.messages.find_tool_result(
                approval.session_id, approval.tool_call_id
            )

        session = await self._lifecycle.get_session(approval.session_id)
        ctx = TurnContext(
            session_id=session.id,
            user_id=session.user_id,
            agent_definition_id=session.agent_definition_id,
            turn_identifier=approval.turn_identifier,
            cycle=approval.cycle,
            page_record_id=session.page_record_id,
        )
        if not approval.is_pending:
            logger.info(
                f"[Orchestration] Approval {approval.id} already {approval.status.value}; ignoring"
            )
            return self._stale(ctx)

        if existing_result is not None:
            # Inline mode: the turn moved on with a pending_approval result.
            return await self._resolve_out_of_band(ctx, approval.id, approved, comment)

        async with self._lifecycle.locked(
            ctx.session_id,
            ctx.turn_identifier,
            expected_statuses=(ProcessingStatus.AWAITING_USER_CONFIRMATION,),
        ) as guard:
            if guard.stale:
                return self._stale(ctx)
            stored = await guard.uow.approvals.find_by_id(approval.id)
            if stored is None or not stored.is_pending:
                guard.stale = True
                return self._stale(ctx)
            if approved:
                stored.approve(comment)
            else:
                stored.reject(comment)
            await guard.uow.approvals.save(stored)
            await guard.uow.messages.update_pending_confirmation(stored.assistant_message_id, None)
            guard.session.move_to(
                ProcessingStatus.PROCESSING,
                step_description=running_step(stored.capability_name) if approved else STEP_THINKING,
            )
        logger.info(
            f"[Orchestration] Approval {approval.id} {'approved' if approved else 'rejected'} "
            f"for session {ctx.session_id}"
        )
        return await self._guarded(ctx, lambda: self._after_decision(ctx, stored, approved, comment))

    async def fail(self, ctx: TurnContext, error: OrchestrationError) -> OrchestrationResult:
        """Fail the turn with the error's code; stale if the turn is gone."""
        applied = await self._lifecycle.fail_turn(
            ctx.session_id, ctx.turn_identifier, error.code, error.user_message, error.detail
        )
        if not applied:
            return self._stale(ctx)
        return OrchestrationResult(
            outcome=TurnOutcome.FAILED,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            error_code=error.code,
            error_message=error.user_message,
        )

    async def _guarded(
        self,
        ctx: TurnContext,
        operation: Callable[[], Awaitable[OrchestrationResult]],
    ) -> OrchestrationResult:
        try:
            return await operation()
        except OrchestrationError as e:
            logger.warning(
                f"[Orchestration] Session {ctx.session_id} turn {ctx.turn_identifier} "
                f"cycle {ctx.cycle}: {e.internal_detail}"
            )
            return await self.fail(ctx, e)
        except Exception as e:
            logger.error(
                f"[Orchestration] Unexpected error in session {ctx.session_id} "
                f"turn {ctx.turn_identifier}: {e}",
                exc_info=True,
            )
            return await self.fail(
                ctx,
                UnexpectedOrchestrationError(
                    GENERIC_FAILURE_MESSAGE, detail=f"{type(e).__name__}: {e}"
                ),
            )

    # === LLM result ===

    async def _handle_llm_result(
        self, ctx: TurnContext, result: ProviderResult, cache: ResolutionCache
    ) -> OrchestrationResult:
        if not result.success:
            raise ProviderError(
                detail=f"{result.error_code or 'provider_error'}: {result.error_message}"
            )

        if not await self._persist_user_message(ctx):
            return self._stale(ctx)

        shape = result.response_shape()
        if isinstance(shape, ContentResponse):
            return await self._complete_with_content(ctx, shape, result)
        return await self._handle_tool_call(ctx, shape, result, cache)

    async def _persist_user_message(self, ctx: TurnContext) -> bool:
        if ctx.cycle != 1 or not ctx.user_message:
            return True
        async with self._lifecycle.locked(
            ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
        ) as guard:
            if guard.stale:
                return False
            existing = await guard.uow.messages.find_by_external_id(
                ctx.session_id, ctx.turn_identifier
            )
            if existing is None:
                await guard.uow.messages.append(
                    ChatMessage(
                        session_id=ctx.session_id,
                        turn_identifier=ctx.turn_identifier,
                        role=MessageRole.USER,
                        content=ctx.user_message,
                        external_id=ctx.turn_identifier,
                        record_context_id=ctx.page_record_id,
                    )
                )
        return True

    async def _complete_with_content(
        self, ctx: TurnContext, shape: ContentResponse, result: ProviderResult
    ) -> OrchestrationResult:
        if not shape.content or not shape.content.strip():
            raise OrchestrationError(
                "The assistant returned an empty response.",
                code=ErrorCode.EMPTY_LLM_RESPONSE,
                detail=f"model={result.model}",
            )
        message = self._assistant_message(ctx, result, content=shape.content)
        async with self._lifecycle.locked(
            ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
        ) as guard:
            if guard.stale:
                return self._stale(ctx)
            await guard.uow.messages.append(message)
            self._lifecycle.mark_completed(guard, message)
        return OrchestrationResult(
            outcome=TurnOutcome.COMPLETED,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            message_id=message.id,
            content=message.content,
        )

    async def _handle_tool_call(
        self,
        ctx: TurnContext,
        shape: ToolCallResponse,
        result: ProviderResult,
        cache: ResolutionCache,
    ) -> OrchestrationResult:
        call = shape.tool_call
        if shape.ignored_calls:
            logger.warning(
                f"[Orchestration] Session {ctx.session_id} cycle {ctx.cycle}: processing "
                f"'{call.name}' only, dropping {[c.name for c in shape.ignored_calls]}"
            )

        capability = await self._resolver.require(ctx.agent_definition_id, call.name, cache)
        assistant = self._assistant_message(ctx, result, content=shape.content, tool_calls=[call])

        try:
            arguments = call.parsed_arguments()
        except ToolValidationError as e:
            feedback = ActionResult.failure(
                call.name, ErrorCode.VALIDATION_ERROR, e.user_message, diagnostic_details=e.detail
            )
            return await self._continue(
                ctx,
                cache,
                [assistant, self._tool_result_message(ctx, assistant.id, call, feedback)],
                announce=assistant,
            )

        # Prerequisite gate
        missing = await self._prerequisites.find_missing(
            capability, ctx.session_id, ctx.turn_identifier
        )
        if missing:
            unmet = PrerequisiteNotMetError(call.name, missing)
            feedback = ActionResult.failure(
                call.name,
                unmet.code,
                f"{unmet.user_message} Call the missing tools before retrying.",
                output={"missingPrerequisites": unmet.missing},
                diagnostic_details=unmet.detail,
            )
            return await self._continue(
                ctx,
                cache,
                [assistant, self._tool_result_message(ctx, assistant.id, call, feedback)],
                announce=assistant,
            )

        # Approval gate
        if capability.requires_approval:
            return await self._request_approval(ctx, cache, capability, call, assistant, arguments)

        # Execute now or queue
        return await self._execute(ctx, cache, capability, call, assistant.id, assistant=assistant)

    # === Approvals ===

    async def _request_approval(
        self,
        ctx: TurnContext,
        cache: ResolutionCache,
        capability: Capability,
        call: ToolCallRequest,
        assistant: ChatMessage,
        arguments: Dict[str, Any],
    ) -> OrchestrationResult:
        justification = arguments.get(CONFIRMATION_ARGUMENT)
        if not isinstance(justification, str) or not justification.strip():
            raise OrchestrationError(
                "The assistant did not explain the action that needs approval.",
                code=ErrorCode.LLM_CALL_FAILED,
                detail=f"'{capability.name}' called without {CONFIRMATION_ARGUMENT}",
            )

        approval = ApprovalRequest(
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            assistant_message_id=assistant.id,
            tool_call_id=call.call_id,
            capability_name=capability.name,
            justification=justification.strip(),
            tool_arguments={k: v for k, v in arguments.items() if k != CONFIRMATION_ARGUMENT},
        )
        if self._approval_mode == APPROVAL_MODE_INLINE:
            return await self._request_inline_approval(ctx, cache, call, assistant, approval)

        assistant.pending_confirmation = {
            "approvalRequestId": approval.id,
            "capability": capability.name,
            "message": approval.justification,
            "toolCallId": call.call_id,
        }
        async with self._lifecycle.locked(
            ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
        ) as guard:
            if guard.stale:
                return self._stale(ctx)
            await guard.uow.messages.append(assistant)
            await guard.uow.approvals.create(approval)
            guard.session.move_to(
                ProcessingStatus.AWAITING_USER_CONFIRMATION,
                step_description=STEP_AWAITING_APPROVAL,
            )
        await self._announce(ctx, assistant)

        try:
            reference = await self._approval_workflow.submit(approval)
        except Exception as e:
            logger.error(
                f"[Orchestration] Approval submission failed for {approval.id} "
                f"session={ctx.session_id}: {e}"
            )
            return await self._fail_approval_submission(ctx, approval, e)

        async with self._uow_factory() as uow:
            stored = await uow.approvals.find_by_id(approval.id)
            if stored is not None:
                stored.workflow_reference = reference
                await uow.approvals.save(stored)
                await uow.commit()
        return OrchestrationResult(
            outcome=TurnOutcome.AWAITING_CONFIRMATION,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            message_id=assistant.id,
            content=assistant.content,
            approval_request_id=approval.id,
        )

    async def _fail_approval_submission(
        self, ctx: TurnContext, approval: ApprovalRequest, error: Exception
    ) -> OrchestrationResult:
        failure = OrchestrationError(
            "The approval request could not be submitted.",
            code=ErrorCode.APPROVAL_SUBMISSION_FAILED,
            detail=f"{type(error).__name__}: {error}",
        )
        async with self._lifecycle.locked(
            ctx.session_id,
            ctx.turn_identifier,
            expected_statuses=(ProcessingStatus.AWAITING_USER_CONFIRMATION,),
        ) as guard:
            if guard.stale:
                return self._stale(ctx)
            stored = await guard.uow.approvals.find_by_id(approval.id)
            if stored is not None and stored.is_pending:
                stored.mark_error(failure.detail)
                await guard.uow.approvals.save(stored)
            await guard.uow.messages.update_pending_confirmation(approval.assistant_message_id, None)
            self._lifecycle.mark_failed(guard, failure.code, failure.user_message, failure.detail)
        return OrchestrationResult(
            outcome=TurnOutcome.FAILED,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            approval_request_id=approval.id,
            error_code=failure.code,
            error_message=failure.user_message,
        )

    async def _request_inline_approval(
        self,
        ctx: TurnContext,
        cache: ResolutionCache,
        call: ToolCallRequest,
        assistant: ChatMessage,
        approval: ApprovalRequest,
    ) -> OrchestrationResult:
        async with self._lifecycle.locked(
            ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
        ) as guard:
            if guard.stale:
                return self._stale(ctx)
            await guard.uow.messages.append(assistant)
            await guard.uow.approvals.create(approval)
        await self._announce(ctx, assistant)

        status = "pending_approval"
        message = "The action was sent for approval and has not run yet. Tell the user it awaits approval."
        try:
            reference = await self._approval_workflow.submit(approval)
        except Exception as e:
            logger.error(f"[Orchestration] Inline approval submission failed for {approval.id}: {e}")
            status = "approval_submission_failed"
            message = "The action could not be sent for approval and did not run."
            async with self._uow_factory() as uow:
                stored = await uow.approvals.find_by_id(approval.id)
                if stored is not None and stored.is_pending:
                    stored.mark_error(f"{type(e).__name__}: {e}")
                    await uow.approvals.save(stored)
                    await uow.commit()
        else:
            async with self._uow_factory() as uow:
                stored = await uow.approvals.find_by_id(approval.id)
                if stored is not None:
                    stored.workflow_reference = reference
                    await uow.approvals.save(stored)
                    await uow.commit()

        content = json.dumps(
            {
                "status": status,
                "capability": approval.capability_name,
                "approvalRequestId": approval.id,
                "message": message,
            }
        )
        pending = ChatMessage(
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=call.call_id,
            parent_message_id=assistant.id,
            capability_name=approval.capability_name,
            is_success=None if status == "pending_approval" else False,
        )
        return await self._continue(ctx, cache, [pending])

    async def _after_decision(
        self,
        ctx: TurnContext,
        approval: ApprovalRequest,
        approved: bool,
        comment: Optional[str],
    ) -> OrchestrationResult:
        cache = ResolutionCache()
        call = await self._load_tool_call(ctx, approval.assistant_message_id, approval.tool_call_id)
        if approved:
            capability = await self._resolver.require(
                ctx.agent_definition_id, approval.capability_name, cache
            )
            return await self._execute(ctx, cache, capability, call, approval.assistant_message_id)

        message = "The user rejected this action. Do not retry it unless the user asks again."
        if comment:
            message = f"{message} User comment: {comment}"
        rejection = ActionResult.failure(approval.capability_name, ErrorCode.USER_REJECTED, message)
        return await self._continue(
            ctx,
            cache,
            [self._tool_result_message(ctx, approval.assistant_message_id, call, rejection)],
        )

    async def _resolve_out_of_band(
        self,
        ctx: TurnContext,
        approval_id: str,
        approved: bool,
        comment: Optional[str],
    ) -> OrchestrationResult:
        async with self._uow_factory() as uow:
            # Session row lock serializes concurrent decisions on the same request.
            await uow.sessions.find_and_lock(ctx.session_id)
            approval = await uow.approvals.find_by_id(approval_id)
            if approval is None or not approval.is_pending:
                return self._stale(ctx)
            if approved:
                approval.approve(comment)
            else:
                approval.reject(comment)
            await uow.approvals.save(approval)
            await uow.commit()

        if approved:
            call = await self._load_tool_call(ctx, approval.assistant_message_id, approval.tool_call_id)
            try:
                capability = await self._resolver.require(
                    ctx.agent_definition_id, approval.capability_name
                )
            except OrchestrationError as e:
                outcome = ActionResult.failure(
                    approval.capability_name, e.code, e.user_message, diagnostic_details=e.detail
                )
            else:
                outcome = await self._action_executor.execute(
                    capability, call.arguments, self._action_context(ctx, capability)
                )
            async with self._uow_factory() as uow:
                stored = await uow.approvals.find_by_id(approval_id)
                if stored is not None:
                    stored.execution_result = outcome.to_tool_content()
                    await uow.approvals.save(stored)
                    await uow.commit()
            logger.info(
                f"[Orchestration] Out-of-band approval {approval_id} executed "
                f"{approval.capability_name}: success={outcome.success}"
            )

        return OrchestrationResult(
            outcome=TurnOutcome.APPROVAL_RECORDED,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            approval_request_id=approval_id,
        )

    # === Execution ===

    async def _execute(
        self,
        ctx: TurnContext,
        cache: ResolutionCache,
        capability: Capability,
        call: ToolCallRequest,
        assistant_message_id: str,
        assistant: Optional[ChatMessage] = None,
    ) -> OrchestrationResult:
        """Run a capability; ``assistant`` is the not-yet-stored tool-call message, if any."""
        if capability.run_asynchronously:
            job = AsyncActionJob(
                session_id=ctx.session_id,
                turn_identifier=ctx.turn_identifier,
                cycle=ctx.cycle,
                assistant_message_id=assistant_message_id,
                tool_call_id=call.call_id,
                capability_name=capability.name,
            )
            async with self._lifecycle.locked(
                ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
            ) as guard:
                if guard.stale:
                    return self._stale(ctx)
                if assistant is not None:
                    await guard.uow.messages.append(assistant)
                guard.session.move_to(
                    ProcessingStatus.AWAITING_ACTION,
                    job_id=job.job_id,
                    step_description=running_step(capability.name),
                )
            if assistant is not None:
                await self._announce(ctx, assistant)
            return await self._enqueue(
                ctx, job, self._dispatcher.enqueue_async_action, TurnOutcome.QUEUED_ACTION
            )

        if assistant is not None:
            async with self._lifecycle.locked(
                ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
            ) as guard:
                if guard.stale:
                    return self._stale(ctx)
                await guard.uow.messages.append(assistant)
                guard.session.move_to(
                    ProcessingStatus.PROCESSING, step_description=running_step(capability.name)
                )
            await self._announce(ctx, assistant)
        return await self._run_action_and_continue(ctx, cache, capability, call, assistant_message_id)

    async def _resume_async_action(
        self, ctx: TurnContext, job: AsyncActionJob
    ) -> OrchestrationResult:
        cache = ResolutionCache()
        async with self._uow_factory() as uow:
            existing = await uow.messages.find_tool_result(ctx.session_id, job.tool_call_id)
        if existing is not None:
            logger.info(
                f"[Orchestration] Call {job.tool_call_id} already has a result; continuing turn"
            )
            return await self._continue(ctx, cache, [])

        call = await self._load_tool_call(ctx, job.assistant_message_id, job.tool_call_id)
        capability = await self._resolver.require(ctx.agent_definition_id, job.capability_name, cache)
        return await self._run_action_and_continue(
            ctx, cache, capability, call, job.assistant_message_id
        )

    async def _run_action_and_continue(
        self,
        ctx: TurnContext,
        cache: ResolutionCache,
        capability: Capability,
        call: ToolCallRequest,
        assistant_message_id: str,
    ) -> OrchestrationResult:
        started = time.monotonic()
        outcome = await self._action_executor.execute(
            capability, call.arguments, self._action_context(ctx, capability)
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[Orchestration] {capability.name} finished in {duration_ms}ms "
            f"success={outcome.success} session={ctx.session_id} cycle={ctx.cycle}"
        )
        tool_message = self._tool_result_message(
            ctx, assistant_message_id, call, outcome, duration_ms=duration_ms
        )

        if not outcome.success and capability.halt_and_report_error:
            error = ActionExecutionError(outcome.message, detail=outcome.diagnostic_details)
            async with self._lifecycle.locked(
                ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
            ) as guard:
                if guard.stale:
                    return self._stale(ctx)
                await guard.uow.messages.append(tool_message)
                self._lifecycle.mark_failed(guard, error.code, error.user_message, error.detail)
            return OrchestrationResult(
                outcome=TurnOutcome.FAILED,
                session_id=ctx.session_id,
                turn_identifier=ctx.turn_identifier,
                cycle=ctx.cycle,
                message_id=tool_message.id,
                error_code=error.code,
                error_message=error.user_message,
            )

        return await self._continue(ctx, cache, [tool_message])

    # === Continuation ===

    async def _continue(
        self,
        ctx: TurnContext,
        cache: ResolutionCache,
        messages: List[ChatMessage],
        announce: Optional[ChatMessage] = None,
    ) -> OrchestrationResult:
        """Store ``messages`` and queue the next LLM call, unless the turn limit is hit."""
        agent = await self._resolver.get_agent(ctx.agent_definition_id, cache)
        max_turns = agent.max_turns or self._max_turns

        if ctx.cycle >= max_turns:
            error = MaxTurnsExceededError(ctx.cycle, max_turns)
            async with self._lifecycle.locked(
                ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
            ) as guard:
                if guard.stale:
                    return self._stale(ctx)
                for message in messages:
                    await guard.uow.messages.append(message)
                self._lifecycle.mark_failed(guard, error.code, error.user_message, error.detail)
            if announce is not None:
                await self._announce(ctx, announce)
            return OrchestrationResult(
                outcome=TurnOutcome.FAILED,
                session_id=ctx.session_id,
                turn_identifier=ctx.turn_identifier,
                cycle=ctx.cycle,
                error_code=error.code,
                error_message=error.user_message,
            )

        job = FollowUpJob(
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle + 1,
        )
        async with self._lifecycle.locked(
            ctx.session_id, ctx.turn_identifier, expected_statuses=_PROCESSING
        ) as guard:
            if guard.stale:
                return self._stale(ctx)
            for message in messages:
                await guard.uow.messages.append(message)
            guard.session.move_to(
                ProcessingStatus.AWAITING_FOLLOWUP,
                job_id=job.job_id,
                step_description=STEP_THINKING,
            )
        if announce is not None:
            await self._announce(ctx, announce)
        return await self._enqueue(
            ctx, job, self._dispatcher.enqueue_follow_up, TurnOutcome.QUEUED_FOLLOWUP
        )

    async def _enqueue(
        self,
        ctx: TurnContext,
        job: TurnJob,
        enqueue: Callable[[Any], Awaitable[str]],
        outcome: TurnOutcome,
    ) -> OrchestrationResult:
        try:
            await enqueue(job)
        except Exception as e:
            logger.error(
                f"[Orchestration] Failed to dispatch {job.job_type.value} job {job.job_id} "
                f"for session {ctx.session_id}: {e}"
            )
            failure = OrchestrationError(
                "The next step of your request could not be scheduled.",
                code=ErrorCode.DISPATCH_FAILED,
                detail=f"{type(e).__name__}: {e}",
            )
            applied = await self._lifecycle.fail_turn(
                ctx.session_id,
                ctx.turn_identifier,
                failure.code,
                failure.user_message,
                failure.detail,
                expected_job_id=job.job_id,
            )
            if not applied:
                return self._stale(ctx)
            return OrchestrationResult(
                outcome=TurnOutcome.FAILED,
                session_id=ctx.session_id,
                turn_identifier=ctx.turn_identifier,
                cycle=ctx.cycle,
                error_code=failure.code,
                error_message=failure.user_message,
            )
        return OrchestrationResult(
            outcome=outcome,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=job.cycle,
            job_id=job.job_id,
        )

    # === Helpers ===

    async def _load_tool_call(
        self, ctx: TurnContext, assistant_message_id: str, tool_call_id: str
    ) -> ToolCallRequest:
        async with self._uow_factory() as uow:
            assistant = await uow.messages.find_by_id(assistant_message_id)
        call = assistant.find_tool_call(tool_call_id) if assistant is not None else None
        if call is None:
            raise ContextIntegrityError(
                detail=f"tool call {tool_call_id} not found on message {assistant_message_id}"
            )
        return call

    async def _announce(self, ctx: TurnContext, assistant: ChatMessage) -> None:
        """Publish interim assistant text that accompanied a tool call."""
        if not assistant.has_content:
            return
        await self._lifecycle.notify(
            TransientMessageEvent(
                session_id=ctx.session_id,
                turn_identifier=ctx.turn_identifier,
                message_id=assistant.id,
                content=assistant.content,
            )
        )

    def _assistant_message(
        self,
        ctx: TurnContext,
        result: ProviderResult,
        content: Optional[str],
        tool_calls: Optional[List[ToolCallRequest]] = None,
    ) -> ChatMessage:
        return ChatMessage(
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            role=MessageRole.ASSISTANT,
            content=content,
            tool_calls=list(tool_calls or []),
            record_context_id=ctx.page_record_id,
            token_usage=result.usage.to_dict() if result.usage.total_tokens else {},
        )

    def _tool_result_message(
        self,
        ctx: TurnContext,
        assistant_message_id: str,
        call: ToolCallRequest,
        outcome: ActionResult,
        duration_ms: Optional[int] = None,
    ) -> ChatMessage:
        return ChatMessage(
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            role=MessageRole.TOOL,
            content=outcome.to_tool_content(),
            tool_call_id=call.call_id,
            parent_message_id=assistant_message_id,
            capability_name=call.name,
            is_success=outcome.success,
            record_context_id=outcome.record_context_id,
            processing_duration_ms=duration_ms,
            diagnostic_details=(
                sanitize_error_detail(outcome.diagnostic_details, self._diagnostic_max_length)
                or None
            ),
        )

    @staticmethod
    def _action_context(ctx: TurnContext, capability: Capability) -> ActionContext:
        return ActionContext(
            session_id=ctx.session_id,
            user_id=ctx.user_id,
            agent_definition_id=ctx.agent_definition_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
            capability_name=capability.name,
            page_record_id=ctx.page_record_id,
            implementation_config=dict(capability.implementation_config),
        )

    @staticmethod
    def _stale(ctx: TurnContext) -> OrchestrationResult:
        return OrchestrationResult(
            outcome=TurnOutcome.STALE,
            session_id=ctx.session_id,
            turn_identifier=ctx.turn_identifier,
            cycle=ctx.cycle,
        )
