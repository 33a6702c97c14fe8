"""Integration tests for TurnLifecycleService and the SQL message store."""

import pytest

from turnloop.domain.events import TurnCompletedEvent
from turnloop.domain.exceptions import (
    ErrorCode,
    OptimisticLockError,
    SessionNotFoundError,
    TurnInProgressError,
)
from turnloop.domain.model.message import ChatMessage, MessageRole, ToolCallRequest
from turnloop.domain.model.session import ChatSession, ProcessingStatus
from turnloop.tests.conftest import TEST_USER_ID


async def create_session(uow_factory, agent) -> ChatSession:
    session = ChatSession(user_id=TEST_USER_ID, agent_definition_id=agent.id)
    async with uow_factory() as uow:
        await uow.sessions.add(session)
        await uow.commit()
    return session


async def reload(uow_factory, session_id: str) -> ChatSession:
    async with uow_factory() as uow:
        return await uow.sessions.find_by_id(session_id)


@pytest.fixture
def lifecycle(container):
    return container.turn_lifecycle()


@pytest.mark.integration
@pytest.mark.asyncio
class TestTurnLifecycle:
    async def test_start_turn_persists_processing_state(self, lifecycle, uow_factory, agent):
        session = await create_session(uow_factory, agent)

        await lifecycle.start_turn(session.id, "turn-1", "Thinking", "001-ACME")

        stored = await reload(uow_factory, session.id)
        assert stored.processing_status == ProcessingStatus.PROCESSING
        assert stored.current_turn_identifier == "turn-1"
        assert stored.page_record_id == "001-ACME"
        assert stored.version == session.version + 1

    async def test_second_turn_while_active_is_rejected(self, lifecycle, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")

        with pytest.raises(TurnInProgressError):
            await lifecycle.start_turn(session.id, "turn-2")

    async def test_unknown_session(self, lifecycle):
        with pytest.raises(SessionNotFoundError):
            await lifecycle.start_turn("missing", "turn-1")

    async def test_work_for_another_turn_is_stale(self, lifecycle, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")

        async with lifecycle.locked(session.id, "turn-0") as guard:
            assert guard.stale is True

        moved = await lifecycle.transition(
            session.id, "turn-0", ProcessingStatus.AWAITING_FOLLOWUP, job_id="job-1"
        )

        assert moved is False
        assert (await reload(uow_factory, session.id)).processing_status == ProcessingStatus.PROCESSING

    async def test_job_handle_must_match(self, lifecycle, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")
        await lifecycle.transition(
            session.id, "turn-1", ProcessingStatus.AWAITING_FOLLOWUP, job_id="job-1"
        )

        wrong = await lifecycle.transition(
            session.id,
            "turn-1",
            ProcessingStatus.PROCESSING,
            expected_statuses=(ProcessingStatus.AWAITING_FOLLOWUP,),
            expected_job_id="job-0",
        )
        right = await lifecycle.transition(
            session.id,
            "turn-1",
            ProcessingStatus.PROCESSING,
            expected_statuses=(ProcessingStatus.AWAITING_FOLLOWUP,),
            expected_job_id="job-1",
        )

        assert wrong is False
        assert right is True
        stored = await reload(uow_factory, session.id)
        assert stored.processing_status == ProcessingStatus.PROCESSING
        assert stored.current_job_id is None

    async def test_claimed_job_keeps_its_handle_and_can_be_reclaimed(
        self, lifecycle, uow_factory, agent
    ):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")
        await lifecycle.transition(
            session.id, "turn-1", ProcessingStatus.AWAITING_FOLLOWUP, job_id="job-1"
        )

        first = await lifecycle.claim_job(
            session.id, "turn-1", "job-1", ProcessingStatus.AWAITING_FOLLOWUP, "Thinking"
        )
        stored = await reload(uow_factory, session.id)
        again = await lifecycle.claim_job(
            session.id, "turn-1", "job-1", ProcessingStatus.AWAITING_FOLLOWUP
        )
        other = await lifecycle.claim_job(
            session.id, "turn-1", "job-2", ProcessingStatus.AWAITING_FOLLOWUP
        )

        assert (first, again, other) == (True, True, False)
        assert stored.processing_status == ProcessingStatus.PROCESSING
        assert stored.current_job_id == "job-1"
        assert stored.current_step_description == "Thinking"
        assert (await reload(uow_factory, session.id)).version == stored.version

    async def test_marking_guard_stale_discards_writes(self, lifecycle, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")

        async with lifecycle.locked(session.id, "turn-1") as guard:
            await guard.uow.messages.append(
                ChatMessage(
                    session_id=session.id,
                    turn_identifier="turn-1",
                    role=MessageRole.USER,
                    content="discard me",
                )
            )
            guard.session.complete()
            guard.stale = True

        stored = await reload(uow_factory, session.id)
        assert stored.processing_status == ProcessingStatus.PROCESSING
        async with uow_factory() as uow:
            assert await uow.messages.list_for_session(session.id) == []

    async def test_complete_turn_publishes_event_after_commit(
        self, lifecycle, uow_factory, agent, notifier
    ):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")

        assert await lifecycle.complete_turn(session.id, "turn-1") is True
        assert await lifecycle.complete_turn(session.id, "turn-1") is False

        events = notifier.of_type("turn_completed")
        assert len(events) == 1
        assert isinstance(events[0], TurnCompletedEvent)
        assert events[0].success is True
        assert events[0].turn_identifier == "turn-1"
        stored = await reload(uow_factory, session.id)
        assert stored.processing_status == ProcessingStatus.IDLE
        assert stored.current_turn_identifier is None

    async def test_fail_turn_without_turn_id_fails_active_turn(
        self, lifecycle, uow_factory, agent, notifier
    ):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")
        await lifecycle.transition(
            session.id, "turn-1", ProcessingStatus.AWAITING_ACTION, job_id="job-1"
        )

        failed = await lifecycle.fail_turn(
            session.id, None, ErrorCode.ADMIN_CANCELLED, "Cancelled.", "by admin"
        )

        assert failed is True
        stored = await reload(uow_factory, session.id)
        assert stored.processing_status == ProcessingStatus.FAILED
        assert stored.current_job_id is None
        assert stored.last_processing_error == "ADMIN_CANCELLED: Cancelled. | by admin"
        event = notifier.of_type("turn_completed")[-1]
        assert event.success is False
        assert event.error_code == "ADMIN_CANCELLED"
        assert event.error_detail == "Cancelled."

    async def test_fail_turn_on_idle_session_is_noop(self, lifecycle, uow_factory, agent, notifier):
        session = await create_session(uow_factory, agent)

        assert await lifecycle.fail_turn(session.id, None, ErrorCode.ADMIN_CANCELLED, "x") is False
        assert notifier.events == []

    async def test_notifier_failure_does_not_undo_commit(
        self, lifecycle, uow_factory, agent, notifier, monkeypatch
    ):
        session = await create_session(uow_factory, agent)
        await lifecycle.start_turn(session.id, "turn-1")

        async def broken_publish(event):
            raise ConnectionError("redis down")

        monkeypatch.setattr(notifier, "publish", broken_publish)

        assert await lifecycle.complete_turn(session.id, "turn-1") is True
        assert (await reload(uow_factory, session.id)).processing_status == ProcessingStatus.IDLE

    async def test_saving_outdated_version_is_rejected(self, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        outdated = await reload(uow_factory, session.id)

        async with uow_factory() as uow:
            current = await uow.sessions.find_and_lock(session.id)
            current.start_turn("turn-1")
            await uow.sessions.save(current)
            await uow.commit()

        outdated.start_turn("turn-2")
        with pytest.raises(OptimisticLockError):
            async with uow_factory() as uow:
                await uow.sessions.save(outdated)


def message(session_id: str, role: MessageRole, content=None, turn="t1", **kwargs) -> ChatMessage:
    return ChatMessage(
        session_id=session_id, turn_identifier=turn, role=role, content=content, **kwargs
    )


@pytest.mark.integration
@pytest.mark.asyncio
class TestSqlMessageStore:
    async def _append(self, uow_factory, *messages: ChatMessage) -> None:
        async with uow_factory() as uow:
            for m in messages:
                await uow.messages.append(m)
            await uow.commit()

    async def test_sequence_numbers_are_per_session(self, uow_factory, agent):
        first = await create_session(uow_factory, agent)
        second = await create_session(uow_factory, agent)

        a = message(first.id, MessageRole.USER, "a")
        b = message(first.id, MessageRole.ASSISTANT, "b")
        c = message(second.id, MessageRole.USER, "c")
        await self._append(uow_factory, a, b, c)

        assert (a.sequence_number, b.sequence_number, c.sequence_number) == (1, 2, 1)

    async def test_history_page_hides_tool_and_empty_assistant_messages(self, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        call = ToolCallRequest(call_id="c1", name="get_weather", arguments="{}")
        await self._append(
            uow_factory,
            message(session.id, MessageRole.USER, "weather?"),
            message(session.id, MessageRole.ASSISTANT, None, tool_calls=[call]),
            message(
                session.id,
                MessageRole.TOOL,
                '{"success": true}',
                tool_call_id="c1",
                capability_name="get_weather",
                is_success=True,
            ),
            message(session.id, MessageRole.ASSISTANT, "Sunny."),
        )

        async with uow_factory() as uow:
            page = await uow.messages.list_history_page(session.id, 10)
            last = await uow.messages.list_history_page(session.id, 1)

        assert [m.content for m in page] == ["weather?", "Sunny."]
        assert [m.content for m in last] == ["Sunny."]

    async def test_successful_capabilities_by_scope(self, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        call = ToolCallRequest(call_id="c1", name="verify_customer", arguments="{}")
        failed_call = ToolCallRequest(call_id="c2", name="send_invoice", arguments="{}")
        await self._append(
            uow_factory,
            message(session.id, MessageRole.ASSISTANT, None, turn="t0", tool_calls=[call]),
            message(
                session.id,
                MessageRole.TOOL,
                "{}",
                turn="t0",
                tool_call_id="c1",
                capability_name="verify_customer",
                is_success=True,
            ),
            message(session.id, MessageRole.ASSISTANT, None, turn="t1", tool_calls=[failed_call]),
            message(
                session.id,
                MessageRole.TOOL,
                "{}",
                turn="t1",
                tool_call_id="c2",
                capability_name="send_invoice",
                is_success=False,
            ),
        )

        async with uow_factory() as uow:
            whole_session = await uow.messages.find_successful_capability_names(session.id)
            this_turn = await uow.messages.find_successful_capability_names(session.id, "t1")

        assert whole_session == {"verify_customer"}
        assert this_turn == set()

    async def test_delete_from_sequence(self, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        messages = [message(session.id, MessageRole.USER, str(i)) for i in range(4)]
        await self._append(uow_factory, *messages)

        async with uow_factory() as uow:
            deleted = await uow.messages.delete_from_sequence(session.id, 3)
            await uow.commit()
        async with uow_factory() as uow:
            remaining = await uow.messages.list_for_session(session.id)

        assert deleted == 2
        assert [m.content for m in remaining] == ["0", "1"]

    async def test_pending_confirmation_round_trip(self, uow_factory, agent):
        session = await create_session(uow_factory, agent)
        call = ToolCallRequest(call_id="c1", name="delete_account", arguments="{}")
        assistant = message(
            session.id,
            MessageRole.ASSISTANT,
            "Confirm?",
            tool_calls=[call],
            pending_confirmation={"approvalRequestId": "a1"},
        )
        await self._append(uow_factory, assistant)

        async with uow_factory() as uow:
            stored = await uow.messages.find_by_id(assistant.id)
            assert stored.is_awaiting_confirmation
            assert stored.find_tool_call("c1") == call
            await uow.messages.update_pending_confirmation(assistant.id, None)
            await uow.commit()
        async with uow_factory() as uow:
            cleared = await uow.messages.find_by_id(assistant.id)

        assert cleared.pending_confirmation is None
