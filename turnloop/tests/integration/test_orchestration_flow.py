"""End-to-end orchestration tests: LLM loop, core decisions and queued jobs over SQLite."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from turnloop.application.services import ChatOutcome
from turnloop.domain.model.message import MessageRole
from turnloop.domain.model.session import ProcessingStatus
from turnloop.domain.model.turn import AsyncActionJob, FollowUpJob, TurnOutcome
from turnloop.tests.conftest import TEST_RECORD_ID, TEST_USER_ID
from turnloop.tests.fakes import drain, text_result, tool_call_result


async def load_session(uow_factory, session_id):
    async with uow_factory() as uow:
        return await uow.sessions.find_by_id(session_id)


async def load_messages(uow_factory, session_id):
    async with uow_factory() as uow:
        return await uow.messages.list_for_session(session_id)


def tool_messages(messages):
    return [m for m in messages if m.role == MessageRole.TOOL]


@pytest.mark.integration
@pytest.mark.asyncio
class TestSimpleTurns:
    async def test_text_answer_completes_turn(
        self, chat_service, session_view, llm, notifier, uow_factory
    ):
        llm.script(text_result("Hello! How can I help?"))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, " hello ")

        assert response.outcome == ChatOutcome.SUCCESS_COMPLETED
        assert response.content == "Hello! How can I help?"
        messages = await load_messages(uow_factory, session_view.session_id)
        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "hello"),
            (MessageRole.ASSISTANT, "Hello! How can I help?"),
        ]
        assert messages[0].external_id == response.turn_identifier
        assert messages[1].token_usage == {"input": 12, "output": 5}
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.IDLE
        assert session.current_turn_identifier is None
        completed = notifier.of_type("turn_completed")
        assert len(completed) == 1
        assert completed[0].success is True
        assert completed[0].final_message_id == response.message_id

    async def test_request_carries_prompt_history_and_active_tools(
        self, chat_service, session_view, llm
    ):
        llm.script(text_result("Hi"))

        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "hello")

        request = llm.requests[0]
        assert request["messages"][0] == {
            "role": "system",
            "content": "You are a helpful support assistant.",
        }
        assert request["messages"][-1] == {"role": "user", "content": "hello"}
        names = {tool["function"]["name"] for tool in request["tools"]}
        assert "legacy_export" not in names
        assert {"get_weather", "delete_account", "generate_report"} <= names
        assert request["config"].model == "fake-model"

    async def test_empty_answer_fails_turn(self, chat_service, session_view, llm, uow_factory):
        llm.script(text_result("   "))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "hello")

        assert response.outcome == ChatOutcome.FAILURE
        assert response.error_code == "EMPTY_LLM_RESPONSE"
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.FAILED
        assert session.last_processing_error.startswith("EMPTY_LLM_RESPONSE")

    async def test_adapter_exception_fails_with_provider_code(
        self, chat_service, session_view, llm, uow_factory, notifier
    ):
        llm.script(RuntimeError("connection reset"))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "hello")

        assert response.outcome == ChatOutcome.FAILURE
        assert response.error_code == "LLM_CALL_FAILED"
        assert "connection reset" not in (response.error_message or "")
        session = await load_session(uow_factory, session_view.session_id)
        assert "adapter_exception" in session.last_processing_error
        assert notifier.of_type("turn_completed")[-1].error_code == "LLM_CALL_FAILED"

    async def test_record_context_failure_fails_turn(
        self, container_factory, session_view, llm, notifier, uow_factory
    ):
        provider = MagicMock()
        provider.describe = AsyncMock(side_effect=RuntimeError("record service down"))
        chat_service = container_factory(record_context_provider=provider).chat_service()

        response = await chat_service.send_message(
            session_view.session_id, TEST_USER_ID, "What is this?", page_record_id=TEST_RECORD_ID
        )

        assert response.outcome == ChatOutcome.FAILURE
        assert response.error_code == "UNEXPECTED_ERROR"
        assert "record service down" not in (response.error_message or "")
        assert llm.requests == []
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.FAILED
        assert session.current_turn_identifier is None
        assert "RuntimeError: record service down" in session.last_processing_error
        assert notifier.of_type("turn_completed")[-1].error_code == "UNEXPECTED_ERROR"

    async def test_failed_session_accepts_next_message(
        self, chat_service, session_view, llm, uow_factory
    ):
        llm.script(text_result(""), text_result("Second try worked"))

        first = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "one")
        second = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "two")

        assert first.outcome == ChatOutcome.FAILURE
        assert second.outcome == ChatOutcome.SUCCESS_COMPLETED
        session = await load_session(uow_factory, session_view.session_id)
        assert session.last_processing_error is None


@pytest.mark.integration
@pytest.mark.asyncio
class TestToolCalls:
    async def test_sync_tool_call_then_follow_up_answer(
        self, chat_service, session_view, llm, dispatcher, notifier, uow_factory
    ):
        llm.script(
            tool_call_result("get_weather", {"city": "Oslo"}, content="Let me check."),
            text_result("It is sunny in Oslo."),
        )

        response = await chat_service.send_message(
            session_view.session_id, TEST_USER_ID, "Weather in Oslo?"
        )

        assert response.outcome == ChatOutcome.SUCCESS_PROCESSING
        assert len(dispatcher.jobs) == 1
        job = dispatcher.jobs[0]
        assert isinstance(job, FollowUpJob)
        assert job.cycle == 2
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.AWAITING_FOLLOWUP
        assert session.current_job_id == job.job_id
        transient = notifier.of_type("transient_message")
        assert [e.content for e in transient] == ["Let me check."]

        results = await drain(chat_service, dispatcher)

        assert [r.outcome for r in results] == [TurnOutcome.COMPLETED]
        follow_up_messages = llm.requests[1]["messages"]
        assert [m["role"] for m in follow_up_messages] == [
            "system",
            "user",
            "assistant",
            "tool",
        ]
        assert follow_up_messages[3]["tool_call_id"] == "call_1"
        assert json.loads(follow_up_messages[3]["content"])["data"]["forecast"] == "sunny"

        messages = await load_messages(uow_factory, session_view.session_id)
        tool = tool_messages(messages)[0]
        assert tool.is_success is True
        assert tool.capability_name == "get_weather"
        assert tool.parent_message_id == messages[1].id
        assert tool.processing_duration_ms is not None
        assert messages[-1].content == "It is sunny in Oslo."
        assert {m.turn_identifier for m in messages} == {response.turn_identifier}

    async def test_replayed_follow_up_is_stale(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("get_weather", {"city": "Oslo"}), text_result("Sunny."))
        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Weather?")
        job = dispatcher.jobs[0]
        await drain(chat_service, dispatcher)
        before = await load_messages(uow_factory, session_view.session_id)

        replay = await chat_service.handle_job(job)

        assert replay.outcome == TurnOutcome.STALE
        assert len(llm.requests) == 2
        assert len(await load_messages(uow_factory, session_view.session_id)) == len(before)

    async def test_follow_up_redelivered_after_claim_resumes_turn(
        self, chat_service, container, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("get_weather", {"city": "Oslo"}), text_result("Sunny."))
        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Weather?")
        job = dispatcher.pop()
        # first delivery claimed the job, then its worker died
        assert await container.turn_lifecycle().claim_job(
            job.session_id, job.turn_identifier, job.job_id, ProcessingStatus.AWAITING_FOLLOWUP
        )

        result = await chat_service.handle_job(job)

        assert result.outcome == TurnOutcome.COMPLETED
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.IDLE
        messages = await load_messages(uow_factory, session_view.session_id)
        assert messages[-1].content == "Sunny."

    async def test_only_first_of_several_tool_calls_runs(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        extra = tool_call_result("verify_customer", {}, call_id="call_2").requested_tool_calls
        llm.script(
            tool_call_result("get_weather", {"city": "Oslo"}, extra_calls=extra),
            text_result("Done."),
        )

        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Weather?")
        await drain(chat_service, dispatcher)

        messages = await load_messages(uow_factory, session_view.session_id)
        assert [m.capability_name for m in tool_messages(messages)] == ["get_weather"]
        assert [c.call_id for c in messages[1].tool_calls] == ["call_1"]

    async def test_invalid_arguments_are_reported_to_the_llm(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("get_weather", "{city: Oslo"), text_result("Sorry."))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Weather?")
        await drain(chat_service, dispatcher)

        assert response.outcome == ChatOutcome.SUCCESS_PROCESSING
        tool = tool_messages(await load_messages(uow_factory, session_view.session_id))[0]
        assert tool.is_success is False
        assert json.loads(tool.content)["errorCode"] == "VALIDATION_ERROR"

    async def test_unknown_capability_fails_turn(
        self, chat_service, session_view, llm, uow_factory
    ):
        llm.script(tool_call_result("legacy_export", {}))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Export")

        assert response.outcome == ChatOutcome.FAILURE
        assert response.error_code == "CONFIGURATION_ERROR"
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.FAILED

    async def test_action_failure_is_surfaced_to_llm(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(
            tool_call_result("lookup_order", {"order": "42"}),
            text_result("I can't access orders."),
        )

        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Order 42?")
        results = await drain(chat_service, dispatcher)

        assert results[-1].outcome == TurnOutcome.COMPLETED
        tool = tool_messages(await load_messages(uow_factory, session_view.session_id))[0]
        payload = json.loads(tool.content)
        assert tool.is_success is False
        assert payload["errorCode"] == "SECURITY"
        assert "user may not read orders" not in tool.content
        assert "user may not read orders" in tool.diagnostic_details

    async def test_halt_and_report_error_fails_turn(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("charge_card", {"amount": 10}))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Pay")

        assert response.outcome == ChatOutcome.FAILURE
        assert response.error_code == "ACTION_EXECUTION_FAILED"
        assert response.error_message == "Payment gateway unavailable."
        assert not dispatcher.jobs
        tool = tool_messages(await load_messages(uow_factory, session_view.session_id))[0]
        assert json.loads(tool.content)["errorCode"] == "EXTERNAL_CALL"
        assert "HTTP 503" in tool.diagnostic_details

    async def test_prerequisite_missing_then_satisfied(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(
            tool_call_result("send_invoice", {"customer_id": "C-1"}, call_id="call_1"),
            tool_call_result("verify_customer", {"customer_id": "C-1"}, call_id="call_2"),
            tool_call_result("send_invoice", {"customer_id": "C-1"}, call_id="call_3"),
            text_result("Invoice INV-1 sent."),
        )

        response = await chat_service.send_message(
            session_view.session_id, TEST_USER_ID, "Send the invoice"
        )
        results = await drain(chat_service, dispatcher)

        assert response.outcome == ChatOutcome.SUCCESS_PROCESSING
        assert results[-1].outcome == TurnOutcome.COMPLETED
        tools = tool_messages(await load_messages(uow_factory, session_view.session_id))
        assert [(t.capability_name, t.is_success) for t in tools] == [
            ("send_invoice", False),
            ("verify_customer", True),
            ("send_invoice", True),
        ]
        blocked = json.loads(tools[0].content)
        assert blocked["errorCode"] == "PREREQUISITE_NOT_MET"
        assert blocked["data"] == {"missingPrerequisites": ["verify_customer"]}
        assert "missing prerequisites" in tools[0].diagnostic_details
        assert tools[2].record_context_id == "C-1"

    async def test_turn_scoped_prerequisite_does_not_carry_over(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(
            tool_call_result("verify_customer", {"customer_id": "C-1"}),
            text_result("Verified."),
            tool_call_result("send_invoice", {"customer_id": "C-1"}),
            text_result("Please verify first."),
        )
        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Verify me")
        await drain(chat_service, dispatcher)

        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Invoice")
        await drain(chat_service, dispatcher)

        tools = tool_messages(await load_messages(uow_factory, session_view.session_id))
        assert json.loads(tools[-1].content)["errorCode"] == "PREREQUISITE_NOT_MET"

    async def test_turn_limit_fails_with_max_turns_exceeded(
        self, container_factory, session_view, llm, dispatcher, uow_factory, notifier
    ):
        chat_service = container_factory(AGENT_MAX_TURNS=2).chat_service()
        llm.script(
            tool_call_result("get_weather", {"city": "Oslo"}, call_id="call_1"),
            tool_call_result("get_weather", {"city": "Bergen"}, call_id="call_2"),
        )

        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Weather?")
        results = await drain(chat_service, dispatcher)

        assert results[-1].outcome == TurnOutcome.FAILED
        assert results[-1].error_code.value == "MAX_TURNS_EXCEEDED"
        assert llm.remaining == 0
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.FAILED
        assert len(tool_messages(await load_messages(uow_factory, session_view.session_id))) == 2
        assert notifier.of_type("turn_completed")[-1].error_code == "MAX_TURNS_EXCEEDED"

    async def test_dispatch_failure_fails_turn(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        dispatcher.fail_with = ConnectionError("redis down")
        llm.script(tool_call_result("get_weather", {"city": "Oslo"}))

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Weather?")

        assert response.outcome == ChatOutcome.FAILURE
        assert response.error_code == "DISPATCH_FAILED"
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.FAILED
        assert session.current_job_id is None
        assert len(tool_messages(await load_messages(uow_factory, session_view.session_id))) == 1


@pytest.mark.integration
@pytest.mark.asyncio
class TestAsyncActions:
    async def test_async_action_runs_from_queue(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(
            tool_call_result("generate_report", {"period": "Q1"}),
            text_result("Report R-1 is ready."),
        )

        response = await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Report")

        assert response.outcome == ChatOutcome.SUCCESS_PROCESSING
        job = dispatcher.jobs[0]
        assert isinstance(job, AsyncActionJob)
        assert job.capability_name == "generate_report"
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.AWAITING_ACTION
        assert session.current_job_id == job.job_id
        assert session.current_step_description == "Running generate_report"
        assert tool_messages(await load_messages(uow_factory, session_view.session_id)) == []

        results = await drain(chat_service, dispatcher)

        assert [r.outcome for r in results] == [TurnOutcome.QUEUED_FOLLOWUP, TurnOutcome.COMPLETED]
        tool = tool_messages(await load_messages(uow_factory, session_view.session_id))[0]
        assert json.loads(tool.content)["data"] == {"reportId": "R-1", "period": "Q1"}

    async def test_replayed_async_action_does_not_run_twice(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("generate_report", {"period": "Q1"}), text_result("Done."))
        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Report")
        job = dispatcher.jobs[0]
        await drain(chat_service, dispatcher)

        replay = await chat_service.handle_job(job)

        assert replay.outcome == TurnOutcome.STALE
        assert len(tool_messages(await load_messages(uow_factory, session_view.session_id))) == 1

    async def test_async_action_redelivered_after_claim_resumes_turn(
        self, chat_service, container, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("generate_report", {"period": "Q1"}), text_result("Done."))
        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Report")
        job = dispatcher.pop()
        assert await container.turn_lifecycle().claim_job(
            job.session_id, job.turn_identifier, job.job_id, ProcessingStatus.AWAITING_ACTION
        )

        first = await chat_service.handle_job(job)
        results = await drain(chat_service, dispatcher)

        assert first.outcome == TurnOutcome.QUEUED_FOLLOWUP
        assert [r.outcome for r in results] == [TurnOutcome.COMPLETED]
        assert len(tool_messages(await load_messages(uow_factory, session_view.session_id))) == 1

    async def test_cancelled_turn_ignores_queued_job(
        self, chat_service, session_view, llm, dispatcher, uow_factory
    ):
        llm.script(tool_call_result("generate_report", {"period": "Q1"}))
        await chat_service.send_message(session_view.session_id, TEST_USER_ID, "Report")

        assert await chat_service.fail_turn(session_view.session_id) is True
        results = await drain(chat_service, dispatcher)

        assert [r.outcome for r in results] == [TurnOutcome.STALE]
        assert tool_messages(await load_messages(uow_factory, session_view.session_id)) == []
        session = await load_session(uow_factory, session_view.session_id)
        assert session.processing_status == ProcessingStatus.FAILED
        assert session.last_processing_error.startswith("ADMIN_CANCELLED")
