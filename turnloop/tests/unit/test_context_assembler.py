"""Unit tests for ContextAssembler: pairing, windowing and tool definitions."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from turnloop.application.services import ContextAssembler
from turnloop.domain.exceptions import ContextIntegrityError
from turnloop.domain.model.capability import (
    CONFIRMATION_ARGUMENT,
    AgentDefinition,
    Capability,
    MemoryStrategy,
)
from turnloop.domain.model.message import ChatMessage, MessageRole, ToolCallRequest
from turnloop.domain.model.session import ChatSession
from turnloop.tests.conftest import seed_agent


def user(text: str, turn: str = "t1") -> ChatMessage:
    return ChatMessage(session_id="s1", turn_identifier=turn, role=MessageRole.USER, content=text)


def assistant(text: str | None, turn: str = "t1", calls: list[ToolCallRequest] | None = None):
    return ChatMessage(
        session_id="s1",
        turn_identifier=turn,
        role=MessageRole.ASSISTANT,
        content=text,
        tool_calls=calls or [],
    )


def tool(call_id: str, content: str, turn: str = "t1") -> ChatMessage:
    return ChatMessage(
        session_id="s1",
        turn_identifier=turn,
        role=MessageRole.TOOL,
        content=content,
        tool_call_id=call_id,
        is_success=True,
    )


def call(call_id: str, name: str = "get_weather") -> ToolCallRequest:
    return ToolCallRequest(call_id=call_id, name=name, arguments='{"city": "Oslo"}')


@pytest.fixture
def assembler() -> ContextAssembler:
    return ContextAssembler(uow_factory=MagicMock())


class TestPairMessages:
    def test_results_follow_their_call_in_request_order(self, assembler):
        history = [
            user("weather?"),
            assistant(None, calls=[call("c1"), call("c2")]),
            tool("c2", "second"),
            tool("c1", "first"),
        ]

        messages = assembler.pair_messages(history, "t1")

        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "tool"]
        assert [m["tool_call_id"] for m in messages[2:]] == ["c1", "c2"]
        assert messages[1]["content"] is None
        assert messages[1]["tool_calls"][0]["function"]["name"] == "get_weather"

    def test_missing_result_in_current_turn_is_integrity_error(self, assembler):
        history = [user("weather?"), assistant(None, calls=[call("c1")])]

        with pytest.raises(ContextIntegrityError):
            assembler.pair_messages(history, "t1")

    def test_unanswered_call_from_finished_turn_is_dropped(self, assembler):
        history = [
            user("delete it", turn="t0"),
            assistant("I need approval", turn="t0", calls=[call("c0", "delete_account")]),
            user("never mind", turn="t1"),
        ]

        messages = assembler.pair_messages(history, "t1")

        assert messages == [
            {"role": "user", "content": "delete it"},
            {"role": "assistant", "content": "I need approval"},
            {"role": "user", "content": "never mind"},
        ]

    def test_empty_assistant_messages_are_skipped(self, assembler):
        history = [user("hi"), assistant("   "), assistant("Hello!")]

        messages = assembler.pair_messages(history, "t1")

        assert messages == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "Hello!"},
        ]

    @pytest.mark.parametrize("turn", ["t0", "t1"])
    def test_result_without_matching_call_is_integrity_error(self, assembler, turn):
        history = [user("hi", turn=turn), tool("ghost", "{}", turn=turn)]

        with pytest.raises(ContextIntegrityError) as exc_info:
            assembler.pair_messages(history, "t1")

        assert "ghost" in exc_info.value.detail


class TestToolDefinitions:
    def test_picklists_become_enums(self):
        capability = Capability(
            agent_definition_id="a1",
            name="get_weather",
            implementation_key="weather.get",
            parameters_schema={
                "type": "object",
                "properties": {
                    "unit": {"type": "string"},
                    "days": {"type": "array", "items": {"type": "string"}},
                },
            },
            picklist_values={"unit": ["celsius"], "days": ["mon", "tue"], "missing": ["x"]},
        )

        definition = ContextAssembler.build_tool_definition(capability)
        properties = definition["function"]["parameters"]["properties"]

        assert properties["unit"]["enum"] == ["celsius"]
        assert properties["days"]["items"]["enum"] == ["mon", "tue"]
        assert "missing" not in properties
        # Stored schema untouched
        assert "enum" not in capability.parameters_schema["properties"]["unit"]

    def test_approval_gated_capability_requires_confirmation_argument(self):
        capability = Capability(
            agent_definition_id="a1",
            name="delete_account",
            implementation_key="crm.delete_account",
            requires_approval=True,
        )

        parameters = ContextAssembler.build_tool_definition(capability)["function"]["parameters"]

        assert parameters["properties"][CONFIRMATION_ARGUMENT]["type"] == "string"
        assert parameters["required"] == [CONFIRMATION_ARGUMENT]


class TestSystemPrompt:
    async def test_record_context_from_provider(self):
        provider = MagicMock()
        provider.describe = AsyncMock(return_value="Account ACME, tier gold")
        assembler = ContextAssembler(uow_factory=MagicMock(), record_context_provider=provider)
        agent = AgentDefinition(developer_name="a", system_prompt="Be brief.")
        session = ChatSession(user_id="u1", agent_definition_id=agent.id, page_record_id="001")

        prompt = await assembler.build_system_prompt(session, agent)

        assert prompt == "Be brief.\n\nAccount ACME, tier gold"

    async def test_record_id_fallback_and_summary(self, assembler):
        agent = AgentDefinition(developer_name="a", system_prompt="Be brief.")
        session = ChatSession(
            user_id="u1", agent_definition_id=agent.id, page_record_id="001", summary="Asked about X."
        )

        prompt = await assembler.build_system_prompt(session, agent)

        assert "Current record ID: 001" in prompt
        assert prompt.endswith("Summary of the earlier conversation:\nAsked about X.")


@pytest.mark.asyncio
class TestWindowing:
    async def _store(self, uow_factory, session: ChatSession, messages: list[ChatMessage]) -> None:
        async with uow_factory() as uow:
            await uow.sessions.add(session)
            for message in messages:
                message.session_id = session.id
                await uow.messages.append(message)
            await uow.commit()

    async def test_window_is_extended_to_start_of_turn(self, uow_factory):
        agent = await seed_agent(
            uow_factory, AgentDefinition(developer_name="windowed", history_window=3), []
        )
        session = ChatSession(user_id="u1", agent_definition_id=agent.id)
        await self._store(
            uow_factory,
            session,
            [
                user("first", turn="t0"),
                assistant("answer one", turn="t0"),
                user("weather?", turn="t1"),
                assistant(None, turn="t1", calls=[call("c1")]),
                tool("c1", json.dumps({"success": True}), turn="t1"),
                assistant("It is sunny", turn="t1"),
            ],
        )
        assembler = ContextAssembler(uow_factory)

        history = await assembler.load_history(session.id, agent)

        assert [m.content for m in history][0] == "weather?"
        assert len(history) == 4
        messages = assembler.pair_messages(history, "t2")
        assert messages[-1] == {"role": "assistant", "content": "It is sunny"}

    async def test_full_history_strategy_ignores_window(self, uow_factory):
        agent = await seed_agent(
            uow_factory,
            AgentDefinition(
                developer_name="full", history_window=1, memory_strategy=MemoryStrategy.FULL_HISTORY
            ),
            [],
        )
        session = ChatSession(user_id="u1", agent_definition_id=agent.id)
        await self._store(
            uow_factory,
            session,
            [user("a", turn="t0"), assistant("b", turn="t0"), user("c", turn="t1")],
        )

        history = await ContextAssembler(uow_factory).load_history(session.id, agent)

        assert [m.content for m in history] == ["a", "b", "c"]

    async def test_assemble_appends_pending_user_message_once(self, uow_factory):
        agent = await seed_agent(uow_factory, AgentDefinition(developer_name="plain"), [])
        session = ChatSession(user_id="u1", agent_definition_id=agent.id)
        await self._store(uow_factory, session, [user("old", turn="t0"), assistant("ok", turn="t0")])
        assembler = ContextAssembler(uow_factory)

        assembled = await assembler.assemble(session, agent, [], "t1", pending_user_message="new")

        assert assembled.messages[0]["role"] == "system"
        assert assembled.messages[-1] == {"role": "user", "content": "new"}
        assert assembled.tools == []
