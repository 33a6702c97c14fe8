"""Context Assembler - builds the LLM input for one cycle.

Output uses the OpenAI chat format:

    messages: [{"role": "system", ...}, history..., pending user message]
    tools:    [{"type": "function", "function": {"name", "description", "parameters"}}]

History rules:
- BUFFER_WINDOW takes the last N messages, then extends backwards so the
  window never starts in the middle of a turn.
- Every assistant tool-call message is followed immediately by the tool
  results for its call ids, in request order.
- A missing result inside the turn being processed raises
  ContextIntegrityError. Calls left unanswered by an earlier, already
  finished turn are dropped from that assistant message.
- A tool result that answers no stored call raises ContextIntegrityError.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from turnloop.domain.exceptions import ContextIntegrityError
from turnloop.domain.model.capability import (
    CONFIRMATION_ARGUMENT,
    AgentDefinition,
    Capability,
    MemoryStrategy,
)
from turnloop.domain.model.message import ChatMessage, MessageRole, ToolCallRequest
from turnloop.domain.model.session import ChatSession
from turnloop.domain.ports.repositories import UnitOfWorkFactory
from turnloop.domain.ports.services import RecordContextProviderPort

logger = logging.getLogger(__name__)

CONFIRMATION_DESCRIPTION = (
    "A short, user-facing explanation of what this action will do and why. "
    "It is shown to the person who must approve the action."
)


@dataclass
class AssembledContext:
    messages: List[Dict[str, Any]] = field(default_factory=list)
    tools: List[Dict[str, Any]] = field(default_factory=list)
    history: List[ChatMessage] = field(default_factory=list)


class ContextAssembler:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        record_context_provider: Optional[RecordContextProviderPort] = None,
        default_history_window: int = 20,
    ) -> None:
        self._uow_factory = uow_factory
        self._record_context_provider = record_context_provider
        self._default_history_window = default_history_window

    async def assemble(
        self,
        session: ChatSession,
        agent: AgentDefinition,
        capabilities: List[Capability],
        turn_identifier: str,
        pending_user_message: Optional[str] = None,
    ) -> AssembledContext:
        """
        Build messages and tool definitions for the next LLM call.

        Args:
            session: Session being processed
            agent: Agent bound to the session
            capabilities: Active capabilities of the agent
            turn_identifier: Turn being processed
            pending_user_message: User text of this turn, appended when it
                has not been stored yet

        Raises:
            ContextIntegrityError: If a tool call of this turn has no stored result
        """
        history = await self.load_history(session.id, agent)
        messages = [{"role": "system", "content": await self.build_system_prompt(session, agent)}]
        messages.extend(self.pair_messages(history, turn_identifier))

        if pending_user_message and not any(m.external_id == turn_identifier for m in history):
            messages.append({"role": "user", "content": pending_user_message})

        return AssembledContext(
            messages=messages,
            tools=[self.build_tool_definition(c) for c in capabilities],
            history=history,
        )

    async def build_system_prompt(self, session: ChatSession, agent: AgentDefinition) -> str:
        parts = [agent.system_prompt.strip()] if agent.system_prompt.strip() else []
        if session.page_record_id:
            record_context = None
            if self._record_context_provider is not None:
                record_context = await self._record_context_provider.describe(
                    session.page_record_id, session
                )
            parts.append(record_context or f"Current record ID: {session.page_record_id}")
        if session.summary:
            parts.append(f"Summary of the earlier conversation:\n{session.summary}")
        return "\n\n".join(parts)

    async def load_history(self, session_id: str, agent: AgentDefinition) -> List[ChatMessage]:
        async with self._uow_factory() as uow:
            if agent.memory_strategy == MemoryStrategy.FULL_HISTORY:
                return await uow.messages.list_for_session(session_id)

            window = agent.history_window or self._default_history_window
            recent = await uow.messages.list_recent(session_id, window)
            if not recent or not recent[0].turn_identifier:
                return recent

            oldest = recent[0]
            turn_messages = await uow.messages.list_for_turn(session_id, oldest.turn_identifier)
        earlier = [m for m in turn_messages if m.sequence_number < oldest.sequence_number]
        if earlier:
            logger.debug(
                f"[ContextAssembler] Extended window of session {session_id} by {len(earlier)} "
                f"messages to keep turn {oldest.turn_identifier} complete"
            )
        return earlier + recent

    def pair_messages(
        self, history: List[ChatMessage], current_turn_identifier: str
    ) -> List[Dict[str, Any]]:
        """Convert stored messages to LLM messages with tool results paired to their calls."""
        results_by_call: Dict[str, ChatMessage] = {}
        for message in history:
            if message.role == MessageRole.TOOL and message.tool_call_id:
                results_by_call.setdefault(message.tool_call_id, message)

        output: List[Dict[str, Any]] = []
        emitted: set[str] = set()
        for message in history:
            if message.role == MessageRole.TOOL:
                if message.tool_call_id not in emitted:
                    raise ContextIntegrityError(
                        detail=(
                            f"tool result {message.id} answers call {message.tool_call_id}, "
                            f"which no earlier assistant message requested"
                        )
                    )
                continue

            if message.role == MessageRole.ASSISTANT and message.has_tool_calls:
                answered: List[ToolCallRequest] = []
                for call in message.tool_calls:
                    if call.call_id in results_by_call:
                        answered.append(call)
                    elif message.turn_identifier == current_turn_identifier:
                        raise ContextIntegrityError(
                            detail=(
                                f"assistant message {message.id} has no stored result for "
                                f"tool call {call.call_id} ({call.name})"
                            )
                        )
                    else:
                        logger.warning(
                            f"[ContextAssembler] Dropping unanswered call {call.call_id} from "
                            f"finished turn {message.turn_identifier}"
                        )
                if answered:
                    output.append(self._assistant_tool_call_message(message, answered))
                    for call in answered:
                        output.append(self._tool_message(results_by_call[call.call_id]))
                        emitted.add(call.call_id)
                elif message.has_content:
                    output.append({"role": "assistant", "content": message.content})
                continue

            if message.role == MessageRole.ASSISTANT and not message.has_content:
                continue
            output.append({"role": message.role.value, "content": message.content or ""})
        return output

    @staticmethod
    def _assistant_tool_call_message(
        message: ChatMessage, calls: List[ToolCallRequest]
    ) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": message.content if message.has_content else None,
            "tool_calls": [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in calls
            ],
        }

    @staticmethod
    def _tool_message(message: ChatMessage) -> Dict[str, Any]:
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "content": message.content or "",
        }

    @staticmethod
    def build_tool_definition(capability: Capability) -> Dict[str, Any]:
        """
        JSON-schema tool definition for one capability.

        Approval-gated capabilities get a required ``confirmation_message``
        parameter. Picklist fields get an ``enum`` constraint (on ``items``
        for array fields).
        """
        schema = copy.deepcopy(capability.parameters_schema or {})
        schema.setdefault("type", "object")
        properties = schema.setdefault("properties", {})

        for field_name, values in (capability.picklist_values or {}).items():
            prop = properties.get(field_name)
            if prop is None or not values:
                continue
            if prop.get("type") == "array":
                prop.setdefault("items", {})["enum"] = list(values)
            else:
                prop["enum"] = list(values)

        if capability.requires_approval:
            properties[CONFIRMATION_ARGUMENT] = {
                "type": "string",
                "description": CONFIRMATION_DESCRIPTION,
            }
            required = schema.setdefault("required", [])
            if CONFIRMATION_ARGUMENT not in required:
                required.append(CONFIRMATION_ARGUMENT)

        return {
            "type": "function",
            "function": {
                "name": capability.name,
                "description": capability.description,
                "parameters": schema,
            },
        }
