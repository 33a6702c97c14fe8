"""Chat message entity for the append-only turn history."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from turnloop.domain.exceptions import ToolValidationError
from turnloop.domain.shared_kernel import Entity, ValueObject, utc_now


class MessageRole(str, Enum):
    """Role of the message sender."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


@dataclass(frozen=True)
class ToolCallRequest(ValueObject):
    """
    A tool invocation requested by the LLM.

    Attributes:
        call_id: Provider-assigned identifier echoed back on the tool result
        name: Capability name the LLM asked for
        arguments: Raw JSON argument string as produced by the LLM
    """

    call_id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode the argument string into a dict."""
        if not self.arguments or not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise ToolValidationError(
                f"Arguments for '{self.name}' are not valid JSON.",
                detail=str(e),
            ) from e
        if not isinstance(parsed, dict):
            raise ToolValidationError(
                f"Arguments for '{self.name}' must be a JSON object.",
                detail=f"got {type(parsed).__name__}",
            )
        return parsed

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.call_id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallRequest":
        arguments = data.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(call_id=data["id"], name=data["name"], arguments=arguments)


@dataclass(kw_only=True)
class ChatMessage(Entity):
    """
    A single entry in a session's history.

    Messages are created once. The only in-place mutation is clearing
    pending_confirmation when an approval is resolved.
    """

    session_id: str
    turn_identifier: Optional[str]
    role: MessageRole
    content: Optional[str] = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    pending_confirmation: Optional[Dict[str, Any]] = None
    capability_name: Optional[str] = None
    is_success: Optional[bool] = None
    record_context_id: Optional[str] = None
    record_context_data: Optional[str] = None
    external_id: Optional[str] = None
    processing_duration_ms: Optional[int] = None
    diagnostic_details: Optional[str] = None
    token_usage: Dict[str, int] = field(default_factory=dict)
    sequence_number: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("session_id is required")
        if self.tool_calls and self.role != MessageRole.ASSISTANT:
            raise ValueError("Only assistant messages may carry tool calls")
        if self.role == MessageRole.TOOL and not self.tool_call_id:
            raise ValueError("Tool messages require a tool_call_id")

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @property
    def is_awaiting_confirmation(self) -> bool:
        return self.pending_confirmation is not None

    def find_tool_call(self, call_id: str) -> Optional[ToolCallRequest]:
        for call in self.tool_calls:
            if call.call_id == call_id:
                return call
        return None
