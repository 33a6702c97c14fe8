"""Action execution value objects.

ActionResult is never stored directly: its serialized form becomes the
content of a tool message, and prerequisite checks parse it back.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from turnloop.domain.shared_kernel import ValueObject

logger = logging.getLogger(__name__)

RECORD_ID_KEYS = ("record_id", "recordId")


class ActionErrorCode(str, Enum):
    """Machine-readable classification of action failures."""

    VALIDATION = "VALIDATION"
    SECURITY = "SECURITY"
    DML = "DML"
    QUERY = "QUERY"
    EXTERNAL_CALL = "EXTERNAL_CALL"
    SYSTEM_LIMIT = "SYSTEM_LIMIT"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    UNEXPECTED = "UNEXPECTED"


@dataclass(frozen=True)
class ActionContext(ValueObject):
    """Everything an action implementation may know about its invocation."""

    session_id: str
    user_id: str
    agent_definition_id: str
    turn_identifier: str
    cycle: int
    capability_name: str
    page_record_id: Optional[str] = None
    implementation_config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionResult(ValueObject):
    """
    Structured outcome of one capability execution.

    Attributes:
        success: Whether the action succeeded
        capability_name: Capability that produced the result
        output: Payload returned to the LLM (opaque to the core)
        message: Short human-readable summary, mostly for failures
        error_code: Classification when success is False
        diagnostic_details: Internal detail, never sent to the LLM
    """

    success: bool
    capability_name: str
    output: Any = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    diagnostic_details: Optional[str] = None

    @classmethod
    def ok(cls, capability_name: str, output: Any = None, message: Optional[str] = None) -> "ActionResult":
        return cls(success=True, capability_name=capability_name, output=output, message=message)

    @classmethod
    def failure(
        cls,
        capability_name: str,
        error_code: "ActionErrorCode | str",
        message: str,
        diagnostic_details: Optional[str] = None,
        output: Any = None,
    ) -> "ActionResult":
        code = error_code.value if isinstance(error_code, Enum) else str(error_code)
        return cls(
            success=False,
            capability_name=capability_name,
            output=output,
            message=message,
            error_code=code,
            diagnostic_details=diagnostic_details,
        )

    @property
    def record_context_id(self) -> Optional[str]:
        """Record id the action reported touching, if any."""
        if isinstance(self.output, dict):
            for key in RECORD_ID_KEYS:
                value = self.output.get(key)
                if value:
                    return str(value)
        return None

    def to_tool_content(self) -> str:
        """Serialize for storage as tool message content (diagnostics excluded)."""
        payload: Dict[str, Any] = {"success": self.success, "capability": self.capability_name}
        if self.output is not None:
            payload["data"] = self.output
        if self.message:
            payload["message"] = self.message
        if self.error_code:
            payload["errorCode"] = self.error_code
        return json.dumps(payload, default=str, ensure_ascii=False)

    @classmethod
    def from_tool_content(
        cls,
        content: Optional[str],
        *,
        fallback_capability: Optional[str] = None,
        fallback_success: Optional[bool] = None,
    ) -> "ActionResult":
        """Parse tool message content written by to_tool_content()."""
        payload: Dict[str, Any] = {}
        if content:
            try:
                decoded = json.loads(content)
                if isinstance(decoded, dict):
                    payload = decoded
            except json.JSONDecodeError:
                logger.debug("Tool content is not JSON; using message flags only")
        success = payload.get("success")
        if not isinstance(success, bool):
            success = bool(fallback_success)
        return cls(
            success=success,
            capability_name=payload.get("capability") or fallback_capability or "",
            output=payload.get("data"),
            message=payload.get("message"),
            error_code=payload.get("errorCode"),
        )
