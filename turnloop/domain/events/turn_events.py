"""Domain events published while a turn is processed.

Events are fire-and-forget notifications for listeners (UIs, audit
consumers). Losing one never affects the turn itself.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class TurnEventType(str, Enum):
    TURN_COMPLETED = "turn_completed"
    TRANSIENT_MESSAGE = "transient_message"


class TurnDomainEvent(BaseModel):
    """Base class for all turn events."""

    model_config = ConfigDict(frozen=True)

    event_type: TurnEventType
    session_id: str
    turn_identifier: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)

    def to_event_dict(self) -> Dict[str, Any]:
        """
        Convert to the wire dictionary format.

        Returns:
            Dictionary with keys: type, data, timestamp
        """
        return {
            "type": self.event_type.value,
            "data": self.model_dump(mode="json", exclude={"event_type", "timestamp"}),
            "timestamp": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
        }


class TurnCompletedEvent(TurnDomainEvent):
    """A turn reached IDLE or FAILED."""

    event_type: TurnEventType = TurnEventType.TURN_COMPLETED
    success: bool
    final_message_id: Optional[str] = None
    final_message_content: Optional[str] = None
    error_code: Optional[str] = None
    error_detail: Optional[str] = None


class TransientMessageEvent(TurnDomainEvent):
    """Intermediate assistant text that accompanied a tool call."""

    event_type: TurnEventType = TurnEventType.TRANSIENT_MESSAGE
    message_id: Optional[str] = None
    content: str
