from turnloop.domain.events.turn_events import (
    TransientMessageEvent,
    TurnCompletedEvent,
    TurnDomainEvent,
    TurnEventType,
)

__all__ = [
    "TransientMessageEvent",
    "TurnCompletedEvent",
    "TurnDomainEvent",
    "TurnEventType",
]
