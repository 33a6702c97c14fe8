from turnloop.domain.model.session.chat_session import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    ChatSession,
    ProcessingStatus,
)

__all__ = ["ALLOWED_TRANSITIONS", "TERMINAL_STATUSES", "ChatSession", "ProcessingStatus"]
