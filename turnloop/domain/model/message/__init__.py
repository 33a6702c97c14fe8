from turnloop.domain.model.message.chat_message import ChatMessage, MessageRole, ToolCallRequest

__all__ = ["ChatMessage", "MessageRole", "ToolCallRequest"]
