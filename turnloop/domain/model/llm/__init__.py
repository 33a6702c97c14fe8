from turnloop.domain.model.llm.provider_result import (
    ContentResponse,
    LLMRequestConfig,
    ProviderResult,
    ResponseShape,
    TokenUsage,
    ToolCallResponse,
)

__all__ = [
    "ContentResponse",
    "LLMRequestConfig",
    "ProviderResult",
    "ResponseShape",
    "TokenUsage",
    "ToolCallResponse",
]
