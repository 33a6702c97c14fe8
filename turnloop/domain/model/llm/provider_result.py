"""LLM call results and the response shapes the orchestration core dispatches on."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from turnloop.domain.model.message import ToolCallRequest
from turnloop.domain.shared_kernel import ValueObject


@dataclass(frozen=True)
class TokenUsage(ValueObject):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {"input": self.input_tokens, "output": self.output_tokens}


@dataclass(frozen=True)
class LLMRequestConfig(ValueObject):
    """Per-agent model settings handed to the adapter."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LLMRequestConfig":
        data = dict(data or {})
        return cls(
            model=data.pop("model", None),
            temperature=data.pop("temperature", None),
            max_tokens=data.pop("max_tokens", None),
            extra=data,
        )


@dataclass(frozen=True)
class ContentResponse(ValueObject):
    """The LLM answered with text only."""

    content: Optional[str]


@dataclass(frozen=True)
class ToolCallResponse(ValueObject):
    """The LLM asked for at least one tool call.

    Only ``tool_call`` is processed in a cycle; ``ignored_calls`` are the
    additional simultaneous calls, which are dropped.
    """

    tool_call: ToolCallRequest
    content: Optional[str] = None
    ignored_calls: tuple[ToolCallRequest, ...] = ()


ResponseShape = Union[ContentResponse, ToolCallResponse]


@dataclass(frozen=True)
class ProviderResult(ValueObject):
    """
    Outcome of one LLM adapter call.

    Attributes:
        success: False when the provider call itself failed
        content: Assistant text, possibly empty
        requested_tool_calls: Tool calls in the order the LLM produced them
        usage: Token counts reported by the provider
        error_code: Provider failure code when success is False
        error_message: Provider failure detail when success is False
        model: Model that served the request
    """

    success: bool
    content: Optional[str] = None
    requested_tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    model: Optional[str] = None

    @classmethod
    def failed(cls, error_message: str, error_code: Optional[str] = None) -> "ProviderResult":
        return cls(success=False, error_code=error_code, error_message=error_message)

    def response_shape(self) -> ResponseShape:
        if not self.requested_tool_calls:
            return ContentResponse(content=self.content)
        first, *rest = self.requested_tool_calls
        return ToolCallResponse(tool_call=first, content=self.content, ignored_calls=tuple(rest))
