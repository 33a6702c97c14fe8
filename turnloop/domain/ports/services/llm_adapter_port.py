"""
LLM Adapter Port - Domain interface for one LLM round-trip.

Concrete HTTP adapters (with their own retry and backoff) implement this
interface. Messages and tools use the OpenAI chat format.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from turnloop.domain.model.llm import LLMRequestConfig, ProviderResult


class LLMAdapterPort(ABC):
    """Sends one assembled request to a language model."""

    @abstractmethod
    async def send(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        config: LLMRequestConfig,
    ) -> ProviderResult:
        """
        Invoke the model.

        Provider failures should be reported as ``ProviderResult(success=False)``.
        Exceptions are tolerated and converted by the caller.

        Args:
            messages: Chat messages (system prompt first)
            tools: Tool definitions, possibly empty
            config: Model settings for the agent

        Returns:
            The provider result
        """
