from turnloop.application.services.capability_resolver import CapabilityResolver, ResolutionCache
from turnloop.application.services.chat_service import (
    ChatOutcome,
    ChatResponse,
    ChatService,
    SessionView,
)
from turnloop.application.services.context_assembler import AssembledContext, ContextAssembler
from turnloop.application.services.llm_interaction_loop import LLMInteractionLoop
from turnloop.application.services.orchestration_core import OrchestrationCore
from turnloop.application.services.prerequisite_checker import PrerequisiteChecker
from turnloop.application.services.turn_lifecycle import TurnGuard, TurnLifecycleService

__all__ = [
    "AssembledContext",
    "CapabilityResolver",
    "ChatOutcome",
    "ChatResponse",
    "ChatService",
    "ContextAssembler",
    "LLMInteractionLoop",
    "OrchestrationCore",
    "PrerequisiteChecker",
    "ResolutionCache",
    "SessionView",
    "TurnGuard",
    "TurnLifecycleService",
]
