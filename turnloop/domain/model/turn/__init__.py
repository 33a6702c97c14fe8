from turnloop.domain.model.turn.jobs import (
    AnyTurnJob,
    AsyncActionJob,
    FollowUpJob,
    JobType,
    TurnJob,
    parse_job,
)
from turnloop.domain.model.turn.turn import OrchestrationResult, TurnContext, TurnOutcome

__all__ = [
    "AnyTurnJob",
    "AsyncActionJob",
    "FollowUpJob",
    "JobType",
    "OrchestrationResult",
    "TurnContext",
    "TurnJob",
    "TurnOutcome",
    "parse_job",
]
