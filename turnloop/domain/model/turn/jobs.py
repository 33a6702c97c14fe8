"""Queued units of work that re-enter the orchestration core."""

import uuid
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field


class JobType(str, Enum):
    FOLLOW_UP = "follow_up"
    ASYNC_ACTION = "async_action"


class TurnJob(BaseModel):
    """Base class for queued turn work. ``job_id`` is the session's job handle."""

    model_config = ConfigDict(frozen=True)

    job_type: JobType
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    turn_identifier: str
    cycle: int


class FollowUpJob(TurnJob):
    """Run another LLM call for the turn."""

    job_type: JobType = JobType.FOLLOW_UP


class AsyncActionJob(TurnJob):
    """Execute a capability out of band, then continue the turn."""

    job_type: JobType = JobType.ASYNC_ACTION
    assistant_message_id: str
    tool_call_id: str
    capability_name: str


AnyTurnJob = Union[FollowUpJob, AsyncActionJob]


def parse_job(payload: str) -> AnyTurnJob:
    """Decode a serialized job, picking the model from its ``job_type``."""
    envelope = TurnJob.model_validate_json(payload)
    if envelope.job_type == JobType.ASYNC_ACTION:
        return AsyncActionJob.model_validate_json(payload)
    return FollowUpJob.model_validate_json(payload)
