"""
Redis Streams implementation of DispatcherPort.

Jobs for every session go to one stream, consumed by a consumer group so
that several worker processes share the load. Delivery is at-least-once:
a job is acknowledged only after its handler returned, and a restarted
consumer first re-reads the jobs it had received but not acknowledged.

Stream entry layout:
    {"job_type": "<follow_up|async_action>", "data": "<job JSON>"}
"""

import logging
from dataclasses import dataclass
from typing import Any, cast

import redis.asyncio as redis

from turnloop.domain.model.turn import (
    AnyTurnJob,
    AsyncActionJob,
    FollowUpJob,
    TurnJob,
    parse_job,
)
from turnloop.domain.ports.services.dispatcher_port import DispatcherPort

logger = logging.getLogger(__name__)


@dataclass
class QueuedJob:
    """A job read from the stream together with its stream entry id."""

    message_id: str
    job: AnyTurnJob


class RedisWorkQueue(DispatcherPort):
    DEFAULT_MAX_LEN = 10000  # Approximate stream cap
    DEFAULT_BLOCK_MS = 5000

    def __init__(
        self,
        redis_client: redis.Redis,
        stream_key: str,
        consumer_group: str,
        max_len: int | None = None,
    ) -> None:
        self._redis = redis_client
        self._stream_key = stream_key
        self._consumer_group = consumer_group
        self._max_len = max_len or self.DEFAULT_MAX_LEN

    @property
    def stream_key(self) -> str:
        return self._stream_key

    async def enqueue_follow_up(self, job: FollowUpJob) -> str:
        return await self._publish(job)

    async def enqueue_async_action(self, job: AsyncActionJob) -> str:
        return await self._publish(job)

    async def _publish(self, job: TurnJob) -> str:
        payload = {"job_type": job.job_type.value, "data": job.model_dump_json()}
        try:
            message_id = await self._redis.xadd(
                self._stream_key,
                payload,  # type: ignore[arg-type]
                maxlen=self._max_len,
                approximate=True,
            )
        except Exception as e:
            logger.error(
                f"[WorkQueue] Failed to enqueue {job.job_type.value} job {job.job_id} "
                f"session={job.session_id}: {e}"
            )
            raise

        if isinstance(message_id, bytes):
            message_id = message_id.decode("utf-8")
        logger.info(
            f"[WorkQueue] Enqueued {job.job_type.value} job {job.job_id} "
            f"session={job.session_id} turn={job.turn_identifier} cycle={job.cycle} "
            f"message_id={message_id}"
        )
        return cast(str, message_id)

    async def ensure_consumer_group(self) -> None:
        """Create the consumer group (and stream) if missing."""
        try:
            await self._redis.xgroup_create(
                self._stream_key, self._consumer_group, id="0", mkstream=True
            )
            logger.info(
                f"[WorkQueue] Created consumer group {self._consumer_group} for {self._stream_key}"
            )
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"[WorkQueue] Consumer group {self._consumer_group} already exists")

    async def read_pending(self, consumer_name: str, count: int = 10) -> list[QueuedJob]:
        """Jobs delivered to this consumer earlier but never acknowledged."""
        return await self._read(consumer_name, "0", count, block_ms=None)

    async def read_new(
        self, consumer_name: str, count: int = 10, block_ms: int | None = None
    ) -> list[QueuedJob]:
        """Block for up to ``block_ms`` waiting for new jobs."""
        return await self._read(
            consumer_name, ">", count, block_ms=block_ms or self.DEFAULT_BLOCK_MS
        )

    async def acknowledge(self, *message_ids: str) -> int:
        if not message_ids:
            return 0
        acked = await self._redis.xack(self._stream_key, self._consumer_group, *message_ids)
        logger.debug(f"[WorkQueue] Acknowledged {acked} jobs")
        return cast(int, acked)

    async def _read(
        self, consumer_name: str, start_id: str, count: int, block_ms: int | None
    ) -> list[QueuedJob]:
        streams = await self._redis.xreadgroup(
            groupname=self._consumer_group,
            consumername=consumer_name,
            streams={self._stream_key: start_id},
            count=count,
            block=block_ms,
        )
        jobs: list[QueuedJob] = []
        poison: list[str] = []
        for _stream_name, messages in streams or []:
            for msg_id, fields in messages:
                if isinstance(msg_id, bytes):
                    msg_id = msg_id.decode("utf-8")
                job = self._parse_entry(msg_id, fields)
                if job is None:
                    poison.append(msg_id)
                else:
                    jobs.append(QueuedJob(message_id=msg_id, job=job))
        if poison:
            # Unparseable entries can never succeed; drop them from the PEL.
            await self.acknowledge(*poison)
        return jobs

    def _parse_entry(self, msg_id: str, fields: dict[Any, Any]) -> AnyTurnJob | None:
        raw_data = fields.get(b"data") or fields.get("data")
        if isinstance(raw_data, bytes):
            raw_data = raw_data.decode("utf-8")
        if not raw_data:
            logger.warning(f"[WorkQueue] Entry {msg_id} has no data field, discarding")
            return None
        try:
            return parse_job(raw_data)
        except ValueError as e:
            logger.warning(f"[WorkQueue] Failed to parse job {msg_id}: {e}")
            return None
