"""Turn Worker - consumes queued follow-up and async-action jobs.

Usage:
    python -m turnloop.worker

On start the worker first re-processes jobs delivered to it but never
acknowledged (crash recovery), then blocks on new entries. Pending entries
belong to a consumer name, so recovery after a restart needs a stable
TURN_WORKER_NAME; the default name includes the pid. Jobs are
acknowledged after handling, including when handling failed: the core has
already failed the turn, and stale jobs are no-ops.
"""

import asyncio
import logging
import os
import signal
import socket
from typing import Optional

from turnloop.application.services import ChatService
from turnloop.configuration.config import Settings, get_settings
from turnloop.configuration.di_container import DIContainer
from turnloop.infrastructure.adapters.secondary.messaging import QueuedJob, RedisWorkQueue
from turnloop.infrastructure.adapters.secondary.persistence.database import initialize_database

logger = logging.getLogger("turnloop.worker")

LOG_FORMATS = {
    "text": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "json": '{"time": "%(asctime)s", "logger": "%(name)s", "level": "%(levelname)s", '
    '"message": "%(message)s"}',
}


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMATS.get(settings.log_format.lower(), LOG_FORMATS["text"]),
    )


class TurnWorker:
    def __init__(
        self,
        chat_service: ChatService,
        queue: RedisWorkQueue,
        consumer_name: Optional[str] = None,
        batch_size: int = 10,
        block_ms: int = 5000,
    ) -> None:
        self._chat_service = chat_service
        self._queue = queue
        self._consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._stopping = asyncio.Event()

    @property
    def consumer_name(self) -> str:
        return self._consumer_name

    def stop(self) -> None:
        self._stopping.set()

    async def process(self, entries: list[QueuedJob]) -> int:
        """Handle and acknowledge a batch; returns the number of entries handled."""
        for entry in entries:
            job = entry.job
            try:
                result = await self._chat_service.handle_job(job)
                logger.info(
                    f"Turn Worker: {job.job_type.value} job {job.job_id} "
                    f"session={job.session_id} -> {result.outcome.value}"
                )
            except Exception as e:
                logger.error(
                    f"Turn Worker: Job {job.job_id} session={job.session_id} failed: {e}",
                    exc_info=True,
                )
            await self._queue.acknowledge(entry.message_id)
        return len(entries)

    async def recover_pending(self) -> int:
        recovered = 0
        while True:
            entries = await self._queue.read_pending(self._consumer_name, self._batch_size)
            if not entries:
                break
            recovered += await self.process(entries)
        if recovered:
            logger.info(f"Turn Worker: Recovered {recovered} unacknowledged jobs")
        return recovered

    async def run(self) -> None:
        await self._queue.ensure_consumer_group()
        await self.recover_pending()
        logger.info(f"Turn Worker: {self._consumer_name} ready and waiting for jobs...")
        while not self._stopping.is_set():
            try:
                entries = await self._queue.read_new(
                    self._consumer_name, self._batch_size, self._block_ms
                )
            except Exception as e:
                logger.error(f"Turn Worker: Failed to read jobs: {e}", exc_info=True)
                await asyncio.sleep(1)
                continue
            await self.process(entries)
        logger.info("Turn Worker: Stopped")


async def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    logger.info(f"Starting Turn Worker (PID: {os.getpid()})...")

    container = DIContainer(settings=settings)
    await initialize_database(container.engine())

    worker = TurnWorker(
        container.chat_service(),
        container.work_queue(),
        consumer_name=settings.turn_worker_name,
        block_ms=settings.turn_queue_block_ms,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await container.shutdown()


def main_sync() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main_sync()
