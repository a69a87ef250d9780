"""In-process job queue for import processing.

At-least-once delivery: a job id may be handed to a worker more than once
(retries, duplicate enqueues); the processor skips anything not pending.
A failed attempt returns the job to pending; once attempts run out the queue
fails it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
from uuid import UUID

from ledger_ingest.config import settings
from ledger_ingest.logger import get_logger, log_exception
from ledger_ingest.services.import_processor import ImportProcessor

logger = get_logger(__name__)

RETRIES_EXHAUSTED_MESSAGE = "Import failed after {attempts} attempts: {error}"

Sleeper = Callable[[float], Awaitable[None]]


class ImportJobQueue:
    """Fixed pool of asyncio workers pulling import ids from a queue."""

    def __init__(
        self,
        processor: ImportProcessor,
        *,
        worker_count: int | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.processor = processor
        self.worker_count = worker_count or settings.import_worker_count
        self.max_attempts = max_attempts or settings.max_import_attempts
        self.backoff_seconds = (
            settings.import_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep
        self._queue: asyncio.Queue[tuple[UUID, int]] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._retry_tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"import-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("Import workers started", workers=self.worker_count)

    async def stop(self) -> None:
        for task in [*self._workers, *self._retry_tasks]:
            task.cancel()
        for task in [*self._workers, *self._retry_tasks]:
            with suppress(asyncio.CancelledError):
                await task
        self._workers = []
        self._retry_tasks.clear()
        logger.info("Import workers stopped")

    async def enqueue(self, import_id: UUID) -> None:
        await self._queue.put((import_id, 1))
        logger.debug("Import enqueued", import_id=str(import_id))

    async def join(self) -> None:
        """Wait until every queued job, including scheduled retries, has been handled."""
        while True:
            await self._queue.join()
            if not self._retry_tasks:
                return
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)

    def _track_task(self, task: asyncio.Task[None]) -> None:
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _worker(self, index: int) -> None:
        while True:
            import_id, attempt = await self._queue.get()
            try:
                await self._run(import_id, attempt)
            finally:
                self._queue.task_done()

    async def _run(self, import_id: UUID, attempt: int) -> None:
        try:
            await self.processor.process(import_id, retryable=True)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= self.max_attempts:
                log_exception(logger, exc, "Import retries exhausted", import_id=str(import_id), attempt=attempt)
                await self.processor.fail_import(
                    import_id, RETRIES_EXHAUSTED_MESSAGE.format(attempts=attempt, error=exc)
                )
                return
            delay = self.backoff_seconds * attempt
            log_exception(
                logger,
                exc,
                "Import attempt failed, scheduling retry",
                level="warning",
                include_traceback=False,
                import_id=str(import_id),
                attempt=attempt,
                retry_in_seconds=delay,
            )
            self._track_task(asyncio.create_task(self._requeue(import_id, attempt + 1, delay)))

    async def _requeue(self, import_id: UUID, attempt: int, delay: float) -> None:
        await self._sleep(delay)
        await self._queue.put((import_id, attempt))
