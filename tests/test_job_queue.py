"""Tests for the in-process import job queue.

GIVEN: A queue of import ids and a processor that may raise
WHEN: Workers pick the ids up
THEN: Failures are retried with linear backoff and finally reported to the processor
"""

import asyncio
from uuid import uuid4

import pytest

from ledger_ingest.config import EnvSettingsProvider
from ledger_ingest.models import ImportJob, ImportStatus
from ledger_ingest.services.import_processor import ImportProcessor
from ledger_ingest.services.job_queue import ImportJobQueue
from ledger_ingest.services.ledger import SqlLedger
from tests.factories import AccountFactory
from tests.test_import_processor import ExplodingLedger, account_transactions, stage_import


class FakeProcessor:
    """Fails the first ``failures`` calls for each id, then succeeds."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list = []
        self.failed: list[tuple] = []

    async def process(self, import_id, *, retryable: bool = False) -> None:
        self.calls.append(import_id)
        if self.calls.count(import_id) <= self.failures:
            raise RuntimeError("boom")

    async def fail_import(self, import_id, message: str) -> None:
        self.failed.append((import_id, message))


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def drain(queue: ImportJobQueue) -> None:
    await asyncio.wait_for(queue.join(), timeout=5)


class TestImportJobQueue:
    @pytest.mark.asyncio
    async def test_processes_enqueued_ids(self):
        processor = FakeProcessor()
        queue = ImportJobQueue(processor, worker_count=2, max_attempts=3, backoff_seconds=5)
        first, second = uuid4(), uuid4()
        queue.start()
        try:
            await queue.enqueue(first)
            await queue.enqueue(second)
            await drain(queue)
        finally:
            await queue.stop()

        assert sorted(processor.calls, key=str) == sorted([first, second], key=str)
        assert processor.failed == []

    @pytest.mark.asyncio
    async def test_retries_with_linear_backoff(self):
        """GIVEN: A processor that fails twice before succeeding
        WHEN: The id is enqueued with three attempts allowed
        THEN: It is retried after 5s and then 10s and never marked failed"""
        processor = FakeProcessor(failures=2)
        sleep = RecordingSleep()
        queue = ImportJobQueue(processor, worker_count=1, max_attempts=3, backoff_seconds=5, sleep=sleep)
        import_id = uuid4()
        queue.start()
        try:
            await queue.enqueue(import_id)
            await drain(queue)
        finally:
            await queue.stop()

        assert processor.calls == [import_id, import_id, import_id]
        assert sleep.delays == [5, 10]
        assert processor.failed == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_import(self):
        """GIVEN: A processor that always fails
        WHEN: Every attempt is used up
        THEN: The processor is asked to fail the import with the last error"""
        processor = FakeProcessor(failures=10)
        sleep = RecordingSleep()
        queue = ImportJobQueue(processor, worker_count=1, max_attempts=2, backoff_seconds=5, sleep=sleep)
        import_id = uuid4()
        queue.start()
        try:
            await queue.enqueue(import_id)
            await drain(queue)
        finally:
            await queue.stop()

        assert len(processor.calls) == 2
        assert sleep.delays == [5]
        assert processor.failed == [(import_id, "Import failed after 2 attempts: boom")]

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        queue = ImportJobQueue(FakeProcessor(), worker_count=3, max_attempts=1, backoff_seconds=0)

        assert queue.running is False
        queue.start()
        queue.start()
        assert queue.running is True
        assert len(queue._workers) == 3

        await queue.stop()

        assert queue.running is False


class FlakyLedger(SqlLedger):
    """Raises on one chosen write and behaves normally otherwise."""

    def __init__(self, fail_on_call: int) -> None:
        self.fail_on_call = fail_on_call
        self.calls = 0

    async def record_transaction(self, db, **kwargs):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("ledger offline")
        return await super().record_transaction(db, **kwargs)


class TestQueueWithImportProcessor:
    """The queue driving a real processor against the database."""

    @pytest.fixture
    def run_queue(self, storage, session_maker):
        async def run(ledger, import_id, *, max_attempts: int) -> RecordingSleep:
            processor = ImportProcessor(
                storage, session_maker=session_maker, ledger=ledger, settings_provider=EnvSettingsProvider()
            )
            sleep = RecordingSleep()
            queue = ImportJobQueue(processor, worker_count=1, max_attempts=max_attempts, backoff_seconds=5, sleep=sleep)
            queue.start()
            try:
                await queue.enqueue(import_id)
                await drain(queue)
            finally:
                await queue.stop()
            return sleep

        return run

    @pytest.mark.asyncio
    async def test_failed_attempt_is_retried_and_resumes(self, db, storage, user_id, run_queue):
        """GIVEN: A two-row import whose second ledger write fails once
        WHEN: The queue runs it with three attempts allowed
        THEN: The retry resumes after the committed row and the import completes"""
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await stage_import(
            db, storage, account, b"Date,Description,Amount\n2024-01-15,Coffee,-4.50\n2024-01-16,Salary,2000.00\n"
        )
        ledger = FlakyLedger(fail_on_call=2)

        sleep = await run_queue(ledger, job.id, max_attempts=3)

        reloaded = await db.get(ImportJob, job.id, populate_existing=True)
        assert reloaded.status == ImportStatus.COMPLETED
        assert reloaded.attempts == 2
        assert reloaded.processed_count == 2
        assert reloaded.duplicate_count == 0
        assert reloaded.error_message is None
        assert ledger.calls == 3
        assert sleep.delays == [5]
        assert [t.description for t in await account_transactions(db, account.id)] == ["Coffee", "Salary"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_job_row(self, db, storage, user_id, run_queue):
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await stage_import(db, storage, account, b"Date,Description,Amount\n2024-01-15,Coffee,-4.50\n")

        await run_queue(ExplodingLedger(), job.id, max_attempts=2)

        reloaded = await db.get(ImportJob, job.id, populate_existing=True)
        assert reloaded.status == ImportStatus.FAILED
        assert reloaded.attempts == 2
        assert reloaded.error_message == "Import failed after 2 attempts: ledger offline"
        assert reloaded.completed_at is not None
