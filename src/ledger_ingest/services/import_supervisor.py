"""Background supervisor for stuck import jobs."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_ingest.config import settings
from ledger_ingest.database import get_session_maker
from ledger_ingest.logger import get_logger
from ledger_ingest.models import ImportJob, ImportStatus

logger = get_logger(__name__)

STALE_IMPORT_MESSAGE = "Import timed out. Please retry."


async def fail_stale_imports(
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    stale_minutes: int | None = None,
) -> int:
    """Mark imports stuck in processing as failed so users can retry."""
    threshold = timedelta(minutes=settings.import_stale_minutes if stale_minutes is None else stale_minutes)
    cutoff = datetime.now(UTC) - threshold
    session_factory = sessionmaker or get_session_maker()
    async with session_factory() as session:
        result = await session.execute(
            select(ImportJob)
            .where(ImportJob.status == ImportStatus.PROCESSING)
            .where(ImportJob.updated_at < cutoff)
        )
        stale_imports = result.scalars().all()

        now = datetime.now(UTC)
        for job in stale_imports:
            job.status = ImportStatus.FAILED
            job.error_message = STALE_IMPORT_MESSAGE
            job.completed_at = now

        if stale_imports:
            await session.commit()
        return len(stale_imports)


async def run_import_supervisor(stop_event: asyncio.Event) -> None:
    """Run periodic checks until stop_event is set."""
    while not stop_event.is_set():
        try:
            count = await fail_stale_imports()
            if count:
                logger.warning("Failed stale imports", count=count)
        except Exception:
            logger.exception("Failed to sweep stale imports")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=settings.import_supervisor_interval_seconds)
        except TimeoutError:
            continue
