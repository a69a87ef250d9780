"""Import job processing: state machine and the sequential per-row pipeline.

Each row is its own unit of work (transaction, balance, row hash and any
reconciliation link are committed together or not at all). Progress counters
are checkpointed separately every ``progress_interval`` rows, and the job
status is re-read at each checkpoint so an external cancel stops the loop.
"""

from __future__ import annotations

import asyncio
import csv
import io
import random
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import Row, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_ingest.config import ImportConfig, SettingsProvider
from ledger_ingest.database import get_session_maker
from ledger_ingest.exceptions import (
    ConcurrencyLimitExceeded,
    ImportEngineError,
    InvalidRowDataError,
    LedgerValidationError,
    ReconciliationError,
    ReconciliationNotFoundError,
)
from ledger_ingest.logger import get_logger, log_exception, log_timing
from ledger_ingest.models import (
    Account,
    ImportJob,
    ImportRowHash,
    ImportSourceType,
    ImportStatus,
    Reconciliation,
    ReconciliationStatus,
)
from ledger_ingest.services.categorization import CategorizationService
from ledger_ingest.services.hashing import compute_row_hash, decompress_if_needed
from ledger_ingest.services.imports import count_active_imports
from ledger_ingest.services.ledger import Ledger, SqlLedger, get_or_create_category, get_or_create_tag
from ledger_ingest.services.parsers import CandidateRow, OfxSource, SourceRow, build_source
from ledger_ingest.services.reconciliation import (
    PERFECT_SCORE,
    ReconciliationConfig,
    ReconciliationService,
)
from ledger_ingest.services.storage import Storage

logger = get_logger(__name__)

MAX_SUMMARY_ERRORS = 3
ALL_ROWS_FAILED_MESSAGE = "All rows failed validation"
NO_ROWS_MESSAGE = "No transactions found in file"
ERROR_REPORT_HEADER = ("Row Number", "Field", "Error Message", "Raw Value")


class RowOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass
class ImportCounters:
    processed: int = 0
    skipped: int = 0
    duplicate: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    written_hashes: set[str] = field(default_factory=set)

    @property
    def seen(self) -> int:
        return self.processed + self.skipped + self.duplicate

    def record(self, outcome: RowOutcome) -> None:
        if outcome is RowOutcome.PROCESSED:
            self.processed += 1
        elif outcome is RowOutcome.DUPLICATE:
            self.duplicate += 1
        else:
            self.skipped += 1


@dataclass(frozen=True)
class ImportContext:
    """Immutable per-job values; safe to use after a row rollback expires ORM state."""

    import_id: UUID
    user_id: UUID
    account_id: UUID
    source_type: ImportSourceType
    reconciliation_id: UUID | None
    config: ImportConfig


def error_entry(row_number: int, exc: Exception) -> dict[str, Any]:
    raw_value = getattr(exc, "raw_value", None)
    return {
        "row_number": row_number,
        "field": getattr(exc, "field", None) or "row",
        "error_message": str(exc),
        "raw_value": None if raw_value is None else str(raw_value),
    }


def build_error_summary(errors: list[dict[str, Any]]) -> str | None:
    """First three errors, plus a count of the rest."""
    if not errors:
        return None
    lines = [f"Row {e['row_number']}: {e['error_message']}" for e in errors[:MAX_SUMMARY_ERRORS]]
    summary = "; ".join(lines)
    remaining = len(errors) - MAX_SUMMARY_ERRORS
    if remaining > 0:
        summary += f" (and {remaining} more errors)"
    return summary


def render_error_report(errors: list[dict[str, Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(ERROR_REPORT_HEADER)
    for entry in errors:
        writer.writerow(
            [entry["row_number"], entry["field"], entry["error_message"], entry.get("raw_value") or ""]
        )
    return buffer.getvalue().encode("utf-8")


async def transition_status(
    db: AsyncSession,
    import_id: UUID,
    from_statuses: tuple[ImportStatus, ...],
    to_status: ImportStatus,
    **values: Any,
) -> bool:
    """Conditionally move an import between states; False when another actor got there first."""
    result = await db.execute(
        update(ImportJob)
        .where(ImportJob.id == import_id)
        .where(ImportJob.status.in_(from_statuses))
        .values(status=to_status, updated_at=datetime.now(UTC), **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


class ImportProcessor:
    """Runs one import job from pending to a terminal state."""

    def __init__(
        self,
        storage: Storage,
        *,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        ledger: Ledger | None = None,
        settings_provider: SettingsProvider | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.session_maker = session_maker or get_session_maker()
        self.storage = storage
        self.ledger = ledger or SqlLedger()
        self.settings_provider = settings_provider
        self.rng = rng or random.Random()

    async def process(self, import_id: UUID, *, retryable: bool = False) -> ImportJob | None:
        """Process an import. Jobs that are not pending are left untouched.

        Structural engine errors fail the import and return normally. Any other
        exception is re-raised: with ``retryable`` the job goes back to pending
        so the queue can run it again (rows committed so far are kept and
        resumed), otherwise it is failed.
        """
        config = ImportConfig.from_provider(self.settings_provider)
        with structlog.contextvars.bound_contextvars(import_id=str(import_id), task="process_import"):
            async with self.session_maker() as db:
                job = await db.get(ImportJob, import_id)
                if job is None:
                    logger.warning("Import not found, skipping")
                    return None
                if job.status is not ImportStatus.PENDING:
                    logger.info("Import not pending, skipping", status=job.status.value)
                    return job

                user_id = job.user_id
                processing = await count_active_imports(
                    db, user_id, (ImportStatus.PROCESSING,), exclude_id=import_id
                )
                if processing >= config.max_concurrent_imports_per_user:
                    exc = ConcurrencyLimitExceeded(user_id, processing, config.max_concurrent_imports_per_user)
                    logger.warning("Import failed at pickup: concurrency limit", processing=processing)
                    await transition_status(
                        db,
                        import_id,
                        (ImportStatus.PENDING,),
                        ImportStatus.FAILED,
                        error_message=str(exc),
                        completed_at=datetime.now(UTC),
                    )
                    await db.refresh(job)
                    return job

                claimed = await transition_status(
                    db,
                    import_id,
                    (ImportStatus.PENDING,),
                    ImportStatus.PROCESSING,
                    started_at=datetime.now(UTC),
                    attempts=job.attempts + 1,
                )
                await db.refresh(job)
                if not claimed:
                    logger.info("Import claimed elsewhere, skipping", status=job.status.value)
                    return job

                ctx = ImportContext(
                    import_id=import_id,
                    user_id=user_id,
                    account_id=job.account_id,
                    source_type=job.source_type,
                    reconciliation_id=job.reconciliation_id,
                    config=config,
                )
                try:
                    with log_timing("process_import", logger=logger, source_type=ctx.source_type.value) as timing:
                        counters = await self._run(db, job, ctx)
                        timing["processed"] = counters.processed
                        timing["skipped"] = counters.skipped
                        timing["duplicates"] = counters.duplicate
                except ImportEngineError as exc:
                    await self._fail(db, import_id, exc)
                except Exception as exc:
                    if retryable:
                        await self._release(db, import_id, exc)
                    else:
                        await self._fail(db, import_id, exc)
                    raise

                await db.refresh(job)
                return job

    async def fail_import(self, import_id: UUID, message: str) -> bool:
        """Mark a non-terminal import failed (used when the queue gives up on it)."""
        async with self.session_maker() as db:
            return await transition_status(
                db,
                import_id,
                (ImportStatus.PENDING, ImportStatus.PROCESSING),
                ImportStatus.FAILED,
                error_message=message,
                completed_at=datetime.now(UTC),
            )

    async def _fail(self, db: AsyncSession, import_id: UUID, exc: Exception) -> None:
        await db.rollback()
        log_exception(logger, exc, "Import failed", include_traceback=not isinstance(exc, ImportEngineError))
        await transition_status(
            db,
            import_id,
            (ImportStatus.PENDING, ImportStatus.PROCESSING),
            ImportStatus.FAILED,
            error_message=str(exc) or type(exc).__name__,
            completed_at=datetime.now(UTC),
        )

    async def _release(self, db: AsyncSession, import_id: UUID, exc: Exception) -> None:
        await db.rollback()
        log_exception(logger, exc, "Import attempt failed, returning to pending", level="warning")
        await transition_status(
            db,
            import_id,
            (ImportStatus.PROCESSING,),
            ImportStatus.PENDING,
            error_message=str(exc) or type(exc).__name__,
        )

    async def _run(self, db: AsyncSession, job: ImportJob, ctx: ImportContext) -> ImportCounters:
        raw = await asyncio.to_thread(self.storage.read, job.file_path)
        raw = decompress_if_needed(raw)

        source = build_source(ctx.source_type, mapping=job.column_mapping, filename=job.filename)
        with log_timing("parse_statement", logger=logger, level="debug", source_type=ctx.source_type.value):
            rows = list(source.parse(raw))
        job.total_count = len(rows)
        if ctx.source_type is ImportSourceType.TABULAR and source.resolved_mapping is not None:
            job.column_mapping = source.resolved_mapping.to_dict()

        account = await db.get(Account, ctx.account_id)
        if account is None or account.user_id != ctx.user_id:
            raise ReconciliationNotFoundError(f"Account {ctx.account_id} not found")

        reconciliation = await self._resolve_reconciliation(db, job, ctx, source, account)
        if reconciliation is not None and ctx.reconciliation_id != reconciliation.id:
            ctx = ImportContext(
                import_id=ctx.import_id,
                user_id=ctx.user_id,
                account_id=ctx.account_id,
                source_type=ctx.source_type,
                reconciliation_id=reconciliation.id,
                config=ctx.config,
            )
        await db.commit()

        counters = ImportCounters()
        categorizer = CategorizationService(ctx.config)
        reconciler = ReconciliationService(ReconciliationConfig.from_import_config(ctx.config))

        for row in rows:
            outcome = await self._process_row(db, ctx, row, counters, categorizer, reconciler)
            counters.record(outcome)
            if counters.seen % ctx.config.progress_interval == 0:
                if not await self._checkpoint(db, job, counters):
                    logger.info("Import cancelled externally, stopping", rows_seen=counters.seen)
                    return counters

        await self._complete(db, job, ctx, counters)
        return counters

    async def _resolve_reconciliation(
        self,
        db: AsyncSession,
        job: ImportJob,
        ctx: ImportContext,
        source: Any,
        account: Account,
    ) -> Reconciliation | None:
        if ctx.reconciliation_id is not None:
            reconciliation = await db.get(Reconciliation, ctx.reconciliation_id)
            if (
                reconciliation is None
                or reconciliation.user_id != ctx.user_id
                or reconciliation.account_id != ctx.account_id
            ):
                raise ReconciliationNotFoundError(f"Reconciliation {ctx.reconciliation_id} not found")
            if reconciliation.status is ReconciliationStatus.COMPLETED:
                raise ReconciliationError("Cannot import into a completed reconciliation.")
            return reconciliation

        options = job.options or {}
        statement_balance = options.get("statement_balance")
        statement_date = options.get("statement_date")
        is_ofx = isinstance(source, OfxSource)
        if is_ofx and source.statement is not None:
            if statement_balance is None and source.statement.ledger_balance is not None:
                statement_balance = source.statement.ledger_balance
            if statement_date is None and source.statement.balance_date is not None:
                statement_date = source.statement.balance_date

        wanted = options.get("create_reconciliation", is_ofx)
        if not wanted:
            return None
        if is_ofx and statement_balance is None:
            logger.info("OFX statement has no ledger balance, reconciling against account balance")
            statement_balance = account.balance
        if statement_balance is None:
            return None
        if not is_ofx and statement_date is None:
            return None

        if isinstance(statement_date, str):
            statement_date = date.fromisoformat(statement_date)
        reconciliation = await ReconciliationService().create_reconciliation(
            db,
            user_id=ctx.user_id,
            account_id=ctx.account_id,
            statement_date=statement_date or datetime.now(UTC).date(),
            statement_balance=Decimal(str(statement_balance)),
        )
        job.reconciliation_id = reconciliation.id
        return reconciliation

    async def _find_row_hash(self, db: AsyncSession, ctx: ImportContext, row_hash: str) -> Row[Any] | None:
        result = await db.execute(
            select(ImportRowHash.import_job_id)
            .where(ImportRowHash.user_id == ctx.user_id)
            .where(ImportRowHash.account_id == ctx.account_id)
            .where(ImportRowHash.row_hash == row_hash)
            .limit(1)
        )
        return result.first()

    async def _existing_outcome(
        self, db: AsyncSession, ctx: ImportContext, row_hash: str, counters: ImportCounters
    ) -> RowOutcome | None:
        existing = await self._find_row_hash(db, ctx, row_hash)
        if existing is None:
            return None
        if existing.import_job_id == ctx.import_id and row_hash not in counters.written_hashes:
            # Committed by an earlier attempt of this import.
            counters.written_hashes.add(row_hash)
            return RowOutcome.PROCESSED
        return RowOutcome.DUPLICATE

    async def _process_row(
        self,
        db: AsyncSession,
        ctx: ImportContext,
        row: SourceRow,
        counters: ImportCounters,
        categorizer: CategorizationService,
        reconciler: ReconciliationService,
    ) -> RowOutcome:
        row_hash: str | None = None
        try:
            candidate = row.to_candidate()
            row_hash = compute_row_hash(candidate.date, candidate.amount, candidate.description)
            outcome = await self._existing_outcome(db, ctx, row_hash, counters)
            if outcome is not None:
                return outcome

            if ctx.source_type is ImportSourceType.OFX and ctx.reconciliation_id is not None:
                if await self._attach_existing(db, ctx, candidate, row_hash, reconciler):
                    await db.commit()
                    counters.written_hashes.add(row_hash)
                    return RowOutcome.PROCESSED

            await self._write_row(db, ctx, candidate, row_hash, categorizer, reconciler)
            await db.commit()
            counters.written_hashes.add(row_hash)
            return RowOutcome.PROCESSED
        except IntegrityError:
            # Another import committed the same row between the lookup and the write.
            await db.rollback()
            if row_hash is None or await self._find_row_hash(db, ctx, row_hash) is None:
                raise
            logger.info("Row imported concurrently, counted as duplicate", row_number=row.row_number)
            return RowOutcome.DUPLICATE
        except (InvalidRowDataError, LedgerValidationError) as exc:
            await db.rollback()
            counters.errors.append(error_entry(row.row_number, exc))
            logger.info(
                "Row skipped",
                row_number=row.row_number,
                field=getattr(exc, "field", None),
                error=str(exc),
            )
            return RowOutcome.SKIPPED

    async def _attach_existing(
        self,
        db: AsyncSession,
        ctx: ImportContext,
        candidate: CandidateRow,
        row_hash: str,
        reconciler: ReconciliationService,
    ) -> bool:
        """Link a statement line to a pre-existing ledger transaction when the match is strong enough."""
        matches = await reconciler.find_matches(
            db,
            ctx.account_id,
            candidate.amount,
            candidate.date,
            candidate.description,
            reconciliation_id=ctx.reconciliation_id,
        )
        # Rows written earlier in this same import are not pre-existing.
        matches = [m for m in matches if m.transaction.import_job_id != ctx.import_id]
        if not matches or matches[0].confidence < ctx.config.ofx_auto_attach_threshold:
            return False

        best = matches[0]
        reconciliation = await db.get(Reconciliation, ctx.reconciliation_id)
        await reconciler.add_transaction(db, reconciliation, best.transaction, confidence=best.confidence)
        db.add(
            ImportRowHash(
                user_id=ctx.user_id,
                account_id=ctx.account_id,
                row_hash=row_hash,
                transaction_id=best.transaction.id,
                import_job_id=ctx.import_id,
            )
        )
        await db.flush()
        logger.debug(
            "Statement line matched existing transaction",
            row_number=candidate.row_number,
            transaction_id=str(best.transaction.id),
            confidence=best.confidence,
        )
        return True

    async def _write_row(
        self,
        db: AsyncSession,
        ctx: ImportContext,
        candidate: CandidateRow,
        row_hash: str,
        categorizer: CategorizationService,
        reconciler: ReconciliationService,
    ) -> None:
        suggestion_log = None
        if candidate.category_name:
            category = await get_or_create_category(db, ctx.user_id, candidate.category_name)
            category_id = category.id
        else:
            category_id, _, suggestion_log = await categorizer.categorize_for_write(
                db, ctx.user_id, candidate.description
            )

        tag_ids = [
            (await get_or_create_tag(db, ctx.user_id, name, rng=self.rng)).id for name in candidate.tags
        ]

        transaction = await self.ledger.record_transaction(
            db,
            user_id=ctx.user_id,
            account_id=ctx.account_id,
            type=candidate.type,
            amount=candidate.amount,
            description=candidate.description,
            transaction_date=candidate.date,
            category_id=category_id,
            settled_date=candidate.settled_date,
            tag_ids=tag_ids,
            external_id=candidate.external_id,
            import_job_id=ctx.import_id,
        )
        if suggestion_log is not None:
            suggestion_log.transaction_id = transaction.id

        db.add(
            ImportRowHash(
                user_id=ctx.user_id,
                account_id=ctx.account_id,
                row_hash=row_hash,
                transaction_id=transaction.id,
                import_job_id=ctx.import_id,
            )
        )
        await db.flush()

        if ctx.source_type is ImportSourceType.TABULAR and ctx.reconciliation_id is not None:
            matches = await reconciler.find_matches(
                db,
                ctx.account_id,
                transaction.amount,
                transaction.transaction_date,
                transaction.description,
                reconciliation_id=ctx.reconciliation_id,
            )
            # Only an exact match against the row just written is attached.
            self_match = next((m for m in matches if m.transaction.id == transaction.id), None)
            if self_match is not None and self_match.confidence == PERFECT_SCORE:
                reconciliation = await db.get(Reconciliation, ctx.reconciliation_id)
                await reconciler.add_transaction(
                    db, reconciliation, transaction, confidence=self_match.confidence
                )

    async def _checkpoint(self, db: AsyncSession, job: ImportJob, counters: ImportCounters) -> bool:
        """Persist counters; False when the job was moved to a terminal state by someone else."""
        await db.refresh(job)
        if job.status is not ImportStatus.PROCESSING:
            return False
        job.processed_count = counters.processed
        job.skipped_count = counters.skipped
        job.duplicate_count = counters.duplicate
        await db.commit()
        return True

    async def _complete(
        self, db: AsyncSession, job: ImportJob, ctx: ImportContext, counters: ImportCounters
    ) -> None:
        await db.refresh(job)
        if job.status is not ImportStatus.PROCESSING:
            logger.info("Import finished after external cancel", status=job.status.value)
            return

        summary = build_error_summary(counters.errors)
        report_path = None
        if counters.errors:
            report_path = await asyncio.to_thread(
                self.storage.store,
                render_error_report(counters.errors),
                f"imports/{ctx.user_id}/{ctx.import_id}/errors.csv",
                content_type="text/csv",
            )

        all_failed = counters.processed == 0 and counters.duplicate == 0
        final_status = ImportStatus.FAILED if all_failed else ImportStatus.COMPLETED
        error_message = summary
        if all_failed and not summary:
            error_message = ALL_ROWS_FAILED_MESSAGE if counters.seen else NO_ROWS_MESSAGE

        await transition_status(
            db,
            ctx.import_id,
            (ImportStatus.PROCESSING,),
            final_status,
            total_count=counters.seen,
            processed_count=counters.processed,
            skipped_count=counters.skipped,
            duplicate_count=counters.duplicate,
            error_message=error_message,
            error_report=counters.errors or None,
            error_report_path=report_path,
            completed_at=datetime.now(UTC),
        )
        logger.info(
            "Import finished",
            status=final_status.value,
            total=counters.seen,
            processed=counters.processed,
            skipped=counters.skipped,
            duplicates=counters.duplicate,
        )
