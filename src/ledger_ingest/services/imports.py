"""Import admission: concurrency ceiling, file-level duplicates, storage, dispatch."""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_ingest.config import ImportConfig
from ledger_ingest.exceptions import (
    ConcurrencyLimitExceeded,
    DuplicateFileError,
    ImportNotFoundError,
    ReconciliationNotFoundError,
    StorageError,
)
from ledger_ingest.logger import get_logger
from ledger_ingest.models import (
    ACTIVE_IMPORT_STATUSES,
    DUPLICATE_BLOCKING_STATUSES,
    Account,
    ImportJob,
    ImportSourceType,
    ImportStatus,
)
from ledger_ingest.services.hashing import compute_file_hash, decompress_if_needed
from ledger_ingest.services.parsers import detect_source_type
from ledger_ingest.services.storage import COMPRESSED_SUFFIX, Storage

logger = get_logger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class ImportDispatcher(Protocol):
    async def enqueue(self, import_id: UUID) -> None: ...


def storage_key(user_id: UUID, filename: str) -> str:
    safe = _UNSAFE_FILENAME_RE.sub("_", filename).strip("._") or "statement"
    return f"imports/{user_id}/{uuid4()}/{safe}{COMPRESSED_SUFFIX}"


async def count_active_imports(
    db: AsyncSession,
    user_id: UUID,
    statuses: tuple[ImportStatus, ...] = ACTIVE_IMPORT_STATUSES,
    *,
    exclude_id: UUID | None = None,
) -> int:
    query = (
        select(func.count())
        .select_from(ImportJob)
        .where(ImportJob.user_id == user_id)
        .where(ImportJob.status.in_(statuses))
    )
    if exclude_id is not None:
        query = query.where(ImportJob.id != exclude_id)
    return int((await db.execute(query)).scalar_one())


async def find_duplicate_import(db: AsyncSession, file_hash: str, account_id: UUID) -> ImportJob | None:
    """Most recent pending/processing/completed import of the same content for the account."""
    result = await db.execute(
        select(ImportJob)
        .where(ImportJob.file_hash == file_hash)
        .where(ImportJob.account_id == account_id)
        .where(ImportJob.status.in_(DUPLICATE_BLOCKING_STATUSES))
        .order_by(ImportJob.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class ImportService:
    """Accepts uploads and turns them into pending import jobs."""

    def __init__(
        self,
        storage: Storage,
        *,
        dispatcher: ImportDispatcher | None = None,
        config: ImportConfig | None = None,
    ) -> None:
        self.storage = storage
        self.dispatcher = dispatcher
        self.config = config or ImportConfig.from_provider()

    async def create_import(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: UUID,
        filename: str,
        content: bytes,
        source_type: ImportSourceType | None = None,
        column_mapping: dict[str, Any] | None = None,
        reconciliation_id: UUID | None = None,
        statement_date: date | None = None,
        statement_balance: Decimal | None = None,
        create_reconciliation: bool | None = None,
        force: bool = False,
    ) -> ImportJob:
        """Admit an upload and dispatch it for background processing.

        Raises:
            ReconciliationNotFoundError: the account does not exist for this user.
            ConcurrencyLimitExceeded: too many pending/processing imports.
            DuplicateFileError: same content already pending, processing or
                completed for the account (completed ones are bypassed by force).
            StorageError: the file could not be stored.
        """
        account = await db.get(Account, account_id)
        if account is None or account.user_id != user_id:
            raise ReconciliationNotFoundError(f"Account {account_id} not found")

        active = await count_active_imports(db, user_id)
        limit = self.config.max_concurrent_imports_per_user
        if active >= limit:
            logger.warning("Import rejected: concurrency limit", user_id=str(user_id), active=active, limit=limit)
            raise ConcurrencyLimitExceeded(user_id, active, limit)

        original = decompress_if_needed(content)
        file_hash = compute_file_hash(original)
        existing = await find_duplicate_import(db, file_hash, account_id)
        if existing is not None:
            if not force or existing.status in ACTIVE_IMPORT_STATUSES:
                logger.info(
                    "Import rejected: duplicate file",
                    existing_import_id=str(existing.id),
                    status=existing.status.value,
                    force=force,
                )
                raise DuplicateFileError(existing.id, existing.status.value)
            logger.info("Force re-import of completed file", existing_import_id=str(existing.id))

        resolved_type = source_type or detect_source_type(filename, original)
        key = storage_key(user_id, filename)
        file_path = await asyncio.to_thread(self.storage.store, original, key)

        options: dict[str, Any] = {"force": force}
        if statement_date is not None:
            options["statement_date"] = statement_date.isoformat()
        if statement_balance is not None:
            options["statement_balance"] = str(statement_balance)
        if create_reconciliation is not None:
            options["create_reconciliation"] = create_reconciliation

        job = ImportJob(
            user_id=user_id,
            account_id=account_id,
            source_type=resolved_type,
            filename=filename,
            file_hash=file_hash,
            file_path=file_path,
            status=ImportStatus.PENDING,
            reconciliation_id=reconciliation_id,
            column_mapping=column_mapping,
            options=options,
        )
        db.add(job)
        try:
            await db.commit()
        except IntegrityError as exc:
            # Lost a race against a concurrent upload of the same content.
            await db.rollback()
            await self._discard_file(file_path)
            existing = await find_duplicate_import(db, file_hash, account_id)
            if existing is None:
                raise
            raise DuplicateFileError(existing.id, existing.status.value) from exc

        logger.info(
            "Import created",
            import_id=str(job.id),
            source_type=resolved_type.value,
            filename=filename,
            account_id=str(account_id),
        )
        if self.dispatcher is not None:
            await self.dispatcher.enqueue(job.id)
        return job

    async def _discard_file(self, file_path: str) -> None:
        try:
            await asyncio.to_thread(self.storage.delete, file_path)
        except StorageError as exc:
            logger.warning("Failed to discard stored upload", file_path=file_path, error=str(exc))

    async def get_import(self, db: AsyncSession, import_id: UUID, user_id: UUID) -> ImportJob:
        job = await db.get(ImportJob, import_id)
        if job is None or job.user_id != user_id:
            raise ImportNotFoundError(f"Import {import_id} not found")
        return job

    async def list_imports(
        self,
        db: AsyncSession,
        user_id: UUID,
        *,
        status: ImportStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ImportJob], int]:
        query = select(ImportJob).where(ImportJob.user_id == user_id)
        count_query = select(func.count()).select_from(ImportJob).where(ImportJob.user_id == user_id)
        if status is not None:
            query = query.where(ImportJob.status == status)
            count_query = count_query.where(ImportJob.status == status)
        result = await db.execute(query.order_by(ImportJob.created_at.desc()).limit(limit).offset(offset))
        total = int((await db.execute(count_query)).scalar_one())
        return list(result.scalars().all()), total

    async def cancel_import(self, db: AsyncSession, import_id: UUID, user_id: UUID) -> ImportJob:
        """Force a non-terminal import to failed; the worker stops at its next checkpoint."""
        job = await self.get_import(db, import_id, user_id)
        if job.status.is_terminal:
            return job
        job.status = ImportStatus.FAILED
        job.error_message = "Import cancelled by user"
        job.completed_at = datetime.now(UTC)
        await db.commit()
        await db.refresh(job)
        logger.info("Import cancelled", import_id=str(import_id))
        return job
