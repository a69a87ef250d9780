"""Tests for import admission.

GIVEN: Uploaded statement files for a user's account
WHEN: Creating, listing and cancelling imports
THEN: Concurrency and duplicate-file rules are enforced before a job is queued
"""

import gzip
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from ledger_ingest.config import ImportConfig
from ledger_ingest.exceptions import (
    ConcurrencyLimitExceeded,
    DuplicateFileError,
    ImportNotFoundError,
    ReconciliationNotFoundError,
)
from ledger_ingest.models import ImportSourceType, ImportStatus
from ledger_ingest.services.hashing import compute_file_hash
from ledger_ingest.services.imports import ImportService, count_active_imports, storage_key
from tests.factories import AccountFactory, ImportJobFactory

CSV_CONTENT = b"Date,Description,Amount\n2024-01-15,Coffee,-4.50\n"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.enqueued: list[UUID] = []

    async def enqueue(self, import_id: UUID) -> None:
        self.enqueued.append(import_id)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def service(storage, dispatcher) -> ImportService:
    return ImportService(storage, dispatcher=dispatcher, config=ImportConfig(max_concurrent_imports_per_user=2))


class TestStorageKey:
    def test_key_layout(self):
        user_id = uuid4()

        key = storage_key(user_id, "my statement (1).csv")

        assert key.startswith(f"imports/{user_id}/")
        assert key.endswith("/my_statement_1_.csv.gz")


class TestCreateImport:
    @pytest.mark.asyncio
    async def test_creates_pending_job(self, db, user_id, service, storage, dispatcher):
        """GIVEN: A new CSV for an owned account
        WHEN: Creating an import
        THEN: The file is stored compressed, a pending job exists and it is dispatched"""
        account = await AccountFactory.create_async(db, user_id=user_id)

        job = await service.create_import(
            db,
            user_id=user_id,
            account_id=account.id,
            filename="january.csv",
            content=CSV_CONTENT,
            statement_date=date(2024, 1, 31),
            statement_balance=Decimal("995.50"),
            create_reconciliation=True,
        )

        assert job.status == ImportStatus.PENDING
        assert job.source_type == ImportSourceType.TABULAR
        assert job.file_hash == compute_file_hash(CSV_CONTENT)
        assert job.file_path.endswith("january.csv.gz")
        assert storage.read(job.file_path) == CSV_CONTENT
        assert storage.objects[job.file_path][:2] == b"\x1f\x8b"
        assert job.options == {
            "force": False,
            "statement_date": "2024-01-31",
            "statement_balance": "995.50",
            "create_reconciliation": True,
        }
        assert dispatcher.enqueued == [job.id]

    @pytest.mark.asyncio
    async def test_gzipped_upload_is_stored_decompressed(self, db, user_id, service, storage):
        account = await AccountFactory.create_async(db, user_id=user_id)

        job = await service.create_import(
            db,
            user_id=user_id,
            account_id=account.id,
            filename="january.csv",
            content=gzip.compress(CSV_CONTENT),
        )

        assert job.file_hash == compute_file_hash(CSV_CONTENT)
        assert storage.read(job.file_path) == CSV_CONTENT

    @pytest.mark.asyncio
    async def test_detects_ofx_by_content(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)

        job = await service.create_import(
            db,
            user_id=user_id,
            account_id=account.id,
            filename="download",
            content=b"OFXHEADER:100\n<OFX><STMTTRN><TRNAMT>1</STMTTRN></OFX>",
        )

        assert job.source_type == ImportSourceType.OFX

    @pytest.mark.asyncio
    async def test_unknown_account(self, db, user_id, service):
        other_users_account = await AccountFactory.create_async(db, user_id=uuid4())

        with pytest.raises(ReconciliationNotFoundError):
            await service.create_import(
                db, user_id=user_id, account_id=other_users_account.id, filename="a.csv", content=CSV_CONTENT
            )

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, db, user_id, service, dispatcher):
        """GIVEN: Two active imports and a limit of two
        WHEN: A third upload arrives
        THEN: It is rejected and nothing is dispatched"""
        account = await AccountFactory.create_async(db, user_id=user_id)
        await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id)
        await ImportJobFactory.create_async(
            db, user_id=user_id, account_id=account.id, status=ImportStatus.PROCESSING
        )
        await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id, status=ImportStatus.FAILED)

        assert await count_active_imports(db, user_id) == 2
        with pytest.raises(ConcurrencyLimitExceeded) as exc_info:
            await service.create_import(
                db, user_id=user_id, account_id=account.id, filename="a.csv", content=CSV_CONTENT
            )

        assert exc_info.value.active == 2
        assert exc_info.value.limit == 2
        assert dispatcher.enqueued == []

    @pytest.mark.asyncio
    async def test_duplicate_pending_file(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)
        first = await service.create_import(
            db, user_id=user_id, account_id=account.id, filename="a.csv", content=CSV_CONTENT
        )

        with pytest.raises(DuplicateFileError) as exc_info:
            await service.create_import(
                db, user_id=user_id, account_id=account.id, filename="b.csv", content=CSV_CONTENT, force=True
            )

        assert exc_info.value.existing_import_id == first.id
        assert exc_info.value.status == "pending"

    @pytest.mark.asyncio
    async def test_completed_duplicate_needs_force(self, db, user_id, service):
        """GIVEN: A completed import of the same content
        WHEN: Re-uploading with and without force
        THEN: Only the forced upload is admitted"""
        account = await AccountFactory.create_async(db, user_id=user_id)
        first = await service.create_import(
            db, user_id=user_id, account_id=account.id, filename="a.csv", content=CSV_CONTENT
        )
        first.status = ImportStatus.COMPLETED
        await db.commit()

        with pytest.raises(DuplicateFileError, match="status: completed"):
            await service.create_import(
                db, user_id=user_id, account_id=account.id, filename="a.csv", content=CSV_CONTENT
            )

        forced = await service.create_import(
            db, user_id=user_id, account_id=account.id, filename="a.csv", content=CSV_CONTENT, force=True
        )
        assert forced.id != first.id
        assert forced.options["force"] is True

    @pytest.mark.asyncio
    async def test_failed_import_does_not_block(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await ImportJobFactory.create_async(
            db,
            user_id=user_id,
            account_id=account.id,
            status=ImportStatus.FAILED,
            file_hash=compute_file_hash(CSV_CONTENT),
        )

        job = await service.create_import(
            db, user_id=user_id, account_id=account.id, filename="a.csv", content=CSV_CONTENT
        )

        assert job.status == ImportStatus.PENDING

    @pytest.mark.asyncio
    async def test_same_file_other_account_is_allowed(self, db, user_id, service):
        first_account = await AccountFactory.create_async(db, user_id=user_id)
        second_account = await AccountFactory.create_async(db, user_id=user_id)
        await service.create_import(
            db, user_id=user_id, account_id=first_account.id, filename="a.csv", content=CSV_CONTENT
        )

        job = await service.create_import(
            db, user_id=user_id, account_id=second_account.id, filename="a.csv", content=CSV_CONTENT
        )

        assert job.account_id == second_account.id


class TestQueryAndCancel:
    @pytest.mark.asyncio
    async def test_get_import_is_user_scoped(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id)

        assert (await service.get_import(db, job.id, user_id)).id == job.id
        with pytest.raises(ImportNotFoundError):
            await service.get_import(db, job.id, uuid4())
        with pytest.raises(ImportNotFoundError):
            await service.get_import(db, uuid4(), user_id)

    @pytest.mark.asyncio
    async def test_list_imports_with_status_filter(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id)
        completed = await ImportJobFactory.create_async(
            db, user_id=user_id, account_id=account.id, status=ImportStatus.COMPLETED
        )
        await ImportJobFactory.create_async(db, user_id=uuid4(), account_id=account.id)

        items, total = await service.list_imports(db, user_id)
        filtered, filtered_total = await service.list_imports(db, user_id, status=ImportStatus.COMPLETED)

        assert total == 2
        assert len(items) == 2
        assert [job.id for job in filtered] == [completed.id]
        assert filtered_total == 1

    @pytest.mark.asyncio
    async def test_cancel_pending_import(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id)

        cancelled = await service.cancel_import(db, job.id, user_id)

        assert cancelled.status == ImportStatus.FAILED
        assert cancelled.error_message == "Import cancelled by user"
        assert cancelled.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_terminal_import_is_noop(self, db, user_id, service):
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await ImportJobFactory.create_async(
            db, user_id=user_id, account_id=account.id, status=ImportStatus.COMPLETED
        )

        result = await service.cancel_import(db, job.id, user_id)

        assert result.status == ImportStatus.COMPLETED
        assert result.error_message is None
