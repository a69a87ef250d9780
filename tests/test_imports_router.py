"""Tests for the imports API router.

The app lifespan is not run: storage and the job dispatcher are placed on
app.state directly so no workers pick jobs up.
"""

import json
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ledger_ingest.config import settings
from ledger_ingest.main import app
from ledger_ingest.models import ImportStatus
from tests.factories import AccountFactory, ImportJobFactory

CSV_CONTENT = b"Date,Description,Amount\n2024-01-15,Coffee,-4.50\n2024-01-16,Payroll,2000\n"


class RecordingDispatcher:
    def __init__(self) -> None:
        self.enqueued = []

    async def enqueue(self, import_id) -> None:
        self.enqueued.append(import_id)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def client(session_maker, storage, dispatcher):
    app.state.storage = storage
    app.state.job_queue = dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    del app.state.storage
    del app.state.job_queue


@pytest.fixture
def headers(user_id) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


async def upload(client, headers, account_id, content=CSV_CONTENT, filename="statement.csv", **form):
    data = {"account_id": str(account_id), **form}
    return await client.post(
        "/imports/upload",
        headers=headers,
        files={"file": (filename, content, "text/csv")},
        data=data,
    )


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_accepted(self, client, db, user_id, headers, dispatcher, storage):
        """GIVEN: An owned account
        WHEN: Uploading a CSV statement with reconciliation options
        THEN: A pending job is returned with 202 and dispatched"""
        account = await AccountFactory.create_async(db, user_id=user_id)
        await db.commit()

        response = await upload(
            client,
            headers,
            account.id,
            statement_date="2024-01-31",
            statement_balance="1995.50",
            create_reconciliation="true",
        )

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["source_type"] == "tabular"
        assert body["progress_percentage"] == 0.0
        assert [str(i) for i in dispatcher.enqueued] == [body["id"]]
        assert len(storage.objects) == 1

    @pytest.mark.asyncio
    async def test_empty_file_rejected(self, client, db, user_id, headers):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await db.commit()

        response = await upload(client, headers, account.id, content=b"")

        assert response.status_code == 400
        assert response.json()["detail"] == "Uploaded file is empty"

    @pytest.mark.asyncio
    async def test_file_too_large(self, client, db, user_id, headers, monkeypatch):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await db.commit()
        monkeypatch.setattr(settings, "max_upload_bytes", 10)

        response = await upload(client, headers, account.id)

        assert response.status_code == 413

    @pytest.mark.asyncio
    async def test_bad_column_mapping_json(self, client, db, user_id, headers):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await db.commit()

        response = await upload(client, headers, account.id, column_mapping="[1, 2]")

        assert response.status_code == 400
        assert "column_mapping" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_unknown_account(self, client, headers):
        response = await upload(client, headers, uuid4())

        assert response.status_code == 404
        assert response.json()["detail"] == "Account not found"

    @pytest.mark.asyncio
    async def test_duplicate_upload_conflict(self, client, db, user_id, headers):
        """GIVEN: A pending import of the same file
        WHEN: Uploading it again
        THEN: 409 names the existing import"""
        account = await AccountFactory.create_async(db, user_id=user_id)
        await db.commit()
        first = await upload(client, headers, account.id)

        response = await upload(client, headers, account.id, force="true")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["existing_import_id"] == first.json()["id"]
        assert detail["status"] == "pending"

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, client, db, user_id, headers, monkeypatch):
        account = await AccountFactory.create_async(db, user_id=user_id)
        await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id)
        await db.commit()
        monkeypatch.setattr(settings, "max_concurrent_imports_per_user", 1)

        response = await upload(client, headers, account.id)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"

    @pytest.mark.asyncio
    async def test_user_header_required(self, client):
        response = await client.get("/imports", headers={"X-User-Id": "not-a-uuid"})

        assert response.status_code == 400


class TestPreview:
    @pytest.mark.asyncio
    async def test_preview_guessed_mapping(self, client, headers):
        response = await client.post(
            "/imports/preview",
            headers=headers,
            files={"file": ("statement.csv", CSV_CONTENT, "text/csv")},
            data={"limit": "1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["mapping"]["date_column"] == "Date"
        assert body["mapping"]["amount_column"] == "Amount"
        assert len(body["preview_transactions"]) == 1
        assert body["preview_transactions"][0]["description"] == "Coffee"
        assert body["validation_summary"] == {"valid_rows": 1, "rows_with_warnings": 0}

    @pytest.mark.asyncio
    async def test_preview_unsatisfiable_mapping(self, client, headers):
        response = await client.post(
            "/imports/preview",
            headers=headers,
            files={"file": ("statement.csv", b"Foo,Bar\n1,2\n", "text/csv")},
            data={"column_mapping": json.dumps({"date_column": "Missing"})},
        )

        assert response.status_code == 400
        assert "Invalid column mapping" in response.json()["detail"]


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_get_and_errors(self, client, db, user_id, headers):
        """GIVEN: A completed import carrying an error report, and another user's import
        WHEN: Listing, fetching and reading errors
        THEN: Only the caller's import is visible and its report is returned"""
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await ImportJobFactory.create_async(
            db,
            user_id=user_id,
            account_id=account.id,
            status=ImportStatus.COMPLETED,
            total_count=4,
            processed_count=3,
            skipped_count=1,
            error_report=[
                {"row_number": 3, "field": "amount", "error_message": "Invalid amount", "raw_value": "abc"}
            ],
        )
        await ImportJobFactory.create_async(db, user_id=uuid4(), account_id=account.id)
        await db.commit()

        listed = await client.get("/imports", headers=headers, params={"status": "completed"})
        fetched = await client.get(f"/imports/{job.id}", headers=headers)
        errors = await client.get(f"/imports/{job.id}/errors", headers=headers)

        assert listed.status_code == 200
        assert listed.json()["total"] == 1
        assert [item["id"] for item in listed.json()["items"]] == [str(job.id)]
        assert fetched.json()["progress_percentage"] == 75.0
        assert errors.json()["total"] == 1
        assert errors.json()["errors"][0]["raw_value"] == "abc"

    @pytest.mark.asyncio
    async def test_other_users_import_is_not_found(self, client, db, user_id, headers):
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await ImportJobFactory.create_async(db, user_id=uuid4(), account_id=account.id)
        await db.commit()

        response = await client.get(f"/imports/{job.id}", headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"] == "Import not found"

    @pytest.mark.asyncio
    async def test_cancel(self, client, db, user_id, headers):
        account = await AccountFactory.create_async(db, user_id=user_id)
        job = await ImportJobFactory.create_async(db, user_id=user_id, account_id=account.id)
        await db.commit()

        response = await client.post(f"/imports/{job.id}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert response.json()["error_message"] == "Import cancelled by user"
