"""Statement import API router."""

import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, File, Form, Query, UploadFile, status

from ledger_ingest.config import settings
from ledger_ingest.deps import CurrentUserId, DbSession, ImportServiceDep
from ledger_ingest.exceptions import (
    ColumnMappingError,
    ConcurrencyLimitExceeded,
    DuplicateFileError,
    ImportNotFoundError,
    ParseError,
    ReconciliationNotFoundError,
    StorageError,
)
from ledger_ingest.logger import get_logger
from ledger_ingest.models import ImportSourceType, ImportStatus
from ledger_ingest.schemas import (
    ErrorReportEntry,
    ImportErrorsResponse,
    ImportJobListResponse,
    ImportJobResponse,
    MappingPreviewResponse,
)
from ledger_ingest.services import column_mapping
from ledger_ingest.services.hashing import decompress_if_needed
from ledger_ingest.utils import (
    raise_bad_request,
    raise_conflict,
    raise_not_found,
    raise_service_unavailable,
    raise_too_large,
    raise_too_many_requests,
)

router = APIRouter(prefix="/imports", tags=["imports"])

logger = get_logger(__name__)

CONCURRENCY_RETRY_AFTER_SECONDS = 30


def _parse_mapping(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise_bad_request("column_mapping must be a JSON object", cause=exc)
    if not isinstance(mapping, dict):
        raise_bad_request("column_mapping must be a JSON object")
    return mapping


async def _read_upload(file: UploadFile) -> tuple[str, bytes]:
    filename = Path(file.filename or "statement").name or "statement"
    content = await file.read()
    if not content:
        raise_bad_request("Uploaded file is empty")
    if len(content) > settings.max_upload_bytes:
        raise_too_large(f"File exceeds {settings.max_upload_bytes // (1024 * 1024)}MB limit")
    return filename, content


@router.post("/upload", response_model=ImportJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_import(
    db: DbSession,
    user_id: CurrentUserId,
    service: ImportServiceDep,
    file: Annotated[UploadFile, File()],
    account_id: Annotated[UUID, Form()],
    source_type: Annotated[ImportSourceType | None, Form()] = None,
    column_mapping_json: Annotated[str | None, Form(alias="column_mapping")] = None,
    reconciliation_id: Annotated[UUID | None, Form()] = None,
    statement_date: Annotated[date | None, Form()] = None,
    statement_balance: Annotated[Decimal | None, Form()] = None,
    create_reconciliation: Annotated[bool | None, Form()] = None,
    force: Annotated[bool, Form()] = False,
) -> ImportJobResponse:
    """
    Upload an OFX/QFX, CSV or XLSX statement and enqueue it for import.

    The source type is detected from the file when not given. Re-uploading
    content that was already imported for the account is rejected unless
    ``force`` is set.
    """
    filename, content = await _read_upload(file)
    mapping = _parse_mapping(column_mapping_json)

    logger.info(
        "Import upload request received",
        user_id=str(user_id),
        filename=filename,
        size_bytes=len(content),
        source_type=source_type.value if source_type else "(detect)",
        force=force,
    )

    try:
        job = await service.create_import(
            db,
            user_id=user_id,
            account_id=account_id,
            filename=filename,
            content=content,
            source_type=source_type,
            column_mapping=mapping,
            reconciliation_id=reconciliation_id,
            statement_date=statement_date,
            statement_balance=statement_balance,
            create_reconciliation=create_reconciliation,
            force=force,
        )
    except ReconciliationNotFoundError as exc:
        raise_not_found("Account", cause=exc)
    except ConcurrencyLimitExceeded as exc:
        raise_too_many_requests(str(exc), retry_after=CONCURRENCY_RETRY_AFTER_SECONDS, cause=exc)
    except DuplicateFileError as exc:
        raise_conflict(
            {
                "message": str(exc),
                "existing_import_id": str(exc.existing_import_id),
                "status": exc.status,
            },
            cause=exc,
        )
    except StorageError as exc:
        raise_service_unavailable("Failed to store uploaded file", cause=exc)

    return ImportJobResponse.model_validate(job)


@router.post("/preview", response_model=MappingPreviewResponse)
async def preview_mapping(
    user_id: CurrentUserId,
    file: Annotated[UploadFile, File()],
    column_mapping_json: Annotated[str | None, Form(alias="column_mapping")] = None,
    limit: Annotated[int, Form(ge=1, le=50)] = 5,
) -> MappingPreviewResponse:
    """Apply a column mapping (or the guessed one) to the first rows of a CSV/XLSX file."""
    filename, content = await _read_upload(file)
    mapping = _parse_mapping(column_mapping_json)
    try:
        result = column_mapping.preview(decompress_if_needed(content), mapping, filename=filename, limit=limit)
    except ColumnMappingError as exc:
        raise_bad_request(str(exc), cause=exc)
    except ParseError as exc:
        raise_bad_request(str(exc), cause=exc)
    return MappingPreviewResponse.model_validate(result)


@router.get("", response_model=ImportJobListResponse)
async def list_imports(
    db: DbSession,
    user_id: CurrentUserId,
    service: ImportServiceDep,
    status_filter: Annotated[ImportStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ImportJobListResponse:
    """List the current user's imports, newest first."""
    items, total = await service.list_imports(db, user_id, status=status_filter, limit=limit, offset=offset)
    return ImportJobListResponse(
        items=[ImportJobResponse.model_validate(job) for job in items],
        total=total,
    )


@router.get("/{import_id}", response_model=ImportJobResponse)
async def get_import(
    import_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    service: ImportServiceDep,
) -> ImportJobResponse:
    try:
        job = await service.get_import(db, import_id, user_id)
    except ImportNotFoundError as exc:
        raise_not_found("Import", cause=exc)
    return ImportJobResponse.model_validate(job)


@router.get("/{import_id}/errors", response_model=ImportErrorsResponse)
async def get_import_errors(
    import_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    service: ImportServiceDep,
) -> ImportErrorsResponse:
    """Row-level errors recorded while processing the import."""
    try:
        job = await service.get_import(db, import_id, user_id)
    except ImportNotFoundError as exc:
        raise_not_found("Import", cause=exc)
    errors = [ErrorReportEntry.model_validate(entry) for entry in job.error_report or []]
    return ImportErrorsResponse(import_id=job.id, errors=errors, total=len(errors))


@router.post("/{import_id}/cancel", response_model=ImportJobResponse)
async def cancel_import(
    import_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    service: ImportServiceDep,
) -> ImportJobResponse:
    """Stop a pending or processing import; rows already committed are kept."""
    try:
        job = await service.cancel_import(db, import_id, user_id)
    except ImportNotFoundError as exc:
        raise_not_found("Import", cause=exc)
    return ImportJobResponse.model_validate(job)
