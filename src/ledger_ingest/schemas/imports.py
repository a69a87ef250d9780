"""Pydantic schemas for the import API."""

import datetime as dt
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from ledger_ingest.models import TransactionType
from ledger_ingest.schemas.base import BaseResponse, ListResponse


class ImportSourceTypeEnum(str, Enum):
    OFX = "ofx"
    TABULAR = "tabular"


class ImportStatusEnum(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ErrorReportEntry(BaseModel):
    """One skipped row in an import's error report."""

    row_number: int
    field: str
    error_message: str
    raw_value: str | None = None


class ImportJobResponse(BaseResponse):
    """Import job with counters and derived progress."""

    id: UUID
    account_id: UUID
    source_type: ImportSourceTypeEnum
    filename: str
    file_hash: str
    status: ImportStatusEnum
    total_count: int
    processed_count: int
    skipped_count: int
    duplicate_count: int
    progress_percentage: float
    error_message: str | None = None
    error_report_path: str | None = None
    reconciliation_id: UUID | None = None
    column_mapping: dict[str, Any] | None = None
    attempts: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


ImportJobListResponse = ListResponse[ImportJobResponse]


class ImportErrorsResponse(BaseModel):
    import_id: UUID
    errors: list[ErrorReportEntry] = Field(default_factory=list)
    total: int


class PreviewTransaction(BaseModel):
    row_number: int
    date: dt.date | None = None
    description: str
    amount: Decimal
    type: TransactionType
    settled_date: dt.date | None = None
    category_name: str | None = None
    tags: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ValidationSummary(BaseModel):
    valid_rows: int
    rows_with_warnings: int


class MappingPreviewResponse(BaseModel):
    """Resolved column mapping applied to the first rows of a file."""

    mapping: dict[str, Any]
    preview_transactions: list[PreviewTransaction]
    validation_summary: ValidationSummary
