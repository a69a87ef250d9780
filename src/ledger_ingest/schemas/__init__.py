"""Pydantic schemas for API request/response validation."""

from ledger_ingest.schemas.base import BaseResponse, ListResponse
from ledger_ingest.schemas.imports import (
    ErrorReportEntry,
    ImportErrorsResponse,
    ImportJobListResponse,
    ImportJobResponse,
    ImportSourceTypeEnum,
    ImportStatusEnum,
    MappingPreviewResponse,
    PreviewTransaction,
    ValidationSummary,
)

__all__ = [
    "BaseResponse",
    "ErrorReportEntry",
    "ImportErrorsResponse",
    "ImportJobListResponse",
    "ImportJobResponse",
    "ImportSourceTypeEnum",
    "ImportStatusEnum",
    "ListResponse",
    "MappingPreviewResponse",
    "PreviewTransaction",
    "ValidationSummary",
]
