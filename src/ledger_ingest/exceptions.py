"""Import engine error taxonomy.

Row-level errors (InvalidRowDataError, LedgerValidationError) are recovered by
the import processor and land in the error report. Everything else is
structural and ends the import with a terminal error message.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID


class ImportEngineError(Exception):
    """Base class for import engine errors."""


class ConcurrencyLimitExceeded(ImportEngineError):
    """The user already has the maximum number of active imports."""

    def __init__(self, user_id: UUID, active: int, limit: int) -> None:
        self.user_id = user_id
        self.active = active
        self.limit = limit
        super().__init__(
            f"Maximum concurrent imports reached ({active}/{limit}). "
            "Please wait for an existing import to finish."
        )


class DuplicateFileError(ImportEngineError):
    """The same file content was already imported (or is importing) for this account."""

    def __init__(self, existing_import_id: UUID, status: str | None = None) -> None:
        self.existing_import_id = existing_import_id
        self.status = status
        suffix = f" (status: {status})" if status else ""
        super().__init__(
            f"This file has already been imported for this account{suffix}. "
            f"Existing import: {existing_import_id}"
        )


class ColumnMappingError(ImportEngineError):
    """Column mapping cannot be satisfied, even after auto-guessing."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid column mapping: " + "; ".join(self.errors))


class ParseError(ImportEngineError):
    """The file has no structurally valid header or transaction block."""


class InvalidRowDataError(ImportEngineError):
    """A single row holds an unusable value."""

    def __init__(self, message: str, *, field: str | None = None, raw_value: Any = None) -> None:
        self.field = field
        self.raw_value = raw_value
        super().__init__(message)


class LedgerValidationError(ImportEngineError):
    """The ledger refused a transaction (row-level)."""


class ReconciliationNotFoundError(ImportEngineError):
    """A referenced reconciliation or account does not exist."""


class ReconciliationError(ImportEngineError):
    """Invalid operation on a reconciliation (e.g. modifying a completed one)."""


class StorageError(ImportEngineError):
    """Raised when storage operations fail."""


class ImportNotFoundError(ImportEngineError):
    """The import job does not exist or is not visible to the caller."""
