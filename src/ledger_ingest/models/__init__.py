"""SQLAlchemy models."""

from ledger_ingest.models.categorization import (
    AutoCategoryCorrection,
    AutoCategoryRule,
    AutoCategorySuggestionLog,
    CorrectionType,
    LearnedCategoryPattern,
    SuggestionAction,
    SuggestionSource,
)
from ledger_ingest.models.imports import (
    ACTIVE_IMPORT_STATUSES,
    DUPLICATE_BLOCKING_STATUSES,
    ImportJob,
    ImportRowHash,
    ImportSourceType,
    ImportStatus,
)
from ledger_ingest.models.ledger import (
    Account,
    Category,
    CategoryType,
    Tag,
    Transaction,
    TransactionType,
    transaction_tags,
)
from ledger_ingest.models.reconciliation import (
    Reconciliation,
    ReconciliationMatch,
    ReconciliationStatus,
)

__all__ = [
    "ACTIVE_IMPORT_STATUSES",
    "DUPLICATE_BLOCKING_STATUSES",
    "Account",
    "AutoCategoryCorrection",
    "AutoCategoryRule",
    "AutoCategorySuggestionLog",
    "Category",
    "CategoryType",
    "CorrectionType",
    "ImportJob",
    "ImportRowHash",
    "ImportSourceType",
    "ImportStatus",
    "LearnedCategoryPattern",
    "Reconciliation",
    "ReconciliationMatch",
    "ReconciliationStatus",
    "SuggestionAction",
    "SuggestionSource",
    "Tag",
    "Transaction",
    "TransactionType",
    "transaction_tags",
]
