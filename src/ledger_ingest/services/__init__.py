"""Services package."""

from ledger_ingest.services.categorization import CategorizationService, CategorySuggestion
from ledger_ingest.services.category_learning import CategoryLearningService, LearningPolicy
from ledger_ingest.services.import_processor import ImportProcessor
from ledger_ingest.services.import_supervisor import fail_stale_imports, run_import_supervisor
from ledger_ingest.services.imports import ImportService
from ledger_ingest.services.job_queue import ImportJobQueue
from ledger_ingest.services.ledger import Ledger, SqlLedger
from ledger_ingest.services.reconciliation import MatchResult, ReconciliationService, find_matches
from ledger_ingest.services.storage import Storage, StorageService

__all__ = [
    "CategorizationService",
    "CategoryLearningService",
    "CategorySuggestion",
    "ImportJobQueue",
    "ImportProcessor",
    "ImportService",
    "LearningPolicy",
    "Ledger",
    "MatchResult",
    "ReconciliationService",
    "SqlLedger",
    "Storage",
    "StorageService",
    "fail_stale_imports",
    "find_matches",
    "run_import_supervisor",
]
