"""API routers."""

from ledger_ingest.routers import imports

__all__ = ["imports"]
