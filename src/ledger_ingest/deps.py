"""Common FastAPI dependencies for consistent type annotations.

Usage:
    from ledger_ingest.deps import CurrentUserId, DbSession, ImportServiceDep

    async def my_endpoint(db: DbSession, user_id: CurrentUserId, service: ImportServiceDep):
        ...

Authentication happens upstream; the gateway forwards the authenticated user
in the ``X-User-Id`` header.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_ingest.database import get_db
from ledger_ingest.services.imports import ImportService
from ledger_ingest.services.storage import Storage
from ledger_ingest.utils import raise_bad_request


async def get_current_user_id(x_user_id: Annotated[str, Header()]) -> UUID:
    """Resolve the current user from the trusted upstream header."""
    try:
        return UUID(x_user_id)
    except ValueError as exc:
        raise_bad_request("X-User-Id must be a UUID", cause=exc)


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_import_service(request: Request, storage: Storage = Depends(get_storage)) -> ImportService:
    return ImportService(storage, dispatcher=getattr(request.app.state, "job_queue", None))


DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
StorageDep = Annotated[Storage, Depends(get_storage)]
ImportServiceDep = Annotated[ImportService, Depends(get_import_service)]

__all__ = ["CurrentUserId", "DbSession", "ImportServiceDep", "StorageDep"]
