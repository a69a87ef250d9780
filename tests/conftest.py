"""Test fixtures and configuration."""

import logging
import os
import sys
from uuid import uuid4

import pytest
import pytest_asyncio
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set ENVIRONMENT for pydantic settings before the package reads it
os.environ["ENVIRONMENT"] = "testing"

from ledger_ingest import database  # noqa: E402
from ledger_ingest.services.storage import StorageError, decode_for_path, encode_for_path  # noqa: E402


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


class InMemoryStorage:
    """Storage double keeping objects in a dict, with the same gzip-by-suffix rule."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str | None] = {}
        self.fail_reads = False

    def store(self, content: bytes, key: str, *, content_type: str | None = None) -> str:
        self.objects[key] = encode_for_path(content, key)
        self.content_types[key] = content_type
        return key

    def read(self, path: str) -> bytes:
        if self.fail_reads:
            raise StorageError(f"Simulated read failure for {path}")
        if path not in self.objects:
            raise StorageError(f"Object not found: {path}")
        return decode_for_path(self.objects[path], path)

    def delete(self, path: str) -> None:
        self.objects.pop(path, None)

    def exists(self, path: str) -> bool:
        return path in self.objects


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """SQLite file database per test, schema created from the models.

    A file (not :memory:) so the worker's sessions and the test session see
    the same data through separate connections.
    """
    from ledger_ingest import models  # noqa: F401

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger_ingest_test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(database.Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_maker(db_engine):
    """Override the global session maker so workers and API handlers use the test engine."""
    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    previous = database.set_test_session_maker(maker)
    yield maker
    database.set_test_session_maker(previous)


@pytest_asyncio.fixture(scope="function")
async def db(session_maker):
    """Test session. Commit fixture data before handing work to a processor session."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def user_id():
    return uuid4()
