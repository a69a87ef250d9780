"""Import job and row-hash models."""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger_ingest.database import Base
from ledger_ingest.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin, utcnow


class ImportSourceType(str, enum.Enum):
    """Statement file family."""

    OFX = "ofx"
    TABULAR = "tabular"


class ImportStatus(str, enum.Enum):
    """Import lifecycle: pending -> processing -> completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.COMPLETED, ImportStatus.FAILED)


ACTIVE_IMPORT_STATUSES = (ImportStatus.PENDING, ImportStatus.PROCESSING)
DUPLICATE_BLOCKING_STATUSES = (
    ImportStatus.PENDING,
    ImportStatus.PROCESSING,
    ImportStatus.COMPLETED,
)

_ACTIVE_WHERE = text("status IN ('pending', 'processing')")


class ImportJob(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """One uploaded statement file and its processing state."""

    __tablename__ = "import_jobs"
    __table_args__ = (
        # At most one in-flight import of the same content per account.
        Index(
            "uq_import_jobs_active_file_hash",
            "file_hash",
            "account_id",
            unique=True,
            postgresql_where=_ACTIVE_WHERE,
            sqlite_where=_ACTIVE_WHERE,
        ),
        Index("ix_import_jobs_user_status", "user_id", "status"),
    )

    source_type: Mapped[ImportSourceType] = mapped_column(
        Enum(
            ImportSourceType,
            name="import_source_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[ImportStatus] = mapped_column(
        Enum(
            ImportStatus,
            name="import_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=ImportStatus.PENDING,
    )

    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_report: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    error_report_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    reconciliation_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reconciliations.id", ondelete="SET NULL"), nullable=True
    )
    column_mapping: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def progress_percentage(self) -> float:
        if not self.total_count:
            return 0.0
        ratio = Decimal(self.processed_count) / Decimal(self.total_count) * Decimal(100)
        return float(ratio.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    def __repr__(self) -> str:
        return f"<ImportJob {self.id} {self.filename} {self.status.value}>"


class ImportRowHash(Base):
    """Fingerprint of an imported row, used for cross-file duplicate detection."""

    __tablename__ = "import_row_hashes"
    __table_args__ = (
        UniqueConstraint("user_id", "account_id", "row_hash", name="uq_import_row_hashes_user_account_hash"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    row_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    import_job_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("import_jobs.id", ondelete="SET NULL"), nullable=True
    )
    imported_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
