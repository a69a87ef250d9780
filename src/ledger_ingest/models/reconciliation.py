"""Reconciliation models."""

from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_ingest.database import Base
from ledger_ingest.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin, utcnow

if TYPE_CHECKING:
    from ledger_ingest.models.ledger import Transaction


class ReconciliationStatus(str, enum.Enum):
    """Reconciliation lifecycle."""

    PENDING = "pending"
    COMPLETED = "completed"


class Reconciliation(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """Statement balance checkpoint that ledger transactions are matched against."""

    __tablename__ = "reconciliations"

    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[ReconciliationStatus] = mapped_column(
        Enum(
            ReconciliationStatus,
            name="reconciliation_status_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=ReconciliationStatus.PENDING,
    )
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    matches: Mapped[list[ReconciliationMatch]] = relationship(
        back_populates="reconciliation",
        cascade="all, delete-orphan",
    )


class ReconciliationMatch(Base):
    """Link between a reconciliation and a ledger transaction."""

    __tablename__ = "reconciliation_matches"
    __table_args__ = (
        UniqueConstraint(
            "reconciliation_id", "transaction_id", name="uq_reconciliation_matches_pair"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reconciliation_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reconciliations.id", ondelete="CASCADE"), nullable=False
    )
    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    is_matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=utcnow)
    confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)

    reconciliation: Mapped[Reconciliation] = relationship(back_populates="matches")
    transaction: Mapped[Transaction] = relationship(back_populates="matches")
