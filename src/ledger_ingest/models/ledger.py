"""Ledger models: accounts, categories, tags and transactions.

The ledger is owned by an external collaborator in production deployments;
these tables are the reference implementation the import engine writes to.
"""

from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    Enum,
    ForeignKey,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_ingest.database import Base
from ledger_ingest.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin

if TYPE_CHECKING:
    from ledger_ingest.models.reconciliation import ReconciliationMatch


class CategoryType(str, enum.Enum):
    """Category classification."""

    EXPENSE = "expense"
    INCOME = "income"


class TransactionType(str, enum.Enum):
    """Direction of money movement; debit amounts are stored negative."""

    DEBIT = "debit"
    CREDIT = "credit"


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Uuid(as_uuid=True),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Uuid(as_uuid=True), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Account(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """Bank or card account holding a running balance."""

    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    transactions: Mapped[list[Transaction]] = relationship(back_populates="account")

    def __repr__(self) -> str:
        return f"<Account {self.name} ({self.balance})>"


class Category(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """Spending category, created on first use and scoped per user."""

    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_categories_user_name"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[CategoryType] = mapped_column(
        Enum(
            CategoryType,
            name="category_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=CategoryType.EXPENSE,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Category {self.name}>"


class Tag(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """Free-form label with a display colour."""

    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tags_user_name"),)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(20), nullable=False, default="gray")


class Transaction(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """Ledger transaction with a signed amount (negative = debit)."""

    __tablename__ = "transactions"

    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    category_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[TransactionType] = mapped_column(
        Enum(
            TransactionType,
            name="transaction_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    settled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    import_job_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("import_jobs.id", ondelete="SET NULL"), nullable=True
    )

    account: Mapped[Account] = relationship(back_populates="transactions")
    category: Mapped[Category | None] = relationship()
    tags: Mapped[list[Tag]] = relationship(secondary=transaction_tags, lazy="selectin")
    matches: Mapped[list[ReconciliationMatch]] = relationship(back_populates="transaction")

    def __repr__(self) -> str:
        return f"<Transaction {self.transaction_date} {self.amount} {self.description!r}>"
