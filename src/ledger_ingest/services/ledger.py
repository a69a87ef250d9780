"""Ledger collaborator: transaction recording with running account balances.

``SqlLedger`` is the reference implementation over the local tables. All
writes flush inside the caller's session; the import processor commits each
row as one unit so the balance, transaction and row hash land together.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_ingest.exceptions import LedgerValidationError
from ledger_ingest.logger import get_logger
from ledger_ingest.models import (
    Account,
    Category,
    CategoryType,
    Tag,
    Transaction,
    TransactionType,
)

logger = get_logger(__name__)

TAG_COLORS = ("blue", "green", "yellow", "red", "purple", "pink", "indigo", "gray")
MAX_DESCRIPTION_LENGTH = 500


class Ledger(Protocol):
    async def record_transaction(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: UUID,
        type: TransactionType,
        amount: Decimal,
        description: str,
        transaction_date: date,
        category_id: UUID | None = None,
        settled_date: date | None = None,
        tag_ids: Sequence[UUID] = (),
        external_id: str | None = None,
        import_job_id: UUID | None = None,
    ) -> Transaction: ...


def signed_amount(amount: Decimal, txn_type: TransactionType) -> Decimal:
    """Debits are negative, credits positive, whatever sign the input carried."""
    magnitude = abs(Decimal(amount)).quantize(Decimal("0.01"))
    return -magnitude if txn_type is TransactionType.DEBIT else magnitude


class SqlLedger:
    """Ledger backed by the accounts/transactions tables."""

    async def record_transaction(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: UUID,
        type: TransactionType,
        amount: Decimal,
        description: str,
        transaction_date: date,
        category_id: UUID | None = None,
        settled_date: date | None = None,
        tag_ids: Sequence[UUID] = (),
        external_id: str | None = None,
        import_job_id: UUID | None = None,
    ) -> Transaction:
        """Create a transaction and move the account balance by its signed amount.

        Raises:
            LedgerValidationError: unknown account, zero amount or empty description.
        """
        account = await db.get(Account, account_id)
        if account is None or account.user_id != user_id:
            raise LedgerValidationError(f"Account {account_id} not found")
        if not description or not description.strip():
            raise LedgerValidationError("Description is required")
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise LedgerValidationError(
                f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters"
            )
        value = signed_amount(amount, type)
        if value == 0:
            raise LedgerValidationError("Amount must be non-zero")

        tags: list[Tag] = []
        if tag_ids:
            result = await db.execute(select(Tag).where(Tag.id.in_(list(tag_ids))))
            tags = list(result.scalars().all())

        transaction = Transaction(
            user_id=user_id,
            account_id=account_id,
            category_id=category_id,
            type=type,
            amount=value,
            description=description.strip(),
            transaction_date=transaction_date,
            settled_date=settled_date,
            external_id=external_id,
            import_job_id=import_job_id,
            tags=tags,
        )
        db.add(transaction)
        account.balance = Decimal(account.balance or 0) + value
        await db.flush()
        return transaction


async def get_or_create_category(
    db: AsyncSession,
    user_id: UUID,
    name: str,
    *,
    category_type: CategoryType = CategoryType.EXPENSE,
) -> Category:
    """Case-insensitive lookup; the first spelling seen wins."""
    clean = " ".join(name.split())
    result = await db.execute(
        select(Category)
        .where(Category.user_id == user_id)
        .where(func.lower(Category.name) == clean.lower())
        .order_by(Category.created_at)
        .limit(1)
    )
    category = result.scalar_one_or_none()
    if category is not None:
        return category

    category = Category(user_id=user_id, name=clean, type=category_type, is_active=True)
    db.add(category)
    await db.flush()
    logger.info("Category created on first use", user_id=str(user_id), category=clean)
    return category


async def get_or_create_tag(
    db: AsyncSession,
    user_id: UUID,
    name: str,
    *,
    rng: random.Random | None = None,
) -> Tag:
    """Case-insensitive lookup; new tags get a colour drawn from TAG_COLORS."""
    clean = " ".join(name.split())
    result = await db.execute(
        select(Tag)
        .where(Tag.user_id == user_id)
        .where(func.lower(Tag.name) == clean.lower())
        .order_by(Tag.created_at)
        .limit(1)
    )
    tag = result.scalar_one_or_none()
    if tag is not None:
        return tag

    chooser = rng or random
    tag = Tag(user_id=user_id, name=clean, color=chooser.choice(TAG_COLORS))
    db.add(tag)
    await db.flush()
    return tag
