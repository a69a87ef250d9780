"""Reconciliation matching engine and reconciliation lifecycle operations."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from difflib import SequenceMatcher
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_ingest.config import ImportConfig
from ledger_ingest.exceptions import ReconciliationError, ReconciliationNotFoundError
from ledger_ingest.logger import get_logger
from ledger_ingest.models import (
    Account,
    Reconciliation,
    ReconciliationMatch,
    ReconciliationStatus,
    Transaction,
)

logger = get_logger(__name__)

PERFECT_SCORE = 100
NEAR_PERFECT_CAP = 99


@dataclass(frozen=True)
class ReconciliationConfig:
    """Runtime configuration for reconciliation scoring."""

    weight_amount: Decimal
    weight_date: Decimal
    weight_description: Decimal
    amount_tolerance: Decimal
    date_tolerance_days: int
    candidate_window_days: int

    @classmethod
    def from_import_config(cls, config: ImportConfig) -> ReconciliationConfig:
        return cls(
            weight_amount=DEFAULT_CONFIG.weight_amount,
            weight_date=DEFAULT_CONFIG.weight_date,
            weight_description=DEFAULT_CONFIG.weight_description,
            amount_tolerance=config.amount_tolerance,
            date_tolerance_days=config.date_tolerance_days,
            candidate_window_days=config.candidate_window_days,
        )


DEFAULT_CONFIG = ReconciliationConfig(
    weight_amount=Decimal("0.25"),
    weight_date=Decimal("0.25"),
    weight_description=Decimal("0.50"),
    amount_tolerance=Decimal("0.01"),
    date_tolerance_days=3,
    candidate_window_days=7,
)


@dataclass
class MatchResult:
    """Ranked match candidate."""

    transaction: Transaction
    confidence: int
    date_delta: int
    # Score components are 0-100 percentages, not monetary values.
    breakdown: dict[str, float] = field(default_factory=dict)
    match_reason: str = ""


def normalize_text(value: str) -> str:
    """Normalize text for similarity comparison."""
    cleaned = re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def score_description(a: str | None, b: str | None) -> float:
    """Score description similarity (0-100)."""
    if not a or not b:
        return 0.0
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    token_score = len(tokens_a & tokens_b) / len(tokens_a | tokens_b) if tokens_a | tokens_b else 0
    return round(100 * (0.6 * ratio + 0.4 * token_score), 2)


def score_amount(
    query_amount: Decimal,
    candidate_amount: Decimal,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> float | None:
    """Amount gate: 100 within tolerance, None (excluded) otherwise."""
    if abs(Decimal(query_amount) - Decimal(candidate_amount)) <= config.amount_tolerance:
        return 100.0
    return None


def score_date(query_date: date, candidate_date: date, config: ReconciliationConfig = DEFAULT_CONFIG) -> float:
    """Score date proximity (0-100), decaying linearly to zero past the tolerance."""
    diff_days = abs((query_date - candidate_date).days)
    ratio = Decimal(1) - Decimal(diff_days) / Decimal(config.date_tolerance_days + 1)
    return float(max(Decimal(0), ratio) * 100)


def weighted_total(scores: dict[str, float], config: ReconciliationConfig = DEFAULT_CONFIG) -> int:
    """Compute weighted total score, rounded half-up."""
    total = (
        Decimal(str(scores["amount"])) * config.weight_amount
        + Decimal(str(scores["date"])) * config.weight_date
        + Decimal(str(scores["description"])) * config.weight_description
    )
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def describe_match(confidence: int, date_delta: int) -> str:
    if confidence == PERFECT_SCORE:
        return "Exact match: amount, date and description"
    if date_delta == 0:
        return "Amount and date match, description differs"
    return f"Amount matches, date off by {date_delta} day(s)"


def score_candidate(
    candidate: Transaction,
    *,
    amount: Decimal,
    txn_date: date,
    description: str,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> MatchResult | None:
    """Score one candidate transaction; None when the amount gate fails."""
    amount_score = score_amount(amount, candidate.amount, config)
    if amount_score is None:
        return None

    date_delta = abs((txn_date - candidate.transaction_date).days)
    breakdown = {
        "amount": amount_score,
        "date": score_date(txn_date, candidate.transaction_date, config),
        "description": score_description(description, candidate.description),
    }
    confidence = weighted_total(breakdown, config)

    exact = (
        Decimal(amount) == Decimal(candidate.amount)
        and date_delta == 0
        and normalize_text(description or "") == normalize_text(candidate.description or "")
    )
    if exact:
        confidence = PERFECT_SCORE
    elif confidence >= PERFECT_SCORE:
        confidence = NEAR_PERFECT_CAP

    return MatchResult(
        transaction=candidate,
        confidence=confidence,
        date_delta=date_delta,
        breakdown=breakdown,
        match_reason=describe_match(confidence, date_delta),
    )


def rank_matches(results: list[MatchResult]) -> list[MatchResult]:
    """Confidence desc, then smallest date delta, then lowest transaction id."""
    return sorted(results, key=lambda r: (-r.confidence, r.date_delta, str(r.transaction.id)))


def _completed_reconciliation_txn_ids():
    return (
        select(ReconciliationMatch.transaction_id)
        .join(Reconciliation, Reconciliation.id == ReconciliationMatch.reconciliation_id)
        .where(Reconciliation.status == ReconciliationStatus.COMPLETED)
    )


async def find_candidates(
    db: AsyncSession,
    account_id: UUID,
    amount: Decimal,
    txn_date: date,
    *,
    reconciliation_id: UUID | None = None,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> list[Transaction]:
    """Transactions on the account inside the amount and date windows and not yet reconciled."""
    window = timedelta(days=config.candidate_window_days)
    amount = Decimal(amount)
    query = (
        select(Transaction)
        .where(Transaction.account_id == account_id)
        .where(
            and_(
                Transaction.amount >= amount - config.amount_tolerance,
                Transaction.amount <= amount + config.amount_tolerance,
            )
        )
        .where(Transaction.transaction_date.between(txn_date - window, txn_date + window))
        .where(Transaction.id.not_in(_completed_reconciliation_txn_ids()))
    )
    if reconciliation_id is not None:
        query = query.where(
            Transaction.id.not_in(
                select(ReconciliationMatch.transaction_id).where(
                    ReconciliationMatch.reconciliation_id == reconciliation_id
                )
            )
        )
    result = await db.execute(query)
    return list(result.scalars().all())


async def find_matches(
    db: AsyncSession,
    account_id: UUID,
    amount: Decimal,
    txn_date: date,
    description: str,
    *,
    reconciliation_id: UUID | None = None,
    exclude_ids: set[UUID] | None = None,
    config: ReconciliationConfig = DEFAULT_CONFIG,
) -> list[MatchResult]:
    """Return ranked confidence-scored matches for a transaction."""
    candidates = await find_candidates(
        db,
        account_id,
        amount,
        txn_date,
        reconciliation_id=reconciliation_id,
        config=config,
    )
    results: list[MatchResult] = []
    for candidate in candidates:
        if exclude_ids and candidate.id in exclude_ids:
            continue
        scored = score_candidate(
            candidate,
            amount=Decimal(amount),
            txn_date=txn_date,
            description=description,
            config=config,
        )
        if scored is not None:
            results.append(scored)
    return rank_matches(results)


class ReconciliationService:
    """Lifecycle operations on reconciliations.

    Methods flush but never commit; the caller owns the unit of work.
    """

    def __init__(self, config: ReconciliationConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    async def get_reconciliation(
        self, db: AsyncSession, reconciliation_id: UUID, *, user_id: UUID | None = None
    ) -> Reconciliation:
        reconciliation = await db.get(Reconciliation, reconciliation_id)
        if reconciliation is None or (user_id is not None and reconciliation.user_id != user_id):
            raise ReconciliationNotFoundError(f"Reconciliation {reconciliation_id} not found")
        return reconciliation

    async def create_reconciliation(
        self,
        db: AsyncSession,
        *,
        user_id: UUID,
        account_id: UUID,
        statement_date: date,
        statement_balance: Decimal,
    ) -> Reconciliation:
        account = await db.get(Account, account_id)
        if account is None or account.user_id != user_id:
            raise ReconciliationNotFoundError(f"Account {account_id} not found")
        reconciliation = Reconciliation(
            user_id=user_id,
            account_id=account_id,
            statement_date=statement_date,
            statement_balance=Decimal(statement_balance),
            status=ReconciliationStatus.PENDING,
        )
        db.add(reconciliation)
        await db.flush()
        logger.info(
            "Reconciliation created",
            reconciliation_id=str(reconciliation.id),
            account_id=str(account_id),
            statement_date=statement_date.isoformat(),
        )
        return reconciliation

    async def _existing_match(
        self, db: AsyncSession, reconciliation_id: UUID, transaction_id: UUID
    ) -> ReconciliationMatch | None:
        result = await db.execute(
            select(ReconciliationMatch)
            .where(ReconciliationMatch.reconciliation_id == reconciliation_id)
            .where(ReconciliationMatch.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def add_transaction(
        self,
        db: AsyncSession,
        reconciliation: Reconciliation,
        transaction: Transaction,
        *,
        confidence: int | None = None,
    ) -> ReconciliationMatch:
        if reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ReconciliationError("Cannot modify a completed reconciliation.")
        if transaction.account_id != reconciliation.account_id:
            raise ReconciliationError("Transaction does not belong to the same account.")
        if await self._existing_match(db, reconciliation.id, transaction.id) is not None:
            raise ReconciliationError("Transaction is already part of this reconciliation.")

        match = ReconciliationMatch(
            reconciliation_id=reconciliation.id,
            transaction_id=transaction.id,
            is_matched=True,
            matched_at=datetime.now(UTC),
            confidence=confidence,
        )
        db.add(match)
        await db.flush()
        return match

    async def remove_transaction(
        self, db: AsyncSession, reconciliation: Reconciliation, transaction_id: UUID
    ) -> bool:
        if reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ReconciliationError("Cannot modify a completed reconciliation.")
        match = await self._existing_match(db, reconciliation.id, transaction_id)
        if match is None:
            return False
        await db.delete(match)
        await db.flush()
        return True

    async def complete_reconciliation(
        self, db: AsyncSession, reconciliation: Reconciliation
    ) -> Reconciliation:
        if reconciliation.status == ReconciliationStatus.COMPLETED:
            raise ReconciliationError("Reconciliation is already completed.")
        reconciliation.status = ReconciliationStatus.COMPLETED
        reconciliation.reconciled_at = datetime.now(UTC)
        await db.flush()
        logger.info("Reconciliation completed", reconciliation_id=str(reconciliation.id))
        return reconciliation

    async def calculate_discrepancy(self, db: AsyncSession, reconciliation: Reconciliation) -> Decimal:
        """Statement balance minus the signed total of matched transactions."""
        result = await db.execute(
            select(Transaction.amount)
            .join(ReconciliationMatch, ReconciliationMatch.transaction_id == Transaction.id)
            .where(ReconciliationMatch.reconciliation_id == reconciliation.id)
            .where(ReconciliationMatch.is_matched.is_(True))
        )
        reconciled_total = sum((Decimal(a) for a in result.scalars().all()), Decimal("0.00"))
        return (Decimal(reconciliation.statement_balance) - reconciled_total).quantize(Decimal("0.01"))

    async def get_suggested_transactions(
        self,
        db: AsyncSession,
        account_id: UUID,
        statement_date: date,
        days_range: int = 30,
    ) -> list[Transaction]:
        """Transactions near the statement date that no completed reconciliation covers."""
        window = timedelta(days=days_range)
        result = await db.execute(
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .where(Transaction.transaction_date.between(statement_date - window, statement_date + window))
            .where(Transaction.id.not_in(_completed_reconciliation_txn_ids()))
            .order_by(Transaction.transaction_date.desc())
        )
        return list(result.scalars().all())

    async def find_matches(
        self,
        db: AsyncSession,
        account_id: UUID,
        amount: Decimal,
        txn_date: date,
        description: str,
        *,
        reconciliation_id: UUID | None = None,
        exclude_ids: set[UUID] | None = None,
    ) -> list[MatchResult]:
        return await find_matches(
            db,
            account_id,
            amount,
            txn_date,
            description,
            reconciliation_id=reconciliation_id,
            exclude_ids=exclude_ids,
            config=self.config,
        )
