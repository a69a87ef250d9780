"""Correction feedback loop for learned category patterns."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_ingest.logger import get_logger
from ledger_ingest.models import (
    AutoCategoryCorrection,
    AutoCategorySuggestionLog,
    CorrectionType,
    LearnedCategoryPattern,
    SuggestionAction,
    Transaction,
)
from ledger_ingest.services.categorization import extract_keywords

logger = get_logger(__name__)


@dataclass(frozen=True)
class LearningPolicy:
    """Reinforcement and decay parameters for learned patterns."""

    initial_confidence: int = 50
    step: int = 5
    cap: int = 95
    penalty: int = 10
    disable_below: int = 30

    def reinforced_confidence(self, confidence: int) -> int:
        return min(self.cap, confidence + self.step)

    def penalized_confidence(self, confidence: int) -> int:
        return max(0, confidence - self.penalty)


DEFAULT_POLICY = LearningPolicy()


class CategoryLearningService:
    """Adjusts learned patterns from corrections and suggestion feedback.

    Methods flush but do not commit.
    """

    def __init__(self, policy: LearningPolicy = DEFAULT_POLICY) -> None:
        self.policy = policy

    async def _get_pattern(
        self, db: AsyncSession, user_id: UUID, keyword: str, category_id: UUID
    ) -> LearnedCategoryPattern | None:
        result = await db.execute(
            select(LearnedCategoryPattern)
            .where(LearnedCategoryPattern.user_id == user_id)
            .where(LearnedCategoryPattern.keyword == keyword)
            .where(LearnedCategoryPattern.category_id == category_id)
        )
        return result.scalar_one_or_none()

    async def reinforce(
        self, db: AsyncSession, user_id: UUID, keywords: list[str], category_id: UUID
    ) -> list[LearnedCategoryPattern]:
        """Create each keyword pattern at the initial confidence, or bump an existing one."""
        now = datetime.now(UTC)
        patterns: list[LearnedCategoryPattern] = []
        for keyword in dict.fromkeys(k.lower() for k in keywords):
            pattern = await self._get_pattern(db, user_id, keyword, category_id)
            if pattern is None:
                pattern = LearnedCategoryPattern(
                    user_id=user_id,
                    category_id=category_id,
                    keyword=keyword,
                    occurrence_count=1,
                    confidence_score=self.policy.initial_confidence,
                    first_learned_at=now,
                    last_matched_at=now,
                    is_active=True,
                )
                db.add(pattern)
            else:
                pattern.occurrence_count += 1
                pattern.confidence_score = self.policy.reinforced_confidence(pattern.confidence_score)
                pattern.last_matched_at = now
                # Reinforcement can revive a pattern that decayed below the floor.
                pattern.is_active = pattern.confidence_score >= self.policy.disable_below
            patterns.append(pattern)
        await db.flush()
        return patterns

    def penalize_pattern(self, pattern: LearnedCategoryPattern) -> LearnedCategoryPattern:
        pattern.confidence_score = self.policy.penalized_confidence(pattern.confidence_score)
        pattern.is_active = pattern.confidence_score >= self.policy.disable_below
        return pattern

    async def penalize(
        self, db: AsyncSession, user_id: UUID, keywords: list[str], category_id: UUID
    ) -> list[LearnedCategoryPattern]:
        if not keywords:
            return []
        result = await db.execute(
            select(LearnedCategoryPattern)
            .where(LearnedCategoryPattern.user_id == user_id)
            .where(LearnedCategoryPattern.category_id == category_id)
            .where(LearnedCategoryPattern.keyword.in_([k.lower() for k in keywords]))
        )
        patterns = [self.penalize_pattern(p) for p in result.scalars().all()]
        await db.flush()
        return patterns

    async def record_correction(
        self,
        db: AsyncSession,
        transaction: Transaction,
        corrected_category_id: UUID,
        correction_type: CorrectionType,
        confidence_at_correction: int | None = None,
    ) -> AutoCategoryCorrection:
        """Record a manual recategorization and feed it back into the learned patterns."""
        original_category_id = transaction.category_id
        correction = AutoCategoryCorrection(
            user_id=transaction.user_id,
            transaction_id=transaction.id,
            original_category_id=original_category_id,
            corrected_category_id=corrected_category_id,
            description_text=transaction.description,
            correction_type=correction_type,
            confidence_at_correction=confidence_at_correction,
        )
        db.add(correction)

        keywords = extract_keywords(transaction.description)
        await self.reinforce(db, transaction.user_id, keywords, corrected_category_id)
        if original_category_id is not None and original_category_id != corrected_category_id:
            await self.penalize(db, transaction.user_id, keywords, original_category_id)

        transaction.category_id = corrected_category_id
        await db.flush()
        logger.info(
            "Category correction recorded",
            transaction_id=str(transaction.id),
            correction_type=correction_type.value,
            keywords=len(keywords),
        )
        return correction

    async def record_suggestion_action(
        self,
        db: AsyncSession,
        log_id: UUID,
        action: SuggestionAction,
    ) -> AutoCategorySuggestionLog | None:
        """Store the user's reaction to a suggestion and adjust its keyword patterns."""
        log = await db.get(AutoCategorySuggestionLog, log_id)
        if log is None:
            return None

        log.user_action = action
        log.action_at = datetime.now(UTC)
        if log.suggested_category_id is not None and log.matched_keywords:
            keywords = extract_keywords(" ".join(log.matched_keywords))
            if action is SuggestionAction.ACCEPTED:
                await self.reinforce(db, log.user_id, keywords, log.suggested_category_id)
            elif action in (SuggestionAction.REJECTED, SuggestionAction.OVERRIDDEN):
                await self.penalize(db, log.user_id, keywords, log.suggested_category_id)
        await db.flush()
        return log

    async def reset_learning(self, db: AsyncSession, user_id: UUID, category_id: UUID | None = None) -> int:
        """Disable learned patterns for a user, optionally for one category only."""
        stmt = (
            update(LearnedCategoryPattern)
            .where(LearnedCategoryPattern.user_id == user_id)
            .where(LearnedCategoryPattern.is_active.is_(True))
            .values(is_active=False)
        )
        if category_id is not None:
            stmt = stmt.where(LearnedCategoryPattern.category_id == category_id)
        result = await db.execute(stmt)
        return result.rowcount or 0

    async def learning_statistics(self, db: AsyncSession, user_id: UUID) -> dict[str, Any]:
        patterns = list(
            (
                await db.execute(
                    select(LearnedCategoryPattern).where(LearnedCategoryPattern.user_id == user_id)
                )
            )
            .scalars()
            .all()
        )
        corrections = list(
            (
                await db.execute(
                    select(AutoCategoryCorrection).where(AutoCategoryCorrection.user_id == user_id)
                )
            )
            .scalars()
            .all()
        )
        active = [p for p in patterns if p.is_active]
        week_ago = datetime.now(UTC) - timedelta(weeks=1)
        recent = [p for p in patterns if _as_utc(p.first_learned_at) >= week_ago]
        by_type = Counter(c.correction_type.value for c in corrections)

        return {
            "total_patterns": len(patterns),
            "active_patterns": len(active),
            "disabled_patterns": len(patterns) - len(active),
            "average_confidence": int(sum(p.confidence_score for p in patterns) / len(patterns)) if patterns else 0,
            "highest_confidence_pattern": max((p.confidence_score for p in patterns), default=None),
            "lowest_confidence_pattern": min((p.confidence_score for p in active), default=None),
            "total_corrections": len(corrections),
            "corrections_by_type": dict(by_type),
            "patterns_created_last_week": len(recent),
            "learning_velocity": round(len(recent) / 7, 2),
        }

    async def top_patterns(self, db: AsyncSession, user_id: UUID, limit: int = 10) -> list[LearnedCategoryPattern]:
        result = await db.execute(
            select(LearnedCategoryPattern)
            .where(LearnedCategoryPattern.user_id == user_id)
            .where(LearnedCategoryPattern.is_active.is_(True))
            .order_by(
                LearnedCategoryPattern.confidence_score.desc(),
                LearnedCategoryPattern.occurrence_count.desc(),
                LearnedCategoryPattern.keyword.asc(),
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def underperforming_patterns(
        self,
        db: AsyncSession,
        user_id: UUID,
        min_confidence: int = 50,
        min_occurrences: int = 1,
    ) -> list[LearnedCategoryPattern]:
        result = await db.execute(
            select(LearnedCategoryPattern)
            .where(LearnedCategoryPattern.user_id == user_id)
            .where(LearnedCategoryPattern.is_active.is_(True))
            .where(LearnedCategoryPattern.confidence_score < min_confidence)
            .where(LearnedCategoryPattern.occurrence_count >= min_occurrences)
            .order_by(LearnedCategoryPattern.confidence_score.asc())
        )
        return list(result.scalars().all())


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip.
    return value if value.tzinfo else value.replace(tzinfo=UTC)
