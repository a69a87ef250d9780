"""Auto-categorization: explicit rules first, learned keyword patterns second."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from difflib import SequenceMatcher
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_ingest.config import ImportConfig
from ledger_ingest.logger import get_logger
from ledger_ingest.models import (
    AutoCategoryRule,
    AutoCategorySuggestionLog,
    Category,
    LearnedCategoryPattern,
    SuggestionSource,
    Transaction,
)
from ledger_ingest.services.reconciliation import normalize_text

logger = get_logger(__name__)

EXACT_RULE_CONFIDENCE = 100
FUZZY_RULE_CEILING = 90
MIN_KEYWORD_LENGTH = 3

STOPWORDS = frozenset(
    {
        "the", "and", "for", "with", "from", "to", "at", "in", "on", "over",
        "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may",
        "might", "can", "a", "an", "or", "as", "by", "of", "this", "that",
        "these", "those", "i", "you", "he", "she", "it", "we", "they",
    }
)  # fmt: skip


@dataclass
class CategorySuggestion:
    category_id: UUID | None = None
    confidence: int = 0
    matched_keywords: list[str] = field(default_factory=list)
    source: SuggestionSource | None = None
    should_auto_apply: bool = False
    rule_id: UUID | None = None

    @property
    def has_suggestion(self) -> bool:
        return self.category_id is not None


def extract_keywords(description: str | None) -> list[str]:
    """Lowercase alphanumeric tokens of at least three characters, minus stopwords, in order."""
    seen: dict[str, None] = {}
    for word in normalize_text(description or "").split():
        if len(word) >= MIN_KEYWORD_LENGTH and word not in STOPWORDS and not word.isdigit():
            seen.setdefault(word, None)
    return list(seen)


def fuzzy_ratio(pattern: str, description: str) -> float:
    """Best similarity between the pattern and any same-length token window of the description."""
    pattern_norm = normalize_text(pattern)
    tokens = normalize_text(description).split()
    if not pattern_norm or not tokens:
        return 0.0
    width = max(1, len(pattern_norm.split()))
    best = 0.0
    for start in range(max(1, len(tokens) - width + 1)):
        window = " ".join(tokens[start : start + width])
        best = max(best, SequenceMatcher(None, pattern_norm, window).ratio())
    return best


def _keyword_in(keyword: str, normalized: str, keywords: set[str]) -> bool:
    return keyword in keywords or f" {keyword} " in f" {normalized} "


class CategorizationService:
    """Two-stage category resolver with an audit log of every attempt."""

    def __init__(self, config: ImportConfig | None = None) -> None:
        self.config = config or ImportConfig()

    def should_auto_apply(self, confidence: int) -> bool:
        return confidence >= self.config.auto_apply_confidence_threshold

    async def get_active_rules(self, db: AsyncSession, user_id: UUID) -> list[AutoCategoryRule]:
        """Fetch active, non-archived rules in evaluation order."""
        query = (
            select(AutoCategoryRule)
            .where(AutoCategoryRule.user_id == user_id)
            .where(AutoCategoryRule.is_active.is_(True))
            .where(AutoCategoryRule.archived_at.is_(None))
            .order_by(AutoCategoryRule.priority.asc(), AutoCategoryRule.id.asc())
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    def match_rules(self, rules: list[AutoCategoryRule], description: str) -> CategorySuggestion:
        lowered = description.lower()
        for rule in rules:
            if rule.pattern and rule.pattern.lower() in lowered:
                return CategorySuggestion(
                    category_id=rule.category_id,
                    confidence=EXACT_RULE_CONFIDENCE,
                    matched_keywords=[rule.pattern],
                    source=SuggestionSource.RULE_EXACT,
                    rule_id=rule.id,
                )

        for rule in rules:
            ratio = fuzzy_ratio(rule.pattern or "", description)
            if ratio >= self.config.fuzzy_rule_similarity:
                return CategorySuggestion(
                    category_id=rule.category_id,
                    confidence=int(round(ratio * FUZZY_RULE_CEILING)),
                    matched_keywords=[rule.pattern],
                    source=SuggestionSource.RULE_FUZZY,
                    rule_id=rule.id,
                )
        return CategorySuggestion()

    async def match_learned_patterns(
        self, db: AsyncSession, user_id: UUID, description: str
    ) -> CategorySuggestion:
        normalized = normalize_text(description)
        keywords = set(extract_keywords(description))
        if not normalized:
            return CategorySuggestion()

        result = await db.execute(
            select(LearnedCategoryPattern)
            .where(LearnedCategoryPattern.user_id == user_id)
            .where(LearnedCategoryPattern.is_active.is_(True))
            .where(LearnedCategoryPattern.confidence_score >= self.config.min_learned_confidence)
        )
        matches = [p for p in result.scalars().all() if _keyword_in(p.keyword, normalized, keywords)]
        if not matches:
            return CategorySuggestion()

        best = min(matches, key=lambda p: (-p.confidence_score, -p.occurrence_count, p.keyword))
        matched_keywords = sorted(p.keyword for p in matches if p.category_id == best.category_id)
        return CategorySuggestion(
            category_id=best.category_id,
            confidence=best.confidence_score,
            matched_keywords=matched_keywords,
            source=SuggestionSource.LEARNED_KEYWORD,
        )

    async def suggest(self, db: AsyncSession, user_id: UUID, description: str | None) -> CategorySuggestion:
        """Suggest a category; the rule stage always wins over learned patterns."""
        if not description or not description.strip():
            return CategorySuggestion()

        rules = await self.get_active_rules(db, user_id)
        suggestion = self.match_rules(rules, description)
        if not suggestion.has_suggestion:
            suggestion = await self.match_learned_patterns(db, user_id, description)

        suggestion.should_auto_apply = suggestion.has_suggestion and self.should_auto_apply(suggestion.confidence)
        return suggestion

    async def log_suggestion(
        self,
        db: AsyncSession,
        user_id: UUID,
        description: str,
        suggestion: CategorySuggestion,
        *,
        transaction_id: UUID | None = None,
    ) -> AutoCategorySuggestionLog:
        log = AutoCategorySuggestionLog(
            user_id=user_id,
            transaction_id=transaction_id,
            description=(description or "")[:500],
            suggested_category_id=suggestion.category_id,
            confidence_score=suggestion.confidence,
            matched_keywords=list(suggestion.matched_keywords),
            source=suggestion.source,
            auto_applied=suggestion.should_auto_apply,
        )
        db.add(log)
        await db.flush()
        return log

    async def categorize_for_write(
        self, db: AsyncSession, user_id: UUID, description: str
    ) -> tuple[UUID | None, CategorySuggestion, AutoCategorySuggestionLog]:
        """Suggest and log ahead of a ledger write.

        Returns the category id to write (None unless auto-applied), the
        suggestion, and the log row so the caller can link the transaction.
        """
        suggestion = await self.suggest(db, user_id, description)
        log = await self.log_suggestion(db, user_id, description, suggestion)
        category_id = suggestion.category_id if suggestion.should_auto_apply else None
        return category_id, suggestion, log

    async def detect_overlapping_rules(self, db: AsyncSession, user_id: UUID) -> list[dict[str, Any]]:
        """Pairs of active rules where one pattern contains the other."""
        rules = await self.get_active_rules(db, user_id)
        overlaps: list[dict[str, Any]] = []
        for i, first in enumerate(rules):
            for second in rules[i + 1 :]:
                a, b = first.pattern.lower(), second.pattern.lower()
                if a in b or b in a:
                    overlaps.append(
                        {
                            "rule_1_id": first.id,
                            "rule_1_pattern": first.pattern,
                            "rule_1_priority": first.priority,
                            "rule_2_id": second.id,
                            "rule_2_pattern": second.pattern,
                            "rule_2_priority": second.priority,
                            "warning": "Patterns may overlap - check priority order",
                        }
                    )
        return overlaps

    async def test_rules_coverage(
        self, db: AsyncSession, user_id: UUID, date_from: date, date_to: date
    ) -> dict[str, Any]:
        """Share of uncategorized transactions in a period that a suggestion would cover."""
        result = await db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .where(Transaction.category_id.is_(None))
            .where(Transaction.transaction_date.between(date_from, date_to))
        )
        transactions = list(result.scalars().all())
        if not transactions:
            return {
                "total_uncategorized": 0,
                "would_be_categorized": 0,
                "coverage_percentage": 0,
                "by_category": [],
                "uncovered_reasons": {},
            }

        by_category: dict[UUID, dict[str, Any]] = {}
        confidences: dict[UUID, list[int]] = defaultdict(list)
        uncovered: dict[str, int] = defaultdict(int)
        categorized = 0
        for transaction in transactions:
            suggestion = await self.suggest(db, user_id, transaction.description)
            if not suggestion.has_suggestion:
                reason = "No matching pattern" if transaction.description else "Missing description"
                uncovered[reason] += 1
                continue
            categorized += 1
            category_id = suggestion.category_id
            if category_id not in by_category:
                category = await db.get(Category, category_id)
                by_category[category_id] = {
                    "category_id": category_id,
                    "category_name": category.name if category else "Unknown",
                    "count": 0,
                    "source": suggestion.source.value if suggestion.source else None,
                }
            by_category[category_id]["count"] += 1
            confidences[category_id].append(suggestion.confidence)

        for category_id, entry in by_category.items():
            scores = confidences[category_id]
            entry["average_confidence"] = round(sum(scores) / len(scores)) if scores else 0

        return {
            "total_uncategorized": len(transactions),
            "would_be_categorized": categorized,
            "coverage_percentage": int(categorized / len(transactions) * 100),
            "by_category": list(by_category.values()),
            "uncovered_reasons": dict(uncovered),
        }
