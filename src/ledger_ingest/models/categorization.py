"""Auto-categorization models: rules, learned patterns and audit trail."""

from __future__ import annotations

import enum
from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger_ingest.database import Base
from ledger_ingest.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin, utcnow


class SuggestionSource(str, enum.Enum):
    """Which stage produced a category suggestion."""

    RULE_EXACT = "rule_exact"
    RULE_FUZZY = "rule_fuzzy"
    LEARNED_KEYWORD = "learned_keyword"


class SuggestionAction(str, enum.Enum):
    """User reaction to a suggestion."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IGNORED = "ignored"
    OVERRIDDEN = "overridden"


class CorrectionType(str, enum.Enum):
    """Kind of manual recategorization."""

    AUTO_TO_MANUAL = "auto_to_manual"
    WRONG_AUTO_CHOICE = "wrong_auto_choice"
    MISSING_CATEGORY = "missing_category"
    CONFIDENCE_OVERRIDE = "confidence_override"


class AutoCategoryRule(UUIDMixin, UserOwnedMixin, TimestampMixin, Base):
    """User-authored substring rule mapping descriptions to a category."""

    __tablename__ = "auto_category_rules"
    __table_args__ = (UniqueConstraint("user_id", "priority", name="uq_auto_category_rules_user_priority"),)

    pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    category_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LearnedCategoryPattern(UUIDMixin, UserOwnedMixin, Base):
    """Keyword-to-category association whose confidence moves with feedback."""

    __tablename__ = "learned_category_patterns"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "keyword", "category_id", name="uq_learned_patterns_user_keyword_category"
        ),
    )

    category_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    keyword: Mapped[str] = mapped_column(String(100), nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=50)  # 0-100
    first_learned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class AutoCategoryCorrection(UUIDMixin, UserOwnedMixin, Base):
    """Append-only record of a user correcting a category."""

    __tablename__ = "auto_category_corrections"

    transaction_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    original_category_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    corrected_category_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    description_text: Mapped[str] = mapped_column(String(500), nullable=False)
    correction_type: Mapped[CorrectionType] = mapped_column(
        Enum(
            CorrectionType,
            name="correction_type_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
    )
    confidence_at_correction: Mapped[int | None] = mapped_column(Integer, nullable=True)
    corrected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AutoCategorySuggestionLog(UUIDMixin, UserOwnedMixin, Base):
    """Audit row for every categorization attempt, matched or not."""

    __tablename__ = "auto_category_suggestion_logs"

    transaction_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    suggested_category_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True
    )
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_keywords: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    source: Mapped[SuggestionSource | None] = mapped_column(
        Enum(
            SuggestionSource,
            name="suggestion_source_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=True,
    )
    auto_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_action: Mapped[SuggestionAction | None] = mapped_column(
        Enum(
            SuggestionAction,
            name="suggestion_action_enum",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=True,
    )
    suggested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
