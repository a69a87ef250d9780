"""Column mapping for tabular (CSV/XLSX) statements.

A mapping names, per semantic field, which header supplies it. Mappings that
fail validation fall back to a synonym-table guess, validated once more; a
mapping that still fails rejects the whole import with every unmet
requirement listed.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from ledger_ingest.exceptions import ColumnMappingError, InvalidRowDataError
from ledger_ingest.logger import get_logger
from ledger_ingest.models.ledger import TransactionType

logger = get_logger(__name__)

COLUMN_FIELDS = (
    "date_column",
    "description_column",
    "amount_column",
    "debit_column",
    "credit_column",
    "type_column",
    "category_column",
    "settled_date_column",
    "tags_column",
)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y-%m-%d %H:%M:%S")
EXCEL_EPOCH = date(1899, 12, 30)
# Numeric(18, 2) ledger columns.
MAX_ABS_AMOUNT = Decimal("1e16")

DEBIT_TYPE_VALUES = frozenset({"debit", "expense", "withdrawal"})
CREDIT_TYPE_VALUES = frozenset({"credit", "income", "deposit"})

_CURRENCY_CHARS_RE = re.compile(r"[^\d.,\-+()]")


class AmountStrategy(str, Enum):
    """How the signed amount is derived from a row."""

    SINGLE_COLUMN = "single_column"
    DEBIT_CREDIT_COLUMNS = "debit_credit_columns"


@dataclass(frozen=True)
class ColumnMapping:
    """Header names per semantic field; None when the field is not mapped."""

    date_column: str | None = None
    description_column: str | None = None
    amount_column: str | None = None
    debit_column: str | None = None
    credit_column: str | None = None
    type_column: str | None = None
    category_column: str | None = None
    settled_date_column: str | None = None
    tags_column: str | None = None

    @property
    def amount_strategy(self) -> AmountStrategy | None:
        if self.amount_column:
            return AmountStrategy.SINGLE_COLUMN
        if self.debit_column and self.credit_column:
            return AmountStrategy.DEBIT_CREDIT_COLUMNS
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ColumnMapping:
        data = data or {}
        return cls(**{key: (data.get(key) or None) for key in COLUMN_FIELDS})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = asdict(self)
        strategy = self.amount_strategy
        payload["amount_strategy"] = strategy.value if strategy else None
        return payload


@dataclass
class GuessResult:
    mapping: ColumnMapping
    confidence_scores: dict[str, int] = field(default_factory=dict)


def validate(mapping: ColumnMapping, headers: Iterable[str]) -> list[str]:
    """Return validation errors for mapping against the header row (empty if valid)."""
    header_set = set(headers)
    errors: list[str] = []

    if not mapping.date_column:
        errors.append("Transaction date column is required")
    if not mapping.description_column:
        errors.append("Description column is required")

    has_amount = bool(mapping.amount_column)
    has_debit_credit = bool(mapping.debit_column and mapping.credit_column)
    if not has_amount and not has_debit_credit:
        errors.append("Either amount column or both debit/credit columns are required")
    if mapping.type_column and not has_amount:
        errors.append("Type column requires amount column")

    for key in COLUMN_FIELDS:
        column = getattr(mapping, key)
        if column and column not in header_set:
            errors.append(f"Mapped column '{column}' not found in spreadsheet headers")

    return errors


# field, primary exact (100), secondary exact (75), substring (75)
_SYNONYMS: tuple[tuple[str, tuple[str, ...], tuple[str, ...], tuple[str, ...]], ...] = (
    ("date_column", ("date",), ("posted",), ("transaction date", "trans date")),
    ("description_column", ("description",), ("memo", "payee"), ("details",)),
    ("amount_column", ("amount",), ("total",), ()),
    ("debit_column", ("debit",), ("withdrawal",), ()),
    ("credit_column", ("credit",), ("deposit",), ()),
    ("type_column", ("type",), (), ("transaction type",)),
    ("category_column", ("category",), (), ()),
    ("settled_date_column", (), (), ("settled", "posted date")),
    ("tags_column", ("tags",), ("labels",), ()),
)


def guess(headers: Iterable[str]) -> GuessResult:
    """Best-effort mapping from header names; first matching header wins per field."""
    found: dict[str, str] = {}
    scores: dict[str, int] = {}

    for header in headers:
        if not header:
            continue
        lowered = str(header).strip().lower()
        for key, primary, secondary, partial in _SYNONYMS:
            if key in found:
                continue
            if lowered in primary:
                score = 100
            elif lowered in secondary or any(token in lowered for token in partial):
                score = 75
            else:
                continue
            found[key] = header
            scores[key] = score

    return GuessResult(mapping=ColumnMapping(**found), confidence_scores=scores)


def resolve(mapping: ColumnMapping | Mapping[str, Any] | None, headers: list[str]) -> ColumnMapping:
    """Validate the supplied mapping, falling back to a single guess.

    Raises:
        ColumnMappingError: listing every unmet requirement of the guessed mapping.
    """
    if not isinstance(mapping, ColumnMapping):
        mapping = ColumnMapping.from_dict(mapping)

    errors = validate(mapping, headers)
    if not errors:
        return mapping

    guessed = guess(headers)
    guess_errors = validate(guessed.mapping, headers)
    if not guess_errors:
        logger.info(
            "Column mapping replaced by guess",
            supplied_errors=errors,
            confidence_scores=guessed.confidence_scores,
        )
        return guessed.mapping

    raise ColumnMappingError(guess_errors)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def from_excel_serial(serial: Any) -> date:
    try:
        return EXCEL_EPOCH + timedelta(days=int(serial))
    except (OverflowError, ValueError) as exc:
        raise ValueError(f"Date serial out of range: {serial}") from exc


def check_amount(amount: Decimal) -> Decimal:
    """Reject NaN, infinities and amounts that do not fit the ledger's cents column."""
    if not amount.is_finite() or abs(amount) >= MAX_ABS_AMOUNT:
        raise ValueError(f"Amount out of range: {amount}")
    return amount


def parse_date(value: Any) -> date | None:
    """Parse a date cell: native dates, Excel serials, and the supported string formats."""
    if _is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return from_excel_serial(value)

    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    if text.isdigit():
        return from_excel_serial(int(text))
    raise ValueError(f"Unable to parse date: {text}")


def parse_amount(value: Any) -> Decimal | None:
    """Parse an amount cell, accepting currency symbols, thousands separators and (x) negatives."""
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value}")
    if isinstance(value, (int, Decimal)):
        return check_amount(Decimal(value))
    if isinstance(value, float):
        return check_amount(Decimal(str(value)))

    text = _CURRENCY_CHARS_RE.sub("", str(value).strip())
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if text.endswith("-"):
        negative = True
        text = text[:-1]
    if "," in text and "." in text:
        # The rightmost separator is the decimal point.
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        text = f"{head.replace(',', '')}.{tail}" if len(tail) in (1, 2) else text.replace(",", "")
    try:
        amount = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value}") from exc
    check_amount(amount)
    return -amount if negative else amount


def parse_tags(value: Any) -> list[str]:
    if _is_blank(value):
        return []
    return [tag.strip() for tag in str(value).split(",") if tag.strip()]


def _cell(row: Mapping[str, Any], column: str | None) -> Any:
    if not column:
        return None
    return row.get(column)


def _detect_type(row: Mapping[str, Any], mapping: ColumnMapping, amount: Decimal) -> TransactionType:
    if mapping.type_column:
        raw = _cell(row, mapping.type_column)
        type_value = "" if raw is None else str(raw).strip().lower()
        if type_value in DEBIT_TYPE_VALUES:
            return TransactionType.DEBIT
        if type_value in CREDIT_TYPE_VALUES:
            return TransactionType.CREDIT
        raise InvalidRowDataError(
            f"Cannot determine transaction type from value: {type_value}",
            field="type",
            raw_value=raw,
        )
    return TransactionType.DEBIT if amount < 0 else TransactionType.CREDIT


def _amount_from_columns(row: Mapping[str, Any], mapping: ColumnMapping) -> tuple[Decimal, TransactionType]:
    if mapping.amount_strategy is AmountStrategy.DEBIT_CREDIT_COLUMNS:
        debit_raw = _cell(row, mapping.debit_column)
        credit_raw = _cell(row, mapping.credit_column)
        try:
            debit = parse_amount(debit_raw) or Decimal(0)
        except ValueError as exc:
            raise InvalidRowDataError(str(exc), field="debit", raw_value=debit_raw) from exc
        try:
            credit = parse_amount(credit_raw) or Decimal(0)
        except ValueError as exc:
            raise InvalidRowDataError(str(exc), field="credit", raw_value=credit_raw) from exc

        has_debit = debit != 0
        has_credit = credit != 0
        if has_debit and not has_credit:
            return -abs(debit), TransactionType.DEBIT
        if has_credit and not has_debit:
            return abs(credit), TransactionType.CREDIT
        raise InvalidRowDataError(
            "Both debit and credit columns have values or both are empty",
            field="amount",
            raw_value=f"debit={debit_raw}, credit={credit_raw}",
        )

    raw = _cell(row, mapping.amount_column)
    try:
        amount = parse_amount(raw)
    except ValueError as exc:
        raise InvalidRowDataError(str(exc), field="amount", raw_value=raw) from exc
    if amount is None:
        raise InvalidRowDataError("Amount is required", field="amount", raw_value=raw)

    txn_type = _detect_type(row, mapping, amount)
    signed = -abs(amount) if txn_type is TransactionType.DEBIT else abs(amount)
    return signed, txn_type


def extract_row(row: Mapping[str, Any], mapping: ColumnMapping) -> dict[str, Any]:
    """Extract normalized transaction fields from one data row.

    Raises:
        InvalidRowDataError: with the offending field and raw value.
    """
    raw_date = _cell(row, mapping.date_column)
    try:
        txn_date = parse_date(raw_date)
    except ValueError as exc:
        raise InvalidRowDataError(f"Invalid date format: {raw_date}", field="date", raw_value=raw_date) from exc
    if txn_date is None:
        raise InvalidRowDataError("Transaction date is required", field="date", raw_value=raw_date)

    raw_description = _cell(row, mapping.description_column)
    description = "" if raw_description is None else str(raw_description).strip()
    if not description:
        raise InvalidRowDataError("Description is required", field="description", raw_value=raw_description)

    amount, txn_type = _amount_from_columns(row, mapping)

    raw_settled = _cell(row, mapping.settled_date_column)
    try:
        settled_date = parse_date(raw_settled)
    except ValueError as exc:
        raise InvalidRowDataError(
            f"Invalid date format: {raw_settled}", field="settled_date", raw_value=raw_settled
        ) from exc

    raw_category = _cell(row, mapping.category_column)
    category_name = None if _is_blank(raw_category) else str(raw_category).strip()

    return {
        "date": txn_date,
        "description": description,
        "amount": amount,
        "type": txn_type,
        "settled_date": settled_date,
        "category_name": category_name,
        "tags": parse_tags(_cell(row, mapping.tags_column)),
    }


def preview(
    raw: bytes,
    mapping: ColumnMapping | Mapping[str, Any] | None,
    *,
    filename: str | None = None,
    limit: int = 5,
) -> dict[str, Any]:
    """Apply a mapping to the first rows of a file, reporting per-row warnings."""
    from ledger_ingest.services.parsers import read_table

    table = read_table(raw, filename=filename)
    resolved = resolve(mapping, table.headers)

    transactions: list[dict[str, Any]] = []
    valid_rows = 0
    rows_with_warnings = 0
    for row_number, cells in table.rows:
        if len(transactions) >= limit:
            break
        warnings: list[str] = []
        try:
            extracted = extract_row(cells, resolved)
            valid_rows += 1
        except InvalidRowDataError as exc:
            warnings.append(str(exc))
            rows_with_warnings += 1
            extracted = {
                "date": None,
                "description": str(_cell(cells, resolved.description_column) or ""),
                "amount": Decimal(0),
                "type": TransactionType.DEBIT,
                "settled_date": None,
                "category_name": None,
                "tags": [],
            }
        extracted["row_number"] = row_number
        extracted["warnings"] = warnings
        transactions.append(extracted)

    return {
        "mapping": resolved.to_dict(),
        "preview_transactions": transactions,
        "validation_summary": {
            "valid_rows": valid_rows,
            "rows_with_warnings": rows_with_warnings,
        },
    }
