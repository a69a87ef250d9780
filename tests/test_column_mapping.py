"""Tests for tabular column mapping: validation, guessing, and cell parsing."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from ledger_ingest.exceptions import ColumnMappingError, InvalidRowDataError
from ledger_ingest.models import TransactionType
from ledger_ingest.services import column_mapping
from ledger_ingest.services.column_mapping import (
    AmountStrategy,
    ColumnMapping,
    extract_row,
    guess,
    check_amount,
    parse_amount,
    parse_date,
    parse_tags,
    resolve,
    validate,
)


class TestValidate:
    def test_valid_single_amount_mapping(self):
        mapping = ColumnMapping(date_column="Date", description_column="Description", amount_column="Amount")

        assert validate(mapping, ["Date", "Description", "Amount"]) == []
        assert mapping.amount_strategy is AmountStrategy.SINGLE_COLUMN

    def test_debit_credit_strategy(self):
        mapping = ColumnMapping(
            date_column="Date", description_column="Memo", debit_column="Debit", credit_column="Credit"
        )

        assert validate(mapping, ["Date", "Memo", "Debit", "Credit"]) == []
        assert mapping.amount_strategy is AmountStrategy.DEBIT_CREDIT_COLUMNS

    def test_lists_every_unmet_requirement(self):
        """GIVEN: An empty mapping
        WHEN: Validating
        THEN: Date, description and amount requirements are all reported"""
        errors = validate(ColumnMapping(), ["Date"])

        assert "Transaction date column is required" in errors
        assert "Description column is required" in errors
        assert "Either amount column or both debit/credit columns are required" in errors

    def test_type_column_requires_amount_column(self):
        mapping = ColumnMapping(
            date_column="Date",
            description_column="Description",
            debit_column="Debit",
            credit_column="Credit",
            type_column="Type",
        )

        assert validate(mapping, ["Date", "Description", "Debit", "Credit", "Type"]) == [
            "Type column requires amount column"
        ]

    def test_unknown_header(self):
        mapping = ColumnMapping(date_column="Date", description_column="Description", amount_column="Value")

        assert validate(mapping, ["Date", "Description", "Amount"]) == [
            "Mapped column 'Value' not found in spreadsheet headers"
        ]


class TestGuess:
    def test_primary_synonyms_score_100(self):
        result = guess(["Date", "Description", "Amount"])

        assert result.mapping.date_column == "Date"
        assert result.mapping.description_column == "Description"
        assert result.mapping.amount_column == "Amount"
        assert result.confidence_scores == {"date_column": 100, "description_column": 100, "amount_column": 100}

    def test_secondary_and_partial_synonyms_score_75(self):
        result = guess(["Transaction Date", "Payee", "Withdrawal", "Deposit"])

        assert result.mapping.date_column == "Transaction Date"
        assert result.mapping.description_column == "Payee"
        assert result.mapping.debit_column == "Withdrawal"
        assert result.mapping.credit_column == "Deposit"
        assert set(result.confidence_scores.values()) == {75}

    def test_first_matching_header_wins(self):
        result = guess(["Memo", "Description", "Date", "Amount"])

        assert result.mapping.description_column == "Memo"


class TestResolve:
    def test_valid_mapping_is_kept(self):
        supplied = {"date_column": "When", "description_column": "What", "amount_column": "How Much"}

        resolved = resolve(supplied, ["When", "What", "How Much"])

        assert resolved.date_column == "When"
        assert resolved.amount_column == "How Much"

    def test_invalid_mapping_falls_back_to_guess(self):
        """GIVEN: A mapping naming a missing header
        WHEN: Resolving against guessable headers
        THEN: The guessed mapping is used"""
        resolved = resolve({"date_column": "Posted On"}, ["Date", "Description", "Amount"])

        assert resolved == ColumnMapping(date_column="Date", description_column="Description", amount_column="Amount")

    def test_unsatisfiable_mapping_raises_with_all_errors(self):
        with pytest.raises(ColumnMappingError) as exc_info:
            resolve(None, ["Foo", "Bar"])

        assert len(exc_info.value.errors) == 3
        assert str(exc_info.value).startswith("Invalid column mapping: ")


class TestParseDate:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2024-01-15", date(2024, 1, 15)),
            ("01/15/2024", date(2024, 1, 15)),
            ("15/01/2024", date(2024, 1, 15)),
            ("2024-01-15 10:30:00", date(2024, 1, 15)),
            (45306, date(2024, 1, 15)),
            (datetime(2024, 1, 15, 9, 0), date(2024, 1, 15)),
            (date(2024, 1, 15), date(2024, 1, 15)),
        ],
    )
    def test_supported_formats(self, value, expected):
        assert parse_date(value) == expected

    def test_blank_is_none(self):
        assert parse_date("  ") is None
        assert parse_date(None) is None

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_date("next tuesday")

    @pytest.mark.parametrize("value", ["20241399", 10**12, float("inf"), float("nan")])
    def test_out_of_range_serial_raises_value_error(self, value):
        with pytest.raises(ValueError):
            parse_date(value)


class TestParseAmount:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("$1,234.56", Decimal("1234.56")),
            ("(45.00)", Decimal("-45.00")),
            ("45.00-", Decimal("-45.00")),
            ("1.234,56", Decimal("1234.56")),
            ("12,5", Decimal("12.5")),
            ("1,234", Decimal("1234")),
            ("-4.50", Decimal("-4.50")),
            (12.25, Decimal("12.25")),
            (7, Decimal("7")),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_amount(value) == expected

    def test_blank_is_none(self):
        assert parse_amount("") is None

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_amount("abc")

    @pytest.mark.parametrize(
        "value",
        [
            Decimal("NaN"),
            Decimal("-Infinity"),
            float("inf"),
            10**20,
            "99999999999999999",
            "(10,000,000,000,000,000.00)",
        ],
    )
    def test_non_finite_and_oversized_raise(self, value):
        with pytest.raises(ValueError, match="Amount out of range"):
            parse_amount(value)

    def test_check_amount_bounds(self):
        assert check_amount(Decimal("9999999999999999.99")) == Decimal("9999999999999999.99")
        with pytest.raises(ValueError):
            check_amount(Decimal("-1e16"))

    @pytest.mark.parametrize("value", ["NaN", "1E+30"])
    def test_scientific_and_nan_text_raise(self, value):
        with pytest.raises(ValueError):
            parse_amount(value)

    def test_parse_tags(self):
        assert parse_tags("food, travel,,") == ["food", "travel"]
        assert parse_tags(None) == []


class TestExtractRow:
    single = ColumnMapping(
        date_column="Date",
        description_column="Description",
        amount_column="Amount",
        category_column="Category",
        tags_column="Tags",
    )

    def test_single_column_signs_amount(self):
        row = {"Date": "2024-01-15", "Description": "Coffee", "Amount": "-4.50", "Category": "Food", "Tags": "a,b"}

        extracted = extract_row(row, self.single)

        assert extracted["amount"] == Decimal("-4.50")
        assert extracted["type"] is TransactionType.DEBIT
        assert extracted["category_name"] == "Food"
        assert extracted["tags"] == ["a", "b"]

    def test_type_column_overrides_sign(self):
        mapping = ColumnMapping(
            date_column="Date", description_column="Description", amount_column="Amount", type_column="Type"
        )
        row = {"Date": "2024-01-15", "Description": "Rent", "Amount": "1200", "Type": "Withdrawal"}

        extracted = extract_row(row, mapping)

        assert extracted["amount"] == Decimal("-1200")
        assert extracted["type"] is TransactionType.DEBIT

    def test_unknown_type_value(self):
        mapping = ColumnMapping(
            date_column="Date", description_column="Description", amount_column="Amount", type_column="Type"
        )
        row = {"Date": "2024-01-15", "Description": "Rent", "Amount": "1200", "Type": "mystery"}

        with pytest.raises(InvalidRowDataError) as exc_info:
            extract_row(row, mapping)

        assert exc_info.value.field == "type"
        assert str(exc_info.value) == "Cannot determine transaction type from value: mystery"

    def test_debit_credit_columns(self):
        mapping = ColumnMapping(
            date_column="Date", description_column="Description", debit_column="Debit", credit_column="Credit"
        )

        debit = extract_row({"Date": "2024-01-15", "Description": "Fee", "Debit": "5.00", "Credit": ""}, mapping)
        credit = extract_row({"Date": "2024-01-15", "Description": "Pay", "Debit": "", "Credit": "100"}, mapping)

        assert debit["amount"] == Decimal("-5.00")
        assert debit["type"] is TransactionType.DEBIT
        assert credit["amount"] == Decimal("100")
        assert credit["type"] is TransactionType.CREDIT

    def test_debit_and_credit_both_populated(self):
        mapping = ColumnMapping(
            date_column="Date", description_column="Description", debit_column="Debit", credit_column="Credit"
        )

        with pytest.raises(InvalidRowDataError) as exc_info:
            extract_row({"Date": "2024-01-15", "Description": "Odd", "Debit": "5", "Credit": "5"}, mapping)

        assert exc_info.value.field == "amount"
        assert "Both debit and credit" in str(exc_info.value)

    def test_invalid_date(self):
        with pytest.raises(InvalidRowDataError) as exc_info:
            extract_row({"Date": "soon", "Description": "Coffee", "Amount": "1"}, self.single)

        assert exc_info.value.field == "date"
        assert exc_info.value.raw_value == "soon"
        assert str(exc_info.value) == "Invalid date format: soon"

    def test_overflowing_date_is_a_row_error(self):
        with pytest.raises(InvalidRowDataError) as exc_info:
            extract_row({"Date": "20241399", "Description": "Coffee", "Amount": "1"}, self.single)

        assert exc_info.value.field == "date"
        assert str(exc_info.value) == "Invalid date format: 20241399"

    def test_missing_description(self):
        with pytest.raises(InvalidRowDataError) as exc_info:
            extract_row({"Date": "2024-01-15", "Description": "  ", "Amount": "1"}, self.single)

        assert exc_info.value.field == "description"

    def test_missing_amount(self):
        with pytest.raises(InvalidRowDataError, match="Amount is required"):
            extract_row({"Date": "2024-01-15", "Description": "Coffee", "Amount": ""}, self.single)


class TestPreview:
    def test_preview_reports_warnings_per_row(self):
        """GIVEN: A CSV with one good row and one bad date
        WHEN: Previewing with the guessed mapping
        THEN: Both rows are returned and the bad one carries a warning"""
        raw = b"Date,Description,Amount\n2024-01-15,Coffee,-4.50\nnope,Lunch,-12.00\n2024-01-17,Salary,2000\n"

        result = column_mapping.preview(raw, None, filename="statement.csv", limit=2)

        assert result["mapping"]["amount_strategy"] == "single_column"
        assert len(result["preview_transactions"]) == 2
        first, second = result["preview_transactions"]
        assert first["row_number"] == 2
        assert first["warnings"] == []
        assert second["warnings"] == ["Invalid date format: nope"]
        assert result["validation_summary"] == {"valid_rows": 1, "rows_with_warnings": 1}
