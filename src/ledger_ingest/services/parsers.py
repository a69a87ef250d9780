"""Statement parsers: OFX (1.x SGML and 2.x XML) and tabular (CSV/XLSX).

Both sources produce the same row shape. Structural problems (no OFX root,
no transaction block, no header row, unsatisfiable column mapping) raise
when ``parse()`` is called; value problems inside a single row surface only
when that row's ``to_candidate()`` runs, so they stay row-level errors.
"""

from __future__ import annotations

import csv
import datetime as dt
import html
import io
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar

import openpyxl

from ledger_ingest.exceptions import ColumnMappingError, InvalidRowDataError, ParseError
from ledger_ingest.logger import get_logger
from ledger_ingest.models.imports import ImportSourceType
from ledger_ingest.models.ledger import TransactionType
from ledger_ingest.services import column_mapping
from ledger_ingest.services.column_mapping import ColumnMapping

logger = get_logger(__name__)

UNKNOWN_DESCRIPTION = "Unknown Transaction"
CSV_DELIMITERS = ",;\t|"
XLSX_MAGIC = b"PK\x03\x04"


@dataclass(frozen=True)
class CandidateRow:
    """Normalized transaction candidate; amount is signed (negative = debit)."""

    row_number: int
    date: dt.date
    description: str
    amount: Decimal
    type: TransactionType
    settled_date: dt.date | None = None
    category_name: str | None = None
    tags: tuple[str, ...] = ()
    external_id: str | None = None


@dataclass
class SourceRow:
    """One raw row, mapped to a CandidateRow on demand."""

    row_number: int
    raw: dict[str, Any]

    def to_candidate(self) -> CandidateRow:
        raise NotImplementedError


# =============================================================================
# OFX
# =============================================================================

_TAG_RE = re.compile(r"<(/?)([A-Za-z0-9_.:-]+)>", re.MULTILINE)
_OFX_DT_RE = re.compile(r"^(\d{8})")


@dataclass
class OfxNode:
    name: str
    value: str | None = None
    children: dict[str, list[OfxNode]] = field(default_factory=dict)

    def add_child(self, node: OfxNode) -> None:
        self.children.setdefault(node.name, []).append(node)

    def first(self, name: str) -> OfxNode | None:
        nodes = self.children.get(name)
        return nodes[0] if nodes else None

    def text(self, name: str) -> str | None:
        node = self.first(name)
        return node.value if node is not None else None

    def walk(self, name: str) -> Iterator[OfxNode]:
        """Depth-first search for every descendant named ``name``, in document order."""
        for nodes in self.children.values():
            for node in nodes:
                if node.name == name:
                    yield node
                else:
                    yield from node.walk(name)


def _clean_text(value: str | None) -> str:
    if value is None:
        return ""
    return html.unescape(" ".join(value.replace("\x00", "").split())).strip()


def parse_ofx_tree(text: str) -> OfxNode:
    """Parse OFX content into a node tree.

    OFX 1.x leaf tags are not closed (``<TAG>value``) while aggregates are;
    OFX 2.x closes everything. A tag followed by text is a leaf, anything else
    an aggregate, which covers both.
    """
    root = OfxNode("ROOT")
    stack: list[OfxNode] = [root]

    pos = 0
    while True:
        match = _TAG_RE.search(text, pos)
        if not match:
            break
        is_end = bool(match.group(1))
        tag = match.group(2).upper()
        pos = match.end()

        if is_end:
            for index in range(len(stack) - 1, 0, -1):
                if stack[index].name == tag:
                    stack = stack[:index]
                    break
            continue

        next_match = _TAG_RE.search(text, pos)
        raw_value = text[pos : next_match.start() if next_match else len(text)]
        value = _clean_text(raw_value)
        if value:
            stack[-1].add_child(OfxNode(tag, value=value))
            pos += len(raw_value)
            continue

        node = OfxNode(tag)
        stack[-1].add_child(node)
        stack.append(node)

    return root


def parse_ofx_date(raw: str | None) -> dt.date | None:
    """Parse OFX datetimes like ``20260115``, ``20260115120000[-5:EST]``."""
    value = _clean_text(raw)
    if not value:
        return None
    match = _OFX_DT_RE.match(value)
    if not match:
        raise ValueError(f"Invalid OFX date: {value}")
    return dt.datetime.strptime(match.group(1), "%Y%m%d").date()


def parse_ofx_amount(raw: str | None) -> Decimal:
    value = _clean_text(raw).replace(",", ".")
    if not value:
        raise ValueError("Amount is required")
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {raw}") from exc
    return column_mapping.check_amount(amount)


def decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("cp1252", errors="replace")


@dataclass(frozen=True)
class OfxStatementInfo:
    """Statement-level metadata from the OFX ledger balance block."""

    ledger_balance: Decimal | None = None
    balance_date: dt.date | None = None
    currency: str | None = None
    account_number: str | None = None


def _ofx_description(node: OfxNode) -> str:
    payee = node.first("PAYEE")
    for candidate in (
        node.text("NAME"),
        payee.text("NAME") if payee is not None else None,
        node.text("MEMO"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return UNKNOWN_DESCRIPTION


@dataclass
class OfxRow(SourceRow):
    def to_candidate(self) -> CandidateRow:
        raw_date = self.raw.get("DTPOSTED")
        try:
            posted = parse_ofx_date(raw_date)
        except ValueError as exc:
            raise InvalidRowDataError(str(exc), field="date", raw_value=raw_date) from exc
        if posted is None:
            raise InvalidRowDataError("Transaction date is required", field="date", raw_value=raw_date)

        raw_amount = self.raw.get("TRNAMT")
        try:
            amount = parse_ofx_amount(raw_amount)
        except ValueError as exc:
            raise InvalidRowDataError(str(exc), field="amount", raw_value=raw_amount) from exc

        try:
            settled = parse_ofx_date(self.raw.get("DTAVAIL"))
        except ValueError:
            settled = None

        return CandidateRow(
            row_number=self.row_number,
            date=posted,
            description=self.raw["description"],
            amount=amount,
            type=TransactionType.DEBIT if amount < 0 else TransactionType.CREDIT,
            settled_date=settled,
            external_id=self.raw.get("FITID"),
        )


def parse_ofx(raw: bytes) -> tuple[OfxStatementInfo, list[OfxRow]]:
    """Parse an OFX document into statement metadata and transaction rows.

    Raises:
        ParseError: when the document has no <OFX> root or no <STMTTRN> block.
    """
    text = decode_text(raw)
    root = parse_ofx_tree(text)
    ofx = root.first("OFX")
    if ofx is None:
        raise ParseError("Invalid OFX file: no <OFX> root element found")

    rows: list[OfxRow] = []
    for index, node in enumerate(ofx.walk("STMTTRN"), start=1):
        raw_fields: dict[str, Any] = {
            name: children[0].value for name, children in node.children.items() if children[0].value
        }
        raw_fields["description"] = _ofx_description(node)
        rows.append(OfxRow(row_number=index, raw=raw_fields))

    if not rows:
        raise ParseError("Invalid OFX file: no transactions found")

    ledger = next(ofx.walk("LEDGERBAL"), None)
    balance: Decimal | None = None
    balance_date: dt.date | None = None
    if ledger is not None:
        try:
            balance = parse_ofx_amount(ledger.text("BALAMT"))
            balance_date = parse_ofx_date(ledger.text("DTASOF"))
        except ValueError:
            logger.warning("Ignoring unreadable OFX ledger balance", balance=ledger.text("BALAMT"))
            balance, balance_date = None, None

    statement_rs = next(ofx.walk("STMTRS"), None) or next(ofx.walk("CCSTMTRS"), None)
    account = None
    if statement_rs is not None:
        account_from = statement_rs.first("BANKACCTFROM") or statement_rs.first("CCACCTFROM")
        account = account_from.text("ACCTID") if account_from is not None else None

    info = OfxStatementInfo(
        ledger_balance=balance,
        balance_date=balance_date,
        currency=statement_rs.text("CURDEF") if statement_rs is not None else None,
        account_number=account,
    )
    return info, rows


# =============================================================================
# Tabular (CSV / XLSX)
# =============================================================================


@dataclass
class Table:
    headers: list[str]
    rows: Iterator[tuple[int, dict[str, Any]]]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _row_is_empty(values: list[Any] | tuple[Any, ...]) -> bool:
    return all(_is_blank(v) for v in values)


def _table_from_rows(numbered_rows: Iterator[tuple[int, list[Any]]]) -> Table:
    """Treat the first non-empty row as the header; everything before it is preamble."""
    headers: list[str] | None = None
    for _, values in numbered_rows:
        if not _row_is_empty(values):
            headers = ["" if v is None else str(v).strip() for v in values]
            break
    if headers is None:
        raise ParseError("No header row found in file")

    header_list = headers

    def data_rows() -> Iterator[tuple[int, dict[str, Any]]]:
        for row_number, values in numbered_rows:
            if _row_is_empty(values):
                continue
            cells: dict[str, Any] = {}
            for header, value in zip(header_list, values):
                if header:
                    cells[header] = value.strip() if isinstance(value, str) else value
            yield row_number, cells

    return Table(headers=header_list, rows=data_rows())


def _sniff_delimiter(sample: str) -> str:
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        return ","


def read_csv(raw: bytes) -> Table:
    text = decode_text(raw)
    delimiter = _sniff_delimiter(text[:4096])
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    numbered = ((number, list(values)) for number, values in enumerate(reader, start=1))
    return _table_from_rows(numbered)


def read_xlsx(raw: bytes) -> Table:
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(raw), read_only=True, data_only=True)
    except Exception as exc:
        raise ParseError(f"Unable to read spreadsheet: {exc}") from exc
    sheet = workbook.active
    if sheet is None:
        workbook.close()
        raise ParseError("Spreadsheet has no worksheets")

    def numbered() -> Iterator[tuple[int, list[Any]]]:
        try:
            for number, values in enumerate(sheet.iter_rows(values_only=True), start=1):
                yield number, list(values)
        finally:
            workbook.close()

    return _table_from_rows(numbered())


def is_xlsx(raw: bytes, filename: str | None = None) -> bool:
    if filename and filename.lower().endswith((".xlsx", ".xlsm")):
        return True
    return raw[:4] == XLSX_MAGIC


def read_table(raw: bytes, *, filename: str | None = None) -> Table:
    """Read a CSV or XLSX file into headers and numbered data rows."""
    if is_xlsx(raw, filename):
        return read_xlsx(raw)
    return read_csv(raw)


@dataclass
class TabularRow(SourceRow):
    mapping: ColumnMapping = field(default_factory=ColumnMapping)

    def to_candidate(self) -> CandidateRow:
        extracted = column_mapping.extract_row(self.raw, self.mapping)
        return CandidateRow(
            row_number=self.row_number,
            date=extracted["date"],
            description=extracted["description"],
            amount=extracted["amount"],
            type=extracted["type"],
            settled_date=extracted["settled_date"],
            category_name=extracted["category_name"],
            tags=tuple(extracted["tags"]),
        )


# =============================================================================
# Import sources
# =============================================================================


@dataclass
class OfxSource:
    """OFX statement; exposes ledger balance metadata once parsed."""

    source_type: ClassVar[ImportSourceType] = ImportSourceType.OFX
    statement: OfxStatementInfo | None = None

    def parse(self, raw: bytes) -> Iterator[SourceRow]:
        self.statement, rows = parse_ofx(raw)
        logger.debug("OFX statement parsed", rows=len(rows), has_balance=self.statement.ledger_balance is not None)
        return iter(rows)


@dataclass
class TabularSource:
    """CSV/XLSX statement read through a column mapping."""

    source_type: ClassVar[ImportSourceType] = ImportSourceType.TABULAR
    mapping: ColumnMapping | Mapping[str, Any] | None = None
    filename: str | None = None
    resolved_mapping: ColumnMapping | None = None

    def parse(self, raw: bytes) -> Iterator[SourceRow]:
        table = read_table(raw, filename=self.filename)
        try:
            self.resolved_mapping = column_mapping.resolve(self.mapping, table.headers)
        except ColumnMappingError:
            logger.warning("Column mapping unsatisfiable", headers=table.headers)
            raise
        mapping = self.resolved_mapping
        return (TabularRow(row_number=number, raw=cells, mapping=mapping) for number, cells in table.rows)


ImportSource = OfxSource | TabularSource


def build_source(
    source_type: ImportSourceType,
    *,
    mapping: Mapping[str, Any] | None = None,
    filename: str | None = None,
) -> ImportSource:
    if source_type is ImportSourceType.OFX:
        return OfxSource()
    return TabularSource(mapping=mapping, filename=filename)


def detect_source_type(filename: str, raw: bytes | None = None) -> ImportSourceType:
    """Pick the source family from the file extension, sniffing content for unknown extensions."""
    lowered = filename.lower()
    if lowered.endswith((".ofx", ".qfx")):
        return ImportSourceType.OFX
    if lowered.endswith((".csv", ".xlsx", ".xlsm", ".txt")):
        return ImportSourceType.TABULAR
    if raw is not None and b"<OFX>" in raw[:8192].upper():
        return ImportSourceType.OFX
    return ImportSourceType.TABULAR
