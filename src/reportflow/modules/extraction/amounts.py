"""
Amount extraction for uploaded report files.

``extract`` turns the bytes of one CSV or HTML report into an ``ExtractionResult``: the
column that holds the charged amount, every positive amount found in it and their sum.
It is pure (no I/O beyond the given bytes) and deterministic.

Column selection is driven by ``AMOUNT_COLUMN_RULES``, an ordered rule table. Headers are
normalized (letters only, lowercased) and the first header, in column order, that
satisfies the highest-priority rule wins.
"""

from __future__ import annotations

import csv
import enum
import io
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from html.parser import HTMLParser

from reportflow.core.errors import MalformedDocument, UnsupportedFileType

CENTS = Decimal("0.01")
# Largest value a Numeric(12, 2) column holds.
MAX_AMOUNT = Decimal("9999999999.99")

REPORT_EXTENSIONS = (".csv", ".html", ".htm")

FALLBACK_TOKENS = (
    "amount",
    "charged",
    "total",
    "cost",
    "price",
    "fee",
    "charge",
    "sum",
    "value",
    "payment",
)

# Strategy 2 (HTML only): a bare numeric cell counts when its column header has one of these.
LOOSE_HEADER_TOKENS = ("total", "amount", "charged")

_PURE_NUMBER_RE = re.compile(r"^\d+(?:\.\d{1,2})?$")


class FileKind(str, enum.Enum):
    HTML = "html"
    CSV = "csv"


class RuleKind(str, enum.Enum):
    EQUALS = "equals"
    ALL_TOKENS = "all_tokens"
    ANY_TOKEN = "any_token"


@dataclass(frozen=True)
class ColumnRule:
    name: str
    kind: RuleKind
    tokens: tuple[str, ...]

    def matches(self, normalized_header: str) -> bool:
        if not normalized_header:
            return False
        if self.kind == RuleKind.EQUALS:
            return normalized_header in self.tokens
        if self.kind == RuleKind.ALL_TOKENS:
            return all(t in normalized_header for t in self.tokens)
        return any(t in normalized_header for t in self.tokens)


AMOUNT_COLUMN_RULES: tuple[ColumnRule, ...] = (
    ColumnRule("exact", RuleKind.EQUALS, ("totalamountcharged",)),
    ColumnRule("all_tokens", RuleKind.ALL_TOKENS, ("total", "amount", "charged")),
    ColumnRule("fallback", RuleKind.ANY_TOKEN, FALLBACK_TOKENS),
)

# HTML headers are matched strictly; loose matching is left to strategy 2.
HTML_COLUMN_RULES: tuple[ColumnRule, ...] = tuple(
    r for r in AMOUNT_COLUMN_RULES if r.name != "fallback"
)


@dataclass(frozen=True)
class ColumnMatch:
    index: int
    header: str
    rule: str


@dataclass(frozen=True)
class ExtractedAmount:
    value: Decimal
    source_file: str
    source_column: str


@dataclass(frozen=True)
class ExtractionResult:
    file_name: str
    file_kind: FileKind
    matched_column: str | None
    amounts: tuple[ExtractedAmount, ...] = ()
    total: Decimal = Decimal("0.00")
    warnings: tuple[str, ...] = ()

    @property
    def has_amount_column(self) -> bool:
        return self.matched_column is not None

    @property
    def amount_values(self) -> list[Decimal]:
        return [a.value for a in self.amounts]


def normalize_header(header: str) -> str:
    return re.sub(r"[^a-z]", "", (header or "").lower())


def match_amount_column(
    headers: Sequence[str], rules: Sequence[ColumnRule] = AMOUNT_COLUMN_RULES
) -> ColumnMatch | None:
    normalized = [normalize_header(h) for h in headers]
    for rule in rules:
        for idx, norm in enumerate(normalized):
            if rule.matches(norm):
                return ColumnMatch(index=idx, header=headers[idx].strip(), rule=rule.name)
    return None


def parse_amount(raw: str | None) -> Decimal | None:
    """
    Clean a cell and parse it as a positive amount.

    Everything except digits and ``.`` is dropped; a leading ``-`` is kept so negative
    values can be recognised and discarded. Returns None for unparseable, zero or
    negative values.
    """
    text = str(raw or "").strip()
    if not text:
        return None
    negative = re.sub(r"[^\d.-]", "", text).startswith("-")
    digits = re.sub(r"[^\d.]", "", text)
    if not digits or not any(ch.isdigit() for ch in digits):
        return None
    try:
        value = Decimal(("-" if negative else "") + digits)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def round_money(value: Decimal) -> Decimal:
    # Precision covers every integer digit plus the two cents digits.
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, value.adjusted() + 3)
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def sum_amounts(values: Iterable[Decimal]) -> Decimal:
    values = list(values)
    with localcontext() as ctx:
        widest = max((v.adjusted() for v in values if v), default=0)
        # A sum of n terms gains at most len(str(n)) integer digits.
        ctx.prec = max(ctx.prec, widest + len(str(len(values))) + 3)
        return round_money(sum(values, Decimal("0")))


def detect_file_kind(file_name: str) -> FileKind:
    lowered = (file_name or "").strip().lower()
    if lowered.endswith(".csv"):
        return FileKind.CSV
    if lowered.endswith((".html", ".htm")):
        return FileKind.HTML
    raise UnsupportedFileType(
        f'"{file_name}" is not a supported report file. '
        f"Upload one of: {', '.join(REPORT_EXTENSIONS)}.",
        file_name=file_name,
        allowed_extensions=list(REPORT_EXTENSIONS),
    )


def decode_document(file_bytes: bytes) -> str:
    if file_bytes.startswith(b"\xef\xbb\xbf"):
        file_bytes = file_bytes[3:]
    return file_bytes.decode("utf-8", errors="replace")


def extract(file_bytes: bytes, file_name: str) -> ExtractionResult:
    kind = detect_file_kind(file_name)
    text = decode_document(file_bytes)
    if kind == FileKind.CSV:
        matched, amounts = _extract_csv(text, file_name=file_name)
    else:
        matched, amounts = _extract_html(text, file_name=file_name)

    _check_range(amounts, file_name=file_name)
    total = sum_amounts(a.value for a in amounts)
    if total > MAX_AMOUNT:
        raise MalformedDocument(
            f'Amounts in column "{matched}" of "{file_name}" add up to {total}, '
            f"above the largest supported total of {MAX_AMOUNT}.",
            file_name=file_name,
            column=matched,
        )

    warnings: list[str] = []
    if matched is not None and not amounts:
        warnings.append(
            f'Column "{matched}" in "{file_name}" contains no positive amounts; '
            "the file contributes 0.00 to the report total."
        )
    return ExtractionResult(
        file_name=file_name,
        file_kind=kind,
        matched_column=matched,
        amounts=tuple(amounts),
        total=total,
        warnings=tuple(warnings),
    )


def _check_range(amounts: Sequence[ExtractedAmount], *, file_name: str) -> None:
    for amount in amounts:
        if amount.value <= MAX_AMOUNT:
            continue
        shown = str(amount.value)
        if len(shown) > 20:
            shown = f"{shown[:20]}... ({len(shown)} characters)"
        raise MalformedDocument(
            f'"{file_name}" has an amount of {shown} in column "{amount.source_column}", '
            f"above the largest supported amount of {MAX_AMOUNT}.",
            file_name=file_name,
            column=amount.source_column,
        )


def aggregate(results: Iterable[ExtractionResult | Decimal]) -> Decimal:
    """Report total over per-file extraction results or stored per-file totals."""
    return sum_amounts(r.total if isinstance(r, ExtractionResult) else r for r in results)


# CSV


def _extract_csv(text: str, *, file_name: str) -> tuple[str | None, list[ExtractedAmount]]:
    rows = _read_csv_rows(text, file_name=file_name)
    headers = [h.strip() for h in rows[0]]
    match = match_amount_column(headers)
    if match is None:
        return None, []

    amounts: list[ExtractedAmount] = []
    for row in rows[1:]:
        if match.index >= len(row):
            continue
        value = parse_amount(row[match.index])
        if value is not None:
            amounts.append(
                ExtractedAmount(value=value, source_file=file_name, source_column=match.header)
            )
    return match.header, amounts


def _read_csv_rows(text: str, *, file_name: str) -> list[list[str]]:
    sample = text[:4096]
    try:
        dialect: type[csv.Dialect] | csv.Dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
    except csv.Error:
        dialect = csv.excel
    try:
        rows = [
            row
            for row in csv.reader(io.StringIO(text, newline=""), dialect)
            if any(cell.strip() for cell in row)
        ]
    except csv.Error as e:
        raise MalformedDocument(
            f'"{file_name}" could not be read as CSV: {e}.', file_name=file_name
        ) from e
    if not rows:
        raise MalformedDocument(
            f'"{file_name}" has no rows. Upload a CSV with a header row and at least one data row.',
            file_name=file_name,
        )
    return rows


# HTML


@dataclass
class _Row:
    section: str
    cells: list[str] = field(default_factory=list)


@dataclass
class _Table:
    rows: list[_Row] = field(default_factory=list)

    def header_row(self) -> _Row | None:
        for row in self.rows:
            if row.section == "thead":
                return row
        return self.rows[0] if self.rows else None

    def data_rows(self) -> list[_Row]:
        header = self.header_row()
        body = [r for r in self.rows if r.section == "tbody"]
        if body:
            return [r for r in body if r is not header]
        return [r for r in self.rows if r is not header and r.section != "thead"]


class _TableCollector(HTMLParser):
    """Collects every ``<table>`` (nested ones included) as rows of cell text."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.tables: list[_Table] = []
        self.tag_count = 0
        self._stack: list[dict] = []

    def handle_starttag(self, tag: str, attrs) -> None:
        self.tag_count += 1
        if tag == "table":
            table = _Table()
            self.tables.append(table)
            self._stack.append({"table": table, "section": "", "row": None, "cell": None})
            return
        if not self._stack:
            return
        state = self._stack[-1]
        if tag in {"thead", "tbody", "tfoot"}:
            self._close_row(state)
            state["section"] = tag
        elif tag == "tr":
            self._close_row(state)
            row = _Row(section=state["section"])
            state["table"].rows.append(row)
            state["row"] = row
        elif tag in {"td", "th"}:
            self._close_cell(state)
            if state["row"] is None:
                row = _Row(section=state["section"])
                state["table"].rows.append(row)
                state["row"] = row
            state["cell"] = []
        elif tag == "br" and state["cell"] is not None:
            state["cell"].append(" ")

    def handle_endtag(self, tag: str) -> None:
        if not self._stack:
            return
        state = self._stack[-1]
        if tag == "table":
            self._close_row(state)
            self._stack.pop()
        elif tag in {"thead", "tbody", "tfoot"}:
            self._close_row(state)
            state["section"] = ""
        elif tag == "tr":
            self._close_row(state)
        elif tag in {"td", "th"}:
            self._close_cell(state)

    def handle_data(self, data: str) -> None:
        if self._stack and self._stack[-1]["cell"] is not None:
            self._stack[-1]["cell"].append(data)

    def close(self) -> None:
        super().close()
        while self._stack:
            self._close_row(self._stack.pop())

    @staticmethod
    def _close_cell(state: dict) -> None:
        if state["cell"] is None:
            return
        text = " ".join("".join(state["cell"]).split())
        state["row"].cells.append(text)
        state["cell"] = None

    def _close_row(self, state: dict) -> None:
        self._close_cell(state)
        state["row"] = None


def _parse_tables(text: str, *, file_name: str) -> list[_Table]:
    collector = _TableCollector()
    try:
        collector.feed(text)
        collector.close()
    except (AssertionError, ValueError) as e:
        raise MalformedDocument(
            f'"{file_name}" could not be parsed as HTML: {e}.', file_name=file_name
        ) from e
    if collector.tag_count == 0:
        raise MalformedDocument(
            f'"{file_name}" does not contain any HTML markup. '
            "Upload the report exported as an HTML table.",
            file_name=file_name,
        )
    return collector.tables


def _extract_html(text: str, *, file_name: str) -> tuple[str | None, list[ExtractedAmount]]:
    tables = _parse_tables(text, file_name=file_name)

    matched: str | None = None
    amounts: list[ExtractedAmount] = []
    any_header_matched = False
    for table in tables:
        header = table.header_row()
        if header is None:
            continue
        match = match_amount_column(header.cells, HTML_COLUMN_RULES)
        if match is None:
            continue
        any_header_matched = True
        if matched is None:
            matched = match.header
        for row in table.data_rows():
            if match.index >= len(row.cells):
                continue
            value = parse_amount(row.cells[match.index])
            if value is not None:
                amounts.append(
                    ExtractedAmount(value=value, source_file=file_name, source_column=match.header)
                )

    if any_header_matched:
        return matched, amounts
    return _extract_html_loose(tables, file_name=file_name)


def _extract_html_loose(
    tables: list[_Table], *, file_name: str
) -> tuple[str | None, list[ExtractedAmount]]:
    matched: str | None = None
    amounts: list[ExtractedAmount] = []
    for table in tables:
        if not table.rows:
            continue
        first_row = table.rows[0].cells
        for row in table.rows:
            for idx, cell in enumerate(row.cells):
                if not _PURE_NUMBER_RE.match(cell) or idx >= len(first_row):
                    continue
                header_text = first_row[idx]
                if not any(t in header_text.lower() for t in LOOSE_HEADER_TOKENS):
                    continue
                value = parse_amount(cell)
                if value is None:
                    continue
                if matched is None:
                    matched = header_text
                amounts.append(
                    ExtractedAmount(value=value, source_file=file_name, source_column=header_text)
                )
    return matched, amounts
