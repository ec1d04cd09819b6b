from __future__ import annotations

from decimal import Decimal

import pytest

from reportflow.core.errors import MalformedDocument, UnsupportedFileType
from reportflow.modules.extraction.amounts import (
    AMOUNT_COLUMN_RULES,
    MAX_AMOUNT,
    FileKind,
    aggregate,
    extract,
    match_amount_column,
    normalize_header,
    parse_amount,
    round_money,
    sum_amounts,
)


def test_csv_exact_header_extracts_cleaned_amounts():
    body = (
        b"Date,Description,Total Amount Charged\n"
        b'2026-01-01,Hotel,"\xe2\x82\xb91,200.50"\n'
        b"2026-01-02,Taxi,300\n"
    )
    result = extract(body, "statement.csv")

    assert result.file_kind == FileKind.CSV
    assert result.matched_column == "Total Amount Charged"
    assert result.amount_values == [Decimal("1200.50"), Decimal("300")]
    assert result.total == Decimal("1500.50")
    assert all(a.source_file == "statement.csv" for a in result.amounts)
    assert result.warnings == ()


def test_csv_skips_noise_zero_and_negative_values():
    body = b"Item,Amount\na,100.50\nb,abc\nc,-5\nd,200\ne,0\nf,\n"
    result = extract(body, "report.csv")

    assert result.matched_column == "Amount"
    assert result.amount_values == [Decimal("100.50"), Decimal("200")]
    assert result.total == Decimal("300.50")


def test_csv_prefers_exact_header_over_earlier_fallback_column():
    body = b"Price,Total Amount Charged\n10,99\n20,1\n"
    result = extract(body, "r.csv")
    assert result.matched_column == "Total Amount Charged"
    assert result.total == Decimal("100.00")


def test_csv_header_is_trimmed_before_matching():
    result = extract(b"  Item  ,  Total  \nx, 42 \n", "r.csv")
    assert result.matched_column == "Total"
    assert result.amount_values == [Decimal("42")]


def test_csv_semicolon_delimited_file_is_read():
    result = extract(b"Name;Fee\na;5.25\nb;4.75\n", "r.csv")
    assert result.matched_column == "Fee"
    assert result.total == Decimal("10.00")


def test_csv_without_amount_column_has_no_match():
    result = extract(b"Name,City\nA,Pune\n", "people.csv")
    assert result.matched_column is None
    assert result.amounts == ()
    assert result.total == Decimal("0.00")


def test_csv_matched_column_without_positive_values_warns():
    result = extract(b"Name,Amount\nA,0\nB,n/a\n", "zero.csv")
    assert result.matched_column == "Amount"
    assert result.total == Decimal("0.00")
    assert len(result.warnings) == 1
    assert "Amount" in result.warnings[0]


def test_empty_csv_is_malformed():
    with pytest.raises(MalformedDocument) as exc:
        extract(b"\n\n", "empty.csv")
    assert "empty.csv" in str(exc.value)


def test_html_tables_are_processed_independently_and_concatenated():
    body = b"""
    <html><body>
      <table>
        <thead><tr><th>Date</th><th>Item</th><th>Total amount charged</th></tr></thead>
        <tbody>
          <tr><td>1 Jan</td><td>Hotel</td><td>50</td></tr>
          <tr><td>2 Jan</td><td>Taxi</td><td>75</td></tr>
        </tbody>
      </table>
      <table>
        <tr><th>Guest</th><th>Nights</th></tr>
        <tr><td>A</td><td>3</td></tr>
      </table>
    </body></html>
    """
    result = extract(body, "statement.html")

    assert result.file_kind == FileKind.HTML
    assert result.matched_column == "Total amount charged"
    assert result.amount_values == [Decimal("50"), Decimal("75")]
    assert result.total == Decimal("125.00")


def test_html_uses_first_row_when_table_has_no_thead():
    body = b"""
    <table>
      <tr><td>Item</td><td>Total Amount Charged</td></tr>
      <tr><td>A</td><td>&#8377; 1,000.25</td></tr>
      <tr><td>B</td><td>-20</td></tr>
    </table>
    """
    result = extract(body, "s.htm")
    assert result.amount_values == [Decimal("1000.25")]


def test_html_tfoot_totals_are_not_double_counted():
    body = b"""
    <table>
      <thead><tr><th>Item</th><th>Total amount charged</th></tr></thead>
      <tbody><tr><td>A</td><td>10</td></tr><tr><td>B</td><td>15</td></tr></tbody>
      <tfoot><tr><td>Total</td><td>25</td></tr></tfoot>
    </table>
    """
    assert extract(body, "s.html").total == Decimal("25.00")


def test_html_falls_back_to_numeric_cells_under_loose_headers():
    body = b"""
    <table>
      <tr><th>Description</th><th>Amount</th></tr>
      <tr><td>Room</td><td>120.50</td></tr>
      <tr><td>Breakfast</td><td>1,000</td></tr>
      <tr><td>42</td><td>30</td></tr>
    </table>
    """
    result = extract(body, "loose.html")

    assert result.matched_column == "Amount"
    # "1,000" is not purely numeric and "42" sits under a non-amount header.
    assert result.amount_values == [Decimal("120.50"), Decimal("30")]


def test_html_without_tables_has_no_match():
    result = extract(b"<html><body><p>Total: 100</p></body></html>", "x.html")
    assert result.matched_column is None
    assert result.total == Decimal("0.00")


def test_html_without_markup_is_malformed():
    with pytest.raises(MalformedDocument):
        extract(b"just some text, no tags", "x.html")


def test_unsupported_extension_is_rejected():
    with pytest.raises(UnsupportedFileType) as exc:
        extract(b"Total,1", "invoice.txt")
    assert "invoice.txt" in str(exc.value)
    assert exc.value.status_code == 400
    assert exc.value.detail["code"] == "UNSUPPORTED_FILE_TYPE"


def test_extension_check_is_case_insensitive():
    assert extract(b"Amount\n5\n", "REPORT.CSV").total == Decimal("5.00")


def test_extraction_is_deterministic():
    body = b"Item,Amount\na,1.10\nb,2.20\nc,3.30\n"
    assert extract(body, "r.csv") == extract(body, "r.csv")


def test_total_equals_rounded_sum_of_amounts():
    body = b"Item,Amount\na,0.005\nb,0.005\nc,10.333\n"
    result = extract(body, "r.csv")
    assert result.total == Decimal("10.34")
    assert result.total == sum(result.amount_values).quantize(Decimal("0.01"))


def test_aggregate_sums_file_totals():
    a = extract(b"Amount\n100.50\n", "a.csv")
    b = extract(b"Amount\n200\n", "b.csv")
    assert aggregate([a, b]) == Decimal("300.50")
    assert aggregate([]) == Decimal("0.00")


def test_aggregate_accepts_stored_file_totals():
    assert aggregate([Decimal("100.50"), Decimal("200.004")]) == Decimal("300.50")


def test_amount_beyond_storable_range_is_malformed():
    body = b"Total Amount Charged\n" + b"9" * 27 + b"\n"
    with pytest.raises(MalformedDocument) as exc:
        extract(body, "big.csv")
    assert exc.value.status_code == 422
    assert exc.value.detail["file_name"] == "big.csv"
    assert exc.value.detail["column"] == "Total Amount Charged"
    assert "big.csv" in str(exc.value)


def test_total_beyond_storable_range_is_malformed():
    body = b"Amount\n" + b"9000000000\n" * 2
    with pytest.raises(MalformedDocument) as exc:
        extract(body, "sum.csv")
    assert exc.value.detail["column"] == "Amount"


def test_largest_storable_amount_is_accepted():
    result = extract(b"Amount\n9999999999.99\n", "edge.csv")
    assert result.total == MAX_AMOUNT


def test_money_helpers_keep_precision_for_wide_values():
    assert round_money(Decimal("9" * 40 + ".005")) == Decimal("9" * 40 + ".01")
    big = Decimal("1" + "0" * 30)
    assert sum_amounts([big, Decimal("0.005")]) == Decimal("1" + "0" * 30 + ".01")


def test_rule_table_priority_and_normalization():
    assert [r.name for r in AMOUNT_COLUMN_RULES] == ["exact", "all_tokens", "fallback"]
    assert normalize_header(" Total-Amount (Charged) ") == "totalamountcharged"

    match = match_amount_column(["Fee", "Amount Charged In Total", "Cost"])
    assert match is not None
    assert match.index == 1
    assert match.rule == "all_tokens"

    assert match_amount_column(["Name", "City"]) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1,234.56", Decimal("1234.56")),
        ("  $ 7 ", Decimal("7")),
        ("-3", None),
        ("0.00", None),
        ("1.2.3", None),
        ("", None),
        ("n/a", None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_cell_with_several_decimal_points_is_skipped():
    assert parse_amount("1.2.3") is None
    result = extract(b"Item,Amount\na,1.2.3\nb,4.50\n", "dots.csv")
    assert result.amount_values == [Decimal("4.50")]
    assert result.total == Decimal("4.50")
