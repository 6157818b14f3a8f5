from __future__ import annotations

import pytest

from broker_reconcile.ingest.models import RawRow
from broker_reconcile.ingest.sections import (
    NoBaseLayoutFound,
    NoSectionsFound,
    SectionLayout,
    StatementSection,
    detect_layout,
    detect_sections,
    is_multi_section,
    merge_sections,
    merge_tables,
    parse_statement,
    summarize_statement,
)

TRADES_SECTION = (
    '"ClientAccountID","CurrencyPrimary","Symbol","TransactionType","Exchange","Buy/Sell",'
    '"Quantity","TradePrice","TradeDate"\n'
    '"U1","USD","AAPL","ExchTrade","NASDAQ","BUY","10","100","2024-01-10"\n'
)
DIVIDENDS_SECTION = (
    '"ClientAccountID","CurrencyPrimary","Symbol","Date/Time","Amount","Type","Description"\n'
    '"U1","USD","AAPL","2024-02-15","2.64","Dividends",'
    '"AAPL(US0378331005) Cash Dividend USD 0.264 per Share"\n'
)
TRANSFERS_SECTION = (
    '"ClientAccountID","CurrencyPrimary","Date","Type","Direction","TransferCompany","CashTransfer"\n'
    '"U1","USD","2024-03-01","INTERNAL","IN","U7654321","500"\n'
)


def test_merge_tables_appends_new_columns_and_blanks_missing_cells():
    sections = [
        StatementSection(columns=["A", "B", "C"], rows=[["1", "2", "3"]], line_numbers=[2], header_line=1),
        StatementSection(columns=["A", "D"], rows=[["1", "5"]], line_numbers=[4], header_line=3),
    ]

    merged = merge_tables(sections)

    assert merged.columns == ["A", "B", "C", "D"]
    assert [[row.values[c] for c in merged.columns] for row in merged.rows] == [
        ["1", "2", "3", ""],
        ["1", "", "", "5"],
    ]
    assert [row.line_number for row in merged.rows] == [2, 4]


def test_merge_tables_uses_base_table_column_order():
    sections = [
        StatementSection(columns=["X", "A"], rows=[["x", "a"]], line_numbers=[2], header_line=1),
        StatementSection(columns=["A", "B"], rows=[["a2", "b2"]], line_numbers=[4], header_line=3),
    ]

    merged = merge_tables(sections, base_index=1)

    assert merged.columns == ["A", "B", "X"]


def test_merge_tables_warns_on_short_rows():
    sections = [StatementSection(columns=["A", "B", "C"], rows=[["1"]], line_numbers=[7], header_line=6)]

    merged = merge_tables(sections)

    assert merged.rows[0].as_dict() == {"A": "1", "B": "", "C": ""}
    assert merged.warnings and merged.warnings[0].startswith("Line 7:")


def test_merge_tables_rejects_empty_input():
    with pytest.raises(NoSectionsFound):
        merge_tables([])


def test_detect_sections_splits_on_header_marker():
    text = TRADES_SECTION + "\n" + DIVIDENDS_SECTION

    sections = detect_sections(text, source="FLEX_API")

    assert len(sections) == 2
    assert sections[0].header_line == 1
    assert sections[1].header_line == 4
    assert sections[1].line_numbers == [5]
    assert is_multi_section(text)
    assert not is_multi_section(TRADES_SECTION)


def test_detect_layout_recognises_known_shapes():
    assert detect_layout(detect_sections(TRADES_SECTION)[0].columns) is SectionLayout.TRADES
    assert detect_layout(detect_sections(DIVIDENDS_SECTION)[0].columns) is SectionLayout.DIVIDENDS
    assert detect_layout(detect_sections(TRANSFERS_SECTION)[0].columns) is SectionLayout.TRANSFERS
    assert detect_layout(["ClientAccountID", "Foo", "Bar"]) is SectionLayout.UNKNOWN


def test_merge_sections_normalizes_dividend_headers_onto_trades_layout():
    # Dividends come first; the trades table still defines the column order.
    merged = merge_sections(DIVIDENDS_SECTION + TRADES_SECTION)

    assert merged.columns[:9] == [
        "ClientAccountID",
        "CurrencyPrimary",
        "Symbol",
        "TransactionType",
        "Exchange",
        "Buy/Sell",
        "Quantity",
        "TradePrice",
        "TradeDate",
    ]
    assert {"TradeMoney", "Notes/Codes", "Description"} <= set(merged.columns)
    assert "Date/Time" not in merged.columns

    dividend = merged.rows[0]
    assert dividend.get("TradeDate") == "2024-02-15"
    assert dividend.get("TradeMoney") == "2.64"
    assert dividend.get("Notes/Codes") == "Dividends"
    assert dividend.get("TransactionType") == ""


def test_merge_sections_renames_transfer_columns():
    merged = merge_sections([TRADES_SECTION, TRANSFERS_SECTION])

    transfer = merged.rows[1]
    assert transfer.get("TransactionType") == "INTERNAL"
    assert transfer.get("_TRANSFER_DIRECTION") == "IN"
    assert transfer.get("TradeMoney") == "500"
    assert transfer.get("Exchange") == "U7654321"
    assert transfer.source == "FLEX_API#2"


def test_merge_sections_requires_trades_section():
    with pytest.raises(NoBaseLayoutFound):
        merge_sections(DIVIDENDS_SECTION + DIVIDENDS_SECTION)


def test_parse_statement_reports_structural_errors():
    assert parse_statement("").errors == ["The CSV content appears to be empty."]
    assert parse_statement("a,b\n1,2\n").errors == [
        "Invalid CSV headers. Expected at least 3 non-empty columns."
    ]
    assert parse_statement("a,b,c\n").errors == ["No data rows found in CSV."]

    failed = parse_statement(DIVIDENDS_SECTION + DIVIDENDS_SECTION)
    assert failed.rows == []
    assert failed.errors[0].startswith("Failed to extract statement sections:")


def test_parse_statement_handles_plain_and_multi_section_documents(sample_statement_csv):
    plain = parse_statement(sample_statement_csv)
    assert plain.errors == []
    assert plain.row_count == 6
    assert plain.rows[0].line_number == 2

    multi = parse_statement(TRADES_SECTION + DIVIDENDS_SECTION)
    assert multi.errors == []
    assert multi.row_count == 2


def test_summarize_statement_counts_row_families():
    rows = [
        RawRow({"TransactionType": "ExchTrade", "AssetClass": "STK", "Exchange": "NASDAQ"}),
        RawRow({"TransactionType": "ExchTrade", "AssetClass": "CASH", "Exchange": "IDEALFX"}),
        RawRow({"Notes/Codes": "Dividends"}),
        RawRow({"Notes/Codes": "Deposits/Withdrawals"}),
        RawRow({"Notes/Codes": "Other Fees"}),
        RawRow({}),
    ]

    summary = summarize_statement(rows)

    assert summary.trades == 1
    assert summary.forex == 1
    assert summary.dividends == 1
    assert summary.deposits == 1
    assert summary.fees == 1
    assert summary.other == 1
