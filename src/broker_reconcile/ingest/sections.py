"""Normalize multi-section Flex statements into one superset table.

A Flex Query export may concatenate several sub-tables (trades, cash/dividend
activity, cash transfers), each introduced by its own header line starting
with ``ClientAccountID``. Sections arrive in no guaranteed order, so their
shape is recognised by the columns they carry. Every known layout is renamed
onto the trades layout and rows are emitted under the union of all columns.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Sequence

from broker_reconcile.ingest.models import RawRow
from broker_reconcile.utils.logging import get_logger

logger = get_logger(__name__)

HEADER_MARKER = "ClientAccountID"
MIN_HEADER_COLUMNS = 3
DEFAULT_SOURCE = "FLEX_API"


class StatementFormatError(ValueError):
    """Raised when a document has no usable statement structure."""


class NoSectionsFound(StatementFormatError):
    pass


class NoBaseLayoutFound(StatementFormatError):
    pass


class SectionLayout(str, Enum):
    TRADES = "trades"
    DIVIDENDS = "dividends"
    TRANSFERS = "transfers"
    UNKNOWN = "unknown"


_HEADER_RENAMES: dict[SectionLayout, dict[str, str]] = {
    SectionLayout.DIVIDENDS: {
        "Date/Time": "TradeDate",
        "Amount": "TradeMoney",
        "Type": "Notes/Codes",
        "Code": "TransactionType",
    },
    SectionLayout.TRANSFERS: {
        "Date": "TradeDate",
        "Type": "TransactionType",
        "Direction": "_TRANSFER_DIRECTION",
        "CashTransfer": "TradeMoney",
        "TransferCompany": "Exchange",
    },
}


@dataclass(frozen=True)
class StatementSection:
    columns: list[str]
    rows: list[list[str]]
    line_numbers: list[int]
    header_line: int
    source: str = ""


@dataclass(frozen=True)
class MergedStatement:
    columns: list[str]
    rows: list[RawRow]
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParsedStatement:
    rows: list[RawRow]
    columns: list[str]
    errors: list[str]

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class StatementSummary:
    trades: int = 0
    dividends: int = 0
    fees: int = 0
    deposits: int = 0
    withdrawals: int = 0
    forex: int = 0
    other: int = 0


def _parse_line(line: str) -> list[str]:
    parsed = next(csv.reader([line]), [])
    return [value.strip() for value in parsed]


def _is_header_line(line: str) -> bool:
    stripped = line.lstrip("﻿")
    return stripped.startswith(f'"{HEADER_MARKER}"') or stripped.startswith(f"{HEADER_MARKER},")


def is_multi_section(text: str) -> bool:
    return sum(1 for line in text.splitlines() if _is_header_line(line)) > 1


def detect_sections(text: str, source: str = "") -> list[StatementSection]:
    sections: list[StatementSection] = []
    columns: list[str] | None = None
    rows: list[list[str]] = []
    line_numbers: list[int] = []
    header_line = 0

    for index, line in enumerate(text.splitlines(), start=1):
        if _is_header_line(line):
            if columns is not None:
                sections.append(
                    StatementSection(columns, rows, line_numbers, header_line, source)
                )
            columns = [value.lstrip("﻿") for value in _parse_line(line)]
            rows, line_numbers, header_line = [], [], index
            continue
        if columns is None or not line.strip():
            continue
        rows.append(_parse_line(line))
        line_numbers.append(index)

    if columns is not None:
        sections.append(StatementSection(columns, rows, line_numbers, header_line, source))
    return sections


def detect_layout(columns: Iterable[str]) -> SectionLayout:
    names = {column.strip().strip('"') for column in columns}
    if {"TransactionType", "Exchange", "Buy/Sell"} <= names:
        return SectionLayout.TRADES
    if {"Date/Time", "Amount"} <= names and "TransactionType" not in names:
        return SectionLayout.DIVIDENDS
    if {"Direction", "TransferCompany", "CashTransfer"} <= names:
        return SectionLayout.TRANSFERS
    return SectionLayout.UNKNOWN


def normalize_headers(columns: Sequence[str], layout: SectionLayout) -> list[str]:
    renames = _HEADER_RENAMES.get(layout, {})
    return [renames.get(column, column) for column in columns]


def merge_tables(
    sections: Sequence[StatementSection], base_index: int = 0
) -> MergedStatement:
    """Merge already-normalized tables under the base table's column order.

    Columns from the base table come first; columns that only appear in other
    tables are appended in order of first appearance. Cells a table does not
    carry are emitted as empty strings.
    """
    if not sections:
        raise NoSectionsFound("No statement sections to merge")

    final_columns = list(sections[base_index].columns)
    seen = set(final_columns)
    for section in sections:
        for column in section.columns:
            if column not in seen:
                seen.add(column)
                final_columns.append(column)

    rows: list[RawRow] = []
    warnings: list[str] = []
    for section in sections:
        width = len(section.columns)
        for values, line_number in zip(section.rows, section.line_numbers):
            if len(values) < width:
                warnings.append(
                    f"Line {line_number}: expected {width} fields, found {len(values)}; "
                    "missing trailing fields set to empty"
                )
            cells = dict(zip(section.columns, values))
            rows.append(
                RawRow(
                    values={column: cells.get(column, "") for column in final_columns},
                    line_number=line_number,
                    source=section.source,
                )
            )
    return MergedStatement(columns=final_columns, rows=rows, warnings=warnings)


def merge_sections(documents: str | Sequence[str], source: str = DEFAULT_SOURCE) -> MergedStatement:
    """Detect, normalize and merge every section of one or more documents."""
    texts = [documents] if isinstance(documents, str) else list(documents)

    sections: list[StatementSection] = []
    for index, text in enumerate(texts):
        label = source if len(texts) == 1 else f"{source}#{index + 1}"
        sections.extend(detect_sections(text, source=label))
    if not sections:
        raise NoSectionsFound("No valid statement sections found")

    layouts = [detect_layout(section.columns) for section in sections]
    base_index = next(
        (index for index, layout in enumerate(layouts) if layout is SectionLayout.TRADES),
        None,
    )
    if base_index is None:
        raise NoBaseLayoutFound("No trades section found to normalize onto")

    normalized = [
        StatementSection(
            columns=normalize_headers(section.columns, layout),
            rows=section.rows,
            line_numbers=section.line_numbers,
            header_line=section.header_line,
            source=section.source,
        )
        for section, layout in zip(sections, layouts)
    ]
    merged = merge_tables(normalized, base_index=base_index)
    logger.debug(
        "Merged %s sections (%s) into %s rows",
        len(sections),
        ", ".join(layout.value for layout in layouts),
        len(merged.rows),
    )
    return merged


def _validate_columns(columns: Sequence[str]) -> bool:
    return len(columns) >= MIN_HEADER_COLUMNS and all(column.strip() for column in columns)


def _parse_plain_csv(text: str, source: str) -> ParsedStatement:
    reader = csv.reader(io.StringIO(text))
    lines = [(index, row) for index, row in enumerate(reader, start=1) if any(c.strip() for c in row)]
    if not lines:
        return ParsedStatement(rows=[], columns=[], errors=["The CSV content appears to be empty."])

    columns = [value.strip().lstrip("﻿") for value in lines[0][1]]
    if not _validate_columns(columns):
        return ParsedStatement(
            rows=[],
            columns=columns,
            errors=["Invalid CSV headers. Expected at least 3 non-empty columns."],
        )

    rows = [
        RawRow(
            values={
                column: (values[position].strip() if position < len(values) else "")
                for position, column in enumerate(columns)
            },
            line_number=line_number,
            source=source,
        )
        for line_number, values in lines[1:]
    ]
    return ParsedStatement(rows=rows, columns=columns, errors=[])


def parse_statement(text: str, source: str = DEFAULT_SOURCE) -> ParsedStatement:
    """Parse one statement document into rows; never raises for bad input."""
    try:
        if is_multi_section(text):
            try:
                merged = merge_sections(text, source=source)
            except StatementFormatError as exc:
                return ParsedStatement(
                    rows=[], columns=[], errors=[f"Failed to extract statement sections: {exc}"]
                )
            for warning in merged.warnings:
                logger.warning(warning)
            if not _validate_columns(merged.columns):
                return ParsedStatement(
                    rows=[],
                    columns=merged.columns,
                    errors=["Invalid CSV headers. Expected at least 3 non-empty columns."],
                )
            parsed = ParsedStatement(rows=merged.rows, columns=merged.columns, errors=[])
        else:
            parsed = _parse_plain_csv(text, source)
    except csv.Error as exc:
        return ParsedStatement(rows=[], columns=[], errors=[f"Error parsing statement CSV: {exc}"])

    if not parsed.errors and not parsed.rows:
        return ParsedStatement(rows=[], columns=parsed.columns, errors=["No data rows found in CSV."])
    return parsed


def summarize_statement(rows: Iterable[RawRow]) -> StatementSummary:
    counts = {
        "trades": 0,
        "dividends": 0,
        "fees": 0,
        "deposits": 0,
        "withdrawals": 0,
        "forex": 0,
        "other": 0,
    }
    for row in rows:
        transaction_type = row.get("TransactionType")
        asset_class = row.get("AssetClass")
        exchange = row.get("Exchange")
        notes = row.get("Notes/Codes").lower()

        if transaction_type == "ExchTrade" and asset_class != "CASH" and exchange != "IDEALFX":
            counts["trades"] += 1
        elif "div" in notes or "withholding" in notes or "tax" in notes:
            counts["dividends"] += 1
        elif "fee" in notes or "commission" in notes:
            counts["fees"] += 1
        elif "deposit" in notes:
            counts["deposits"] += 1
        elif "withdrawal" in notes:
            counts["withdrawals"] += 1
        elif asset_class == "CASH" or exchange == "IDEALFX":
            counts["forex"] += 1
        else:
            counts["other"] += 1
    return StatementSummary(**counts)
