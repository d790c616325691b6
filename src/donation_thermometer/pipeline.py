"""Parsing + aggregation pipeline — pure functions, no side effects."""

from __future__ import annotations

import math
import re
from collections.abc import Iterator, Sequence
from typing import Literal

import pandas as pd

from donation_thermometer import AMOUNT_KEYWORDS, NAME_KEYWORDS
from donation_thermometer.errors import EmptyPayloadError, SchemaError
from donation_thermometer.models import AggregationReport, DonationSnapshot, HeaderMap

ColumnFallback = Literal["strict", "positional"]

_NON_NUMERIC_RE = re.compile(r"[^0-9.]")
# Longest leading decimal literal, the way a browser's parseFloat reads it.
_LEADING_DECIMAL_RE = re.compile(r"^([0-9]+(?:\.[0-9]*)?|\.[0-9]+)")

_POSITIONAL_AMOUNT_INDEX = 1
_POSITIONAL_NAME_INDEX = 0

RawRow = list[str]

# ── Tokenizer ───────────────────────────────────────────────────


def parse_row(line: str) -> RawRow:
    """Split one CSV line on commas that are outside double quotes.

    Quotes toggle the in-quotes state and are dropped. ``""`` is not
    unescaped and fields are not trimmed.
    """
    fields: RawRow = []
    inside_quotes = False
    current: list[str] = []
    for char in line:
        if char == '"':
            inside_quotes = not inside_quotes
        elif char == "," and not inside_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


class CsvRows:
    """Lazy, restartable view of the non-blank rows of a CSV blob."""

    def __init__(self, text: str) -> None:
        self._text = text

    def __iter__(self) -> Iterator[RawRow]:
        for line in self._text.split("\n"):
            if line.strip():
                yield parse_row(line)


def iter_rows(text: str) -> CsvRows:
    return CsvRows(text)


# ── Column resolution ───────────────────────────────────────────


def _find_column(header: Sequence[str], keywords: Sequence[str]) -> int | None:
    for idx, cell in enumerate(header):
        normalized = cell.strip().lower()
        if any(keyword in normalized for keyword in keywords):
            return idx
    return None


def resolve_columns(
    header: Sequence[str], *, fallback: ColumnFallback = "strict"
) -> HeaderMap:
    """Infer the amount and donor-name columns from *header*.

    The leftmost cell containing any keyword wins. Under the ``positional``
    fallback an unresolved amount column is assumed to be column 1 and an
    unresolved name column column 0, when the header is wide enough and the
    position is not already taken.
    """
    if fallback not in {"strict", "positional"}:
        raise ValueError(f"Invalid column fallback: {fallback!r}. Use strict/positional.")

    amount_index = _find_column(header, AMOUNT_KEYWORDS)
    name_index = _find_column(header, NAME_KEYWORDS)

    if fallback == "positional":
        width = len(header)
        if (
            amount_index is None
            and width > _POSITIONAL_AMOUNT_INDEX
            and name_index != _POSITIONAL_AMOUNT_INDEX
        ):
            amount_index = _POSITIONAL_AMOUNT_INDEX
        if (
            name_index is None
            and width > _POSITIONAL_NAME_INDEX
            and amount_index != _POSITIONAL_NAME_INDEX
        ):
            name_index = _POSITIONAL_NAME_INDEX

    return HeaderMap(amount_index=amount_index, name_index=name_index)


# ── Amount coercion ─────────────────────────────────────────────


def coerce_amounts(values: Sequence[str]) -> pd.Series:
    """Turn raw amount fields into floats; unparseable fields become NaN.

    Every character other than a digit or ``.`` is stripped first, so
    currency symbols, thousands separators and a leading minus all vanish.
    Digit strings too long for a float overflow to ``inf`` and are treated
    as unparseable.
    """
    raw = pd.Series(list(values), dtype=object).astype(str)
    stripped = raw.str.replace(_NON_NUMERIC_RE, "", regex=True)
    literal = stripped.str.extract(_LEADING_DECIMAL_RE.pattern, expand=False)
    numbers = pd.to_numeric(literal, errors="coerce").astype("float64")
    return numbers.mask(numbers == float("inf"))


def coerce_amount(value: str) -> float:
    return float(coerce_amounts([value]).iloc[0])


# ── Aggregation ─────────────────────────────────────────────────


def aggregate_rows(
    rows: Sequence[RawRow],
    header_map: HeaderMap,
    *,
    positive_only: bool = False,
    source_timestamp: str = "",
) -> tuple[DonationSnapshot, AggregationReport]:
    """Sum amounts and collect donor names over the data rows.

    Every row counts as one donation, including rows that are too short for
    the resolved columns (those are skipped for amount and name) and rows
    whose amount does not parse (those add 0).

    Returns ``(snapshot, report)``.

    Raises
    ------
    SchemaError
        If the amounts are finite but their sum overflows.
    """
    rows = list(rows)
    width = header_map.required_width
    used = [row for row in rows if len(row) >= width]

    total = 0.0
    unparsed = 0
    if header_map.amount_index is not None and used:
        amounts = coerce_amounts([row[header_map.amount_index] for row in used])
        unparsed = int(amounts.isna().sum())
        valid = amounts.dropna()
        if positive_only:
            valid = valid[valid > 0]
        total = float(valid.sum())
        if math.isinf(total):
            raise SchemaError("Donation total exceeds the representable range")

    names: list[str] = []
    if header_map.name_index is not None:
        for row in used:
            name = row[header_map.name_index].strip()
            if name:
                names.append(name)

    report = AggregationReport(
        rows_in=len(rows),
        rows_used=len(used),
        skipped_rows=len(rows) - len(used),
        unparsed_amounts=unparsed,
    )
    if report.skipped_rows:
        report.warnings.append(
            f"Skipped {report.skipped_rows} rows with fewer than {width} fields"
        )
    if unparsed:
        report.warnings.append(f"Found {unparsed} rows with unparseable amounts")
    if not header_map.name_resolved:
        report.warnings.append("No donor name column found; names not collected")

    snapshot = DonationSnapshot(
        total_amount=total,
        donor_count=len(rows),
        donor_names=names,
        source_timestamp=source_timestamp,
    )
    return snapshot, report


def build_snapshot(
    text: str,
    *,
    fallback: ColumnFallback = "strict",
    positive_only: bool = False,
    source_timestamp: str = "",
) -> tuple[DonationSnapshot, AggregationReport]:
    """Run tokenizer, column resolver and aggregator over a CSV payload.

    Raises
    ------
    EmptyPayloadError
        If *text* is empty or whitespace only.
    SchemaError
        If no amount column can be resolved from the header row.
    """
    if not text or not text.strip():
        raise EmptyPayloadError("CSV payload is empty")

    rows = iter(iter_rows(text))
    header = next(rows)
    header_map = resolve_columns(header, fallback=fallback)
    if not header_map.amount_resolved:
        raise SchemaError(
            "Could not find amount column in CSV header: "
            + ", ".join(cell.strip() for cell in header)
        )

    return aggregate_rows(
        list(rows),
        header_map,
        positive_only=positive_only,
        source_timestamp=source_timestamp,
    )
