"""Data models shared across the package."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from numbers import Integral, Real
from typing import Any


def _to_non_negative_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise TypeError(f"{field_name} must be an integer")
    result = int(value)
    if result < 0:
        raise ValueError(f"{field_name} must be >= 0")
    return result


def _to_non_negative_float(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise TypeError(f"{field_name} must be a number")
    result = float(value)
    if math.isnan(result) or result < 0:
        raise ValueError(f"{field_name} must be >= 0")
    if math.isinf(result):
        raise ValueError(f"{field_name} must be finite")
    return result


def _to_optional_index(value: Any, field_name: str) -> int | None:
    if value is None:
        return None
    return _to_non_negative_int(value, field_name)


def _to_string_list(values: Sequence[Any] | None, field_name: str) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise TypeError(f"{field_name} must be a sequence of strings")
    normalized: list[str] = []
    for item in values:
        if not isinstance(item, str):
            raise TypeError(f"{field_name} items must be strings")
        normalized.append(item)
    return normalized


@dataclass(frozen=True)
class HeaderMap:
    """Column positions resolved from a header row.

    ``None`` marks a column as unresolved.
    """

    amount_index: int | None = None
    name_index: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "amount_index", _to_optional_index(self.amount_index, "amount_index")
        )
        object.__setattr__(
            self, "name_index", _to_optional_index(self.name_index, "name_index")
        )

    @property
    def amount_resolved(self) -> bool:
        return self.amount_index is not None

    @property
    def name_resolved(self) -> bool:
        return self.name_index is not None

    @property
    def required_width(self) -> int:
        """Minimum number of fields a row needs for every resolved index."""
        indices = [i for i in (self.amount_index, self.name_index) if i is not None]
        return max(indices) + 1 if indices else 0


@dataclass
class DonationSnapshot:
    """Aggregate donation state: what the thermometer displays.

    Treated as a value. Callers get copies and never mutate a snapshot that
    the reconciliation gate holds.
    """

    total_amount: float = 0.0
    donor_count: int = 0
    donor_names: list[str] = field(default_factory=list)
    source_timestamp: str = ""

    def __post_init__(self) -> None:
        self.total_amount = _to_non_negative_float(self.total_amount, "total_amount")
        self.donor_count = _to_non_negative_int(self.donor_count, "donor_count")
        self.donor_names = _to_string_list(self.donor_names, "donor_names")
        if not isinstance(self.source_timestamp, str):
            raise TypeError("source_timestamp must be a string")

    @classmethod
    def zero(cls) -> DonationSnapshot:
        return cls()

    def copy(self) -> DonationSnapshot:
        return DonationSnapshot(
            total_amount=self.total_amount,
            donor_count=self.donor_count,
            donor_names=list(self.donor_names),
            source_timestamp=self.source_timestamp,
        )

    def same_values(self, other: DonationSnapshot) -> bool:
        """Compare everything except ``source_timestamp``."""
        return (
            self.total_amount == other.total_amount
            and self.donor_count == other.donor_count
            and self.donor_names == other.donor_names
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_amount": self.total_amount,
            "donor_count": self.donor_count,
            "donor_names": list(self.donor_names),
            "source_timestamp": self.source_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DonationSnapshot:
        return cls(
            total_amount=data.get("total_amount", 0.0),
            donor_count=data.get("donor_count", 0),
            donor_names=data.get("donor_names"),
            source_timestamp=data.get("source_timestamp", ""),
        )


@dataclass
class AggregationReport:
    """Row accounting for one aggregation pass.

    Contract invariant: ``skipped_rows == rows_in - rows_used``.
    """

    rows_in: int = 0
    rows_used: int = 0
    skipped_rows: int = 0
    unparsed_amounts: int = 0
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.rows_in = _to_non_negative_int(self.rows_in, "rows_in")
        self.rows_used = _to_non_negative_int(self.rows_used, "rows_used")
        self.skipped_rows = _to_non_negative_int(self.skipped_rows, "skipped_rows")
        self.unparsed_amounts = _to_non_negative_int(
            self.unparsed_amounts, "unparsed_amounts"
        )
        self.warnings = _to_string_list(self.warnings, "warnings")
        if self.rows_used > self.rows_in:
            raise ValueError("rows_used must be <= rows_in")
        if self.skipped_rows != self.rows_in - self.rows_used:
            raise ValueError("skipped_rows must equal rows_in - rows_used")

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_in": self.rows_in,
            "rows_used": self.rows_used,
            "skipped_rows": self.skipped_rows,
            "unparsed_amounts": self.unparsed_amounts,
            "warnings": list(self.warnings),
        }


@dataclass
class FetchAttemptState:
    """Scheduling state owned by the fetch orchestrator."""

    in_flight: bool = False
    consecutive_failures: int = 0
    next_interval_ms: int = 0
    generation: int = 0

    def __post_init__(self) -> None:
        self.consecutive_failures = _to_non_negative_int(
            self.consecutive_failures, "consecutive_failures"
        )
        self.next_interval_ms = _to_non_negative_int(self.next_interval_ms, "next_interval_ms")
        self.generation = _to_non_negative_int(self.generation, "generation")


@dataclass
class FetchDiagnostics:
    """Operator-facing counters and the most recent error."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    rejections: int = 0
    stale_responses: int = 0
    last_error: str = ""
    last_error_at: str = ""
    last_success_at: str = ""
    last_payload_sha256: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "rejections": self.rejections,
            "stale_responses": self.stale_responses,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at,
            "last_success_at": self.last_success_at,
            "last_payload_sha256": self.last_payload_sha256,
        }


def calculate_percentage(amount: float, goal: float) -> float:
    """Return progress toward *goal* in percent, clamped to ``[0, 100]``."""
    if goal <= 0:
        raise ValueError("goal must be > 0")
    return min(max(amount / goal * 100, 0.0), 100.0)
