from __future__ import annotations

import io

import pytest
from rich.console import Console

from donation_thermometer.models import (
    AggregationReport,
    DonationSnapshot,
    FetchAttemptState,
    FetchDiagnostics,
)
from donation_thermometer.report import (
    NO_DONORS_TEXT,
    donor_list_text,
    format_currency,
    render_aggregation_report,
    render_diagnostics,
    render_thermometer,
)


def _render(renderable: object) -> str:
    buffer = io.StringIO()
    Console(file=buffer, width=100, color_system=None).print(renderable)
    return buffer.getvalue()


@pytest.mark.parametrize(
    ("amount", "expected"),
    [(0, "$0"), (1234.5, "$1,235"), (999_999.4, "$999,999"), (1_000_000, "$1,000,000")],
)
def test_format_currency(amount: float, expected: str) -> None:
    assert format_currency(amount) == expected


def test_donor_list_text_sorts_for_display_only() -> None:
    names = ["Bo", "Al", "Cy"]

    assert donor_list_text(names) == "Al, Bo, Cy"
    assert names == ["Bo", "Al", "Cy"]
    assert donor_list_text([]) == NO_DONORS_TEXT


def test_render_thermometer_shows_totals_and_percentage() -> None:
    snapshot = DonationSnapshot(125.5, 2, ["Bo", "Al"], "2024-01-01T00:00:00+00:00")

    text = _render(render_thermometer(snapshot, 1_000))

    assert "$126 raised" in text
    assert "12.55%" in text
    assert "2 donations" in text
    assert "Al, Bo" in text


def test_render_thermometer_marks_cached_snapshot() -> None:
    text = _render(render_thermometer(DonationSnapshot.zero(), 1_000_000, stale=True))

    assert "cached" in text
    assert NO_DONORS_TEXT in text
    assert "0.00%" in text


def test_render_aggregation_report_lists_warnings() -> None:
    report = AggregationReport(rows_in=3, rows_used=2, skipped_rows=1, warnings=["short row"])

    text = _render(render_aggregation_report(report))

    assert "Rows in" in text
    assert "short row" in text


def test_render_diagnostics_shows_last_error() -> None:
    diagnostics = FetchDiagnostics(attempts=4, failures=1, last_error="TransportError: boom")
    state = FetchAttemptState(consecutive_failures=1, next_interval_ms=5000)

    text = _render(render_diagnostics(diagnostics, state))

    assert "TransportError: boom" in text
    assert "5000 ms" in text
    assert "never" in text
