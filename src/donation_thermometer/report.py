"""Terminal renderer: thermometer panel, donor list, diagnostics table."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from rich.console import Group
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table as RichTable
from rich.text import Text

from donation_thermometer.models import (
    AggregationReport,
    DonationSnapshot,
    FetchAttemptState,
    FetchDiagnostics,
    calculate_percentage,
)

NO_DONORS_TEXT = "No donor names available"
BAR_WIDTH = 40

# ── Formatting ───────────────────────────────────────────────────


def format_currency(amount: float) -> str:
    """USD with thousands separators and no cents, e.g. ``$1,235``."""
    whole = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if whole < 0 else ""
    return f"{sign}${abs(int(whole)):,}"


def donor_list_text(names: list[str]) -> str:
    """Alphabetical, comma-separated donor names for display."""
    if not names:
        return NO_DONORS_TEXT
    return ", ".join(sorted(names))


# ── Panels ───────────────────────────────────────────────────────


def render_thermometer(
    snapshot: DonationSnapshot,
    goal_amount: float,
    *,
    title: str = "Donation Thermometer",
    stale: bool = False,
) -> Panel:
    """Progress bar toward *goal_amount* plus totals and donor names."""
    percentage = calculate_percentage(snapshot.total_amount, goal_amount)
    bar = ProgressBar(total=100, completed=percentage, width=BAR_WIDTH)

    headline = Text.assemble(
        (f"{format_currency(snapshot.total_amount)} raised", "bold green"),
        f"  of {format_currency(goal_amount)}  ",
        (f"{percentage:.2f}%", "bold"),
    )
    count = Text(f"{snapshot.donor_count} donations")
    donors = Text(donor_list_text(snapshot.donor_names), style="dim" if not snapshot.donor_names else "")

    subtitle = None
    if stale:
        subtitle = "[yellow]cached[/yellow]"
    elif snapshot.source_timestamp:
        subtitle = f"updated {snapshot.source_timestamp}"
    return Panel(
        Group(headline, bar, count, donors),
        title=title,
        subtitle=subtitle,
        border_style="yellow" if stale else "green",
    )


def render_aggregation_report(report: AggregationReport) -> RichTable:
    tbl = RichTable(title="Aggregation Summary", show_lines=True)
    tbl.add_column("Check", style="bold")
    tbl.add_column("Result")

    tbl.add_row("Rows in", str(report.rows_in))
    tbl.add_row("Rows used", str(report.rows_used))
    tbl.add_row("Skipped", str(report.skipped_rows))
    tbl.add_row("Unparsed amounts", str(report.unparsed_amounts))
    for w in report.warnings:
        tbl.add_row("Warning", f"[yellow]{w}[/yellow]")
    return tbl


def render_diagnostics(diagnostics: FetchDiagnostics, state: FetchAttemptState) -> RichTable:
    """Operator view: counters, last error and scheduling state."""
    tbl = RichTable(title="Diagnostics", show_header=False)
    tbl.add_column("Field", style="bold")
    tbl.add_column("Value")

    tbl.add_row("Attempts", str(diagnostics.attempts))
    tbl.add_row("Successes", str(diagnostics.successes))
    tbl.add_row("Failures", str(diagnostics.failures))
    tbl.add_row("Rejected snapshots", str(diagnostics.rejections))
    tbl.add_row("Stale responses", str(diagnostics.stale_responses))
    tbl.add_row("Consecutive failures", str(state.consecutive_failures))
    tbl.add_row("Next fetch in", f"{state.next_interval_ms} ms")
    tbl.add_row("Last success", diagnostics.last_success_at or "never")
    if diagnostics.last_error:
        tbl.add_row("Last error", f"[red]{diagnostics.last_error}[/red]")
        tbl.add_row("Last error at", diagnostics.last_error_at)
    return tbl
