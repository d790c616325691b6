"""CLI entry point for donation-thermometer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel

from donation_thermometer import __version__
from donation_thermometer.config import ThermometerConfig
from donation_thermometer.errors import ConfigError, FetchError
from donation_thermometer.fetch import check_source, fetch_csv
from donation_thermometer.io import SnapshotCache, load_csv_text
from donation_thermometer.models import DonationSnapshot
from donation_thermometer.orchestrator import FetchOrchestrator, SinkUpdate
from donation_thermometer.pipeline import build_snapshot
from donation_thermometer.reconcile import Decision, ReconciliationGate
from donation_thermometer.report import (
    render_aggregation_report,
    render_diagnostics,
    render_thermometer,
)
from donation_thermometer.utils import utcnow_iso

app = typer.Typer(
    name="thermo",
    help="donation-thermometer — Track a published donation sheet against a goal.",
    add_completion=False,
    no_args_is_help=True,
)
console = Console()


class PolicyOption(str, Enum):
    monotonic = "monotonic"
    replace_always = "replace-always"


class FallbackOption(str, Enum):
    strict = "strict"
    positional = "positional"


def _noop(*_args: object, **_kwargs: object) -> None:
    return None


def _printer(quiet: bool) -> Callable[..., None]:
    return _noop if quiet else console.print


def _err(msg: str) -> None:
    console.print(f"[red]x[/red] {msg}")


# ── Helpers ──────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"donation-thermometer v{__version__}")
        raise typer.Exit()


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.DEBUG if verbose else logging.ERROR if quiet else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=False)],
        force=True,
    )


def _build_config(
    config_file: Path | None,
    *,
    url: str | None = None,
    goal: float | None = None,
    interval_ms: int | None = None,
    timeout_ms: int | None = None,
    max_backoff_ms: int | None = None,
    backoff_threshold: int | None = None,
    policy: PolicyOption | None = None,
    fallback: FallbackOption | None = None,
    positive_only: bool | None = None,
    cache: Path | None = None,
) -> ThermometerConfig:
    """Defaults, then ``THERMO_*`` env vars, then the config file, then flags.

    An ``--interval-ms`` above the configured backoff ceiling lifts the
    ceiling to the interval unless ``--max-backoff-ms`` is given too.
    """
    cfg = ThermometerConfig.from_env()
    if config_file:
        cfg = cfg.with_file(config_file)
    if max_backoff_ms is None and interval_ms is not None and interval_ms > cfg.max_backoff_ms:
        max_backoff_ms = interval_ms
    return cfg.with_overrides(
        source_url=url,
        goal_amount=goal,
        refresh_interval_ms=interval_ms,
        request_timeout_ms=timeout_ms,
        max_backoff_ms=max_backoff_ms,
        max_consecutive_failures_before_backoff=backoff_threshold,
        reconciliation_policy=policy.value if policy else None,
        column_fallback=fallback.value if fallback else None,
        positive_amounts_only=positive_only,
        cache_path=cache,
    )


def _require_url(cfg: ThermometerConfig) -> None:
    if not cfg.source_url:
        raise ConfigError("No source URL: pass --url, set THERMO_SOURCE_URL, or use --config")


# ── Callbacks ────────────────────────────────────────────────────


@app.callback()
def main(
    version: bool | None = typer.Option(
        None, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """donation-thermometer CLI."""


# ── parse command ────────────────────────────────────────────────


@app.command()
def parse(
    input_file: Path = typer.Option(
        ..., "--input", "-i",
        help="Path to a CSV export of the donation sheet.",
    ),
    config_file: Path | None = typer.Option(
        None, "--config", "-c",
        help="Config file with key=value lines (e.g. goal_amount=50000).",
    ),
    goal: float | None = typer.Option(None, "--goal", help="Fundraising goal."),
    fallback: FallbackOption | None = typer.Option(
        None, "--fallback",
        help="Header fallback when no keyword matches: strict or positional.",
    ),
    positive_only: bool = typer.Option(
        False, "--positive-only",
        help="Exclude amounts <= 0 from the total.",
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q",
        help="Only print the thermometer.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Run the parsing pipeline on a local CSV file."""
    _configure_logging(verbose, quiet)
    echo = _printer(quiet)
    try:
        cfg = _build_config(
            config_file, goal=goal, fallback=fallback, positive_only=positive_only or None
        )
        text = load_csv_text(input_file)
        snapshot, report = build_snapshot(
            text,
            fallback=cfg.column_fallback,  # type: ignore[arg-type]
            positive_only=cfg.positive_amounts_only,
            source_timestamp=utcnow_iso(),
        )
    except (ConfigError, FetchError, FileNotFoundError, ValueError, OSError) as exc:
        _err(str(exc))
        raise typer.Exit(code=2)

    console.print(render_thermometer(snapshot, cfg.goal_amount))
    echo(render_aggregation_report(report))


# ── check command ────────────────────────────────────────────────


@app.command()
def check(
    url: str | None = typer.Option(None, "--url", "-u", help="Published CSV URL."),
    config_file: Path | None = typer.Option(
        None, "--config", "-c",
        help="Config file with key=value lines.",
    ),
    goal: float | None = typer.Option(None, "--goal", help="Fundraising goal."),
    timeout_ms: int | None = typer.Option(
        None, "--timeout-ms", help="Request timeout in milliseconds."
    ),
    fallback: FallbackOption | None = typer.Option(
        None, "--fallback",
        help="Header fallback when no keyword matches: strict or positional.",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print the thermometer."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Check that the sheet is published, then fetch it once."""
    _configure_logging(verbose, quiet)
    echo = _printer(quiet)
    try:
        cfg = _build_config(
            config_file, url=url, goal=goal, timeout_ms=timeout_ms, fallback=fallback
        )
        _require_url(cfg)
    except ConfigError as exc:
        _err(str(exc))
        raise typer.Exit(code=2)

    ok, detail = check_source(cfg.source_url, timeout_s=cfg.request_timeout_s)
    if ok:
        echo(f"[green]ok[/green] Sheet is published (HTTP {detail})")
    else:
        echo(f"[yellow]![/yellow] Sheet may not be published correctly ({detail})")

    try:
        text = fetch_csv(cfg.source_url, timeout_s=cfg.request_timeout_s)
        tentative, report = build_snapshot(
            text,
            fallback=cfg.column_fallback,  # type: ignore[arg-type]
            positive_only=cfg.positive_amounts_only,
            source_timestamp=utcnow_iso(),
        )
    except FetchError as exc:
        _err(f"{type(exc).__name__}: {exc}")
        raise typer.Exit(code=2)

    gate = ReconciliationGate(cfg.reconciliation_policy)  # type: ignore[arg-type]
    result = gate.apply(tentative)
    console.print(render_thermometer(result.snapshot, cfg.goal_amount))
    echo(render_aggregation_report(report))


# ── watch command ────────────────────────────────────────────────


def _view(
    snapshot: DonationSnapshot,
    orchestrator: FetchOrchestrator | None,
    cfg: ThermometerConfig,
    *,
    stale: bool,
    debug: bool,
) -> RenderableType:
    panel = render_thermometer(snapshot, cfg.goal_amount, stale=stale)
    if debug and orchestrator is not None:
        return Group(panel, render_diagnostics(orchestrator.diagnostics, orchestrator.state))
    return panel


async def _watch(cfg: ThermometerConfig, *, once: bool, debug: bool) -> SinkUpdate | None:
    cache = SnapshotCache(cfg.cache_path) if cfg.cache_path else None
    cached = cache.load() if cache else None
    initial = cached or DonationSnapshot.zero()
    last: list[SinkUpdate] = []

    with Live(
        _view(initial, None, cfg, stale=cached is not None, debug=False),
        console=console,
        refresh_per_second=4,
    ) as live:
        orchestrator: FetchOrchestrator

        def _sink(update: SinkUpdate) -> None:
            last[:] = [update]
            if cache is not None and update.decision is Decision.ACCEPTED:
                cache.save(update.snapshot)
            # Keep showing the cached snapshot until a fetch succeeds.
            showing_cache = cached is not None and orchestrator.diagnostics.successes == 0
            snapshot = cached if showing_cache and cached is not None else update.snapshot
            live.update(_view(snapshot, orchestrator, cfg, stale=showing_cache, debug=debug))

        orchestrator = FetchOrchestrator(cfg, sink=_sink)
        if once:
            await orchestrator.trigger()
        else:
            task = orchestrator.start()
            try:
                await task
            finally:
                await orchestrator.stop()
    return last[0] if last else None


@app.command()
def watch(
    url: str | None = typer.Option(None, "--url", "-u", help="Published CSV URL."),
    config_file: Path | None = typer.Option(
        None, "--config", "-c",
        help="Config file with key=value lines.",
    ),
    goal: float | None = typer.Option(None, "--goal", help="Fundraising goal."),
    interval_ms: int | None = typer.Option(
        None, "--interval-ms", help="Delay between fetches in milliseconds."
    ),
    timeout_ms: int | None = typer.Option(
        None, "--timeout-ms", help="Request timeout in milliseconds."
    ),
    max_backoff_ms: int | None = typer.Option(
        None, "--max-backoff-ms", help="Upper bound on the retry delay in milliseconds."
    ),
    backoff_threshold: int | None = typer.Option(
        None, "--backoff-threshold",
        help="Retries at the normal interval before the delay starts doubling.",
    ),
    policy: PolicyOption | None = typer.Option(
        None, "--policy",
        help="Reconciliation policy: monotonic or replace-always.",
    ),
    fallback: FallbackOption | None = typer.Option(
        None, "--fallback",
        help="Header fallback when no keyword matches: strict or positional.",
    ),
    positive_only: bool = typer.Option(
        False, "--positive-only",
        help="Exclude amounts <= 0 from the total.",
    ),
    cache: Path | None = typer.Option(
        None, "--cache",
        help="JSON file for the last accepted snapshot (shown on startup).",
    ),
    once: bool = typer.Option(False, "--once", help="Run a single refresh cycle and exit."),
    debug: bool = typer.Option(False, "--debug", help="Show the diagnostics table."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Keep the thermometer up to date until interrupted."""
    _configure_logging(verbose, quiet=False)
    try:
        cfg = _build_config(
            config_file,
            url=url,
            goal=goal,
            interval_ms=interval_ms,
            timeout_ms=timeout_ms,
            max_backoff_ms=max_backoff_ms,
            backoff_threshold=backoff_threshold,
            policy=policy,
            fallback=fallback,
            positive_only=positive_only or None,
            cache=cache,
        )
        _require_url(cfg)
    except ConfigError as exc:
        _err(str(exc))
        raise typer.Exit(code=2)

    try:
        update = asyncio.run(_watch(cfg, once=once, debug=debug))
    except KeyboardInterrupt:
        console.print(Panel("[green]Stopped[/green]", border_style="green"))
        return

    if once and (update is None or not update.ok):
        _err(update.error if update is not None else "No update received")
        raise typer.Exit(code=2)
