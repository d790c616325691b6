"""Refresh loop with a single in-flight fetch, fixed-delay scheduling and backoff."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import requests

from donation_thermometer.config import ThermometerConfig
from donation_thermometer.errors import FetchError, TransportError
from donation_thermometer.fetch import fetch_csv
from donation_thermometer.models import (
    AggregationReport,
    DonationSnapshot,
    FetchAttemptState,
    FetchDiagnostics,
    calculate_percentage,
)
from donation_thermometer.pipeline import build_snapshot
from donation_thermometer.reconcile import Decision, ReconciliationGate
from donation_thermometer.utils import sha256_text, utcnow_iso

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[str]]


@dataclass(frozen=True)
class SinkUpdate:
    """What the presentation sink receives after every completed cycle."""

    snapshot: DonationSnapshot
    percentage: float
    decision: Decision | None = None
    report: AggregationReport | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


Sink = Callable[[SinkUpdate], None]


def compute_backoff_ms(
    failures: int, *, base_ms: int, threshold: int, max_backoff_ms: int
) -> int:
    """Delay before the next attempt after *failures* consecutive failures.

    The next attempt is retry number ``failures + 1``; retries up to
    *threshold* wait *base_ms*, later ones double each time up to
    *max_backoff_ms*.
    """
    if failures < 0:
        raise ValueError("failures must be >= 0")
    retry_number = failures + 1
    if retry_number <= threshold:
        return base_ms
    return min(max_backoff_ms, base_ms * 2 ** (retry_number - threshold))


class FetchOrchestrator:
    """Drives fetch -> parse -> reconcile cycles on a single event loop.

    The ``in_flight`` flag keeps at most one fetch pending; a trigger that
    arrives meanwhile is dropped. Every cycle takes a new generation number
    and only applies its result if that generation is still current.
    """

    def __init__(
        self,
        config: ThermometerConfig,
        *,
        gate: ReconciliationGate | None = None,
        fetcher: Fetcher | None = None,
        sink: Sink | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.gate = gate or ReconciliationGate(config.reconciliation_policy)
        self.sink = sink
        self.state = FetchAttemptState(next_interval_ms=config.refresh_interval_ms)
        self.diagnostics = FetchDiagnostics()
        self._fetcher = fetcher or self._default_fetcher(session)
        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None

    def _default_fetcher(self, session: requests.Session | None) -> Fetcher:
        if not self.config.source_url:
            raise ValueError("source_url is required when no fetcher is supplied")

        async def _fetch() -> str:
            return await asyncio.to_thread(
                fetch_csv,
                self.config.source_url,
                timeout_s=self.config.request_timeout_s,
                session=session,
            )

        return _fetch

    # ── State ────────────────────────────────────────────────────

    @property
    def accepted(self) -> DonationSnapshot:
        return self.gate.accepted

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def percentage(self, snapshot: DonationSnapshot | None = None) -> float:
        amount = (snapshot or self.gate.accepted).total_amount
        return calculate_percentage(amount, self.config.goal_amount)

    def reset(self) -> None:
        """Forget the accepted snapshot and abandon any pending fetch."""
        self.state.generation += 1
        self.state.in_flight = False
        self.state.consecutive_failures = 0
        self.state.next_interval_ms = self.config.refresh_interval_ms
        self.gate.reset()

    # ── One cycle ────────────────────────────────────────────────

    async def trigger(self) -> SinkUpdate | None:
        """Run one fetch cycle.

        Returns the update handed to the sink, or ``None`` when the trigger
        was ignored (fetch already in flight) or the result went stale.
        """
        if self.state.in_flight:
            logger.debug("Fetch already in flight; trigger ignored")
            return None

        self.state.in_flight = True
        self.state.generation += 1
        generation = self.state.generation
        self.diagnostics.attempts += 1

        try:
            text = await asyncio.wait_for(
                self._fetcher(), timeout=self.config.request_timeout_s
            )
            if generation != self.state.generation:
                return self._drop_stale(generation)
            update = self._on_payload(text)
        except asyncio.TimeoutError:
            if generation != self.state.generation:
                return self._drop_stale(generation)
            error = TransportError(
                f"Request timed out after {self.config.request_timeout_s:g}s"
            )
            update = self._on_failure(error)
        except FetchError as exc:
            if generation != self.state.generation:
                return self._drop_stale(generation)
            update = self._on_failure(exc)
        finally:
            if generation == self.state.generation:
                self.state.in_flight = False

        if self.sink is not None:
            self.sink(update)
        return update

    def _drop_stale(self, generation: int) -> None:
        self.diagnostics.stale_responses += 1
        logger.info(
            "Discarding result of fetch %d; generation %d is current",
            generation,
            self.state.generation,
        )
        return None

    def _on_payload(self, text: str) -> SinkUpdate:
        try:
            tentative, report = build_snapshot(
                text,
                fallback=self.config.column_fallback,  # type: ignore[arg-type]
                positive_only=self.config.positive_amounts_only,
                source_timestamp=utcnow_iso(),
            )
        except FetchError as exc:
            return self._on_failure(exc)

        for warning in report.warnings:
            logger.debug("Aggregation: %s", warning)

        result = self.gate.apply(tentative)
        self.state.consecutive_failures = 0
        self.state.next_interval_ms = self.config.refresh_interval_ms
        self.diagnostics.successes += 1
        self.diagnostics.last_success_at = utcnow_iso()
        self.diagnostics.last_payload_sha256 = sha256_text(text)
        if not result.accepted:
            self.diagnostics.rejections += 1

        snapshot = result.snapshot
        percentage = self.percentage(snapshot)
        if result.accepted:
            logger.info(
                "Data refreshed. Total: %.2f, Donors: %d, Percentage: %.2f%%",
                snapshot.total_amount,
                snapshot.donor_count,
                percentage,
            )
        return SinkUpdate(
            snapshot=snapshot,
            percentage=percentage,
            decision=result.decision,
            report=report,
        )

    def _on_failure(self, exc: FetchError) -> SinkUpdate:
        self.state.consecutive_failures += 1
        self.state.next_interval_ms = compute_backoff_ms(
            self.state.consecutive_failures,
            base_ms=self.config.refresh_interval_ms,
            threshold=self.config.max_consecutive_failures_before_backoff,
            max_backoff_ms=self.config.max_backoff_ms,
        )
        self.diagnostics.failures += 1
        self.diagnostics.last_error = f"{type(exc).__name__}: {exc}"
        self.diagnostics.last_error_at = utcnow_iso()
        logger.warning(
            "Fetch failed (%d in a row), retrying in %d ms: %s",
            self.state.consecutive_failures,
            self.state.next_interval_ms,
            self.diagnostics.last_error,
        )
        snapshot = self.gate.accepted
        return SinkUpdate(
            snapshot=snapshot,
            percentage=self.percentage(snapshot),
            error=self.diagnostics.last_error,
        )

    # ── Timer ────────────────────────────────────────────────────

    async def run_forever(self) -> None:
        """Fixed-delay loop: the next fetch starts one interval after the last ends."""
        self._wake = asyncio.Event()
        while True:
            await self.trigger()
            await self._sleep(self.state.next_interval_ms / 1000)

    async def _sleep(self, seconds: float) -> None:
        assert self._wake is not None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        self._wake.clear()

    def request_refresh(self) -> None:
        """Cut the current wait short and fetch now."""
        if self._wake is not None:
            self._wake.set()

    def start(self) -> asyncio.Task[None]:
        """Start the refresh loop on the running event loop."""
        if self.running:
            raise RuntimeError("Refresh loop already running")
        self._task = asyncio.get_running_loop().create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        """Cancel the refresh loop and abandon any pending fetch."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.state.generation += 1
        self.state.in_flight = False
