from __future__ import annotations

import asyncio

import pytest

from donation_thermometer.config import ThermometerConfig
from donation_thermometer.errors import TransportError
from donation_thermometer.models import DonationSnapshot
from donation_thermometer.orchestrator import (
    FetchOrchestrator,
    SinkUpdate,
    compute_backoff_ms,
)
from donation_thermometer.reconcile import Decision

CSV = "Timestamp,Donation Amount,Donor Name\nt,$50,Al\nt,75.50,Bo\n"


def _config(**overrides: object) -> ThermometerConfig:
    values: dict[str, object] = {
        "refresh_interval_ms": 5_000,
        "request_timeout_ms": 1_000,
        "max_consecutive_failures_before_backoff": 3,
        "max_backoff_ms": 30_000,
    }
    values.update(overrides)
    return ThermometerConfig(**values)  # type: ignore[arg-type]


def _returning(*payloads: str | Exception):
    queue = list(payloads)

    async def _fetch() -> str:
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return _fetch


# ── Backoff ─────────────────────────────────────────────────────


@pytest.mark.parametrize(
    ("failures", "expected"),
    [(0, 5_000), (1, 5_000), (2, 5_000), (3, 10_000), (4, 20_000), (5, 30_000), (9, 30_000)],
)
def test_compute_backoff_ms(failures: int, expected: int) -> None:
    assert (
        compute_backoff_ms(failures, base_ms=5_000, threshold=3, max_backoff_ms=30_000)
        == expected
    )


def test_compute_backoff_ms_rejects_negative_failures() -> None:
    with pytest.raises(ValueError):
        compute_backoff_ms(-1, base_ms=1, threshold=1, max_backoff_ms=1)


# ── Cycles ──────────────────────────────────────────────────────


def test_successful_cycle_updates_snapshot_and_sink() -> None:
    updates: list[SinkUpdate] = []
    orch = FetchOrchestrator(
        _config(goal_amount=1_000), fetcher=_returning(CSV), sink=updates.append
    )

    update = asyncio.run(orch.trigger())

    assert update is not None and update.ok
    assert update.decision is Decision.ACCEPTED
    assert update.percentage == pytest.approx(12.55)
    assert updates == [update]
    assert orch.accepted.same_values(DonationSnapshot(125.5, 2, ["Al", "Bo"]))
    assert orch.state.in_flight is False
    assert orch.state.next_interval_ms == 5_000
    assert orch.diagnostics.successes == 1
    assert len(orch.diagnostics.last_payload_sha256) == 64


def test_three_transport_errors_back_off_and_keep_snapshot() -> None:
    orch = FetchOrchestrator(
        _config(),
        fetcher=_returning(
            CSV,
            TransportError("HTTP error: 503"),
            TransportError("HTTP error: 503"),
            TransportError("HTTP error: 503"),
        ),
    )

    async def scenario() -> list[int]:
        await orch.trigger()
        intervals = []
        for _ in range(3):
            update = await orch.trigger()
            assert update is not None and not update.ok
            assert update.snapshot.total_amount == 125.5
            intervals.append(orch.state.next_interval_ms)
        return intervals

    intervals = asyncio.run(scenario())

    assert intervals == [5_000, 5_000, 10_000]
    assert orch.state.consecutive_failures == 3
    assert orch.accepted.same_values(DonationSnapshot(125.5, 2, ["Al", "Bo"]))
    assert orch.diagnostics.failures == 3
    assert "TransportError: HTTP error: 503" == orch.diagnostics.last_error


def test_success_resets_failure_counter() -> None:
    orch = FetchOrchestrator(
        _config(max_consecutive_failures_before_backoff=0),
        fetcher=_returning(TransportError("down"), CSV),
    )

    async def scenario() -> None:
        await orch.trigger()
        assert orch.state.next_interval_ms == 20_000
        await orch.trigger()

    asyncio.run(scenario())

    assert orch.state.consecutive_failures == 0
    assert orch.state.next_interval_ms == 5_000


def test_schema_and_empty_payload_count_as_failures() -> None:
    orch = FetchOrchestrator(_config(), fetcher=_returning("x,y\n1,2\n", "   "))

    async def scenario() -> None:
        await orch.trigger()
        assert orch.diagnostics.last_error.startswith("SchemaError")
        await orch.trigger()

    asyncio.run(scenario())

    assert orch.diagnostics.last_error.startswith("EmptyPayloadError")
    assert orch.state.consecutive_failures == 2
    assert orch.accepted == DonationSnapshot.zero()


def test_timeout_is_a_transport_failure() -> None:
    async def _hang() -> str:
        await asyncio.sleep(10)
        return CSV

    orch = FetchOrchestrator(_config(request_timeout_ms=20), fetcher=_hang)

    update = asyncio.run(orch.trigger())

    assert update is not None
    assert "timed out" in update.error
    assert orch.state.consecutive_failures == 1
    assert orch.state.in_flight is False


def test_monotonic_rejection_is_reported() -> None:
    orch = FetchOrchestrator(
        _config(), fetcher=_returning(CSV, "Name,Amount\nAl,5\n")
    )

    async def scenario() -> SinkUpdate | None:
        await orch.trigger()
        return await orch.trigger()

    update = asyncio.run(scenario())

    assert update is not None and update.ok
    assert update.decision is Decision.REJECTED
    assert orch.diagnostics.rejections == 1
    assert orch.accepted.total_amount == 125.5


def test_overflowing_amount_does_not_block_later_totals() -> None:
    orch = FetchOrchestrator(
        _config(),
        fetcher=_returning(
            "Amount,Name\n" + "9" * 400 + ",Al\n",
            "Amount,Name\n99,Al\n26,Bo\n",
        ),
    )

    async def scenario() -> tuple[SinkUpdate | None, SinkUpdate | None]:
        return await orch.trigger(), await orch.trigger()

    first, second = asyncio.run(scenario())

    assert first is not None and first.ok
    assert first.snapshot.total_amount == 0.0
    assert first.report is not None and first.report.unparsed_amounts == 1
    assert second is not None and second.decision is Decision.ACCEPTED
    assert orch.accepted.total_amount == 125.0
    assert orch.accepted.donor_count == 2


def test_same_payload_twice_is_idempotent() -> None:
    orch = FetchOrchestrator(_config(), fetcher=_returning(CSV, CSV))

    async def scenario() -> tuple[DonationSnapshot, DonationSnapshot]:
        await orch.trigger()
        first = orch.accepted
        await orch.trigger()
        return first, orch.accepted

    first, second = asyncio.run(scenario())

    assert first.same_values(second)
    assert second.total_amount == 125.5
    assert second.donor_count == 2


def test_trigger_while_in_flight_is_ignored() -> None:
    async def scenario() -> tuple[SinkUpdate | None, SinkUpdate | None, int]:
        gate = asyncio.Event()
        calls = 0

        async def _slow() -> str:
            nonlocal calls
            calls += 1
            await gate.wait()
            return CSV

        orch = FetchOrchestrator(_config(), fetcher=_slow)
        first = asyncio.create_task(orch.trigger())
        await asyncio.sleep(0.01)
        ignored = await orch.trigger()
        gate.set()
        return await first, ignored, calls

    first, ignored, calls = asyncio.run(scenario())

    assert ignored is None
    assert first is not None and first.ok
    assert calls == 1


def test_late_response_after_reset_is_discarded() -> None:
    async def scenario() -> FetchOrchestrator:
        started = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def _fetch() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                started.set()
                await release.wait()
                return "Name,Amount\nLate,999\n"
            return "Name,Amount\nFresh,10\n"

        orch = FetchOrchestrator(_config(), fetcher=_fetch)
        late = asyncio.create_task(orch.trigger())
        await asyncio.wait_for(started.wait(), timeout=1)

        orch.reset()
        fresh = await orch.trigger()
        assert fresh is not None and fresh.decision is Decision.ACCEPTED

        release.set()
        assert await late is None
        return orch

    orch = asyncio.run(scenario())

    assert orch.diagnostics.stale_responses == 1
    assert orch.accepted.total_amount == 10.0
    assert orch.accepted.donor_names == ["Fresh"]
    assert orch.state.in_flight is False


def test_default_fetcher_requires_source_url() -> None:
    with pytest.raises(ValueError, match="source_url"):
        FetchOrchestrator(_config())


def test_default_fetcher_runs_fetch_csv_in_thread(monkeypatch: pytest.MonkeyPatch) -> None:
    import donation_thermometer.orchestrator as orch_mod

    seen: dict[str, object] = {}

    def _fake_fetch_csv(url: str, *, timeout_s: float, session: object = None) -> str:
        seen.update(url=url, timeout_s=timeout_s)
        return CSV

    monkeypatch.setattr(orch_mod, "fetch_csv", _fake_fetch_csv)
    orch = FetchOrchestrator(_config(source_url="https://example.com/pub?output=csv"))

    update = asyncio.run(orch.trigger())

    assert update is not None and update.ok
    assert seen == {"url": "https://example.com/pub?output=csv", "timeout_s": 1.0}


# ── Timer ───────────────────────────────────────────────────────


def test_loop_refreshes_on_request_and_stops_cleanly() -> None:
    async def scenario() -> tuple[int, bool]:
        called = asyncio.Event()
        calls = 0

        async def _fetch() -> str:
            nonlocal calls
            calls += 1
            called.set()
            return CSV

        orch = FetchOrchestrator(
            _config(refresh_interval_ms=60_000, max_backoff_ms=60_000), fetcher=_fetch
        )
        orch.start()
        await asyncio.wait_for(called.wait(), timeout=1)
        called.clear()

        orch.request_refresh()
        await asyncio.wait_for(called.wait(), timeout=1)

        await orch.stop()
        return calls, orch.running

    calls, running = asyncio.run(scenario())

    assert calls == 2
    assert running is False


def test_start_twice_raises() -> None:
    async def scenario() -> None:
        orch = FetchOrchestrator(_config(), fetcher=_returning(CSV, CSV, CSV))
        orch.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                orch.start()
        finally:
            await orch.stop()

    asyncio.run(scenario())
