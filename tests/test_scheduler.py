import asyncio
from datetime import datetime, timezone

import pytest

from arbcheck.monitoring.metrics import Metrics
from arbcheck.reconcile.engine import CycleReport
from arbcheck.reconcile.scheduler import RuntimeControl, Scheduler, next_delay_ms


class FakeEngine:
    def __init__(self, error: Exception | None = None, aborted: str | None = None) -> None:
        self.calls = 0
        self.error = error
        self.aborted = aborted

    async def run_cycle(self) -> CycleReport:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return CycleReport(started_at=datetime.now(timezone.utc), aborted=self.aborted)


class SteppingClock:
    """Returns the queued readings in order, seconds."""

    def __init__(self, *readings: float) -> None:
        self.readings = list(readings)

    def __call__(self) -> float:
        return self.readings.pop(0)


def test_next_delay_subtracts_elapsed() -> None:
    assert next_delay_ms(15_000, 4_000) == 11_000
    assert next_delay_ms(15_000, 15_000) == 0
    assert next_delay_ms(15_000, 20_000) == 0


def test_runtime_control_reports_previous_state() -> None:
    control = RuntimeControl()

    assert control.disable() is True
    assert control.disable() is False
    assert control.enable() is False
    assert control.enabled is True


@pytest.mark.asyncio
async def test_delay_accounts_for_cycle_duration() -> None:
    engine = FakeEngine()
    scheduler = Scheduler(engine, RuntimeControl(), 15_000, clock=SteppingClock(100.0, 104.0))

    delay = await scheduler.run_once()

    assert delay == pytest.approx(11.0)
    assert scheduler.cycle_count == 1
    assert scheduler.last_report is not None


@pytest.mark.asyncio
async def test_overrunning_cycle_starts_next_immediately() -> None:
    scheduler = Scheduler(
        FakeEngine(), RuntimeControl(), 15_000, clock=SteppingClock(0.0, 20.0)
    )

    assert await scheduler.run_once() == 0


@pytest.mark.asyncio
async def test_disabled_service_polls_without_running() -> None:
    engine = FakeEngine()
    scheduler = Scheduler(engine, RuntimeControl(enabled=False), 15_000, disabled_poll_ms=5_000)

    delay = await scheduler.run_once()

    assert delay == 5.0
    assert engine.calls == 0
    assert scheduler.cycle_count == 0


@pytest.mark.asyncio
async def test_engine_exception_does_not_escape() -> None:
    engine = FakeEngine(error=RuntimeError("boom"))
    scheduler = Scheduler(engine, RuntimeControl(), 15_000, clock=SteppingClock(0.0, 1.0))

    delay = await scheduler.run_once()

    assert delay == pytest.approx(14.0)
    assert scheduler.cycle_count == 0
    assert scheduler.last_error == "boom"
    assert scheduler.last_cycle_at is not None


@pytest.mark.asyncio
async def test_cycle_results_counted() -> None:
    metrics = Metrics()
    scheduler = Scheduler(
        FakeEngine(aborted="list_pending_trades"),
        RuntimeControl(),
        15_000,
        clock=SteppingClock(0.0, 0.5),
    )
    scheduler.set_metrics(metrics)

    await scheduler.run_once()

    assert metrics.registry.get_sample_value("reconciliation_cycles_total", {"result": "aborted"}) == 1
    assert metrics.registry.get_sample_value("service_enabled") == 1


@pytest.mark.asyncio
async def test_run_forever_stops_on_request() -> None:
    engine = FakeEngine()
    scheduler = Scheduler(engine, RuntimeControl(), check_interval_ms=1_000)

    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert engine.calls == 1
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_cycles_never_overlap() -> None:
    active = 0
    peak = 0

    class SlowEngine:
        async def run_cycle(self) -> CycleReport:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return CycleReport(started_at=datetime.now(timezone.utc))

    scheduler = Scheduler(SlowEngine(), RuntimeControl(), check_interval_ms=0)
    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.1)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert peak == 1
    assert scheduler.cycle_count >= 2
