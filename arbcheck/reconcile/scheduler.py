"""Drive reconciliation cycles on a self-adjusting cadence."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol

import structlog

from arbcheck.models import utc_now

if TYPE_CHECKING:
    from arbcheck.monitoring.metrics import Metrics
    from arbcheck.reconcile.engine import CycleReport


class CycleRunner(Protocol):
    async def run_cycle(self) -> CycleReport: ...


@dataclass
class RuntimeControl:
    """Administrative switch shared by the scheduler and the operator API."""

    enabled: bool = True

    def enable(self) -> bool:
        previous, self.enabled = self.enabled, True
        return previous

    def disable(self) -> bool:
        previous, self.enabled = self.enabled, False
        return previous


def next_delay_ms(check_interval_ms: float, elapsed_ms: float) -> float:
    """Wait that keeps cycle starts ``check_interval_ms`` apart, never negative."""
    return max(check_interval_ms - elapsed_ms, 0.0)


class Scheduler:
    """Run one cycle at a time, forever, until ``stop()`` is called.

    The next cycle never starts before the previous one and its delay finish,
    which is what keeps concurrent cycles from racing on the same trades.
    """

    def __init__(
        self,
        engine: CycleRunner,
        control: RuntimeControl,
        check_interval_ms: int,
        disabled_poll_ms: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.control = control
        self.check_interval_ms = check_interval_ms
        self.disabled_poll_ms = disabled_poll_ms
        self._clock = clock
        self._stop = asyncio.Event()
        self._metrics: Metrics | None = None
        self.cycle_count = 0
        # attempts, including cycles that raised
        self._sequence = 0
        self.last_report: CycleReport | None = None
        self.last_error: str | None = None
        self.last_cycle_at = None
        self.log = structlog.get_logger(__name__)

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def run_once(self) -> float:
        """Run a cycle if enabled and return the delay (seconds) before the next one."""
        if self._metrics is not None:
            self._metrics.service_enabled.set(1 if self.control.enabled else 0)
        if not self.control.enabled:
            return self.disabled_poll_ms / 1000

        started = self._clock()
        result = "ok"
        self._sequence += 1
        try:
            with structlog.contextvars.bound_contextvars(cycle=self._sequence):
                report = await self.engine.run_cycle()
            self.cycle_count += 1
            self.last_report = report
            self.last_error = None
            if report.aborted:
                result = "aborted"
        except Exception as exc:
            result = "error"
            self.last_error = str(exc)
            self.log.exception("cycle_failed", error=str(exc))
        elapsed_ms = (self._clock() - started) * 1000
        self.last_cycle_at = utc_now()

        delay_ms = next_delay_ms(self.check_interval_ms, elapsed_ms)
        if self._metrics is not None:
            self._metrics.cycles_total.labels(result=result).inc()
        self.log.info(
            "cycle_completed",
            cycle=self.cycle_count,
            result=result,
            elapsed_ms=round(elapsed_ms, 2),
            next_in_ms=round(delay_ms, 2),
        )
        return delay_ms / 1000

    async def run_forever(self) -> None:
        self.log.info(
            "scheduler_started",
            check_interval_ms=self.check_interval_ms,
            enabled=self.control.enabled,
        )
        while not self._stop.is_set():
            delay = await self.run_once()
            await self._wait(delay)
        self.log.info("scheduler_stopped", cycles=self.cycle_count)

    async def _wait(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
