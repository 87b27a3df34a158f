"""Ledger and exchange gateways wrapped with rate limiting and retry."""

from __future__ import annotations

from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from arbcheck.gateways.base import ExchangeGateway, LedgerGateway
from arbcheck.gateways.limiter import RateLimiter
from arbcheck.gateways.retry import RetryPolicy, call_with_retry
from arbcheck.models import ExecutionRecord, Offer, Side, Trade

if TYPE_CHECKING:
    from arbcheck.monitoring.metrics import Metrics

T = TypeVar("T")


class GatewayGuard:
    """Apply one limiter and one retry policy to every call of an upstream.

    Each attempt re-enters the limiter, so retries are paced like first calls.
    """

    def __init__(
        self,
        name: str,
        limiter: RateLimiter,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.name = name
        self.limiter = limiter
        self.policy = policy
        self._sleep = sleep
        self._metrics: Metrics | None = None
        self.retries = 0

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    async def call(self, op: str, operation: Callable[[], Awaitable[T]]) -> T:
        op_name = f"{self.name}.{op}"

        def _on_retry(attempt: int, exc: Exception, delay_ms: int) -> None:
            self.retries += 1
            if self._metrics is not None:
                self._metrics.gateway_retries_total.labels(op=op_name).inc()

        return await call_with_retry(
            op_name,
            lambda: self.limiter.run(operation),
            self.policy,
            sleep=self._sleep,
            on_retry=_on_retry,
        )


class ResilientLedger:
    """LedgerGateway that paces and retries every call."""

    def __init__(self, inner: LedgerGateway, guard: GatewayGuard) -> None:
        self._inner = inner
        self.guard = guard

    async def list_pending_trades(self) -> list[Trade]:
        return await self.guard.call("list_pending_trades", self._inner.list_pending_trades)

    async def update_trade(self, trade: Trade) -> None:
        await self.guard.call("update_trade", lambda: self._inner.update_trade(trade))

    async def update_offer(self, offer: Offer) -> None:
        await self.guard.call("update_offer", lambda: self._inner.update_offer(offer))

    async def remove_trade(self, trade: Trade) -> None:
        await self.guard.call("remove_trade", lambda: self._inner.remove_trade(trade))

    async def create_offer(self, offer: Offer) -> int:
        return await self.guard.call("create_offer", lambda: self._inner.create_offer(offer))


class ResilientExchange:
    """ExchangeGateway that paces and retries every call."""

    def __init__(self, inner: ExchangeGateway, guard: GatewayGuard) -> None:
        self._inner = inner
        self.guard = guard

    async def recent_trades(self, limit: int) -> list[ExecutionRecord]:
        return await self.guard.call("recent_trades", lambda: self._inner.recent_trades(limit))

    async def quote(self, base: str, amount: float, side: Side) -> Offer:
        return await self.guard.call("quote", lambda: self._inner.quote(base, amount, side))
