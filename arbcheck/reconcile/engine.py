"""One reconciliation pass over every pending trade."""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from arbcheck.config.settings import AppConfig
from arbcheck.errors import ArbCheckError, InconsistentStateError, RejectedQuoteError
from arbcheck.gateways.base import ExchangeGateway, LedgerGateway, NotificationPublisher
from arbcheck.models import Offer, Side, Trade, TradeStatus, format_timestamp, utc_now
from arbcheck.reconcile.classifier import (
    Classification,
    GraceWindows,
    Outcome,
    classify,
    index_executions,
)
from arbcheck.reconcile.policy import ClosePolicy

if TYPE_CHECKING:
    from arbcheck.monitoring.metrics import Metrics


class TradeEvent(str, Enum):
    TRADE_BROKEN = "trade-broken"
    TRADE_CLOSED = "trade-closed"


@dataclass
class CycleReport:
    """What one cycle did; ``elapsed_ms`` is the cycle latency."""

    started_at: datetime
    processed: int = 0
    outcomes: Counter = field(default_factory=Counter)
    failures: int = 0
    close_requests: int = 0
    elapsed_ms: float = 0.0
    aborted: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": format_timestamp(self.started_at),
            "processed": self.processed,
            "outcomes": dict(self.outcomes),
            "failures": self.failures,
            "close_requests": self.close_requests,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "aborted": self.aborted,
        }


@dataclass(frozen=True)
class SiblingGroup:
    """Broken trades closed together with a single aggregated quote."""

    base: str
    close_side: Side
    trades: list[Trade]

    @property
    def total_base_amount(self) -> float:
        return sum(t.open_offer.base_amount for t in self.trades)

    @property
    def total_quote_amount(self) -> float:
        return sum(t.open_offer.quote_amount for t in self.trades)

    @property
    def break_even_price(self) -> float:
        total_base = self.total_base_amount
        if total_base <= 0:
            raise InconsistentStateError(
                f"sibling group {self.base}/{self.close_side} has no base amount"
            )
        return self.total_quote_amount / total_base


def group_siblings(trades: list[Trade]) -> list[SiblingGroup]:
    """Group broken trades by base asset and close side, keeping read order."""
    groups: dict[tuple[str, Side], list[Trade]] = {}
    for trade in trades:
        groups.setdefault((trade.open_offer.base, trade.close_side), []).append(trade)
    return [SiblingGroup(base, side, members) for (base, side), members in groups.items()]


class ReconciliationEngine:
    """Reconcile the local ledger against exchange history, one cycle per call."""

    def __init__(
        self,
        ledger: LedgerGateway,
        exchange: ExchangeGateway,
        publisher: NotificationPublisher,
        config: AppConfig,
        notify_topic: str = "trade.notify",
        confirm_topic: str = "offer.confirm",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.exchange = exchange
        self.publisher = publisher
        self.config = config
        self.notify_topic = notify_topic
        self.confirm_topic = confirm_topic
        self.policy = ClosePolicy(config.take_profit, config.stop_loss)
        self.windows = GraceWindows.from_ms(config.expire_after_ms, config.remove_after_ms)
        self._clock = clock
        self._metrics: Metrics | None = None
        self.log = structlog.get_logger(__name__)

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    async def run_cycle(self) -> CycleReport:
        """Run one pass. Never raises for gateway or data errors."""
        start = time.perf_counter()
        report = CycleReport(started_at=self._clock())
        try:
            await self._reconcile(report)
        finally:
            report.elapsed_ms = (time.perf_counter() - start) * 1000
            self._record(report)
        return report

    async def _reconcile(self, report: CycleReport) -> None:
        try:
            trades = await self.ledger.list_pending_trades()
        except Exception as exc:
            report.aborted = "list_pending_trades"
            self._log_failure("pending_trades_unavailable", exc)
            return
        if self._metrics is not None:
            self._metrics.pending_trades.set(len(trades))
        if not trades:
            return

        try:
            history = await self.exchange.recent_trades(self.config.history_size)
        except Exception as exc:
            report.aborted = "recent_trades"
            self._log_failure("trade_history_unavailable", exc, pending=len(trades))
            return

        executions = index_executions(history)
        now = self._clock()
        report.processed = len(trades)

        jobs: list[Awaitable[None]] = []
        broken: list[Trade] = []
        for trade in trades:
            try:
                result = classify(trade, executions, now, self.windows)
            except Exception as exc:
                report.failures += 1
                self._log_failure("trade_classify_failed", exc, trade_ids=[trade.id])
                continue
            report.outcomes[result.outcome.value] += 1
            if result.outcome == Outcome.BROKEN:
                if result.open_execution is not None and trade.open_offer.confirmed_at is None:
                    trade.open_offer.confirmed_at = result.open_execution.executed_at
                broken.append(trade)
                continue
            jobs.append(
                self._guarded(report, [trade.id], lambda t=trade, r=result: self._act(t, r, now))
            )

        for group in group_siblings(broken):
            jobs.append(
                self._guarded(
                    report,
                    [t.id for t in group.trades],
                    lambda g=group: self._resolve_group(g, now, report),
                )
            )

        await asyncio.gather(*jobs)

    async def _guarded(
        self,
        report: CycleReport,
        trade_ids: list[int],
        action: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await action()
        except Exception as exc:
            report.failures += 1
            if self._metrics is not None:
                self._metrics.trade_failures_total.labels(error=type(exc).__name__).inc()
            self._log_failure("trade_reconcile_failed", exc, trade_ids=trade_ids)

    async def _act(self, trade: Trade, result: Classification, now: datetime) -> None:
        if result.outcome == Outcome.CLOSED:
            await self._close(trade, result, now)
        elif result.outcome == Outcome.MISSED:
            await self._abandon(trade)
        else:
            trade.checked_at = now
            await self.ledger.update_trade(trade)

    async def _close(self, trade: Trade, result: Classification, now: datetime) -> None:
        close_offer = trade.close_offer
        if close_offer is None or result.close_execution is None:
            raise InconsistentStateError("closed trade without a close execution", trade.id)
        _require_id(close_offer, trade)

        # An open fill already out of the history window was stamped when the trade broke.
        if result.open_execution is not None:
            _require_id(trade.open_offer, trade)
            trade.open_offer.confirmed_at = result.open_execution.executed_at
            await self.ledger.update_offer(trade.open_offer)
        close_offer.confirmed_at = result.close_execution.executed_at
        await self.ledger.update_offer(close_offer)

        trade.status = TradeStatus.CLOSED
        trade.checked_at = now
        await self.ledger.update_trade(trade)
        self.log.info(
            "trade_closed",
            trade_id=trade.id,
            base=trade.open_offer.base,
            open_price=trade.open_offer.ef_price,
            close_price=close_offer.ef_price,
            has_siblings=trade.has_siblings,
        )
        await self._notify(trade, TradeEvent.TRADE_CLOSED)

    async def _abandon(self, trade: Trade) -> None:
        await self.ledger.remove_trade(trade)
        trade.status = TradeStatus.MISSED
        self.log.info(
            "trade_missed",
            trade_id=trade.id,
            offer_id=trade.open_offer.offer_id,
            expired_at=format_timestamp(trade.open_offer.expires_at),
        )

    async def _resolve_group(self, group: SiblingGroup, now: datetime, report: CycleReport) -> None:
        for trade in group.trades:
            if trade.status == TradeStatus.OPEN:
                if trade.open_offer.confirmed_at is not None:
                    _require_id(trade.open_offer, trade)
                    await self.ledger.update_offer(trade.open_offer)
                trade.status = TradeStatus.BROKEN
                trade.checked_at = now
                await self.ledger.update_trade(trade)
                self.log.warning("trade_broken", trade_id=trade.id, base=trade.open_offer.base)
                await self._notify(trade, TradeEvent.TRADE_BROKEN)

        break_even = group.break_even_price
        amount = group.total_base_amount
        try:
            quoted = await self.exchange.quote(group.base, amount, group.close_side)
        except RejectedQuoteError as exc:
            self._count_close("rejected")
            self.log.warning(
                "close_quote_rejected",
                base=group.base,
                side=group.close_side,
                amount=amount,
                trade_ids=[t.id for t in group.trades],
                error=str(exc),
            )
            return

        report.close_requests += 1
        if not self.policy.allows(break_even, quoted.ef_price, group.close_side):
            self._count_close("deferred")
            self.log.info(
                "close_deferred",
                base=group.base,
                side=group.close_side,
                break_even=break_even,
                quoted_price=quoted.ef_price,
                trades=len(group.trades),
            )
            return

        has_siblings = len(group.trades) > 1
        for trade in group.trades:
            await self._attach_close_offer(trade, quoted)
            trade.has_siblings = has_siblings
            trade.checked_at = now
            await self.ledger.update_trade(trade)

        self._count_close("accepted")
        self.log.info(
            "close_requested",
            base=group.base,
            side=group.close_side,
            amount=amount,
            break_even=break_even,
            quoted_price=quoted.ef_price,
            offer_id=quoted.offer_id,
            trade_ids=[t.id for t in group.trades],
        )
        await self._publish(self.confirm_topic, {"offers": [quoted.to_dict()]})

    async def _attach_close_offer(self, trade: Trade, quoted: Offer) -> None:
        if trade.close_offer is not None and trade.close_offer.id is not None:
            trade.close_offer.apply_quote(quoted)
            await self.ledger.update_offer(trade.close_offer)
            return
        offer = dataclasses.replace(quoted, id=None, confirmed_at=None)
        offer.id = await self.ledger.create_offer(offer)
        trade.close_offer = offer

    async def _notify(self, trade: Trade, event: TradeEvent) -> None:
        await self._publish(self.notify_topic, {"event": event.value, "payload": trade.to_dict()})

    async def _publish(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            await self.publisher.publish(topic, payload)
        except Exception as exc:
            self.log.error("notification_failed", topic=topic, error=str(exc))

    def _count_close(self, decision: str) -> None:
        if self._metrics is not None:
            self._metrics.close_requests_total.labels(decision=decision).inc()

    def _log_failure(self, event: str, exc: Exception, **fields: Any) -> None:
        if isinstance(exc, ArbCheckError):
            self.log.warning(event, error=str(exc), error_type=type(exc).__name__, **fields)
        else:
            self.log.exception(event, error=str(exc), **fields)

    def _record(self, report: CycleReport) -> None:
        self.log.info("cycle_reconciled", **report.to_dict())
        if self._metrics is None:
            return
        self._metrics.cycle_latency_ms.observe(report.elapsed_ms)
        for outcome, count in report.outcomes.items():
            self._metrics.trade_outcomes_total.labels(outcome=outcome).inc(count)


def _require_id(offer: Offer, trade: Trade) -> None:
    if offer.id is None:
        raise InconsistentStateError(
            f"offer {offer.offer_id} has no ledger id", trade_id=trade.id
        )
