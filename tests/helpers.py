"""Builders and in-memory gateways shared by the reconciliation tests."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any

from arbcheck.errors import TransientIOError
from arbcheck.models import ExecutionRecord, Offer, Side, Trade, TradeStatus

T0 = datetime(2026, 1, 6, 12, 0, 0, tzinfo=timezone.utc)
NOW = T0 + timedelta(minutes=10)


def make_offer(
    offer_id: str,
    *,
    id: int | None = None,
    base: str = "BTC",
    side: Side = "buy",
    base_amount: float = 1.0,
    quote_amount: float = 100.0,
    ef_price: float | None = None,
    created_at: datetime = T0,
    expires_at: datetime | None = None,
) -> Offer:
    return Offer(
        id=id,
        offer_id=offer_id,
        base=base,
        quote="BRL",
        side=side,
        base_amount=base_amount,
        quote_amount=quote_amount,
        ef_price=ef_price if ef_price is not None else quote_amount / base_amount,
        created_at=created_at,
        expires_at=expires_at or created_at + timedelta(seconds=15),
    )


def make_trade(
    trade_id: int,
    *,
    status: TradeStatus = TradeStatus.OPEN,
    base: str = "BTC",
    open_side: Side = "buy",
    base_amount: float = 1.0,
    quote_amount: float = 100.0,
    open_expires_at: datetime | None = None,
    close_expires_at: datetime | None = None,
    with_close: bool = True,
) -> Trade:
    open_offer = make_offer(
        f"open-{trade_id}",
        id=trade_id * 10 + 1,
        base=base,
        side=open_side,
        base_amount=base_amount,
        quote_amount=quote_amount,
        expires_at=open_expires_at,
    )
    close_offer = None
    if with_close:
        close_offer = make_offer(
            f"close-{trade_id}",
            id=trade_id * 10 + 2,
            base=base,
            side="sell" if open_side == "buy" else "buy",
            base_amount=base_amount,
            quote_amount=quote_amount * 1.01,
            expires_at=close_expires_at,
        )
    return Trade(id=trade_id, open_offer=open_offer, close_offer=close_offer, status=status)


def executed(offer_id: str, at: datetime = T0 + timedelta(seconds=5)) -> ExecutionRecord:
    return ExecutionRecord(exchange_offer_id=offer_id, executed_at=at)


class FakeLedger:
    """In-memory ledger recording every write as a snapshot."""

    def __init__(self, trades: list[Trade] | None = None) -> None:
        self.trades = trades or []
        self.trade_updates: list[Trade] = []
        self.offer_updates: list[Offer] = []
        self.created_offers: list[Offer] = []
        self.removed: list[int] = []
        self.failures: dict[tuple[str, int], Exception] = {}
        self.list_error: Exception | None = None
        self.calls: list[str] = []
        self._next_offer_id = 1000

    def fail(self, op: str, key: int, exc: Exception | None = None) -> None:
        self.failures[(op, key)] = exc or TransientIOError(op, "connection reset")

    def _maybe_fail(self, op: str, key: int | None) -> None:
        self.calls.append(op)
        if key is not None and (op, key) in self.failures:
            raise self.failures[(op, key)]

    async def list_pending_trades(self) -> list[Trade]:
        self.calls.append("list_pending_trades")
        if self.list_error is not None:
            raise self.list_error
        return copy.deepcopy(self.trades)

    async def update_trade(self, trade: Trade) -> None:
        self._maybe_fail("update_trade", trade.id)
        self.trade_updates.append(copy.deepcopy(trade))

    async def update_offer(self, offer: Offer) -> None:
        self._maybe_fail("update_offer", offer.id)
        self.offer_updates.append(copy.deepcopy(offer))

    async def remove_trade(self, trade: Trade) -> None:
        self._maybe_fail("remove_trade", trade.id)
        self.removed.append(trade.id)

    async def create_offer(self, offer: Offer) -> int:
        self._maybe_fail("create_offer", None)
        self._next_offer_id += 1
        created = copy.deepcopy(offer)
        created.id = self._next_offer_id
        self.created_offers.append(created)
        return self._next_offer_id

    def updates_for(self, trade_id: int) -> list[Trade]:
        return [t for t in self.trade_updates if t.id == trade_id]


class FakeExchange:
    """Exchange with a fixed history and a configurable quote price."""

    def __init__(
        self,
        history: list[ExecutionRecord] | None = None,
        quote_price: float = 101.0,
        quote_error: Exception | None = None,
    ) -> None:
        self.history = history or []
        self.quote_price = quote_price
        self.quote_error = quote_error
        self.history_error: Exception | None = None
        self.quote_calls: list[tuple[str, float, Side]] = []
        self.history_limits: list[int] = []

    async def recent_trades(self, limit: int) -> list[ExecutionRecord]:
        self.history_limits.append(limit)
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def quote(self, base: str, amount: float, side: Side) -> Offer:
        self.quote_calls.append((base, amount, side))
        if self.quote_error is not None:
            raise self.quote_error
        n = len(self.quote_calls)
        return make_offer(
            f"quote-{n}",
            base=base,
            side=side,
            base_amount=amount,
            quote_amount=amount * self.quote_price,
            ef_price=self.quote_price,
            created_at=NOW,
            expires_at=NOW + timedelta(seconds=15),
        )


class RecordingPublisher:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.messages.append((topic, copy.deepcopy(payload)))

    def events(self) -> list[tuple[str, int]]:
        return [
            (payload["event"], payload["payload"]["id"])
            for topic, payload in self.messages
            if topic == "trade.notify"
        ]

    def confirms(self) -> list[dict[str, Any]]:
        return [payload for topic, payload in self.messages if topic == "offer.confirm"]


async def no_sleep(_: float) -> None:
    return None
