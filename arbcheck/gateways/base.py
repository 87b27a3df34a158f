"""Contracts for the collaborators the reconciliation engine consumes."""

from __future__ import annotations

from typing import Any, Protocol

from arbcheck.models import ExecutionRecord, Offer, Side, Trade


class LedgerGateway(Protocol):
    """Trade ledger. Every write is idempotent by primary key."""

    async def list_pending_trades(self) -> list[Trade]: ...

    async def update_trade(self, trade: Trade) -> None: ...

    async def update_offer(self, offer: Offer) -> None: ...

    async def remove_trade(self, trade: Trade) -> None: ...

    async def create_offer(self, offer: Offer) -> int: ...


class ExchangeGateway(Protocol):
    """Read side of the exchange: fill history and fresh quotes."""

    async def recent_trades(self, limit: int) -> list[ExecutionRecord]: ...

    async def quote(self, base: str, amount: float, side: Side) -> Offer: ...


class NotificationPublisher(Protocol):
    """Fire-and-forget, at-least-once topic publisher."""

    async def publish(self, topic: str, payload: dict[str, Any]) -> None: ...
