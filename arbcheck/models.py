"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

Side = Literal["buy", "sell"]


class TradeStatus(str, Enum):
    """Lifecycle status persisted on a trade."""

    OPEN = "open"
    BROKEN = "broken"
    CLOSED = "closed"
    MISSED = "missed"


PENDING_STATUSES = (TradeStatus.OPEN, TradeStatus.BROKEN)


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime | None) -> str | None:
    """Format timestamp as ISO-8601 with Z suffix."""
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` or offset suffix) into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def opposite_side(side: Side) -> Side:
    return "sell" if side == "buy" else "buy"


@dataclass
class Offer:
    """A priced, time-bounded trade intent quoted by the exchange."""

    offer_id: str
    base: str
    quote: str
    side: Side
    base_amount: float
    quote_amount: float
    ef_price: float
    created_at: datetime
    expires_at: datetime
    id: int | None = None
    is_quote: bool = False
    api_key_id: str | None = None
    confirmed_at: datetime | None = None

    def apply_quote(self, quoted: Offer) -> None:
        """Copy a fresh exchange quote onto this offer, keeping the ledger id."""
        self.offer_id = quoted.offer_id
        self.base = quoted.base
        self.quote = quoted.quote
        self.side = quoted.side
        self.base_amount = quoted.base_amount
        self.quote_amount = quoted.quote_amount
        self.ef_price = quoted.ef_price
        self.created_at = quoted.created_at
        self.expires_at = quoted.expires_at
        self.is_quote = quoted.is_quote
        self.api_key_id = quoted.api_key_id
        self.confirmed_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "offerId": self.offer_id,
            "base": self.base,
            "quote": self.quote,
            "op": self.side,
            "baseAmount": str(self.base_amount),
            "quoteAmount": str(self.quote_amount),
            "efPrice": str(self.ef_price),
            "isQuote": self.is_quote,
            "apiKeyId": self.api_key_id,
            "createdAt": format_timestamp(self.created_at),
            "expiresAt": format_timestamp(self.expires_at),
            "confirmedAt": format_timestamp(self.confirmed_at),
        }


@dataclass
class Trade:
    """Paired open/close position tracked through reconciliation."""

    id: int
    open_offer: Offer
    close_offer: Offer | None = None
    status: TradeStatus = TradeStatus.OPEN
    checked_at: datetime | None = None
    has_siblings: bool = False

    @property
    def close_side(self) -> Side:
        return opposite_side(self.open_offer.side)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "checkedAt": format_timestamp(self.checked_at),
            "hasSiblings": self.has_siblings,
            "openOffer": self.open_offer.to_dict(),
            "closeOffer": self.close_offer.to_dict() if self.close_offer else None,
        }


@dataclass(frozen=True)
class ExecutionRecord:
    """An executed offer as reported by the exchange trade history."""

    exchange_offer_id: str
    executed_at: datetime
    extra: dict[str, Any] = field(default_factory=dict, compare=False)
