"""Classify a pending trade against the exchange trade history.

Decision table, first match wins:

    open leg | close exec | condition                                     | outcome
    ---------+------------+-----------------------------------------------+--------
    filled   | present    |                                               | CLOSED
    unfilled | any        | now - open.expires_at > remove_after          | MISSED
    filled   | absent     | no close offer or                             | BROKEN
             |            | now - close.expires_at > expire_after         |
    otherwise|            |                                               | PENDING

The open leg counts as filled when its execution is in the history window, when
the ledger already recorded its ``confirmed_at``, or when the trade has left
``open``. History only covers the last ``history_size`` fills, so a broken trade
held across many cycles is never demoted to MISSED once its fill scrolls out.

A broken trade whose replacement close offer is still inside its window falls
through to PENDING, so an accepted close is waited on instead of re-quoted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Mapping

from arbcheck.models import ExecutionRecord, Offer, Trade, TradeStatus


class Outcome(str, Enum):
    PENDING = "pending"
    MISSED = "missed"
    BROKEN = "broken"
    CLOSED = "closed"


@dataclass(frozen=True)
class GraceWindows:
    """How long past ``expires_at`` an offer may stay unexecuted."""

    expire_after: timedelta = timedelta(0)
    remove_after: timedelta = timedelta(0)

    @classmethod
    def from_ms(cls, expire_after_ms: int, remove_after_ms: int) -> GraceWindows:
        return cls(
            expire_after=timedelta(milliseconds=expire_after_ms),
            remove_after=timedelta(milliseconds=remove_after_ms),
        )


@dataclass(frozen=True)
class Classification:
    trade_id: int
    outcome: Outcome
    open_execution: ExecutionRecord | None = None
    close_execution: ExecutionRecord | None = None


def index_executions(records: Iterable[ExecutionRecord]) -> dict[str, ExecutionRecord]:
    """Index history by exchange offer id; the first (most recent) record wins."""
    index: dict[str, ExecutionRecord] = {}
    for record in records:
        index.setdefault(record.exchange_offer_id, record)
    return index


def is_expired(offer: Offer, now: datetime, grace: timedelta) -> bool:
    return now - offer.expires_at > grace


def open_leg_filled(trade: Trade, open_execution: ExecutionRecord | None) -> bool:
    return (
        open_execution is not None
        or trade.open_offer.confirmed_at is not None
        or trade.status != TradeStatus.OPEN
    )


def classify(
    trade: Trade,
    executions: Mapping[str, ExecutionRecord],
    now: datetime,
    windows: GraceWindows,
) -> Classification:
    """Classify ``trade``; pure, so the same snapshot always yields the same result."""
    open_execution = executions.get(trade.open_offer.offer_id)
    close_offer = trade.close_offer
    close_execution = executions.get(close_offer.offer_id) if close_offer else None
    filled = open_leg_filled(trade, open_execution)

    if filled and close_execution:
        outcome = Outcome.CLOSED
    elif not filled and is_expired(trade.open_offer, now, windows.remove_after):
        outcome = Outcome.MISSED
    elif filled and (close_offer is None or is_expired(close_offer, now, windows.expire_after)):
        outcome = Outcome.BROKEN
    else:
        outcome = Outcome.PENDING

    return Classification(
        trade_id=trade.id,
        outcome=outcome,
        open_execution=open_execution,
        close_execution=close_execution,
    )
