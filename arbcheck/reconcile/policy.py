"""Take-profit / stop-loss decision for closing the second leg."""

from __future__ import annotations

from dataclasses import dataclass
import math

from arbcheck.models import Side

# Thresholds are inclusive; absorb float error such as 105/100 - 1 != 0.05.
_PCT_TOL = 1e-9


def percent(value1: float, value2: float) -> float:
    """Percentage change from ``value1`` to ``value2`` (gain positive, loss negative)."""
    return (value2 / value1 - 1) * 100


def can_close(
    reference_price: float,
    candidate_price: float,
    take_profit_pct: float | None = None,
    stop_loss_pct: float | None = None,
) -> bool:
    """Decide whether closing at ``candidate_price`` is acceptable.

    A neutral or favorable move closes when take-profit is unset or the gain
    reaches it. An unfavorable move closes only when stop-loss is set and the
    loss stays within it; without stop-loss a losing position is held.

    Raises:
        ValueError: if either price is not positive.
    """
    if reference_price <= 0 or candidate_price <= 0:
        raise ValueError(
            f"prices must be positive (reference={reference_price}, candidate={candidate_price})"
        )
    if candidate_price >= reference_price:
        if not take_profit_pct:
            return True
        gain = percent(reference_price, candidate_price)
        return gain >= take_profit_pct or math.isclose(gain, take_profit_pct, abs_tol=_PCT_TOL)
    if not stop_loss_pct:
        return False
    loss = percent(candidate_price, reference_price)
    return loss <= stop_loss_pct or math.isclose(loss, stop_loss_pct, abs_tol=_PCT_TOL)


@dataclass(frozen=True)
class ClosePolicy:
    """Configured thresholds, applied in the direction of the close leg."""

    take_profit_pct: float = 0.0
    stop_loss_pct: float = 0.0

    def allows(self, reference_price: float, candidate_price: float, close_side: Side) -> bool:
        # Selling to close profits from a higher price; buying to close from a lower one.
        if close_side == "sell":
            return can_close(
                reference_price, candidate_price, self.take_profit_pct, self.stop_loss_pct
            )
        return can_close(candidate_price, reference_price, self.take_profit_pct, self.stop_loss_pct)
