"""Trade reconciliation core: policy, classifier, engine and scheduler."""

from arbcheck.reconcile.classifier import Classification, GraceWindows, Outcome, classify
from arbcheck.reconcile.engine import CycleReport, ReconciliationEngine, TradeEvent
from arbcheck.reconcile.policy import ClosePolicy, can_close, percent
from arbcheck.reconcile.scheduler import RuntimeControl, Scheduler, next_delay_ms

__all__ = [
    "Classification",
    "GraceWindows",
    "Outcome",
    "classify",
    "CycleReport",
    "ReconciliationEngine",
    "TradeEvent",
    "ClosePolicy",
    "can_close",
    "percent",
    "RuntimeControl",
    "Scheduler",
    "next_delay_ms",
]
