"""Monitoring utilities."""

from arbcheck.monitoring.logging import configure_logging
from arbcheck.monitoring.metrics import Metrics

__all__ = ["configure_logging", "Metrics"]
