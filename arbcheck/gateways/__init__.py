"""Gateway contracts and the limiter/retry wrappers around them."""

from arbcheck.gateways.base import ExchangeGateway, LedgerGateway, NotificationPublisher
from arbcheck.gateways.limiter import RateLimiter
from arbcheck.gateways.resilient import GatewayGuard, ResilientExchange, ResilientLedger
from arbcheck.gateways.retry import RetryPolicy, call_with_retry

__all__ = [
    "ExchangeGateway",
    "LedgerGateway",
    "NotificationPublisher",
    "RateLimiter",
    "RetryPolicy",
    "call_with_retry",
    "GatewayGuard",
    "ResilientLedger",
    "ResilientExchange",
]
