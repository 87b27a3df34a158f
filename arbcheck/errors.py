"""Exception hierarchy for reconciliation and its gateways.

- ArbCheckError (base)
  - GatewayError (ledger/exchange call failed, not retryable)
    - TransientIOError (network, timeout, 429, 5xx: retried)
    - RejectedQuoteError (exchange declined to quote)
  - InconsistentStateError (ledger data that cannot be reconciled)
  - ConfigurationError (invalid settings, startup only)
"""

from __future__ import annotations


class ArbCheckError(Exception):
    """Base exception for the service."""


class GatewayError(ArbCheckError):
    """Non-retryable failure reported by an external gateway."""

    def __init__(self, op: str, message: str) -> None:
        self.op = op
        super().__init__(f"{op}: {message}")


class TransientIOError(GatewayError):
    """Transient failure that is safe to retry.

    Attributes:
        status_code: HTTP status when the failure came from a response
    """

    def __init__(self, op: str, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(op, message)


class RejectedQuoteError(GatewayError):
    """The exchange refused to produce a quote (e.g. size or market closed)."""


class InconsistentStateError(ArbCheckError):
    """Ledger state that references missing or malformed records."""

    def __init__(self, message: str, trade_id: int | None = None) -> None:
        self.trade_id = trade_id
        super().__init__(message)


class ConfigurationError(ArbCheckError):
    """Invalid configuration detected while loading settings."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("invalid configuration: " + "; ".join(errors))
