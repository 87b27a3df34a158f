"""Bounded exponential backoff for gateway calls.

Only ``TransientIOError`` is retried. Business rejections (a declined quote, an
inconsistent ledger row) surface on the first attempt.

Usage:
    policy = RetryPolicy(max_attempts=10, base_delay_ms=1000, max_delay_ms=5000)
    trades = await call_with_retry("ledger.list_pending_trades", ledger.list_pending_trades, policy)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

import structlog

from arbcheck.errors import TransientIOError

if TYPE_CHECKING:
    from arbcheck.config.settings import RetryConfig

T = TypeVar("T")

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (1 = no retries)
        base_delay_ms: Delay before the first retry
        max_delay_ms: Cap on any single delay
        multiplier: Growth factor between consecutive delays
    """

    max_attempts: int = 10
    base_delay_ms: int = 1000
    max_delay_ms: int = 5000
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            multiplier=config.multiplier,
        )

    def compute_delay_ms(self, attempt: int) -> int:
        """Delay after the given 0-indexed failed attempt, capped at max_delay_ms."""
        delay = self.base_delay_ms * (self.multiplier**attempt)
        return min(int(delay), self.max_delay_ms)


async def call_with_retry(
    op_name: str,
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    on_retry: Callable[[int, Exception, int], None] | None = None,
) -> T:
    """Run ``operation`` under ``policy``.

    Raises:
        The last ``TransientIOError`` once attempts are exhausted, or any other
        exception immediately.
    """
    sleep = sleep or asyncio.sleep
    for attempt in range(policy.max_attempts):
        try:
            return await operation()
        except TransientIOError as exc:
            if attempt + 1 >= policy.max_attempts:
                log.warning(
                    "gateway_retries_exhausted",
                    op=op_name,
                    attempts=policy.max_attempts,
                    error=str(exc),
                )
                raise
            delay_ms = policy.compute_delay_ms(attempt)
            log.info(
                "gateway_call_retrying",
                op=op_name,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_ms=delay_ms,
                error=str(exc),
            )
            if on_retry:
                on_retry(attempt, exc, delay_ms)
            await sleep(delay_ms / 1000.0)
    raise RuntimeError("Unexpected end of retry loop")  # pragma: no cover
