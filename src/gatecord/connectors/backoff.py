"""
Backoff schedule and reconnect attempt budget.

Gateway reconnects:
- delay = min(base * 2**attempt, cap), attempt counted from 1
- fixed ceiling of attempts, reset only when a session reaches READY
- jitter is optional and seeded for deterministic tests

REST transient-failure retries reuse compute_backoff_delay with the attempt index
counted from 0 (1s, 2s, 4s, ...).
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclass
class BackoffConfig:
    """Configuration for exponential backoff."""

    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    jitter_factor: float = 0.0  # 0.5 = ±50% jitter
    max_retries: int = 5

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms "
                f"({self.base_delay_ms})"
            )
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError(f"jitter_factor must be in [0, 1), got {self.jitter_factor}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")


def compute_backoff_delay(
    config: BackoffConfig,
    exponent: int,
    retry_after_ms: int | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """
    Compute backoff delay with exponential increase and optional jitter.

    Args:
        config: Backoff configuration.
        exponent: Power applied to the multiplier (attempt number or index).
        retry_after_ms: Server-provided minimum delay, if any.
        rng: Optional seeded Random instance for deterministic jitter.

    Returns:
        Delay in milliseconds.
    """
    delay = config.base_delay_ms * (config.multiplier ** max(exponent, 0))

    if config.jitter_factor > 0:
        jitter_min = 1.0 - config.jitter_factor
        jitter_max = 1.0 + config.jitter_factor
        if rng is not None:
            delay *= rng.uniform(jitter_min, jitter_max)
        else:
            delay *= random.uniform(jitter_min, jitter_max)

    delay = min(delay, config.max_delay_ms)

    # Server knows best
    if retry_after_ms is not None and retry_after_ms > 0:
        delay = max(delay, retry_after_ms)

    return int(delay)


@dataclass
class ReconnectPolicy:
    """
    Reconnect attempt counter and delay schedule for one gateway connection.

    The counter increments on every abnormal disconnect and resets to zero only when a
    handshake completes, so quick repeated failures escalate the delay until either a
    session becomes ready or the ceiling is reached.
    """

    config: BackoffConfig = field(default_factory=BackoffConfig)
    attempt: int = 0
    last_attempt_ms: int = 0
    rng: random.Random | None = field(default=None, repr=False)

    _time_fn: Callable[[], int] | None = field(default=None, repr=False)

    def _now_ms(self) -> int:
        """Get current time in milliseconds."""
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    @property
    def max_attempts(self) -> int:
        return self.config.max_retries

    @property
    def exhausted(self) -> bool:
        """True once the attempt budget has been used up."""
        return self.attempt >= self.config.max_retries

    def next_delay_ms(self) -> int:
        """
        Consume one attempt and return the delay before it.

        Raises:
            RuntimeError: If the policy is already exhausted.
        """
        if self.exhausted:
            raise RuntimeError("Reconnect attempts exhausted")
        self.attempt += 1
        self.last_attempt_ms = self._now_ms()
        return compute_backoff_delay(self.config, self.attempt, rng=self.rng)

    def reset(self) -> None:
        """Reset after a completed handshake or a caller-initiated connect."""
        self.attempt = 0

    def get_status(self) -> dict[str, int | bool]:
        """Get current policy status for observability."""
        return {
            "attempt": self.attempt,
            "max_attempts": self.config.max_retries,
            "exhausted": self.exhausted,
            "last_attempt_ms": self.last_attempt_ms,
        }
