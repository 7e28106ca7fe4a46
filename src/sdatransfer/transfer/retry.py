"""Retry policy with exponential backoff and error classification.

This module provides:
- is_retryable: Classify an exception as transient or fatal
- RetryPolicy: Reusable exponential backoff runner shared by all workers
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from sdatransfer.core.errors import ChecksumMismatch, TransferError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# A checksum mismatch is retried this many times before it is fatal
CHECKSUM_RETRIES = 1


def is_retryable(exc: BaseException) -> bool:
    """Return True if exc is a transient error worth retrying.

    Network errors, throttling and 5xx responses are transient; client
    errors, cryptographic failures and configuration problems are not.
    Checksum mismatches are handled separately by RetryPolicy.
    """
    if isinstance(exc, ChecksumMismatch):
        return False
    if isinstance(exc, TransferError):
        return exc.retryable
    return False


@dataclass
class RetryPolicy:
    """Exponential backoff policy parameterized by error classification.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_backoff: Delay before the first retry, in seconds.
        max_backoff: Upper bound for a single delay.
        multiplier: Growth factor between delays.
        sleep: Sleep function (replaceable in tests).
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        """Clamp attempts to at least one."""
        self.max_attempts = max(1, self.max_attempts)

    def delays(self) -> list[float]:
        """Return the sequence of delays between attempts."""
        result = []
        backoff = self.initial_backoff
        for _ in range(self.max_attempts - 1):
            result.append(backoff)
            backoff = min(backoff * self.multiplier, self.max_backoff)
        return result

    def call(self, func: Callable[[], T], description: str = "operation") -> T:
        """Execute func, retrying transient failures.

        Args:
            func: Function to execute.
            description: Human-readable name used in log messages.

        Returns:
            Result of func.

        Raises:
            The last exception once attempts are exhausted, or any
            non-retryable exception immediately.
        """
        backoff = self.initial_backoff
        checksum_failures = 0
        attempt = 0

        while True:
            attempt += 1
            try:
                return func()
            except ChecksumMismatch as e:
                checksum_failures += 1
                if checksum_failures > CHECKSUM_RETRIES or attempt >= self.max_attempts:
                    logger.error(f"{description}: checksum mismatch persisted: {e}")
                    raise
                logger.warning(f"{description}: checksum mismatch, retrying once: {e}")
            except TransferError as e:
                if not is_retryable(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(f"{description}: all {self.max_attempts} attempts failed: {e}")
                    raise
                logger.warning(
                    f"{description}: attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {backoff:.1f}s..."
                )

            self.sleep(backoff)
            backoff = min(backoff * self.multiplier, self.max_backoff)
