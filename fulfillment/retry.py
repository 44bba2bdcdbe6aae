"""
Seat Fulfillment — Retry Classification & Backoff

Decides, for a failed fulfillment attempt, whether the order goes back to
``retrying`` (and when) or ends ``failed``.

  - Rate limit (429), forbidden (403) and any 5xx from the account API
    are retryable. So is allocation exhaustion: capacity may appear later.
  - Everything else is terminal: data errors, configuration errors,
    not-found, deactivated accounts, unexpected exceptions.
  - delay(attempt) = min(max_delay, base_delay * 2^(attempt-1))
  - Once attempt >= max_retries the order is terminal even when the error
    itself was retryable.

The attempt count lives in the order's persisted action payload, so
backoff survives restarts; the sweeper only re-attempts once the stored
next_retry_at has passed.

Usage:
    from fulfillment.retry import RetryPolicy

    policy = RetryPolicy(base_delay=60, max_delay=3600, max_retries=8)
    decision = policy.decide(error, attempt=3)
    if decision.retry:
        payload.next_retry_at = policy.next_retry_at(3, now)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from fulfillment.errors import AccountSyncError, AllocationExhausted, SyncErrorKind

logger = logging.getLogger("seat_fulfillment.retry")

RETRYABLE_STATUS_CODES = frozenset({403, 429})


class RetryClass(str, enum.Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


def _is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES or 500 <= status <= 599


def classify(error: BaseException) -> RetryClass:
    """Classify a fulfillment failure from its type, status and kind."""
    if isinstance(error, AllocationExhausted):
        return RetryClass.RETRYABLE
    if isinstance(error, AccountSyncError):
        if error.kind == SyncErrorKind.ACCOUNT_DEACTIVATED:
            return RetryClass.TERMINAL
        return RetryClass.RETRYABLE if _is_retryable_status(error.status) else RetryClass.TERMINAL

    # Status-coded errors from other HTTP layers
    status = getattr(error, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return RetryClass.RETRYABLE if _is_retryable_status(status) else RetryClass.TERMINAL
    return RetryClass.TERMINAL


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    retryable: bool
    attempt: int
    delay_seconds: float = 0.0

    @property
    def exhausted(self) -> bool:
        return self.retryable and not self.retry


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration for fulfillment attempts."""
    base_delay: float = 60.0      # seconds
    max_delay: float = 3600.0     # ceiling
    max_retries: int = 8          # attempts before terminal failure; 0 disables retry

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            base_delay=float(settings.retry_base_seconds),
            max_delay=float(settings.retry_max_seconds),
            max_retries=int(settings.max_retries),
        )

    def next_delay(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` (1-based) failed."""
        attempt = max(1, int(attempt))
        # Past ~64 doublings the ceiling always wins; avoid huge floats.
        exponent = min(attempt - 1, 64)
        return float(min(self.max_delay, self.base_delay * (2 ** exponent)))

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.next_delay(attempt))

    def is_exhausted(self, attempt: int) -> bool:
        return self.max_retries <= 0 or attempt >= self.max_retries

    def decide(self, error: BaseException, attempt: int) -> RetryDecision:
        retryable = classify(error) == RetryClass.RETRYABLE
        if retryable and not self.is_exhausted(attempt):
            return RetryDecision(
                retry=True,
                retryable=True,
                attempt=attempt,
                delay_seconds=self.next_delay(attempt),
            )
        if retryable:
            logger.info("Retry budget exhausted at attempt %d/%d", attempt, self.max_retries)
        return RetryDecision(retry=False, retryable=retryable, attempt=attempt)
