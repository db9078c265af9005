"""
Retry backoff policy for offline transactions that failed to sync.
"""

from dataclasses import dataclass
from typing import Optional
import time

from .errors import is_retryable


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RetryDecision:
    retryable: bool
    retry_after: Optional[int]  # epoch ms, None when the item is parked for good
    backoff_ms: int


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: base_delay_ms * 2 ** retry_count.

    ``max_retries`` bounds the number of sync attempts; the attempt that
    reaches it parks the item as permanently failed.
    """
    base_delay_ms: int = 60000
    max_retries: int = 5

    def backoff_ms(self, retry_count: int) -> int:
        return self.base_delay_ms * (2 ** max(retry_count, 0))

    def retry_after(self, now: int, retry_count: int) -> int:
        return now + self.backoff_ms(retry_count)

    def decide(
        self,
        error: Exception,
        retry_count: int,
        now: Optional[int] = None,
        retryable: Optional[bool] = None
    ) -> RetryDecision:
        """
        Decide what happens to an item whose attempt number ``retry_count + 1`` failed

        The backoff and ``retry_after`` deadline are always computed from the
        pre-failure retry count. ``retryable`` overrides the error's own flag,
        for failures that are not OfflineSyncErrors.
        """
        now = now_ms() if now is None else now
        backoff = self.backoff_ms(retry_count)
        attempts = retry_count + 1
        if retryable is None:
            retryable = is_retryable(error)
        if retryable and attempts < self.max_retries:
            return RetryDecision(True, now + backoff, backoff)
        return RetryDecision(False, None, backoff)
