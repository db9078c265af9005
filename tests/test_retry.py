"""
Tests for retry backoff policy
"""

from offline_sync.retry import RetryPolicy
from offline_sync.errors import (
    InsufficientFundsError, OfflineValidationError, SyncUnavailableError
)


class TestRetryPolicy:

    def setup_method(self):
        self.policy = RetryPolicy()

    def test_exponential_backoff(self):
        assert [self.policy.backoff_ms(n) for n in range(5)] == [
            60000, 120000, 240000, 480000, 960000
        ]
        assert self.policy.retry_after(now=1000, retry_count=2) == 241000

    def test_negative_retry_count_uses_base_delay(self):
        assert self.policy.backoff_ms(-3) == 60000

    def test_retryable_error_schedules_retry(self):
        decision = self.policy.decide(InsufficientFundsError("Insufficient balance"), 0, now=1000)

        assert decision.retryable
        assert decision.retry_after == 61000
        assert decision.backoff_ms == 60000

    def test_last_attempt_is_permanent(self):
        """The fifth failed attempt parks the item"""
        assert self.policy.decide(InsufficientFundsError(), 3, now=0).retryable

        decision = self.policy.decide(InsufficientFundsError(), 4, now=0)
        assert not decision.retryable
        assert decision.retry_after is None

    def test_validation_error_is_permanent(self):
        decision = self.policy.decide(OfflineValidationError("Invalid amount"), 0, now=0)
        assert not decision.retryable

    def test_retryable_override(self):
        assert self.policy.decide(RuntimeError("disk full"), 0, now=0, retryable=True).retryable
        assert not self.policy.decide(SyncUnavailableError(), 0, now=0, retryable=False).retryable

    def test_custom_policy(self):
        policy = RetryPolicy(base_delay_ms=1000, max_retries=2)
        assert policy.decide(SyncUnavailableError(), 0, now=0).retry_after == 1000
        assert not policy.decide(SyncUnavailableError(), 1, now=0).retryable
