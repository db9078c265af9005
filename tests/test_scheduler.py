"""
Tests for the background retry scheduler
"""

import time
from decimal import Decimal

from offline_sync.storage import InMemoryStorage
from offline_sync.audit import AuditTrail
from offline_sync.users import UserDirectory
from offline_sync.wallets import WalletManager
from offline_sync.transactions import TransactionLedger
from offline_sync.offline_queue import OfflineQueue, OfflineTransactionState
from offline_sync.retry import RetryPolicy, now_ms
from offline_sync.sync import SyncEngine
from offline_sync.scheduler import RetryScheduler


class TestRetryScheduler:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.users = UserDirectory(self.storage, self.audit_trail)
        self.wallets = WalletManager(self.storage, self.audit_trail)
        self.queue = OfflineQueue(self.storage)
        self.engine = SyncEngine(
            self.storage, self.users, self.wallets, TransactionLedger(self.storage),
            self.queue, self.audit_trail, RetryPolicy(base_delay_ms=1000)
        )
        self.scheduler = RetryScheduler(self.engine, self.queue, interval_seconds=0.05)

        self.users.create_user("Kofi", "Boateng", user_id="kofi")
        self.wallet = self.wallets.create_wallet("kofi", initial_balance=Decimal("10"))
        self.engine.sync_batch("kofi", [{
            "id": "pay-1", "type": "payment", "amount": "50", "description": "Rent"
        }])

    def teardown_method(self):
        self.scheduler.stop()

    def test_nothing_due_before_backoff_elapses(self):
        assert self.scheduler.run_pending(now=now_ms() - 10000) == []
        assert self.queue.get("kofi", "pay-1").state == OfflineTransactionState.FAILED_RETRYABLE

    def test_due_item_still_failing_is_rescheduled(self):
        results = self.scheduler.run_pending(now=now_ms() + 5000)

        assert len(results) == 1
        assert results[0].retry_count == 2
        assert self.queue.get("kofi", "pay-1").state == OfflineTransactionState.FAILED_RETRYABLE

    def test_due_item_applied_once_funded(self):
        self.wallets.credit(self.wallet.id, Decimal("40"))

        results = self.scheduler.run_pending(now=now_ms() + 5000)

        assert [r.status for r in results] == ["success"]
        assert self.wallets.get_wallet(self.wallet.id).balance == Decimal("0.00")
        assert self.scheduler.run_pending(now=now_ms() + 5000) == []

    def test_one_bad_item_does_not_stop_the_tick(self):
        calls = []
        real_retry = self.engine.retry_item

        def flaky(user_id, tx_id):
            calls.append(tx_id)
            if tx_id == "pay-1":
                raise RuntimeError("storage hiccup")
            return real_retry(user_id, tx_id)

        self.engine.sync_batch("kofi", [{
            "id": "pay-2", "type": "payment", "amount": "60", "description": "Rent"
        }])
        self.engine.retry_item = flaky

        results = self.scheduler.run_pending(now=now_ms() + 5000)
        assert sorted(calls) == ["pay-1", "pay-2"]
        assert len(results) == 1

    def test_start_and_stop_are_idempotent(self):
        self.scheduler.start()
        self.scheduler.start()
        assert self.scheduler.running
        assert self.scheduler.stats()["running"]

        self.scheduler.stop()
        self.scheduler.stop()
        assert not self.scheduler.running

    def test_background_thread_retries(self):
        self.wallets.credit(self.wallet.id, Decimal("40"))
        self.scheduler.start()

        deadline = time.time() + 5
        while time.time() < deadline:
            if self.queue.get("kofi", "pay-1").state == OfflineTransactionState.SYNCED:
                break
            time.sleep(0.05)

        assert self.queue.get("kofi", "pay-1").state == OfflineTransactionState.SYNCED
