"""
Test suite for the offline transaction queue

Tests policy validation, queue caps, idempotent enqueue and the item
state machine.
"""

import pytest
from decimal import Decimal

from offline_sync.storage import InMemoryStorage, SQLiteStorage
from offline_sync.transactions import TransactionType
from offline_sync.offline_queue import (
    OfflineQueue, OfflineTransactionState, QueuePolicy
)
from offline_sync.errors import (
    InvalidStateTransitionError, OfflineValidationError, QueueFullError,
    UnsupportedTransactionTypeError
)


def make_payload(tx_id="tx-1", **overrides):
    payload = {
        "id": tx_id,
        "type": "payment",
        "amount": "25.00",
        "description": "Groceries",
        "timestamp": "2024-05-01T10:00:00Z"
    }
    payload.update(overrides)
    return payload


class TestQueuePolicy:
    """Validation messages are shown to wallet users, so they are exact"""

    def setup_method(self):
        self.policy = QueuePolicy()

    def test_valid_payload_is_normalized(self):
        fields = self.policy.validate(make_payload(amount=12.5, description="  Lunch  "))

        assert fields["id"] == "tx-1"
        assert fields["transaction_type"] == TransactionType.PAYMENT
        assert fields["amount"] == Decimal("12.5")
        assert fields["description"] == "Lunch"
        assert fields["retry_count"] == 0
        assert fields["metadata"] == {}

    @pytest.mark.parametrize("overrides,message", [
        ({"id": ""}, "Transaction ID is required"),
        ({"id": None}, "Transaction ID is required"),
        ({"amount": "abc"}, "Invalid amount"),
        ({"amount": 0}, "Invalid amount"),
        ({"amount": "-5"}, "Invalid amount"),
        ({"amount": "1000.01"}, "Amount exceeds offline transaction limit"),
        ({"amount": "0.004"}, "Invalid amount"),
        ({"amount": "10.005"}, "Invalid amount"),
        ({"description": ""}, "Description is required"),
        ({"description": "   "}, "Description is required"),
        ({"type": "send"}, "Recipient is required for send transactions"),
        ({"metadata": ["not", "a", "dict"]}, "Metadata must be an object"),
        ({"retry_count": "many"}, "Invalid retry count"),
    ])
    def test_validation_errors(self, overrides, message):
        with pytest.raises(OfflineValidationError, match=message):
            self.policy.validate(make_payload(**overrides))

    def test_amount_at_limit_is_allowed(self):
        assert self.policy.validate(make_payload(amount="1000"))["amount"] == Decimal("1000")

    def test_amount_precision_follows_currency(self):
        assert self.policy.validate(make_payload(amount="10.50"))["amount"] == Decimal("10.50")

        whole_units = QueuePolicy(amount_precision=0)
        assert whole_units.validate(make_payload(amount="10"))["amount"] == Decimal("10")
        with pytest.raises(OfflineValidationError, match="Invalid amount"):
            whole_units.validate(make_payload(amount="10.5"))

    def test_unknown_type(self):
        with pytest.raises(UnsupportedTransactionTypeError, match="Invalid transaction type"):
            self.policy.validate(make_payload(type="loan"))

    def test_disallowed_type(self):
        policy = QueuePolicy(allowed_types=frozenset({TransactionType.PAYMENT}))
        with pytest.raises(UnsupportedTransactionTypeError, match="Unsupported transaction type: topup"):
            policy.validate(make_payload(type="topup"))

    def test_non_dict_payload(self):
        with pytest.raises(OfflineValidationError, match="Transaction data is required"):
            self.policy.validate("not a transaction")


class TestOfflineQueue:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.queue = OfflineQueue(self.storage)

    def test_enqueue(self):
        item = self.queue.enqueue("user-1", make_payload())

        assert item.state == OfflineTransactionState.PENDING
        assert item.status_label == "pending"
        assert item.reference == "OFFLINE-tx-1"
        assert self.queue.get("user-1", "tx-1").amount == Decimal("25.00")

    def test_enqueue_is_idempotent(self):
        first = self.queue.enqueue("user-1", make_payload())
        second = self.queue.enqueue("user-1", make_payload(amount="99"))

        assert second.id == first.id
        assert second.amount == Decimal("25.00")
        assert len(self.queue.get_user_queue("user-1")) == 1

    def test_add_reports_new_items(self):
        item, created = self.queue.add("user-1", make_payload())
        again, created_again = self.queue.add("user-1", make_payload())

        assert created
        assert not created_again
        assert again.id == item.id

    def test_same_client_id_for_different_users(self):
        self.queue.enqueue("user-1", make_payload())
        self.queue.enqueue("user-2", make_payload())

        assert len(self.queue.get_user_queue("user-1")) == 1
        assert len(self.queue.get_user_queue("user-2")) == 1

    def test_queue_cap(self):
        for i in range(10):
            self.queue.enqueue("user-1", make_payload(f"tx-{i}"))

        with pytest.raises(QueueFullError):
            self.queue.enqueue("user-1", make_payload("tx-overflow"))

        # Other users have their own allowance
        self.queue.enqueue("user-2", make_payload("tx-overflow"))

    def test_settled_items_free_queue_space(self):
        for i in range(10):
            self.queue.enqueue("user-1", make_payload(f"tx-{i}"))

        item = self.queue.mark_syncing(self.queue.get("user-1", "tx-0"))
        self.queue.mark_synced(item, "server-1", "2024-05-01T10:05:00+00:00")

        self.queue.enqueue("user-1", make_payload("tx-10"))
        assert len(self.queue.outstanding_for_user("user-1")) == 10

    def test_state_machine(self):
        item = self.queue.enqueue("user-1", make_payload())

        with pytest.raises(InvalidStateTransitionError):
            self.queue.mark_synced(item, "server-1", "now")

        item = self.queue.mark_syncing(item)
        item = self.queue.mark_failed(item, "Insufficient balance", retryable=True, next_retry_at=1000)
        assert item.state == OfflineTransactionState.FAILED_RETRYABLE
        assert item.retry_count == 1
        assert item.next_retry_at == 1000
        assert item.status_label == "failed"

        item = self.queue.mark_syncing(item)
        item = self.queue.mark_synced(item, "server-1", "2024-05-01T10:05:00+00:00")
        assert item.state == OfflineTransactionState.SYNCED
        assert item.next_retry_at is None
        assert item.last_error is None

        with pytest.raises(InvalidStateTransitionError):
            self.queue.mark_syncing(item)

    def test_permanent_failure_is_terminal(self):
        item = self.queue.mark_syncing(self.queue.enqueue("user-1", make_payload()))
        item = self.queue.mark_failed(item, "Cannot send money to yourself", retryable=False, next_retry_at=5)

        assert item.state == OfflineTransactionState.FAILED_PERMANENT
        assert item.next_retry_at is None
        assert not item.is_outstanding
        with pytest.raises(InvalidStateTransitionError):
            self.queue.mark_syncing(item)

    def test_transitions_check_stored_state(self):
        """A copy read before another run moved the item cannot move it again"""
        stale = self.queue.enqueue("user-1", make_payload())
        item = self.queue.mark_syncing(self.queue.get("user-1", "tx-1"))

        with pytest.raises(InvalidStateTransitionError):
            self.queue.mark_syncing(stale)

        self.queue.mark_failed(item, "Insufficient balance", retryable=True, next_retry_at=1000)
        with pytest.raises(InvalidStateTransitionError):
            self.queue.mark_failed(item, "Insufficient balance", retryable=True, next_retry_at=2000)

        stored = self.queue.get("user-1", "tx-1")
        assert stored.state == OfflineTransactionState.FAILED_RETRYABLE
        assert stored.retry_count == 1
        assert stored.next_retry_at == 1000

    def test_mark_failed_counts_from_stored_retries(self):
        item = self.queue.mark_syncing(self.queue.enqueue("user-1", make_payload()))
        self.queue.mark_failed(item, "Insufficient balance", True, 1000)
        stale = self.queue.mark_syncing(self.queue.get("user-1", "tx-1"))
        stale.retry_count = 0

        assert self.queue.mark_failed(stale, "Insufficient balance", True, 2000).retry_count == 2

    def test_pending_and_failed_views(self):
        self.queue.enqueue("user-1", make_payload("a"))
        failed = self.queue.mark_syncing(self.queue.enqueue("user-1", make_payload("b")))
        self.queue.mark_failed(failed, "Insufficient balance", True, 10)

        assert [i.id for i in self.queue.pending_for_user("user-1")] == ["a"]
        assert [i.id for i in self.queue.failed_for_user("user-1")] == ["b"]

    def test_due_for_retry(self):
        for tx_id, deadline in (("late", 5000), ("early", 1000), ("future", 90000)):
            item = self.queue.mark_syncing(self.queue.enqueue("user-1", make_payload(tx_id)))
            self.queue.mark_failed(item, "Insufficient balance", True, deadline)

        due = self.queue.due_for_retry(now=6000)
        assert [item.id for item in due] == ["early", "late"]

    def test_queue_survives_restart(self, tmp_path):
        db_path = tmp_path / "queue.db"
        storage = SQLiteStorage(db_path)
        OfflineQueue(storage).enqueue("user-1", make_payload())
        storage.close()

        reopened = SQLiteStorage(db_path)
        try:
            item = OfflineQueue(reopened).get("user-1", "tx-1")
            assert item.state == OfflineTransactionState.PENDING
            assert item.timestamp == "2024-05-01T10:00:00Z"
        finally:
            reopened.close()
