"""
Tests for the server transaction ledger
"""

import pytest
from decimal import Decimal

from offline_sync.currency import Money, Currency
from offline_sync.storage import InMemoryStorage
from offline_sync.transactions import TransactionLedger, TransactionType, TransactionStatus
from offline_sync.errors import DuplicateReferenceError


class TestTransactionLedger:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)

    def record(self, reference, from_wallet_id=None, to_wallet_id="W1", amount="10.00"):
        return self.ledger.record(
            transaction_type=TransactionType.TOPUP,
            amount=Money(Decimal(amount), Currency.USD),
            description="Cash in",
            reference=reference,
            from_wallet_id=from_wallet_id,
            to_wallet_id=to_wallet_id
        )

    def test_record_and_lookup(self):
        transaction = self.record("OFFLINE-abc")

        assert transaction.status == TransactionStatus.COMPLETED
        assert self.ledger.get_transaction(transaction.id).amount == Money(Decimal("10.00"), Currency.USD)
        assert self.ledger.find_by_reference("OFFLINE-abc").id == transaction.id
        assert self.ledger.find_by_reference("OFFLINE-missing") is None

    def test_duplicate_reference_rejected(self):
        self.record("OFFLINE-abc")
        with pytest.raises(DuplicateReferenceError):
            self.record("OFFLINE-abc")
        assert self.storage.count("transactions") == 1

    def test_transaction_must_touch_a_wallet(self):
        with pytest.raises(ValueError, match="at least one wallet"):
            self.record("R1", from_wallet_id=None, to_wallet_id=None)

    def test_amount_must_be_positive(self):
        with pytest.raises(ValueError, match="must be positive"):
            self.record("R1", amount="0")

    def test_wallet_transactions_newest_first(self):
        first = self.record("R1")
        second = self.record("R2", from_wallet_id="W1", to_wallet_id="W2")
        self.record("R3", to_wallet_id="W3")

        history = self.ledger.get_wallet_transactions("W1")
        assert [t.id for t in history] == [second.id, first.id]
        assert len(self.ledger.get_wallet_transactions("W1", limit=1)) == 1

    def test_recent_for_wallets_deduplicates_internal_transfers(self):
        self.record("R1", to_wallet_id="W1")
        transfer = self.record("R2", from_wallet_id="W1", to_wallet_id="W2")

        recent = self.ledger.get_recent_for_wallets(["W1", "W2"])
        assert len(recent) == 2
        assert recent[0].id == transfer.id

    def test_recent_for_wallets_limits(self):
        for i in range(15):
            self.record(f"A{i}", to_wallet_id="W1")
        for i in range(15):
            self.record(f"B{i}", to_wallet_id="W2")

        assert len(self.ledger.get_recent_for_wallets(["W1", "W2"])) == 20
        assert len(self.ledger.get_recent_for_wallets(["W1"])) == 10
