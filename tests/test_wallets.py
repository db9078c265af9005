"""
Test suite for users and wallets

Tests wallet lifecycle, balance changes and optimistic version checks.
"""

import pytest
from decimal import Decimal

from offline_sync.currency import Currency
from offline_sync.storage import InMemoryStorage
from offline_sync.audit import AuditTrail, AuditEventType
from offline_sync.users import UserDirectory, UserRole, normalize_phone
from offline_sync.wallets import WalletManager, WalletType
from offline_sync.errors import (
    ConcurrencyConflictError, InsufficientFundsError, OfflineValidationError,
    UserNotFoundError, WalletNotFoundError
)


class TestUserDirectory:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.users = UserDirectory(self.storage, self.audit_trail)

    def test_create_user_normalizes_phone(self):
        user = self.users.create_user("Amara", "Okafor", "+233 24-123 4567", UserRole.MERCHANT)

        assert user.phone_number == "+233241234567"
        assert user.full_name == "Amara Okafor"
        assert self.users.find_by_phone("+233 241 234 567").id == user.id
        assert self.users.get_user(user.id).current_role == UserRole.MERCHANT

    def test_rejects_bad_and_duplicate_phones(self):
        with pytest.raises(OfflineValidationError, match="Invalid phone number"):
            self.users.create_user("A", "B", "12ab")

        self.users.create_user("A", "B", "+233241234567")
        with pytest.raises(OfflineValidationError, match="already registered"):
            self.users.create_user("C", "D", "+233241234567")

    def test_require_active_user(self):
        with pytest.raises(UserNotFoundError, match="User not found"):
            self.users.require_active_user("ghost")

    def test_contacts(self):
        user = self.users.create_user("A", "B", user_id="owner")
        self.users.add_contact(user.id, "Family Contact", "+233 24 123 4567")

        contacts = self.users.get_contacts("owner")
        assert len(contacts) == 1
        assert contacts[0].phone == "+233241234567"

    def test_user_creation_is_audited(self):
        user = self.users.create_user("A", "B")
        events = self.audit_trail.get_events_for_entity("user", user.id)
        assert events[0].event_type == AuditEventType.USER_CREATED

    def test_normalize_phone(self):
        assert normalize_phone("(024) 123-4567") == "0241234567"
        assert normalize_phone(None) == ""


class TestWalletManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.wallets = WalletManager(self.storage, self.audit_trail)
        self.wallet = self.wallets.create_wallet("user-1", initial_balance=Decimal("100.00"))

    def test_create_wallet(self):
        assert self.wallet.balance == Decimal("100.00")
        assert self.wallet.currency == Currency.USD
        assert self.wallet.version == 0
        assert self.wallets.get_primary_wallet("user-1").id == self.wallet.id

    def test_one_wallet_per_type(self):
        with pytest.raises(OfflineValidationError, match="already has a primary wallet"):
            self.wallets.create_wallet("user-1")

        savings = self.wallets.create_wallet("user-1", WalletType.SAVINGS)
        assert len(self.wallets.get_user_wallets("user-1")) == 2
        assert savings.wallet_type == WalletType.SAVINGS

    def test_negative_opening_balance_rejected(self):
        with pytest.raises(OfflineValidationError):
            self.wallets.create_wallet("user-2", initial_balance=Decimal("-1"))

    def test_missing_primary_wallet(self):
        with pytest.raises(WalletNotFoundError, match="Primary wallet not found"):
            self.wallets.get_primary_wallet("nobody")

    def test_credit_and_debit_bump_version(self):
        wallet = self.wallets.credit(self.wallet.id, Decimal("50"), reference="R1")
        assert wallet.balance == Decimal("150.00")
        assert wallet.version == 1

        wallet = self.wallets.debit(self.wallet.id, Decimal("150"), reference="R2")
        assert wallet.balance == Decimal("0.00")
        assert wallet.version == 2

    def test_debit_beyond_balance(self):
        with pytest.raises(InsufficientFundsError, match="Insufficient balance"):
            self.wallets.debit(self.wallet.id, Decimal("100.01"))

        assert self.wallets.get_wallet(self.wallet.id).balance == Decimal("100.00")

    def test_stale_version_rejected(self):
        """A writer holding an old version cannot overwrite a newer balance"""
        stale_version = self.wallet.version
        self.wallets.credit(self.wallet.id, Decimal("10"))

        with pytest.raises(ConcurrencyConflictError):
            self.wallets.debit(self.wallet.id, Decimal("5"), expected_version=stale_version)

        wallet = self.wallets.get_wallet(self.wallet.id)
        assert wallet.balance == Decimal("110.00")
        assert wallet.version == 1

    def test_matching_version_accepted(self):
        wallet = self.wallets.debit(self.wallet.id, Decimal("5"), expected_version=0)
        assert wallet.version == 1

    def test_unknown_wallet(self):
        with pytest.raises(WalletNotFoundError):
            self.wallets.credit("missing", Decimal("1"))

    def test_balance_changes_are_audited(self):
        self.wallets.credit(self.wallet.id, Decimal("25"), reference="OFFLINE-1")

        events = self.audit_trail.get_events_for_entity("wallet", self.wallet.id)
        change = events[-1]
        assert change.event_type == AuditEventType.WALLET_BALANCE_CHANGED
        assert change.metadata["previous_balance"] == "100.00"
        assert change.metadata["new_balance"] == "125.00"
        assert change.metadata["reference"] == "OFFLINE-1"

    def test_snapshot(self):
        snapshot = self.wallets.snapshot("user-1")
        assert snapshot == [{
            "id": self.wallet.id,
            "wallet_type": "primary",
            "balance": "100.00",
            "currency": "USD"
        }]
