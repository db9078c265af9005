"""
Wallet Management Module

Wallets hold a Decimal balance per user. Every balance write is a
compare-and-swap on the wallet's version number, performed inside a storage
atomic block, so two syncs touching the same wallet cannot both read the
old balance and overwrite each other.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import (
    ConcurrencyConflictError, InsufficientFundsError,
    OfflineValidationError, WalletNotFoundError
)
from .logging_config import get_logger, log_action


class WalletType(Enum):
    """Kinds of wallet a user can hold"""
    PRIMARY = "primary"
    SAVINGS = "savings"
    BUSINESS = "business"


@dataclass
class Wallet(StorageRecord):
    user_id: str
    wallet_type: WalletType
    balance: Decimal
    currency: Currency
    is_active: bool = True
    version: int = 0

    @property
    def balance_money(self) -> Money:
        return Money(self.balance, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['wallet_type'] = self.wallet_type.value
        result['currency'] = self.currency.code
        result['balance'] = self.balance_money.to_decimal_string()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Wallet':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            wallet_type=WalletType(data['wallet_type']),
            balance=Decimal(data['balance']),
            currency=Currency[data['currency']],
            is_active=data.get('is_active', True),
            version=data.get('version', 0)
        )

    def summary(self) -> Dict[str, Any]:
        """Public view used in sync responses and offline bundles"""
        return {
            "id": self.id,
            "wallet_type": self.wallet_type.value,
            "balance": self.balance_money.to_decimal_string(),
            "currency": self.currency.code
        }


class WalletManager:
    """Creates wallets and applies balance changes"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "wallets"
        self.logger = get_logger("offline_sync.wallets")

    def create_wallet(
        self,
        user_id: str,
        wallet_type: WalletType = WalletType.PRIMARY,
        currency: Currency = Currency.USD,
        initial_balance: Decimal = Decimal("0")
    ) -> Wallet:
        """
        Open a wallet for a user

        A user holds at most one wallet of each type.

        Raises:
            OfflineValidationError: On a duplicate wallet type or negative opening balance
        """
        if initial_balance < 0:
            raise OfflineValidationError("Opening balance cannot be negative")

        for existing in self.get_user_wallets(user_id):
            if existing.wallet_type == wallet_type:
                raise OfflineValidationError(
                    f"User {user_id} already has a {wallet_type.value} wallet"
                )

        now = datetime.now(timezone.utc)
        wallet = Wallet(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            wallet_type=wallet_type,
            balance=Money(initial_balance, currency).amount,
            currency=currency
        )
        self._save_wallet(wallet)

        self.audit_trail.log_event(
            event_type=AuditEventType.WALLET_CREATED,
            entity_type="wallet",
            entity_id=wallet.id,
            user_id=user_id,
            metadata={
                "wallet_type": wallet_type.value,
                "currency": currency.code,
                "opening_balance": wallet.balance
            }
        )
        return wallet

    def get_wallet(self, wallet_id: str) -> Optional[Wallet]:
        data = self.storage.load(self.table_name, wallet_id)
        return Wallet.from_dict(data) if data else None

    def get_user_wallets(self, user_id: str) -> List[Wallet]:
        return [Wallet.from_dict(data) for data in self.storage.find(self.table_name, {"user_id": user_id})]

    def get_primary_wallet(self, user_id: str) -> Wallet:
        """
        Raises:
            WalletNotFoundError: If the user has no active primary wallet
        """
        for wallet in self.get_user_wallets(user_id):
            if wallet.wallet_type == WalletType.PRIMARY and wallet.is_active:
                return wallet
        raise WalletNotFoundError("Primary wallet not found")

    def credit(
        self,
        wallet_id: str,
        amount: Decimal,
        reference: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Wallet:
        """Add funds to a wallet"""
        return self._apply_delta(wallet_id, amount, reference, expected_version)

    def debit(
        self,
        wallet_id: str,
        amount: Decimal,
        reference: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Wallet:
        """
        Remove funds from a wallet

        Raises:
            InsufficientFundsError: If the balance is lower than the amount
        """
        return self._apply_delta(wallet_id, -amount, reference, expected_version)

    def snapshot(self, user_id: str) -> List[Dict[str, Any]]:
        """Current wallet summaries for a user"""
        return [wallet.summary() for wallet in self.get_user_wallets(user_id)]

    def _apply_delta(
        self,
        wallet_id: str,
        delta: Decimal,
        reference: Optional[str],
        expected_version: Optional[int]
    ) -> Wallet:
        with self.storage.atomic():
            wallet = self.get_wallet(wallet_id)
            if not wallet or not wallet.is_active:
                raise WalletNotFoundError(f"Wallet {wallet_id} not found")

            if expected_version is not None and wallet.version != expected_version:
                raise ConcurrencyConflictError(
                    f"Wallet {wallet_id} changed during sync "
                    f"(expected version {expected_version}, found {wallet.version})"
                )

            change = Money(delta, wallet.currency)
            previous = wallet.balance_money
            new_balance = previous + change
            if new_balance.is_negative():
                raise InsufficientFundsError("Insufficient balance")

            wallet.balance = new_balance.amount
            wallet.version += 1
            wallet.updated_at = datetime.now(timezone.utc)
            self._save_wallet(wallet)

            self.audit_trail.log_event(
                event_type=AuditEventType.WALLET_BALANCE_CHANGED,
                entity_type="wallet",
                entity_id=wallet.id,
                user_id=wallet.user_id,
                metadata={
                    "previous_balance": previous.to_decimal_string(),
                    "new_balance": new_balance.to_decimal_string(),
                    "delta": change.to_decimal_string(),
                    "reference": reference,
                    "version": wallet.version
                }
            )

        log_action(
            self.logger, "debug", "Wallet balance changed",
            user_id=wallet.user_id, action="wallet_balance_changed",
            resource=f"wallet:{wallet.id}",
            extra={"delta": change.to_decimal_string(), "reference": reference}
        )
        return wallet

    def _save_wallet(self, wallet: Wallet) -> None:
        self.storage.save(self.table_name, wallet.id, wallet.to_dict())
