"""
Transaction Ledger Module

Server-side record of every money movement applied to wallets. References
are unique: an offline transaction is recorded under ``OFFLINE-{client id}``,
so looking up that reference tells the sync engine whether the item was
already applied.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .errors import DuplicateReferenceError
from .logging_config import get_logger


class TransactionType(Enum):
    """Kinds of money movement"""
    SEND = "send"          # Wallet to another user's wallet
    RECEIVE = "receive"    # Incoming funds recorded by the receiver
    TOPUP = "topup"        # Cash-in at an agent
    WITHDRAW = "withdraw"  # Cash-out at an agent
    PAYMENT = "payment"    # Merchant or bill payment


class TransactionStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class LedgerTransaction(StorageRecord):
    """
    A money movement applied to one or two wallets
    """
    transaction_type: TransactionType
    from_wallet_id: Optional[str]
    to_wallet_id: Optional[str]
    amount: Money
    description: str
    reference: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.from_wallet_id and not self.to_wallet_id:
            raise ValueError("Transaction must touch at least one wallet")
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "transaction_type": self.transaction_type.value,
            "from_wallet_id": self.from_wallet_id,
            "to_wallet_id": self.to_wallet_id,
            "amount": self.amount.to_decimal_string(),
            "currency": self.currency.code,
            "description": self.description,
            "reference": self.reference,
            "status": self.status.value,
            "metadata": self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerTransaction':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_type=TransactionType(data['transaction_type']),
            from_wallet_id=data.get('from_wallet_id'),
            to_wallet_id=data.get('to_wallet_id'),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            description=data['description'],
            reference=data['reference'],
            status=TransactionStatus(data['status']),
            metadata=data.get('metadata', {})
        )


class TransactionLedger:
    """Append-only ledger of applied transactions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self.logger = get_logger("offline_sync.transactions")

    def record(
        self,
        transaction_type: TransactionType,
        amount: Money,
        description: str,
        reference: str,
        from_wallet_id: Optional[str] = None,
        to_wallet_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LedgerTransaction:
        """
        Append a completed transaction

        Raises:
            DuplicateReferenceError: If the reference has been recorded before
        """
        with self.storage.atomic():
            if self.find_by_reference(reference):
                raise DuplicateReferenceError(f"Reference {reference} already recorded")

            now = datetime.now(timezone.utc)
            transaction = LedgerTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                transaction_type=transaction_type,
                from_wallet_id=from_wallet_id,
                to_wallet_id=to_wallet_id,
                amount=amount,
                description=description,
                reference=reference,
                metadata=metadata or {}
            )
            self.storage.save(self.table_name, transaction.id, transaction.to_dict())

        self.logger.debug(f"Recorded {transaction_type.value} {amount.to_string()} as {reference}")
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return LedgerTransaction.from_dict(data) if data else None

    def find_by_reference(self, reference: str) -> Optional[LedgerTransaction]:
        matches = self.storage.find(self.table_name, {"reference": reference})
        return LedgerTransaction.from_dict(matches[0]) if matches else None

    def get_wallet_transactions(self, wallet_id: str, limit: Optional[int] = None) -> List[LedgerTransaction]:
        """Transactions touching a wallet, newest first"""
        transactions = [
            LedgerTransaction.from_dict(data)
            for data in self.storage.load_all(self.table_name)
            if data.get('from_wallet_id') == wallet_id or data.get('to_wallet_id') == wallet_id
        ]
        transactions.reverse()
        if limit:
            transactions = transactions[:limit]
        return transactions

    def get_recent_for_wallets(
        self,
        wallet_ids: List[str],
        per_wallet: int = 10,
        limit: int = 20
    ) -> List[LedgerTransaction]:
        """
        Newest transactions across several wallets

        Takes up to ``per_wallet`` from each wallet, drops transfers counted
        twice (both wallets belong to the caller), then keeps the newest
        ``limit``.
        """
        seen = {}
        for wallet_id in wallet_ids:
            for transaction in self.get_wallet_transactions(wallet_id, per_wallet):
                seen[transaction.id] = transaction

        recent = sorted(seen.values(), key=lambda t: t.created_at, reverse=True)
        return recent[:limit]
