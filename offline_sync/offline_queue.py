"""
Offline Transaction Queue Module

Server-side record of transactions captured by devices while offline.
Each item moves through an explicit state machine:

    pending -> syncing -> synced
                       -> failed_retryable -> syncing -> ...
                       -> failed_permanent

``synced`` and ``failed_permanent`` are terminal. Items are never deleted.
The queue is persisted through the storage layer, keyed by user and
client-generated id, so it survives restarts when backed by SQLite.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, FrozenSet, Tuple
from enum import Enum

from .currency import parse_amount
from .storage import StorageInterface, StorageRecord
from .transactions import TransactionType
from .errors import (
    InvalidStateTransitionError, OfflineValidationError,
    QueueFullError, UnsupportedTransactionTypeError
)
from .logging_config import get_logger


class OfflineTransactionState(Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_PERMANENT = "failed_permanent"


ALLOWED_TRANSITIONS = {
    OfflineTransactionState.PENDING: {OfflineTransactionState.SYNCING},
    OfflineTransactionState.SYNCING: {
        OfflineTransactionState.SYNCED,
        OfflineTransactionState.FAILED_RETRYABLE,
        OfflineTransactionState.FAILED_PERMANENT,
    },
    OfflineTransactionState.FAILED_RETRYABLE: {OfflineTransactionState.SYNCING},
    OfflineTransactionState.SYNCED: set(),
    OfflineTransactionState.FAILED_PERMANENT: set(),
}

OUTSTANDING_STATES = (
    OfflineTransactionState.PENDING,
    OfflineTransactionState.SYNCING,
    OfflineTransactionState.FAILED_RETRYABLE,
)

# Client-facing status: the device only distinguishes these three
STATUS_LABELS = {
    OfflineTransactionState.PENDING: "pending",
    OfflineTransactionState.SYNCING: "pending",
    OfflineTransactionState.SYNCED: "synced",
    OfflineTransactionState.FAILED_RETRYABLE: "failed",
    OfflineTransactionState.FAILED_PERMANENT: "failed",
}


@dataclass
class OfflineTransaction(StorageRecord):
    """
    A transaction captured on a device while disconnected
    """
    user_id: str
    transaction_type: TransactionType
    amount: Decimal
    description: str
    timestamp: str  # capture time reported by the device
    state: OfflineTransactionState = OfflineTransactionState.PENDING
    retry_count: int = 0
    recipient_id: Optional[str] = None
    recipient_phone: Optional[str] = None
    next_retry_at: Optional[int] = None  # epoch ms
    last_error: Optional[str] = None
    server_transaction_id: Optional[str] = None
    synced_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def reference(self) -> str:
        """Ledger reference used for idempotent replay"""
        return f"OFFLINE-{self.id}"

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.state]

    @property
    def is_outstanding(self) -> bool:
        return self.state in OUTSTANDING_STATES

    def can_transition_to(self, new_state: OfflineTransactionState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['transaction_type'] = self.transaction_type.value
        result['state'] = self.state.value
        result['amount'] = str(self.amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OfflineTransaction':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['transaction_type'] = TransactionType(data['transaction_type'])
        data['state'] = OfflineTransactionState(data['state'])
        data['amount'] = Decimal(data['amount'])
        return cls(**data)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.transaction_type.value,
            "amount": str(self.amount),
            "status": self.status_label,
            "state": self.state.value,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at,
            "last_error": self.last_error
        }


@dataclass(frozen=True)
class QueuePolicy:
    """Limits on what a device may queue while offline"""
    max_queued_transactions: int = 10
    max_transaction_amount: Decimal = Decimal("1000")
    allowed_types: FrozenSet[TransactionType] = frozenset(TransactionType)
    amount_precision: int = 2  # decimal places of the wallet currency

    def validate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check a raw offline transaction and return its normalized fields

        Raises:
            OfflineValidationError: On a missing id or description, a bad amount,
                an amount over the limit, or a send without a recipient
            UnsupportedTransactionTypeError: On an unknown or disallowed type
        """
        if not isinstance(payload, dict):
            raise OfflineValidationError("Transaction data is required")

        tx_id = payload.get("id")
        if not tx_id or not str(tx_id).strip():
            raise OfflineValidationError("Transaction ID is required")

        try:
            transaction_type = TransactionType(payload.get("type"))
        except ValueError:
            raise UnsupportedTransactionTypeError("Invalid transaction type")
        if transaction_type not in self.allowed_types:
            raise UnsupportedTransactionTypeError(
                f"Unsupported transaction type: {transaction_type.value}"
            )

        try:
            amount = parse_amount(payload.get("amount"))
        except ValueError:
            raise OfflineValidationError("Invalid amount")
        if amount <= 0:
            raise OfflineValidationError("Invalid amount")
        if amount > self.max_transaction_amount:
            raise OfflineValidationError("Amount exceeds offline transaction limit")
        # No more decimal places than the wallet currency carries
        if amount != amount.quantize(Decimal(1).scaleb(-self.amount_precision)):
            raise OfflineValidationError("Invalid amount")

        description = payload.get("description")
        if not description or not str(description).strip():
            raise OfflineValidationError("Description is required")

        recipient_id = payload.get("recipient_id") or None
        recipient_phone = payload.get("recipient_phone") or None
        if transaction_type == TransactionType.SEND and not (recipient_id or recipient_phone):
            raise OfflineValidationError("Recipient is required for send transactions")

        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise OfflineValidationError("Metadata must be an object")

        timestamp = payload.get("timestamp")
        return {
            "id": str(tx_id).strip(),
            "transaction_type": transaction_type,
            "amount": amount,
            "description": str(description).strip(),
            "recipient_id": str(recipient_id) if recipient_id else None,
            "recipient_phone": str(recipient_phone) if recipient_phone else None,
            "timestamp": str(timestamp) if timestamp else None,
            "retry_count": self._retry_count(payload),
            "metadata": metadata,
        }

    @staticmethod
    def _retry_count(payload: Dict[str, Any]) -> int:
        try:
            return max(int(payload.get("retry_count") or 0), 0)
        except (TypeError, ValueError):
            raise OfflineValidationError("Invalid retry count")


class OfflineQueue:
    """Persistent per-user queue of offline transactions"""

    def __init__(self, storage: StorageInterface, policy: Optional[QueuePolicy] = None):
        self.storage = storage
        self.policy = policy or QueuePolicy()
        self.table_name = "offline_transactions"
        self.logger = get_logger("offline_sync.queue")

    @staticmethod
    def _key(user_id: str, tx_id: str) -> str:
        return f"{user_id}:{tx_id}"

    def enqueue(self, user_id: str, payload: Dict[str, Any]) -> OfflineTransaction:
        """
        Queue an offline transaction after policy validation

        Re-queueing an id the user already queued returns the stored item
        unchanged.

        Raises:
            OfflineValidationError, UnsupportedTransactionTypeError: On invalid payloads
            QueueFullError: When the user already has the maximum outstanding items
        """
        return self.add(user_id, payload)[0]

    def add(self, user_id: str, payload: Dict[str, Any]) -> Tuple[OfflineTransaction, bool]:
        """Like enqueue, but also reports whether the item is new"""
        fields = self.policy.validate(payload)

        with self.storage.atomic():
            existing = self.get(user_id, fields["id"])
            if existing:
                return existing, False

            if len(self.outstanding_for_user(user_id)) >= self.policy.max_queued_transactions:
                raise QueueFullError(
                    f"Offline queue is full ({self.policy.max_queued_transactions} transactions)"
                )

            item = self._build(user_id, fields)
            self._save(item)

        self.logger.info(f"Queued offline {item.transaction_type.value} {item.id} for user {user_id}")
        return item, True

    def register(self, user_id: str, fields: Dict[str, Any]) -> OfflineTransaction:
        """
        Record an already validated item submitted directly in a sync batch

        Items arriving through sync were queued on the device, where the
        queue cap already applied, so the cap is not checked again here.
        """
        with self.storage.atomic():
            existing = self.get(user_id, fields["id"])
            if existing:
                return existing
            item = self._build(user_id, fields)
            self._save(item)
            return item

    def get(self, user_id: str, tx_id: str) -> Optional[OfflineTransaction]:
        data = self.storage.load(self.table_name, self._key(user_id, tx_id))
        return OfflineTransaction.from_dict(data) if data else None

    def get_user_queue(self, user_id: str) -> List[OfflineTransaction]:
        """All of a user's items in the order they were queued"""
        return [
            OfflineTransaction.from_dict(data)
            for data in self.storage.find(self.table_name, {"user_id": user_id})
        ]

    def outstanding_for_user(self, user_id: str) -> List[OfflineTransaction]:
        return [item for item in self.get_user_queue(user_id) if item.is_outstanding]

    def pending_for_user(self, user_id: str) -> List[OfflineTransaction]:
        return [item for item in self.get_user_queue(user_id) if item.status_label == "pending"]

    def failed_for_user(self, user_id: str) -> List[OfflineTransaction]:
        return [item for item in self.get_user_queue(user_id) if item.status_label == "failed"]

    def due_for_retry(self, now: int) -> List[OfflineTransaction]:
        """Retryable failures whose backoff has elapsed, earliest deadline first"""
        due = [
            OfflineTransaction.from_dict(data)
            for data in self.storage.find(
                self.table_name, {"state": OfflineTransactionState.FAILED_RETRYABLE.value}
            )
        ]
        due = [item for item in due if item.next_retry_at is None or item.next_retry_at <= now]
        due.sort(key=lambda item: item.next_retry_at or 0)
        return due

    def mark_syncing(self, item: OfflineTransaction) -> OfflineTransaction:
        return self._transition(item, OfflineTransactionState.SYNCING)

    def mark_synced(self, item: OfflineTransaction, server_transaction_id: str, synced_at: str) -> OfflineTransaction:
        return self._transition(
            item, OfflineTransactionState.SYNCED,
            server_transaction_id=server_transaction_id,
            synced_at=synced_at,
            next_retry_at=None,
            last_error=None
        )

    def mark_failed(
        self,
        item: OfflineTransaction,
        error: str,
        retryable: bool,
        next_retry_at: Optional[int]
    ) -> OfflineTransaction:
        new_state = (
            OfflineTransactionState.FAILED_RETRYABLE if retryable
            else OfflineTransactionState.FAILED_PERMANENT
        )
        with self.storage.atomic():
            current = self._current(item)
            return self._transition(
                current, new_state,
                retry_count=current.retry_count + 1,
                last_error=error,
                next_retry_at=next_retry_at if retryable else None
            )

    def _current(self, item: OfflineTransaction) -> OfflineTransaction:
        return self.get(item.user_id, item.id) or item

    def _transition(self, item: OfflineTransaction, new_state: OfflineTransactionState, **changes) -> OfflineTransaction:
        """
        Move an item to a new state, checked against the stored copy

        Another sync run may have moved the item since the caller read it;
        in that case the stored state decides and the move is refused.
        """
        with self.storage.atomic():
            current = self._current(item)
            if not current.can_transition_to(new_state):
                raise InvalidStateTransitionError(
                    f"Offline transaction {current.id} cannot move from "
                    f"{current.state.value} to {new_state.value}"
                )
            current.state = new_state
            for name, value in changes.items():
                setattr(current, name, value)
            current.updated_at = datetime.now(timezone.utc)
            self._save(current)
        return current

    def _build(self, user_id: str, fields: Dict[str, Any]) -> OfflineTransaction:
        now = datetime.now(timezone.utc)
        return OfflineTransaction(
            id=fields["id"],
            created_at=now,
            updated_at=now,
            user_id=user_id,
            transaction_type=fields["transaction_type"],
            amount=fields["amount"],
            description=fields["description"],
            timestamp=fields.get("timestamp") or now.isoformat(),
            retry_count=fields.get("retry_count", 0),
            recipient_id=fields.get("recipient_id"),
            recipient_phone=fields.get("recipient_phone"),
            metadata=fields.get("metadata") or {}
        )

    def _save(self, item: OfflineTransaction) -> None:
        self.storage.save(self.table_name, self._key(item.user_id, item.id), item.to_dict())
