"""
Offline Sync Engine

Reconciles batches of transactions queued on a device against the server
ledger. Every item is applied on its own: balance changes, the ledger record
and the queue transition for one item commit together or not at all, and a
failure is reported for that item while the rest of the batch carries on.

Replays are safe. The ledger reference ``OFFLINE-{client id}`` is unique, so
an item that was already applied is reported as a duplicate success with
its original server transaction id instead of moving money again.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any

from .audit import AuditTrail, AuditEventType
from .currency import Money
from .errors import (
    InvalidStateTransitionError, OfflineSyncError, OfflineValidationError,
    RecipientNotFoundError, WalletNotFoundError
)
from .logging_config import get_logger, log_action
from .metrics import SyncMetrics
from .offline_queue import OfflineQueue, OfflineTransaction, OfflineTransactionState
from .retry import RetryPolicy, now_ms
from .storage import StorageInterface
from .transactions import TransactionLedger, LedgerTransaction, TransactionType
from .users import UserDirectory
from .wallets import WalletManager, Wallet


CREDIT_TYPES = (TransactionType.RECEIVE, TransactionType.TOPUP)
DEBIT_TYPES = (TransactionType.PAYMENT, TransactionType.WITHDRAW)
SETTLED_STATES = (OfflineTransactionState.SYNCED, OfflineTransactionState.FAILED_PERMANENT)


@dataclass
class SyncItemResult:
    """Outcome of one offline transaction in a sync batch"""
    local_id: Optional[str]
    status: str  # "success" or "failed"
    server_transaction_id: Optional[str] = None
    synced_at: Optional[str] = None
    duplicate: bool = False
    error: Optional[str] = None
    retry_after: Optional[int] = None
    retryable: bool = False
    retry_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> Dict[str, Any]:
        if self.succeeded:
            return {
                "local_id": self.local_id,
                "status": self.status,
                "server_transaction_id": self.server_transaction_id,
                "synced_at": self.synced_at,
                "duplicate": self.duplicate
            }
        return {
            "local_id": self.local_id,
            "status": self.status,
            "error": self.error,
            "retry_after": self.retry_after,
            "retryable": self.retryable,
            "retry_count": self.retry_count
        }


@dataclass
class SyncReport:
    results: List[SyncItemResult]
    wallets: List[Dict[str, Any]]
    synced_at: str
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.succeeded)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def duplicates(self) -> int:
        return sum(1 for result in self.results if result.duplicate)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_results": [result.to_dict() for result in self.results],
            "wallets": self.wallets,
            "synced_at": self.synced_at
        }


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncEngine:
    """Applies queued offline transactions to wallets and the ledger"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserDirectory,
        wallets: WalletManager,
        ledger: TransactionLedger,
        queue: OfflineQueue,
        audit_trail: AuditTrail,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[SyncMetrics] = None
    ):
        self.storage = storage
        self.users = users
        self.wallets = wallets
        self.ledger = ledger
        self.queue = queue
        self.audit_trail = audit_trail
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or SyncMetrics()
        self.logger = get_logger("offline_sync.sync")

    def sync_batch(self, user_id: str, transactions: List[Dict[str, Any]]) -> SyncReport:
        """
        Apply a batch of offline transactions in submission order

        Args:
            user_id: Owner of the transactions
            transactions: Raw transaction payloads as sent by the device

        Returns:
            SyncReport with one result per submitted item and the user's
            wallet balances after the batch

        Raises:
            UserNotFoundError: If the user is unknown or inactive
        """
        started = time.perf_counter()
        self.users.require_active_user(user_id)

        results = [self._sync_payload(user_id, payload) for payload in transactions]

        report = SyncReport(
            results=results,
            wallets=self.wallets.snapshot(user_id),
            synced_at=_utc_now_iso(),
            duration_ms=(time.perf_counter() - started) * 1000
        )
        self._finish_run(user_id, report, trigger="client")
        return report

    def retry_item(self, user_id: str, tx_id: str) -> Optional[SyncItemResult]:
        """
        Re-run one queued item that failed with a retryable error

        Returns None when the item is unknown or no longer retryable.
        """
        item = self.queue.get(user_id, tx_id)
        if not item or item.state != OfflineTransactionState.FAILED_RETRYABLE:
            return None

        started = time.perf_counter()
        result = self._attempt(item)
        report = SyncReport(
            results=[result],
            wallets=[],
            synced_at=_utc_now_iso(),
            duration_ms=(time.perf_counter() - started) * 1000
        )
        self._finish_run(user_id, report, trigger="scheduler")
        return result

    def _sync_payload(self, user_id: str, payload: Any) -> SyncItemResult:
        local_id = payload.get("id") if isinstance(payload, dict) else None

        try:
            fields = self.queue.policy.validate(payload)
        except OfflineSyncError as e:
            # Invalid payloads never enter the queue, so there is no state to update
            self._log_rejected(user_id, local_id, str(e), retryable=False)
            return SyncItemResult(local_id=local_id, status="failed", error=str(e))

        item = self.queue.register(user_id, fields)

        if item.state in SETTLED_STATES:
            return self._stored_result(item)

        return self._attempt(item)

    def _stored_result(self, item: OfflineTransaction) -> SyncItemResult:
        """Result for an item whose outcome is already recorded in the queue"""
        if item.state == OfflineTransactionState.SYNCED:
            return SyncItemResult(
                local_id=item.id,
                status="success",
                server_transaction_id=item.server_transaction_id,
                synced_at=item.synced_at,
                duplicate=True
            )
        if item.state == OfflineTransactionState.FAILED_PERMANENT:
            return SyncItemResult(
                local_id=item.id,
                status="failed",
                error=item.last_error,
                retry_count=item.retry_count
            )

        # Still outstanding: another run holds it or has scheduled a retry
        if item.state == OfflineTransactionState.FAILED_RETRYABLE and item.last_error:
            error = item.last_error
        else:
            error = "Transaction is already being synced"
        return SyncItemResult(
            local_id=item.id,
            status="failed",
            error=error,
            retry_after=item.next_retry_at or self.retry_policy.retry_after(now_ms(), item.retry_count),
            retryable=True,
            retry_count=item.retry_count
        )

    def _settled_elsewhere(self, item: OfflineTransaction) -> SyncItemResult:
        """Report the stored outcome of an item another sync run moved on"""
        current = self.queue.get(item.user_id, item.id) or item
        log_action(
            self.logger, "warning",
            f"Offline transaction {current.reference} was moved to {current.state.value} by another sync run",
            user_id=current.user_id, action="offline_sync_conflict",
            resource=f"offline_transaction:{current.id}"
        )
        return self._stored_result(current)

    def _attempt(self, item: OfflineTransaction) -> SyncItemResult:
        # A SYNCING item was interrupted mid-attempt; it resumes without a transition
        if item.state != OfflineTransactionState.SYNCING:
            try:
                item = self.queue.mark_syncing(item)
            except InvalidStateTransitionError:
                return self._settled_elsewhere(item)

        retry_count = item.retry_count
        try:
            with self.storage.atomic():
                transaction, duplicate = self._apply_once(item)
                synced_at = _utc_now_iso()
                self.queue.mark_synced(item, transaction.id, synced_at)
                self.audit_trail.log_event(
                    event_type=AuditEventType.OFFLINE_TRANSACTION_APPLIED,
                    entity_type="offline_transaction",
                    entity_id=item.id,
                    user_id=item.user_id,
                    metadata={
                        "reference": item.reference,
                        "server_transaction_id": transaction.id,
                        "duplicate": duplicate
                    }
                )
        except InvalidStateTransitionError:
            return self._settled_elsewhere(item)
        except OfflineSyncError as e:
            return self._fail(item, e, retry_count)
        except Exception as e:
            self.logger.error(f"Unexpected error syncing {item.reference}: {e}", exc_info=True)
            return self._fail(item, e, retry_count, retryable=True)

        log_action(
            self.logger, "info", f"Applied offline {item.transaction_type.value} {item.reference}",
            user_id=item.user_id, action="offline_transaction_applied",
            resource=f"offline_transaction:{item.id}",
            extra={"server_transaction_id": transaction.id, "duplicate": duplicate}
        )
        return SyncItemResult(
            local_id=item.id,
            status="success",
            server_transaction_id=transaction.id,
            synced_at=synced_at,
            duplicate=duplicate
        )

    def _apply_once(self, item: OfflineTransaction):
        """Apply the item unless its reference is already in the ledger"""
        existing = self.ledger.find_by_reference(item.reference)
        if existing:
            if existing.metadata.get("user_id") != item.user_id:
                raise OfflineValidationError("Transaction ID is already in use")
            return existing, True
        return self._apply(item), False

    def _apply(self, item: OfflineTransaction) -> LedgerTransaction:
        wallet = self.wallets.get_primary_wallet(item.user_id)
        amount = Money(item.amount, wallet.currency)
        if amount.amount != item.amount:
            raise OfflineValidationError("Invalid amount")
        metadata = dict(item.metadata)
        metadata.update({
            "synced_from_offline": True,
            "original_timestamp": item.timestamp,
            "offline_transaction_id": item.id,
            "user_id": item.user_id
        })

        from_wallet_id = None
        to_wallet_id = None

        if item.transaction_type == TransactionType.SEND:
            recipient = self._resolve_recipient(item)
            if recipient.id == wallet.id or recipient.user_id == item.user_id:
                raise OfflineValidationError("Cannot send money to yourself")
            if recipient.currency != wallet.currency:
                raise OfflineValidationError("Recipient wallet uses a different currency")

            self.wallets.debit(wallet.id, amount.amount, item.reference, expected_version=wallet.version)
            self.wallets.credit(recipient.id, amount.amount, item.reference, expected_version=recipient.version)
            from_wallet_id, to_wallet_id = wallet.id, recipient.id
            metadata["recipient_user_id"] = recipient.user_id

        elif item.transaction_type in CREDIT_TYPES:
            self.wallets.credit(wallet.id, amount.amount, item.reference, expected_version=wallet.version)
            to_wallet_id = wallet.id

        elif item.transaction_type in DEBIT_TYPES:
            self.wallets.debit(wallet.id, amount.amount, item.reference, expected_version=wallet.version)
            from_wallet_id = wallet.id

        return self.ledger.record(
            transaction_type=item.transaction_type,
            amount=amount,
            description=item.description,
            reference=item.reference,
            from_wallet_id=from_wallet_id,
            to_wallet_id=to_wallet_id,
            metadata=metadata
        )

    def _resolve_recipient(self, item: OfflineTransaction) -> Wallet:
        recipient_user_id = item.recipient_id
        if not recipient_user_id and item.recipient_phone:
            user = self.users.find_by_phone(item.recipient_phone)
            recipient_user_id = user.id if user else None

        if not recipient_user_id:
            raise RecipientNotFoundError("Recipient wallet not found")

        try:
            return self.wallets.get_primary_wallet(recipient_user_id)
        except WalletNotFoundError:
            raise RecipientNotFoundError("Recipient wallet not found")

    def _fail(
        self,
        item: OfflineTransaction,
        error: Exception,
        retry_count: int,
        retryable: Optional[bool] = None
    ) -> SyncItemResult:
        decision = self.retry_policy.decide(error, retry_count, now_ms(), retryable=retryable)
        message = str(error) if isinstance(error, OfflineSyncError) else "Internal error"
        try:
            item = self.queue.mark_failed(item, message, decision.retryable, decision.retry_after)
        except InvalidStateTransitionError:
            return self._settled_elsewhere(item)

        self._log_rejected(item.user_id, item.id, message, decision.retryable)
        if decision.retryable:
            self.audit_trail.log_event(
                event_type=AuditEventType.OFFLINE_RETRY_SCHEDULED,
                entity_type="offline_transaction",
                entity_id=item.id,
                user_id=item.user_id,
                metadata={"retry_count": item.retry_count, "retry_after": decision.retry_after}
            )
            log_action(
                self.logger, "info", f"Retry scheduled for {item.reference} in {decision.backoff_ms}ms",
                user_id=item.user_id, action="offline_retry_scheduled",
                resource=f"offline_transaction:{item.id}",
                extra={"retry_count": item.retry_count, "retry_after": decision.retry_after}
            )

        return SyncItemResult(
            local_id=item.id,
            status="failed",
            error=message,
            retry_after=decision.retry_after,
            retryable=decision.retryable,
            retry_count=item.retry_count
        )

    def _log_rejected(self, user_id: str, local_id: Optional[str], error: str, retryable: bool) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.OFFLINE_TRANSACTION_REJECTED,
            entity_type="offline_transaction",
            entity_id=str(local_id or "unknown"),
            user_id=user_id,
            severity="low" if retryable else "medium",
            metadata={"error": error, "retryable": retryable}
        )
        log_action(
            self.logger, "warning", f"Offline transaction {local_id} rejected: {error}",
            user_id=user_id, action="offline_transaction_rejected",
            resource=f"offline_transaction:{local_id}",
            extra={"retryable": retryable}
        )

    def _finish_run(self, user_id: str, report: SyncReport, trigger: str) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.OFFLINE_SYNC_COMPLETED,
            entity_type="user",
            entity_id=user_id,
            user_id=user_id,
            metadata={
                "trigger": trigger,
                "items": len(report.results),
                "succeeded": report.succeeded,
                "failed": report.failed,
                "duplicates": report.duplicates,
                "synced_at": report.synced_at
            }
        )
        self.metrics.record(
            user_id=user_id,
            item_count=len(report.results),
            succeeded=report.succeeded,
            failed=report.failed,
            duplicates=report.duplicates,
            duration_ms=report.duration_ms,
            trigger=trigger
        )
        log_action(
            self.logger, "info",
            f"Sync finished: {report.succeeded} succeeded, {report.failed} failed",
            user_id=user_id, action="offline_sync_completed",
            extra={"trigger": trigger, "duration_ms": round(report.duration_ms, 3)}
        )


class OfflineDataService:
    """Read-side views for devices: the offline bundle and the sync status"""

    def __init__(
        self,
        users: UserDirectory,
        wallets: WalletManager,
        ledger: TransactionLedger,
        queue: OfflineQueue,
        audit_trail: AuditTrail
    ):
        self.users = users
        self.wallets = wallets
        self.ledger = ledger
        self.queue = queue
        self.audit_trail = audit_trail

    def last_sync_at(self, user_id: str) -> Optional[str]:
        """Time of the user's most recent completed sync run, if any"""
        events = self.audit_trail.get_events_by_type(
            AuditEventType.OFFLINE_SYNC_COMPLETED, user_id=user_id, limit=1
        )
        if not events:
            return None
        return events[-1].metadata.get("synced_at") or events[-1].created_at.isoformat()

    def get_offline_data(self, user_id: str) -> Dict[str, Any]:
        """
        Everything a device needs to keep working without a connection

        Raises:
            UserNotFoundError: If the user is unknown or inactive
        """
        user = self.users.require_active_user(user_id)
        wallets = self.wallets.get_user_wallets(user_id)
        recent = self.ledger.get_recent_for_wallets([wallet.id for wallet in wallets])
        policy = self.queue.policy

        return {
            "user": {
                "id": user.id,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "phone_number": user.phone_number,
                "current_role": user.current_role.value
            },
            "wallets": [wallet.summary() for wallet in wallets],
            "recent_transactions": [self._transaction_view(tx) for tx in recent],
            "contacts": [
                {"id": contact.id, "name": contact.name, "phone": contact.phone}
                for contact in self.users.get_contacts(user_id)
            ],
            "last_sync_at": _utc_now_iso(),
            "capabilities": {
                "can_send_money": TransactionType.SEND in policy.allowed_types,
                "can_receive_money": TransactionType.RECEIVE in policy.allowed_types,
                "can_check_balance": True,
                "can_view_history": True,
                "max_offline_transaction_amount": str(policy.max_transaction_amount),
                "max_offline_transactions": policy.max_queued_transactions
            }
        }

    def get_sync_status(self, user_id: str) -> Dict[str, Any]:
        """
        Raises:
            UserNotFoundError: If the user is unknown or inactive
        """
        self.users.require_active_user(user_id)
        items = self.queue.get_user_queue(user_id)

        return {
            "is_online": True,
            "last_sync_at": self.last_sync_at(user_id),
            "pending_transactions": sum(1 for item in items if item.status_label == "pending"),
            "failed_transactions": sum(1 for item in items if item.status_label == "failed"),
            "queued_transactions": [item.summary() for item in items]
        }

    @staticmethod
    def _transaction_view(transaction: LedgerTransaction) -> Dict[str, Any]:
        return {
            "id": transaction.id,
            "type": transaction.transaction_type.value,
            "amount": transaction.amount.to_decimal_string(),
            "currency": transaction.currency.code,
            "description": transaction.description,
            "status": transaction.status.value,
            "reference": transaction.reference,
            "from_wallet_id": transaction.from_wallet_id,
            "to_wallet_id": transaction.to_wallet_id,
            "created_at": transaction.created_at.isoformat()
        }
