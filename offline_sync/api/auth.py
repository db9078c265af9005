"""
System container and authentication dependencies
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..storage import create_storage
from ..audit import AuditTrail
from ..users import UserDirectory
from ..wallets import WalletManager
from ..transactions import TransactionLedger
from ..offline_queue import OfflineQueue, QueuePolicy
from ..retry import RetryPolicy
from ..metrics import SyncMetrics
from ..sync import SyncEngine, OfflineDataService
from ..scheduler import RetryScheduler
from ..currency import Currency
from ..seed import seed_demo_data
from ..config import OfflineSyncConfig, get_config


class OfflineSyncSystem:
    """Offline sync service with all components initialized"""

    def __init__(self, config: Optional[OfflineSyncConfig] = None):
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.default_currency)

        # Storage and audit
        self.storage = create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)

        # Domain components
        self.users = UserDirectory(self.storage, self.audit_trail)
        self.wallets = WalletManager(self.storage, self.audit_trail)
        self.ledger = TransactionLedger(self.storage)
        self.queue = OfflineQueue(self.storage, QueuePolicy(
            max_queued_transactions=self.config.max_offline_transactions,
            max_transaction_amount=Decimal(self.config.max_offline_amount),
            amount_precision=self.currency.precision
        ))

        # Sync
        self.retry_policy = RetryPolicy(
            base_delay_ms=self.config.retry_base_delay_ms,
            max_retries=self.config.retry_max_attempts
        )
        self.metrics = SyncMetrics(
            window=self.config.metrics_window,
            slow_threshold_ms=self.config.slow_sync_threshold_ms
        )
        self.engine = SyncEngine(
            self.storage, self.users, self.wallets, self.ledger, self.queue,
            self.audit_trail, self.retry_policy, self.metrics
        )
        self.data_service = OfflineDataService(
            self.users, self.wallets, self.ledger, self.queue, self.audit_trail
        )
        self.scheduler = RetryScheduler(
            self.engine, self.queue, self.config.retry_scheduler_interval_seconds
        )

        if self.config.seed_demo_data:
            seed_demo_data(self, self.currency)

    def create_token(self, user_id: str) -> str:
        """Issue a bearer token for a user"""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(hours=self.config.jwt_expiry_hours)
        }
        return jwt.encode(payload, self.config.jwt_secret, algorithm=self.config.jwt_algorithm)

    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()


# Global system instance, created on first use
offline_system: Optional[OfflineSyncSystem] = None


def get_system() -> OfflineSyncSystem:
    global offline_system
    if offline_system is None:
        offline_system = OfflineSyncSystem()
    return offline_system


def set_system(system: Optional[OfflineSyncSystem]) -> None:
    """Replace the global system (tests, embedding)"""
    global offline_system
    offline_system = system


# JWT Security
security = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: OfflineSyncSystem = Depends(get_system)
) -> str:
    """Dependency that validates the bearer token and returns the user id"""
    if not system.config.auth_enabled:
        # Development mode: the caller names itself
        user_id = request.headers.get("X-User-Id")
        if not user_id:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return user_id

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(
            credentials.credentials,
            system.config.jwt_secret,
            algorithms=[system.config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id
