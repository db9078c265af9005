"""
Pydantic schemas for API requests and responses

Sync payloads travel in camelCase (``localId``, ``retryAfter``); requests
also accept the snake_case field names.
"""

from typing import Dict, List, Optional, Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Offline transaction as captured on the device. Loosely typed; each item is
# validated by QueuePolicy during the sync.
class OfflineTransactionModel(CamelModel):
    id: Any = None
    type: Any = None
    amount: Any = None
    description: Any = None
    recipient_id: Any = None
    recipient_phone: Any = None
    timestamp: Any = None
    retry_count: Any = 0
    metadata: Any = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump()


class SyncRequest(CamelModel):
    transactions: Any = None


class QueueRequest(CamelModel):
    transaction: Optional[Dict[str, Any]] = None


class SyncItemResultModel(CamelModel):
    local_id: Any = None
    status: str
    server_transaction_id: Optional[str] = None
    synced_at: Optional[str] = None
    duplicate: Optional[bool] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None
    retryable: Optional[bool] = None
    retry_count: Optional[int] = None


class WalletModel(CamelModel):
    id: str
    wallet_type: str
    balance: str
    currency: str


class SyncResponse(CamelModel):
    sync_results: List[SyncItemResultModel]
    wallets: List[WalletModel]
    synced_at: str

    def to_wire(self) -> Dict[str, Any]:
        # exclude_unset keeps the success/failure shapes distinct
        return self.model_dump(by_alias=True, exclude_unset=True)


class QueueResponse(BaseModel):
    success: bool
    queued_transaction_id: str
    status: str
    duplicate: bool = False
    queue_position: Optional[int] = None  # None once the item has settled
    estimated_sync_time: Optional[str] = None
