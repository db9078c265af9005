"""
Offline transaction endpoints
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import ValidationError

from .auth import OfflineSyncSystem, get_system, get_current_user
from .schemas import (
    OfflineTransactionModel, SyncRequest, QueueRequest, SyncResponse, QueueResponse
)
from ..audit import AuditEventType
from ..errors import OfflineSyncError, UserNotFoundError
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("offline_sync.api")


def _raise_http(e: Exception, action: str):
    """Translate a service error into an HTTPException"""
    if isinstance(e, UserNotFoundError):
        raise HTTPException(status_code=401, detail=str(e))
    if isinstance(e, OfflineSyncError):
        raise HTTPException(status_code=400, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    raise HTTPException(status_code=500, detail="Internal server error")


def _normalize(item):
    """camelCase or snake_case device payload -> snake_case dict"""
    if not isinstance(item, dict):
        return item
    try:
        return OfflineTransactionModel.model_validate(item).to_payload()
    except ValidationError:
        return item


def _estimated_sync_time() -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=60)).isoformat()


@router.get("/status")
async def get_sync_status(
    user_id: str = Depends(get_current_user),
    system: OfflineSyncSystem = Depends(get_system)
):
    """Sync status and outstanding offline transactions"""
    try:
        return system.data_service.get_sync_status(user_id)
    except Exception as e:
        _raise_http(e, "Sync status")


@router.post("/sync")
async def sync_transactions(
    request: SyncRequest,
    user_id: str = Depends(get_current_user),
    system: OfflineSyncSystem = Depends(get_system)
):
    """Apply a batch of offline transactions"""
    if not isinstance(request.transactions, list):
        raise HTTPException(status_code=400, detail="Invalid transactions data")

    try:
        report = system.engine.sync_batch(
            user_id, [_normalize(item) for item in request.transactions]
        )
        return SyncResponse.model_validate(report.to_dict()).to_wire()
    except Exception as e:
        _raise_http(e, "Offline sync")


@router.get("/data")
async def get_offline_data(
    user_id: str = Depends(get_current_user),
    system: OfflineSyncSystem = Depends(get_system)
):
    """Snapshot of wallets, history and contacts for offline use"""
    try:
        return system.data_service.get_offline_data(user_id)
    except Exception as e:
        _raise_http(e, "Offline data")


@router.post("/queue", response_model=QueueResponse)
async def queue_transaction(
    request: QueueRequest,
    http_request: Request,
    user_id: str = Depends(get_current_user),
    system: OfflineSyncSystem = Depends(get_system)
):
    """Queue a transaction on the server for a later sync"""
    if not request.transaction:
        raise HTTPException(status_code=400, detail="Transaction data is required")

    try:
        system.users.require_active_user(user_id)
        item, created = system.queue.add(user_id, _normalize(request.transaction))
        outstanding = [queued.id for queued in system.queue.outstanding_for_user(user_id)]
        position = outstanding.index(item.id) + 1 if item.id in outstanding else None

        if not created:
            return QueueResponse(
                success=True,
                queued_transaction_id=item.id,
                status=item.status_label,
                duplicate=True,
                queue_position=position,
                estimated_sync_time=_estimated_sync_time() if position else None
            )

        client_ip = http_request.client.host if http_request.client else None
        system.audit_trail.log_event(
            event_type=AuditEventType.OFFLINE_TRANSACTION_QUEUED,
            entity_type="offline_transaction",
            entity_id=item.id,
            user_id=user_id,
            severity="low",
            metadata={
                "transaction_type": item.transaction_type.value,
                "amount": str(item.amount),
                "ip_address": client_ip,
                "user_agent": http_request.headers.get("user-agent")
            }
        )
        log_action(
            logger, "info", f"Offline transaction queued: {item.id}",
            user_id=user_id, action="offline_transaction_queued",
            resource=f"offline_transaction:{item.id}",
            extra={"ip_address": client_ip}
        )

        return QueueResponse(
            success=True,
            queued_transaction_id=item.id,
            status=item.status_label,
            queue_position=position,
            estimated_sync_time=_estimated_sync_time()
        )
    except Exception as e:
        _raise_http(e, "Queue offline transaction")


@router.get("/metrics")
async def get_sync_metrics(
    user_id: str = Depends(get_current_user),
    system: OfflineSyncSystem = Depends(get_system)
):
    """Recent sync run statistics"""
    return {
        "summary": system.metrics.summary(),
        "recent": system.metrics.recent(user_id=user_id),
        "scheduler": system.scheduler.stats()
    }
