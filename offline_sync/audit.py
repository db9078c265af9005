"""
Audit Trail Module

Hash-chained audit log (SHA-256) for every queue, sync and wallet state
change. Each event stores the hash of its predecessor, so deleting or
editing a stored event breaks the chain and is caught by verify_integrity().
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Offline queue events
    OFFLINE_TRANSACTION_QUEUED = "offline_transaction_queued"
    OFFLINE_TRANSACTION_APPLIED = "offline_transaction_applied"
    OFFLINE_TRANSACTION_REJECTED = "offline_transaction_rejected"
    OFFLINE_RETRY_SCHEDULED = "offline_retry_scheduled"
    OFFLINE_SYNC_COMPLETED = "offline_sync_completed"

    # Wallet events
    WALLET_CREATED = "wallet_created"
    WALLET_BALANCE_CHANGED = "wallet_balance_changed"

    # User events
    USER_CREATED = "user_created"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """Immutable audit event linked to its predecessor by hash"""
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None
    severity: str = "low"

    def __post_init__(self):
        self.metadata = _json_safe(self.metadata or {})

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'severity': self.severity,
            'metadata': self.metadata
        }
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Append-only, hash-chained audit trail
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name

    def _last_hash(self) -> str:
        # Storage keeps insertion order, so the last record is the chain head
        events = self.storage.load_all(self.table_name)
        return events[-1].get('current_hash', "") if events else ""

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        severity: str = "low"
    ) -> AuditEvent:
        """
        Append an event to the chain

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited (wallet, offline_transaction, ...)
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of the user the event belongs to
            severity: low, medium or high

        Returns:
            The stored AuditEvent
        """
        # The storage lock orders audit writes with any surrounding atomic block
        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash(),
                current_hash="",
                metadata=metadata or {},
                user_id=user_id,
                severity=severity
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            return event

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """All events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        return [AuditEvent.from_dict(data) for data in events_data]

    def get_events_by_type(
        self,
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Events of one type, optionally for a single user, oldest first"""
        filters = {'event_type': event_type.value}
        if user_id:
            filters['user_id'] = user_id
        events = [AuditEvent.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if limit:
            events = events[-limit:]
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every event hash and the continuity of the chain

        Returns:
            Dictionary with valid flag, event count, hash errors and chain breaks
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
