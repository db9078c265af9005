"""
Device-side offline queue and sync client.

``LocalQueue`` keeps transactions captured without connectivity in a JSON
file, so they survive app restarts. ``SyncClient`` pushes due items to the
sync API over httpx and folds the per-item results back into the queue.
"""

import json
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

import httpx

from .errors import OfflineSyncError, QueueFullError, SyncUnavailableError
from .logging_config import get_logger
from .offline_queue import QueuePolicy
from .retry import now_ms

logger = get_logger("offline_sync.client")


def _pick(data: Dict[str, Any], snake: str, camel: str, default: Any = None) -> Any:
    """Read a key that may arrive in either snake_case or camelCase"""
    if snake in data:
        return data[snake]
    return data.get(camel, default)


class LocalQueue:
    """
    JSON-file backed queue of offline transactions

    Entry status is one of ``pending``, ``synced`` or ``failed``; failed
    entries carry ``retryable`` and ``retry_after`` (epoch ms).
    """

    def __init__(self, path: Union[str, Path], policy: Optional[QueuePolicy] = None):
        self.path = Path(path)
        self.policy = policy or QueuePolicy()
        self._lock = threading.RLock()
        self._entries: List[Dict[str, Any]] = self._read()

    def _read(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            content = f.read().strip()
        return json.loads(content) if content else []

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._entries, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _is_outstanding(entry: Dict[str, Any]) -> bool:
        if entry["status"] == "pending":
            return True
        return entry["status"] == "failed" and entry.get("retryable", False)

    def enqueue(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """
        Queue a transaction for the next sync

        Raises:
            OfflineValidationError, UnsupportedTransactionTypeError: On invalid transactions
            QueueFullError: When the outstanding limit is reached
        """
        transaction = dict(transaction)
        if not transaction.get("id"):
            transaction["id"] = str(uuid.uuid4())
        transaction.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        fields = self.policy.validate(transaction)

        with self._lock:
            existing = self.get(fields["id"])
            if existing:
                return existing

            if len(self.outstanding()) >= self.policy.max_queued_transactions:
                raise QueueFullError(
                    f"Offline queue is full ({self.policy.max_queued_transactions} transactions)"
                )

            entry = {
                "id": fields["id"],
                "type": fields["transaction_type"].value,
                "amount": str(fields["amount"]),
                "description": fields["description"],
                "recipient_id": fields["recipient_id"],
                "recipient_phone": fields["recipient_phone"],
                "timestamp": fields["timestamp"],
                "metadata": fields["metadata"],
                "status": "pending",
                "retry_count": 0,
                "retry_after": None,
                "retryable": True,
                "server_transaction_id": None,
                "last_error": None
            }
            self._entries.append(entry)
            self._write()

        logger.info(f"Queued offline {entry['type']} {entry['id']}")
        return dict(entry)

    def get(self, tx_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for entry in self._entries:
                if entry["id"] == tx_id:
                    return dict(entry)
        return None

    def all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(entry) for entry in self._entries]

    def outstanding(self) -> List[Dict[str, Any]]:
        return [entry for entry in self.all() if self._is_outstanding(entry)]

    def pending(self) -> List[Dict[str, Any]]:
        return [entry for entry in self.all() if entry["status"] == "pending"]

    def due(self, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Pending entries plus retryable failures whose retry_after has passed"""
        now = now_ms() if now is None else now
        return [
            entry for entry in self.all()
            if entry["status"] == "pending"
            or (
                entry["status"] == "failed"
                and entry.get("retryable")
                and (entry.get("retry_after") is None or entry["retry_after"] <= now)
            )
        ]

    def apply_results(self, sync_results: List[Dict[str, Any]]) -> None:
        """Fold server sync results into the queue"""
        with self._lock:
            by_id = {entry["id"]: entry for entry in self._entries}
            for result in sync_results:
                entry = by_id.get(_pick(result, "local_id", "localId"))
                if entry is None:
                    continue

                if result.get("status") == "success":
                    entry["status"] = "synced"
                    entry["server_transaction_id"] = _pick(
                        result, "server_transaction_id", "serverTransactionId"
                    )
                    entry["retry_after"] = None
                    entry["last_error"] = None
                else:
                    entry["status"] = "failed"
                    entry["last_error"] = result.get("error")
                    entry["retry_after"] = _pick(result, "retry_after", "retryAfter")
                    entry["retryable"] = bool(result.get("retryable", False))
                    entry["retry_count"] = _pick(
                        result, "retry_count", "retryCount", entry["retry_count"] + 1
                    )
            self._write()

    def clear_synced(self) -> int:
        """Drop synced entries, returning how many were removed"""
        with self._lock:
            before = len(self._entries)
            self._entries = [entry for entry in self._entries if entry["status"] != "synced"]
            removed = before - len(self._entries)
            if removed:
                self._write()
        return removed


class SyncClient:
    """HTTP client for the offline sync API"""

    def __init__(
        self,
        base_url: str = "http://localhost:8090",
        token: Optional[str] = None,
        queue: Optional[LocalQueue] = None,
        user_id: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.queue = queue
        self.user_id = user_id
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.user_id:
            headers["X-User-Id"] = self.user_id
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Sync server unreachable: {e}")
            raise SyncUnavailableError(f"Sync server unreachable: {e}")

        if response.status_code >= 500:
            logger.warning(f"Sync server returned {response.status_code}: {response.text}")
            raise SyncUnavailableError(f"Sync server error {response.status_code}")
        if response.status_code != 200:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise OfflineSyncError(f"Request rejected ({response.status_code}): {detail}")
        return response.json()

    @staticmethod
    def _wire(entry: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": entry["id"],
            "type": entry["type"],
            "amount": entry["amount"],
            "description": entry["description"],
            "recipientId": entry.get("recipient_id"),
            "recipientPhone": entry.get("recipient_phone"),
            "timestamp": entry.get("timestamp"),
            "retryCount": entry.get("retry_count", 0),
            "metadata": entry.get("metadata") or {}
        }

    def sync(self, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Push pending and due items and apply the results locally

        Returns:
            The server response, or None when nothing was due

        Raises:
            SyncUnavailableError: If the server cannot be reached; the queue is left as is
        """
        if self.queue is None:
            raise ValueError("SyncClient has no local queue")

        due = self.queue.due(now)
        if not due:
            return None

        response = self._request(
            "POST", "/api/offline/sync",
            json={"transactions": [self._wire(entry) for entry in due]}
        )
        self.queue.apply_results(_pick(response, "sync_results", "syncResults", []))
        logger.info(f"Synced {len(due)} offline transactions")
        return response

    def status(self) -> Dict[str, Any]:
        return self._request("GET", "/api/offline/status")

    def offline_data(self) -> Dict[str, Any]:
        return self._request("GET", "/api/offline/data")

    def queue_remote(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a transaction on the server without applying it"""
        return self._request("POST", "/api/offline/queue", json={"transaction": transaction})

    def health_check(self) -> bool:
        try:
            return self._client.get("/health").status_code == 200
        except httpx.HTTPError:
            return False

    def close(self):
        """Close the HTTP client"""
        self._client.close()
