"""
Server-side retry scheduler.

Devices re-submit failed items when they next sync, but an item can also
become applicable without the device coming back (the recipient opens a
wallet, a top-up lands). The scheduler re-runs retryable failures whose
backoff has elapsed on a background thread.
"""

import threading
from typing import Dict, List, Optional

from .logging_config import get_logger, log_action
from .offline_queue import OfflineQueue
from .retry import now_ms
from .sync import SyncEngine, SyncItemResult


class RetryScheduler:
    """Periodically retries due offline transactions"""

    def __init__(self, engine: SyncEngine, queue: OfflineQueue, interval_seconds: float = 30.0):
        self.engine = engine
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self.logger = get_logger("offline_sync.scheduler")

    def run_pending(self, now: Optional[int] = None) -> List[SyncItemResult]:
        """
        Retry every failed_retryable item whose next_retry_at has passed

        Args:
            now: Epoch milliseconds to compare deadlines against (defaults to now)

        Returns:
            Results of the items that were retried
        """
        now = now_ms() if now is None else now
        results = []
        for item in self.queue.due_for_retry(now):
            try:
                result = self.engine.retry_item(item.user_id, item.id)
            except Exception as e:
                self.logger.error(f"Retry of offline transaction {item.id} failed: {e}", exc_info=True)
                continue
            if result is not None:
                results.append(result)

        if results:
            succeeded = sum(1 for result in results if result.succeeded)
            log_action(
                self.logger, "info", f"Retried {len(results)} offline transactions",
                action="offline_retry_tick",
                extra={"retried": len(results), "succeeded": succeeded}
            )
        return results

    def stats(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds
        }

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_pending()
            except Exception as e:
                self.logger.error(f"Retry scheduler tick failed: {e}", exc_info=True)

    def start(self) -> None:
        """Start the background thread (no-op when already running)"""
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="offline-retry-scheduler")
            self._thread.daemon = True
            self.running = True
            self._thread.start()
        self.logger.info(f"Retry scheduler started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        """Stop the background thread and wait for the current tick"""
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()
            thread, self._thread = self._thread, None

        if thread:
            thread.join(timeout=5.0)
        self.logger.info("Retry scheduler stopped")
