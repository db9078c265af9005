"""
In-process sync metrics.

Keeps a bounded window of recent sync runs for the metrics endpoint and
flags slow runs in the log.
"""

from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Any

from .logging_config import get_logger, log_action


@dataclass
class SyncRun:
    user_id: str
    item_count: int
    succeeded: int
    failed: int
    duplicates: int
    duration_ms: float
    trigger: str  # "client" or "scheduler"
    finished_at: str


class SyncMetrics:
    """Ring buffer of the most recent sync runs"""

    def __init__(self, window: int = 1000, slow_threshold_ms: int = 2000):
        self._runs = deque(maxlen=window)
        self._lock = Lock()
        self.slow_threshold_ms = slow_threshold_ms
        self.logger = get_logger("offline_sync.metrics")

    def record(
        self,
        user_id: str,
        item_count: int,
        succeeded: int,
        failed: int,
        duplicates: int,
        duration_ms: float,
        trigger: str = "client"
    ) -> SyncRun:
        run = SyncRun(
            user_id=user_id,
            item_count=item_count,
            succeeded=succeeded,
            failed=failed,
            duplicates=duplicates,
            duration_ms=round(duration_ms, 3),
            trigger=trigger,
            finished_at=datetime.now(timezone.utc).isoformat()
        )
        with self._lock:
            self._runs.append(run)

        if duration_ms > self.slow_threshold_ms:
            log_action(
                self.logger, "warning", f"Slow sync: {item_count} items took {duration_ms:.0f}ms",
                user_id=user_id, action="slow_sync", extra=asdict(run)
            )
        return run

    def recent(self, limit: int = 20, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest runs first, optionally only one user's"""
        with self._lock:
            runs = list(self._runs)
        if user_id is not None:
            runs = [run for run in runs if run.user_id == user_id]
        return [asdict(run) for run in reversed(runs[-limit:])]

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            runs = list(self._runs)

        durations = [run.duration_ms for run in runs]
        return {
            "runs": len(runs),
            "items": sum(run.item_count for run in runs),
            "succeeded": sum(run.succeeded for run in runs),
            "failed": sum(run.failed for run in runs),
            "duplicates": sum(run.duplicates for run in runs),
            "avg_duration_ms": round(sum(durations) / len(durations), 3) if durations else 0.0,
            "max_duration_ms": max(durations) if durations else 0.0,
            "slow_runs": sum(1 for d in durations if d > self.slow_threshold_ms),
        }

    def reset(self) -> None:
        with self._lock:
            self._runs.clear()
