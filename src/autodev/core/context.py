"""Shared scheduler state.

One :class:`SchedulerContext` is created per :class:`~autodev.core.scheduler.Scheduler`
and injected into every component.  All reads and writes of the tables it
holds happen while ``ctx.lock`` is held; worker backends deliver events
from their own threads, so the lock is what keeps handlers from
interleaving.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Set

from autodev.core.models import AutoRetryConfig, Issue, LogEntry, Task

if TYPE_CHECKING:
    from autodev.core.worker import WorkerHandle

logger = logging.getLogger("autodev.context")

MAX_COMPLETED_WORKER_LOGS = 100
MAX_WORKER_LOGS = 1000
DEFAULT_MAX_PARALLEL = 4

# Internal event topics
TASK_STATUS_CHANGED = "task.status_changed"
WORKER_SPAWNED = "worker.spawned"
WORKER_COMPLETED = "worker.completed"
WORKER_ERROR = "worker.error"
ISSUE_ADDED = "issue.added"
API_ERROR = "api_error"


class EventBus:
    """Synchronous publish/subscribe used between components.

    A failing listener is logged and skipped so one bad subscriber cannot
    abort the handler that published the event.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[[dict], None]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, listener: Callable[[dict], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(topic, []).append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(topic, [])
                if listener in listeners:
                    listeners.remove(listener)

        return _unsubscribe

    def publish(self, topic: str, payload: dict) -> None:
        with self._lock:
            listeners = list(self._listeners.get(topic, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception as exc:  # noqa: BLE001
                logger.error("Listener for %s failed: %s", topic, exc, exc_info=True)


@dataclass
class WorkerSlot:
    """A live worker and the bookkeeping the pool keeps about it."""
    worker_id: int
    handle: "WorkerHandle"
    assigned_task_id: str
    task_id: str
    generation: int
    start_time: float
    logs: Deque[LogEntry] = field(default_factory=lambda: deque(maxlen=MAX_WORKER_LOGS))
    closing: bool = False


@dataclass
class CompletedWorkerLog:
    worker_id: int
    task_id: str
    logs: List[LogEntry]
    stopped: bool = False

    def to_dict(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "stopped": self.stopped,
            "logs": [entry.to_dict() for entry in self.logs],
        }


class SchedulerContext:
    def __init__(self, clock: Callable[[], float] = time.time, max_parallel_ceiling: int = DEFAULT_MAX_PARALLEL) -> None:
        self.lock = threading.RLock()
        self.clock = clock
        self.events = EventBus()
        self.max_parallel_ceiling = max_parallel_ceiling

        self.tasks: Dict[str, Task] = {}
        self.task_locks: Dict[str, int] = {}       # task_id -> worker_id
        self.workers: Dict[int, WorkerSlot] = {}
        self.pending_worker_ids: Set[int] = set()  # reserved, not yet registered
        self.issues: Dict[str, Issue] = {}

        self.file_path = ""
        self.project_root = ""

        self.running = False
        self.paused = False
        self.pause_reason: Optional[str] = None
        self.max_parallel = 1
        self.worker_generation = 0
        self.completed_worker_logs: List[CompletedWorkerLog] = []

        self.auto_retry_config = AutoRetryConfig()
        self.blocker_auto_pause_enabled = True
        self.api_error_retry_count = 0
        self.last_api_error_text: Optional[str] = None
        self.api_error_retry_timer: Optional[threading.Timer] = None

    def now(self) -> float:
        return self.clock()

    # ── Tasks ────────────────────────────────────────────────

    def get_tasks_sorted(self) -> List[Task]:
        return sorted(self.tasks.values(), key=lambda t: (t.wave, t.task_id))

    def is_task_locked(self, task_id: str) -> bool:
        return task_id in self.task_locks

    def get_task_lock_owner(self, task_id: str) -> Optional[int]:
        return self.task_locks.get(task_id)

    # ── Workers ──────────────────────────────────────────────

    def get_active_workers(self) -> List[WorkerSlot]:
        return [w for w in self.workers.values() if not w.closing]

    def get_active_worker_count(self) -> int:
        return len(self.get_active_workers()) + len(self.pending_worker_ids)

    def next_worker_id(self) -> int:
        used = set(self.workers) | self.pending_worker_ids
        for candidate in range(1, self.max_parallel_ceiling + 1):
            if candidate not in used:
                return candidate
        return self.max_parallel_ceiling + 1

    def reserve_worker_id(self) -> int:
        """Claim a worker id before the spawn starts.

        Must be paired with :meth:`release_worker_id` once the slot is
        registered or the spawn is abandoned.
        """
        worker_id = self.next_worker_id()
        self.pending_worker_ids.add(worker_id)
        return worker_id

    def release_worker_id(self, worker_id: int) -> None:
        self.pending_worker_ids.discard(worker_id)

    def clear_workers(self) -> None:
        self.workers.clear()
        self.pending_worker_ids.clear()

    def next_generation(self) -> int:
        self.worker_generation += 1
        return self.worker_generation

    def archive_worker_logs(self, slot: WorkerSlot, stopped: bool = False) -> None:
        self.completed_worker_logs.append(
            CompletedWorkerLog(
                worker_id=slot.worker_id,
                task_id=slot.task_id,
                logs=list(slot.logs),
                stopped=stopped,
            )
        )
        if len(self.completed_worker_logs) > MAX_COMPLETED_WORKER_LOGS:
            del self.completed_worker_logs[:-MAX_COMPLETED_WORKER_LOGS]

    # ── Lifecycle ────────────────────────────────────────────

    def reset_for_new_file(self) -> None:
        """Drop all per-file state.  Workers must already be stopped."""
        self.tasks.clear()
        self.task_locks.clear()
        self.issues.clear()
        self.clear_workers()
        self.completed_worker_logs = []
        self.file_path = ""
        self.project_root = ""
        self.running = False
        self.paused = False
        self.pause_reason = None
        self.api_error_retry_count = 0
        self.last_api_error_text = None
        self.clear_api_error_retry_timer()

    def clear_api_error_retry_timer(self) -> None:
        if self.api_error_retry_timer is not None:
            self.api_error_retry_timer.cancel()
            self.api_error_retry_timer = None

    def publish(self, topic: str, **payload: Any) -> None:
        self.events.publish(topic, payload)
