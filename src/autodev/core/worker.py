"""Worker pool: spawns one worker per runnable task and reacts to its events.

A worker backend is anything satisfying :class:`WorkerHandle`.  The pool
never talks to processes directly; it only

* claims the task lock and reserves a worker id before spawning,
* feeds every :class:`WorkerEvent` through a staleness check bound to the
  slot's generation, and
* translates events into task status transitions, issue reports and
  rate-limit pauses.

Per-task worker output is appended to ``<log_dir>/workers/{task_id}/worker.log``
when a log directory is configured.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any, Callable, Dict, List, Optional, Protocol

from autodev.core.context import (
    WORKER_COMPLETED,
    WORKER_ERROR,
    WORKER_SPAWNED,
    SchedulerContext,
    WorkerSlot,
)
from autodev.core.logging_config import append_to_file, log_scheduler_event
from autodev.core.models import LogEntry, Task
from autodev.core.resilience import RetryDecision
from autodev.core.tasks import TaskManager

logger = logging.getLogger("autodev.worker")

@dataclass
class WorkerEvent:
    kind: str
    entry: Optional[LogEntry] = None        # log
    task_id: Optional[str] = None           # task_detected / code_modified
    success: bool = False                   # complete
    duration_ms: float = 0.0                # complete
    error: Optional[str] = None             # error
    issue: Optional[dict] = None            # issue_reported (raw payload)
    error_text: Optional[str] = None        # rate_limit_error
    tool: Optional[str] = None              # code_modified

    @classmethod
    def log(cls, type: str, content: str) -> WorkerEvent:
        return cls(kind="log", entry=LogEntry.now(type, content))


class WorkerHandle(Protocol):
    """Capability set every worker backend provides."""

    @property
    def has_modified_code(self) -> bool: ...

    @property
    def token_usage(self) -> Optional[str]: ...

    @property
    def current_tool(self) -> Optional[str]: ...

    def subscribe(self, listener: Callable[[WorkerEvent], None]) -> None: ...

    def start(self, working_dir: str) -> None: ...

    def send(self, text: str) -> None: ...

    def kill(self) -> None: ...


WorkerFactory = Callable[[int, str, str], WorkerHandle]


def _noop(*_args: Any, **_kwargs: Any) -> None:
    return None


class WorkerPool:
    def __init__(
        self,
        ctx: SchedulerContext,
        tasks: TaskManager,
        worker_factory: WorkerFactory,
        *,
        build_startup_content: Callable[[str, str, bool], str],
        handle_task_failure: Callable[[Task, Optional[float]], RetryDecision],
        on_issue_reported: Callable[[dict, str, int], Any] = _noop,
        on_api_error: Callable[[str, WorkerSlot], None] = _noop,
        on_worker_log: Callable[[int, str, LogEntry], None] = _noop,
        on_worker_state: Callable[[dict], None] = _noop,
        trigger_tick: Callable[[str], None] = _noop,
        log_dir: Optional[str] = None,
    ) -> None:
        self.ctx = ctx
        self.tasks = tasks
        self.worker_factory = worker_factory
        self.build_startup_content = build_startup_content
        self.handle_task_failure = handle_task_failure
        self.on_issue_reported = on_issue_reported
        self.on_api_error = on_api_error
        self.on_worker_log = on_worker_log
        self.on_worker_state = on_worker_state
        self.trigger_tick = trigger_tick
        self.log_dir = log_dir

    # ── Per-task log file ────────────────────────────────────

    def _task_log_path(self, task_id: str) -> Optional[str]:
        if not self.log_dir:
            return None
        return os.path.join(self.log_dir, "workers", task_id, "worker.log")

    def _append_task_log(self, task_id: str, line: str) -> None:
        path = self._task_log_path(task_id)
        if path:
            append_to_file(path, line)

    def _record(self, slot: WorkerSlot, entry: LogEntry, task_id: Optional[str] = None) -> None:
        task_id = task_id or slot.task_id
        slot.logs.append(entry)
        self.on_worker_log(slot.worker_id, task_id, entry)
        self._append_task_log(task_id, f"[{entry.type}] {entry.content}")

    def _emit_state(self, slot: WorkerSlot) -> None:
        self.on_worker_state({
            "worker_id": slot.worker_id,
            "active": not slot.closing,
            "task_id": slot.task_id,
            "token_usage": slot.handle.token_usage,
            "current_tool": slot.handle.current_tool,
        })

    # ── Spawning ─────────────────────────────────────────────

    def start_workers_if_needed(self) -> None:
        with self.ctx.lock:
            available = self.ctx.max_parallel - self.ctx.get_active_worker_count()
            if available <= 0:
                return
            for task in self.tasks.find_executable_tasks()[:available]:
                worker_id = self.ctx.reserve_worker_id()
                self.spawn_worker(worker_id, task.task_id)

    def spawn_worker(self, worker_id: int, task_id: str) -> None:
        with self.ctx.lock:
            generation = self.ctx.next_generation()
            if not self.tasks.lock_task(task_id, worker_id):
                self.ctx.release_worker_id(worker_id)
                return

            slot: Optional[WorkerSlot] = None
            try:
                task = self.ctx.tasks.get(task_id)
                recovery = bool(task and task.is_api_error_recovery and task.has_modified_code)
                content = self.build_startup_content(task_id, self.ctx.file_path, recovery)

                # The startup builder may re-enter the scheduler (e.g. a stop).
                if not self.ctx.running or self.ctx.task_locks.get(task_id) != worker_id:
                    self._abort_spawn(worker_id, task_id)
                    logger.warning(
                        "Aborting spawn for task %s (worker %d): scheduler stopped or lock lost",
                        task_id, worker_id,
                    )
                    return

                handle = self.worker_factory(worker_id, task_id, content)
                slot = WorkerSlot(
                    worker_id=worker_id,
                    handle=handle,
                    assigned_task_id=task_id,
                    task_id=task_id,
                    generation=generation,
                    start_time=self.ctx.now(),
                )
                self.ctx.workers[worker_id] = slot
                self.ctx.release_worker_id(worker_id)
                handle.subscribe(self._make_listener(worker_id, generation))
                self._append_task_log(task_id, f"=== worker {worker_id} started (generation {generation}) ===")
                self._emit_state(slot)
                self.ctx.publish(WORKER_SPAWNED, worker_id=worker_id, task_id=task_id)
                log_scheduler_event("worker_spawned", worker_id=worker_id, task_id=task_id, recovery=recovery)
                logger.info("Worker %d spawned for task %s", worker_id, task_id)

                handle.start(self.ctx.project_root)
                if task is not None and recovery:
                    task.is_api_error_recovery = False
            except Exception as exc:  # noqa: BLE001
                if slot is not None:
                    self._handle_worker_error(slot, str(exc))
                    return
                self._abort_spawn(worker_id, task_id)
                logger.error("Failed to spawn worker %d for task %s: %s", worker_id, task_id, exc, exc_info=True)
                if self.ctx.running:
                    self.trigger_tick("spawn_error")

    def _abort_spawn(self, worker_id: int, task_id: str) -> None:
        self.ctx.release_worker_id(worker_id)
        task = self.ctx.tasks.get(task_id)
        if task is not None and task.status == "running":
            self.tasks.set_task_status(task, "ready")
        self.tasks.unlock_task(task_id)

    # ── Event handling ───────────────────────────────────────

    def _make_listener(self, worker_id: int, generation: int) -> Callable[[WorkerEvent], None]:
        def _listener(event: WorkerEvent) -> None:
            with self.ctx.lock:
                slot = self.ctx.workers.get(worker_id)
                if slot is None or slot.generation != generation or slot.closing:
                    logger.debug("Dropping stale %s event from worker %d", event.kind, worker_id)
                    return
                self._dispatch(slot, event)

        return _listener

    def _dispatch(self, slot: WorkerSlot, event: WorkerEvent) -> None:
        if event.kind == "log" and event.entry is not None:
            self._record(slot, event.entry)
            self._emit_state(slot)
        elif event.kind == "task_detected":
            self._on_task_detected(slot, event.task_id or "")
        elif event.kind == "complete":
            self._on_complete(slot, event.success, event.duration_ms)
        elif event.kind == "error":
            self._handle_worker_error(slot, event.error or "unknown error")
        elif event.kind == "issue_reported":
            self._on_issue_reported(slot, event.issue or {})
        elif event.kind == "rate_limit_error":
            self.on_api_error(event.error_text or "", slot)
        elif event.kind == "code_modified":
            task = self.ctx.tasks.get(event.task_id or slot.assigned_task_id)
            if task is not None and not task.has_modified_code:
                task.has_modified_code = True
                logger.debug("Task %s modified code via %s", task.task_id, event.tool)
        else:
            logger.warning("Unknown worker event kind %r from worker %d", event.kind, slot.worker_id)

    def _on_task_detected(self, slot: WorkerSlot, detected: str) -> None:
        if detected == slot.assigned_task_id:
            return
        entry = LogEntry.now("error", f"Task mismatch: assigned={slot.assigned_task_id}, detected={detected}")
        self._record(slot, entry, task_id=slot.assigned_task_id)
        logger.error("Worker %d reported task %s but was assigned %s", slot.worker_id, detected, slot.assigned_task_id)
        self.kill_worker(slot.worker_id)

    def _on_complete(self, slot: WorkerSlot, success: bool, duration_ms: float) -> None:
        task_id = slot.task_id
        if self.ctx.task_locks.get(task_id) != slot.worker_id:
            # Completion after the lock was taken away (stop, kill, retry pause)
            self._end_task_log(slot)
            self._cleanup(slot)
            self.trigger_tick("worker_complete")
            return

        task = self.ctx.tasks.get(task_id)
        if task is not None:
            duration = round(duration_ms / 1000)
            if success:
                task.retry_count = 0
                task.next_retry_at = None
                self.tasks.set_task_status(task, "success", duration)
            else:
                decision = self.handle_task_failure(task, duration)
                if decision.scheduled:
                    max_retries = self.ctx.auto_retry_config.max_retries
                    entry = LogEntry.now(
                        "system",
                        f"Auto-retry scheduled ({task.retry_count}/{max_retries}) in {round(decision.delay or 0)}s",
                    )
                    self._record(slot, entry)

        self.ctx.publish(WORKER_COMPLETED, worker_id=slot.worker_id, task_id=task_id, success=success, duration_ms=duration_ms)
        log_scheduler_event("worker_completed", worker_id=slot.worker_id, task_id=task_id, success=success, duration_ms=duration_ms)
        self._end_task_log(slot)
        self.tasks.unlock_task(task_id)
        self._cleanup(slot)
        self.trigger_tick("worker_complete")

    def _handle_worker_error(self, slot: WorkerSlot, message: str) -> None:
        task_id = slot.task_id
        self._record(slot, LogEntry.now("error", f"Worker error: {message}"))
        logger.error("Worker %d (task %s) error: %s", slot.worker_id, task_id, message)
        self.ctx.publish(WORKER_ERROR, worker_id=slot.worker_id, task_id=task_id, error=message)

        if self.ctx.task_locks.get(task_id) == slot.worker_id:
            task = self.ctx.tasks.get(task_id)
            if task is not None and task.status == "running":
                duration = round(self.ctx.now() - slot.start_time)
                self.handle_task_failure(task, duration)
            self._end_task_log(slot)
            self.tasks.unlock_task(task_id)
        self._cleanup(slot)
        self._safe_kill(slot)
        self.trigger_tick("worker_error")

    def _on_issue_reported(self, slot: WorkerSlot, raw: dict) -> None:
        try:
            self.on_issue_reported(raw, slot.task_id, slot.worker_id)
        except Exception as exc:  # noqa: BLE001
            self._record(slot, LogEntry.now("error", f"Failed to handle issue report: {exc}"))
            logger.warning("Worker %d sent an unusable issue report: %s", slot.worker_id, exc)

    # ── Teardown ─────────────────────────────────────────────

    def _end_task_log(self, slot: WorkerSlot) -> None:
        self._append_task_log(slot.task_id, f"=== worker {slot.worker_id} ended ===")

    def _cleanup(self, slot: WorkerSlot, stopped: bool = False) -> None:
        slot.closing = True
        self.ctx.archive_worker_logs(slot, stopped=stopped)
        if self.ctx.workers.get(slot.worker_id) is slot:
            del self.ctx.workers[slot.worker_id]
        self._emit_state(slot)

    def _safe_kill(self, slot: WorkerSlot) -> None:
        try:
            slot.handle.kill()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error killing worker %d: %s", slot.worker_id, exc)

    def _release_slot_task(self, slot: WorkerSlot) -> Optional[Task]:
        """Unlock the slot's task and put a running task back to ready."""
        if self.ctx.task_locks.get(slot.task_id) != slot.worker_id:
            return None
        task = self.ctx.tasks.get(slot.task_id)
        if task is not None and task.status == "running":
            self.tasks.set_task_status(task, "ready")
        self.tasks.unlock_task(slot.task_id)
        return task

    def kill_worker(self, worker_id: int) -> bool:
        """Stop one worker; its task goes back to ``ready`` without failing."""
        with self.ctx.lock:
            slot = self.ctx.workers.get(worker_id)
            if slot is None:
                return False
            slot.closing = True
            self._release_slot_task(slot)
            self._end_task_log(slot)
            self._cleanup(slot)
            self._safe_kill(slot)
            logger.info("Worker %d killed (task %s)", worker_id, slot.task_id)
            if self.ctx.running:
                self.trigger_tick("kill_worker")
            return True

    def kill_all_workers_for_retry(self) -> None:
        """Stop every worker ahead of a rate-limit pause.

        Tasks whose worker already touched project files are flagged so the
        next attempt starts with the recovery instructions.
        """
        with self.ctx.lock:
            for slot in list(self.ctx.workers.values()):
                slot.closing = True
                if self.ctx.task_locks.get(slot.task_id) == slot.worker_id:
                    task = self.ctx.tasks.get(slot.task_id)
                    if task is not None and task.status == "running" and slot.handle.has_modified_code:
                        task.has_modified_code = True
                        task.is_api_error_recovery = True
                        logger.info("Task %s has modified code, will use recovery prompt on retry", task.task_id)
                self._release_slot_task(slot)
                self.ctx.archive_worker_logs(slot, stopped=True)
                self._end_task_log(slot)
                self._safe_kill(slot)
                self._emit_state(slot)
            self.ctx.clear_workers()

    def kill_all(self) -> None:
        """Stop every worker without touching retry bookkeeping (scheduler stop)."""
        with self.ctx.lock:
            for slot in list(self.ctx.workers.values()):
                slot.closing = True
                self._release_slot_task(slot)
                self.ctx.archive_worker_logs(slot, stopped=True)
                self._end_task_log(slot)
                self._safe_kill(slot)
                self._emit_state(slot)
            self.ctx.clear_workers()

    # ── Operator helpers ─────────────────────────────────────

    def send_to_worker(self, worker_id: int, text: str) -> bool:
        with self.ctx.lock:
            slot = self.ctx.workers.get(worker_id)
            if slot is None or slot.closing:
                return False
            handle = slot.handle
        handle.send(text)
        return True

    def get_worker_states(self) -> List[dict]:
        with self.ctx.lock:
            return [
                {
                    "worker_id": slot.worker_id,
                    "active": not slot.closing,
                    "task_id": slot.task_id,
                    "token_usage": slot.handle.token_usage,
                    "current_tool": slot.handle.current_tool,
                    "started_at": slot.start_time,
                    "logs": [entry.to_dict() for entry in slot.logs],
                }
                for slot in sorted(self.ctx.workers.values(), key=lambda s: s.worker_id)
            ]

    def export_logs(self) -> Dict[str, Any]:
        with self.ctx.lock:
            return {
                "active": self.get_worker_states(),
                "completed": [log.to_dict() for log in self.ctx.completed_worker_logs],
            }
