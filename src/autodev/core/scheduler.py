"""Scheduler facade.

Owns one instance of every component, drives the tick loop and exposes
the operator commands used by the CLI and the HTTP API.  Presentation
events are delivered to listeners registered with :meth:`Scheduler.subscribe`
as ``(event_type, payload)`` pairs:

``file_loaded``, ``task_update``, ``worker_log``, ``worker_state``,
``progress``, ``scheduler_state``, ``issue_reported``, ``issue_updated``,
``api_error_pause``.
"""
from __future__ import annotations

import logging
import os
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from autodev.core.context import DEFAULT_MAX_PARALLEL, SchedulerContext
from autodev.core.errors import IssueNotFoundError, SchedulerError, TaskNotFoundError, WorkerNotFoundError
from autodev.core.issues import IssueTracker, RawIssueReport
from autodev.core.logging_config import log_scheduler_event
from autodev.core.models import ISSUE_STATUSES, AutoRetryConfig, Issue, LogEntry, Task
from autodev.core.resilience import ApiErrorPause, ResilienceManager
from autodev.core.session import (
    PersistedTaskState,
    SessionPersistence,
    SessionStore,
    auto_retry_from_snapshot,
)
from autodev.core.task_file import load_task_file
from autodev.core.tasks import TaskManager
from autodev.core.templates import startup_content
from autodev.core.worker import WorkerFactory, WorkerPool

logger = logging.getLogger("autodev.scheduler")

Listener = Callable[[str, Dict[str, Any]], None]


class Scheduler:
    def __init__(
        self,
        worker_factory: WorkerFactory,
        *,
        sessions_dir: Optional[str] = None,
        log_dir: Optional[str] = None,
        tick_seconds: float = 5.0,
        max_parallel_ceiling: int = DEFAULT_MAX_PARALLEL,
        auto_retry: Optional[AutoRetryConfig] = None,
        blocker_auto_pause: bool = True,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
        persist_debounce_seconds: float = 0.75,
        run_tick_loop: bool = True,
    ) -> None:
        self.ctx = SchedulerContext(clock=clock, max_parallel_ceiling=max_parallel_ceiling)
        self.ctx.auto_retry_config = auto_retry or AutoRetryConfig()
        self.ctx.blocker_auto_pause_enabled = blocker_auto_pause
        self.tick_seconds = tick_seconds
        self.run_tick_loop = run_tick_loop

        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

        self.tasks = TaskManager(self.ctx, on_status_changed=self._on_task_status_changed)
        self.persistence: Optional[SessionPersistence] = None
        if sessions_dir:
            self.persistence = SessionPersistence(
                self.ctx,
                SessionStore(sessions_dir),
                debounce_seconds=persist_debounce_seconds,
                timer_factory=timer_factory,
            )
        self.issues = IssueTracker(
            self.ctx,
            on_issue_reported=lambda issue: self._emit("issue_reported", issue.to_dict()),
            on_issue_updated=lambda issue_id, status: self._emit("issue_updated", {"issue_id": issue_id, "status": status}),
            request_persist=self.request_persist,
            on_blocker_detected=self._on_blocker_detected,
        )
        self.resilience = ResilienceManager(
            self.ctx,
            self.tasks,
            on_api_error_pause=self._on_api_error_pause,
            on_scheduler_state_changed=self._emit_scheduler_state,
            request_persist=self.request_persist,
            trigger_tick=self.request_tick,
            rng=rng,
            timer_factory=timer_factory,
        )
        self.pool = WorkerPool(
            self.ctx,
            self.tasks,
            worker_factory,
            build_startup_content=self._build_startup_content,
            handle_task_failure=self.resilience.handle_task_failure,
            on_issue_reported=self._on_issue_reported,
            on_api_error=self.resilience.handle_api_error,
            on_worker_log=self._on_worker_log,
            on_worker_state=lambda state: self._emit("worker_state", state),
            trigger_tick=self.request_tick,
            log_dir=log_dir,
        )
        self.resilience.kill_all_workers_for_retry = self.pool.kill_all_workers_for_retry

        self._loop_thread: Optional[threading.Thread] = None
        self._loop_stop = threading.Event()
        self._wake = threading.Event()
        self._idle = threading.Event()
        self._idle.set()

    # ── Presentation events ──────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event_type, payload)
            except Exception as exc:  # noqa: BLE001
                logger.error("Event listener failed on %s: %s", event_type, exc, exc_info=True)

    def _emit_scheduler_state(self) -> None:
        self._emit("scheduler_state", {
            "running": self.ctx.running,
            "paused": self.ctx.paused,
            "pause_reason": self.ctx.pause_reason,
        })

    def _emit_progress(self) -> None:
        self._emit("progress", self.get_progress())

    def get_progress(self) -> Dict[str, int]:
        with self.ctx.lock:
            tasks = self.ctx.tasks.values()
            return {
                "completed": sum(1 for t in tasks if t.status == "success"),
                "failed": sum(1 for t in tasks if t.status == "failed"),
                "running": sum(1 for t in tasks if t.status == "running"),
                "total": len(self.ctx.tasks),
            }

    # ── Component callbacks ──────────────────────────────────

    def _on_task_status_changed(self, task: Task) -> None:
        self._emit("task_update", task.to_dict())
        log_scheduler_event("task_status", task_id=task.task_id, status=task.status, worker_id=task.worker_id, retry_count=task.retry_count)
        self.request_persist("task_status")

    def _on_worker_log(self, worker_id: int, task_id: str, entry: LogEntry) -> None:
        self._emit("worker_log", {"worker_id": worker_id, "task_id": task_id, "entry": entry.to_dict()})

    def _on_issue_reported(self, raw: dict, task_id: str, worker_id: int) -> Issue:
        report = RawIssueReport.model_validate(raw)
        issue = self.issues.add_issue(report, task_id, worker_id)
        log_scheduler_event("issue", issue_id=issue.issue_id, severity=issue.severity, task_id=task_id, occurrences=issue.occurrences)
        return issue

    def _on_blocker_detected(self) -> None:
        with self.ctx.lock:
            if not self.ctx.blocker_auto_pause_enabled or not self.ctx.running or self.ctx.paused:
                return
            self.ctx.paused = True
            self.ctx.pause_reason = "blocker"
            logger.warning("Blocker issue reported, pausing scheduler")
            self._emit_scheduler_state()
            self.request_persist("blocker_pause")

    def _on_api_error_pause(self, pause: ApiErrorPause) -> None:
        log_scheduler_event("api_error_pause", **pause.to_dict())
        self._emit("api_error_pause", pause.to_dict())

    def _build_startup_content(self, task_id: str, file_path: str, recovery: bool) -> str:
        issues_block = ""
        if self.issues.is_integration_task(task_id):
            open_issues = self.issues.get_open()
            if open_issues:
                issues_block = self.issues.format_for_injection(open_issues)
        return startup_content(task_id, file_path, recovery=recovery, issues_block=issues_block)

    def request_persist(self, reason: str) -> None:
        if self.persistence is not None:
            self.persistence.request(reason)

    def request_tick(self, reason: str = "") -> None:
        """Ask the tick loop to run soon instead of waiting for the interval."""
        logger.debug("Tick requested (%s)", reason)
        self._wake.set()

    # ── Loading ──────────────────────────────────────────────

    def load_file(self, file_path: str) -> Dict[str, Any]:
        self.stop()
        parsed, project_root = load_task_file(file_path)
        with self.ctx.lock:
            if self.persistence is not None:
                self.persistence.invalidate()
            self.ctx.reset_for_new_file()
            self.ctx.file_path = os.path.abspath(file_path)
            self.ctx.project_root = project_root
            self.tasks.initialize_tasks(parsed)
            self._hydrate()
            log_scheduler_event("file_loaded", file_path=self.ctx.file_path, tasks=len(self.ctx.tasks))
            self._emit("file_loaded", {
                "file_path": self.ctx.file_path,
                "project_root": self.ctx.project_root,
                "tasks": [t.to_dict() for t in self.tasks.get_tasks_sorted()],
            })
            self._emit_progress()
            return self.get_state()

    def _hydrate(self) -> None:
        if self.persistence is None:
            return
        snapshot = self.persistence.hydrate(self.issues.restore, self._apply_task_state)
        if snapshot is None:
            return
        # Dependencies may have changed status; recompute the open ones.
        for task in self.ctx.tasks.values():
            if task.status in {"pending", "ready"}:
                task.status = "ready" if self.tasks.can_execute(task) else "pending"
        self.ctx.auto_retry_config = auto_retry_from_snapshot(snapshot.auto_retry_config)
        self.ctx.blocker_auto_pause_enabled = snapshot.blocker_auto_pause_enabled
        self.ctx.paused = snapshot.paused
        self.ctx.pause_reason = snapshot.pause_reason if snapshot.paused else None

    def _apply_task_state(self, task_id: str, state: PersistedTaskState, now: float) -> None:
        task = self.ctx.tasks.get(task_id)
        if task is None:
            return
        # The worker that was running it did not survive the restart.
        task.status = "ready" if state.status == "running" else state.status
        task.duration = state.duration
        task.start_time = state.start_time
        task.end_time = state.end_time
        task.retry_count = state.retry_count
        task.next_retry_at = state.next_retry_at / 1000.0 if state.next_retry_at is not None else None
        if task.status != "failed":
            task.next_retry_at = None
        task.has_modified_code = state.has_modified_code
        task.api_error_retry_count = state.api_error_retry_count
        task.is_api_error_recovery = state.is_api_error_recovery
        task.worker_id = None

    # ── Run control ──────────────────────────────────────────

    def start(self, max_parallel: int = 1) -> bool:
        with self.ctx.lock:
            if self.ctx.running or not self.ctx.tasks:
                return False
            self.ctx.max_parallel = max(1, min(max_parallel, self.ctx.max_parallel_ceiling))
            self.ctx.running = True
            self._idle.clear()
            logger.info("Scheduler started (max_parallel=%d)", self.ctx.max_parallel)
            log_scheduler_event("scheduler_start", max_parallel=self.ctx.max_parallel, file_path=self.ctx.file_path)
            self._emit_scheduler_state()
            self.tick("start")
        self._ensure_loop()
        return True

    def pause(self) -> bool:
        with self.ctx.lock:
            if not self.ctx.running or self.ctx.paused:
                return False
            self.ctx.paused = True
            self.ctx.pause_reason = "user"
            logger.info("Scheduler paused by operator")
            self._emit_scheduler_state()
            self.request_persist("pause")
            return True

    def resume(self) -> bool:
        with self.ctx.lock:
            if not self.ctx.running or not self.ctx.paused:
                return False
            if self.ctx.pause_reason == "api_error":
                self.resilience.reset_api_error_state()
            self.ctx.paused = False
            self.ctx.pause_reason = None
            logger.info("Scheduler resumed")
            self._emit_scheduler_state()
            self.request_persist("resume")
            self.tick("resume")
            return True

    def stop(self) -> None:
        with self.ctx.lock:
            was_running = self.ctx.running
            self.ctx.running = False
            self.ctx.paused = False
            self.ctx.pause_reason = None
            self.ctx.clear_api_error_retry_timer()
            self.pool.kill_all()
            for task_id in list(self.ctx.task_locks):
                task = self.ctx.tasks.get(task_id)
                if task is not None and task.status == "running":
                    self.tasks.set_task_status(task, "ready")
                self.tasks.unlock_task(task_id)
            if was_running:
                logger.info("Scheduler stopped")
                log_scheduler_event("scheduler_stop", file_path=self.ctx.file_path)
                self._emit_scheduler_state()
                self._emit_progress()
                if self.persistence is not None:
                    self.persistence.persist_now("stop")
        self._stop_loop()
        self._idle.set()

    def tick(self, reason: str = "timer") -> None:
        with self.ctx.lock:
            if not self.ctx.running:
                return
            self.resilience.promote_due_retries()
            self.tasks.update_pending_tasks()

            if self.tasks.is_all_tasks_success():
                logger.info("All %d tasks succeeded", len(self.ctx.tasks))
                self._finish("all_success")
                return

            if not self.ctx.paused:
                if (
                    self.ctx.get_active_worker_count() == 0
                    and not self.tasks.find_executable_tasks()
                    and not self.resilience.has_pending_retries()
                ):
                    logger.warning("No runnable tasks remain, stopping (tick reason: %s)", reason)
                    self._finish("no_runnable_tasks")
                    return
                self.pool.start_workers_if_needed()
            self._emit_progress()

    def _finish(self, reason: str) -> None:
        self.ctx.running = False
        self.ctx.paused = False
        self.ctx.pause_reason = None
        log_scheduler_event("scheduler_finished", reason=reason, **self.get_progress())
        self._emit_scheduler_state()
        self._emit_progress()
        if self.persistence is not None:
            self.persistence.persist_now(reason)
        self._loop_stop.set()
        self._wake.set()
        self._idle.set()

    # ── Tick loop thread ─────────────────────────────────────

    def _ensure_loop(self) -> None:
        if not self.run_tick_loop:
            return
        if self._loop_thread is not None and self._loop_thread.is_alive():
            return
        self._loop_stop.clear()
        self._wake.clear()
        self._loop_thread = threading.Thread(target=self._loop, name="autodev-tick", daemon=True)
        self._loop_thread.start()

    def _loop(self) -> None:
        while not self._loop_stop.is_set():
            self._wake.wait(self.tick_seconds)
            self._wake.clear()
            if self._loop_stop.is_set():
                break
            try:
                self.tick("loop")
            except Exception as exc:  # noqa: BLE001
                logger.error("Tick failed: %s", exc, exc_info=True)
            if not self.ctx.running:
                break

    def _stop_loop(self) -> None:
        self._loop_stop.set()
        self._wake.set()
        thread = self._loop_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
        self._loop_thread = None

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the run finishes or is stopped."""
        return self._idle.wait(timeout)

    def needs_operator(self) -> bool:
        """True while the run is paused and no timer will resume it."""
        with self.ctx.lock:
            if not self.ctx.running or not self.ctx.paused:
                return False
            return self.ctx.pause_reason != "api_error" or self.ctx.api_error_retry_timer is None

    # ── Operator commands ────────────────────────────────────

    def retry_task(self, task_id: str) -> bool:
        with self.ctx.lock:
            if task_id not in self.ctx.tasks:
                raise TaskNotFoundError(task_id)
            if not self.tasks.reset_task_for_retry(task_id):
                return False
            self.resilience.cascade_reset(task_id)
            logger.info("Task %s queued for manual retry", task_id)
            self._emit_progress()
            self.request_persist("retry_task")
            if self.ctx.running:
                self.request_tick("retry_task")
            return True

    def send_to_worker(self, worker_id: int, text: str) -> None:
        if not self.pool.send_to_worker(worker_id, text):
            raise WorkerNotFoundError(worker_id)

    def kill_worker(self, worker_id: int) -> None:
        if not self.pool.kill_worker(worker_id):
            raise WorkerNotFoundError(worker_id)

    def update_issue_status(self, issue_id: str, status: str) -> None:
        if status not in ISSUE_STATUSES:
            raise SchedulerError(f"Invalid issue status: {status}")
        with self.ctx.lock:
            if not self.issues.update_status(issue_id, status):
                raise IssueNotFoundError(issue_id)

    def clear_issues(self) -> None:
        with self.ctx.lock:
            self.issues.clear()
            self.request_persist("clear_issues")

    def get_issues(self) -> List[Dict[str, Any]]:
        with self.ctx.lock:
            return [issue.to_dict() for issue in self.issues.get_all()]

    def write_issues_report(self, path: Optional[str] = None) -> str:
        with self.ctx.lock:
            if path is None:
                if not self.ctx.file_path:
                    raise SchedulerError("No task file loaded")
                path = os.path.join(os.path.dirname(self.ctx.file_path), "ISSUES.md")
            return self.issues.write_to_file(path)

    def retry_from_api_error(self) -> None:
        self.resilience.retry_from_api_error()

    def set_auto_retry_config(
        self,
        enabled: Optional[bool] = None,
        max_retries: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
    ) -> AutoRetryConfig:
        if max_retries is not None and max_retries < 0:
            raise SchedulerError("max_retries must be >= 0")
        if base_delay_seconds is not None and base_delay_seconds <= 0:
            raise SchedulerError("base_delay_seconds must be > 0")
        with self.ctx.lock:
            config = self.ctx.auto_retry_config
            if enabled is not None:
                config.enabled = enabled
            if max_retries is not None:
                config.max_retries = max_retries
            if base_delay_seconds is not None:
                config.base_delay_seconds = base_delay_seconds
            self.request_persist("auto_retry_config")
            return config

    def set_blocker_auto_pause(self, enabled: bool) -> None:
        with self.ctx.lock:
            self.ctx.blocker_auto_pause_enabled = enabled
            self.request_persist("blocker_config")

    def get_state(self) -> Dict[str, Any]:
        with self.ctx.lock:
            return {
                "running": self.ctx.running,
                "paused": self.ctx.paused,
                "pause_reason": self.ctx.pause_reason,
                "file_path": self.ctx.file_path,
                "project_root": self.ctx.project_root,
                "max_parallel": self.ctx.max_parallel,
                "tasks": [t.to_dict() for t in self.tasks.get_tasks_sorted()],
                "workers": [
                    {k: v for k, v in w.items() if k != "logs"}
                    for w in self.pool.get_worker_states()
                ],
                "progress": self.get_progress(),
                "issues": [issue.to_dict() for issue in self.issues.get_all()],
                "auto_retry_config": self.ctx.auto_retry_config.to_dict(),
                "blocker_auto_pause_enabled": self.ctx.blocker_auto_pause_enabled,
                "api_error": {
                    "retry_count": self.ctx.api_error_retry_count,
                    "last_error_text": self.ctx.last_api_error_text,
                },
            }

    def export_logs(self) -> str:
        with self.ctx.lock:
            lines = [
                "=== Auto-Dev Scheduler Logs ===",
                f"File: {self.ctx.file_path}",
                f"Project: {self.ctx.project_root}",
                f"Exported: {time.strftime('%Y-%m-%dT%H:%M:%S')}",
                "",
            ]
            logs = self.pool.export_logs()
            for archived in logs["completed"]:
                suffix = " [stopped]" if archived["stopped"] else ""
                lines.append(f"--- Worker {archived['worker_id']} (Task: {archived['task_id']}){suffix} ---")
                lines.extend(f"[{e['ts']}] [{e['type']}] {e['content']}" for e in archived["logs"])
                lines.append("")
            for worker in logs["active"]:
                lines.append(f"--- Worker {worker['worker_id']} (Task: {worker['task_id']}) [active] ---")
                lines.extend(f"[{e['ts']}] [{e['type']}] {e['content']}" for e in worker["logs"])
                lines.append("")
            return "\n".join(lines)

