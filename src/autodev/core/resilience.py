"""Failure recovery: task retries with backoff, cascades, rate-limit pauses."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
import random
import threading
from typing import Any, Callable, Optional

from autodev.core.context import API_ERROR, SchedulerContext, WorkerSlot
from autodev.core.models import Task
from autodev.core.tasks import TaskManager

logger = logging.getLogger("autodev.resilience")

AUTO_RETRY_MAX_DELAY = 5 * 60.0  # seconds

API_ERROR_MAX_RETRIES = 5           # global attempts before waiting for the operator
API_ERROR_MAX_TASK_RETRIES = 3      # attempts attributed to a single task
API_ERROR_BASE_DELAY = 10.0
API_ERROR_MAX_DELAY = 5 * 60.0
API_ERROR_JITTER_RATIO = 0.2


@dataclass
class RetryDecision:
    scheduled: bool
    delay: Optional[float] = None


@dataclass
class ApiErrorPause:
    error_text: str
    retry_count: int
    max_retries: int
    next_retry_in: Optional[float]
    task_id: Optional[str] = None
    task_retry_count: Optional[int] = None
    task_max_retries: int = API_ERROR_MAX_TASK_RETRIES
    pause_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_text": self.error_text,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_in": self.next_retry_in,
            "task_id": self.task_id,
            "task_retry_count": self.task_retry_count,
            "task_max_retries": self.task_max_retries,
            "pause_reason": self.pause_reason,
        }


def _noop(*_args: Any, **_kwargs: Any) -> None:
    return None


class ResilienceManager:
    def __init__(
        self,
        ctx: SchedulerContext,
        tasks: TaskManager,
        *,
        on_api_error_pause: Callable[[ApiErrorPause], None] = _noop,
        on_scheduler_state_changed: Callable[[], None] = _noop,
        kill_all_workers_for_retry: Callable[[], None] = _noop,
        request_persist: Callable[[str], None] = _noop,
        trigger_tick: Callable[[str], None] = _noop,
        rng: Optional[random.Random] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.ctx = ctx
        self.tasks = tasks
        self.on_api_error_pause = on_api_error_pause
        self.on_scheduler_state_changed = on_scheduler_state_changed
        self.kill_all_workers_for_retry = kill_all_workers_for_retry
        self.request_persist = request_persist
        self.trigger_tick = trigger_tick
        self._random = rng or random.Random()
        self._timer_factory = timer_factory

    # ── Ordinary task failures ───────────────────────────────

    def compute_retry_delay(self, retry_count: int) -> float:
        base = self.ctx.auto_retry_config.base_delay_seconds
        attempt = max(1, retry_count)
        backoff = base * (2 ** (attempt - 1))
        jitter = self._random.uniform(0, base)
        return min(AUTO_RETRY_MAX_DELAY, backoff + jitter)

    def handle_task_failure(self, task: Task, duration: Optional[float] = None) -> RetryDecision:
        config = self.ctx.auto_retry_config
        can_retry = config.enabled and config.max_retries > 0 and task.retry_count < config.max_retries
        if can_retry:
            task.retry_count += 1
            delay = self.compute_retry_delay(task.retry_count)
            task.next_retry_at = self.ctx.now() + delay
            self.tasks.set_task_status(task, "failed", duration)
            logger.info(
                "Task %s failed, retry %d/%d in %.1fs",
                task.task_id, task.retry_count, config.max_retries, delay,
            )
            return RetryDecision(scheduled=True, delay=delay)

        task.next_retry_at = None
        self.tasks.set_task_status(task, "failed", duration)
        logger.warning("Task %s failed permanently, cascading to dependents", task.task_id)
        self.cascade_failure(task.task_id)
        return RetryDecision(scheduled=False)

    def promote_due_retries(self) -> None:
        now = self.ctx.now()
        for task in list(self.ctx.tasks.values()):
            if task.status != "failed" or task.next_retry_at is None:
                continue
            if task.next_retry_at > now or task.task_id in self.ctx.task_locks:
                continue
            task.next_retry_at = None
            self.tasks.set_task_status(task, "ready" if self.tasks.can_execute(task) else "pending")

    def has_pending_retries(self) -> bool:
        return any(t.status == "failed" and t.next_retry_at is not None for t in self.ctx.tasks.values())

    def _walk_dependents(self, root_id: str, visit: Callable[[Task], None]) -> None:
        queue = deque([root_id])
        visited = {root_id}
        while queue:
            current = queue.popleft()
            for task in list(self.ctx.tasks.values()):
                if current not in task.dependencies or task.task_id in visited:
                    continue
                visited.add(task.task_id)
                visit(task)
                queue.append(task.task_id)

    def cascade_failure(self, task_id: str) -> None:
        """Fail every transitive dependent that has not already finished."""
        def _fail(task: Task) -> None:
            if task.status not in {"success", "failed"}:
                self.tasks.set_task_status(task, "failed")

        self._walk_dependents(task_id, _fail)

    def cascade_reset(self, task_id: str) -> None:
        """Re-open failed dependents after *task_id* was manually retried."""
        def _reset(task: Task) -> None:
            if task.status == "failed":
                self.tasks.set_task_status(task, "ready" if self.tasks.can_execute(task) else "pending")

        self._walk_dependents(task_id, _reset)

    # ── Upstream rate limiting ───────────────────────────────

    def compute_api_error_retry_delay(self, retry_count: int) -> float:
        attempt = max(1, retry_count)
        backoff = API_ERROR_BASE_DELAY * (2 ** (attempt - 1))
        jitter = self._random.uniform(0, API_ERROR_BASE_DELAY * API_ERROR_JITTER_RATIO)
        return min(API_ERROR_MAX_DELAY, backoff + jitter)

    def handle_api_error(self, error_text: str, slot: Optional[WorkerSlot] = None) -> None:
        """Pause the whole scheduler after an upstream rate-limit error.

        All workers are stopped with their artifact flags preserved.  The
        run resumes by itself after a backoff delay unless the global or
        the per-task ceiling has been hit, in which case it waits for
        :meth:`retry_from_api_error`.
        """
        with self.ctx.lock:
            if self.ctx.pause_reason == "api_error":
                return

            self.ctx.last_api_error_text = error_text
            self.ctx.api_error_retry_count += 1

            task_id: Optional[str] = None
            task_exceeded = False
            task: Optional[Task] = None
            if slot is not None and slot.task_id:
                task_id = slot.task_id
                task = self.ctx.tasks.get(task_id)
                if task is not None:
                    task.api_error_retry_count += 1
                    if task.api_error_retry_count >= API_ERROR_MAX_TASK_RETRIES:
                        task_exceeded = True
                        logger.error("Task %s exceeded max API retries (%d)", task_id, API_ERROR_MAX_TASK_RETRIES)

            logger.warning(
                "API error detected (global: %d/%d): %s",
                self.ctx.api_error_retry_count, API_ERROR_MAX_RETRIES, error_text[:100],
            )
            self.ctx.publish(API_ERROR, error_text=error_text, task_id=task_id, worker_id=slot.worker_id if slot else None)

            self.ctx.paused = True
            self.ctx.pause_reason = "api_error"
            self.kill_all_workers_for_retry()

            global_exceeded = self.ctx.api_error_retry_count > API_ERROR_MAX_RETRIES
            task_retry_count = task.api_error_retry_count if task is not None else None

            if not (global_exceeded or task_exceeded):
                delay = self.compute_api_error_retry_delay(self.ctx.api_error_retry_count)
                self.on_scheduler_state_changed()
                self.on_api_error_pause(ApiErrorPause(
                    error_text=error_text,
                    retry_count=self.ctx.api_error_retry_count,
                    max_retries=API_ERROR_MAX_RETRIES,
                    next_retry_in=delay,
                    task_id=task_id,
                    task_retry_count=task_retry_count,
                ))
                logger.info("Scheduling API error retry in %ds", round(delay))
                self.ctx.clear_api_error_retry_timer()
                timer = self._timer_factory(delay, self._on_retry_timer)
                timer.daemon = True
                self.ctx.api_error_retry_timer = timer
                timer.start()
            else:
                if task_exceeded:
                    reason = f"Task {task_id} reached the maximum of {API_ERROR_MAX_TASK_RETRIES} API error retries"
                else:
                    reason = f"Global API error retries exhausted ({API_ERROR_MAX_RETRIES})"
                self.on_scheduler_state_changed()
                self.on_api_error_pause(ApiErrorPause(
                    error_text=error_text,
                    retry_count=self.ctx.api_error_retry_count,
                    max_retries=API_ERROR_MAX_RETRIES,
                    next_retry_in=None,
                    task_id=task_id,
                    task_retry_count=task_retry_count,
                    pause_reason=reason,
                ))
                logger.error("API error: %s, waiting for operator", reason)

            self.request_persist("api_error")

    def _on_retry_timer(self) -> None:
        with self.ctx.lock:
            self.ctx.api_error_retry_timer = None
            self.resume_from_api_error()

    def resume_from_api_error(self) -> None:
        with self.ctx.lock:
            if not self.ctx.running or self.ctx.pause_reason != "api_error":
                return
            logger.info(
                "Resuming from API error (attempt %d/%d)",
                self.ctx.api_error_retry_count, API_ERROR_MAX_RETRIES,
            )
            self.ctx.paused = False
            self.ctx.pause_reason = None
            self.ctx.last_api_error_text = None
            self.on_scheduler_state_changed()
            self.trigger_tick("api_error_retry")
            self.request_persist("api_error_resume")

    def reset_api_error_state(self) -> None:
        self.ctx.api_error_retry_count = 0
        self.ctx.last_api_error_text = None
        self.ctx.clear_api_error_retry_timer()

    def retry_from_api_error(self) -> None:
        """Operator-initiated resume; restarts the global attempt counter."""
        with self.ctx.lock:
            if self.ctx.pause_reason != "api_error":
                return
            logger.info("Operator triggered retry from API error")
            self.ctx.api_error_retry_count = 0
            self.ctx.clear_api_error_retry_timer()
            self.resume_from_api_error()
