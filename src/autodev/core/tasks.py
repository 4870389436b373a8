"""Task graph bookkeeping: executability, wave gating, status and locks."""
from __future__ import annotations

import copy
import logging
from typing import Callable, Dict, List, Optional

from autodev.core.context import TASK_STATUS_CHANGED, SchedulerContext
from autodev.core.models import TERMINAL_TASK_STATUSES, Task, iso_now

logger = logging.getLogger("autodev.tasks")

TaskCallback = Callable[[Task], None]


class TaskManager:
    """Owns every status transition of the tasks in ``ctx.tasks``.

    ``on_status_changed`` is called with the task after each actual status
    change.  Exceptions it raises are logged and dropped.
    """

    def __init__(self, ctx: SchedulerContext, on_status_changed: Optional[TaskCallback] = None) -> None:
        self.ctx = ctx
        self.on_status_changed = on_status_changed

    def can_execute(self, task: Task) -> bool:
        for dep_id in task.dependencies:
            dep = self.ctx.tasks.get(dep_id)
            if dep is None or dep.status != "success":
                return False
        return True

    def update_pending_tasks(self) -> None:
        for task in list(self.ctx.tasks.values()):
            if task.status == "pending" and self.can_execute(task):
                self.set_task_status(task, "ready")

    def set_task_status(self, task: Task, status: str, duration: Optional[float] = None) -> None:
        prev = task.status
        if status == "running" and prev != "running":
            task.start_time = iso_now()
            task.end_time = None
            task.duration = None
        elif prev == "running" and status != "running":
            task.end_time = iso_now()

        task.status = status
        if duration is not None:
            task.duration = duration

        if prev == status:
            return

        logger.debug("Task %s: %s -> %s", task.task_id, prev, status)
        if self.on_status_changed:
            try:
                self.on_status_changed(task)
            except Exception as exc:  # noqa: BLE001
                logger.error("Status callback failed for task %s: %s", task.task_id, exc, exc_info=True)
        self.ctx.publish(
            TASK_STATUS_CHANGED,
            task_id=task.task_id,
            prev_status=prev,
            new_status=status,
            duration=task.duration,
        )

    # ── Locks ────────────────────────────────────────────────

    def lock_task(self, task_id: str, worker_id: int) -> bool:
        """Claim *task_id* for *worker_id* and mark it running.

        Returns False without side effects if another worker holds it.
        """
        if task_id in self.ctx.task_locks:
            return False
        self.ctx.task_locks[task_id] = worker_id
        task = self.ctx.tasks.get(task_id)
        if task is not None:
            task.worker_id = worker_id
            self.set_task_status(task, "running")
        return True

    def unlock_task(self, task_id: str) -> None:
        self.ctx.task_locks.pop(task_id, None)
        task = self.ctx.tasks.get(task_id)
        if task is not None:
            task.worker_id = None

    # ── Scheduling queries ───────────────────────────────────

    @staticmethod
    def is_incomplete(task: Task) -> bool:
        if task.status in {"success", "canceled"}:
            return False
        if task.status == "failed" and task.next_retry_at is None:
            return False
        return True

    def find_executable_tasks(self) -> List[Task]:
        """Return the tasks that may start right now, sorted by id.

        Only the lowest wave that still has incomplete work is considered,
        so a later wave never starts while an earlier one is unfinished.
        """
        incomplete = [t for t in self.ctx.tasks.values() if self.is_incomplete(t)]
        if not incomplete:
            return []
        active_wave = min(t.wave for t in incomplete)
        assigned = {w.assigned_task_id for w in self.ctx.get_active_workers()}
        runnable = [
            t for t in incomplete
            if t.wave == active_wave
            and t.status == "ready"
            and t.task_id not in self.ctx.task_locks
            and t.task_id not in assigned
            and self.can_execute(t)
        ]
        return sorted(runnable, key=lambda t: t.task_id)

    def is_all_tasks_success(self) -> bool:
        if not self.ctx.tasks:
            return False
        return all(t.status == "success" for t in self.ctx.tasks.values())

    def get_tasks_sorted(self) -> List[Task]:
        return self.ctx.get_tasks_sorted()

    # ── Loading and manual retry ─────────────────────────────

    def initialize_tasks(self, parsed: Dict[str, Task]) -> None:
        self.ctx.tasks.clear()
        self.ctx.task_locks.clear()
        for task_id, parsed_task in parsed.items():
            task = copy.deepcopy(parsed_task)
            if task.status not in TERMINAL_TASK_STATUSES:
                task.status = "pending"
            self.ctx.tasks[task_id] = task
        for task in self.ctx.tasks.values():
            if task.status == "pending" and self.can_execute(task):
                task.status = "ready"

    def reset_task_for_retry(self, task_id: str) -> bool:
        task = self.ctx.tasks.get(task_id)
        if task is None or task.status != "failed":
            return False
        task.retry_count = 0
        task.next_retry_at = None
        self.set_task_status(task, "ready" if self.can_execute(task) else "pending")
        return True
