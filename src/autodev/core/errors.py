from __future__ import annotations


class SchedulerError(RuntimeError):
    """Base class for errors raised by scheduler commands."""


class TaskNotFoundError(SchedulerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Unknown task: {task_id}")
        self.task_id = task_id


class WorkerNotFoundError(SchedulerError):
    def __init__(self, worker_id: int) -> None:
        super().__init__(f"Unknown worker: {worker_id}")
        self.worker_id = worker_id


class IssueNotFoundError(SchedulerError):
    def __init__(self, issue_id: str) -> None:
        super().__init__(f"Unknown issue: {issue_id}")
        self.issue_id = issue_id


class TaskFileError(SchedulerError):
    """The task file is missing or malformed."""


class WorkerLaunchError(RuntimeError):
    """A worker backend could not start its process."""
