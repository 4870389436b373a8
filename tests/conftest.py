"""Shared fakes: in-memory worker handles, manual timers and a settable clock."""
from __future__ import annotations

import json
import os
import random
from typing import Any, Callable, Optional

import pytest

from autodev.core.models import AutoRetryConfig
from autodev.core.scheduler import Scheduler
from autodev.core.worker import WorkerEvent


class FakeWorker:
    """WorkerHandle that only does what the test tells it to."""

    def __init__(self, worker_id: int, task_id: str, startup_content: str) -> None:
        self.worker_id = worker_id
        self.task_id = task_id
        self.startup_content = startup_content
        self.listeners: list[Callable[[WorkerEvent], None]] = []
        self.started_in: Optional[str] = None
        self.sent: list[str] = []
        self.killed = False
        self.modified = False
        self.fail_on_start: Optional[Exception] = None

    @property
    def has_modified_code(self) -> bool:
        return self.modified

    @property
    def token_usage(self) -> Optional[str]:
        return None

    @property
    def current_tool(self) -> Optional[str]:
        return None

    def subscribe(self, listener: Callable[[WorkerEvent], None]) -> None:
        self.listeners.append(listener)

    def start(self, working_dir: str) -> None:
        if self.fail_on_start is not None:
            raise self.fail_on_start
        self.started_in = working_dir

    def send(self, text: str) -> None:
        self.sent.append(text)

    def kill(self) -> None:
        self.killed = True

    # ── test drivers ──

    def emit(self, event: WorkerEvent) -> None:
        for listener in list(self.listeners):
            listener(event)

    def complete(self, success: bool = True, duration_ms: float = 1000.0) -> None:
        self.emit(WorkerEvent(kind="complete", success=success, duration_ms=duration_ms))

    def report_issue(self, **payload: Any) -> None:
        self.emit(WorkerEvent(kind="issue_reported", issue=payload))

    def rate_limited(self, text: str = "429 Too Many Requests") -> None:
        self.emit(WorkerEvent(kind="rate_limit_error", error_text=text))


class WorkerFactory:
    """Records every worker it builds, in spawn order."""

    def __init__(self) -> None:
        self.created: list[FakeWorker] = []

    def __call__(self, worker_id: int, task_id: str, startup_content: str) -> FakeWorker:
        worker = FakeWorker(worker_id, task_id, startup_content)
        self.created.append(worker)
        return worker

    def for_task(self, task_id: str) -> list[FakeWorker]:
        return [w for w in self.created if w.task_id == task_id]

    def latest(self, task_id: str) -> FakeWorker:
        return self.for_task(task_id)[-1]


class FakeTimer:
    """threading.Timer stand-in that only fires when the test says so."""

    instances: list["FakeTimer"] = []

    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.instances.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function()


class Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def write_task_file(directory: str, tasks: list[dict], name: str = "tasks.json", **extra: Any) -> str:
    path = os.path.join(directory, name)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump({"tasks": tasks, **extra}, handle)
    return path


@pytest.fixture(autouse=True)
def _reset_timers():
    FakeTimer.instances = []
    yield
    FakeTimer.instances = []


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def factory() -> WorkerFactory:
    return WorkerFactory()


@pytest.fixture
def make_scheduler(factory, clock, tmp_path):
    def _make(**kwargs: Any) -> Scheduler:
        kwargs.setdefault("auto_retry", AutoRetryConfig(enabled=True, max_retries=2, base_delay_seconds=5.0))
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("rng", random.Random(7))
        kwargs.setdefault("timer_factory", FakeTimer)
        kwargs.setdefault("run_tick_loop", False)
        return Scheduler(factory, **kwargs)

    return _make
