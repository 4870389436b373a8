from __future__ import annotations

from autodev.core.context import MAX_COMPLETED_WORKER_LOGS, EventBus, SchedulerContext, WorkerSlot
from autodev.core.models import LogEntry, Task


def _slot(worker_id: int, task_id: str = "A", closing: bool = False) -> WorkerSlot:
    return WorkerSlot(
        worker_id=worker_id,
        handle=None,
        assigned_task_id=task_id,
        task_id=task_id,
        generation=worker_id,
        start_time=0.0,
        closing=closing,
    )


def test_worker_ids_fill_lowest_gap() -> None:
    ctx = SchedulerContext(max_parallel_ceiling=3)
    assert ctx.reserve_worker_id() == 1
    ctx.workers[3] = _slot(3)
    assert ctx.reserve_worker_id() == 2
    assert ctx.next_worker_id() == 4
    ctx.release_worker_id(1)
    assert ctx.next_worker_id() == 1


def test_active_count_includes_reservations() -> None:
    ctx = SchedulerContext()
    ctx.workers[1] = _slot(1)
    ctx.workers[2] = _slot(2, closing=True)
    ctx.reserve_worker_id()
    assert ctx.get_active_worker_count() == 2
    ctx.clear_workers()
    assert ctx.get_active_worker_count() == 0


def test_generation_is_monotonic() -> None:
    ctx = SchedulerContext()
    assert [ctx.next_generation() for _ in range(3)] == [1, 2, 3]


def test_archived_logs_are_bounded() -> None:
    ctx = SchedulerContext()
    slot = _slot(1)
    slot.logs.append(LogEntry.now("output", "hello"))
    for _ in range(MAX_COMPLETED_WORKER_LOGS + 5):
        ctx.archive_worker_logs(slot)
    assert len(ctx.completed_worker_logs) == MAX_COMPLETED_WORKER_LOGS
    assert ctx.completed_worker_logs[0].to_dict()["logs"][0]["content"] == "hello"


def test_reset_for_new_file() -> None:
    ctx = SchedulerContext()
    ctx.tasks["A"] = Task("A")
    ctx.task_locks["A"] = 1
    ctx.running = True
    ctx.paused = True
    ctx.pause_reason = "user"
    ctx.api_error_retry_count = 3
    ctx.reset_for_new_file()
    assert ctx.tasks == {}
    assert ctx.task_locks == {}
    assert ctx.running is False
    assert ctx.pause_reason is None
    assert ctx.api_error_retry_count == 0


def test_event_bus_isolates_listener_failures() -> None:
    bus = EventBus()
    received = []

    def broken(payload: dict) -> None:
        raise ValueError("nope")

    bus.subscribe("t", broken)
    unsubscribe = bus.subscribe("t", received.append)
    bus.publish("t", {"n": 1})
    unsubscribe()
    bus.publish("t", {"n": 2})
    assert received == [{"n": 1}]
