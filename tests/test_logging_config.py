from __future__ import annotations

import json
import logging

import pytest

from autodev.core import logging_config
from autodev.core.logging_config import (
    append_to_file,
    clear_logs,
    log_scheduler_event,
    scheduler_event_logger,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    yield
    for target in (root, scheduler_event_logger):
        logging_config._drop_owned_handlers(target)
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


def test_clear_logs_only_touches_own_files(tmp_path) -> None:
    for name in ("autodev.log", "autodev.log.1", "scheduler-events.log", "other-tool.log"):
        (tmp_path / name).write_text("x", encoding="utf-8")
    (tmp_path / "workers" / "A").mkdir(parents=True)
    (tmp_path / "workers" / "A" / "worker.log").write_text("x", encoding="utf-8")

    clear_logs(str(tmp_path))

    assert sorted(p.name for p in tmp_path.iterdir()) == ["other-tool.log"]
    clear_logs(str(tmp_path / "missing"))


def test_setup_twice_replaces_only_own_handlers(tmp_path, restore_logging) -> None:
    root = logging.getLogger()
    foreign = logging.NullHandler()
    root.addHandler(foreign)

    setup_logging(str(tmp_path), "debug")
    setup_logging(str(tmp_path), "warning")

    owned = [h for h in root.handlers if getattr(h, logging_config._OWNED, False)]
    assert len(owned) == 2
    assert foreign in root.handlers
    assert len(scheduler_event_logger.handlers) == 1
    assert root.level == logging.WARNING
    assert (tmp_path / "autodev.log").exists()


def test_clear_on_launch_runs_before_handlers_open(tmp_path, restore_logging) -> None:
    (tmp_path / "autodev.log").write_text("old run\n", encoding="utf-8")
    setup_logging(str(tmp_path), "info", clear_on_launch=True)
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "old run" not in (tmp_path / "autodev.log").read_text(encoding="utf-8")


def test_scheduler_events_are_jsonl(tmp_path, restore_logging) -> None:
    setup_logging(str(tmp_path), "info")
    log_scheduler_event("worker_spawned", worker_id=1, task_id="A", recovery=None, note="x" * 3000)
    scheduler_event_logger.handlers[0].flush()

    lines = (tmp_path / "scheduler-events.log").read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["event"] == "worker_spawned"
    assert record["task_id"] == "A"
    assert "recovery" not in record
    assert record["note"].endswith("…(truncated)")


def test_append_to_file_creates_directories(tmp_path) -> None:
    path = tmp_path / "workers" / "A" / "worker.log"
    append_to_file(str(path), "[output] hello")
    append_to_file(str(path), "[output] again")
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("[output] hello")


def test_append_to_file_logs_io_errors(tmp_path, caplog) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    with caplog.at_level(logging.WARNING, logger="autodev.logging"):
        append_to_file(str(blocker / "worker.log"), "line")
    assert "Could not write" in caplog.text
