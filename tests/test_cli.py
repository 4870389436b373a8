"""Foreground ``autodev run`` and ``serve`` wiring, with fake workers."""
from __future__ import annotations

import os

import pytest
from typer.testing import CliRunner

from autodev import cli
from autodev.core import gateway, logging_config

from conftest import FakeWorker, write_task_file

runner = CliRunner()


class BlockingReporter(FakeWorker):
    """Reports a blocker as soon as it starts and never finishes."""

    def start(self, working_dir: str) -> None:
        super().start(working_dir)
        self.report_issue(title="Database unreachable", severity="blocker", files=["db.py"])


class InstantWorker(FakeWorker):
    def start(self, working_dir: str) -> None:
        super().start(working_dir)
        self.complete(True)


@pytest.fixture(autouse=True)
def _quiet_cli(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "_setup_logging", lambda settings: None)
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    monkeypatch.setenv("AUTODEV_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("AUTODEV_LOG_DIR", str(tmp_path / "logs"))


def _use_scheduler(monkeypatch, sched) -> None:
    monkeypatch.setattr(gateway, "build_scheduler", lambda settings: sched)


def test_blocker_pause_halts_the_run(monkeypatch, make_scheduler, factory, tmp_path):
    def _factory(worker_id, task_id, content):
        worker = BlockingReporter(worker_id, task_id, content)
        factory.created.append(worker)
        return worker

    sched = make_scheduler()
    sched.pool.worker_factory = _factory
    _use_scheduler(monkeypatch, sched)
    path = write_task_file(str(tmp_path), [{"id": "A", "wave": 1}, {"id": "B", "wave": 1}])

    result = runner.invoke(cli.app, ["run", path, "-p", "1", "--poll", "0.01"])

    assert result.exit_code == 3
    assert "blocker" in result.output
    assert sched.ctx.running is False
    assert all(w.killed for w in factory.created)
    assert os.path.exists(os.path.join(str(tmp_path), "ISSUES.md"))


def test_saved_pause_requires_resume_flag(monkeypatch, make_scheduler, factory, tmp_path):
    sessions = str(tmp_path / "sessions")
    path = write_task_file(str(tmp_path), [{"id": "A", "wave": 1}])
    first = make_scheduler(sessions_dir=sessions)
    first.load_file(path)
    first.start()
    first.pause()
    first.persistence.persist_now("test")

    second = make_scheduler(sessions_dir=sessions)
    _use_scheduler(monkeypatch, second)
    result = runner.invoke(cli.app, ["run", path, "--poll", "0.01"])
    assert result.exit_code == 3
    assert "--resume" in result.output
    snapshot = second.persistence.store.read_snapshot(os.path.abspath(path))
    assert snapshot.paused is True


def test_resume_flag_continues_saved_pause(monkeypatch, make_scheduler, factory, tmp_path):
    sessions = str(tmp_path / "sessions")
    path = write_task_file(str(tmp_path), [{"id": "A", "wave": 1}])
    first = make_scheduler(sessions_dir=sessions)
    first.load_file(path)
    first.start()
    first.pause()
    first.persistence.persist_now("test")

    def _factory(worker_id, task_id, content):
        worker = InstantWorker(worker_id, task_id, content)
        factory.created.append(worker)
        return worker

    second = make_scheduler(sessions_dir=sessions, run_tick_loop=True, tick_seconds=0.05)
    second.pool.worker_factory = _factory
    _use_scheduler(monkeypatch, second)
    result = runner.invoke(cli.app, ["run", path, "--resume", "--poll", "0.01"])

    assert result.exit_code == 0, result.output
    assert "Done: 1/1 succeeded" in result.output
    assert second.ctx.tasks["A"].status == "success"


def test_serve_leaves_logging_to_the_app_factory(monkeypatch):
    configured = []
    launched = []
    monkeypatch.setattr(logging_config, "setup_logging", lambda **kwargs: configured.append(kwargs))
    monkeypatch.setattr(cli, "_setup_logging", lambda settings: configured.append(settings))
    monkeypatch.setattr(cli.uvicorn, "run", lambda target, **kwargs: launched.append((target, kwargs)))

    result = runner.invoke(cli.app, ["serve", "--port", "19000"])

    assert result.exit_code == 0
    assert configured == []
    assert launched[0][0] == "autodev.core.gateway:create_app"
    assert launched[0][1]["factory"] is True
    assert launched[0][1]["port"] == 19000
