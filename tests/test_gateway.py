from __future__ import annotations

from fastapi.testclient import TestClient

from autodev.core.config import Settings
from autodev.core.gateway import create_app

from conftest import write_task_file


def _settings(tmp_path, api_token=None) -> Settings:
    return Settings(
        log_level="info",
        log_dir=str(tmp_path / "logs"),
        data_dir=str(tmp_path / "data"),
        clear_logs_on_launch=False,
        tick_seconds=5.0,
        max_parallel=2,
        auto_retry_enabled=True,
        auto_retry_max_retries=2,
        auto_retry_base_delay_seconds=5.0,
        blocker_auto_pause=True,
        agent_command=["agent"],
        worker_timeout=60,
        host="127.0.0.1",
        port=18800,
        api_token=api_token,
    )


def _client(make_scheduler, tmp_path, api_token=None):
    sched = make_scheduler()
    return TestClient(create_app(scheduler=sched, settings=_settings(tmp_path, api_token))), sched


def test_health(make_scheduler, tmp_path) -> None:
    client, _ = _client(make_scheduler, tmp_path)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_load_start_and_state(make_scheduler, factory, tmp_path) -> None:
    client, _ = _client(make_scheduler, tmp_path)
    path = write_task_file(str(tmp_path), [{"id": "A", "wave": 1}, {"id": "B", "wave": 1}])

    resp = client.post("/load", json={"file_path": path})
    assert resp.status_code == 200
    assert [t["task_id"] for t in resp.json()["tasks"]] == ["A", "B"]

    resp = client.post("/start", json={"max_parallel": 2})
    assert resp.status_code == 200
    assert resp.json()["max_parallel"] == 2
    assert client.post("/start", json={}).status_code == 409

    state = client.get("/state").json()
    assert state["running"] is True
    assert state["progress"] == {"completed": 0, "failed": 0, "running": 2, "total": 2}
    assert len(state["workers"]) == 2
    assert "logs" not in state["workers"][0]

    assert client.post("/pause").json() == {"paused": True}
    assert client.get("/state").json()["pause_reason"] == "user"
    assert client.post("/resume").json() == {"resumed": True}
    assert client.post("/stop").json() == {"status": "stopped"}
    assert all(w.killed for w in factory.created)


def test_errors_map_to_status_codes(make_scheduler, tmp_path) -> None:
    client, _ = _client(make_scheduler, tmp_path)
    assert client.post("/load", json={"file_path": str(tmp_path / "missing.json")}).status_code == 422
    path = write_task_file(str(tmp_path), [{"id": "A"}])
    client.post("/load", json={"file_path": path})
    assert client.post("/tasks/NOPE/retry").status_code == 404
    assert client.post("/workers/7/kill").status_code == 404
    assert client.post("/workers/7/send", json={"text": "hi"}).status_code == 404
    assert client.post("/issues/abc/status", json={"status": "fixed"}).status_code == 404
    assert client.post("/issues/abc/status", json={"status": "done"}).status_code == 422
    assert client.post("/config/auto-retry", json={"max_retries": -1}).status_code == 400


def test_worker_and_issue_endpoints(make_scheduler, factory, tmp_path) -> None:
    client, sched = _client(make_scheduler, tmp_path)
    path = write_task_file(str(tmp_path), [{"id": "A", "wave": 1}])
    client.post("/load", json={"file_path": path})
    client.post("/start", json={"max_parallel": 1})
    worker = factory.latest("A")

    assert client.post(f"/workers/{worker.worker_id}/send", json={"text": "add tests"}).status_code == 200
    assert worker.sent == ["add tests"]

    worker.report_issue(title="Lint errors", severity="warning")
    issues = client.get("/issues").json()
    assert len(issues) == 1
    issue_id = issues[0]["issue_id"]
    assert client.post(f"/issues/{issue_id}/status", json={"status": "ignored"}).status_code == 200
    assert sched.get_issues()[0]["status"] == "ignored"

    report = client.post("/issues/report", json={}).json()
    assert report["path"].endswith("ISSUES.md")

    logs = client.get("/logs")
    assert logs.status_code == 200
    assert "Auto-Dev Scheduler Logs" in logs.text

    assert client.post(f"/workers/{worker.worker_id}/kill").status_code == 200
    assert worker.killed is True
    assert client.delete("/issues").json() == {"status": "cleared"}
    assert client.get("/issues").json() == []


def test_config_endpoints(make_scheduler, tmp_path) -> None:
    client, sched = _client(make_scheduler, tmp_path)
    resp = client.post("/config/auto-retry", json={"enabled": False, "base_delay_seconds": 2})
    assert resp.json() == {"enabled": False, "max_retries": 2, "base_delay_seconds": 2.0}
    assert client.post("/config/blocker-auto-pause", json={"enabled": False}).json() == {"enabled": False}
    assert sched.ctx.blocker_auto_pause_enabled is False
    assert client.post("/api-error/retry").json() == {"status": "retrying"}


def test_token_required_when_configured(make_scheduler, tmp_path) -> None:
    client, _ = _client(make_scheduler, tmp_path, api_token="s3cret")
    assert client.get("/health").status_code == 200
    assert client.get("/state").status_code == 401
    assert client.get("/state", headers={"x-autodev-token": "wrong"}).status_code == 401
    assert client.get("/state", headers={"x-autodev-token": "s3cret"}).status_code == 200
