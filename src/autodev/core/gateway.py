from contextlib import asynccontextmanager
import logging
import os
from typing import Literal, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from autodev import __version__
from autodev.core.config import Settings
from autodev.core.errors import (
    IssueNotFoundError,
    SchedulerError,
    TaskFileError,
    TaskNotFoundError,
    WorkerNotFoundError,
)
from autodev.core.logging_config import setup_logging
from autodev.core.models import AutoRetryConfig
from autodev.core.scheduler import Scheduler
from autodev.integrations.agent_cli import make_worker_factory

logger = logging.getLogger("autodev.gateway")


def build_scheduler(settings: Settings) -> Scheduler:
    """Scheduler wired to the agent CLI backend and the configured data dirs."""
    os.makedirs(settings.sessions_dir, exist_ok=True)
    return Scheduler(
        make_worker_factory(settings.agent_command, timeout=settings.worker_timeout),
        sessions_dir=settings.sessions_dir,
        log_dir=settings.log_dir,
        tick_seconds=settings.tick_seconds,
        auto_retry=AutoRetryConfig(
            enabled=settings.auto_retry_enabled,
            max_retries=settings.auto_retry_max_retries,
            base_delay_seconds=settings.auto_retry_base_delay_seconds,
        ),
        blocker_auto_pause=settings.blocker_auto_pause,
    )


def create_app(scheduler: Optional[Scheduler] = None, settings: Optional[Settings] = None) -> FastAPI:
    if settings is None:
        load_dotenv(override=False)
        settings = Settings.from_env()
    if scheduler is None:
        setup_logging(
            log_dir=settings.log_dir,
            log_level=settings.log_level,
            clear_on_launch=settings.clear_logs_on_launch,
        )
        scheduler = build_scheduler(settings)

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("Gateway ready on %s:%d", settings.host, settings.port)
        yield
        # Shutdown: kill workers and flush the session snapshot
        scheduler.stop()

    app = FastAPI(title="Auto-Dev Scheduler", version=__version__, lifespan=lifespan)
    app.state.scheduler = scheduler

    @app.exception_handler(SchedulerError)
    async def _scheduler_error(request: Request, exc: SchedulerError) -> JSONResponse:
        status = 404 if isinstance(exc, (TaskNotFoundError, WorkerNotFoundError, IssueNotFoundError)) else 400
        if isinstance(exc, TaskFileError):
            status = 422
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    def _require_token(x_autodev_token: Optional[str] = Header(default=None)) -> None:
        if settings.api_token and x_autodev_token != settings.api_token:
            raise HTTPException(status_code=401, detail="Invalid API token")

    api = APIRouter(dependencies=[Depends(_require_token)])

    # ---- models ----

    class LoadRequest(BaseModel):
        file_path: str = Field(min_length=1)

    class StartRequest(BaseModel):
        max_parallel: int = Field(default=1, ge=1)

    class SendRequest(BaseModel):
        text: str = Field(min_length=1)

    class IssueStatusRequest(BaseModel):
        status: Literal["open", "fixed", "ignored"]

    class ReportRequest(BaseModel):
        path: Optional[str] = None

    class AutoRetryRequest(BaseModel):
        enabled: Optional[bool] = None
        max_retries: Optional[int] = None
        base_delay_seconds: Optional[float] = None

    class BlockerRequest(BaseModel):
        enabled: bool

    # ---- core routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @api.get("/state")
    def state() -> dict:
        return scheduler.get_state()

    @api.get("/progress")
    def progress() -> dict[str, int]:
        return scheduler.get_progress()

    @api.post("/load")
    def load(req: LoadRequest) -> dict:
        return scheduler.load_file(req.file_path)

    # ---- run control ----

    @api.post("/start")
    def start(req: StartRequest) -> dict:
        if not scheduler.start(req.max_parallel):
            raise HTTPException(status_code=409, detail="Scheduler already running or no tasks loaded")
        return {"status": "started", "max_parallel": scheduler.ctx.max_parallel}

    @api.post("/pause")
    def pause() -> dict[str, bool]:
        return {"paused": scheduler.pause()}

    @api.post("/resume")
    def resume() -> dict[str, bool]:
        return {"resumed": scheduler.resume()}

    @api.post("/stop")
    def stop() -> dict[str, str]:
        scheduler.stop()
        return {"status": "stopped"}

    # ---- tasks & workers ----

    @api.post("/tasks/{task_id}/retry")
    def retry_task(task_id: str) -> dict[str, bool]:
        return {"retried": scheduler.retry_task(task_id)}

    @api.get("/workers")
    def workers() -> list[dict]:
        return scheduler.pool.get_worker_states()

    @api.post("/workers/{worker_id}/send")
    def send_to_worker(worker_id: int, req: SendRequest) -> dict[str, str]:
        scheduler.send_to_worker(worker_id, req.text)
        return {"status": "sent"}

    @api.post("/workers/{worker_id}/kill")
    def kill_worker(worker_id: int) -> dict[str, str]:
        scheduler.kill_worker(worker_id)
        return {"status": "killed"}

    # ---- issues ----

    @api.get("/issues")
    def issues() -> list[dict]:
        return scheduler.get_issues()

    @api.post("/issues/{issue_id}/status")
    def issue_status(issue_id: str, req: IssueStatusRequest) -> dict[str, str]:
        scheduler.update_issue_status(issue_id, req.status)
        return {"issue_id": issue_id, "status": req.status}

    @api.delete("/issues")
    def clear_issues() -> dict[str, str]:
        scheduler.clear_issues()
        return {"status": "cleared"}

    @api.post("/issues/report")
    def issues_report(req: ReportRequest) -> dict[str, str]:
        return {"path": scheduler.write_issues_report(req.path)}

    # ---- resilience settings ----

    @api.post("/config/auto-retry")
    def auto_retry(req: AutoRetryRequest) -> dict:
        config = scheduler.set_auto_retry_config(req.enabled, req.max_retries, req.base_delay_seconds)
        return config.to_dict()

    @api.post("/config/blocker-auto-pause")
    def blocker_auto_pause(req: BlockerRequest) -> dict[str, bool]:
        scheduler.set_blocker_auto_pause(req.enabled)
        return {"enabled": req.enabled}

    @api.post("/api-error/retry")
    def api_error_retry() -> dict[str, str]:
        scheduler.retry_from_api_error()
        return {"status": "retrying"}

    @api.get("/logs", response_class=PlainTextResponse)
    def export_logs() -> str:
        return scheduler.export_logs()

    app.include_router(api)
    return app
