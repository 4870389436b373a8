from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path

MAX_PARALLEL_CEILING = 4


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    clear_logs_on_launch: bool
    tick_seconds: float
    max_parallel: int
    auto_retry_enabled: bool
    auto_retry_max_retries: int
    auto_retry_base_delay_seconds: float
    blocker_auto_pause: bool
    agent_command: list[str]
    worker_timeout: int
    host: str
    port: int
    api_token: str | None

    @property
    def sessions_dir(self) -> str:
        return os.path.join(self.data_dir, "sessions")

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".autodev")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        agent_command = os.getenv("AUTODEV_AGENT_COMMAND", "claude --print --input-format stream-json --output-format stream-json --verbose")
        max_parallel = int(os.getenv("AUTODEV_MAX_PARALLEL", str(MAX_PARALLEL_CEILING)))
        return Settings(
            log_level=os.getenv("AUTODEV_LOG_LEVEL", "info"),
            log_dir=os.getenv("AUTODEV_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("AUTODEV_DATA_DIR") or default_data_dir,
            clear_logs_on_launch=_env_bool("AUTODEV_CLEAR_LOGS_ON_LAUNCH", False),
            tick_seconds=float(os.getenv("AUTODEV_TICK_SECONDS", "5")),
            max_parallel=max(1, min(MAX_PARALLEL_CEILING, max_parallel)),
            auto_retry_enabled=_env_bool("AUTODEV_AUTO_RETRY", True),
            auto_retry_max_retries=int(os.getenv("AUTODEV_AUTO_RETRY_MAX", "2")),
            auto_retry_base_delay_seconds=float(os.getenv("AUTODEV_AUTO_RETRY_BASE_DELAY", "5")),
            blocker_auto_pause=_env_bool("AUTODEV_BLOCKER_AUTO_PAUSE", True),
            agent_command=shlex.split(agent_command),
            worker_timeout=int(os.getenv("AUTODEV_WORKER_TIMEOUT", "7200")),
            host=os.getenv("AUTODEV_HOST", "127.0.0.1"),
            port=int(os.getenv("AUTODEV_PORT", "18800")),
            api_token=os.getenv("AUTODEV_API_TOKEN") or None,
        )
