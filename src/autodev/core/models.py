"""Data models shared by the scheduler components.

Statuses are plain strings validated against the sets below, the same
way they appear in session snapshots and HTTP payloads.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any, List, Optional

# Valid task statuses
TASK_STATUSES = {"pending", "ready", "running", "success", "failed", "canceled"}
# Statuses the loader may carry over instead of resetting to pending
TERMINAL_TASK_STATUSES = {"success", "failed", "canceled"}

ISSUE_SEVERITIES = ("warning", "error", "blocker")
ISSUE_STATUSES = {"open", "fixed", "ignored"}
SEVERITY_RANK = {severity: rank for rank, severity in enumerate(ISSUE_SEVERITIES)}

PAUSE_REASONS = {"user", "blocker", "api_error"}


def format_clock(ts: Optional[float] = None) -> str:
    return time.strftime("%H:%M:%S", time.localtime(ts if ts is not None else time.time()))


def iso_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


@dataclass
class Task:
    """One unit of work in the dependency graph."""
    task_id: str
    title: str = ""
    wave: int = 0
    dependencies: List[str] = field(default_factory=list)
    status: str = "pending"             # pending|ready|running|success|failed|canceled

    duration: Optional[float] = None    # seconds
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    worker_id: Optional[int] = None

    # Ordinary failure retries
    retry_count: int = 0
    next_retry_at: Optional[float] = None   # epoch seconds

    # Rate-limit recovery
    has_modified_code: bool = False
    api_error_retry_count: int = 0
    is_api_error_recovery: bool = False

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "wave": self.wave,
            "dependencies": list(self.dependencies),
            "status": self.status,
            "duration": self.duration,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "worker_id": self.worker_id,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at,
            "has_modified_code": self.has_modified_code,
            "api_error_retry_count": self.api_error_retry_count,
            "is_api_error_recovery": self.is_api_error_recovery,
        }


@dataclass
class Issue:
    """A deduplicated problem report raised by one or more workers."""
    issue_id: str
    title: str
    severity: str                       # warning|error|blocker
    reporter_task_id: str
    reporter_worker_id: int
    status: str = "open"                # open|fixed|ignored
    occurrences: int = 1
    files: List[str] = field(default_factory=list)
    owner_task_id: Optional[str] = None
    signature: Optional[str] = None
    details: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "issue_id": self.issue_id,
            "title": self.title,
            "severity": self.severity,
            "status": self.status,
            "occurrences": self.occurrences,
            "reporter_task_id": self.reporter_task_id,
            "reporter_worker_id": self.reporter_worker_id,
            "owner_task_id": self.owner_task_id,
            "files": list(self.files),
            "signature": self.signature,
            "details": self.details,
            "created_at": self.created_at,
        }


@dataclass
class LogEntry:
    ts: str
    type: str       # start|tool|result|output|error|system
    content: str

    @classmethod
    def now(cls, type: str, content: str) -> LogEntry:
        return cls(ts=format_clock(), type=type, content=content)

    def to_dict(self) -> dict:
        return {"ts": self.ts, "type": self.type, "content": self.content}


@dataclass
class AutoRetryConfig:
    enabled: bool = True
    max_retries: int = 2
    base_delay_seconds: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_retries": self.max_retries,
            "base_delay_seconds": self.base_delay_seconds,
        }
