"""Crash-resilient session snapshots.

One JSON document per task file lives under ``<data_dir>/sessions/``::

    sessions/
    ├── 3f2a9c0d1e4b5a67.json       # current snapshot
    ├── 3f2a9c0d1e4b5a67.json.bak   # previous snapshot
    └── 3f2a9c0d1e4b5a67.json.tmp   # only present mid-write

The file name is a hash of the normalized task-file path, so reloading the
same file after a restart finds its progress again.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
import threading
import time
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from autodev.core.context import SchedulerContext
from autodev.core.models import PAUSE_REASONS, TASK_STATUSES, AutoRetryConfig, Issue

logger = logging.getLogger("autodev.session")

SNAPSHOT_VERSION = 1
DEFAULT_DEBOUNCE_SECONDS = 0.75

_CASE_INSENSITIVE_FS = sys.platform in {"win32", "darwin"}


# ── Snapshot schema ──────────────────────────────────────────

class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PersistedAutoRetryConfig(_Model):
    enabled: bool = True
    max_retries: int = Field(default=2, alias="maxRetries")
    base_delay_ms: float = Field(default=5000, alias="baseDelayMs")


class PersistedTaskState(_Model):
    status: str
    duration: Optional[float] = None
    start_time: Optional[str] = Field(default=None, alias="startTime")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    retry_count: int = Field(default=0, alias="retryCount")
    next_retry_at: Optional[int] = Field(default=None, alias="nextRetryAt")  # epoch ms
    has_modified_code: bool = Field(default=False, alias="hasModifiedCode")
    api_error_retry_count: int = Field(default=0, alias="apiErrorRetryCount")
    is_api_error_recovery: bool = Field(default=False, alias="isApiErrorRecovery")

    @field_validator("status")
    @classmethod
    def _known_status(cls, value: str) -> str:
        if value not in TASK_STATUSES:
            raise ValueError(f"unknown task status {value!r}")
        return value

    @field_validator("retry_count", "api_error_retry_count", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        if not isinstance(value, (int, float)):
            return 0
        return max(0, int(value))

    @field_validator("next_retry_at", mode="before")
    @classmethod
    def _whole_ms(cls, value: Any) -> Optional[int]:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)


class PersistedIssue(_Model):
    id: str
    title: str
    severity: Literal["warning", "error", "blocker"]
    status: Literal["open", "fixed", "ignored"] = "open"
    occurrences: int = 1
    reporter_task_id: str = Field(default="", alias="reporterTaskId")
    reporter_worker_id: int = Field(default=0, alias="reporterWorkerId")
    owner_task_id: Optional[str] = Field(default=None, alias="ownerTaskId")
    files: List[str] = Field(default_factory=list)
    signature: Optional[str] = None
    details: Optional[str] = None
    created_at: int = Field(default=0, alias="createdAt")  # epoch ms

    @classmethod
    def from_issue(cls, issue: Issue) -> PersistedIssue:
        return cls(
            id=issue.issue_id,
            title=issue.title,
            severity=issue.severity,
            status=issue.status,
            occurrences=issue.occurrences,
            reporter_task_id=issue.reporter_task_id,
            reporter_worker_id=issue.reporter_worker_id,
            owner_task_id=issue.owner_task_id,
            files=list(issue.files),
            signature=issue.signature,
            details=issue.details,
            created_at=int(issue.created_at * 1000),
        )

    def to_issue(self) -> Issue:
        return Issue(
            issue_id=self.id,
            title=self.title,
            severity=self.severity,
            status=self.status,
            occurrences=self.occurrences,
            reporter_task_id=self.reporter_task_id,
            reporter_worker_id=self.reporter_worker_id,
            owner_task_id=self.owner_task_id,
            files=list(self.files),
            signature=self.signature,
            details=self.details,
            created_at=self.created_at / 1000.0,
        )


def _keep_valid(model: type[BaseModel], raw: Any, what: str) -> Any:
    """Validate items one by one, dropping the ones that do not parse."""
    if isinstance(raw, dict):
        kept: Dict[str, Any] = {}
        for key, value in raw.items():
            try:
                kept[key] = model.model_validate(value)
            except ValidationError:
                logger.warning("Dropping invalid persisted %s %r", what, key)
        return kept
    if isinstance(raw, list):
        items = []
        for value in raw:
            try:
                items.append(model.model_validate(value))
            except ValidationError:
                logger.warning("Dropping invalid persisted %s", what)
        return items
    return raw


class SessionSnapshot(_Model):
    version: Literal[1] = SNAPSHOT_VERSION
    saved_at: str = Field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()), alias="savedAt")
    file_path: str = Field(alias="filePath", min_length=1)
    project_root: str = Field(alias="projectRoot", min_length=1)
    paused: bool = False
    pause_reason: Optional[str] = Field(default=None, alias="pauseReason")
    auto_retry_config: PersistedAutoRetryConfig = Field(default_factory=PersistedAutoRetryConfig, alias="autoRetryConfig")
    blocker_auto_pause_enabled: bool = Field(default=True, alias="blockerAutoPauseEnabled")
    task_states: Dict[str, PersistedTaskState] = Field(default_factory=dict, alias="taskStates")
    issues: List[PersistedIssue] = Field(default_factory=list)

    @field_validator("pause_reason", mode="before")
    @classmethod
    def _known_reason(cls, value: Any) -> Optional[str]:
        return value if value in PAUSE_REASONS else None

    @field_validator("auto_retry_config", mode="before")
    @classmethod
    def _retry_config(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("task_states", mode="before")
    @classmethod
    def _valid_task_states(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return {}
        return _keep_valid(PersistedTaskState, value, "task state")

    @field_validator("issues", mode="before")
    @classmethod
    def _valid_issues(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return _keep_valid(PersistedIssue, value, "issue")


# ── Storage ──────────────────────────────────────────────────

def normalize_file_key(file_path: str) -> str:
    resolved = os.path.abspath(file_path)
    return resolved.lower() if _CASE_INSENSITIVE_FS else resolved


def compute_session_id(file_path: str) -> str:
    return hashlib.sha1(normalize_file_key(file_path).encode("utf-8")).hexdigest()[:16]


def same_file(a: str, b: str) -> bool:
    if _CASE_INSENSITIVE_FS:
        return a.lower() == b.lower()
    return a == b


class SessionStore:
    """Atomic JSON snapshot files, one per task file."""

    def __init__(self, sessions_dir: str) -> None:
        self.sessions_dir = sessions_dir
        self._save_lock = threading.RLock()

    def paths_for(self, file_path: str) -> tuple[str, str, str]:
        base = os.path.join(self.sessions_dir, f"{compute_session_id(file_path)}.json")
        return base, f"{base}.bak", f"{base}.tmp"

    def _try_load(self, path: str) -> Optional[SessionSnapshot]:
        try:
            with open(path, "r", encoding="utf-8-sig") as handle:
                text = handle.read().strip()
        except FileNotFoundError:
            return None
        if not text:
            return None
        try:
            return SessionSnapshot.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Ignoring unreadable session snapshot %s: %s", path, exc)
            return None

    def read_snapshot(self, file_path: str) -> Optional[SessionSnapshot]:
        with self._save_lock:
            for path in self.paths_for(file_path):
                snapshot = self._try_load(path)
                if snapshot is not None:
                    return snapshot
        return None

    def write_snapshot(self, file_path: str, snapshot: SessionSnapshot) -> None:
        main_path, bak_path, tmp_path = self.paths_for(file_path)
        payload = snapshot.model_dump(by_alias=True)
        with self._save_lock:
            os.makedirs(self.sessions_dir, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            if os.path.exists(main_path):
                try:
                    os.replace(main_path, bak_path)
                except OSError as exc:
                    logger.warning("Could not rotate session backup %s: %s", bak_path, exc)
            os.replace(tmp_path, main_path)

    def clear_snapshot(self, file_path: str) -> None:
        with self._save_lock:
            for path in self.paths_for(file_path):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass


# ── Debounced persistence ────────────────────────────────────

class SessionPersistence:
    """Coalesces persist requests into one snapshot write per debounce window.

    A nonce captured when the timer is armed makes a write that was
    superseded by :meth:`invalidate` (file reload, stop) a no-op.
    """

    def __init__(
        self,
        ctx: SchedulerContext,
        store: SessionStore,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.ctx = ctx
        self.store = store
        self.debounce_seconds = debounce_seconds
        self._timer_factory = timer_factory
        self._timer: Optional[Any] = None
        self._nonce = 0
        self._lock = threading.Lock()

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def request(self, reason: str) -> None:
        if not self.ctx.file_path:
            return
        with self._lock:
            if self._timer is not None:
                return
            nonce = self._nonce

            def _fire() -> None:
                with self._lock:
                    self._timer = None
                    if nonce != self._nonce:
                        return
                self.persist_now(f"debounce:{reason}")

            timer = self._timer_factory(self.debounce_seconds, _fire)
            timer.daemon = True
            self._timer = timer
        timer.start()

    def build_snapshot(self) -> SessionSnapshot:
        with self.ctx.lock:
            task_states = {
                task.task_id: PersistedTaskState(
                    status=task.status,
                    duration=task.duration,
                    start_time=task.start_time,
                    end_time=task.end_time,
                    retry_count=task.retry_count,
                    next_retry_at=int(task.next_retry_at * 1000) if task.next_retry_at is not None else None,
                    has_modified_code=task.has_modified_code,
                    api_error_retry_count=task.api_error_retry_count,
                    is_api_error_recovery=task.is_api_error_recovery,
                )
                for task in self.ctx.tasks.values()
            }
            config = self.ctx.auto_retry_config
            return SessionSnapshot(
                file_path=self.ctx.file_path,
                project_root=self.ctx.project_root or os.path.dirname(os.path.abspath(self.ctx.file_path)),
                paused=self.ctx.paused,
                pause_reason=self.ctx.pause_reason,
                auto_retry_config=PersistedAutoRetryConfig(
                    enabled=config.enabled,
                    max_retries=config.max_retries,
                    base_delay_ms=config.base_delay_seconds * 1000,
                ),
                blocker_auto_pause_enabled=self.ctx.blocker_auto_pause_enabled,
                task_states=task_states,
                issues=[PersistedIssue.from_issue(issue) for issue in self.ctx.issues.values()],
            )

    def persist_now(self, reason: str) -> bool:
        """Write a snapshot immediately.  Failures are logged, not raised."""
        try:
            with self.ctx.lock:
                if not self.ctx.file_path:
                    return False
                snapshot = self.build_snapshot()
            # Key and content come from the same locked read.
            self.store.write_snapshot(snapshot.file_path, snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to persist session (%s): %s", reason, exc)
            return False
        logger.debug("Session persisted (%s)", reason)
        return True

    def hydrate(
        self,
        restore_issues: Callable[[List[Issue]], None],
        apply_task_state: Callable[[str, PersistedTaskState, float], None],
    ) -> Optional[SessionSnapshot]:
        file_path = self.ctx.file_path
        if not file_path:
            return None
        try:
            snapshot = self.store.read_snapshot(file_path)
        except OSError as exc:
            logger.warning("Failed to read session snapshot: %s", exc)
            return None
        if snapshot is None or not same_file(snapshot.file_path, file_path):
            return None

        restore_issues([issue.to_issue() for issue in snapshot.issues])
        now = self.ctx.now()
        for task_id, state in snapshot.task_states.items():
            apply_task_state(task_id, state, now)
        logger.info("Restored session for %s (%d task states)", file_path, len(snapshot.task_states))
        return snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._nonce += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


def auto_retry_from_snapshot(persisted: PersistedAutoRetryConfig) -> AutoRetryConfig:
    return AutoRetryConfig(
        enabled=persisted.enabled,
        max_retries=persisted.max_retries,
        base_delay_seconds=persisted.base_delay_ms / 1000.0,
    )
