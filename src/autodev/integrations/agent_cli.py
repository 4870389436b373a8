"""Subprocess worker backend for stream-JSON agent CLIs.

The agent is launched once per task with the configured command.  Its
startup instructions are written to stdin as a stream-JSON user message,
and every stdout line is translated into :class:`~autodev.core.worker.WorkerEvent`
objects by :class:`StreamParser`:

* ``{"type": "assistant", ...}``  text blocks become ``output`` log entries,
  ``tool_use`` blocks become ``tool`` entries (file-editing tools also
  raise ``code_modified``)
* ``{"type": "user", ...}``       tool results become ``result`` entries
* ``{"type": "result", ...}``     final status, emitted as ``complete``
* ``AUTO_DEV_ISSUE: {...}``        inside any text raises ``issue_reported``
* ``AUTO_DEV_TASK: <id>``          inside any text raises ``task_detected``
* rate-limit wording in errors or results raises ``rate_limit_error``

Non-JSON lines are passed through as ``output`` entries.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import sys
import threading
import time
from typing import Any, Callable, List, Optional

from autodev.core.errors import WorkerLaunchError
from autodev.core.worker import WorkerEvent

logger = logging.getLogger("autodev.agent_cli")

DEFAULT_TIMEOUT = 7200  # seconds (2 hours)

FILE_EDIT_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})

_ISSUE_RE = re.compile(r"AUTO_DEV_ISSUE:\s*(\{.*\})")
_TASK_RE = re.compile(r"AUTO_DEV_TASK:\s*([A-Za-z0-9][\w.\-]*)")
_RATE_LIMIT_RE = re.compile(
    r"rate[\s_-]?limit|too many requests|\b429\b|overloaded|usage limit|quota exceeded",
    re.IGNORECASE,
)


def _truncate(text: str, limit: int = 200) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _summarize_tool_input(tool_input: Any) -> str:
    if not isinstance(tool_input, dict):
        return ""
    file_path = tool_input.get("file_path")
    if isinstance(file_path, str) and file_path:
        return os.path.basename(file_path)
    for key in ("command", "pattern", "query", "prompt"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return _truncate(value, 80)
    return ""


class StreamParser:
    """Turns agent stdout lines into worker events.  Stateless apart from
    token usage, current tool and whether a rate-limit was already seen."""

    def __init__(self) -> None:
        self.token_usage: Optional[str] = None
        self.current_tool: Optional[str] = None
        self.result_seen = False
        self._rate_limited = False

    def feed(self, line: str) -> List[WorkerEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            return self._text_events("output", line)
        if not isinstance(message, dict):
            return self._text_events("output", line)

        kind = message.get("type")
        if kind == "system":
            if message.get("subtype") == "init":
                return [WorkerEvent.log("start", f"Session started ({message.get('model', 'unknown model')})")]
            return []
        if kind == "assistant":
            return self._assistant_events(message.get("message") or {})
        if kind == "user":
            return self._tool_result_events(message.get("message") or {})
        if kind == "result":
            return self._result_events(message)
        if kind == "error":
            text = str(message.get("error") or message.get("message") or line)
            return self._text_events("error", text)
        return []

    def _text_events(self, entry_type: str, text: str) -> List[WorkerEvent]:
        events = [WorkerEvent.log(entry_type, text)]
        for match in _TASK_RE.finditer(text):
            events.append(WorkerEvent(kind="task_detected", task_id=match.group(1)))
        for match in _ISSUE_RE.finditer(text):
            try:
                payload = json.loads(match.group(1))
            except json.JSONDecodeError:
                events.append(WorkerEvent.log("error", f"Malformed issue report: {_truncate(match.group(1))}"))
                continue
            events.append(WorkerEvent(kind="issue_reported", issue=payload if isinstance(payload, dict) else {}))
        if entry_type == "error":
            events.extend(self._rate_limit_events(text))
        return events

    def _rate_limit_events(self, text: str) -> List[WorkerEvent]:
        if self._rate_limited or not _RATE_LIMIT_RE.search(text):
            return []
        self._rate_limited = True
        return [WorkerEvent(kind="rate_limit_error", error_text=_truncate(text, 500))]

    def _assistant_events(self, message: dict) -> List[WorkerEvent]:
        events: List[WorkerEvent] = []
        self._update_usage(message.get("usage"))
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.extend(self._text_events("output", str(block["text"])))
            elif block.get("type") == "tool_use":
                name = str(block.get("name") or "tool")
                self.current_tool = name
                summary = _summarize_tool_input(block.get("input"))
                events.append(WorkerEvent.log("tool", f"{name}: {summary}" if summary else name))
                if name in FILE_EDIT_TOOLS:
                    events.append(WorkerEvent(kind="code_modified", tool=name))
        return events

    def _tool_result_events(self, message: dict) -> List[WorkerEvent]:
        events: List[WorkerEvent] = []
        content = message.get("content")
        if not isinstance(content, list):
            return events
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            self.current_tool = None
            text = block.get("content")
            if isinstance(text, list):
                text = " ".join(str(part.get("text", "")) for part in text if isinstance(part, dict))
            entry_type = "error" if block.get("is_error") else "result"
            events.append(WorkerEvent.log(entry_type, _truncate(str(text or ""))))
        return events

    def _result_events(self, message: dict) -> List[WorkerEvent]:
        self.result_seen = True
        self.current_tool = None
        self._update_usage(message.get("usage"))
        is_error = bool(message.get("is_error")) or message.get("subtype") not in (None, "success")
        text = str(message.get("result") or "")
        events: List[WorkerEvent] = []
        if is_error:
            events.extend(self._text_events("error", text or f"Agent reported {message.get('subtype')}"))
        else:
            events.extend(self._text_events("system", _truncate(text) or "Agent finished"))
        events.append(WorkerEvent(
            kind="complete",
            success=not is_error,
            duration_ms=float(message.get("duration_ms") or 0.0),
        ))
        return events

    def _update_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        total = sum(
            int(usage.get(key) or 0)
            for key in ("input_tokens", "output_tokens", "cache_read_input_tokens")
        )
        if total > 0:
            self.token_usage = f"{round(total / 100) / 10}k"


class AgentCliWorker:
    """Runs one agent CLI process for a task in a background thread."""

    def __init__(
        self,
        worker_id: int,
        task_id: str,
        startup_content: str,
        command: List[str],
        timeout: int = DEFAULT_TIMEOUT,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.worker_id = worker_id
        self.task_id = task_id
        self.startup_content = startup_content
        self.command = list(command)
        self.timeout = timeout
        self._popen = popen
        self._parser = StreamParser()
        self._listeners: List[Callable[[WorkerEvent], None]] = []
        self._thread: Optional[threading.Thread] = None
        self._process: Optional[Any] = None
        self._stop_event = threading.Event()
        self._stdin_lock = threading.Lock()
        self._completed = False
        self._modified = False
        self._start_time = 0.0

    # ── WorkerHandle capabilities ────────────────────────────

    @property
    def has_modified_code(self) -> bool:
        return self._modified

    @property
    def token_usage(self) -> Optional[str]:
        return self._parser.token_usage

    @property
    def current_tool(self) -> Optional[str]:
        return self._parser.current_tool

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def subscribe(self, listener: Callable[[WorkerEvent], None]) -> None:
        self._listeners.append(listener)

    def _emit(self, event: WorkerEvent) -> None:
        if event.kind == "code_modified":
            self._modified = True
        if event.kind == "complete":
            if self._completed:
                return
            self._completed = True
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.error("Worker %d listener failed: %s", self.worker_id, exc, exc_info=True)

    def _resolve_command(self) -> List[str]:
        if not self.command:
            raise WorkerLaunchError("No agent command configured")
        executable = shutil.which(self.command[0])
        if not executable:
            raise WorkerLaunchError(f"Agent executable not found on PATH: {self.command[0]}")
        return [executable, *self.command[1:]]

    def start(self, working_dir: str) -> None:
        """Launch the process and stream its output from a daemon thread.

        Raises :class:`WorkerLaunchError` synchronously if the process cannot
        be created, so the pool can treat it as a spawn failure.
        """
        cmd = self._resolve_command()
        env = os.environ.copy()
        env.setdefault("TERM", "dumb")
        env["PYTHONIOENCODING"] = "utf-8"
        env["AUTODEV_TASK_ID"] = self.task_id
        env["AUTODEV_WORKER_ID"] = str(self.worker_id)
        try:
            self._process = self._popen(
                cmd,
                cwd=working_dir or None,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=env,
                encoding="utf-8",
                errors="replace",
                creationflags=subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == "win32" else 0,
            )
        except OSError as exc:
            raise WorkerLaunchError(f"Failed to launch agent for task {self.task_id}: {exc}") from exc

        self._start_time = time.monotonic()
        logger.info("Worker %d launched agent for task %s (pid=%s, cwd=%s)", self.worker_id, self.task_id, self._process.pid, working_dir)
        self.send(self.startup_content)
        self._thread = threading.Thread(
            target=self._run,
            name=f"agent-worker-{self.worker_id}",
            daemon=True,
        )
        self._thread.start()

    def send(self, text: str) -> None:
        message = {"type": "user", "message": {"role": "user", "content": text}}
        with self._stdin_lock:
            process = self._process
            if process is None or process.stdin is None or process.poll() is not None:
                logger.warning("Worker %d: cannot send, process not running", self.worker_id)
                return
            try:
                process.stdin.write(json.dumps(message) + "\n")
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                logger.warning("Worker %d: failed to write to agent stdin: %s", self.worker_id, exc)

    def _run(self) -> None:
        process = self._process
        timed_out = False
        timeout_timer: Optional[threading.Timer] = None
        try:
            if self.timeout and self.timeout > 0:
                def _on_timeout() -> None:
                    nonlocal timed_out
                    timed_out = True
                    if process.poll() is None:
                        try:
                            process.kill()
                        except OSError:
                            pass

                timeout_timer = threading.Timer(self.timeout, _on_timeout)
                timeout_timer.daemon = True
                timeout_timer.start()

            assert process.stdout is not None
            for line in process.stdout:
                if self._stop_event.is_set():
                    break
                for event in self._parser.feed(line):
                    self._emit(event)
                if self._parser.result_seen:
                    self._close_stdin()

            if process.poll() is None:
                try:
                    process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    process.terminate()
            if timeout_timer:
                timeout_timer.cancel()

            if self._stop_event.is_set():
                return
            exit_code = process.returncode
            duration_ms = (time.monotonic() - self._start_time) * 1000
            if timed_out:
                self._emit(WorkerEvent.log("error", f"Timeout: {self.timeout}s total (hard limit)"))
                self._emit(WorkerEvent(kind="error", error=f"worker timed out after {self.timeout}s"))
            elif not self._parser.result_seen:
                self._emit(WorkerEvent.log("system", f"Process exited (code={exit_code})"))
                self._emit(WorkerEvent(kind="complete", success=exit_code == 0, duration_ms=duration_ms))
        except Exception as exc:  # noqa: BLE001
            logger.error("Worker %d unexpected error: %s", self.worker_id, exc, exc_info=True)
            self._emit(WorkerEvent(kind="error", error=f"unexpected error: {exc}"))
        finally:
            if timeout_timer:
                timeout_timer.cancel()

    def _close_stdin(self) -> None:
        with self._stdin_lock:
            process = self._process
            if process is not None and process.stdin is not None and not process.stdin.closed:
                try:
                    process.stdin.close()
                except OSError:
                    pass

    def kill(self) -> None:
        """Terminate the agent process tree without blocking the caller."""
        self._stop_event.set()
        process = self._process
        if process is None or process.poll() is not None:
            return
        pid = process.pid
        logger.info("Terminating agent process for worker %d (pid=%s)", self.worker_id, pid)
        try:
            if sys.platform == "win32":
                # taskkill /T takes the agent's child processes down too
                subprocess.run(["taskkill", "/F", "/T", "/PID", str(pid)], capture_output=True, timeout=15)
                return
            process.terminate()
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("Error terminating worker %d: %s", self.worker_id, exc)

        def _reap() -> None:
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                try:
                    process.kill()
                    logger.warning("Force-killed agent process for worker %d", self.worker_id)
                except OSError:
                    pass

        threading.Thread(target=_reap, name=f"agent-reap-{self.worker_id}", daemon=True).start()


def make_worker_factory(command: List[str], timeout: int = DEFAULT_TIMEOUT) -> Callable[[int, str, str], AgentCliWorker]:
    """Build the factory the scheduler uses to create one worker per task."""
    def _factory(worker_id: int, task_id: str, startup_content: str) -> AgentCliWorker:
        return AgentCliWorker(worker_id, task_id, startup_content, command=command, timeout=timeout)

    return _factory
