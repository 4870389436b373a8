"""Logging setup for autodev.

Everything goes to stdout and to ``autodev.log``; scheduler lifecycle
events additionally go, one JSON object per line, to
``scheduler-events.log``.  Worker output is kept per task::

    <log_dir>/
    ├── autodev.log
    ├── scheduler-events.log
    └── workers/<task_id>/worker.log
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import shutil
import time
from typing import Any

MAIN_LOG = "autodev.log"
EVENTS_LOG = "scheduler-events.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5
MAX_EVENT_FIELD_CHARS = 2000

scheduler_event_logger = logging.getLogger("autodev._scheduler_events")
logger = logging.getLogger("autodev.logging")

# Marks handlers installed here so a second setup replaces only those.
_OWNED = "_autodev_handler"


def clear_logs(log_dir: str) -> None:
    """Delete autodev's own log files (with rotations) and per-task worker logs.

    Other files in *log_dir* are left alone.  Must run before handlers are
    attached.
    """
    if not os.path.isdir(log_dir):
        return
    for name in (MAIN_LOG, EVENTS_LOG):
        for path in glob.glob(os.path.join(log_dir, name + "*")):
            try:
                os.remove(path)
            except OSError as exc:
                logger.debug("Could not remove %s: %s", path, exc)
    shutil.rmtree(os.path.join(log_dir, "workers"), ignore_errors=True)


def _rotating_handler(path: str, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
    )
    handler.setFormatter(formatter)
    setattr(handler, _OWNED, True)
    return handler


def _drop_owned_handlers(target: logging.Logger) -> None:
    for handler in list(target.handlers):
        if getattr(handler, _OWNED, False):
            target.removeHandler(handler)
            handler.close()


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Attach the stdout, ``autodev.log`` and scheduler-event handlers.

    Safe to call again: the previous autodev handlers are closed and
    replaced, other handlers on the root logger are kept.
    """
    root = logging.getLogger()
    _drop_owned_handlers(root)
    _drop_owned_handlers(scheduler_event_logger)

    if clear_on_launch:
        clear_logs(log_dir)
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root.setLevel(level)
    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(fmt)
    setattr(console, _OWNED, True)
    root.addHandler(console)

    file_handler = _rotating_handler(os.path.join(log_dir, MAIN_LOG), fmt)
    file_handler.setLevel(logging.DEBUG)
    root.addHandler(file_handler)

    scheduler_event_logger.setLevel(logging.INFO)
    scheduler_event_logger.propagate = False
    scheduler_event_logger.addHandler(
        _rotating_handler(os.path.join(log_dir, EVENTS_LOG), logging.Formatter("%(message)s"))
    )

    logging.getLogger("autodev").info("Logging initialized: log_dir=%s, level=%s", log_dir, log_level)


def log_scheduler_event(event: str, **fields: Any) -> None:
    """Record one lifecycle event; ``None`` fields are omitted, long strings clipped."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "event": event,
    }
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str) and len(value) > MAX_EVENT_FIELD_CHARS:
            value = value[:MAX_EVENT_FIELD_CHARS] + "…(truncated)"
        record[key] = value
    scheduler_event_logger.info(json.dumps(record, default=str))


def append_to_file(path: str, line: str) -> None:
    """Append a timestamped line to a per-task log.  I/O errors are logged."""
    stamped = f"{time.strftime('%Y-%m-%dT%H:%M:%S')} {line}\n"
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(stamped)
    except OSError as exc:
        logger.warning("Could not write %s: %s", path, exc)
