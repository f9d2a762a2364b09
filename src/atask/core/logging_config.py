"""Log files for the atask engine.

``setup_logging`` wires the root logger to the console and to a rotating
``atask.log``, and points the remote-call logger at its own JSONL file.
Everything lives under one directory::

    ~/.atask/.logs/
    ├── atask.log                 # root logger output (rotating)
    ├── remote-calls.log          # one JSON record per remote dispatch attempt
    ├── audit.jsonl               # mirror of lifecycle events
    └── tasks/
        └── {task_id}/
            └── task.log          # step-by-step trail of one task
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import shutil
import time
from pathlib import Path
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5
PREVIEW_CHARS = 2000

# Set by setup_logging(); None means "use ATASK_LOG_DIR or the default".
_log_dir: Optional[str] = None

remote_call_logger = logging.getLogger("atask._remote_calls")


def get_log_dir() -> str:
    if _log_dir:
        return _log_dir
    return os.getenv("ATASK_LOG_DIR", str(Path.home() / ".atask" / ".logs"))


def clear_logs(log_dir: str) -> None:
    """Delete ``*.log`` / ``*.jsonl`` files and per-task trails under *log_dir*.

    Must run before handlers open their files.
    """
    if not os.path.isdir(log_dir):
        return
    stale = glob.glob(os.path.join(log_dir, "*.log")) + glob.glob(os.path.join(log_dir, "*.jsonl"))
    for path in stale:
        try:
            os.remove(path)
        except OSError:
            pass
    shutil.rmtree(os.path.join(log_dir, "tasks"), ignore_errors=True)


def _rotating(path: str, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Route all atask logging into *log_dir*. Call once per process."""
    global _log_dir
    _log_dir = log_dir
    if clear_on_launch:
        clear_logs(log_dir)
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    main_file = _rotating(os.path.join(log_dir, "atask.log"), formatter)
    main_file.setLevel(logging.DEBUG)
    root.addHandler(main_file)

    _setup_jsonl_logger(remote_call_logger, os.path.join(log_dir, "remote-calls.log"))

    logging.getLogger("atask").info("Logging to %s at level %s", log_dir, log_level)


def _setup_jsonl_logger(target: logging.Logger, path: str) -> None:
    # Messages are pre-serialised JSON, so the formatter writes them verbatim.
    target.setLevel(logging.INFO)
    target.propagate = False
    target.handlers.clear()
    target.addHandler(_rotating(path, logging.Formatter("%(message)s")))


# ── Remote call records ──────────────────────────────────────


def log_remote_call(
    kind: str,
    attempt: int,
    success: bool,
    error: str | None = None,
    duration_ms: float | None = None,
    surface: str | None = None,
    data: Any = None,
) -> None:
    """Write one dispatch attempt to ``remote-calls.log``."""
    entry: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "kind": kind,
        "attempt": attempt,
        "success": success,
    }
    if surface:
        entry["surface"] = surface
    if duration_ms is not None:
        entry["duration_ms"] = round(duration_ms, 1)
    if error:
        entry["error"] = error[:PREVIEW_CHARS]
    elif data is not None:
        encoded = json.dumps(data, default=str)
        if len(encoded) > PREVIEW_CHARS:
            entry["data_preview"] = encoded[:PREVIEW_CHARS] + "..."
        else:
            entry["data"] = data
    try:
        remote_call_logger.info(json.dumps(entry, default=str))
    except Exception:  # noqa: BLE001
        pass


# ── Paths and plain-file trails ──────────────────────────────


def get_task_log_dir(task_id: str) -> str:
    path = os.path.join(get_log_dir(), "tasks", task_id)
    os.makedirs(path, exist_ok=True)
    return path


def get_task_log_path(task_id: str) -> str:
    return os.path.join(get_task_log_dir(task_id), "task.log")


def get_audit_log_path() -> str:
    return os.path.join(get_log_dir(), "audit.jsonl")


def append_to_file(path: str, line: str) -> None:
    """Append *line* with a local timestamp; failures are ignored."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(f"{time.strftime(LOG_DATEFMT)} {line}\n")
    except Exception:  # noqa: BLE001
        pass
