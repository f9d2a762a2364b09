from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from typing import Any, Dict, Optional

from atask.core.logging_config import append_to_file, get_audit_log_path

# Lifecycle event types written by the coordinator
TASK_STARTED = "task.started"
TASK_COMPLETED = "task.completed"
TASK_FAILED = "task.failed"
TASK_RETRY_SCHEDULED = "task.retry_scheduled"
TASK_STOPPED = "task.stopped"
TASK_UNREACHABLE = "task.unreachable"


def log_event(
    data_dir: Optional[str],
    event_type: str,
    payload: Dict[str, Any],
    task_id: Optional[str] = None,
) -> None:
    """Append one lifecycle event to ``audit.jsonl``.

    With no ``data_dir`` the event only goes to the centralized log.
    """
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "payload": payload,
    }
    if task_id:
        record["task_id"] = task_id
    line = json.dumps(record, default=str)
    path = None
    if data_dir:
        os.makedirs(data_dir, exist_ok=True)
        path = os.path.join(data_dir, "audit.jsonl")
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    # Mirror to centralized audit log
    try:
        central = get_audit_log_path()
        if central != path:
            append_to_file(central, line)
    except Exception:  # noqa: BLE001
        pass


def read_events(data_dir: str, task_id: Optional[str] = None, limit: int = 100) -> list[dict]:
    """Return the most recent audit events, optionally for one task."""
    path = os.path.join(data_dir, "audit.jsonl")
    if not os.path.exists(path):
        return []
    events: list[dict] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            item = json.loads(line)
            if task_id and item.get("task_id") != task_id:
                continue
            events.append(item)
    return events[-limit:]
