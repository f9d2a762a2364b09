import json
import os
import tempfile

from atask.core.audit import TASK_FAILED, TASK_STARTED, log_event, read_events
from atask.core.logging_config import get_audit_log_path

def test_log_event_creates_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, TASK_STARTED, {"surface": "gemini"}, task_id="task-1")
        path = os.path.join(tmpdir, "audit.jsonl")
        assert os.path.exists(path)
        with open(path, "r") as f:
            record = json.loads(f.readline())
        assert record["type"] == "task.started"
        assert record["payload"]["surface"] == "gemini"
        assert record["task_id"] == "task-1"
        assert "ts" in record

def test_log_event_appends() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, "a", {})
        log_event(tmpdir, "b", {})
        path = os.path.join(tmpdir, "audit.jsonl")
        with open(path, "r") as f:
            lines = [l.strip() for l in f if l.strip()]
        assert len(lines) == 2

def test_log_event_mirrors_to_central_log() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, TASK_FAILED, {"error": "boom"})
        with open(get_audit_log_path(), "r") as f:
            assert "boom" in f.read()

def test_log_event_without_data_dir() -> None:
    log_event(None, TASK_STARTED, {})
    assert os.path.exists(get_audit_log_path())

def test_read_events_filters_by_task() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, TASK_STARTED, {}, task_id="task-1")
        log_event(tmpdir, TASK_STARTED, {}, task_id="task-2")
        log_event(tmpdir, TASK_FAILED, {}, task_id="task-1")
        events = read_events(tmpdir, task_id="task-1")
        assert [e["type"] for e in events] == ["task.started", "task.failed"]
        assert len(read_events(tmpdir)) == 3
        assert read_events(tmpdir, limit=1)[0]["type"] == "task.failed"

def test_read_events_missing_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        assert read_events(tmpdir) == []
