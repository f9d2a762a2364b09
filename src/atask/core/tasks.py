"""Task records and the keyed JSON task store.

The store is the single source of truth for task and step state. Every
write is a read-entire-record, mutate, write-entire-record cycle that is
serialized across threads and processes and guarded by an optimistic
``version`` counter.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
import copy
import json
import logging
import os
import shutil
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional
import uuid

from atask.core.steps import parse_task_steps

logger = logging.getLogger("atask.tasks")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# Valid task / step statuses
PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
TASK_STATUSES = {PENDING, RUNNING, COMPLETED, FAILED}
TERMINAL_STATUSES = {COMPLETED, FAILED}


class StaleTaskError(RuntimeError):
    """Raised when an update carries an ``expected_version`` that is no longer current."""

    def __init__(self, task_id: str, expected: int, actual: int) -> None:
        super().__init__(f"task {task_id} is at version {actual}, expected {expected}")
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


# ── Data models ──────────────────────────────────────────────

@dataclass
class TaskStep:
    """One segment of a multi-step task."""
    index: int
    content: str
    status: str = PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "content": self.content,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> TaskStep:
        return cls(
            index=d["index"],
            content=d["content"],
            status=d.get("status", PENDING),
            started_at=_dt(d.get("started_at")),
            completed_at=_dt(d.get("completed_at")),
            error=d.get("error"),
        )


@dataclass
class Task:
    """A unit of work submitted to a remote surface."""
    task_id: str
    content: str
    surface: str = "gemini"
    status: str = PENDING              # pending|running|completed|failed

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    # Whole-task retry policy
    retry_count: int = 0
    max_retries: int = 0

    # Multi-step content; None means a single atomic step
    steps: Optional[List[TaskStep]] = None
    current_step_index: int = 0

    # Optimistic concurrency counter, bumped on every write
    version: int = 0

    @property
    def is_multi_step(self) -> bool:
        return bool(self.steps)

    def current_step(self) -> Optional[TaskStep]:
        if not self.steps:
            return None
        return self.steps[self.current_step_index]

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "content": self.content,
            "surface": self.surface,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "steps": [s.to_dict() for s in self.steps] if self.steps is not None else None,
            "current_step_index": self.current_step_index,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        raw_steps = d.get("steps")
        return cls(
            task_id=d["task_id"],
            content=d["content"],
            surface=d.get("surface", "gemini"),
            status=d.get("status", PENDING),
            created_at=datetime.fromisoformat(d["created_at"]),
            updated_at=datetime.fromisoformat(d.get("updated_at") or d["created_at"]),
            started_at=_dt(d.get("started_at")),
            completed_at=_dt(d.get("completed_at")),
            error=d.get("error"),
            retry_count=d.get("retry_count", 0),
            max_retries=d.get("max_retries", 0),
            steps=[TaskStep.from_dict(s) for s in raw_steps] if raw_steps else None,
            current_step_index=d.get("current_step_index", 0),
            version=d.get("version", 0),
        )


def build_steps(content: str) -> Optional[List[TaskStep]]:
    """Parse *content* into fresh Pending :class:`TaskStep` records."""
    segments = parse_task_steps(content)
    if segments is None:
        return None
    return [TaskStep(index=i, content=segment) for i, segment in enumerate(segments)]


_TASK_FIELDS = {f.name for f in fields(Task)}
_STEP_FIELDS = {f.name for f in fields(TaskStep)}
_IMMUTABLE_FIELDS = {"task_id", "created_at", "version"}


def _validate(task: Task) -> None:
    if task.status not in TASK_STATUSES:
        raise ValueError(f"unknown task status: {task.status}")
    if task.steps is not None:
        if len(task.steps) < 2:
            raise ValueError(f"task {task.task_id} has {len(task.steps)} step(s); multi-step needs at least 2")
        if not 0 <= task.current_step_index < len(task.steps):
            raise ValueError(
                f"current_step_index {task.current_step_index} out of range for {len(task.steps)} steps"
            )
        for step in task.steps:
            if step.status not in TASK_STATUSES:
                raise ValueError(f"unknown step status: {step.status}")


# ── Cross-process file lock ──────────────────────────────────

class _FileLock:
    """Exclusive advisory lock on a sidecar ``.lock`` file.

    Several processes (``atask run`` plus one-shot CLI commands) share one
    ``tasks.json``; every write holds this lock across its
    read-modify-write cycle.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._handle = None

    def __enter__(self) -> "_FileLock":
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._handle = open(self.path, "a+")
        if os.name == "nt":
            import msvcrt

            self._handle.seek(0)
            msvcrt.locking(self._handle.fileno(), msvcrt.LK_LOCK, 1)
        else:
            import fcntl

            fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._handle is None:
            return
        try:
            if os.name == "nt":
                import msvcrt

                self._handle.seek(0)
                msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl

                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None


# ── TaskStore ────────────────────────────────────────────────

class TaskStore:
    """Keyed task storage persisted as a single JSON document.

    Records are kept in insertion order, which is the FIFO order used by
    :meth:`find_next_pending`. Callers always receive copies; changes go
    through :meth:`update` / :meth:`update_step`. With no ``store_path``
    the store is memory-only.

    The file is the source of truth: every operation re-reads it, and
    every write re-reads, mutates and rewrites it while holding
    ``<store_path>.lock``, so writes from other processes are never lost
    and ``expected_version`` is checked against what is on disk.
    """

    def __init__(self, store_path: Optional[str] = None) -> None:
        self._store_path = store_path
        self._tasks: Dict[str, Task] = {}
        self._save_lock = threading.RLock()
        self._corrupt_signature: Optional[tuple] = None
        if store_path:
            self._load()

    def _load(self) -> None:
        """Replace the in-memory view with the file's contents.

        An unreadable file keeps the last good view; a copy is preserved
        as ``<store_path>.corrupt`` before any later save overwrites it.
        """
        if not self._store_path or not os.path.exists(self._store_path):
            self._tasks = {}
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            loaded: Dict[str, Task] = {}
            for item in raw.get("tasks", []):
                task = Task.from_dict(item)
                loaded[task.task_id] = task
        except Exception:  # noqa: BLE001
            self._preserve_corrupt()
            return
        self._tasks = loaded
        self._corrupt_signature = None

    def _preserve_corrupt(self) -> None:
        try:
            st = os.stat(self._store_path)
        except OSError:
            return
        signature = (st.st_size, st.st_mtime_ns)
        if signature == self._corrupt_signature:
            return
        self._corrupt_signature = signature
        backup = f"{self._store_path}.corrupt"
        logger.error("Failed to load tasks from %s; keeping a copy at %s", self._store_path, backup, exc_info=True)
        try:
            shutil.copy2(self._store_path, backup)
        except OSError as exc:
            logger.error("Could not back up corrupt task file: %s", exc)

    def _save(self) -> None:
        if not self._store_path:
            return
        with self._save_lock:
            dir_path = os.path.dirname(self._store_path)
            if dir_path:
                os.makedirs(dir_path, exist_ok=True)
            payload = {"tasks": [t.to_dict() for t in self._tasks.values()]}
            tmp_path = f"{self._store_path}.{os.getpid()}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._store_path)
            self._corrupt_signature = None

    @contextmanager
    def _reading(self) -> Iterator[Dict[str, Task]]:
        with self._save_lock:
            if self._store_path:
                self._load()
            yield self._tasks

    @contextmanager
    def _writing(self) -> Iterator[Dict[str, Task]]:
        """Hold the thread and file locks around a fresh read; save on clean exit."""
        with self._save_lock:
            if not self._store_path:
                yield self._tasks
                return
            with _FileLock(f"{self._store_path}.lock"):
                self._load()
                yield self._tasks
                self._save()

    # ── Reads ────────────────────────────────────────────────

    def get_all(self) -> List[Task]:
        with self._reading() as tasks:
            return [copy.deepcopy(t) for t in tasks.values()]

    def get(self, task_id: str) -> Optional[Task]:
        with self._reading() as tasks:
            task = tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def list_tasks(self, status: Optional[str] = None) -> List[Task]:
        tasks = self.get_all()
        if status:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def find_next_pending(self) -> Optional[Task]:
        """Earliest Pending task in store order, or None."""
        with self._reading() as tasks:
            for task in tasks.values():
                if task.status == PENDING:
                    return copy.deepcopy(task)
        return None

    def running_tasks(self) -> List[Task]:
        return self.list_tasks(RUNNING)

    def all_steps_completed(self, task_id: str) -> bool:
        task = self.get(task_id)
        if not task or not task.steps:
            return False
        return all(s.status == COMPLETED for s in task.steps)

    def has_failed_step(self, task_id: str) -> bool:
        task = self.get(task_id)
        if not task or not task.steps:
            return False
        return any(s.status == FAILED for s in task.steps)

    # ── Writes ───────────────────────────────────────────────

    def add(self, task: Task) -> Task:
        _validate(task)
        with self._writing() as tasks:
            if task.task_id in tasks:
                raise ValueError(f"task {task.task_id} already exists")
            stored = copy.deepcopy(task)
            tasks[stored.task_id] = stored
        logger.info("Task added: %s (surface=%s, steps=%s)", task.task_id, task.surface,
                    len(task.steps) if task.steps else 1)
        return copy.deepcopy(stored)

    def create_task(self, content: str, surface: str = "gemini", max_retries: int = 0) -> Task:
        if not content or not content.strip():
            raise ValueError("task content must not be empty")
        task = Task(
            task_id=f"task-{uuid.uuid4().hex[:12]}",
            content=content,
            surface=surface,
            max_retries=max(0, max_retries),
            steps=build_steps(content),
        )
        return self.add(task)

    def _commit(
        self,
        task_id: str,
        mutate: Callable[[Task], None],
        expected_version: Optional[int],
    ) -> Optional[Task]:
        with self._writing() as tasks:
            current = tasks.get(task_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise StaleTaskError(task_id, expected_version, current.version)
            candidate = copy.deepcopy(current)
            mutate(candidate)
            _validate(candidate)
            candidate.version = current.version + 1
            candidate.updated_at = _now()
            tasks[task_id] = candidate
            return copy.deepcopy(candidate)

    def update(
        self,
        task_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Optional[Task]:
        """Apply *changes* to a task. Returns the updated copy, or None if missing.

        Raises :class:`StaleTaskError` when *expected_version* is given and
        does not match, and ``ValueError`` for unknown fields or a change
        that would break the step invariants.
        """
        unknown = set(changes) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"unknown task field(s): {', '.join(sorted(unknown))}")
        immutable = set(changes) & _IMMUTABLE_FIELDS
        if immutable:
            raise ValueError(f"immutable task field(s): {', '.join(sorted(immutable))}")

        def _apply(candidate: Task) -> None:
            for key, value in changes.items():
                setattr(candidate, key, copy.deepcopy(value))

        return self._commit(task_id, _apply, expected_version)

    def update_step(
        self,
        task_id: str,
        index: int,
        changes: Dict[str, Any],
        task_changes: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[Task]:
        """Apply *changes* to one step (and optionally the task) in a single write."""
        unknown = set(changes) - _STEP_FIELDS
        if unknown or "index" in changes:
            raise ValueError(f"invalid step field(s): {', '.join(sorted(unknown | ({'index'} & set(changes))))}")
        task_changes = dict(task_changes or {})
        bad = (set(task_changes) - _TASK_FIELDS) | (set(task_changes) & (_IMMUTABLE_FIELDS | {"steps"}))
        if bad:
            raise ValueError(f"invalid task field(s): {', '.join(sorted(bad))}")

        def _apply(candidate: Task) -> None:
            if not candidate.steps or not 0 <= index < len(candidate.steps):
                raise ValueError(f"task {task_id} has no step {index}")
            step = candidate.steps[index]
            for key, value in changes.items():
                setattr(step, key, copy.deepcopy(value))
            for key, value in task_changes.items():
                setattr(candidate, key, copy.deepcopy(value))

        return self._commit(task_id, _apply, expected_version)

    def reset_task(self, task_id: str) -> Optional[Task]:
        """Return a task to a fresh Pending state (error, retries and steps cleared)."""

        def _apply(candidate: Task) -> None:
            candidate.status = PENDING
            candidate.error = None
            candidate.retry_count = 0
            candidate.started_at = None
            candidate.completed_at = None
            candidate.steps = build_steps(candidate.content)
            candidate.current_step_index = 0

        return self._commit(task_id, _apply, None)

    def delete(self, task_id: str) -> bool:
        with self._writing() as tasks:
            if task_id not in tasks:
                return False
            del tasks[task_id]
        logger.info("Task deleted: %s", task_id)
        return True

    def clear_all(self) -> int:
        with self._writing() as tasks:
            count = len(tasks)
            tasks.clear()
        return count
