"""Single-flight task coordinator.

Owns the active-task pointer and every task lifecycle transition:
picking the next Pending task, liveness/bootstrap checks, handing the
task to a :class:`StepPipeline`, whole-task retries and user stops.
At most one task is Running at any time.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import os
from typing import TYPE_CHECKING, Callable, Optional, Set

from atask.core import audit
from atask.core.inference import ChangeSource, InferenceConfig
from atask.core.logging_config import append_to_file, get_task_log_path
from atask.core.pipeline import PipelineConfig, StepPipeline
from atask.core.tasks import (
    COMPLETED,
    FAILED,
    PENDING,
    RUNNING,
    TERMINAL_STATUSES,
    Task,
    TaskStore,
    build_steps,
)
from atask.integrations.agents import AgentConfig, SurfaceAgent, create_agent
from atask.integrations.remote import ChannelRegistry, ConnectivityError, RemoteChannel

if TYPE_CHECKING:
    from atask.core.config import Settings

logger = logging.getLogger("atask.coordinator")

AgentFactory = Callable[[str, RemoteChannel, str], SurfaceAgent]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Coordinator:
    """Drives queued tasks through the remote surfaces one at a time."""

    def __init__(
        self,
        store: TaskStore,
        channels: ChannelRegistry,
        *,
        agent_factory: Optional[AgentFactory] = None,
        inference_config: Optional[InferenceConfig] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        agent_config: Optional[AgentConfig] = None,
        retry_delay: float = 5.0,
        data_dir: Optional[str] = None,
        change_source: Optional[ChangeSource] = None,
        stop_check_interval: float = 1.0,
    ) -> None:
        self.store = store
        self.channels = channels
        self.inference_config = inference_config or InferenceConfig()
        self.pipeline_config = pipeline_config or PipelineConfig()
        self.agent_config = agent_config or AgentConfig()
        self.retry_delay = retry_delay
        self.data_dir = data_dir
        self.change_source = change_source
        self.stop_check_interval = stop_check_interval
        self._agent_factory = agent_factory or self._default_agent_factory
        self._active_task_id: Optional[str] = None
        self._active_agent: Optional[SurfaceAgent] = None
        self._run_task: Optional[asyncio.Task] = None
        self._retry_tasks: Set[asyncio.Task] = set()
        self._stoppers: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: "Settings", store: Optional[TaskStore] = None) -> "Coordinator":
        return cls(
            store or TaskStore(os.path.join(settings.data_dir, "tasks.json")),
            ChannelRegistry.from_settings(settings),
            inference_config=settings.inference_config(),
            pipeline_config=settings.pipeline_config(),
            agent_config=settings.agent_config(),
            retry_delay=settings.retry_delay,
            data_dir=settings.data_dir,
            stop_check_interval=settings.poll_interval,
        )

    def _default_agent_factory(self, surface: str, channel: RemoteChannel, task_id: str) -> SurfaceAgent:
        return create_agent(surface, channel, task_id=task_id, config=self.agent_config)

    @property
    def active_task_id(self) -> Optional[str]:
        return self._active_task_id

    @property
    def is_idle(self) -> bool:
        return self._active_task_id is None

    def _record(self, task_id: str, event_type: str, payload: dict, line: str) -> None:
        audit.log_event(self.data_dir, event_type, payload, task_id=task_id)
        append_to_file(get_task_log_path(task_id), line)

    # ── Queue ────────────────────────────────────────────────

    async def add_task(self, content: str, surface: str, max_retries: int = 0) -> Task:
        task = self.store.create_task(content, surface=surface, max_retries=max_retries)
        await self.on_task_added()
        return task

    async def on_task_added(self) -> None:
        if self._active_task_id is None:
            await self.schedule_next()

    async def schedule_next(self) -> Optional[str]:
        """Start the earliest Pending task unless one is already active.

        Returns the id of the task started, or None.
        """
        async with self._lock:
            if self._closed or self._active_task_id is not None:
                return None
            task = self.store.find_next_pending()
            if task is None:
                logger.debug("No pending tasks; coordinator idle")
                return None
            self._claim(task)
            return task.task_id

    def _claim(self, task: Task) -> None:
        # Caller holds self._lock.
        self._active_task_id = task.task_id
        self._run_task = asyncio.create_task(self._run_guarded(task))

    async def start_task(self, task_id: str) -> bool:
        """Run a specific task now if nothing else is active."""
        async with self._lock:
            if self._closed:
                return False
            if self._active_task_id is not None:
                logger.warning("Cannot start %s: %s is already running", task_id, self._active_task_id)
                return False
            task = self.store.get(task_id)
            if task is None:
                logger.warning("Cannot start unknown task %s", task_id)
                return False
            if task.status in TERMINAL_STATUSES:
                task = self.store.reset_task(task_id)
            elif task.status == RUNNING:
                task = self.store.update(task_id, {"status": PENDING})
            if task is None:
                return False
            self._claim(task)
            return True

    async def _run_guarded(self, task: Task) -> None:
        try:
            await self.run_task(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Unexpected error while running %s", task.task_id, exc_info=True)
            if self._active_task_id == task.task_id:
                await self.on_terminal(task.task_id, FAILED, f"unexpected error: {exc}")

    async def run_task(self, task: Task) -> None:
        """Check the surface is reachable, mark the task Running and run its steps."""
        channel = self.channels.acquire(task.surface)
        try:
            agent = self._agent_factory(task.surface, channel, task.task_id)
        except ValueError as exc:
            logger.error("Task %s: %s", task.task_id, exc)
            await self.on_terminal(task.task_id, FAILED, str(exc))
            return
        self._active_agent = agent

        if not await channel.ensure_alive():
            error = ConnectivityError(2, f"{task.surface} agent unreachable after bootstrap")
            logger.error("Task %s: %s", task.task_id, error)
            self._record(task.task_id, audit.TASK_UNREACHABLE, {"surface": task.surface, "error": str(error)},
                         f"unreachable: {error}")
            await self.on_terminal(task.task_id, FAILED, str(error))
            return

        started = self.store.update(task.task_id, {
            "status": RUNNING,
            "started_at": _now(),
            "completed_at": None,
            "error": None,
        })
        if started is None:
            logger.warning("Task %s disappeared before it could start", task.task_id)
            self._release(task.task_id)
            await self.schedule_next()
            return
        logger.info("Task %s running on %s (attempt %d/%d)", task.task_id, task.surface,
                    started.retry_count + 1, started.max_retries + 1)
        self._record(task.task_id, audit.TASK_STARTED,
                     {"surface": started.surface, "retry_count": started.retry_count}, "started")

        pipeline = StepPipeline(
            self.store,
            agent,
            self.inference_config,
            self.pipeline_config,
            change_source=self.change_source,
        )
        watcher = asyncio.create_task(self._watch_for_external_stop(task.task_id))
        try:
            await pipeline.run(started, self.on_terminal)
        finally:
            watcher.cancel()

    async def _watch_for_external_stop(self, task_id: str) -> None:
        """Stop the active task once the store no longer shows it Running.

        Another process (``atask stop``) can only change the stored status;
        this turns that change into a real stop of the run in this process.
        """
        while self._active_task_id == task_id:
            await asyncio.sleep(self.stop_check_interval)
            if self._active_task_id != task_id:
                return
            task = self.store.get(task_id)
            if task is not None and task.status == RUNNING:
                continue
            logger.warning("Task %s is no longer Running in the store; stopping it", task_id)
            stopper = asyncio.create_task(self.stop(task_id))
            self._stoppers.add(stopper)
            stopper.add_done_callback(self._stoppers.discard)
            return

    def _release(self, task_id: str) -> bool:
        if self._active_task_id != task_id:
            return False
        self._active_task_id = None
        self._active_agent = None
        return True

    # ── Lifecycle transitions ────────────────────────────────

    async def on_terminal(self, task_id: str, status: str, error: Optional[str] = None) -> None:
        """Persist a terminal status, release the pointer and advance the queue."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status}")
        changes = {"status": status, "completed_at": _now(), "error": error if status == FAILED else None}
        task = self.store.update(task_id, changes)
        self._release(task_id)
        if task is None:
            logger.warning("Terminal status %s for unknown task %s", status, task_id)
            await self.schedule_next()
            return

        if status == COMPLETED:
            logger.info("Task %s completed", task_id)
            self._record(task_id, audit.TASK_COMPLETED, {}, "completed")
            await self.schedule_next()
        else:
            logger.error("Task %s failed: %s", task_id, error)
            self._record(task_id, audit.TASK_FAILED, {"error": error, "retry_count": task.retry_count},
                         f"failed: {error}")
            await self.handle_failure(task)

    async def handle_failure(self, task: Task) -> None:
        """Apply the whole-task retry policy to a Failed task."""
        if task.retry_count < task.max_retries:
            retry_count = task.retry_count + 1
            self.store.update(task.task_id, {
                "status": PENDING,
                "retry_count": retry_count,
                "steps": build_steps(task.content),
                "current_step_index": 0,
                "started_at": None,
                "completed_at": None,
            })
            logger.warning("Task %s will retry in %.1fs (retry %d/%d)",
                           task.task_id, self.retry_delay, retry_count, task.max_retries)
            self._record(task.task_id, audit.TASK_RETRY_SCHEDULED,
                         {"retry_count": retry_count, "delay": self.retry_delay},
                         f"retry {retry_count}/{task.max_retries} scheduled")
            retry = asyncio.create_task(self._delayed_schedule(self.retry_delay))
            self._retry_tasks.add(retry)
            retry.add_done_callback(self._retry_tasks.discard)
            return
        if task.max_retries:
            logger.error("Task %s failed permanently after %d retries", task.task_id, task.retry_count)
        await self.schedule_next()

    async def _delayed_schedule(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.schedule_next()

    async def stop(self, task_id: str) -> bool:
        """Stop *task_id* and force it back to Pending.

        If it is the active task its run is cancelled and the agent is asked
        to abort. The persisted status becomes Pending whether or not it
        matched. Returns True when the active task was stopped.
        """
        matched = self._active_task_id == task_id
        if matched:
            run, agent = self._run_task, self._active_agent
            self._active_task_id = None
            self._active_agent = None
            self._run_task = None
            if run is not None and not run.done() and run is not asyncio.current_task():
                run.cancel()
                try:
                    await run
                except asyncio.CancelledError:
                    pass
            if agent is not None:
                await agent.abort()
            logger.info("Stopped active task %s", task_id)

        task = self.store.update(task_id, {"status": PENDING, "completed_at": None})
        if task is None:
            logger.warning("Stop requested for unknown task %s", task_id)
            return matched
        self._record(task_id, audit.TASK_STOPPED, {"was_active": matched}, "stopped")
        return matched

    # ── Process lifecycle ────────────────────────────────────

    def recover_interrupted(self) -> int:
        """Return tasks left Running by a previous process to Pending."""
        count = 0
        for task in self.store.running_tasks():
            if task.task_id == self._active_task_id:
                continue
            self.store.update(task.task_id, {"status": PENDING})
            logger.info("Recovered interrupted task %s", task.task_id)
            count += 1
        return count

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until no task is running and no retry is pending."""

        def _in_flight() -> list:
            tasks = (self._run_task, *self._retry_tasks, *self._stoppers)
            return [t for t in tasks if t is not None and not t.done()]

        async def _drain() -> None:
            while True:
                pending = _in_flight()
                if not pending:
                    await asyncio.sleep(0)
                    pending = _in_flight()
                    if not pending:
                        return
                await asyncio.wait(pending)

        await asyncio.wait_for(_drain(), timeout)

    async def shutdown(self) -> None:
        self._closed = True
        for retry in list(self._retry_tasks):
            retry.cancel()
        if self._active_task_id is not None:
            await self.stop(self._active_task_id)
        await self.channels.aclose()
