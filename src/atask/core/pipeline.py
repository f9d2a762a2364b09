"""Sequential step execution for one task run."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from atask.core.inference import ChangeSource, CompletionMonitor, InferenceConfig, ObservedFailure
from atask.core.logging_config import append_to_file, get_task_log_path
from atask.core.tasks import COMPLETED, FAILED, RUNNING, Task, TaskStore
from atask.integrations.agents import AgentError, SurfaceAgent
from atask.integrations.remote import ConnectivityError

logger = logging.getLogger("atask.pipeline")

TerminalCallback = Callable[[str, str, Optional[str]], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PipelineConfig:
    submit_timeout: float = 30.0


class StepPipeline:
    """Run a task's steps one at a time through a single agent.

    The first failing step fails the whole task; later steps are left
    untouched and nothing is retried here. A task without steps runs as
    one atomic step using its raw content.
    """

    def __init__(
        self,
        store: TaskStore,
        agent: SurfaceAgent,
        inference_config: Optional[InferenceConfig] = None,
        config: Optional[PipelineConfig] = None,
        change_source: Optional[ChangeSource] = None,
    ) -> None:
        self.store = store
        self.agent = agent
        self.inference_config = inference_config or InferenceConfig()
        self.config = config or PipelineConfig()
        self.change_source = change_source

    def _log(self, task_id: str, line: str) -> None:
        append_to_file(get_task_log_path(task_id), line)

    @staticmethod
    def _units(task: Task) -> List[Tuple[Optional[int], str]]:
        if not task.steps:
            return [(None, task.content)]
        start = task.current_step_index
        return [
            (step.index, step.content)
            for step in task.steps[start:]
            if step.status != COMPLETED
        ]

    async def run(self, task: Task, on_terminal: TerminalCallback) -> str:
        """Execute *task* and report its terminal status through *on_terminal*.

        Returns the terminal status. Cancellation propagates without a
        terminal report.
        """
        units = self._units(task)
        total = len(task.steps) if task.steps else 1
        for position, (index, content) in enumerate(units):
            label = f"{task.task_id}#{index + 1}/{total}" if index is not None else task.task_id
            if index is not None:
                self.store.update_step(
                    task.task_id, index,
                    {"status": RUNNING, "started_at": _now(), "completed_at": None, "error": None},
                    task_changes={"current_step_index": index},
                )
            logger.info("Step %s started", label)
            self._log(task.task_id, f"step {label} started")

            error = await self._submit(content)
            if error is None:
                error = await self._await_completion(label)
            if error is not None:
                return await self._fail(task.task_id, index, label, error, on_terminal)

            if index is not None:
                self.store.update_step(task.task_id, index, {"status": COMPLETED, "completed_at": _now()})
            logger.info("Step %s completed", label)
            self._log(task.task_id, f"step {label} completed")

            if index is not None and position < len(units) - 1:
                try:
                    await self.agent.reset()
                except (AgentError, ConnectivityError) as exc:
                    logger.warning("Reset after step %s failed: %s", label, exc)

        await on_terminal(task.task_id, COMPLETED, None)
        return COMPLETED

    async def _submit(self, content: str) -> Optional[str]:
        try:
            await self.agent.prepare_input()
            await asyncio.wait_for(self.agent.submit(content), timeout=self.config.submit_timeout)
        except asyncio.TimeoutError:
            return f"submission timed out after {self.config.submit_timeout:g}s"
        except (AgentError, ConnectivityError) as exc:
            return str(exc)
        return None

    async def _await_completion(self, label: str) -> Optional[str]:
        monitor = CompletionMonitor(
            self.agent.observe,
            self.inference_config,
            change_source=self.change_source,
            label=label,
        )
        try:
            await monitor.wait()
        except ObservedFailure as exc:
            return str(exc)
        if monitor.restarts:
            logger.info("Step %s needed %d monitoring restart(s)", label, monitor.restarts)
        return None

    async def _fail(
        self,
        task_id: str,
        index: Optional[int],
        label: str,
        error: str,
        on_terminal: TerminalCallback,
    ) -> str:
        if index is not None:
            self.store.update_step(task_id, index, {"status": FAILED, "completed_at": _now(), "error": error})
        logger.error("Step %s failed: %s", label, error)
        self._log(task_id, f"step {label} failed: {error}")
        await on_terminal(task_id, FAILED, error)
        return FAILED
