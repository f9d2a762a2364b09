"""Execution agents, one per remote-surface kind.

Every surface answers ``check_status`` with a raw snapshot::

    {
        "controls": {name: {"present": bool, "visible": bool,
                            "classes": [str], "label": str, "disabled": bool}},
        "error": str | None,
        "output_length": int,
        "mutations": int,        # monotonic count of observed-region changes
    }

Agents differ only in which controls mean "busy"; they all reduce a
snapshot to the abstract inference signals.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from atask.core.inference import (
    BusyIndicator,
    ChangeNotification,
    ErrorIndicator,
    OutputLengthSample,
    Signal,
)
from atask.integrations.remote import MessageKind, RemoteChannel, RemoteMessage

logger = logging.getLogger("atask.agents")


class AgentError(RuntimeError):
    """The surface could not be queried or driven."""


class SubmissionError(AgentError):
    """Input could not be prepared or submitted."""


@dataclass(frozen=True)
class AgentConfig:
    idle_wait_timeout: float = 60.0
    idle_wait_interval: float = 1.0
    reset_settle: float = 0.5


def _control(snapshot: Dict[str, Any], name: str) -> Dict[str, Any]:
    controls = snapshot.get("controls") or {}
    control = controls.get(name)
    return control if isinstance(control, dict) else {}


def _present(control: Dict[str, Any]) -> bool:
    return bool(control.get("present", bool(control)))


def _visible(control: Dict[str, Any]) -> bool:
    return _present(control) and bool(control.get("visible", True))


def _has_class(control: Dict[str, Any], name: str) -> bool:
    return name in (control.get("classes") or [])


class SurfaceAgent:
    """Base agent: drives one surface through a :class:`RemoteChannel`.

    Instances are created per task run and discarded afterwards.
    """

    surface = ""
    wait_for_idle_before_submit = True

    def __init__(
        self,
        channel: RemoteChannel,
        task_id: str = "",
        config: Optional[AgentConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self.task_id = task_id
        self.config = config or AgentConfig()
        self._sleep = sleep
        self._clock = clock
        self._last_mutations: Optional[int] = None
        self.aborted = False

    # ── Surface-specific rules ───────────────────────────────

    def busy_reason(self, snapshot: Dict[str, Any]) -> Optional[str]:
        """Return why the surface counts as busy, or None when it does not."""
        raise NotImplementedError

    def error_text(self, snapshot: Dict[str, Any]) -> Optional[str]:
        error = snapshot.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
        return None

    # ── Observation ──────────────────────────────────────────

    async def snapshot(self, retries: Optional[int] = None) -> Dict[str, Any]:
        response = await self.channel.send(RemoteMessage(kind=MessageKind.CHECK_STATUS), retries=retries)
        if not response.success:
            raise AgentError(response.error or f"{self.surface} status check rejected")
        data = response.data
        if not isinstance(data, dict):
            raise AgentError(f"{self.surface} status check returned no snapshot")
        return data

    def to_signals(self, snapshot: Dict[str, Any]) -> List[Signal]:
        signals: List[Signal] = []
        error = self.error_text(snapshot)
        if error:
            signals.append(ErrorIndicator(error))
        reason = self.busy_reason(snapshot)
        if reason:
            signals.append(BusyIndicator(reason))
        length = snapshot.get("output_length")
        if isinstance(length, int):
            signals.append(OutputLengthSample(length))
        mutations = snapshot.get("mutations")
        if isinstance(mutations, int):
            if self._last_mutations is not None and mutations > self._last_mutations:
                signals.append(ChangeNotification())
            self._last_mutations = mutations
        return signals

    async def observe(self) -> List[Signal]:
        # One attempt per tick; the completion monitor counts consecutive failures.
        return self.to_signals(await self.snapshot(retries=1))

    # ── Actions ──────────────────────────────────────────────

    async def prepare_input(self) -> None:
        """Wait until the surface is ready to accept new input."""
        if not self.wait_for_idle_before_submit:
            return
        deadline = self._clock() + self.config.idle_wait_timeout
        while True:
            snap = await self.snapshot()
            reason = self.busy_reason(snap)
            if not reason:
                return
            if self._clock() >= deadline:
                raise SubmissionError(
                    f"{self.surface} still busy after {self.config.idle_wait_timeout:g}s ({reason})"
                )
            logger.debug("%s busy (%s); waiting for idle", self.surface, reason)
            await self._sleep(self.config.idle_wait_interval)

    async def submit(self, content: str) -> None:
        response = await self.channel.send(
            RemoteMessage(kind=MessageKind.SUBMIT, payload={"content": content, "task_id": self.task_id})
        )
        if not response.success:
            raise SubmissionError(response.error or f"{self.surface} rejected the submission")
        logger.info("Submitted %d chars to %s for %s", len(content), self.surface, self.task_id or "?")

    async def reset(self) -> None:
        """Clear transient input between steps."""
        response = await self.channel.send(RemoteMessage(kind=MessageKind.RESET, payload={"task_id": self.task_id}))
        if not response.success:
            raise AgentError(response.error or f"{self.surface} reset rejected")
        await self._sleep(self.config.reset_settle)

    async def abort(self) -> None:
        """Best-effort stop of in-flight work; never raises."""
        self.aborted = True
        try:
            response = await self.channel.send(
                RemoteMessage(kind=MessageKind.STOP, payload={"task_id": self.task_id}), retries=1
            )
            if not response.success:
                logger.warning("Abort on %s not acknowledged: %s", self.surface, response.error)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Abort on %s failed: %s", self.surface, exc)


class ChatGPTAgent(SurfaceAgent):
    surface = "chatgpt"
    wait_for_idle_before_submit = False

    def busy_reason(self, snapshot: Dict[str, Any]) -> Optional[str]:
        if _present(_control(snapshot, "stop_button")):
            return "stop button present"
        if _visible(_control(snapshot, "streaming")):
            return "streaming indicator visible"
        return None


class GeminiAgent(SurfaceAgent):
    surface = "gemini"

    _STOP_WORDS = ("stop", "停止")

    def busy_reason(self, snapshot: Dict[str, Any]) -> Optional[str]:
        stop = _control(snapshot, "stop_button")
        if _visible(stop):
            label = str(stop.get("label") or "").lower()
            if _has_class(stop, "stop") or any(word in label for word in self._STOP_WORDS):
                return "stop control visible"
        if _has_class(_control(snapshot, "submit_button"), "stop"):
            return "submit button in stop mode"
        if _visible(_control(snapshot, "loading")):
            return "loading indicator visible"
        return None


class OiioiiAgent(SurfaceAgent):
    surface = "oiioii"

    def busy_reason(self, snapshot: Dict[str, Any]) -> Optional[str]:
        if _visible(_control(snapshot, "pause_layout")):
            return "generation in progress"
        if _visible(_control(snapshot, "pause_button")):
            return "pause button visible"
        return None


_AGENTS: Dict[str, Type[SurfaceAgent]] = {
    ChatGPTAgent.surface: ChatGPTAgent,
    GeminiAgent.surface: GeminiAgent,
    OiioiiAgent.surface: OiioiiAgent,
}


def supported_surfaces() -> List[str]:
    return sorted(_AGENTS)


def create_agent(
    surface: str,
    channel: RemoteChannel,
    task_id: str = "",
    config: Optional[AgentConfig] = None,
) -> SurfaceAgent:
    """Build the agent for *surface*; raises ``ValueError`` for unknown kinds."""
    agent_cls = _AGENTS.get(surface.lower())
    if agent_cls is None:
        raise ValueError(f"unsupported surface: {surface} (expected one of {', '.join(supported_surfaces())})")
    return agent_cls(channel, task_id=task_id, config=config)
