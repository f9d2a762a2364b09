"""Shared fixtures: an in-process fake surface and fast engine configs."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from atask.core import logging_config
from atask.core.inference import InferenceConfig
from atask.core.pipeline import PipelineConfig
from atask.integrations.agents import AgentConfig
from atask.integrations.remote import (
    ChannelConfig,
    ChannelRegistry,
    MessageKind,
    RemoteChannel,
    RemoteMessage,
    RemoteResponse,
    TransportError,
)


@pytest.fixture(autouse=True)
def _isolated_logs(tmp_path, monkeypatch):
    monkeypatch.setenv("ATASK_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(logging_config, "_log_dir", None)


class FakeSurface:
    """Transport that behaves like an agent embedded in a chat surface.

    Each submission makes the surface busy for ``busy_ticks`` status checks
    while output grows, then idle with stable output.
    """

    def __init__(
        self,
        *,
        alive: bool = True,
        bootstrap_ok: bool = True,
        busy_ticks: int = 2,
        reject: Optional[Set[str]] = None,
        reject_all: bool = False,
        error_on: Optional[Set[str]] = None,
    ) -> None:
        self.alive = alive
        self.bootstrap_ok = bootstrap_ok
        self.busy_ticks = busy_ticks
        self.reject = reject or set()
        self.reject_all = reject_all
        self.error_on = error_on or set()
        self.messages: List[RemoteMessage] = []
        self.submitted: List[str] = []
        self.activations = 0
        self._busy_left = 0
        self._output = 0
        self._mutations = 0
        self._error: Optional[str] = None

    def kinds(self) -> List[MessageKind]:
        return [m.kind for m in self.messages]

    def _snapshot(self) -> Dict[str, Any]:
        busy = self._busy_left > 0
        if busy:
            self._busy_left -= 1
            self._output += 7
            self._mutations += 1
        return {
            "controls": {"stop_button": {"present": busy, "visible": busy, "classes": ["stop"], "label": "Stop"}},
            "error": self._error,
            "output_length": self._output,
            "mutations": self._mutations,
        }

    async def dispatch(self, message: RemoteMessage) -> RemoteResponse:
        self.messages.append(message)
        await asyncio.sleep(0)
        if not self.alive:
            raise TransportError("connection refused")
        if message.kind is MessageKind.LIVENESS:
            return RemoteResponse(success=True, data="pong")
        if message.kind is MessageKind.SUBMIT:
            content = message.payload["content"]
            self.submitted.append(content)
            if self.reject_all or content in self.reject:
                return RemoteResponse(success=False, error="input box not found")
            self._error = "Something went wrong" if content in self.error_on else None
            self._busy_left = self.busy_ticks
            return RemoteResponse(success=True)
        if message.kind is MessageKind.CHECK_STATUS:
            return RemoteResponse(success=True, data=self._snapshot())
        if message.kind is MessageKind.STOP:
            self._busy_left = 0
            return RemoteResponse(success=True)
        return RemoteResponse(success=True)

    async def activate(self) -> bool:
        self.activations += 1
        if self.bootstrap_ok:
            self.alive = True
        return self.bootstrap_ok

    async def aclose(self) -> None:
        pass


FAST_CHANNEL = ChannelConfig(
    retries=2,
    first_delay=0.0,
    base_delay=0.0,
    request_timeout=1.0,
    probe_timeout=0.2,
    bootstrap_settle=0.0,
)

FAST_INFERENCE = InferenceConfig(
    poll_interval=0.005,
    stability_threshold=2,
    debounce_seconds=0.0,
    watchdog_interval=0.05,
    stall_seconds=1.0,
)

FAST_AGENT = AgentConfig(idle_wait_timeout=0.2, idle_wait_interval=0.005, reset_settle=0.0)


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def make_surface():
    return FakeSurface


@pytest.fixture
def fast_inference() -> InferenceConfig:
    return FAST_INFERENCE


@pytest.fixture
def fast_agent() -> AgentConfig:
    return FAST_AGENT


@pytest.fixture
def fast_pipeline() -> PipelineConfig:
    return PipelineConfig(submit_timeout=1.0)


@pytest.fixture
def channel_for():
    def _make(transport: Any, surface: str = "chatgpt") -> RemoteChannel:
        return RemoteChannel(transport, FAST_CHANNEL, surface=surface)

    return _make


@pytest.fixture
def registry_for():
    def _make(transport: Any) -> ChannelRegistry:
        return ChannelRegistry(lambda _surface: transport, FAST_CHANNEL)

    return _make
