"""Surface agents: busy rules, signal translation and actions."""
from __future__ import annotations

import asyncio

import pytest

from atask.core.inference import BusyIndicator, ChangeNotification, ErrorIndicator, OutputLengthSample
from atask.integrations.agents import (
    AgentConfig,
    AgentError,
    ChatGPTAgent,
    GeminiAgent,
    OiioiiAgent,
    SubmissionError,
    create_agent,
    supported_surfaces,
)
from atask.integrations.remote import (
    ChannelConfig,
    MessageKind,
    RemoteChannel,
    RemoteResponse,
    TransportError,
)

NO_WAIT = ChannelConfig(retries=2, first_delay=0.0, base_delay=0.0)


class SnapshotTransport:
    """Answers status checks from a list of snapshots and records everything else."""

    def __init__(self, snapshots=None, submit_response=None, stop_fails=False) -> None:
        self.snapshots = list(snapshots or [{}])
        self.submit_response = submit_response or RemoteResponse(success=True)
        self.stop_fails = stop_fails
        self.sent = []

    async def dispatch(self, message):
        self.sent.append(message)
        if message.kind is MessageKind.CHECK_STATUS:
            data = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
            return RemoteResponse(success=True, data=data)
        if message.kind is MessageKind.SUBMIT:
            return self.submit_response
        if message.kind is MessageKind.STOP and self.stop_fails:
            raise TransportError("gone")
        return RemoteResponse(success=True)

    async def activate(self):
        return True

    async def aclose(self):
        pass


def _agent(cls, transport, config=None):
    return cls(RemoteChannel(transport, NO_WAIT), task_id="task-abc", config=config or AgentConfig(
        idle_wait_timeout=0.1, idle_wait_interval=0.001, reset_settle=0.0,
    ))


def _controls(**controls):
    return {"controls": controls, "output_length": 0, "mutations": 0}


# ── Busy rules ───────────────────────────────────────────────

class TestChatGPT:
    def test_stop_button_present_is_busy(self):
        agent = _agent(ChatGPTAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(stop_button={"present": True, "visible": False}))

    def test_streaming_indicator(self):
        agent = _agent(ChatGPTAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(streaming={"present": True, "visible": True}))
        assert agent.busy_reason(_controls(streaming={"present": True, "visible": False})) is None

    def test_idle(self):
        agent = _agent(ChatGPTAgent, SnapshotTransport())
        assert agent.busy_reason(_controls()) is None
        assert agent.busy_reason(_controls(stop_button={"present": False})) is None


class TestGemini:
    def test_stop_class(self):
        agent = _agent(GeminiAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(stop_button={"present": True, "visible": True, "classes": ["stop"]}))

    def test_stop_label_in_either_language(self):
        agent = _agent(GeminiAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(stop_button={"visible": True, "label": "Stop response"}))
        assert agent.busy_reason(_controls(stop_button={"visible": True, "label": "停止回答"}))

    def test_hidden_or_unrelated_button_is_not_busy(self):
        agent = _agent(GeminiAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(stop_button={"present": True, "visible": False, "classes": ["stop"]})) is None
        assert agent.busy_reason(_controls(stop_button={"visible": True, "label": "Send"})) is None

    def test_submit_button_in_stop_mode(self):
        agent = _agent(GeminiAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(submit_button={"visible": True, "classes": ["send", "stop"]}))

    def test_loading_indicator(self):
        agent = _agent(GeminiAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(loading={"visible": True}))


class TestOiioii:
    def test_pause_layout_or_button(self):
        agent = _agent(OiioiiAgent, SnapshotTransport())
        assert agent.busy_reason(_controls(pause_layout={"visible": True}))
        assert agent.busy_reason(_controls(pause_button={"visible": True}))
        assert agent.busy_reason(_controls(pause_button={"visible": False})) is None


# ── Signals ──────────────────────────────────────────────────

def test_to_signals_translates_snapshot():
    agent = _agent(ChatGPTAgent, SnapshotTransport())
    first = agent.to_signals({"controls": {"stop_button": {"present": True}}, "output_length": 12, "mutations": 3})
    assert BusyIndicator("stop button present") in first
    assert OutputLengthSample(12) in first
    assert not any(isinstance(s, ChangeNotification) for s in first)

    second = agent.to_signals({"error": "  Network error ", "output_length": 12, "mutations": 5})
    assert ErrorIndicator("Network error") in second
    assert any(isinstance(s, ChangeNotification) for s in second)
    assert not any(isinstance(s, BusyIndicator) for s in second)

    third = agent.to_signals({"output_length": 12, "mutations": 5})
    assert third == [OutputLengthSample(12)]


def test_observe_queries_status():
    transport = SnapshotTransport([{"controls": {"loading": {"visible": True}}, "output_length": 4}])
    signals = asyncio.run(_agent(GeminiAgent, transport).observe())
    assert [m.kind for m in transport.sent] == [MessageKind.CHECK_STATUS]
    assert any(isinstance(s, BusyIndicator) for s in signals)


def test_observe_rejects_missing_snapshot():
    class NoData(SnapshotTransport):
        async def dispatch(self, message):
            return RemoteResponse(success=True, data=None)

    with pytest.raises(AgentError):
        asyncio.run(_agent(ChatGPTAgent, NoData()).observe())


# ── Actions ──────────────────────────────────────────────────

def test_prepare_input_waits_for_idle():
    busy = _controls(loading={"visible": True})
    transport = SnapshotTransport([busy, busy, _controls()])
    asyncio.run(_agent(GeminiAgent, transport).prepare_input())
    assert len(transport.sent) == 3


def test_prepare_input_gives_up_when_surface_stays_busy():
    transport = SnapshotTransport([_controls(pause_layout={"visible": True})])
    with pytest.raises(SubmissionError, match="still busy"):
        asyncio.run(_agent(OiioiiAgent, transport).prepare_input())


def test_chatgpt_submits_without_waiting():
    transport = SnapshotTransport([_controls(stop_button={"present": True})])
    asyncio.run(_agent(ChatGPTAgent, transport).prepare_input())
    assert transport.sent == []


def test_submit_sends_content():
    transport = SnapshotTransport()
    asyncio.run(_agent(ChatGPTAgent, transport).submit("hello"))
    message = transport.sent[0]
    assert message.kind is MessageKind.SUBMIT
    assert message.payload == {"content": "hello", "task_id": "task-abc"}


def test_rejected_submit_raises():
    transport = SnapshotTransport(submit_response=RemoteResponse(success=False, error="input box not found"))
    with pytest.raises(SubmissionError, match="input box not found"):
        asyncio.run(_agent(ChatGPTAgent, transport).submit("hello"))


def test_reset_sends_reset():
    transport = SnapshotTransport()
    asyncio.run(_agent(GeminiAgent, transport).reset())
    assert [m.kind for m in transport.sent] == [MessageKind.RESET]


def test_abort_never_raises():
    transport = SnapshotTransport(stop_fails=True)
    agent = _agent(ChatGPTAgent, transport)
    asyncio.run(agent.abort())
    assert agent.aborted is True
    assert [m.kind for m in transport.sent] == [MessageKind.STOP]


# ── Factory ──────────────────────────────────────────────────

def test_factory():
    channel = RemoteChannel(SnapshotTransport(), NO_WAIT)
    assert isinstance(create_agent("ChatGPT", channel), ChatGPTAgent)
    assert isinstance(create_agent("gemini", channel), GeminiAgent)
    assert isinstance(create_agent("oiioii", channel, task_id="t"), OiioiiAgent)
    assert supported_surfaces() == ["chatgpt", "gemini", "oiioii"]
    with pytest.raises(ValueError, match="unsupported surface"):
        create_agent("claude", channel)
