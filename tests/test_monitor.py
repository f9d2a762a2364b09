"""CompletionMonitor: poll loop, confirmation, watchdog restarts and teardown."""
from __future__ import annotations

import asyncio

import pytest

from atask.core.inference import (
    BusyIndicator,
    ChangeFeed,
    CompletionMonitor,
    ErrorIndicator,
    InferenceConfig,
    ObservedFailure,
    OutputLengthSample,
    Verdict,
)
from atask.integrations.agents import ChatGPTAgent
from atask.integrations.remote import (
    ChannelConfig,
    MessageKind,
    RemoteChannel,
    RemoteMessage,
    RemoteResponse,
    TransportError,
)

FAST = InferenceConfig(
    poll_interval=0.005,
    stability_threshold=2,
    debounce_seconds=0.0,
    watchdog_interval=0.02,
    stall_seconds=0.05,
)


class ScriptedObserver:
    """Replays signal lists, repeating the last one forever."""

    def __init__(self, script, hang_first: bool = False, fail_times: int = 0) -> None:
        self.script = list(script)
        self.calls = 0
        self.hang_first = hang_first
        self.fail_times = fail_times

    async def __call__(self):
        self.calls += 1
        if self.hang_first and self.calls == 1:
            await asyncio.sleep(30)
        if self.fail_times:
            self.fail_times -= 1
            raise RuntimeError("status check failed")
        if len(self.script) > 1:
            return self.script.pop(0)
        return self.script[0]


BUSY_THEN_IDLE = [
    [BusyIndicator(), OutputLengthSample(3)],
    [BusyIndicator(), OutputLengthSample(8)],
    [OutputLengthSample(8)],
]


def _wait(monitor: CompletionMonitor, timeout: float = 5.0):
    return asyncio.run(asyncio.wait_for(monitor.wait(), timeout))


def test_completes_after_busy_and_stable_idle() -> None:
    observer = ScriptedObserver(BUSY_THEN_IDLE)
    monitor = CompletionMonitor(observer, FAST)
    assert _wait(monitor) is Verdict.COMPLETED
    assert monitor.session.has_seen_busy is True
    assert monitor.session.destroyed is True
    assert monitor.restarts == 0


def test_error_indicator_fails() -> None:
    observer = ScriptedObserver([[BusyIndicator()], [ErrorIndicator("rate limited")]])
    with pytest.raises(ObservedFailure, match="rate limited"):
        _wait(CompletionMonitor(observer, FAST))


def test_repeated_observe_failures_fail_the_step() -> None:
    observer = ScriptedObserver([[BusyIndicator()]], fail_times=10)
    with pytest.raises(ObservedFailure, match="could not observe"):
        _wait(CompletionMonitor(observer, FAST))
    assert observer.calls == FAST.max_observe_failures


def test_transient_observe_failures_are_tolerated() -> None:
    observer = ScriptedObserver(BUSY_THEN_IDLE, fail_times=FAST.max_observe_failures - 1)
    assert _wait(CompletionMonitor(observer, FAST)) is Verdict.COMPLETED


def test_watchdog_restarts_stalled_loop() -> None:
    observer = ScriptedObserver(BUSY_THEN_IDLE, hang_first=True)
    monitor = CompletionMonitor(observer, FAST)
    assert _wait(monitor) is Verdict.COMPLETED
    assert monitor.restarts >= 1


def test_step_deadline() -> None:
    config = InferenceConfig(
        poll_interval=0.005, stability_threshold=2, debounce_seconds=0.0,
        watchdog_interval=0.02, stall_seconds=1.0, max_step_seconds=0.05,
    )
    observer = ScriptedObserver([[BusyIndicator()]])
    with pytest.raises(ObservedFailure, match="did not complete"):
        _wait(CompletionMonitor(observer, config))


def test_change_feed_subscription_is_released() -> None:
    feed = ChangeFeed()
    observer = ScriptedObserver(BUSY_THEN_IDLE)
    monitor = CompletionMonitor(observer, FAST, change_source=feed)

    async def scenario():
        waiter = asyncio.create_task(monitor.wait())
        await asyncio.sleep(0)
        assert feed.subscriber_count == 1
        feed.notify()
        return await asyncio.wait_for(waiter, 5)

    assert asyncio.run(scenario()) is Verdict.COMPLETED
    assert feed.subscriber_count == 0
    assert monitor.session.last_change_at is not None


def test_cancellation_stops_polling() -> None:
    observer = ScriptedObserver([[BusyIndicator()]])
    monitor = CompletionMonitor(observer, FAST)

    async def scenario():
        waiter = asyncio.create_task(monitor.wait())
        await asyncio.sleep(0.05)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        calls = observer.calls
        await asyncio.sleep(0.05)
        return calls

    calls_at_cancel = asyncio.run(scenario())
    assert observer.calls == calls_at_cancel
    assert monitor.session.destroyed is True


# ── Dead agent behind a real channel ─────────────────────────

class DeadTransport:
    """Every dispatch fails as if the agent's page was closed."""

    def __init__(self) -> None:
        self.dispatches = 0

    async def dispatch(self, message: RemoteMessage) -> RemoteResponse:
        self.dispatches += 1
        raise TransportError("connection refused")

    async def activate(self) -> bool:
        return False

    async def aclose(self) -> None:
        pass


# Default channel and inference timings scaled down 20x: the channel's
# retry waits add up to well beyond the stall window.
SCALED_CHANNEL = ChannelConfig(retries=5, first_delay=0.025, base_delay=0.1, request_timeout=0.5)
SCALED_INFERENCE = InferenceConfig(
    poll_interval=0.1, stability_threshold=3, debounce_seconds=0.15,
    watchdog_interval=0.2, stall_seconds=0.4, max_observe_failures=3,
)


def test_dead_agent_fails_step_through_agent_observe() -> None:
    transport = DeadTransport()
    agent = ChatGPTAgent(RemoteChannel(transport, SCALED_CHANNEL, surface="chatgpt"), task_id="task-dead")
    monitor = CompletionMonitor(agent.observe, SCALED_INFERENCE)
    with pytest.raises(ObservedFailure, match="could not observe"):
        _wait(monitor, timeout=10)
    assert transport.dispatches == SCALED_INFERENCE.max_observe_failures


def test_hung_status_checks_count_against_failure_budget() -> None:
    transport = DeadTransport()
    channel = RemoteChannel(transport, SCALED_CHANNEL, surface="chatgpt")

    async def observe_with_full_retries():
        await channel.send(RemoteMessage(kind=MessageKind.CHECK_STATUS))
        return []

    monitor = CompletionMonitor(observe_with_full_retries, SCALED_INFERENCE)
    with pytest.raises(ObservedFailure, match="status check hung"):
        _wait(monitor, timeout=10)
    assert monitor.restarts == SCALED_INFERENCE.max_observe_failures
