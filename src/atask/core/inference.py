"""Completion inference for remote surfaces with no authoritative "done" event.

Surface agents translate raw surface state into four abstract signals.
:func:`advance` and :func:`confirm` fold one tick of signals into an
:class:`ObservationSession` and are pure apart from mutating that session,
so they can be driven by synthetic sequences with explicit timestamps.
:class:`CompletionMonitor` runs them on a poll loop with a watchdog that
restarts the loop when it stops ticking.

Precedence on every tick is Error > Busy > debounced stable Idle, and a
session never completes unless it has seen Busy at least once.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Union

logger = logging.getLogger("atask.inference")


# ── Signals ──────────────────────────────────────────────────

@dataclass(frozen=True)
class BusyIndicator:
    """The surface is visibly producing output (e.g. a stop control is shown)."""
    reason: str = ""


@dataclass(frozen=True)
class ErrorIndicator:
    """The surface reported an error. Always wins."""
    message: str = "surface reported an error"


@dataclass(frozen=True)
class OutputLengthSample:
    """Monotonic measure of output produced so far."""
    length: int


@dataclass(frozen=True)
class ChangeNotification:
    """The observed region mutated. ``at`` defaults to the tick time."""
    at: Optional[float] = None


Signal = Union[BusyIndicator, ErrorIndicator, OutputLengthSample, ChangeNotification]


class SurfaceState(str, Enum):
    UNKNOWN = "unknown"
    BUSY = "busy"
    IDLE = "idle"
    ERROR = "error"


class Verdict(str, Enum):
    RUNNING = "running"
    CONFIRMING = "confirming"    # idle looks stable; busy must be re-checked
    COMPLETED = "completed"
    FAILED = "failed"


class ObservedFailure(RuntimeError):
    """Monitoring saw an error indicator or could not observe the surface."""


@dataclass(frozen=True)
class InferenceConfig:
    poll_interval: float = 2.0
    stability_threshold: int = 3
    debounce_seconds: float = 3.0
    watchdog_interval: float = 4.0
    stall_seconds: float = 8.0
    max_observe_failures: int = 3
    max_step_seconds: float = 0.0   # 0 disables the per-step deadline


@dataclass
class ObservationSession:
    """Ephemeral per-submission inference state."""
    started_at: float
    state: SurfaceState = SurfaceState.UNKNOWN
    has_seen_busy: bool = False
    stability_counter: int = 0
    last_output_length: Optional[int] = None
    last_change_at: Optional[float] = None
    last_signal_at: Optional[float] = None
    watchdog_deadline: Optional[float] = None
    ticks: int = 0
    error: Optional[str] = None
    destroyed: bool = False

    def record_change(self, at: float) -> None:
        if self.last_change_at is None or at > self.last_change_at:
            self.last_change_at = at

    def debounce_satisfied(self, now: float, window: float) -> bool:
        return self.last_change_at is None or now - self.last_change_at >= window

    def destroy(self) -> None:
        self.destroyed = True


# ── Pure transition functions ────────────────────────────────

def _split(signals: Sequence[Signal]) -> tuple[Optional[ErrorIndicator], Optional[BusyIndicator],
                                                Optional[OutputLengthSample], List[ChangeNotification]]:
    error = next((s for s in signals if isinstance(s, ErrorIndicator)), None)
    busy = next((s for s in signals if isinstance(s, BusyIndicator)), None)
    samples = [s for s in signals if isinstance(s, OutputLengthSample)]
    changes = [s for s in signals if isinstance(s, ChangeNotification)]
    return error, busy, (samples[-1] if samples else None), changes


def _absorb(session: ObservationSession, signals: Sequence[Signal], now: float, config: InferenceConfig):
    if session.destroyed:
        raise RuntimeError("observation session already destroyed")
    session.ticks += 1
    session.last_signal_at = now
    session.watchdog_deadline = now + config.stall_seconds
    error, busy, sample, changes = _split(signals)
    for change in changes:
        session.record_change(change.at if change.at is not None else now)
    return error, busy, sample


def _fail(session: ObservationSession, error: ErrorIndicator) -> Verdict:
    session.state = SurfaceState.ERROR
    session.error = error.message or "surface reported an error"
    session.destroy()
    return Verdict.FAILED


def _output_changed(session: ObservationSession, sample: Optional[OutputLengthSample]) -> bool:
    # A surface that reports no length gives no evidence of progress.
    if sample is None:
        return False
    changed = session.last_output_length is not None and sample.length != session.last_output_length
    session.last_output_length = sample.length
    return changed


def advance(
    session: ObservationSession,
    signals: Sequence[Signal],
    now: float,
    config: InferenceConfig,
) -> Verdict:
    """Fold one poll tick into *session*.

    Returns ``CONFIRMING`` when idle has been stable for the configured
    number of ticks and the debounce window is quiet; the caller must then
    take a fresh observation and pass it to :func:`confirm`.
    """
    error, busy, sample = _absorb(session, signals, now, config)
    if error is not None:
        return _fail(session, error)

    if busy is not None:
        session.state = SurfaceState.BUSY
        session.has_seen_busy = True
        session.stability_counter = 0
        if sample is not None:
            session.last_output_length = sample.length
        return Verdict.RUNNING

    if not session.has_seen_busy:
        # Nothing has visibly started yet, so nothing can be judged complete.
        if sample is not None:
            session.last_output_length = sample.length
        return Verdict.RUNNING

    if _output_changed(session, sample):
        session.stability_counter = 0
        return Verdict.RUNNING
    if not session.debounce_satisfied(now, config.debounce_seconds):
        return Verdict.RUNNING

    session.stability_counter += 1
    if session.stability_counter >= config.stability_threshold:
        return Verdict.CONFIRMING
    return Verdict.RUNNING


def confirm(
    session: ObservationSession,
    signals: Sequence[Signal],
    now: float,
    config: InferenceConfig,
) -> Verdict:
    """Decide a pending idle against a fresh observation taken at decision time."""
    error, busy, sample = _absorb(session, signals, now, config)
    if error is not None:
        return _fail(session, error)
    if busy is not None:
        session.state = SurfaceState.BUSY
        session.stability_counter = 0
        return Verdict.RUNNING
    if not session.has_seen_busy:
        return Verdict.RUNNING
    if _output_changed(session, sample):
        session.stability_counter = 0
        return Verdict.RUNNING
    if not session.debounce_satisfied(now, config.debounce_seconds):
        return Verdict.RUNNING
    session.state = SurfaceState.IDLE
    session.destroy()
    return Verdict.COMPLETED


# ── Change notification sources ──────────────────────────────

class ChangeSource(Protocol):
    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; returns an unsubscribe function."""


class ChangeFeed:
    """In-process push source of change notifications."""

    def __init__(self) -> None:
        self._subscribers: List[Callable[[], None]] = []

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def notify(self) -> None:
        for callback in list(self._subscribers):
            callback()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# ── Monitor ──────────────────────────────────────────────────

Observer = Callable[[], Awaitable[Sequence[Signal]]]


@dataclass
class CompletionMonitor:
    """Drive :func:`advance` / :func:`confirm` from a poll loop plus watchdog.

    ``wait()`` resolves with ``Verdict.COMPLETED`` or raises
    :class:`ObservedFailure`. Cancelling ``wait()`` tears down both loops.
    """
    observe: Observer
    config: InferenceConfig = field(default_factory=InferenceConfig)
    change_source: Optional[ChangeSource] = None
    clock: Callable[[], float] = time.monotonic
    label: str = ""
    session: Optional[ObservationSession] = field(default=None, init=False)
    restarts: int = field(default=0, init=False)
    _done: Optional[asyncio.Future] = field(default=None, init=False, repr=False)
    _poll_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _watchdog_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _loop_started_at: float = field(default=0.0, init=False, repr=False)
    _observe_failures: int = field(default=0, init=False, repr=False)
    _observing: bool = field(default=False, init=False, repr=False)

    async def wait(self) -> Verdict:
        loop = asyncio.get_running_loop()
        self.session = ObservationSession(started_at=self.clock())
        self._done = loop.create_future()
        unsubscribe: Optional[Callable[[], None]] = None
        if self.change_source is not None:
            unsubscribe = self.change_source.subscribe(self._on_change)
        self._start_poll_loop()
        self._watchdog_task = asyncio.create_task(self._watchdog())
        try:
            return await self._done
        finally:
            await self._teardown()
            if unsubscribe is not None:
                unsubscribe()

    def _on_change(self) -> None:
        if self.session is not None and not self.session.destroyed:
            self.session.record_change(self.clock())

    def _start_poll_loop(self) -> None:
        self._loop_started_at = self.clock()
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _resolve(self, verdict: Verdict) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(verdict)

    def _reject(self, message: str) -> None:
        if self.session is not None:
            self.session.error = message
            self.session.destroy()
        if self._done is not None and not self._done.done():
            self._done.set_exception(ObservedFailure(message))

    def _count_observe_failure(self, reason: object) -> None:
        self._observe_failures += 1
        logger.warning(
            "Observation failed%s (%d/%d): %s",
            f" for {self.label}" if self.label else "",
            self._observe_failures, self.config.max_observe_failures, reason,
        )
        if self._observe_failures >= self.config.max_observe_failures:
            self._reject(f"could not observe surface after {self._observe_failures} attempts: {reason}")

    async def _observe_once(self) -> Optional[Sequence[Signal]]:
        self._observing = True
        try:
            signals = await self.observe()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._count_observe_failure(exc)
            return None
        finally:
            self._observing = False
        self._observe_failures = 0
        return signals

    async def _poll_loop(self) -> None:
        session = self.session
        assert session is not None
        while self._done is not None and not self._done.done():
            if self.config.max_step_seconds > 0 and self.clock() - session.started_at > self.config.max_step_seconds:
                self._reject(f"step did not complete within {self.config.max_step_seconds:g}s")
                return
            signals = await self._observe_once()
            if signals is not None and not self._done.done():
                verdict = self._tick(session, signals)
                if session.destroyed:
                    return
                if verdict is Verdict.CONFIRMING:
                    await self._confirm(session)
                    if session.destroyed:
                        return
            await asyncio.sleep(self.config.poll_interval)

    def _tick(self, session: ObservationSession, signals: Sequence[Signal]) -> Verdict:
        verdict = advance(session, signals, self.clock(), self.config)
        logger.debug(
            "Tick %d%s: state=%s seen_busy=%s stable=%d verdict=%s",
            session.ticks, f" [{self.label}]" if self.label else "",
            session.state.value, session.has_seen_busy, session.stability_counter, verdict.value,
        )
        if verdict is Verdict.FAILED:
            self._reject(session.error or "surface reported an error")
        return verdict

    async def _confirm(self, session: ObservationSession) -> None:
        signals = await self._observe_once()
        if signals is None or self._done is None or self._done.done():
            return
        verdict = confirm(session, signals, self.clock(), self.config)
        if verdict is Verdict.COMPLETED:
            logger.info("Completion confirmed%s after %d ticks", f" for {self.label}" if self.label else "", session.ticks)
            self._resolve(verdict)
        elif verdict is Verdict.FAILED:
            self._reject(session.error or "surface reported an error")

    async def _watchdog(self) -> None:
        session = self.session
        assert session is not None
        while self._done is not None and not self._done.done():
            await asyncio.sleep(self.config.watchdog_interval)
            if session.destroyed or self._done.done():
                return
            last = max(session.last_signal_at or 0.0, self._loop_started_at)
            idle_for = self.clock() - last
            if idle_for > self.config.stall_seconds:
                self.restarts += 1
                logger.warning(
                    "Monitoring stalled%s for %.1fs; restarting poll loop (restart #%d)",
                    f" for {self.label}" if self.label else "", idle_for, self.restarts,
                )
                hung_observe = self._observing
                await self._cancel(self._poll_task)
                if hung_observe:
                    # A status check that outlives the stall window is a failed observation.
                    self._count_observe_failure(f"status check hung for {idle_for:.1f}s")
                    if self._done.done():
                        return
                self._start_poll_loop()

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        for task in (self._poll_task, self._watchdog_task):
            if task is not current:
                await self._cancel(task)
        if self.session is not None:
            self.session.destroy()
