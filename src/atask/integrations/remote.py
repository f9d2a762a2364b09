"""Request/response channel to the agent embedded in a remote surface.

Messages travel as a small JSON envelope::

    {"kind": "submit" | "check_status" | "stop" | "liveness" | "reset", "payload": {...}}
    -> {"success": bool, "data": ..., "error": "..."}

:class:`HttpTransport` POSTs the envelope to ``{base_url}/agent`` and
requests (re-)activation of the agent with ``POST {base_url}/bootstrap``.
:class:`RemoteChannel` adds bounded retries with an escalating delay, a
timeout-bounded liveness probe and the bootstrap fallback.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from atask.core.logging_config import log_remote_call

if TYPE_CHECKING:
    from atask.core.config import Settings

logger = logging.getLogger("atask.remote")


class MessageKind(str, Enum):
    SUBMIT = "submit"
    CHECK_STATUS = "check_status"
    STOP = "stop"
    LIVENESS = "liveness"
    RESET = "reset"


class RemoteMessage(BaseModel):
    kind: MessageKind
    payload: Dict[str, Any] = Field(default_factory=dict)


class RemoteResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None


class TransportError(RuntimeError):
    """A single dispatch failed (network error, HTTP error, malformed reply)."""


class ConnectivityError(RuntimeError):
    """The agent could not be reached within the retry budget."""

    def __init__(self, attempts: int, last_error: Optional[str] = None) -> None:
        message = f"cannot connect after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class ChannelConfig:
    retries: int = 5
    first_delay: float = 0.5
    base_delay: float = 2.0
    request_timeout: float = 10.0
    probe_timeout: float = 1.0
    bootstrap_settle: float = 2.0


class Transport(Protocol):
    async def dispatch(self, message: RemoteMessage) -> RemoteResponse: ...

    async def activate(self) -> bool: ...

    async def aclose(self) -> None: ...


# ── HTTP transport ───────────────────────────────────────────

class HttpTransport:
    """Envelope transport over HTTP using ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def dispatch(self, message: RemoteMessage) -> RemoteResponse:
        url = f"{self.base_url}/agent"
        try:
            resp = await self._client.post(url, json=message.model_dump(mode="json"))
        except httpx.HTTPError as exc:
            raise TransportError(f"{message.kind.value} request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TransportError(f"{message.kind.value} returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return RemoteResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise TransportError(f"malformed {message.kind.value} response: {exc}") from exc

    async def activate(self) -> bool:
        url = f"{self.base_url}/bootstrap"
        try:
            resp = await self._client.post(url, json={})
        except httpx.HTTPError as exc:
            logger.warning("Bootstrap request to %s failed: %s", url, exc)
            return False
        if resp.status_code >= 400:
            logger.warning("Bootstrap request to %s returned HTTP %s", url, resp.status_code)
            return False
        try:
            body = resp.json()
        except ValueError:
            return True
        return bool(body.get("success", True)) if isinstance(body, dict) else True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ── Channel ──────────────────────────────────────────────────

class RemoteChannel:
    """Bounded-retry messaging, liveness probing and bootstrap for one surface."""

    def __init__(
        self,
        transport: Transport,
        config: Optional[ChannelConfig] = None,
        *,
        surface: str = "",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.config = config or ChannelConfig()
        self.surface = surface
        self._sleep = sleep

    def _delay_for(self, attempt: int) -> float:
        if attempt <= 1:
            return self.config.first_delay
        return self.config.base_delay * attempt

    async def send(self, message: RemoteMessage, retries: Optional[int] = None) -> RemoteResponse:
        """Dispatch *message*, retrying until a response arrives.

        A delivered response is returned as-is even when ``success`` is
        false. Raises :class:`ConnectivityError` once every attempt failed.
        """
        attempts = retries if retries is not None else self.config.retries
        attempts = max(1, attempts)
        last_error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            await self._sleep(self._delay_for(attempt))
            start = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self.transport.dispatch(message), timeout=self.config.request_timeout
                )
            except asyncio.TimeoutError:
                last_error = f"timed out after {self.config.request_timeout:g}s"
            except TransportError as exc:
                last_error = str(exc)
            else:
                log_remote_call(
                    message.kind.value, attempt, True,
                    duration_ms=(time.monotonic() - start) * 1000,
                    surface=self.surface, data=response.data,
                )
                return response
            log_remote_call(
                message.kind.value, attempt, False, error=last_error,
                duration_ms=(time.monotonic() - start) * 1000, surface=self.surface,
            )
            logger.warning(
                "Send %s to %s failed (attempt %d/%d): %s",
                message.kind.value, self.surface or "agent", attempt, attempts, last_error,
            )
        raise ConnectivityError(attempts, last_error)

    async def probe(self, timeout: Optional[float] = None) -> bool:
        """Single liveness round-trip, never blocking longer than *timeout*."""
        limit = timeout if timeout is not None else self.config.probe_timeout
        message = RemoteMessage(kind=MessageKind.LIVENESS)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(self.transport.dispatch(message), timeout=limit)
        except asyncio.TimeoutError:
            logger.debug("Liveness probe to %s timed out after %.1fs", self.surface or "agent", limit)
            log_remote_call("liveness", 1, False, error="timeout", surface=self.surface)
            return False
        except TransportError as exc:
            logger.debug("Liveness probe to %s failed: %s", self.surface or "agent", exc)
            log_remote_call("liveness", 1, False, error=str(exc), surface=self.surface)
            return False
        log_remote_call(
            "liveness", 1, response.success,
            duration_ms=(time.monotonic() - start) * 1000, surface=self.surface,
        )
        return response.success

    async def bootstrap(self) -> bool:
        """(Re-)activate the agent, wait for it to settle, then re-probe."""
        logger.info("Bootstrapping agent for %s", self.surface or "agent")
        try:
            activated = await asyncio.wait_for(self.transport.activate(), timeout=self.config.request_timeout)
        except asyncio.TimeoutError:
            logger.warning("Bootstrap of %s timed out", self.surface or "agent")
            return False
        except TransportError as exc:
            logger.warning("Bootstrap of %s failed: %s", self.surface or "agent", exc)
            return False
        if not activated:
            return False
        await self._sleep(self.config.bootstrap_settle)
        alive = await self.probe()
        logger.info("Bootstrap of %s %s", self.surface or "agent", "succeeded" if alive else "did not respond")
        return alive

    async def ensure_alive(self) -> bool:
        """Probe, falling back to one bootstrap attempt only when the probe fails."""
        if await self.probe():
            return True
        logger.warning("Agent for %s did not answer the liveness probe; bootstrapping", self.surface or "agent")
        return await self.bootstrap()

    async def aclose(self) -> None:
        await self.transport.aclose()


class ChannelRegistry:
    """One :class:`RemoteChannel` per surface kind, created on first use."""

    def __init__(
        self,
        transport_factory: Callable[[str], Transport],
        config: Optional[ChannelConfig] = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._config = config or ChannelConfig()
        self._channels: Dict[str, RemoteChannel] = {}

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ChannelRegistry":
        config = settings.channel_config()

        def _factory(surface: str) -> Transport:
            return HttpTransport(settings.url_for(surface), timeout=config.request_timeout)

        return cls(_factory, config)

    def acquire(self, surface: str) -> RemoteChannel:
        key = surface.lower()
        channel = self._channels.get(key)
        if channel is None:
            channel = RemoteChannel(self._transport_factory(key), self._config, surface=key)
            self._channels[key] = channel
        return channel

    async def aclose(self) -> None:
        for channel in self._channels.values():
            try:
                await channel.aclose()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Closing channel %s failed: %s", channel.surface, exc)
        self._channels.clear()
