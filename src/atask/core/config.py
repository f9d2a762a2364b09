from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from atask.core.inference import InferenceConfig
    from atask.core.pipeline import PipelineConfig
    from atask.integrations.agents import AgentConfig
    from atask.integrations.remote import ChannelConfig


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _parse_surface_urls(raw: str) -> dict[str, str]:
    """Parse ``kind=url,kind=url`` into a mapping (blank entries ignored)."""
    urls: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item or "=" not in item:
            continue
        kind, url = item.split("=", 1)
        if kind.strip() and url.strip():
            urls[kind.strip().lower()] = url.strip()
    return urls


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    clear_logs_on_launch: bool
    default_surface: str
    agent_url: str
    default_max_retries: int
    retry_delay: float
    send_retries: int
    send_first_delay: float
    send_base_delay: float
    request_timeout: float
    probe_timeout: float
    bootstrap_settle: float
    submit_timeout: float
    idle_wait_timeout: float
    idle_wait_interval: float
    reset_settle: float
    poll_interval: float
    stability_threshold: int
    debounce_seconds: float
    watchdog_interval: float
    stall_seconds: float
    max_observe_failures: int
    max_step_seconds: float
    surface_urls: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_env() -> "Settings":
        default_home = str(Path(os.path.expanduser("~")) / ".atask")
        default_log_dir = str(Path(default_home) / ".logs")
        default_data_dir = str(Path(default_home) / ".data")
        return Settings(
            log_level=os.getenv("ATASK_LOG_LEVEL", "info"),
            log_dir=os.getenv("ATASK_LOG_DIR") or default_log_dir,
            data_dir=os.getenv("ATASK_DATA_DIR") or default_data_dir,
            clear_logs_on_launch=_flag("ATASK_CLEAR_LOGS_ON_LAUNCH"),
            default_surface=os.getenv("ATASK_DEFAULT_SURFACE", "gemini").lower(),
            agent_url=os.getenv("ATASK_AGENT_URL", "http://127.0.0.1:18791"),
            default_max_retries=int(os.getenv("ATASK_MAX_RETRIES", "0")),
            retry_delay=float(os.getenv("ATASK_RETRY_DELAY", "5")),
            send_retries=int(os.getenv("ATASK_SEND_RETRIES", "5")),
            send_first_delay=float(os.getenv("ATASK_SEND_FIRST_DELAY", "0.5")),
            send_base_delay=float(os.getenv("ATASK_SEND_BASE_DELAY", "2")),
            request_timeout=float(os.getenv("ATASK_REQUEST_TIMEOUT", "10")),
            probe_timeout=float(os.getenv("ATASK_PROBE_TIMEOUT", "1")),
            bootstrap_settle=float(os.getenv("ATASK_BOOTSTRAP_SETTLE", "2")),
            submit_timeout=float(os.getenv("ATASK_SUBMIT_TIMEOUT", "30")),
            idle_wait_timeout=float(os.getenv("ATASK_IDLE_WAIT_TIMEOUT", "60")),
            idle_wait_interval=float(os.getenv("ATASK_IDLE_WAIT_INTERVAL", "1")),
            reset_settle=float(os.getenv("ATASK_RESET_SETTLE", "0.5")),
            poll_interval=float(os.getenv("ATASK_POLL_INTERVAL", "2")),
            stability_threshold=int(os.getenv("ATASK_STABILITY_THRESHOLD", "3")),
            debounce_seconds=float(os.getenv("ATASK_DEBOUNCE_SECONDS", "3")),
            watchdog_interval=float(os.getenv("ATASK_WATCHDOG_INTERVAL", "4")),
            stall_seconds=float(os.getenv("ATASK_STALL_SECONDS", "8")),
            max_observe_failures=int(os.getenv("ATASK_MAX_OBSERVE_FAILURES", "3")),
            max_step_seconds=float(os.getenv("ATASK_MAX_STEP_SECONDS", "0")),
            surface_urls=_parse_surface_urls(os.getenv("ATASK_SURFACE_URLS", "")),
        )

    def url_for(self, surface: str) -> str:
        """Agent endpoint for a surface kind, falling back to ``agent_url``."""
        return self.surface_urls.get(surface.lower(), self.agent_url)

    # ── Component projections ────────────────────────────────

    def inference_config(self) -> "InferenceConfig":
        from atask.core.inference import InferenceConfig

        return InferenceConfig(
            poll_interval=self.poll_interval,
            stability_threshold=self.stability_threshold,
            debounce_seconds=self.debounce_seconds,
            watchdog_interval=self.watchdog_interval,
            stall_seconds=self.stall_seconds,
            max_observe_failures=self.max_observe_failures,
            max_step_seconds=self.max_step_seconds,
        )

    def channel_config(self) -> "ChannelConfig":
        from atask.integrations.remote import ChannelConfig

        return ChannelConfig(
            retries=self.send_retries,
            first_delay=self.send_first_delay,
            base_delay=self.send_base_delay,
            request_timeout=self.request_timeout,
            probe_timeout=self.probe_timeout,
            bootstrap_settle=self.bootstrap_settle,
        )

    def pipeline_config(self) -> "PipelineConfig":
        from atask.core.pipeline import PipelineConfig

        return PipelineConfig(submit_timeout=self.submit_timeout)

    def agent_config(self) -> "AgentConfig":
        from atask.integrations.agents import AgentConfig

        return AgentConfig(
            idle_wait_timeout=self.idle_wait_timeout,
            idle_wait_interval=self.idle_wait_interval,
            reset_settle=self.reset_settle,
        )
