"""Environment-driven server configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass

TRANSPORTS = ("stdio", "sse", "streamable-http")


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name, default).strip() or default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class ServerConfig:
    ws_url: str = "ws://localhost:9876"
    session_id: str = ""
    command_timeout: float = 120.0
    transport: str = "stdio"
    log_level: str = "INFO"

    # Auto-wait after state-changing actions
    quiet_period_ms: int = 100
    stable_dom_timeout_ms: int = 3000
    navigation_timeout_ms: int = 3000

    # Explicit waits
    wait_timeout_ms: int = 30000
    poll_interval_ms: int = 100
    extension_ready_timeout_ms: int = 15000

    # Slow-target scaling
    cpu_multiplier: float = 1.0
    network_multiplier: float = 1.0

    event_poll_interval: float = 0.05
    snapshot_max_depth: int = 10

    @staticmethod
    def normalize_transport(raw: str | None) -> str:
        transport = (raw or "").strip().lower()
        if transport in {"http", "streamable_http", "streamable-http"}:
            return "streamable-http"
        if transport in TRANSPORTS:
            return transport
        return "stdio"

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            ws_url=_env_str("EXTDEBUG_WS_URL", cls.ws_url),
            session_id=os.environ.get("EXTDEBUG_SESSION_ID", "").strip(),
            command_timeout=_env_float("EXTDEBUG_COMMAND_TIMEOUT", cls.command_timeout),
            transport=cls.normalize_transport(os.environ.get("EXTDEBUG_TRANSPORT")),
            log_level=_env_str("EXTDEBUG_LOG_LEVEL", cls.log_level).upper(),
            quiet_period_ms=_env_int("EXTDEBUG_QUIET_PERIOD_MS", cls.quiet_period_ms),
            stable_dom_timeout_ms=_env_int(
                "EXTDEBUG_STABLE_DOM_TIMEOUT_MS", cls.stable_dom_timeout_ms
            ),
            navigation_timeout_ms=_env_int(
                "EXTDEBUG_NAVIGATION_TIMEOUT_MS", cls.navigation_timeout_ms
            ),
            wait_timeout_ms=_env_int("EXTDEBUG_WAIT_TIMEOUT_MS", cls.wait_timeout_ms),
            poll_interval_ms=_env_int("EXTDEBUG_POLL_INTERVAL_MS", cls.poll_interval_ms),
            extension_ready_timeout_ms=_env_int(
                "EXTDEBUG_EXTENSION_READY_TIMEOUT_MS", cls.extension_ready_timeout_ms
            ),
            cpu_multiplier=_env_float("EXTDEBUG_CPU_MULTIPLIER", cls.cpu_multiplier),
            network_multiplier=_env_float(
                "EXTDEBUG_NETWORK_MULTIPLIER", cls.network_multiplier
            ),
            event_poll_interval=_env_float(
                "EXTDEBUG_EVENT_POLL_INTERVAL", cls.event_poll_interval
            ),
            snapshot_max_depth=_env_int(
                "EXTDEBUG_SNAPSHOT_MAX_DEPTH", cls.snapshot_max_depth
            ),
        )

    # Effective timings, in seconds, with multipliers applied

    @property
    def quiet_period(self) -> float:
        return self.quiet_period_ms * self.cpu_multiplier / 1000

    @property
    def stable_dom_timeout(self) -> float:
        return self.stable_dom_timeout_ms * self.cpu_multiplier / 1000

    @property
    def navigation_timeout(self) -> float:
        return self.navigation_timeout_ms * self.network_multiplier / 1000

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000
