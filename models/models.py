"""figbridge — Data Models

- BridgeConfig: validated listener/timeout settings (env + CLI)
- Outcome: terminal result of a pending request
- PendingRequest: correlation table entry
- BridgeStatus: snapshot returned by get_status()
- Tool: MCP tool definition exposed by the outer layer
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Callable, Dict
import asyncio
import math
import os
import re


DEFAULT_WS_HOST = "localhost"
DEFAULT_WS_PORT = 8080
DEFAULT_REQUEST_TIMEOUT = 30.0       # Seconds, execute/notify
DEFAULT_CONTEXT_TIMEOUT = 10.0       # Seconds, getContext
DEFAULT_NOTIFY_DURATION_MS = 3000
DEFAULT_MAX_MESSAGE_BYTES = 2 * 1024 * 1024
DEFAULT_PING_INTERVAL = 20.0


class ReplacePolicy(Enum):
    LAST_CONNECTED_WINS = "last-connected-wins"
    REJECT_NEW = "reject-new"


class OutcomeKind(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class RequestKind(Enum):
    EXECUTE = "execute"
    GET_CONTEXT = "getContext"
    NOTIFY = "notify"


def validate_positive_seconds(name: str, value: Any) -> float:
    if (not isinstance(value, (int, float))
            or isinstance(value, bool)
            or not math.isfinite(value)
            or value <= 0):
        raise ValueError(f"{name} must be a finite positive number, got {value!r}")
    return float(value)


@dataclass
class BridgeConfig:
    """Listener and timeout settings for one bridge instance."""
    host: str = DEFAULT_WS_HOST
    port: int = DEFAULT_WS_PORT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    context_timeout: float = DEFAULT_CONTEXT_TIMEOUT
    notify_duration_ms: int = DEFAULT_NOTIFY_DURATION_MS
    replace_policy: ReplacePolicy = ReplacePolicy.LAST_CONNECTED_WINS
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES
    ping_interval: Optional[float] = DEFAULT_PING_INTERVAL

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host.strip():
            raise ValueError("host cannot be empty")
        # Port 0 asks the OS for an ephemeral port (tests)
        if (not isinstance(self.port, int) or isinstance(self.port, bool)
                or not 0 <= self.port <= 65535):
            raise ValueError(f"port must be an integer in 0..65535, got {self.port!r}")
        self.request_timeout = validate_positive_seconds("request_timeout", self.request_timeout)
        self.context_timeout = validate_positive_seconds("context_timeout", self.context_timeout)
        if (not isinstance(self.notify_duration_ms, int)
                or isinstance(self.notify_duration_ms, bool)
                or self.notify_duration_ms < 0):
            raise ValueError("notify_duration_ms must be a non-negative integer")
        if isinstance(self.replace_policy, str):
            self.replace_policy = ReplacePolicy(self.replace_policy)
        if self.max_message_bytes < 1024:
            raise ValueError("max_message_bytes must be >= 1024")
        if self.ping_interval is not None:
            self.ping_interval = validate_positive_seconds("ping_interval", self.ping_interval)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "BridgeConfig":
        """Build config from FIGMA_* environment variables.

        Keyword overrides (from CLI flags) win over the environment; None
        values are ignored so argparse defaults can be passed straight through.
        """
        env = os.environ if environ is None else environ
        kwargs: Dict[str, Any] = {}
        if env.get("FIGMA_WS_HOST"):
            kwargs["host"] = env["FIGMA_WS_HOST"].strip()
        if env.get("FIGMA_WS_PORT"):
            try:
                kwargs["port"] = int(env["FIGMA_WS_PORT"], 10)
            except ValueError:
                raise ValueError(
                    f"FIGMA_WS_PORT must be an integer, got {env['FIGMA_WS_PORT']!r}"
                ) from None
        if env.get("FIGMA_BRIDGE_TIMEOUT"):
            try:
                kwargs["request_timeout"] = float(env["FIGMA_BRIDGE_TIMEOUT"])
            except ValueError:
                raise ValueError(
                    f"FIGMA_BRIDGE_TIMEOUT must be a number of seconds, "
                    f"got {env['FIGMA_BRIDGE_TIMEOUT']!r}"
                ) from None
        if env.get("FIGMA_BRIDGE_REPLACE_POLICY"):
            kwargs["replace_policy"] = env["FIGMA_BRIDGE_REPLACE_POLICY"].strip().lower()
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass(frozen=True)
class Outcome:
    """Terminal outcome of a pending request."""
    kind: OutcomeKind
    result: Any = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, result: Any) -> "Outcome":
        return cls(OutcomeKind.SUCCESS, result=result)

    @classmethod
    def failure(cls, error: BaseException) -> "Outcome":
        return cls(OutcomeKind.FAILURE, error=error)

    @classmethod
    def timeout(cls) -> "Outcome":
        return cls(OutcomeKind.TIMEOUT)


@dataclass
class PendingRequest:
    request_id: str
    kind: RequestKind
    future: asyncio.Future
    timeout: float
    generation: int
    submitted_at: float                       # loop.time() at registration
    timer_handle: Optional[asyncio.TimerHandle] = None


@dataclass
class PluginInfo:
    """What a plugin told us in its handshake message."""
    source: str = "unknown"
    version: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "version": self.version,
            "connectedAt": self.connected_at.isoformat(),
        }


@dataclass
class BridgeStatus:
    connected: bool
    pending_count: int
    total_requests: int
    uptime_ms: int
    plugin: Optional[PluginInfo] = None

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "pendingCount": self.pending_count,
            "totalRequests": self.total_requests,
            "uptimeMs": self.uptime_ms,
            "plugin": self.plugin.to_dict() if self.plugin else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


@dataclass
class Tool:
    name: str
    description: str
    parameters: Dict
    handler: Callable
    module_id: str
    max_execution_seconds: float = 30.0

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Tool name cannot be empty")
        if not self.module_id or not self.module_id.strip():
            raise ValueError("Tool module_id cannot be empty")
        if (not isinstance(self.max_execution_seconds, (int, float))
                or isinstance(self.max_execution_seconds, bool)
                or not math.isfinite(self.max_execution_seconds)
                or self.max_execution_seconds <= 0):
            raise ValueError("max_execution_seconds must be a finite positive number")
        if self.max_execution_seconds > 3600:
            raise ValueError("max_execution_seconds must be <= 3600 (1 hour)")
        if isinstance(self.description, str) and len(self.description) > 4096:
            raise ValueError("Tool description must be <= 4096 characters")
        # Alphanumeric, underscores, hyphens only (must start with letter)
        if not re.match(r'^[a-zA-Z][a-zA-Z0-9_\-]*$', self.name):
            raise ValueError(f"Tool name {self.name!r} contains invalid characters")
