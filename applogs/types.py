"""
Core data types shared by the applogs SDK.
"""

import json
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SDK_VERSION = "0.2.0"

LogLevel = str  # "debug" | "info" | "warn" | "error"

LOG_LEVELS = ("debug", "info", "warn", "error")


class HostProfile(Enum):
    """How long the hosting process is expected to keep running."""

    PERSISTENT = "persistent"  # Long-lived, background timers fire
    EPHEMERAL = "ephemeral"  # May be frozen or killed after one unit of work


class QueueState(Enum):
    """Delivery queue states."""

    IDLE = "idle"  # No flush running, buffer may hold entries
    FLUSHING = "flushing"  # Exactly one flush attempt in progress
    DRAINING = "draining"  # Synchronous teardown path active


@dataclass(frozen=True)
class LogEntry:
    """A single log event. ``metadata`` is already a serialized tree."""

    level: LogLevel
    message: str
    timestamp: str
    source: str
    trace_id: str | None = None
    metadata: Any = None

    def to_dict(self) -> dict:
        """Wire representation of the entry."""
        entry = {
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
            "source": self.source,
        }
        if self.trace_id:
            entry["traceId"] = self.trace_id
        if self.metadata is not None:
            entry["metadata"] = self.metadata
        return entry


def encode_batch(entries: Sequence[LogEntry]) -> bytes:
    """Encode a batch as the ordered JSON array the collector expects."""
    return json.dumps([entry.to_dict() for entry in entries], allow_nan=False).encode("utf-8")


ErrorCallback = Callable[[Exception, list[LogEntry]], None]
BeaconSender = Callable[[str, bytes], bool]


@dataclass
class AppLogsConfig:
    """Configuration for an AppLogs client."""

    api_key: str = ""
    endpoint: str | None = None
    discovery_url: str | None = None  # Serves {"endpoint": url}
    endpoint_ttl: float = 300.0  # Seconds a discovered endpoint stays fresh
    batch_size: int = 5
    flush_interval: float = 5.0  # Seconds between auto-flushes
    max_retries: int = 3
    retry_delay: float = 1.0  # Multiplied by the attempt number
    timeout: float = 10.0
    teardown_timeout: float = 2.0  # Blocking send budget during teardown
    requeue_limit: int = 3
    max_depth: int = 10
    host_profile: HostProfile | None = None  # None = classify from environment
    on_error: ErrorCallback | None = None
    beacon: BeaconSender | None = None
    custom_type_handlers: Mapping[str, Callable[[Any], Any]] = field(default_factory=dict)
    register_teardown: bool = True

    def __post_init__(self):
        if not self.api_key:
            raise ValueError("API key is required")
        if not self.endpoint and not self.discovery_url:
            raise ValueError("endpoint or discovery_url is required")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.requeue_limit < 0:
            raise ValueError("requeue_limit must not be negative")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "AppLogsConfig":
        """
        Build a config from environment variables.

        Environment variables:
            APPLOGS_API_KEY: API key (required)
            APPLOGS_ENDPOINT: Collector endpoint
            APPLOGS_DISCOVERY_URL: Endpoint discovery document URL
            APPLOGS_BATCH_SIZE: Entries buffered before auto-flush
            APPLOGS_FLUSH_INTERVAL: Seconds between auto-flushes
            APPLOGS_MAX_RETRIES: Send attempts per batch
            APPLOGS_TIMEOUT: HTTP request timeout in seconds
            APPLOGS_HOST_PROFILE: "persistent" or "ephemeral"

        Keyword overrides win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {
            "api_key": env.get("APPLOGS_API_KEY", ""),
            "endpoint": env.get("APPLOGS_ENDPOINT") or None,
            "discovery_url": env.get("APPLOGS_DISCOVERY_URL") or None,
        }
        if "APPLOGS_BATCH_SIZE" in env:
            values["batch_size"] = int(env["APPLOGS_BATCH_SIZE"])
        if "APPLOGS_FLUSH_INTERVAL" in env:
            values["flush_interval"] = float(env["APPLOGS_FLUSH_INTERVAL"])
        if "APPLOGS_MAX_RETRIES" in env:
            values["max_retries"] = int(env["APPLOGS_MAX_RETRIES"])
        if "APPLOGS_TIMEOUT" in env:
            values["timeout"] = float(env["APPLOGS_TIMEOUT"])
        if env.get("APPLOGS_HOST_PROFILE"):
            values["host_profile"] = HostProfile(env["APPLOGS_HOST_PROFILE"].lower())
        values.update(overrides)
        return cls(**values)
