"""
applogs - Python SDK for shipping structured logs to an AppLogs collector.

This package provides:
- AppLogs: logging client with batching, retries and teardown draining
- serialize/deserialize: safe conversion of arbitrary values into JSON trees
- LogQueue: the delivery queue, usable with any sender

Usage:
    from applogs import AppLogs, setup_logging
    from applogs.serialize import serialize

Example:
    from applogs import setup_logging

    logs = setup_logging(
        api_key="ak_xxx",
        endpoint="https://collector.example.com/v1/logs",
    )

    import logging
    logger = logging.getLogger(__name__)
    logger.info("Service started")
"""

from .client import AppLogs, AppLogsHandler, from_env, setup_logging
from .environment import classify_host
from .errors import AppLogsError, DeliveryError, EndpointError, TeardownError
from .queue import LogQueue
from .serialize import SerializationOptions, TypeTag, deserialize, serialize
from .teardown import TeardownBridge
from .transport import Transport
from .types import SDK_VERSION, AppLogsConfig, HostProfile, LogEntry, QueueState

__all__ = [
    # Client
    "AppLogs",
    "AppLogsHandler",
    "setup_logging",
    "from_env",
    "AppLogsConfig",
    # Delivery
    "LogQueue",
    "Transport",
    "TeardownBridge",
    "classify_host",
    "HostProfile",
    "QueueState",
    "LogEntry",
    # Serialization
    "serialize",
    "deserialize",
    "SerializationOptions",
    "TypeTag",
    # Errors
    "AppLogsError",
    "DeliveryError",
    "EndpointError",
    "TeardownError",
]

__version__ = SDK_VERSION
