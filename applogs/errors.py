"""
Error taxonomy for the applogs SDK.

Serialization problems never surface as exceptions (they become marker nodes
in the serialized tree), so only delivery and teardown failures live here.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .types import LogEntry


class AppLogsError(Exception):
    """Base class for all applogs errors."""


class DeliveryError(AppLogsError):
    """A batch could not be handed to the collector."""

    def __init__(self, message: str, entries: "Sequence[LogEntry] | None" = None):
        super().__init__(message)
        self.entries = list(entries or [])


class EndpointError(DeliveryError):
    """No collector endpoint could be resolved."""


class TeardownError(AppLogsError):
    """A teardown fallback failed. Always absorbed by the draining path."""
