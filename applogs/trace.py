"""Trace identifiers attached to log entries."""

import secrets


def generate_trace_id() -> str:
    """A random 128-bit trace id as 32 hex characters."""
    return secrets.token_hex(16)


def ensure_trace_id(trace_id: str | None = None) -> str:
    return trace_id or generate_trace_id()
