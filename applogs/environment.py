"""
Host classification.

The delivery queue picks its batching and scheduling policy from the host
profile, computed once when the queue is built.
"""

import os
import platform
from collections.abc import Mapping

from .types import HostProfile

PROFILE_OVERRIDE_VAR = "APPLOGS_HOST_PROFILE"

# Variables set by function-as-a-service runtimes that may freeze or reap
# the process as soon as an invocation returns
EPHEMERAL_MARKERS = (
    "AWS_LAMBDA_FUNCTION_NAME",  # AWS Lambda
    "FUNCTIONS_WORKER_RUNTIME",  # Azure Functions
    "FUNCTION_TARGET",  # Google Cloud Functions
    "VERCEL",  # Vercel serverless functions
    "NETLIFY",  # Netlify functions
)


def classify_host(environ: Mapping[str, str] | None = None) -> HostProfile:
    """
    Decide whether the hosting process is persistent or ephemeral.

    Args:
        environ: Environment to inspect (defaults to os.environ)

    Returns:
        HostProfile.EPHEMERAL inside function-as-a-service runtimes or when
        APPLOGS_HOST_PROFILE says so, HostProfile.PERSISTENT otherwise.
    """
    env = os.environ if environ is None else environ

    override = env.get(PROFILE_OVERRIDE_VAR, "").strip().lower()
    if override:
        try:
            return HostProfile(override)
        except ValueError:
            pass  # Unknown value, fall through to detection

    if any(env.get(marker) for marker in EPHEMERAL_MARKERS):
        return HostProfile.EPHEMERAL
    return HostProfile.PERSISTENT


def detect_runtime() -> str:
    """Runtime name reported in every entry's ``sdk.environment`` field."""
    return f"python-{platform.python_implementation().lower()}"
