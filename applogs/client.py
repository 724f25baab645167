"""
AppLogs client - structured log shipping for Python services.

Usage:
    from applogs import AppLogs

    # Option 1: Direct API
    logs = AppLogs(api_key="ak_xxx", endpoint="https://collector.example.com/v1/logs")
    logs.set_context({"service": "billing"})
    logs.info("Payment processed", {"order": order, "amount": Decimal("99.99")})
    await logs.destroy()  # Final flush

    # Option 2: As a logging handler
    from applogs import setup_logging

    setup_logging(api_key="ak_xxx", endpoint="https://collector.example.com/v1/logs")

    import logging
    logger = logging.getLogger(__name__)
    logger.info("Payment processed", extra={"user_id": "u123"})

    # Option 3: From environment variables
    from applogs import from_env
    logs = from_env()

Metadata can be any Python value: it is serialized when the entry is
created, so later mutations of the original objects do not leak into the
shipped entry.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from .environment import detect_runtime
from .queue import LogQueue
from .serialize import SerializationOptions, serialize
from .teardown import TeardownBridge
from .trace import ensure_trace_id, generate_trace_id
from .transport import Transport
from .types import LOG_LEVELS, SDK_VERSION, AppLogsConfig, HostProfile, LogEntry, LogLevel

logger = logging.getLogger(__name__)

SOURCE = "sdk"


class AppLogs:
    """
    Log shipping client.

    Entries are serialized on creation, buffered in a LogQueue and delivered
    through the Transport. A TeardownBridge drains the queue when the
    process exits or receives SIGTERM/SIGHUP.
    """

    def __init__(
        self,
        config: AppLogsConfig | None = None,
        *,
        transport: Transport | None = None,
        bridge: TeardownBridge | None = None,
        **config_kwargs,
    ):
        """
        Args:
            config: Client configuration; built from config_kwargs when omitted
            transport: Preconfigured transport (custom httpx transports, tests)
            bridge: Teardown bridge to register with (defaults to a new one)
            **config_kwargs: AppLogsConfig fields

        Raises:
            ValueError: the configuration is incomplete (e.g. no API key)
        """
        self.config = config if config is not None else AppLogsConfig(**config_kwargs)
        self.transport = transport or Transport(self.config)
        self.queue = LogQueue(
            self.transport,
            batch_size=self.config.batch_size,
            flush_interval=self.config.flush_interval,
            host_profile=self.config.host_profile,
            on_error=self.config.on_error,
            requeue_limit=self.config.requeue_limit,
            beacon=self.config.beacon,
        )
        self._options = SerializationOptions(
            max_depth=self.config.max_depth,
            include_non_enumerable=False,
            custom_type_handlers=self.config.custom_type_handlers,
        )
        self._context: dict[str, Any] = {}
        self._trace_id = generate_trace_id()
        self._environment = detect_runtime()

        self._bridge: TeardownBridge | None = None
        if self.config.register_teardown:
            self._bridge = bridge or TeardownBridge()
            self._bridge.add_hook(self.queue.drain)
            self._bridge.install()

    @property
    def host_profile(self) -> HostProfile:
        return self.queue.get_host_profile()

    def get_trace_id(self) -> str:
        return self._trace_id

    def set_trace_id(self, trace_id: str | None = None) -> str:
        """Use ``trace_id`` (or a fresh one) for subsequent entries."""
        self._trace_id = ensure_trace_id(trace_id)
        return self._trace_id

    def set_context(self, context: dict[str, Any]):
        """Merge ``context`` into the context sent with every entry."""
        self._context = {**self._context, **context}

    def get_context(self) -> dict[str, Any]:
        return dict(self._context)

    def _build_entry(
        self,
        level: LogLevel,
        message: str,
        metadata: Any = None,
        trace_id: str | None = None,
    ) -> LogEntry:
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {level!r}, expected one of {LOG_LEVELS}")

        tree: dict[str, Any] = {
            "context": serialize(self._context, self._options),
            "sdk": {"version": SDK_VERSION, "environment": self._environment},
        }
        if metadata is not None:
            tree["log_metadata"] = serialize(metadata, self._options)

        return LogEntry(
            level=level,
            message=str(message),
            timestamp=datetime.now(UTC).isoformat(),
            source=SOURCE,
            trace_id=ensure_trace_id(trace_id or self._trace_id),
            metadata=tree,
        )

    def log(
        self,
        level: LogLevel,
        message: str,
        metadata: Any = None,
        trace_id: str | None = None,
    ):
        """Queue an entry; delivery happens in the background."""
        self.queue.add(self._build_entry(level, message, metadata, trace_id))

    async def log_and_wait(
        self,
        level: LogLevel,
        message: str,
        metadata: Any = None,
        trace_id: str | None = None,
    ):
        """
        Queue an entry and wait until it has been sent.

        Raises:
            DeliveryError: delivery failed
        """
        await self.queue.add_and_wait(self._build_entry(level, message, metadata, trace_id))

    def debug(self, message: str, metadata: Any = None, trace_id: str | None = None):
        self.log("debug", message, metadata, trace_id)

    def info(self, message: str, metadata: Any = None, trace_id: str | None = None):
        self.log("info", message, metadata, trace_id)

    def warn(self, message: str, metadata: Any = None, trace_id: str | None = None):
        self.log("warn", message, metadata, trace_id)

    warning = warn

    def error(self, message: str, metadata: Any = None, trace_id: str | None = None):
        self.log("error", message, metadata, trace_id)

    async def flush(self):
        await self.queue.flush()

    def get_pending_count(self) -> int:
        return self.queue.get_pending_count()

    def get_stats(self) -> dict:
        """Queue and transport statistics."""
        return {**self.queue.get_stats(), "transport": self.transport.get_stats()}

    def shutdown(self):
        """Synchronous shutdown: unhook teardown and drain the queue now."""
        if self._bridge is not None:
            self._bridge.remove_hook(self.queue.drain)
            self._bridge.uninstall()
        self.queue.drain()

    async def destroy(self):
        """Stop background work, flush what is left and close the HTTP client."""
        if self._bridge is not None:
            self._bridge.remove_hook(self.queue.drain)
            self._bridge.uninstall()
        await self.queue.destroy()
        await self.transport.aclose()


def _level_for(levelno: int) -> LogLevel:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
        "asctime",
    )
)


# Loggers written to while a batch is being delivered. Shipping their
# records would trigger another delivery, and so on.
_INTERNAL_LOGGERS = ("applogs", "httpx", "httpcore")


def _is_internal(name: str) -> bool:
    return any(name == prefix or name.startswith(f"{prefix}.") for prefix in _INTERNAL_LOGGERS)


class AppLogsHandler(logging.Handler):
    """
    Python logging handler that ships records through an AppLogs client.

    ``extra`` attributes and exceptions pass through the serializer, so any
    value can be attached. Records from the ``applogs`` logger hierarchy and
    from the HTTP stack it sends with (``httpx``, ``httpcore``) are skipped.
    """

    def __init__(self, client: AppLogs, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self.client = client

    def emit(self, record: logging.LogRecord):
        if _is_internal(record.name):
            return
        try:
            metadata = {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}
            trace_id = metadata.pop("trace_id", None)
            metadata["logger"] = record.name
            if record.exc_info and record.exc_info[1] is not None:
                metadata["exception"] = record.exc_info[1]

            self.client.log(
                _level_for(record.levelno),
                record.getMessage(),
                metadata,
                trace_id if isinstance(trace_id, str) else None,
            )
        except Exception:
            self.handleError(record)


def setup_logging(
    min_level: int = logging.INFO,
    also_console: bool = True,
    **config_kwargs,
) -> AppLogs:
    """
    Set up Python logging to ship records through AppLogs.

    Call once at startup; existing logging calls are shipped from then on.

    Args:
        min_level: Minimum log level to ship
        also_console: Also log to the console
        **config_kwargs: AppLogsConfig fields (api_key, endpoint, ...)

    Returns:
        The AppLogs client (for stats and shutdown)

    Example:
        logs = setup_logging(api_key=os.environ["APPLOGS_API_KEY"], endpoint=url)
        logging.getLogger(__name__).error("Payment failed", extra={"order_id": "o1"})
    """
    client = AppLogs(**config_kwargs)

    handler = AppLogsHandler(client, min_level=min_level)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    if also_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(console_handler)

    if root_logger.level == logging.NOTSET or root_logger.level > min_level:
        root_logger.setLevel(min_level)

    return client


def from_env(**overrides) -> AppLogs:
    """
    Create a client from APPLOGS_* environment variables.

    See AppLogsConfig.from_env for the variables read.
    """
    return AppLogs(AppLogsConfig.from_env(**overrides))
