"""
Teardown bridge.

Connects process termination notifications (interpreter exit, SIGTERM,
SIGHUP) to an ordered list of best-effort hooks, typically
``LogQueue.drain``. Each notification runs every hook once; hook failures
are absorbed so shutdown is never disturbed by log shipping.
"""

import atexit
import logging
import os
import signal
import threading
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = tuple(
    sig for sig in (getattr(signal, "SIGTERM", None), getattr(signal, "SIGHUP", None)) if sig is not None
)


class TeardownBridge:
    """
    Runs teardown hooks when the process is about to end.

    Signal handlers can only be installed from the main thread; elsewhere
    only the ``atexit`` hook is registered. Handlers that were installed
    before ours are called after the hooks run, and a default disposition is
    re-delivered so the process still terminates.
    """

    def __init__(self, signals: Iterable[int] = DEFAULT_SIGNALS):
        self._signals = tuple(signals)
        self._hooks: list[Callable[[], None]] = []
        self._previous_handlers: dict[int, object] = {}
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def add_hook(self, hook: Callable[[], None]):
        self._hooks.append(hook)

    def remove_hook(self, hook: Callable[[], None]):
        if hook in self._hooks:
            self._hooks.remove(hook)

    def fire(self, reason: str = "manual"):
        """Run every hook once, in registration order. Never raises."""
        logger.debug(f"Teardown triggered ({reason}), running {len(self._hooks)} hooks")
        for hook in list(self._hooks):
            try:
                hook()
            except Exception as e:
                logger.debug(f"Teardown hook {hook!r} failed: {e}")

    def install(self):
        if self._installed:
            return
        atexit.register(self._on_exit)

        if threading.current_thread() is threading.main_thread():
            for signum in self._signals:
                try:
                    self._previous_handlers[signum] = signal.getsignal(signum)
                    signal.signal(signum, self._on_signal)
                except (OSError, ValueError) as e:
                    logger.debug(f"Could not hook signal {signum}: {e}")
        else:
            logger.debug("Not on the main thread, teardown bridge relies on atexit only")

        self._installed = True

    def uninstall(self):
        if not self._installed:
            return
        atexit.unregister(self._on_exit)
        for signum, previous in self._previous_handlers.items():
            try:
                if signal.getsignal(signum) != self._on_signal:
                    continue  # Replaced since install, leave the newer handler alone
                signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
            except (OSError, ValueError) as e:
                logger.debug(f"Could not restore handler for signal {signum}: {e}")
        self._previous_handlers.clear()
        self._installed = False

    def _on_exit(self):
        self.fire("exit")

    def _on_signal(self, signum, frame):
        self.fire(f"signal {signum}")

        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_IGN:
            return
        else:
            # Default disposition: terminate the way the signal would have
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)
