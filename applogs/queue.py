"""
Delivery queue for applogs.

Buffers serialized log entries and decides when and how they leave the
process:

    IDLE      buffer may hold entries, no flush running
    FLUSHING  exactly one batch is with the sender
    DRAINING  the process is going away, the buffer is pushed out synchronously

Everything runs on one event loop. The in-flight flag is checked and set
before the first await of a flush, so at most one flush is ever in progress,
and the buffer is only mutated synchronously (append or detach-all).

Persistent hosts flush when ``batch_size`` entries are buffered and on a
timer. Ephemeral hosts (serverless functions) flush on every entry and get
no timer, since the process may be frozen as soon as the invocation returns.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Sequence
from typing import Protocol

from .environment import classify_host
from .errors import DeliveryError, TeardownError
from .types import BeaconSender, ErrorCallback, HostProfile, LogEntry, QueueState, encode_batch

logger = logging.getLogger(__name__)


class Sender(Protocol):
    """What the queue needs from a transport.

    Transports may additionally provide ``send_blocking(entries)`` and
    ``cached_endpoint()``; the draining path uses them when present.
    """

    async def send(self, entries: Sequence[LogEntry]) -> None: ...


class LogQueue:
    """
    Batching delivery queue with a reliability-tiered flush protocol.

    Failed batches are reported through ``on_error``. On a persistent host
    the first ``requeue_limit`` entries of a failed batch go back to the
    front of the buffer; on an ephemeral host nothing is requeued.
    """

    def __init__(
        self,
        sender: Sender,
        *,
        batch_size: int = 5,
        flush_interval: float = 5.0,
        host_profile: HostProfile | None = None,
        on_error: ErrorCallback | None = None,
        requeue_limit: int = 3,
        drain_retries: int = 3,
        drain_retry_delay: float = 0.1,
        beacon: BeaconSender | None = None,
    ):
        """
        Args:
            sender: Transport that delivers batches
            batch_size: Buffered entries that trigger a flush (persistent hosts)
            flush_interval: Seconds between timer flushes (persistent hosts)
            host_profile: Override host classification
            on_error: Called as on_error(error, failed_batch) per failed delivery
            requeue_limit: Entries of a failed batch kept for retry
            drain_retries: Flush attempts made by flush_and_wait_until_drained
            drain_retry_delay: Pause between those attempts, in seconds
            beacon: Fire-and-forget send(url, payload) -> accepted, used at teardown
        """
        self._sender = sender
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.requeue_limit = requeue_limit
        self.drain_retries = drain_retries
        self.drain_retry_delay = drain_retry_delay
        self._on_error = on_error
        self._beacon = beacon
        self._host_profile = host_profile if host_profile is not None else classify_host()

        self._buffer: deque[LogEntry] = deque()
        self._in_flight = False
        self._draining = False
        self._closed = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._timer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        # Entries awaited by add_and_wait, keyed by id(), with their outcome
        self._waiters: dict[int, tuple[LogEntry, asyncio.Future]] = {}

        # Stats
        self._delivered_count = 0
        self._failed_batches = 0
        self._requeued_count = 0
        self._dropped_count = 0

        self._ensure_timer()

    @property
    def threshold(self) -> int:
        """Buffered entries that trigger a flush."""
        if self._host_profile is HostProfile.EPHEMERAL:
            return 1
        return self.batch_size

    @property
    def state(self) -> QueueState:
        if self._draining:
            return QueueState.DRAINING
        if self._in_flight:
            return QueueState.FLUSHING
        return QueueState.IDLE

    def get_pending_count(self) -> int:
        return len(self._buffer)

    def get_host_profile(self) -> HostProfile:
        return self._host_profile

    def add(self, entry: LogEntry):
        """Buffer an entry, starting a background flush at the threshold."""
        self._buffer.append(entry)
        self._ensure_timer()
        if len(self._buffer) >= self.threshold:
            self._schedule_flush()

    async def add_and_wait(self, entry: LogEntry):
        """
        Buffer an entry and flush right away.

        If another flush picks the entry up first, waits for that flush's
        outcome instead.

        Raises:
            DeliveryError: the flush carrying this entry failed
        """
        outcome = asyncio.get_running_loop().create_future()
        self._waiters[id(entry)] = (entry, outcome)
        self._buffer.append(entry)
        self._ensure_timer()
        try:
            while not outcome.done():
                while self._in_flight:
                    await self._idle.wait()
                if outcome.done():
                    break
                if not any(queued is entry for queued in self._buffer):
                    raise DeliveryError("log entry left the queue without a delivery outcome", [entry])
                await self.flush()
            outcome.result()
        finally:
            self._waiters.pop(id(entry), None)
            if outcome.done() and not outcome.cancelled():
                outcome.exception()  # Mark retrieved, the error already reached the caller

    async def flush(self):
        """
        Send everything buffered as one batch.

        No-op while another flush is running or when the buffer is empty.

        Raises:
            DeliveryError: the sender failed (already reported via on_error)
        """
        if self._in_flight or not self._buffer:
            return

        batch = self._detach()
        self._in_flight = True
        self._idle.clear()
        try:
            await self._sender.send(batch)
        except asyncio.CancelledError:
            # Nothing was confirmed, keep the whole batch for the drain path
            self._buffer.extendleft(reversed(batch))
            raise
        except Exception as e:
            error = self._settle_failure(batch, e)
            if error is e:
                raise
            raise error from e
        else:
            self._delivered_count += len(batch)
            self._resolve(batch)
        finally:
            self._in_flight = False
            self._idle.set()

    async def flush_and_wait_until_drained(self):
        """
        Flush until the buffer is empty, at most ``drain_retries`` times.

        Entries still queued afterwards are reported through on_error; this
        never raises.
        """
        for attempt in range(1, self.drain_retries + 1):
            try:
                await self.flush()
            except DeliveryError:
                pass  # Reported through on_error by flush()
            if not self._buffer:
                return
            if attempt < self.drain_retries:
                await asyncio.sleep(self.drain_retry_delay)

        remaining = list(self._buffer)
        self._report(
            DeliveryError(
                f"{len(remaining)} log entries still queued after {self.drain_retries} flush attempts",
                remaining,
            ),
            remaining,
        )

    async def destroy(self):
        """Stop the timer and make one final attempt to drain the buffer."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.flush_and_wait_until_drained()

    def drain(self):
        """
        Synchronous teardown path. Never raises.

        Detaches the whole buffer and tries, in order: the beacon against the
        last resolved endpoint, the sender's blocking send, and finally a
        regular background flush that may not finish before the process dies.
        """
        if self._draining:
            return
        self._draining = True
        try:
            batch = self._detach()
            if not batch:
                return
            logger.debug(f"Draining {len(batch)} log entries")

            for fallback in (self._drain_via_beacon, self._drain_via_blocking_send):
                try:
                    fallback(batch)
                except Exception as e:
                    logger.debug(f"Teardown fallback {fallback.__name__} failed: {e}")
                    continue
                self._delivered_count += len(batch)
                self._resolve(batch)
                return

            self._drain_via_background_flush(batch)
        except Exception as e:
            logger.debug(f"Draining failed: {e}")
        finally:
            self._draining = False

    def _drain_via_beacon(self, batch: list[LogEntry]):
        if self._beacon is None:
            raise TeardownError("no beacon available")
        cached_endpoint = getattr(self._sender, "cached_endpoint", None)
        url = cached_endpoint() if cached_endpoint is not None else None
        if not url:
            raise TeardownError("no resolved endpoint for the beacon")
        if not self._beacon(url, encode_batch(batch)):
            raise TeardownError("beacon refused the payload")

    def _drain_via_blocking_send(self, batch: list[LogEntry]):
        send_blocking = getattr(self._sender, "send_blocking", None)
        if send_blocking is None:
            raise TeardownError("sender has no blocking send")
        send_blocking(batch)

    def _drain_via_background_flush(self, batch: list[LogEntry]):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None or loop.is_closed():
            self._dropped_count += len(batch)
            error = DeliveryError(f"teardown fallbacks exhausted, dropped {len(batch)} log entries", batch)
            self._resolve(batch, error)
            self._report(error, batch)
            return

        self._buffer.extendleft(reversed(batch))
        self._spawn_flush(loop)

    def get_stats(self) -> dict:
        return {
            "state": self.state.value,
            "host_profile": self._host_profile.value,
            "pending_count": len(self._buffer),
            "delivered_count": self._delivered_count,
            "failed_batches": self._failed_batches,
            "requeued_count": self._requeued_count,
            "dropped_count": self._dropped_count,
        }

    def _detach(self) -> list[LogEntry]:
        batch = list(self._buffer)
        self._buffer.clear()
        return batch

    def _settle_failure(self, batch: list[LogEntry], error: Exception) -> DeliveryError:
        """Apply the requeue policy to a failed batch and report it."""
        failure = error if isinstance(error, DeliveryError) else DeliveryError(f"send failed: {error}", batch)
        self._failed_batches += 1

        kept: list[LogEntry] = []
        if self._host_profile is HostProfile.PERSISTENT and self.requeue_limit > 0:
            kept = batch[: self.requeue_limit]
            self._buffer.extendleft(reversed(kept))
            self._requeued_count += len(kept)
        self._dropped_count += len(batch) - len(kept)
        self._resolve(batch[len(kept) :], failure)

        logger.warning(
            f"Failed to deliver {len(batch)} log entries "
            f"({len(kept)} requeued, {len(batch) - len(kept)} dropped): {error}"
        )
        self._report(failure, batch)
        return failure

    def _report(self, error: Exception, batch: list[LogEntry]):
        if self._on_error is None:
            return
        try:
            self._on_error(error, list(batch))
        except Exception as e:
            logger.warning(f"on_error callback raised: {e}")

    def _resolve(self, entries: list[LogEntry], error: Exception | None = None):
        """Settle the add_and_wait callers whose entries just left the queue for good."""
        if not self._waiters:
            return
        for entry in entries:
            waiter = self._waiters.get(id(entry))
            if waiter is None or waiter[0] is not entry or waiter[1].done():
                continue
            if error is None:
                waiter[1].set_result(None)
            else:
                waiter[1].set_exception(error)

    def _ensure_timer(self):
        if self._closed or self._host_profile is HostProfile.EPHEMERAL:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._timer is not None and not self._timer.done() and self._timer.get_loop() is loop:
            return
        self._timer = loop.create_task(self._auto_flush())

    async def _auto_flush(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            if self._buffer and not self._in_flight:
                # Shielded so destroy() cancelling the timer leaves the send alone
                await asyncio.shield(self._spawn_flush(asyncio.get_running_loop()))

    def _schedule_flush(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush_blocking()
            return
        self._spawn_flush(loop)

    def _spawn_flush(self, loop: asyncio.AbstractEventLoop) -> asyncio.Task:
        task = loop.create_task(self._flush_quietly())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _flush_quietly(self):
        try:
            await self.flush()
        except DeliveryError:
            pass  # Reported through on_error by flush()

    def _flush_blocking(self):
        """Threshold flush for callers outside any event loop."""
        send_blocking = getattr(self._sender, "send_blocking", None)
        if send_blocking is None or self._in_flight or not self._buffer:
            return

        batch = self._detach()
        self._in_flight = True
        try:
            send_blocking(batch)
        except Exception as e:
            self._settle_failure(batch, e)
        else:
            self._delivered_count += len(batch)
            self._resolve(batch)
        finally:
            self._in_flight = False
