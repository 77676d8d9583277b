"""Bounded event queue between feed ingestion and pipeline workers.

This module provides the ``Dispatcher``: a bounded FIFO backed by
``collections.deque(maxlen)`` and guarded by a ``threading.Condition``.
The feed IO thread pushes events without ever blocking; pipeline
workers block in :meth:`Dispatcher.get` or drain in batches with
:meth:`Dispatcher.poll`. A slow delivery channel therefore stalls the
workers, never the feed.

Thread model:
    Multi-producer, multi-consumer. Every queue mutation and counter
    update happens under ``_cond``. The critical sections are a handful
    of deque operations, so feed threads hold the lock for well under a
    microsecond.

Backpressure policy:
    Drop-oldest. When the queue is full, ``deque.append()`` evicts the
    oldest event. A stale market event is worth less than a fresh one.
    Drops are counted via a pre-append length check and tracked as an
    EMA drop rate that logs a warning when it crosses a threshold.

Invariant:
    Under quiescent conditions,
    ``total_pushed - total_dropped - total_polled == queue_len``.

Example:
    >>> from core.dispatcher import Dispatcher, DispatcherConfig
    >>> dispatcher = Dispatcher(config=DispatcherConfig(maxlen=1000))
    >>> dispatcher.push("event_1")
    >>> dispatcher.push("event_2")
    >>> dispatcher.poll(max_events=10)
    ['event_1', 'event_2']
    >>> dispatcher.stats().total_polled
    2
"""

import collections
import logging
import threading
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")
"""Type of the events held by a dispatcher."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DispatcherConfig(BaseModel):
    """Configuration for :class:`Dispatcher`.

    Attributes:
        maxlen: Maximum number of queued events. When full, ``push()``
            evicts the oldest event. Must be greater than zero.
        ema_alpha: Smoothing factor for the drop-rate EMA. Smaller
            values give a smoother, slower signal.
        drop_warning_threshold: Drop-rate EMA above which ``push()``
            logs a warning (once per excursion).

    Example:
        >>> DispatcherConfig(maxlen=50_000).maxlen
        50000
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    maxlen: int = Field(
        default=10_000,
        gt=0,
        description="Maximum queue length. Oldest events are dropped when exceeded.",
    )
    ema_alpha: float = Field(
        default=0.01,
        gt=0.0,
        le=1.0,
        description="EMA smoothing factor for drop rate (~100-event half-life).",
    )
    drop_warning_threshold: float = Field(
        default=0.01,
        gt=0.0,
        le=1.0,
        description="Drop rate EMA threshold for warning log (1%).",
    )


# ---------------------------------------------------------------------------
# Stats / Health Models
# ---------------------------------------------------------------------------


class DispatcherStats(BaseModel):
    """Immutable snapshot of dispatcher counters.

    Attributes:
        total_pushed: Events pushed, including those that caused a drop.
        total_polled: Events handed to consumers.
        total_dropped: Events evicted by overflow.
        queue_len: Events currently queued.
        maxlen: Configured capacity.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    total_pushed: int = Field(ge=0)
    total_polled: int = Field(ge=0)
    total_dropped: int = Field(ge=0)
    queue_len: int = Field(ge=0)
    maxlen: int = Field(gt=0)


class DispatcherHealth(BaseModel):
    """Immutable snapshot of dispatcher health.

    Attributes:
        drop_rate_ema: Smoothed drop rate. 0.0 = no drops.
        queue_utilization: ``queue_len / maxlen``.
        total_dropped: Cumulative drops since last ``clear()``.
        total_pushed: Cumulative pushes since last ``clear()``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    drop_rate_ema: float = Field(ge=0.0)
    queue_utilization: float = Field(ge=0.0, le=1.0)
    total_dropped: int = Field(ge=0)
    total_pushed: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class Dispatcher(Generic[T]):
    """Bounded, thread-safe, drop-oldest event queue.

    Args:
        config: Dispatcher configuration. Defaults to
            ``DispatcherConfig()``.
        logger: Logger for drop-rate warnings. Defaults to the module
            logger.
    """

    def __init__(
        self,
        config: DispatcherConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config: DispatcherConfig = config or DispatcherConfig()
        self._logger: logging.Logger = logger or logging.getLogger(__name__)
        self._maxlen: int = self._config.maxlen
        self._queue: collections.deque[T] = collections.deque(maxlen=self._maxlen)
        self._cond: threading.Condition = threading.Condition()

        self._total_pushed: int = 0
        self._total_polled: int = 0
        self._total_dropped: int = 0

        self._drop_rate_ema: float = 0.0
        self._warned_drop_rate: bool = False

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    def push(self, event: T) -> None:
        """Append an event, evicting the oldest one if full. Never blocks
        beyond the internal lock.

        Args:
            event: The event to enqueue.
        """
        with self._cond:
            dropped: float = 0.0
            if len(self._queue) == self._maxlen:
                self._total_dropped += 1
                dropped = 1.0
            self._queue.append(event)
            self._total_pushed += 1

            alpha: float = self._config.ema_alpha
            self._drop_rate_ema = alpha * dropped + (1.0 - alpha) * self._drop_rate_ema
            ema: float = self._drop_rate_ema
            warn: bool = False
            recovered: bool = False
            if ema > self._config.drop_warning_threshold:
                if not self._warned_drop_rate:
                    self._warned_drop_rate = True
                    warn = True
            elif self._warned_drop_rate:
                self._warned_drop_rate = False
                recovered = True

            self._cond.notify()

        if warn:
            self._logger.warning(
                "Drop rate EMA %.4f exceeds threshold %.4f",
                ema,
                self._config.drop_warning_threshold,
            )
        elif recovered:
            self._logger.info(
                "Drop rate EMA %.4f recovered below threshold %.4f",
                ema,
                self._config.drop_warning_threshold,
            )

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def get(self, timeout: float | None = None) -> T | None:
        """Remove and return the oldest event, waiting up to ``timeout``.

        Args:
            timeout: Seconds to wait for an event. ``None`` waits
                until one arrives.

        Returns:
            The oldest event, or ``None`` if the wait timed out.
        """
        with self._cond:
            if not self._queue:
                self._cond.wait(timeout=timeout)
            if not self._queue:
                return None
            self._total_polled += 1
            return self._queue.popleft()

    def poll(self, max_events: int = 100) -> list[T]:
        """Remove up to ``max_events`` events without waiting.

        Args:
            max_events: Batch size. Must be greater than zero.

        Returns:
            Events in FIFO order; empty if the queue was empty.

        Raises:
            ValueError: If ``max_events`` is not greater than zero.
        """
        if max_events <= 0:
            raise ValueError(f"max_events must be > 0, got {max_events}")

        events: list[T] = []
        with self._cond:
            for _ in range(max_events):
                if not self._queue:
                    break
                events.append(self._queue.popleft())
            self._total_polled += len(events)
        return events

    def wake_all(self) -> None:
        """Wake every consumer blocked in :meth:`get`."""
        with self._cond:
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Queue Management
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Discard queued events and reset all counters."""
        with self._cond:
            remaining: int = len(self._queue)
            self._queue.clear()
            self._total_pushed = 0
            self._total_polled = 0
            self._total_dropped = 0
            self._drop_rate_ema = 0.0
            self._warned_drop_rate = False
        if remaining > 0:
            self._logger.warning("Dispatcher discarded %d queued events", remaining)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> DispatcherStats:
        """Return a consistent snapshot of dispatcher counters."""
        with self._cond:
            return DispatcherStats(
                total_pushed=self._total_pushed,
                total_polled=self._total_polled,
                total_dropped=self._total_dropped,
                queue_len=len(self._queue),
                maxlen=self._maxlen,
            )

    def health(self) -> DispatcherHealth:
        """Return drop-rate EMA and queue utilization."""
        with self._cond:
            return DispatcherHealth(
                drop_rate_ema=self._drop_rate_ema,
                queue_utilization=len(self._queue) / self._maxlen,
                total_dropped=self._total_dropped,
                total_pushed=self._total_pushed,
            )

    def _invariant_ok(self) -> bool:
        """``total_pushed - total_dropped - total_polled == queue_len``."""
        with self._cond:
            return (
                self._total_pushed - self._total_dropped - self._total_polled
                == len(self._queue)
            )
