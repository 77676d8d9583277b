"""Process-wide notification and error counters.

:class:`MetricsRegistry` is the only state shared by every pipeline
worker and every channel worker, so all writes go through a single
lock. Counters only ever increase within a process lifetime; there is
no reset.

Snapshots:
    :meth:`MetricsRegistry.snapshot` copies every counter under the
    lock into a frozen :class:`MetricsSnapshot`. The snapshot is
    internally consistent and safe to read while increments continue.

Background flush:
    :meth:`MetricsRegistry.start` launches a daemon thread that logs a
    one-line summary every ``flush_interval_seconds``. ``start()`` and
    ``stop()`` are idempotent.

Example:
    >>> registry = MetricsRegistry()
    >>> registry.record_notification(notification, channel="log")
    >>> registry.snapshot().notifications_sent
    1
"""

import logging
import threading
import time
from collections import Counter

from pydantic import BaseModel, ConfigDict, Field

from core.errors import DeliveryError
from core.notifications import Notification


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Configuration for :class:`MetricsRegistry`.

    Attributes:
        flush_interval_seconds: Interval between periodic summary log
            lines. ``0`` disables the background thread.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    flush_interval_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Summary log interval in seconds. 0 disables.",
    )


# ---------------------------------------------------------------------------
# Snapshot Model
# ---------------------------------------------------------------------------


class MetricsSnapshot(BaseModel):
    """Immutable copy of registry counters.

    Attributes:
        notifications_sent: Successful channel deliveries.
        notifications_failed: Failed channel deliveries.
        errors: All recorded errors, delivery failures included.
        sent_by_category: Successful deliveries per event category.
        sent_by_channel: Successful deliveries per channel.
        failed_by_channel: Failed deliveries per channel.
        errors_by_kind: Errors keyed by ``PipelineError.kind`` (or the
            exception class name for foreign errors).
        uptime_seconds: Seconds since the last ``start()``; 0 if the
            registry never started.
        running: Whether the registry is started.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    notifications_sent: int = Field(ge=0)
    notifications_failed: int = Field(ge=0)
    errors: int = Field(ge=0)
    sent_by_category: dict[str, int] = Field(default_factory=dict)
    sent_by_channel: dict[str, int] = Field(default_factory=dict)
    failed_by_channel: dict[str, int] = Field(default_factory=dict)
    errors_by_kind: dict[str, int] = Field(default_factory=dict)
    uptime_seconds: float = Field(default=0.0, ge=0.0)
    running: bool = False


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class MetricsRegistry:
    """Thread-safe counters for notifications sent and failed.

    Args:
        config: Registry configuration. Defaults to ``MetricsConfig()``.
        logger: Logger for the periodic summary. Defaults to the module
            logger.
    """

    def __init__(
        self,
        config: MetricsConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config: MetricsConfig = config or MetricsConfig()
        self._logger: logging.Logger = logger or logging.getLogger(__name__)
        self._lock: threading.Lock = threading.Lock()

        self._sent: int = 0
        self._failed: int = 0
        self._errors: int = 0
        self._sent_by_category: Counter[str] = Counter()
        self._sent_by_channel: Counter[str] = Counter()
        self._failed_by_channel: Counter[str] = Counter()
        self._errors_by_kind: Counter[str] = Counter()

        self._running: bool = False
        self._started_mono: float | None = None
        self._stop_event: threading.Event = threading.Event()
        self._flush_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_notification(
        self,
        notification: Notification,
        channel: str | None = None,
    ) -> None:
        """Count one successful delivery of ``notification``.

        Args:
            notification: The delivered notification.
            channel: Channel that accepted it, if known.
        """
        with self._lock:
            self._sent += 1
            self._sent_by_category[notification.category.value] += 1
            if channel is not None:
                self._sent_by_channel[channel] += 1

    def record_error(self, error: BaseException) -> None:
        """Count one error.

        A :class:`~core.errors.DeliveryError` also counts as a failed
        notification on its channel.

        Args:
            error: The error to record.
        """
        kind: str = getattr(error, "kind", type(error).__name__)
        with self._lock:
            self._errors += 1
            self._errors_by_kind[kind] += 1
            if isinstance(error, DeliveryError):
                self._failed += 1
                self._failed_by_channel[error.channel] += 1

    def snapshot(self) -> MetricsSnapshot:
        """Return a consistent copy of all counters.

        Returns:
            Frozen :class:`MetricsSnapshot`.
        """
        with self._lock:
            uptime: float = (
                time.monotonic() - self._started_mono
                if self._started_mono is not None
                else 0.0
            )
            return MetricsSnapshot(
                notifications_sent=self._sent,
                notifications_failed=self._failed,
                errors=self._errors,
                sent_by_category=dict(self._sent_by_category),
                sent_by_channel=dict(self._sent_by_channel),
                failed_by_channel=dict(self._failed_by_channel),
                errors_by_kind=dict(self._errors_by_kind),
                uptime_seconds=uptime,
                running=self._running,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        """Whether :meth:`start` has been called without :meth:`stop`."""
        with self._lock:
            return self._running

    def start(self) -> None:
        """Start the periodic summary thread. Idempotent."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._started_mono = time.monotonic()
            self._stop_event.clear()

        if self._config.flush_interval_seconds > 0:
            self._flush_thread = threading.Thread(
                target=self._flush_loop,
                daemon=True,
                name="metrics-flush",
            )
            self._flush_thread.start()
        self._logger.info("Metrics registry started")

    def stop(self) -> None:
        """Stop the summary thread and log a final summary. Idempotent."""
        with self._lock:
            if not self._running:
                return
            self._running = False

        self._stop_event.set()
        thread: threading.Thread | None = self._flush_thread
        self._flush_thread = None
        if thread is not None:
            thread.join(timeout=1.0)
        self._log_summary()
        self._logger.info("Metrics registry stopped")

    def _flush_loop(self) -> None:
        """Log a summary every interval until :meth:`stop`."""
        interval: float = self._config.flush_interval_seconds
        while not self._stop_event.wait(timeout=interval):
            self._log_summary()

    def _log_summary(self) -> None:
        snap: MetricsSnapshot = self.snapshot()
        self._logger.info(
            "Metrics: sent=%d failed=%d errors=%d by_kind=%s",
            snap.notifications_sent,
            snap.notifications_failed,
            snap.errors,
            snap.errors_by_kind,
        )
