"""Fan-out of notifications to every configured delivery channel.

The ``DeliveryCoordinator`` owns the delivery channels. It brings them
up and down, keeps a health flag per channel, and makes exactly one
delivery attempt per channel for each notification.

Isolation:
    Each channel has its own fixed-size worker pool
    (``ThreadPoolExecutor``) and its own bounded backlog. A slow or
    stuck channel fills its own backlog and times out its own
    attempts. It never delays the attempts made on the other channels.
    Every failure (exception, ``False`` return, timeout, full backlog,
    shutdown) becomes a failed :class:`~core.notifications.DeliveryOutcome`
    and is recorded in the metrics registry as a
    :class:`~core.errors.DeliveryError`. Nothing raised by a channel
    escapes :meth:`DeliveryCoordinator.send`.

No retry:
    The coordinator never retries. A notification lost to a transient
    channel failure stays lost. Channels that want retry/backoff must
    do it inside their own ``send``.

Timeouts and shutdown:
    ``send`` waits at most ``attempt_timeout_seconds`` for the slowest
    channel. ``shutdown`` sets a closing flag that makes any in-flight
    ``send`` give up on its pending attempts within
    ``_WAIT_SLICE_SECONDS``, so stopping the platform never blocks on a
    stuck channel.

Health policy:
    Strict. :meth:`DeliveryCoordinator.is_healthy` is ``True`` only when
    the coordinator is initialized and every channel currently reports
    healthy through its own ``is_healthy``. A failed attempt also marks
    its channel unhealthy until a later success or a passing
    :meth:`probe_health`.
"""

import concurrent.futures
import logging
import threading
import time
from typing import Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.errors import DeliveryError
from core.metrics import MetricsRegistry
from core.notifications import DeliveryOutcome, Notification

_WAIT_SLICE_SECONDS: float = 0.05
"""Granularity at which a waiting ``send`` notices shutdown."""


class DeliveryChannel(Protocol):
    """A transport that delivers notifications to one destination.

    ``send`` signals failure by raising or by returning ``False``; any
    other return value is a success. ``send`` may be called from
    several worker threads of the channel's pool at once.
    """

    name: str

    def initialize(self) -> None:
        ...

    def shutdown(self) -> None:
        ...

    def send(self, notification: Notification) -> bool | None:
        ...

    def is_healthy(self) -> bool:
        ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DeliveryConfig(BaseModel):
    """Configuration for :class:`DeliveryCoordinator`.

    Attributes:
        attempt_timeout_seconds: Upper bound on one ``send`` call.
            Attempts still running after this are reported as failed.
        workers_per_channel: Threads in each channel's worker pool.
        max_pending_per_channel: Attempts a channel may have queued or
            running before new attempts are rejected as failed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    attempt_timeout_seconds: float = Field(default=10.0, gt=0.0)
    workers_per_channel: int = Field(default=2, ge=1, le=64)
    max_pending_per_channel: int = Field(default=1000, ge=1)


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class DeliveryCoordinator:
    """Delivers each notification to every channel, isolating failures.

    Args:
        channels: Channels to deliver to. Names must be unique.
        metrics: Registry receiving per-channel successes and failures.
        config: Delivery configuration. Defaults to ``DeliveryConfig()``.
        logger: Logger for lifecycle and failure messages. Defaults to
            the module logger.

    Raises:
        ValueError: If two channels share a name.

    Example:
        >>> coordinator = DeliveryCoordinator([LoggingChannel()], metrics)
        >>> coordinator.initialize()
        >>> [o.success for o in coordinator.send(notification)]
        [True]
        >>> coordinator.shutdown()
    """

    def __init__(
        self,
        channels: Sequence[DeliveryChannel],
        metrics: MetricsRegistry,
        config: DeliveryConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        names: list[str] = [channel.name for channel in channels]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate delivery channel names: {names}")

        self._channels: tuple[DeliveryChannel, ...] = tuple(channels)
        self._metrics: MetricsRegistry = metrics
        self._config: DeliveryConfig = config or DeliveryConfig()
        self._logger: logging.Logger = logger or logging.getLogger(__name__)

        # Lifecycle (initialize/shutdown are serialized)
        self._lifecycle_lock: threading.Lock = threading.Lock()
        self._initialized: bool = False
        self._closing: threading.Event = threading.Event()
        self._executors: dict[str, concurrent.futures.ThreadPoolExecutor] = {}
        self._backlogs: dict[str, threading.BoundedSemaphore] = {}

        # Channel health (written by every send, guarded)
        self._health_lock: threading.Lock = threading.Lock()
        self._health: dict[str, bool] = {name: False for name in names}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        """Whether :meth:`initialize` completed and no shutdown followed."""
        return self._initialized

    @property
    def channel_names(self) -> list[str]:
        """Configured channel names, in delivery order."""
        return [channel.name for channel in self._channels]

    def initialize(self) -> None:
        """Bring up every channel and its worker pool.

        Fails fast: if any channel raises, the channels already brought
        up are shut down again and the exception propagates. Calling
        ``initialize`` on an initialized coordinator is a no-op.
        """
        with self._lifecycle_lock:
            if self._initialized:
                self._logger.debug("DeliveryCoordinator already initialized")
                return

            started: list[DeliveryChannel] = []
            for channel in self._channels:
                try:
                    channel.initialize()
                except Exception:
                    self._logger.exception(
                        "Delivery channel %s failed to initialize",
                        channel.name,
                    )
                    for done in reversed(started):
                        self._shutdown_channel(done)
                    raise
                started.append(channel)

            self._closing.clear()
            for channel in self._channels:
                self._executors[channel.name] = concurrent.futures.ThreadPoolExecutor(
                    max_workers=self._config.workers_per_channel,
                    thread_name_prefix=f"channel-{channel.name}",
                )
                self._backlogs[channel.name] = threading.BoundedSemaphore(
                    self._config.max_pending_per_channel,
                )
            reported: dict[str, bool] = {
                channel.name: self._report(channel) for channel in self._channels
            }
            with self._health_lock:
                self._health.update(reported)
            self._initialized = True

        self._logger.info(
            "DeliveryCoordinator initialized with channels: %s",
            ", ".join(self.channel_names) or "(none)",
        )

    def shutdown(self) -> None:
        """Cancel pending attempts and shut every channel down.

        Idempotent: a no-op when not initialized. Does not wait for
        attempts already running inside a channel.
        """
        with self._lifecycle_lock:
            if not self._initialized:
                return
            self._initialized = False
            self._closing.set()

            for executor in self._executors.values():
                executor.shutdown(wait=False, cancel_futures=True)
            self._executors.clear()
            self._backlogs.clear()

            for channel in reversed(self._channels):
                self._shutdown_channel(channel)
            with self._health_lock:
                for name in self._health:
                    self._health[name] = False

        self._logger.info("DeliveryCoordinator shut down")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def send(self, notification: Notification) -> list[DeliveryOutcome]:
        """Attempt delivery of ``notification`` once on every channel.

        Args:
            notification: The notification to deliver.

        Returns:
            One outcome per channel, in channel configuration order.

        Raises:
            RuntimeError: If the coordinator is not initialized.
        """
        with self._lifecycle_lock:
            if not self._initialized:
                raise RuntimeError("DeliveryCoordinator is not initialized")
            executors = dict(self._executors)
            backlogs = dict(self._backlogs)

        timeout: float = self._config.attempt_timeout_seconds
        results: dict[str, tuple[bool, str | None, float]] = {}
        futures: dict[concurrent.futures.Future, str] = {}

        for channel in self._channels:
            backlog: threading.BoundedSemaphore = backlogs[channel.name]
            if not backlog.acquire(blocking=False):
                results[channel.name] = (False, "channel backlog full", 0.0)
                continue
            try:
                future: concurrent.futures.Future = executors[channel.name].submit(
                    _attempt,
                    channel,
                    notification,
                )
            except RuntimeError as exc:
                backlog.release()
                results[channel.name] = (False, f"channel closed: {exc}", 0.0)
                continue
            future.add_done_callback(lambda _f, b=backlog: b.release())
            futures[future] = channel.name

        pending: set[concurrent.futures.Future] = self._wait(set(futures), timeout)

        for future, name in futures.items():
            if future in pending or future.cancelled():
                future.cancel()
                reason: str = (
                    "cancelled by shutdown"
                    if self._closing.is_set()
                    else f"timed out after {timeout:g}s"
                )
                results[name] = (False, reason, timeout * 1000.0)
            else:
                results[name] = future.result()

        outcomes: list[DeliveryOutcome] = []
        for channel in self._channels:
            success, failure_reason, elapsed_ms = results[channel.name]
            outcome: DeliveryOutcome = DeliveryOutcome(
                notification_id=notification.notification_id,
                channel=channel.name,
                success=success,
                reason=failure_reason,
                elapsed_ms=elapsed_ms,
            )
            self._record(notification, outcome)
            outcomes.append(outcome)
        return outcomes

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        """``True`` iff initialized and every channel is healthy now."""
        if not self._initialized:
            return False
        return all(self.channel_health().values())

    def channel_health(self) -> dict[str, bool]:
        """Per-channel health, asking every channel for its current state.

        A channel is healthy when it reports healthy and its most recent
        attempt did not fail.
        """
        reported: dict[str, bool] = {
            channel.name: self._report(channel) for channel in self._channels
        }
        with self._health_lock:
            return {
                name: self._health[name] and ok for name, ok in reported.items()
            }

    def probe_health(self) -> dict[str, bool]:
        """Reset the per-channel flags to what every channel reports.

        Clears a failure left by an earlier attempt once the channel
        reports healthy again.

        Returns:
            The updated per-channel health flags.
        """
        probed: dict[str, bool] = {
            channel.name: self._report(channel) for channel in self._channels
        }
        with self._health_lock:
            self._health.update(probed)
            return dict(self._health)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _wait(
        self,
        futures: set[concurrent.futures.Future],
        timeout: float,
    ) -> set[concurrent.futures.Future]:
        """Wait for ``futures`` until done, timeout, or shutdown.

        Returns:
            The futures still pending.
        """
        deadline: float = time.monotonic() + timeout
        pending: set[concurrent.futures.Future] = futures
        while pending and not self._closing.is_set():
            remaining: float = deadline - time.monotonic()
            if remaining <= 0:
                break
            _, pending = concurrent.futures.wait(
                pending,
                timeout=min(remaining, _WAIT_SLICE_SECONDS),
            )
        return pending

    def _record(self, notification: Notification, outcome: DeliveryOutcome) -> None:
        with self._health_lock:
            self._health[outcome.channel] = outcome.success

        if outcome.success:
            self._metrics.record_notification(notification, channel=outcome.channel)
            return

        self._metrics.record_error(
            DeliveryError(
                channel=outcome.channel,
                notification_id=notification.notification_id,
                reason=outcome.reason or "unknown",
            )
        )
        self._logger.warning(
            "Delivery failed on %s for %s (%s %s): %s",
            outcome.channel,
            notification.notification_id,
            notification.category.value,
            notification.asset,
            outcome.reason,
        )

    def _report(self, channel: DeliveryChannel) -> bool:
        """Channel's own health report; a raising check counts as unhealthy."""
        try:
            return bool(channel.is_healthy())
        except Exception:
            self._logger.exception("Health check failed for %s", channel.name)
            return False

    def _shutdown_channel(self, channel: DeliveryChannel) -> None:
        try:
            channel.shutdown()
        except Exception:
            self._logger.exception("Delivery channel %s failed to shut down", channel.name)


def _attempt(
    channel: DeliveryChannel,
    notification: Notification,
) -> tuple[bool, str | None, float]:
    """Run one ``channel.send`` in a worker thread.

    Returns:
        ``(success, reason, elapsed_ms)``.
    """
    started: float = time.perf_counter()
    try:
        result: bool | None = channel.send(notification)
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}", _elapsed_ms(started)
    if result is False:
        return False, "channel rejected notification", _elapsed_ms(started)
    return True, None, _elapsed_ms(started)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0
