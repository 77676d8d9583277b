"""Platform controller: lifecycle and per-event pipeline.

``NotificationPlatform`` wires a feed monitor, the event processor, the
delivery coordinator and the metrics registry together, and owns the
``stopped -> starting -> running -> stopping -> stopped`` state machine.

Pipeline:
    The feed delivers a single :data:`~core.events.FeedSignal` stream to
    :meth:`NotificationPlatform._on_signal`. Market events are pushed into
    a bounded :class:`~core.dispatcher.Dispatcher` and nothing else
    happens on the feed thread. A fixed pool of pipeline workers takes
    events from the queue and runs :meth:`NotificationPlatform.handle_event`:
    evaluate, then deliver each notification in emission order. A
    delivery failure of one notification is recorded and the next
    notification is still delivered.

Startup atomicity:
    ``start()`` records an undo action for every completed step. If a
    later step fails, the completed steps are undone in reverse order
    before :class:`~core.errors.StartupError` is raised, and the state
    returns to ``stopped``. A partially running platform is never
    observable.

Thread ownership:
    - ``start()`` / ``stop()`` - any thread; serialized by the state
      machine (a concurrent ``start()`` sees ``starting`` and fails).
    - ``_on_signal()`` - feed IO thread.
    - ``handle_event()`` - pipeline workers (or callers, synchronously).
    - ``is_healthy()`` / ``get_metrics()`` - any thread.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Protocol

from pydantic import BaseModel, ConfigDict, Field

from core.delivery import DeliveryCoordinator
from core.dispatcher import Dispatcher, DispatcherConfig
from core.errors import (
    DeliveryError,
    DoubleStartError,
    FeedConnectionError,
    StartupError,
)
from core.events import (
    MARKET_EVENT_TYPES,
    FeedError,
    FeedReconnected,
    FeedSignal,
    MarketEvent,
)
from core.metrics import MetricsRegistry
from core.notifications import Notification
from core.processor import EventProcessor
from core.rules import RuleEvaluator

SignalHandler = Callable[[FeedSignal], None]
"""Callback receiving every signal emitted by a feed monitor."""

PlatformListener = Callable[[str, object], None]
"""Lifecycle listener: ``(notice, payload) -> None``.

Notices: ``"started"``, ``"stopped"``, ``"error"``, ``"reconnected"``.
"""


# ---------------------------------------------------------------------------
# Collaborator contracts
# ---------------------------------------------------------------------------


class FeedMonitor(Protocol):
    """Owner of the upstream market-data connection.

    ``connect`` may raise :class:`~core.errors.FeedConnectionError`; the
    platform does not retry it. Reconnection after a drop is the feed's
    own business and is announced with a
    :class:`~core.events.FeedReconnected` signal. Events may be missing
    or duplicated across a reconnect.
    """

    def connect(self) -> None:
        ...

    def disconnect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    def subscribe(self, handler: SignalHandler) -> None:
        ...

    def unsubscribe(self, handler: SignalHandler) -> None:
        ...


class ApiSurface(Protocol):
    """Externally exposed surface (e.g., an HTTP server).

    It reads :meth:`NotificationPlatform.get_metrics` and
    :meth:`NotificationPlatform.is_healthy`; its transport is its own.
    """

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


# ---------------------------------------------------------------------------
# State / Configuration
# ---------------------------------------------------------------------------


class PlatformState(str, Enum):
    """Lifecycle states of :class:`NotificationPlatform`."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class PlatformConfig(BaseModel):
    """Configuration for :class:`NotificationPlatform`.

    Attributes:
        pipeline_workers: Threads running evaluate-and-deliver.
        queue: Bounded event queue configuration.
        stop_timeout_seconds: How long ``stop()`` waits for each
            pipeline worker to exit.
        poll_interval_seconds: How long an idle worker waits on the
            queue before re-checking for shutdown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pipeline_workers: int = Field(default=2, ge=1, le=64)
    queue: DispatcherConfig = Field(default_factory=DispatcherConfig)
    stop_timeout_seconds: float = Field(default=5.0, gt=0.0)
    poll_interval_seconds: float = Field(default=0.1, gt=0.0)


# ---------------------------------------------------------------------------
# Platform
# ---------------------------------------------------------------------------


class NotificationPlatform:
    """Composes feed, processor, delivery and metrics into one service.

    Args:
        feed: The feed monitor producing market events.
        evaluator: Rule evaluator consulted for every event.
        delivery: Delivery coordinator owning the channels.
        metrics: Metrics registry shared with ``delivery``.
        api: Optional external API surface, started and stopped with
            the platform.
        config: Platform configuration. Defaults to ``PlatformConfig()``.
        logger: Logger for lifecycle and pipeline messages. Defaults to
            the module logger.

    Example::

        metrics = MetricsRegistry()
        platform = NotificationPlatform(
            feed=MQTTFeedMonitor(MQTTFeedConfig(host="localhost")),
            evaluator=PriceMoveEvaluator(),
            delivery=DeliveryCoordinator([LoggingChannel()], metrics),
            metrics=metrics,
        )
        platform.start()
        ...
        platform.stop()
    """

    def __init__(
        self,
        feed: FeedMonitor,
        evaluator: RuleEvaluator,
        delivery: DeliveryCoordinator,
        metrics: MetricsRegistry,
        api: ApiSurface | None = None,
        config: PlatformConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config: PlatformConfig = config or PlatformConfig()
        self._logger: logging.Logger = logger or logging.getLogger(__name__)
        self._feed: FeedMonitor = feed
        self._delivery: DeliveryCoordinator = delivery
        self._metrics: MetricsRegistry = metrics
        self._api: ApiSurface | None = api
        self._processor: EventProcessor = EventProcessor(
            evaluator=evaluator,
            metrics=metrics,
            logger=self._logger,
        )
        self._queue: Dispatcher[MarketEvent] = Dispatcher(
            config=self._config.queue,
            logger=self._logger,
        )

        # State machine
        self._state: PlatformState = PlatformState.STOPPED
        self._state_lock: threading.Lock = threading.Lock()

        # Pipeline workers
        self._workers: list[threading.Thread] = []
        self._workers_stop: threading.Event = threading.Event()

        # Lifecycle listeners
        self._listeners: list[PlatformListener] = []
        self._listener_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> PlatformState:
        """Current lifecycle state."""
        with self._state_lock:
            return self._state

    @property
    def processor(self) -> EventProcessor:
        """The event processor used by the pipeline."""
        return self._processor

    def add_listener(self, listener: PlatformListener) -> None:
        """Register a lifecycle listener. Listener errors are logged."""
        with self._listener_lock:
            self._listeners.append(listener)

    def start(self) -> None:
        """Start every component and enter ``running``.

        Steps, in order: connect the feed, register the signal handler,
        initialize delivery, start the API surface, start metrics,
        start pipeline workers.

        Raises:
            DoubleStartError: If the platform is not ``stopped``. The
                state is left unchanged.
            StartupError: If any step fails. Completed steps have been
                undone and the state is ``stopped``.
        """
        with self._state_lock:
            if self._state != PlatformState.STOPPED:
                raise DoubleStartError(
                    f"Cannot start: platform is {self._state.value}"
                )
            self._state = PlatformState.STARTING

        self._logger.info("Starting notification platform components...")
        completed: list[tuple[str, Callable[[], None]]] = []
        try:
            self._feed.connect()
            completed.append(("feed connection", self._feed.disconnect))

            self._feed.subscribe(self._on_signal)
            completed.append(
                ("feed subscription", lambda: self._feed.unsubscribe(self._on_signal))
            )

            self._delivery.initialize()
            completed.append(("delivery", self._delivery.shutdown))

            if self._api is not None:
                self._api.start()
                completed.append(("api surface", self._api.stop))

            self._metrics.start()
            completed.append(("metrics", self._metrics.stop))

            self._start_workers()
            completed.append(("pipeline workers", self._stop_workers))
        except Exception as exc:
            self._logger.error(
                "Startup failed (%s); rolling back %d completed step(s)",
                exc,
                len(completed),
            )
            for name, undo in reversed(completed):
                self._run_teardown(name, undo)
            self._queue.clear()
            with self._state_lock:
                self._state = PlatformState.STOPPED
            error: StartupError = StartupError(f"Platform startup failed: {exc}")
            self._notify("error", error)
            raise error from exc

        with self._state_lock:
            self._state = PlatformState.RUNNING
        self._logger.info("All components started successfully")
        self._notify("started", None)

    def stop(self) -> None:
        """Stop every component and return to ``stopped``.

        No-op unless ``running``. Teardown errors are logged and do not
        prevent the remaining components from stopping. Queued events
        that were not yet processed are discarded.
        """
        with self._state_lock:
            if self._state != PlatformState.RUNNING:
                return
            self._state = PlatformState.STOPPING

        self._logger.info("Stopping notification platform...")
        self._run_teardown("feed connection", self._feed.disconnect)
        self._run_teardown(
            "feed subscription",
            lambda: self._feed.unsubscribe(self._on_signal),
        )
        self._workers_stop.set()
        self._queue.wake_all()
        self._run_teardown("delivery", self._delivery.shutdown)
        self._run_teardown("pipeline workers", self._stop_workers)
        if self._api is not None:
            self._run_teardown("api surface", self._api.stop)
        self._run_teardown("metrics", self._metrics.stop)
        self._queue.clear()

        with self._state_lock:
            self._state = PlatformState.STOPPED
        self._logger.info("Platform stopped successfully")
        self._notify("stopped", None)

    def handle_event(self, event: MarketEvent) -> list[Notification]:
        """Run one event through evaluation and delivery.

        Notifications are delivered one after another in the order the
        evaluator emitted them. An exception from the coordinator is
        recorded as a :class:`~core.errors.DeliveryError` and does not
        stop delivery of the following notifications. Notifications
        still undelivered once shutdown begins are not sent; each is
        recorded as a ``DeliveryError`` with reason
        ``"shutdown in progress"``.

        Args:
            event: The market event to handle.

        Returns:
            The notifications produced for ``event``.
        """
        notifications: list[Notification] = self._processor.process(event)
        for index, notification in enumerate(notifications):
            if self._workers_stop.is_set():
                self._logger.warning(
                    "Shutdown in progress, dropping %d undelivered notification(s)",
                    len(notifications) - index,
                )
                for dropped in notifications[index:]:
                    self._metrics.record_error(
                        DeliveryError(
                            channel="coordinator",
                            notification_id=dropped.notification_id,
                            reason="shutdown in progress",
                        )
                    )
                break
            try:
                self._delivery.send(notification)
            except Exception as exc:
                self._metrics.record_error(
                    DeliveryError(
                        channel="coordinator",
                        notification_id=notification.notification_id,
                        reason=f"{type(exc).__name__}: {exc}",
                    )
                )
                self._logger.exception(
                    "Failed to send notification %s",
                    notification.notification_id,
                )
        return notifications

    def is_healthy(self) -> bool:
        """``running`` and feed connected and every channel healthy."""
        return (
            self.state == PlatformState.RUNNING
            and self._feed.is_connected()
            and self._delivery.is_healthy()
        )

    def get_metrics(self) -> dict[str, object]:
        """Aggregate metrics for an external API surface.

        Returns:
            Dictionary with state, health, metrics snapshot, queue stats,
            queue health, processor counters and channel health.
        """
        return {
            "state": self.state.value,
            "healthy": self.is_healthy(),
            "metrics": self._metrics.snapshot().model_dump(),
            "queue": self._queue.stats().model_dump(),
            "queue_health": self._queue.health().model_dump(),
            "processor": self._processor.stats(),
            "channels": self._delivery.channel_health(),
        }

    # ------------------------------------------------------------------
    # Feed signals (feed IO thread)
    # ------------------------------------------------------------------

    def _on_signal(self, signal: FeedSignal) -> None:
        if isinstance(signal, MARKET_EVENT_TYPES):
            self._queue.push(signal)
        elif isinstance(signal, FeedError):
            error: FeedConnectionError = FeedConnectionError(signal.reason)
            self._metrics.record_error(error)
            self._logger.error("Feed error: %s", signal.reason)
            self._notify("error", error)
        elif isinstance(signal, FeedReconnected):
            self._logger.info(
                "Feed reconnected (epoch=%d); events across the gap may be "
                "missing or duplicated",
                signal.connection_epoch,
            )
            self._notify("reconnected", signal)
        else:
            self._logger.warning("Ignoring unknown feed signal: %r", signal)

    # ------------------------------------------------------------------
    # Pipeline workers
    # ------------------------------------------------------------------

    def _start_workers(self) -> None:
        self._workers_stop.clear()
        self._workers = [
            threading.Thread(
                target=self._worker_loop,
                daemon=True,
                name=f"pipeline-{index}",
            )
            for index in range(self._config.pipeline_workers)
        ]
        for worker in self._workers:
            worker.start()

    def _stop_workers(self) -> None:
        self._workers_stop.set()
        self._queue.wake_all()
        for worker in self._workers:
            worker.join(timeout=self._config.stop_timeout_seconds)
            if worker.is_alive():
                self._logger.warning("Pipeline worker %s did not exit in time", worker.name)
        self._workers = []

    def _worker_loop(self) -> None:
        wait: float = self._config.poll_interval_seconds
        while not self._workers_stop.is_set():
            event: MarketEvent | None = self._queue.get(timeout=wait)
            if event is None:
                continue
            try:
                self.handle_event(event)
            except Exception as exc:
                self._metrics.record_error(exc)
                self._logger.exception(
                    "Unhandled pipeline error for %s event on %s",
                    event.kind,
                    event.asset,
                )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run_teardown(self, name: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception:
            self._logger.exception("Error while stopping %s", name)

    def _notify(self, notice: str, payload: object) -> None:
        with self._listener_lock:
            listeners: list[PlatformListener] = list(self._listeners)
        for listener in listeners:
            try:
                listener(notice, payload)
            except Exception:
                self._logger.exception("Platform listener failed on %s", notice)
