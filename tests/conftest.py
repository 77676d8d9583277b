"""Shared fakes and fixtures for the pipeline tests.

The fakes implement the collaborator contracts (feed monitor, delivery
channel, rule evaluator, API surface) in memory and record every call
so tests can assert on ordering and attempt counts.
"""

import threading
import time
from typing import Callable, Sequence

import pytest

from core.errors import FeedConnectionError
from core.events import FeedSignal, MarketEvent, Side, Trade
from core.metrics import MetricsConfig, MetricsRegistry
from core.notifications import Notification, NotificationCandidate, Severity


def make_trade(
    asset: str = "BTC",
    price: float = 50000.0,
    size: float = 1.0,
    timestamp_ms: int = 1739500000000,
) -> Trade:
    """Return a valid trade event."""
    return Trade(
        asset=asset,
        price=price,
        size=size,
        side=Side.BUY,
        timestamp_ms=timestamp_ms,
    )


def make_notification(asset: str = "BTC", message: str = "alert") -> Notification:
    """Return a notification built from a trade event."""
    return Notification.from_candidate(
        make_trade(asset=asset),
        NotificationCandidate(severity=Severity.WARNING, message=message),
    )


class FakeChannel:
    """In-memory delivery channel with scripted failures."""

    def __init__(
        self,
        name: str,
        fail: bool = False,
        fail_on: Callable[[Notification], bool] | None = None,
        delay: float = 0.0,
        fail_init: bool = False,
    ) -> None:
        self.name: str = name
        self.fail: bool = fail
        self.fail_on: Callable[[Notification], bool] | None = fail_on
        self.delay: float = delay
        self.fail_init: bool = fail_init
        self.healthy: bool = True
        self.initialized: bool = False
        self.init_calls: int = 0
        self.shutdown_calls: int = 0
        self.attempts: list[Notification] = []
        self.delivered: list[Notification] = []
        self._lock: threading.Lock = threading.Lock()

    def initialize(self) -> None:
        self.init_calls += 1
        if self.fail_init:
            raise ConnectionError(f"{self.name} unavailable")
        self.initialized = True

    def shutdown(self) -> None:
        self.shutdown_calls += 1
        self.initialized = False

    def send(self, notification: Notification) -> None:
        with self._lock:
            self.attempts.append(notification)
        if self.delay:
            time.sleep(self.delay)
        if self.fail or (self.fail_on is not None and self.fail_on(notification)):
            raise RuntimeError(f"{self.name} rejected {notification.notification_id}")
        with self._lock:
            self.delivered.append(notification)

    def is_healthy(self) -> bool:
        return self.healthy


class FakeFeed:
    """In-memory feed monitor; tests push signals with :meth:`emit`."""

    def __init__(
        self,
        fail_connect: bool = False,
        fail_subscribe: bool = False,
    ) -> None:
        self.fail_connect: bool = fail_connect
        self.fail_subscribe: bool = fail_subscribe
        self.connected: bool = False
        self.handlers: list[Callable[[FeedSignal], None]] = []
        self.calls: list[str] = []

    def connect(self) -> None:
        self.calls.append("connect")
        if self.fail_connect:
            raise FeedConnectionError("broker unreachable")
        self.connected = True

    def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def subscribe(self, handler: Callable[[FeedSignal], None]) -> None:
        self.calls.append("subscribe")
        if self.fail_subscribe:
            raise RuntimeError("subscription rejected")
        self.handlers.append(handler)

    def unsubscribe(self, handler: Callable[[FeedSignal], None]) -> None:
        self.calls.append("unsubscribe")
        if handler in self.handlers:
            self.handlers.remove(handler)

    def emit(self, signal: FeedSignal) -> None:
        for handler in list(self.handlers):
            handler(signal)


class FakeApi:
    """API surface that records start/stop and can fail to start."""

    def __init__(self, fail_start: bool = False) -> None:
        self.fail_start: bool = fail_start
        self.running: bool = False
        self.start_calls: int = 0
        self.stop_calls: int = 0

    def start(self) -> None:
        self.start_calls += 1
        if self.fail_start:
            raise OSError("port in use")
        self.running = True

    def stop(self) -> None:
        self.stop_calls += 1
        self.running = False


class ScriptedEvaluator:
    """Evaluator returning ``per_event`` candidates for every event.

    Events whose asset is in ``fail_assets`` raise instead.
    """

    def __init__(self, per_event: int = 1, fail_assets: Sequence[str] = ()) -> None:
        self.per_event: int = per_event
        self.fail_assets: set[str] = set(fail_assets)
        self.seen: list[MarketEvent] = []

    def evaluate(self, event: MarketEvent) -> list[NotificationCandidate]:
        self.seen.append(event)
        if event.asset in self.fail_assets:
            raise ValueError(f"bad rule for {event.asset}")
        return [
            NotificationCandidate(message=f"{event.asset} match {index}")
            for index in range(self.per_event)
        ]


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline: float = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def metrics() -> MetricsRegistry:
    """Metrics registry without the background summary thread."""
    return MetricsRegistry(config=MetricsConfig(flush_interval_seconds=0))
