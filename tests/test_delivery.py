"""Unit tests for core.delivery module.

Covers channel lifecycle (fail-fast initialize, idempotent shutdown),
per-channel fan-out with failure isolation, timeouts, backlog limits,
shutdown cancellation and the strict health policy.
"""

import threading
import time

import pytest
from pydantic import ValidationError

from conftest import FakeChannel, make_notification
from core.delivery import DeliveryConfig, DeliveryCoordinator
from core.metrics import MetricsRegistry
from core.notifications import DeliveryOutcome, Notification


class RejectingChannel(FakeChannel):
    """Channel that reports failure by returning False."""

    def send(self, notification: Notification) -> bool:
        super().send(notification)
        return False


# ---------------------------------------------------------------------------
# Configuration / Construction
# ---------------------------------------------------------------------------


class TestDeliveryConfig:
    """Tests for DeliveryConfig."""

    def test_defaults(self) -> None:
        """Default per-attempt timeout is 10 seconds."""
        config: DeliveryConfig = DeliveryConfig()
        assert config.attempt_timeout_seconds == 10.0
        assert config.workers_per_channel == 2

    def test_zero_workers_rejected(self) -> None:
        """Each channel needs at least one worker."""
        with pytest.raises(ValidationError):
            DeliveryConfig(workers_per_channel=0)

    def test_duplicate_channel_names_rejected(self, metrics: MetricsRegistry) -> None:
        """Channel names must be unique."""
        with pytest.raises(ValueError, match="Duplicate"):
            DeliveryCoordinator([FakeChannel("a"), FakeChannel("a")], metrics)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Tests for initialize/shutdown."""

    def test_initialize_brings_up_all_channels(self, metrics: MetricsRegistry) -> None:
        """Every channel is initialized once; repeated calls are no-ops."""
        a: FakeChannel = FakeChannel("a")
        b: FakeChannel = FakeChannel("b")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a, b], metrics)

        coordinator.initialize()
        coordinator.initialize()

        assert a.init_calls == 1
        assert b.init_calls == 1
        assert coordinator.initialized is True
        assert coordinator.is_healthy() is True
        coordinator.shutdown()

    def test_initialize_fails_fast(self, metrics: MetricsRegistry) -> None:
        """A failing channel aborts init and shuts down earlier channels."""
        a: FakeChannel = FakeChannel("a")
        b: FakeChannel = FakeChannel("b", fail_init=True)
        c: FakeChannel = FakeChannel("c")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a, b, c], metrics)

        with pytest.raises(ConnectionError):
            coordinator.initialize()

        assert a.shutdown_calls == 1
        assert c.init_calls == 0
        assert coordinator.initialized is False
        assert coordinator.is_healthy() is False

    def test_shutdown_idempotent(self, metrics: MetricsRegistry) -> None:
        """Shutdown runs once per initialize; extra calls are no-ops."""
        a: FakeChannel = FakeChannel("a")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a], metrics)

        coordinator.shutdown()
        coordinator.initialize()
        coordinator.shutdown()
        coordinator.shutdown()

        assert a.shutdown_calls == 1
        assert coordinator.is_healthy() is False

    def test_shutdown_continues_past_channel_errors(
        self, metrics: MetricsRegistry
    ) -> None:
        """A channel raising in shutdown does not stop the others."""

        class BadShutdown(FakeChannel):
            def shutdown(self) -> None:
                super().shutdown()
                raise RuntimeError("stuck")

        a: FakeChannel = FakeChannel("a")
        b: BadShutdown = BadShutdown("b")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a, b], metrics)
        coordinator.initialize()
        coordinator.shutdown()

        assert a.shutdown_calls == 1
        assert b.shutdown_calls == 1

    def test_reinitialize_after_shutdown(self, metrics: MetricsRegistry) -> None:
        """A shut-down coordinator can be initialized and used again."""
        a: FakeChannel = FakeChannel("a")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a], metrics)
        coordinator.initialize()
        coordinator.shutdown()
        coordinator.initialize()

        outcomes: list[DeliveryOutcome] = coordinator.send(make_notification())
        assert [o.success for o in outcomes] == [True]
        coordinator.shutdown()

    def test_send_before_initialize_raises(self, metrics: MetricsRegistry) -> None:
        """send() requires an initialized coordinator."""
        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [FakeChannel("a")], metrics
        )
        with pytest.raises(RuntimeError, match="not initialized"):
            coordinator.send(make_notification())


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class TestSend:
    """Tests for one-attempt-per-channel delivery."""

    def test_one_success_one_failure(self, metrics: MetricsRegistry) -> None:
        """A failing channel does not affect a healthy one."""
        a: FakeChannel = FakeChannel("A")
        b: FakeChannel = FakeChannel("B", fail=True)
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a, b], metrics)
        coordinator.initialize()
        notification: Notification = make_notification()

        outcomes: list[DeliveryOutcome] = coordinator.send(notification)

        assert [(o.channel, o.success) for o in outcomes] == [
            ("A", True),
            ("B", False),
        ]
        assert "RuntimeError" in (outcomes[1].reason or "")
        assert all(o.notification_id == notification.notification_id for o in outcomes)
        assert coordinator.is_healthy() is False
        assert coordinator.channel_health() == {"A": True, "B": False}

        snap = metrics.snapshot()
        assert snap.notifications_sent == 1
        assert snap.notifications_failed == 1
        assert snap.errors_by_kind == {"delivery": 1}
        coordinator.shutdown()

    def test_attempts_equal_channel_count(self, metrics: MetricsRegistry) -> None:
        """Exactly one attempt per channel, success or not."""
        channels: list[FakeChannel] = [
            FakeChannel("a"),
            FakeChannel("b", fail=True),
            FakeChannel("c"),
        ]
        coordinator: DeliveryCoordinator = DeliveryCoordinator(channels, metrics)
        coordinator.initialize()

        coordinator.send(make_notification())

        assert [len(c.attempts) for c in channels] == [1, 1, 1]
        coordinator.shutdown()

    def test_false_return_is_failure(self, metrics: MetricsRegistry) -> None:
        """A send returning False is a failed outcome."""
        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [RejectingChannel("r")], metrics
        )
        coordinator.initialize()

        outcome: DeliveryOutcome = coordinator.send(make_notification())[0]

        assert outcome.success is False
        assert outcome.reason == "channel rejected notification"
        coordinator.shutdown()

    def test_channel_recovers_after_success(self, metrics: MetricsRegistry) -> None:
        """Health follows the latest attempt."""
        flaky: FakeChannel = FakeChannel(
            "flaky",
            fail_on=lambda n: n.message == "bad",
        )
        coordinator: DeliveryCoordinator = DeliveryCoordinator([flaky], metrics)
        coordinator.initialize()

        coordinator.send(make_notification(message="bad"))
        assert coordinator.is_healthy() is False
        coordinator.send(make_notification(message="good"))
        assert coordinator.is_healthy() is True
        coordinator.shutdown()

    def test_no_channels(self, metrics: MetricsRegistry) -> None:
        """With no channels, send returns no outcomes."""
        coordinator: DeliveryCoordinator = DeliveryCoordinator([], metrics)
        coordinator.initialize()
        assert coordinator.send(make_notification()) == []
        assert coordinator.is_healthy() is True
        coordinator.shutdown()


# ---------------------------------------------------------------------------
# Timeouts / backlog / shutdown
# ---------------------------------------------------------------------------


class TestSlowChannels:
    """Tests for slow-channel isolation."""

    def test_slow_channel_times_out(self, metrics: MetricsRegistry) -> None:
        """A stuck channel fails after the timeout; others still succeed."""
        slow: FakeChannel = FakeChannel("slow", delay=0.5)
        fast: FakeChannel = FakeChannel("fast")
        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [slow, fast],
            metrics,
            config=DeliveryConfig(attempt_timeout_seconds=0.1),
        )
        coordinator.initialize()

        start: float = time.monotonic()
        outcomes: list[DeliveryOutcome] = coordinator.send(make_notification())
        elapsed: float = time.monotonic() - start

        assert elapsed < 0.45
        assert outcomes[0].success is False
        assert outcomes[0].reason == "timed out after 0.1s"
        assert outcomes[1].success is True
        coordinator.shutdown()

    def test_backlog_full_rejects_attempt(self, metrics: MetricsRegistry) -> None:
        """A channel with a full backlog fails new attempts immediately."""
        slow: FakeChannel = FakeChannel("slow", delay=0.5)
        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [slow],
            metrics,
            config=DeliveryConfig(
                attempt_timeout_seconds=0.05,
                workers_per_channel=1,
                max_pending_per_channel=1,
            ),
        )
        coordinator.initialize()

        first: DeliveryOutcome = coordinator.send(make_notification())[0]
        second: DeliveryOutcome = coordinator.send(make_notification())[0]

        assert first.reason == "timed out after 0.05s"
        assert second.reason == "channel backlog full"
        assert len(slow.attempts) == 1
        coordinator.shutdown()

    def test_shutdown_cancels_in_flight_send(self, metrics: MetricsRegistry) -> None:
        """shutdown() makes a waiting send() give up promptly."""
        slow: FakeChannel = FakeChannel("slow", delay=1.0)
        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [slow],
            metrics,
            config=DeliveryConfig(attempt_timeout_seconds=10.0),
        )
        coordinator.initialize()
        outcomes: list[DeliveryOutcome] = []

        sender: threading.Thread = threading.Thread(
            target=lambda: outcomes.extend(coordinator.send(make_notification())),
        )
        sender.start()
        time.sleep(0.1)
        start: float = time.monotonic()
        coordinator.shutdown()
        sender.join(timeout=2.0)

        assert not sender.is_alive()
        assert time.monotonic() - start < 0.9
        assert outcomes[0].success is False
        assert outcomes[0].reason == "cancelled by shutdown"


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------


class TestProbeHealth:
    """Tests for probe_health and channel-reported health."""

    def test_unhealthy_channel_visible_before_any_send(
        self, metrics: MetricsRegistry
    ) -> None:
        """A channel reporting down makes the coordinator unhealthy at once."""
        down: FakeChannel = FakeChannel("down")
        down.healthy = False
        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [FakeChannel("up"), down], metrics
        )
        coordinator.initialize()

        assert coordinator.is_healthy() is False
        assert coordinator.channel_health() == {"up": True, "down": False}
        coordinator.shutdown()

    def test_channel_going_down_after_initialize(
        self, metrics: MetricsRegistry
    ) -> None:
        """Health follows the channel's report without traffic or probing."""
        channel: FakeChannel = FakeChannel("a")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([channel], metrics)
        coordinator.initialize()
        assert coordinator.is_healthy() is True

        channel.healthy = False
        assert coordinator.is_healthy() is False

        channel.healthy = True
        assert coordinator.is_healthy() is True
        coordinator.shutdown()

    def test_raising_health_check_is_unhealthy(
        self, metrics: MetricsRegistry
    ) -> None:
        """A channel whose is_healthy raises counts as unhealthy."""

        class BrokenProbe(FakeChannel):
            def is_healthy(self) -> bool:
                raise ConnectionError("health check failed")

        coordinator: DeliveryCoordinator = DeliveryCoordinator(
            [BrokenProbe("p")], metrics
        )
        coordinator.initialize()

        assert coordinator.is_healthy() is False
        assert coordinator.probe_health() == {"p": False}
        coordinator.shutdown()

    def test_probe_updates_flags(self, metrics: MetricsRegistry) -> None:
        """Probing reads every channel's own health."""
        a: FakeChannel = FakeChannel("a")
        b: FakeChannel = FakeChannel("b")
        coordinator: DeliveryCoordinator = DeliveryCoordinator([a, b], metrics)
        coordinator.initialize()

        b.healthy = False
        assert coordinator.probe_health() == {"a": True, "b": False}
        assert coordinator.is_healthy() is False

        b.healthy = True
        coordinator.probe_health()
        assert coordinator.is_healthy() is True
        coordinator.shutdown()
