"""Unit tests for infra.runner module."""

import os
import threading
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from conftest import FakeChannel, FakeFeed, ScriptedEvaluator
from core.delivery import DeliveryCoordinator
from core.metrics import MetricsRegistry
from core.platform import NotificationPlatform, PlatformState
from infra.log_channel import LoggingChannel
from infra.mqtt_feed import MQTTFeedMonitor
from infra.runner import RunnerSettings, build_platform, load_settings, main, run

_ENV_KEYS: tuple[str, ...] = (
    "ALERTS_MQTT_HOST",
    "ALERTS_MQTT_PORT",
    "ALERTS_MQTT_TRANSPORT",
    "ALERTS_MQTT_TLS",
    "ALERTS_MQTT_USERNAME",
    "ALERTS_MQTT_PASSWORD",
    "ALERTS_MQTT_CLIENT_ID",
    "ALERTS_TOPIC_PREFIX",
    "ALERTS_PRICE_MOVE_PCT",
    "ALERTS_PIPELINE_WORKERS",
    "ALERTS_DELIVERY_TIMEOUT",
    "ALERTS_LOG_LEVEL",
)


@pytest.fixture()
def no_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Clear ALERTS_* variables and return a path with no .env file."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return str(tmp_path / "missing.env")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestLoadSettings:
    """Tests for load_settings."""

    def test_from_environment(
        self,
        no_env_file: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """ALERTS_* variables populate every section."""
        monkeypatch.setenv("ALERTS_MQTT_HOST", "broker.local")
        monkeypatch.setenv("ALERTS_MQTT_PORT", "8883")
        monkeypatch.setenv("ALERTS_MQTT_TLS", "true")
        monkeypatch.setenv("ALERTS_TOPIC_PREFIX", "feeds/")
        monkeypatch.setenv("ALERTS_PRICE_MOVE_PCT", "0.5")
        monkeypatch.setenv("ALERTS_PIPELINE_WORKERS", "4")
        monkeypatch.setenv("ALERTS_DELIVERY_TIMEOUT", "2.5")
        monkeypatch.setenv("ALERTS_LOG_LEVEL", "debug")

        settings: RunnerSettings = load_settings(["--env-file", no_env_file])

        assert settings.feed.host == "broker.local"
        assert settings.feed.port == 8883
        assert settings.feed.use_tls is True
        assert settings.feed.topic_prefix == "feeds"
        assert settings.rules.threshold_pct == 0.5
        assert settings.platform.pipeline_workers == 4
        assert settings.delivery.attempt_timeout_seconds == 2.5
        assert settings.log_level == "DEBUG"

    def test_flags_override_environment(
        self,
        no_env_file: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Command-line flags win over environment values."""
        monkeypatch.setenv("ALERTS_MQTT_HOST", "env-host")
        monkeypatch.setenv("ALERTS_PRICE_MOVE_PCT", "3.0")

        settings: RunnerSettings = load_settings(
            [
                "--env-file",
                no_env_file,
                "--host",
                "flag-host",
                "--port",
                "1884",
                "--threshold-pct",
                "0.25",
                "--workers",
                "3",
            ]
        )

        assert settings.feed.host == "flag-host"
        assert settings.feed.port == 1884
        assert settings.rules.threshold_pct == 0.25
        assert settings.platform.pipeline_workers == 3

    def test_env_file_loaded(self, no_env_file: str, tmp_path: Path) -> None:
        """Values are read from the given .env file."""
        env_file: Path = tmp_path / "alerts.env"
        env_file.write_text("ALERTS_MQTT_HOST=dotenv-host\nALERTS_MQTT_PORT=1999\n")

        with patch.dict(os.environ):
            settings: RunnerSettings = load_settings(["--env-file", str(env_file)])

        assert settings.feed.host == "dotenv-host"
        assert settings.feed.port == 1999

    def test_env_file_found_in_working_directory(
        self,
        no_env_file: str,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Without --env-file, .env is read from the working directory."""
        (tmp_path / ".env").write_text("ALERTS_MQTT_HOST=broker.local\n")
        monkeypatch.chdir(tmp_path)

        with patch.dict(os.environ):
            settings: RunnerSettings = load_settings([])

        assert settings.feed.host == "broker.local"

    def test_explicit_env_file_wins_over_working_directory(
        self,
        no_env_file: str,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """--env-file is used instead of the working-directory .env."""
        (tmp_path / ".env").write_text("ALERTS_MQTT_HOST=cwd-host\n")
        explicit: Path = tmp_path / "explicit.env"
        explicit.write_text("ALERTS_MQTT_HOST=explicit-host\n")
        monkeypatch.chdir(tmp_path)

        with patch.dict(os.environ):
            settings: RunnerSettings = load_settings(["--env-file", str(explicit)])

        assert settings.feed.host == "explicit-host"

    def test_missing_host_rejected(self, no_env_file: str) -> None:
        """Without a host the settings are invalid."""
        with pytest.raises(ValidationError):
            load_settings(["--env-file", no_env_file])

    def test_defaults(self, no_env_file: str) -> None:
        """Unset values fall back to component defaults."""
        settings: RunnerSettings = load_settings(
            ["--env-file", no_env_file, "--host", "h"]
        )
        assert settings.feed.port == 1883
        assert settings.delivery.attempt_timeout_seconds == 10.0
        assert settings.log_level == "INFO"


# ---------------------------------------------------------------------------
# Wiring / run loop
# ---------------------------------------------------------------------------


class TestRun:
    """Tests for build_platform, run and main."""

    def test_build_platform_wiring(self, no_env_file: str) -> None:
        """The platform uses the MQTT feed and the logging channel."""
        settings: RunnerSettings = load_settings(
            ["--env-file", no_env_file, "--host", "h"]
        )
        platform: NotificationPlatform = build_platform(settings)

        assert platform.state is PlatformState.STOPPED
        assert isinstance(platform._feed, MQTTFeedMonitor)
        assert platform._delivery.channel_names == [LoggingChannel().name]

    def test_run_returns_zero_after_stop(self, metrics: MetricsRegistry) -> None:
        """run() starts, waits for the stop request, then stops."""
        feed: FakeFeed = FakeFeed()
        platform: NotificationPlatform = NotificationPlatform(
            feed=feed,
            evaluator=ScriptedEvaluator(),
            delivery=DeliveryCoordinator([FakeChannel("log")], metrics),
            metrics=metrics,
        )
        stop_requested: threading.Event = threading.Event()
        stop_requested.set()

        assert run(platform, stop_requested) == 0
        assert platform.state is PlatformState.STOPPED
        assert feed.calls[0] == "connect"
        assert feed.calls[-1] == "unsubscribe"

    def test_run_returns_one_on_startup_failure(
        self, metrics: MetricsRegistry
    ) -> None:
        """A startup failure exits with code 1."""
        platform: NotificationPlatform = NotificationPlatform(
            feed=FakeFeed(fail_connect=True),
            evaluator=ScriptedEvaluator(),
            delivery=DeliveryCoordinator([FakeChannel("log")], metrics),
            metrics=metrics,
        )
        assert run(platform, threading.Event()) == 1
        assert platform.state is PlatformState.STOPPED

    def test_main_invalid_configuration(self, no_env_file: str) -> None:
        """main() exits with 1 when settings are invalid."""
        assert main(["--env-file", no_env_file]) == 1
