"""Process entrypoint for the market alert pipeline.

Wires an :class:`~infra.mqtt_feed.MQTTFeedMonitor`, a
:class:`~core.rules.PriceMoveEvaluator` and a
:class:`~infra.log_channel.LoggingChannel` into a
:class:`~core.platform.NotificationPlatform` and runs it until SIGINT or
SIGTERM.

Configuration:
    Read from ``ALERTS_*`` environment variables, optionally loaded from
    ``--env-file`` or else the nearest ``.env`` at or above the working
    directory, then overridden by command-line flags:

    - ``ALERTS_MQTT_HOST`` (required), ``ALERTS_MQTT_PORT``
    - ``ALERTS_MQTT_TRANSPORT`` (``tcp``/``websockets``), ``ALERTS_MQTT_TLS``
    - ``ALERTS_MQTT_USERNAME``, ``ALERTS_MQTT_PASSWORD``
    - ``ALERTS_TOPIC_PREFIX``
    - ``ALERTS_PRICE_MOVE_PCT``
    - ``ALERTS_PIPELINE_WORKERS``
    - ``ALERTS_DELIVERY_TIMEOUT``
    - ``ALERTS_LOG_LEVEL``

Usage:
    market-alerts
    market-alerts --host broker.local --threshold-pct 0.5
    python -m infra.runner --env-file .env

Exit codes:
    0 - Clean shutdown after a termination signal.
    1 - Invalid configuration or startup failure.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from types import FrameType
from typing import Literal

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.delivery import DeliveryConfig, DeliveryCoordinator
from core.errors import StartupError
from core.metrics import MetricsConfig, MetricsRegistry
from core.platform import NotificationPlatform, PlatformConfig
from core.rules import PriceMoveConfig, PriceMoveEvaluator
from infra.log_channel import LoggingChannel
from infra.mqtt_feed import MQTTFeedConfig, MQTTFeedMonitor

logger: logging.Logger = logging.getLogger(__name__)

_ENV_PREFIX: str = "ALERTS_"


class RunnerSettings(BaseModel):
    """Everything needed to build and run the platform."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    feed: MQTTFeedConfig
    platform: PlatformConfig = Field(default_factory=PlatformConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    rules: PriceMoveConfig = Field(default_factory=PriceMoveConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Market event alerting pipeline",
    )
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file")
    parser.add_argument("--host", type=str, default=None, help="MQTT broker host")
    parser.add_argument("--port", type=int, default=None, help="MQTT broker port")
    parser.add_argument("--topic-prefix", type=str, default=None, help="Topic prefix")
    parser.add_argument(
        "--threshold-pct",
        type=float,
        default=None,
        help="Trade-to-trade move (percent) that raises an alert",
    )
    parser.add_argument("--workers", type=int, default=None, help="Pipeline workers")
    parser.add_argument("--log-level", type=str, default=None, help="Logging level")
    return parser.parse_args(argv)


def _env(name: str) -> str | None:
    value: str | None = os.environ.get(_ENV_PREFIX + name)
    return value if value else None


def load_settings(argv: list[str] | None = None) -> RunnerSettings:
    """Build settings from the environment and command-line flags.

    Args:
        argv: Command-line arguments, without the program name.
            ``None`` reads ``sys.argv``.

    Returns:
        Validated settings.

    Raises:
        pydantic.ValidationError: If a value is missing or invalid.
    """
    args: argparse.Namespace = _parse_args(argv)
    load_dotenv(dotenv_path=args.env_file or find_dotenv(usecwd=True))

    feed: dict[str, object] = {
        "host": args.host or _env("MQTT_HOST") or "",
    }
    port: object = args.port or _env("MQTT_PORT")
    if port is not None:
        feed["port"] = port
    for key, env_name in (
        ("transport", "MQTT_TRANSPORT"),
        ("use_tls", "MQTT_TLS"),
        ("username", "MQTT_USERNAME"),
        ("password", "MQTT_PASSWORD"),
        ("client_id", "MQTT_CLIENT_ID"),
    ):
        value: str | None = _env(env_name)
        if value is not None:
            feed[key] = value
    topic_prefix: str | None = args.topic_prefix or _env("TOPIC_PREFIX")
    if topic_prefix is not None:
        feed["topic_prefix"] = topic_prefix

    platform: dict[str, object] = {}
    workers: object = args.workers or _env("PIPELINE_WORKERS")
    if workers is not None:
        platform["pipeline_workers"] = workers

    delivery: dict[str, object] = {}
    timeout: str | None = _env("DELIVERY_TIMEOUT")
    if timeout is not None:
        delivery["attempt_timeout_seconds"] = timeout

    rules: dict[str, object] = {}
    threshold: object = args.threshold_pct or _env("PRICE_MOVE_PCT")
    if threshold is not None:
        rules["threshold_pct"] = threshold

    return RunnerSettings.model_validate(
        {
            "feed": feed,
            "platform": platform,
            "delivery": delivery,
            "rules": rules,
            "log_level": (args.log_level or _env("LOG_LEVEL") or "INFO").upper(),
        }
    )


def build_platform(settings: RunnerSettings) -> NotificationPlatform:
    """Compose the platform from ``settings``."""
    metrics: MetricsRegistry = MetricsRegistry(config=settings.metrics)
    delivery: DeliveryCoordinator = DeliveryCoordinator(
        channels=[LoggingChannel()],
        metrics=metrics,
        config=settings.delivery,
    )
    return NotificationPlatform(
        feed=MQTTFeedMonitor(config=settings.feed),
        evaluator=PriceMoveEvaluator(config=settings.rules),
        delivery=delivery,
        metrics=metrics,
        config=settings.platform,
    )


def run(platform: NotificationPlatform, stop_requested: threading.Event) -> int:
    """Start ``platform``, block until ``stop_requested``, then stop.

    Returns:
        Process exit code.
    """
    try:
        platform.start()
    except StartupError:
        logger.exception("Failed to start notification platform")
        return 1

    logger.info("Notification platform started")
    while not stop_requested.wait(timeout=1.0):
        pass
    platform.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the alert pipeline until SIGINT/SIGTERM.

    Returns:
        Exit code: 0 on clean shutdown, 1 on configuration or startup
        failure.
    """
    try:
        settings: RunnerSettings = load_settings(argv)
    except ValidationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration (set ALERTS_MQTT_HOST or --host):\n%s", exc)
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting market alert pipeline...")

    stop_requested: threading.Event = threading.Event()

    def _request_stop(signum: int, frame: FrameType | None) -> None:
        logger.info(
            "%s received, shutting down gracefully...",
            signal.Signals(signum).name,
        )
        stop_requested.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    return run(build_platform(settings), stop_requested)


if __name__ == "__main__":
    sys.exit(main())
