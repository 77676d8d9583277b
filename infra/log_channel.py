"""Delivery channel that writes notifications to a logger.

Used as the default channel by the process runner, and as a template
for real transports: ``send`` raises on failure, ``is_healthy`` reports
whether the channel is up.
"""

import logging

from core.notifications import Notification, Severity

_LEVELS: dict[Severity, int] = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


class LoggingChannel:
    """Writes every notification as one log record.

    Args:
        name: Channel name used in metrics and health. Default ``"log"``.
        logger: Destination logger. Defaults to ``alerts.<name>``.
    """

    def __init__(self, name: str = "log", logger: logging.Logger | None = None) -> None:
        self.name: str = name
        self._logger: logging.Logger = logger or logging.getLogger(f"alerts.{name}")
        self._ready: bool = False

    def initialize(self) -> None:
        self._ready = True

    def shutdown(self) -> None:
        self._ready = False

    def send(self, notification: Notification) -> None:
        if not self._ready:
            raise RuntimeError(f"Channel {self.name} is not initialized")
        self._logger.log(
            _LEVELS[notification.severity],
            "[%s] %s %s: %s",
            notification.severity.value.upper(),
            notification.category.value,
            notification.asset,
            notification.message,
        )

    def is_healthy(self) -> bool:
        return self._ready
