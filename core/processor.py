"""Event processor: market event + rule matches -> notifications.

The processor is the fail-open boundary around the rule evaluator. A
broken rule must never halt the pipeline, so every exception raised by
:meth:`RuleEvaluator.evaluate` is caught, wrapped in an
:class:`~core.errors.EvaluationError`, recorded once in the metrics
registry, and turned into an empty notification list. That event's
notifications are lost; the next event is processed normally.

Ordering:
    Notifications from one event keep the evaluator's emission order.
    No ordering holds between notifications of different events.

Thread safety:
    Safe to call from several pipeline workers at once. Counters are
    guarded by ``_counter_lock``; the evaluator is responsible for its
    own state.

Logging safety:
    Evaluation errors are logged with a stack trace for the first 10
    occurrences and then every 1000th, to prevent a bad rule from
    flooding the log at feed rates.
"""

import logging
import threading
from typing import Callable

from core.errors import EvaluationError
from core.events import (
    EventCategory,
    Funding,
    LargeOrder,
    Liquidation,
    MarketEvent,
    PriceAlert,
    Trade,
)
from core.metrics import MetricsRegistry
from core.notifications import Notification, NotificationCandidate
from core.rules import RuleEvaluator

_LOG_FIRST_N: int = 10
"""Log full stack trace for the first N evaluation errors."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


class EventProcessor:
    """Turns market events into notifications via a rule evaluator.

    Args:
        evaluator: The rule evaluator to consult for every event.
        metrics: Registry that receives evaluation errors.
        logger: Logger for evaluation failures. Defaults to the module
            logger.

    Example:
        >>> processor = EventProcessor(evaluator, metrics)
        >>> notifications = processor.process_trade(trade)
        >>> [n.category.value for n in notifications]
        ['trade']
    """

    def __init__(
        self,
        evaluator: RuleEvaluator,
        metrics: MetricsRegistry,
        logger: logging.Logger | None = None,
    ) -> None:
        self._evaluator: RuleEvaluator = evaluator
        self._metrics: MetricsRegistry = metrics
        self._logger: logging.Logger = logger or logging.getLogger(__name__)

        self._events_processed: int = 0
        self._notifications_created: int = 0
        self._evaluation_errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

        self._handlers: dict[str, Callable[[MarketEvent], list[Notification]]] = {
            EventCategory.TRADE.value: self.process_trade,
            EventCategory.LIQUIDATION.value: self.process_liquidation,
            EventCategory.FUNDING.value: self.process_funding,
            EventCategory.LARGE_ORDER.value: self.process_large_order,
            EventCategory.PRICE_ALERT.value: self.process_price_alert,
        }

    # ------------------------------------------------------------------
    # Per-category entry points
    # ------------------------------------------------------------------

    def process_trade(self, event: Trade) -> list[Notification]:
        """Evaluate a trade. Never raises on evaluation failure."""
        return self._process(event, Trade)

    def process_liquidation(self, event: Liquidation) -> list[Notification]:
        """Evaluate a liquidation. Never raises on evaluation failure."""
        return self._process(event, Liquidation)

    def process_funding(self, event: Funding) -> list[Notification]:
        """Evaluate a funding update. Never raises on evaluation failure."""
        return self._process(event, Funding)

    def process_large_order(self, event: LargeOrder) -> list[Notification]:
        """Evaluate a large order. Never raises on evaluation failure."""
        return self._process(event, LargeOrder)

    def process_price_alert(self, event: PriceAlert) -> list[Notification]:
        """Evaluate a price alert. Never raises on evaluation failure."""
        return self._process(event, PriceAlert)

    def process(self, event: MarketEvent) -> list[Notification]:
        """Route ``event`` to the entry point for its category.

        Args:
            event: Any market event.

        Returns:
            Notifications in evaluator emission order, possibly empty.
        """
        return self._handlers[event.kind](event)

    def stats(self) -> dict[str, int]:
        """Return processor counters. Thread-safe."""
        with self._counter_lock:
            return {
                "events_processed": self._events_processed,
                "notifications_created": self._notifications_created,
                "evaluation_errors": self._evaluation_errors,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _process(self, event: MarketEvent, expected: type) -> list[Notification]:
        if not isinstance(event, expected):
            raise TypeError(
                f"Expected {expected.__name__} event, got {type(event).__name__}"
            )

        try:
            candidates: list[NotificationCandidate] = list(
                self._evaluator.evaluate(event)
            )
            notifications: list[Notification] = [
                Notification.from_candidate(event, candidate)
                for candidate in candidates
            ]
        except Exception as exc:
            error: EvaluationError = EvaluationError(
                category=event.kind,
                asset=event.asset,
                cause=exc,
            )
            with self._counter_lock:
                self._events_processed += 1
                self._evaluation_errors += 1
                count: int = self._evaluation_errors
            self._metrics.record_error(error)
            self._log_evaluation_error(error, count)
            return []

        with self._counter_lock:
            self._events_processed += 1
            self._notifications_created += len(notifications)
        return notifications

    def _log_evaluation_error(self, error: EvaluationError, count: int) -> None:
        if count <= _LOG_FIRST_N:
            self._logger.error(
                "%s (%d/%d)",
                error,
                count,
                _LOG_FIRST_N,
                exc_info=error.cause,
            )
        elif count % _LOG_EVERY_N == 0:
            self._logger.error("Evaluation errors ongoing: %d total", count)
