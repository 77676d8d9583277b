"""Rule evaluator contract and a threshold-based evaluator.

The pipeline only depends on :class:`RuleEvaluator`: given one market
event, return the ordered candidates it matched. How rules are
expressed or stored is up to the implementation.

:class:`PriceMoveEvaluator` is a small fixed-rule implementation with
per-category thresholds. It is what the process runner wires in by
default.
"""

import threading
from typing import Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.events import (
    Funding,
    LargeOrder,
    Liquidation,
    MarketEvent,
    PriceAlert,
    Trade,
)
from core.notifications import NotificationCandidate, Severity


class RuleEvaluator(Protocol):
    """Matches one event against the configured rule set.

    Implementations must be deterministic for a given rule set and
    free of side effects visible to the pipeline. Returning an empty
    sequence means no rule matched. Any exception raised is treated
    by the event processor as a recoverable evaluation failure.
    """

    def evaluate(self, event: MarketEvent) -> Sequence[NotificationCandidate]:
        ...


# ---------------------------------------------------------------------------
# Threshold evaluator
# ---------------------------------------------------------------------------


class PriceMoveConfig(BaseModel):
    """Thresholds for :class:`PriceMoveEvaluator`.

    Attributes:
        threshold_pct: Absolute trade-to-trade move, in percent, that must be
            exceeded to produce a trade notification.
        liquidation_notional: Liquidation value (quote currency) to exceed.
        large_order_notional: Large order value (quote currency) to exceed.
        funding_rate_threshold: Absolute hourly funding rate to exceed.
        critical_multiplier: A value at or above this multiple of its
            threshold is reported as critical instead of warning.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    threshold_pct: float = Field(default=1.0, gt=0.0)
    liquidation_notional: float = Field(default=100_000.0, ge=0.0)
    large_order_notional: float = Field(default=1_000_000.0, ge=0.0)
    funding_rate_threshold: float = Field(default=0.0005, ge=0.0)
    critical_multiplier: float = Field(default=5.0, ge=1.0)


class PriceMoveEvaluator:
    """Fixed-threshold evaluator covering every event category.

    Trades are compared with the previous trade price of the same
    asset. The first trade of an asset only sets the reference. The
    reference advances after every trade, whether or not it matched.

    Thread safety:
        Reference prices are guarded by a lock so distinct events may
        be evaluated concurrently.

    Args:
        config: Thresholds. Defaults to ``PriceMoveConfig()``.

    Example:
        >>> evaluator = PriceMoveEvaluator()
        >>> evaluator.set_reference("BTC", 49000.0)
        >>> [c.message for c in evaluator.evaluate(trade_at_50000)]
        ['BTC moved +2.04% to 50000 (ref 49000)']
    """

    def __init__(self, config: PriceMoveConfig | None = None) -> None:
        self._config: PriceMoveConfig = config or PriceMoveConfig()
        self._last_price: dict[str, float] = {}
        self._lock: threading.Lock = threading.Lock()

    def set_reference(self, asset: str, price: float) -> None:
        """Seed the reference price for ``asset``."""
        with self._lock:
            self._last_price[asset] = price

    def reference(self, asset: str) -> float | None:
        """Current reference price for ``asset``, if any."""
        with self._lock:
            return self._last_price.get(asset)

    def evaluate(self, event: MarketEvent) -> list[NotificationCandidate]:
        if isinstance(event, Trade):
            return self._evaluate_trade(event)
        if isinstance(event, Liquidation):
            return self._over_threshold(
                event.notional,
                self._config.liquidation_notional,
                rule_id="liquidation_notional",
                message=(
                    f"{event.asset} {event.side.value} liquidation of "
                    f"{event.size:g} at {event.price:g} "
                    f"(${event.notional:,.0f})"
                ),
                details={"notional": event.notional},
            )
        if isinstance(event, LargeOrder):
            return self._over_threshold(
                event.notional,
                self._config.large_order_notional,
                rule_id="large_order_notional",
                message=(
                    f"{event.asset} large {event.side.value} order of "
                    f"{event.size:g} at {event.price:g} "
                    f"(${event.notional:,.0f})"
                ),
                details={"notional": event.notional},
            )
        if isinstance(event, Funding):
            return self._over_threshold(
                abs(event.rate),
                self._config.funding_rate_threshold,
                rule_id="funding_rate",
                message=(
                    f"{event.asset} funding {event.rate * 100:+.4f}%/h "
                    f"({event.annualized_rate * 100:+.1f}% annualized)"
                ),
                details={"rate": event.rate, "premium": event.premium},
            )
        if isinstance(event, PriceAlert):
            change: float = event.change_pct
            return [
                NotificationCandidate(
                    severity=self._severity(
                        abs(change),
                        self._config.threshold_pct,
                    ),
                    message=(
                        f"{event.asset} price alert: {event.price:g} "
                        f"({change:+.2f}% vs {event.reference_price:g})"
                    ),
                    details={
                        "price": event.price,
                        "reference_price": event.reference_price,
                        "change_pct": change,
                    },
                    rule_id="price_alert",
                )
            ]
        return []

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _evaluate_trade(self, event: Trade) -> list[NotificationCandidate]:
        with self._lock:
            previous: float | None = self._last_price.get(event.asset)
            self._last_price[event.asset] = event.price

        if previous is None:
            return []
        change_pct: float = (event.price - previous) / previous * 100.0
        if abs(change_pct) <= self._config.threshold_pct:
            return []
        return [
            NotificationCandidate(
                severity=self._severity(
                    abs(change_pct),
                    self._config.threshold_pct,
                ),
                message=(
                    f"{event.asset} moved {change_pct:+.2f}% to "
                    f"{event.price:g} (ref {previous:g})"
                ),
                details={
                    "price": event.price,
                    "reference_price": previous,
                    "change_pct": change_pct,
                },
                rule_id="price_move",
            )
        ]

    def _over_threshold(
        self,
        value: float,
        threshold: float,
        rule_id: str,
        message: str,
        details: dict[str, float],
    ) -> list[NotificationCandidate]:
        if value <= threshold:
            return []
        return [
            NotificationCandidate(
                severity=self._severity(value, threshold),
                message=message,
                details=details,
                rule_id=rule_id,
            )
        ]

    def _severity(self, value: float, threshold: float) -> Severity:
        if threshold > 0 and value >= threshold * self._config.critical_multiplier:
            return Severity.CRITICAL
        return Severity.WARNING
