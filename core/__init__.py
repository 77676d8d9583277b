"""Core domain layer for the market alert pipeline.

This package provides the typed market event and notification models,
the rule evaluator contract, the event processor, the bounded event
queue, the delivery coordinator, the metrics registry and the platform
controller that composes them. All models are Pydantic-based with
frozen configuration for immutability.
"""

from core.delivery import DeliveryChannel, DeliveryConfig, DeliveryCoordinator
from core.dispatcher import (
    Dispatcher,
    DispatcherConfig,
    DispatcherHealth,
    DispatcherStats,
)
from core.errors import (
    DeliveryError,
    DoubleStartError,
    EvaluationError,
    FeedConnectionError,
    PipelineError,
    StartupError,
)
from core.events import (
    EventCategory,
    FeedError,
    FeedReconnected,
    FeedSignal,
    Funding,
    LargeOrder,
    Liquidation,
    MarketEvent,
    PriceAlert,
    Side,
    Trade,
    parse_market_event,
)
from core.metrics import MetricsConfig, MetricsRegistry, MetricsSnapshot
from core.notifications import (
    DeliveryOutcome,
    Notification,
    NotificationCandidate,
    Severity,
)
from core.platform import (
    ApiSurface,
    FeedMonitor,
    NotificationPlatform,
    PlatformConfig,
    PlatformState,
)
from core.processor import EventProcessor
from core.rules import PriceMoveConfig, PriceMoveEvaluator, RuleEvaluator

__all__: list[str] = [
    "ApiSurface",
    "DeliveryChannel",
    "DeliveryConfig",
    "DeliveryCoordinator",
    "DeliveryError",
    "DeliveryOutcome",
    "Dispatcher",
    "DispatcherConfig",
    "DispatcherHealth",
    "DispatcherStats",
    "DoubleStartError",
    "EvaluationError",
    "EventCategory",
    "EventProcessor",
    "FeedConnectionError",
    "FeedError",
    "FeedMonitor",
    "FeedReconnected",
    "FeedSignal",
    "Funding",
    "LargeOrder",
    "Liquidation",
    "MarketEvent",
    "MetricsConfig",
    "MetricsRegistry",
    "MetricsSnapshot",
    "Notification",
    "NotificationCandidate",
    "NotificationPlatform",
    "PipelineError",
    "PlatformConfig",
    "PlatformState",
    "PriceAlert",
    "PriceMoveConfig",
    "PriceMoveEvaluator",
    "RuleEvaluator",
    "Severity",
    "Side",
    "StartupError",
    "Trade",
    "parse_market_event",
]
