"""Error taxonomy for the alert pipeline.

Every error raised or recorded by the pipeline derives from
:class:`PipelineError`. Each subclass carries a stable ``kind`` string
used as the metrics key in :class:`core.metrics.MetricsRegistry`.

Propagation policy:
    Only startup-time errors (:class:`StartupError`,
    :class:`DoubleStartError`) reach the caller of
    :meth:`core.platform.NotificationPlatform.start`. Once the platform
    is running, :class:`EvaluationError`, :class:`DeliveryError` and
    :class:`FeedConnectionError` are recorded and logged but never
    escape the pipeline.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "pipeline"


class FeedConnectionError(PipelineError):
    """Upstream feed is unreachable or the connection dropped.

    Non-fatal at runtime: surfaces as a feed error signal and leaves
    reconnection to the feed monitor.
    """

    kind = "connection"


class EvaluationError(PipelineError):
    """Rule evaluation failed for a single event.

    Args:
        category: Event category being evaluated.
        asset: Asset identifier of the event.
        cause: Original exception raised by the evaluator.
    """

    kind = "evaluation"

    def __init__(self, category: str, asset: str, cause: BaseException) -> None:
        super().__init__(
            f"Rule evaluation failed for {category} event on {asset}: {cause!r}"
        )
        self.category: str = category
        self.asset: str = asset
        self.cause: BaseException = cause


class DeliveryError(PipelineError):
    """Delivery of one notification on one channel failed.

    Args:
        channel: Name of the delivery channel.
        notification_id: Identity of the notification.
        reason: Human-readable failure description.
    """

    kind = "delivery"

    def __init__(self, channel: str, notification_id: str, reason: str) -> None:
        super().__init__(
            f"Delivery of {notification_id} on channel {channel} failed: {reason}"
        )
        self.channel: str = channel
        self.notification_id: str = notification_id
        self.reason: str = reason


class StartupError(PipelineError):
    """Platform startup aborted. Completed steps were rolled back."""

    kind = "startup"


class DoubleStartError(PipelineError):
    """``start()`` called while the platform is not stopped."""

    kind = "double_start"
