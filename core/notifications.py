"""Notification records produced from rule matches.

A :class:`NotificationCandidate` is what a rule evaluator returns: the
severity and text of one match, without identity. The event processor
turns each candidate into a :class:`Notification` by attaching a unique
id, the source event and a creation timestamp. Notifications are frozen
and never mutated after creation; the delivery coordinator hands the
same instance to every channel.

:class:`DeliveryOutcome` records the result of one delivery attempt of
one notification on one channel.
"""

import time
import uuid
from enum import Enum
from types import MappingProxyType
from typing import Annotated, Mapping

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer

from core.events import EventCategory, MarketEvent

DetailValue = float | int | str
"""Allowed value types in structured notification details."""


def _freeze(details: Mapping[str, DetailValue]) -> Mapping[str, DetailValue]:
    return MappingProxyType(dict(details))


def _empty_details() -> Mapping[str, DetailValue]:
    return MappingProxyType({})


Details = Annotated[
    Mapping[str, DetailValue],
    AfterValidator(_freeze),
    PlainSerializer(lambda details: dict(details)),
]
"""Read-only details mapping; serializes as a plain dict."""


class Severity(str, Enum):
    """Notification severity, ordered from least to most urgent."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class NotificationCandidate(BaseModel):
    """A single rule match returned by a rule evaluator.

    Attributes:
        severity: How urgent the match is.
        message: Human-readable alert text. Non-empty.
        details: Structured values describing the match (thresholds,
            observed values).
        rule_id: Identifier of the rule that matched, if any.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    severity: Severity = Field(default=Severity.INFO, description="Severity")
    message: str = Field(min_length=1, description="Alert text")
    details: Details = Field(
        default_factory=_empty_details,
        description="Structured match details",
    )
    rule_id: str | None = Field(default=None, description="Matching rule id")


class Notification(BaseModel):
    """Immutable notification ready for delivery.

    Attributes:
        notification_id: Unique identity (uuid4 hex).
        category: Category of the source event.
        severity: Severity copied from the candidate.
        asset: Subject asset of the source event.
        message: Human-readable alert text.
        event: The source market event (typed payload).
        details: Structured match details from the candidate.
        rule_id: Identifier of the matching rule, if any.
        created_ts: Wall-clock creation time (``time.time_ns()``).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    notification_id: str = Field(min_length=1, description="Unique identity")
    category: EventCategory = Field(description="Source event category")
    severity: Severity = Field(description="Severity")
    asset: str = Field(min_length=1, description="Subject asset")
    message: str = Field(min_length=1, description="Alert text")
    event: MarketEvent = Field(description="Source market event")
    details: Details = Field(default_factory=_empty_details)
    rule_id: str | None = Field(default=None)
    created_ts: int = Field(ge=0, description="Creation time (time.time_ns())")

    @classmethod
    def from_candidate(
        cls,
        event: MarketEvent,
        candidate: NotificationCandidate,
    ) -> "Notification":
        """Build a notification from one evaluator candidate.

        Args:
            event: The event the candidate was produced for.
            candidate: The rule match.

        Returns:
            A new notification with a fresh id and creation timestamp.
        """
        return cls(
            notification_id=uuid.uuid4().hex,
            category=event.category,
            severity=candidate.severity,
            asset=event.asset,
            message=candidate.message,
            event=event,
            details=dict(candidate.details),
            rule_id=candidate.rule_id,
            created_ts=time.time_ns(),
        )


class DeliveryOutcome(BaseModel):
    """Result of one delivery attempt on one channel.

    Attributes:
        notification_id: Identity of the delivered notification.
        channel: Name of the channel attempted.
        success: Whether the channel accepted the notification.
        reason: Failure description. ``None`` on success.
        elapsed_ms: Time from submission to completion or timeout.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    notification_id: str
    channel: str
    success: bool
    reason: str | None = None
    elapsed_ms: float = Field(default=0.0, ge=0.0)
