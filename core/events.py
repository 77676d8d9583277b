"""Normalized market event models and feed signals.

This module defines the typed events the feed monitor produces and the
event processor consumes. Every model is Pydantic-based with
``frozen=True`` so an event can be shared across pipeline worker
threads without copying.

Tagged union:
    Each event model carries a ``kind`` literal. :data:`MarketEvent` is
    a discriminated union over the five models, so a raw JSON payload
    validates straight into the right class with
    :func:`parse_market_event`. Feed lifecycle signals
    (:class:`FeedError`, :class:`FeedReconnected`) share the same
    ``kind`` discriminator, which lets the feed deliver a single
    :data:`FeedSignal` stream instead of one callback per category.

Timestamp convention:
    ``timestamp_ms`` is the exchange timestamp in epoch milliseconds,
    as published by the upstream feed. Local receive time is not
    recorded on the event; notifications carry their own creation time.

Connection epoch:
    Each event carries a ``connection_epoch`` field (default 0) that
    increments on every feed reconnect. No sequence numbers exist
    upstream, so events may be duplicated or missing across a
    reconnect. Consumers can detect the boundary by comparing
    ``event.connection_epoch`` with the last one they saw.

Example:
    >>> from core.events import Trade, Side
    >>> event = Trade(
    ...     asset="BTC",
    ...     price=50000.0,
    ...     size=0.5,
    ...     side=Side.BUY,
    ...     timestamp_ms=1739500000000,
    ... )
    >>> event.category
    <EventCategory.TRADE: 'trade'>
    >>> event.notional
    25000.0
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EventCategory(str, Enum):
    """Market event categories emitted by the feed.

    The value doubles as the ``kind`` discriminator of the matching
    event model and as the MQTT topic suffix.
    """

    TRADE = "trade"
    LIQUIDATION = "liquidation"
    FUNDING = "funding"
    LARGE_ORDER = "large_order"
    PRICE_ALERT = "price_alert"


class Side(str, Enum):
    """Aggressor or position side."""

    BUY = "buy"
    SELL = "sell"


_HOURS_PER_YEAR: int = 24 * 365
"""Funding is quoted hourly; used by :attr:`Funding.annualized_rate`."""


# ---------------------------------------------------------------------------
# Event Models
# ---------------------------------------------------------------------------


class _EventBase(BaseModel):
    """Fields shared by every market event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    asset: str = Field(min_length=1, description="Asset identifier (e.g., 'BTC')")
    timestamp_ms: int = Field(
        ge=0,
        description="Exchange timestamp in epoch milliseconds",
    )
    connection_epoch: int = Field(
        default=0,
        ge=0,
        description=(
            "Reconnect version counter. Increments on each feed reconnect. "
            "0 = initial connection."
        ),
    )

    @property
    def category(self) -> EventCategory:
        """Category of this event, derived from its ``kind``."""
        return EventCategory(self.kind)  # type: ignore[attr-defined]


class Trade(_EventBase):
    """A public trade print.

    Attributes:
        price: Execution price. Positive.
        size: Executed size in base units. Positive.
        side: Aggressor side.
        trade_id: Exchange trade identifier or hash, if published.
    """

    kind: Literal["trade"] = "trade"
    price: float = Field(gt=0.0, description="Execution price")
    size: float = Field(gt=0.0, description="Executed size (base units)")
    side: Side = Field(description="Aggressor side")
    trade_id: str | None = Field(default=None, description="Exchange trade id")

    @property
    def notional(self) -> float:
        """Trade value in quote currency (``price * size``)."""
        return self.price * self.size


class Liquidation(_EventBase):
    """A forced position close.

    Attributes:
        price: Liquidation price. Positive.
        size: Liquidated size in base units. Positive.
        side: Side of the liquidated position.
    """

    kind: Literal["liquidation"] = "liquidation"
    price: float = Field(gt=0.0, description="Liquidation price")
    size: float = Field(gt=0.0, description="Liquidated size (base units)")
    side: Side = Field(description="Side of the liquidated position")

    @property
    def notional(self) -> float:
        """Liquidated value in quote currency."""
        return self.price * self.size


class Funding(_EventBase):
    """A funding rate update for a perpetual contract.

    Attributes:
        rate: Hourly funding rate as a fraction (0.0001 = 0.01%). Signed.
        premium: Mark/index premium as a fraction. Signed.
    """

    kind: Literal["funding"] = "funding"
    rate: float = Field(description="Hourly funding rate (fraction, signed)")
    premium: float = Field(default=0.0, description="Premium (fraction, signed)")

    @property
    def annualized_rate(self) -> float:
        """Hourly rate compounded linearly over one year."""
        return self.rate * _HOURS_PER_YEAR


class LargeOrder(_EventBase):
    """A resting order large enough to be reported by the feed.

    Attributes:
        price: Order price. Positive.
        size: Order size in base units. Positive.
        side: Order side.
    """

    kind: Literal["large_order"] = "large_order"
    price: float = Field(gt=0.0, description="Order price")
    size: float = Field(gt=0.0, description="Order size (base units)")
    side: Side = Field(description="Order side")

    @property
    def notional(self) -> float:
        """Order value in quote currency."""
        return self.price * self.size


class PriceAlert(_EventBase):
    """A price crossing published by the feed against a reference price.

    Attributes:
        price: Current price. Positive.
        reference_price: Price the move is measured against. Positive.
    """

    kind: Literal["price_alert"] = "price_alert"
    price: float = Field(gt=0.0, description="Current price")
    reference_price: float = Field(gt=0.0, description="Reference price")

    @property
    def change_pct(self) -> float:
        """Signed percentage move from ``reference_price`` to ``price``."""
        return (self.price - self.reference_price) / self.reference_price * 100.0


MarketEvent = Annotated[
    Union[Trade, Liquidation, Funding, LargeOrder, PriceAlert],
    Field(discriminator="kind"),
]
"""Closed tagged union of all market event models."""


# ---------------------------------------------------------------------------
# Feed Signals
# ---------------------------------------------------------------------------


class FeedError(BaseModel):
    """Feed-level failure signal (e.g., unexpected disconnect).

    Attributes:
        reason: Human-readable failure description.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["error"] = "error"
    reason: str = Field(min_length=1, description="Failure description")


class FeedReconnected(BaseModel):
    """Signal emitted after the feed re-established its connection.

    Attributes:
        connection_epoch: Epoch stamped on events from now on.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["reconnected"] = "reconnected"
    connection_epoch: int = Field(ge=0, description="New connection epoch")


FeedSignal = Union[
    Trade,
    Liquidation,
    Funding,
    LargeOrder,
    PriceAlert,
    FeedError,
    FeedReconnected,
]
"""Everything a feed monitor may deliver to its subscribers."""

MARKET_EVENT_TYPES: tuple[type, ...] = (
    Trade,
    Liquidation,
    Funding,
    LargeOrder,
    PriceAlert,
)
"""Event classes, for ``isinstance`` checks against :data:`MarketEvent`."""

_market_event_adapter: TypeAdapter = TypeAdapter(MarketEvent)


def parse_market_event(raw: bytes | str | dict) -> MarketEvent:
    """Validate a raw payload into a typed market event.

    Args:
        raw: JSON text/bytes or an already-decoded mapping. Must carry
            a ``kind`` field naming the event category.

    Returns:
        The matching event model instance.

    Raises:
        pydantic.ValidationError: If the payload is not a valid event.

    Example:
        >>> parse_market_event(
        ...     '{"kind": "funding", "asset": "ETH", '
        ...     '"timestamp_ms": 0, "rate": 0.0001}'
        ... ).category
        <EventCategory.FUNDING: 'funding'>
    """
    if isinstance(raw, dict):
        return _market_event_adapter.validate_python(raw)
    return _market_event_adapter.validate_json(raw)
