"""MQTT feed monitor delivering typed market events.

This module connects to an MQTT broker that publishes one JSON market
event per message on ``{topic_prefix}/{category}`` topics, decodes each
payload into a :data:`~core.events.MarketEvent`, and hands it to the
registered signal handlers together with feed lifecycle signals.

Architecture note:
    Uses synchronous paho-mqtt with its own network thread
    (``loop_start``). Handlers run inline in that thread and must not
    block; :class:`~core.platform.NotificationPlatform` only pushes the
    event into its bounded queue.

Connection semantics:
    ``clean_session=True``: at-most-once, no QoS persistence, no replay
    on reconnect. Events published while disconnected are lost, and
    events around the reconnect may be seen twice. Each successful
    reconnect increments ``connection_epoch``, which is stamped on every
    event decoded afterwards.

Reconnection:
    The initial ``connect()`` is attempted once; failure raises
    :class:`~core.errors.FeedConnectionError`. After that, paho's network
    loop reconnects on its own with exponential backoff between
    ``reconnect_min_delay`` and ``reconnect_max_delay``. An unexpected
    disconnect emits :class:`~core.events.FeedError`; the following
    reconnect emits :class:`~core.events.FeedReconnected`.

Error isolation:
    Decode errors and handler errors are counted separately. Logging of
    both is rate limited: the first 10 with a stack trace, then every
    1000th.
"""

import json
import logging
import threading
from enum import Enum
from typing import Literal

import paho.mqtt.client as mqtt
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors import FeedConnectionError
from core.events import (
    EventCategory,
    FeedError,
    FeedReconnected,
    FeedSignal,
    parse_market_event,
)
from core.platform import SignalHandler

_LOG_FIRST_N: int = 10
"""Log full stack trace for the first N errors of each type."""

_LOG_EVERY_N: int = 1000
"""After the first N errors, log every Nth occurrence."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class FeedState(str, Enum):
    """Connection state machine for :class:`MQTTFeedMonitor`.

    States:
        INIT: Created, ``connect()`` not yet called.
        CONNECTING: ``connect()`` in progress, awaiting CONNACK.
        CONNECTED: Connected and subscribed.
        RECONNECTING: Dropped unexpectedly; paho is reconnecting.
        DISCONNECTED: ``disconnect()`` called or ``connect()`` failed.
            ``connect()`` may be called again.
    """

    INIT = "INIT"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    DISCONNECTED = "DISCONNECTED"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MQTTFeedConfig(BaseModel):
    """Configuration for :class:`MQTTFeedMonitor`.

    Attributes:
        host: Broker hostname.
        port: Broker port. Default 1883.
        transport: ``"tcp"`` or ``"websockets"``.
        websocket_path: Request path when ``transport="websockets"``.
        use_tls: Enable TLS with the system CA bundle.
        username: Optional broker username.
        password: Optional broker password.
        client_id: MQTT client id. Empty lets the broker assign one.
        topic_prefix: Topics are ``{topic_prefix}/{category}``.
        keepalive: MQTT keepalive interval in seconds.
        connect_timeout_seconds: How long ``connect()`` waits for the
            broker to acknowledge the connection.
        reconnect_min_delay: Minimum reconnect backoff in seconds.
        reconnect_max_delay: Maximum reconnect backoff in seconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(min_length=1, description="Broker hostname")
    port: int = Field(default=1883, ge=1, le=65535, description="Broker port")
    transport: Literal["tcp", "websockets"] = Field(default="tcp")
    websocket_path: str = Field(default="/mqtt")
    use_tls: bool = Field(default=False)
    username: str | None = Field(default=None)
    password: str | None = Field(default=None)
    client_id: str = Field(default="")
    topic_prefix: str = Field(default="market", min_length=1)
    keepalive: int = Field(default=30, ge=5, le=300)
    connect_timeout_seconds: float = Field(default=10.0, gt=0.0)
    reconnect_min_delay: int = Field(default=1, ge=1)
    reconnect_max_delay: int = Field(default=30, ge=1)

    @field_validator("topic_prefix")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        """Allow ``"market/"`` and ``"market"`` interchangeably."""
        stripped: str = v.rstrip("/")
        if not stripped:
            raise ValueError("topic_prefix must not be only slashes")
        return stripped


# ---------------------------------------------------------------------------
# Feed Monitor
# ---------------------------------------------------------------------------


class MQTTFeedMonitor:
    """Feed monitor over MQTT publishing JSON market events.

    Args:
        config: Broker and topic configuration.
        logger: Logger for connection and decode messages. Defaults to
            the module logger.

    Example::

        feed = MQTTFeedMonitor(MQTTFeedConfig(host="localhost"))
        feed.subscribe(print)
        feed.connect()
        # ... signals arrive on the paho network thread ...
        feed.disconnect()
    """

    def __init__(
        self,
        config: MQTTFeedConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config: MQTTFeedConfig = config
        self._logger: logging.Logger = logger or logging.getLogger(__name__)
        self._topics: dict[str, EventCategory] = {
            f"{config.topic_prefix}/{category.value}": category
            for category in EventCategory
        }

        self._client: mqtt.Client | None = None

        # Signal handlers
        self._handlers: list[SignalHandler] = []
        self._handler_lock: threading.Lock = threading.Lock()

        # State machine
        self._state: FeedState = FeedState.INIT
        self._state_lock: threading.Lock = threading.Lock()
        self._connack: threading.Event = threading.Event()
        self._connect_failure: str | None = None
        self._session_connected: bool = False
        self._connection_count: int = 0
        self._epoch: int = 0

        # Counters (guarded by _counter_lock)
        self._messages_received: int = 0
        self._decode_errors: int = 0
        self._handler_errors: int = 0
        self._reconnect_count: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> FeedState:
        """Current connection state."""
        with self._state_lock:
            return self._state

    @property
    def connection_epoch(self) -> int:
        """Epoch stamped on events decoded now."""
        with self._state_lock:
            return self._epoch

    def is_connected(self) -> bool:
        """Whether the broker connection is currently up."""
        with self._state_lock:
            return self._state == FeedState.CONNECTED

    def subscribe(self, handler: SignalHandler) -> None:
        """Register a handler for every signal. Must not block."""
        with self._handler_lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: SignalHandler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        with self._handler_lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def connect(self) -> None:
        """Connect to the broker and wait for the acknowledgement.

        Raises:
            RuntimeError: If already connecting or connected.
            FeedConnectionError: If the broker is unreachable, refuses
                the connection, or does not answer in time.
        """
        with self._state_lock:
            if self._state not in (FeedState.INIT, FeedState.DISCONNECTED):
                raise RuntimeError(f"Cannot connect: feed is in {self._state} state")
            self._state = FeedState.CONNECTING
            self._session_connected = False
            self._connect_failure = None
            self._connack.clear()

        client: mqtt.Client = self._create_client()
        self._client = client
        try:
            client.connect(
                host=self._config.host,
                port=self._config.port,
                keepalive=self._config.keepalive,
            )
        except (OSError, ValueError) as exc:
            self._abort_connect()
            raise FeedConnectionError(
                f"Cannot reach broker {self._config.host}:{self._config.port}: {exc}"
            ) from exc

        client.loop_start()
        if not self._connack.wait(timeout=self._config.connect_timeout_seconds):
            self._abort_connect()
            raise FeedConnectionError(
                f"Broker {self._config.host}:{self._config.port} did not "
                f"acknowledge within {self._config.connect_timeout_seconds:g}s"
            )
        if self._connect_failure is not None:
            reason: str = self._connect_failure
            self._abort_connect()
            raise FeedConnectionError(f"Broker refused connection: {reason}")

        self._logger.info(
            "Feed connected to %s:%d (prefix=%s)",
            self._config.host,
            self._config.port,
            self._config.topic_prefix,
        )

    def disconnect(self) -> None:
        """Disconnect and stop the network loop. Idempotent."""
        with self._state_lock:
            if self._state in (FeedState.INIT, FeedState.DISCONNECTED):
                return
            self._state = FeedState.DISCONNECTED

        self._stop_client()
        with self._counter_lock:
            msgs: int = self._messages_received
            errs: int = self._decode_errors
            reconns: int = self._reconnect_count
        self._logger.info(
            "Feed disconnected (messages=%d, decode_errors=%d, reconnects=%d)",
            msgs,
            errs,
            reconns,
        )

    def stats(self) -> dict[str, str | int | bool]:
        """Return connection state and counters."""
        with self._state_lock:
            state: str = self._state.value
            epoch: int = self._epoch
        with self._counter_lock:
            return {
                "state": state,
                "connected": state == FeedState.CONNECTED.value,
                "connection_epoch": epoch,
                "messages_received": self._messages_received,
                "decode_errors": self._decode_errors,
                "handler_errors": self._handler_errors,
                "reconnect_count": self._reconnect_count,
            }

    # ------------------------------------------------------------------
    # MQTT Client Factory
    # ------------------------------------------------------------------

    def _create_client(self) -> mqtt.Client:
        client: mqtt.Client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._config.client_id,
            clean_session=True,
            transport=self._config.transport,
        )
        if self._config.transport == "websockets":
            client.ws_set_options(path=self._config.websocket_path)
        if self._config.use_tls:
            client.tls_set()
        if self._config.username is not None:
            client.username_pw_set(self._config.username, self._config.password)
        client.reconnect_delay_set(
            min_delay=self._config.reconnect_min_delay,
            max_delay=self._config.reconnect_max_delay,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _stop_client(self) -> None:
        client: mqtt.Client | None = self._client
        self._client = None
        if client is None:
            return
        try:
            client.disconnect()
        except Exception:
            self._logger.debug("Exception during disconnect", exc_info=True)
        try:
            client.loop_stop()
        except Exception:
            self._logger.debug("Exception during loop_stop", exc_info=True)

    def _abort_connect(self) -> None:
        with self._state_lock:
            self._state = FeedState.DISCONNECTED
        self._stop_client()

    # ------------------------------------------------------------------
    # MQTT Callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: object,
        reason_code: object,
        properties: object = None,
    ) -> None:
        """Handle CONNACK: subscribe, bump the epoch on reconnect."""
        if getattr(reason_code, "is_failure", False):
            with self._state_lock:
                first: bool = not self._session_connected
            if first:
                self._connect_failure = str(reason_code)
                self._connack.set()
                return
            self._logger.error("Feed reconnect refused: %s", reason_code)
            self._emit(FeedError(reason=f"Reconnect refused: {reason_code}"))
            return

        with self._state_lock:
            if self._state == FeedState.DISCONNECTED:
                return
            reconnected: bool = self._session_connected
            if self._connection_count > 0:
                self._epoch += 1
            self._connection_count += 1
            self._session_connected = True
            self._state = FeedState.CONNECTED
            epoch: int = self._epoch

        for topic in self._topics:
            client.subscribe(topic)
        self._connack.set()

        if reconnected:
            with self._counter_lock:
                self._reconnect_count += 1
            self._logger.info("Feed reconnected (epoch=%d)", epoch)
            self._emit(FeedReconnected(connection_epoch=epoch))

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: object,
        disconnect_flags: object,
        reason_code: object,
        properties: object = None,
    ) -> None:
        """Report unexpected drops; paho's loop reconnects on its own."""
        with self._state_lock:
            if self._state in (FeedState.DISCONNECTED, FeedState.CONNECTING):
                return
            self._state = FeedState.RECONNECTING

        self._logger.warning("Unexpected feed disconnect: %s", reason_code)
        self._emit(FeedError(reason=f"Unexpected disconnect: {reason_code}"))

    def _on_message(
        self,
        client: mqtt.Client,
        userdata: object,
        message: mqtt.MQTTMessage,
    ) -> None:
        """Decode one JSON payload and emit the typed event."""
        with self._counter_lock:
            self._messages_received += 1

        topic: str = message.topic
        category: EventCategory | None = self._topics.get(topic)
        if category is None:
            return

        try:
            data: object = json.loads(message.payload)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            if data.setdefault("kind", category.value) != category.value:
                raise ValueError(f"kind {data['kind']!r} published on {topic}")
            if isinstance(data.get("asset"), str):
                data["asset"] = data["asset"].upper()
            data["connection_epoch"] = self.connection_epoch
            event: FeedSignal = parse_market_event(data)
        except Exception:
            with self._counter_lock:
                self._decode_errors += 1
                count: int = self._decode_errors
            self._log_rate_limited("Failed to decode event on %s", topic, count)
            return

        self._emit(event)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit(self, signal: FeedSignal) -> None:
        with self._handler_lock:
            handlers: list[SignalHandler] = list(self._handlers)
        for handler in handlers:
            try:
                handler(signal)
            except Exception:
                with self._counter_lock:
                    self._handler_errors += 1
                    count: int = self._handler_errors
                self._log_rate_limited("Feed handler error for %s", signal.kind, count)

    def _log_rate_limited(self, message: str, subject: str, count: int) -> None:
        if count <= _LOG_FIRST_N:
            self._logger.exception(message + " (%d/%d)", subject, count, _LOG_FIRST_N)
        elif count % _LOG_EVERY_N == 0:
            self._logger.error(message + " (%d total)", subject, count)
