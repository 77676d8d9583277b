"""Infrastructure layer for the market alert pipeline.

This package provides the MQTT feed monitor, the logging delivery
channel, and the process runner that wires them into the platform.
"""

from infra.log_channel import LoggingChannel
from infra.mqtt_feed import FeedState, MQTTFeedConfig, MQTTFeedMonitor

__all__: list[str] = [
    "FeedState",
    "LoggingChannel",
    "MQTTFeedConfig",
    "MQTTFeedMonitor",
]
