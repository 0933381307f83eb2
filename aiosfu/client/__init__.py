"""Public interface for the listener client package."""

from .channel import MAX_RECONNECT_ATTEMPTS, RECONNECT_DELAY, MessageListener, SignalingChannel
from .device import (
    ConnectionStateChangedEvent,
    Device,
    LocalConsumer,
    LocalConsumerClosedEvent,
    LocalEvent,
    PlaybackSink,
    RecvTransport,
    TrackEndedEvent,
    TransportConnectEvent,
)
from .session import (
    ConnectionStateChangeEvent,
    DeviceReadyEvent,
    InteractionRequiredEvent,
    ListenerSession,
    SessionEvent,
    StatsClearedEvent,
    StatsEvent,
    StatusEvent,
    StreamsAvailableEvent,
)
from .stats import STATS_INTERVAL, StatsTracker, StreamStats

__all__ = [
    "MAX_RECONNECT_ATTEMPTS",
    "RECONNECT_DELAY",
    "STATS_INTERVAL",
    "ConnectionStateChangeEvent",
    "ConnectionStateChangedEvent",
    "Device",
    "DeviceReadyEvent",
    "InteractionRequiredEvent",
    "ListenerSession",
    "LocalConsumer",
    "LocalConsumerClosedEvent",
    "LocalEvent",
    "MessageListener",
    "PlaybackSink",
    "RecvTransport",
    "SessionEvent",
    "SignalingChannel",
    "StatsClearedEvent",
    "StatsEvent",
    "StatsTracker",
    "StatusEvent",
    "StreamStats",
    "StreamsAvailableEvent",
    "TrackEndedEvent",
    "TransportConnectEvent",
]
