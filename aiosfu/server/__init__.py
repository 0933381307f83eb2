"""
Signaling server of the audio relay.

SfuServer is the entry point for listeners, responsible for:
- Handing out client-facing transports and consumers per connected client
- Releasing every resource of a client when it disconnects
"""

__all__ = [
    "ClientConnectedEvent",
    "ClientDisconnectedEvent",
    "ClientSession",
    "Consumer",
    "ConsumerCloseReason",
    "InMemoryMediaEngine",
    "MediaEngine",
    "Producer",
    "SessionRegistry",
    "SfuConnection",
    "SfuEvent",
    "SfuServer",
    "SignalingRouter",
    "StreamCatalog",
    "Transport",
    "WebRtcTransport",
]

from .catalog import StreamCatalog
from .connection import SfuConnection
from .engine import (
    Consumer,
    ConsumerCloseReason,
    MediaEngine,
    Producer,
    Transport,
    WebRtcTransport,
)
from .memory_engine import InMemoryMediaEngine
from .router import SignalingRouter
from .server import ClientConnectedEvent, ClientDisconnectedEvent, SfuEvent, SfuServer
from .session import ClientSession, SessionRegistry
