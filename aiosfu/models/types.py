"""Base message classes and enum types used by the signaling protocol."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


@dataclass
class WireModel(DataClassORJSONMixin):
    """Base class for payload objects, camelCase on the wire."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        serialize_by_alias = True
        omit_none = True


# Base message classes
@dataclass
class ClientMessage(DataClassORJSONMixin):
    """Base class for client messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="action", include_subtypes=True)
        serialize_by_alias = True
        omit_none = True


@dataclass
class ServerMessage(DataClassORJSONMixin):
    """Base class for server messages."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="action", include_subtypes=True)
        serialize_by_alias = True
        omit_none = True


# Enums


class MediaKind(Enum):
    """Kind of media carried by a producer or consumer."""

    AUDIO = "audio"
    VIDEO = "video"


class ConnectionState(Enum):
    """
    Connection state of a transport.

    Shared by the server-side engine transport and the client-side receive
    transport. FAILED and CLOSED are terminal.
    """

    NEW = "new"
    CONNECTING = "connecting"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        """Return True if no further transitions are possible."""
        return self in (ConnectionState.FAILED, ConnectionState.CLOSED)


class TransportKind(Enum):
    """Kind of transport held by the media engine."""

    WEBRTC = "webrtc"
    """Client-facing transport negotiated with ICE/DTLS."""
    PLAIN = "plain"
    """Plain RTP transport used for ingest."""
