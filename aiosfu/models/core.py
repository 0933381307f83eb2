"""Core messages for the signaling protocol.

This module contains the messages that establish what a client may ask for:
the server info pushed on connection, the capability exchange and the generic
error event used for every server-side failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from mashumaro import field_options

from .types import ClientMessage, ServerMessage, WireModel


@dataclass
class StreamInfo(WireModel):
    """Public description of a stream that can be listened to."""

    id: str
    """Stable identifier of the stream."""
    name: str
    """Human-readable name of the stream."""


# Server -> Client: serverInfo
@dataclass
class ServerInfoPayload(WireModel):
    """Receive capabilities of the engine and the current stream catalog."""

    router_rtp_capabilities: dict[str, Any] = field(
        metadata=field_options(alias="routerRtpCapabilities")
    )
    """Capabilities the client device is loaded with."""
    available_streams: list[StreamInfo] = field(
        metadata=field_options(alias="availableStreams")
    )
    """Streams the client may request."""


@dataclass
class ServerInfoMessage(ServerMessage):
    """Message pushed by the server as soon as a connection is accepted."""

    payload: ServerInfoPayload
    action: Literal["serverInfo"] = "serverInfo"


# Server -> Client: routerCapabilities
@dataclass
class RouterCapabilitiesMessage(ServerMessage):
    """Reply to an explicit request for the engine capabilities."""

    payload: dict[str, Any]
    action: Literal["routerCapabilities"] = "routerCapabilities"


# Server -> Client: error
@dataclass
class ErrorMessage(ServerMessage):
    """Generic failure event, payload is a human-readable message."""

    payload: str
    action: Literal["error"] = "error"


# Client -> Server: setRtpCapabilities
@dataclass
class SetRtpCapabilitiesPayload(WireModel):
    """Receive capabilities declared by the client device."""

    rtp_capabilities: dict[str, Any] = field(metadata=field_options(alias="rtpCapabilities"))


@dataclass
class SetRtpCapabilitiesMessage(ClientMessage):
    """Message sent by the client once its device is loaded."""

    payload: SetRtpCapabilitiesPayload
    action: Literal["setRtpCapabilities"] = "setRtpCapabilities"


# Client -> Server: getRouterRtpCapabilities
@dataclass
class GetRouterRtpCapabilitiesMessage(ClientMessage):
    """Message sent by the client to request the engine capabilities again."""

    action: Literal["getRouterRtpCapabilities"] = "getRouterRtpCapabilities"
