"""
Transport messages for the signaling protocol.

A client owns at most one receive transport. It asks the server to create one,
builds its local half from the returned ICE/DTLS material and, once its own
DTLS handshake starts, forwards the local DTLS parameters back to the server.
Success of the connect step is observed through the client transport's own
connection state, so the server never replies to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from mashumaro import field_options

from .types import ClientMessage, ServerMessage, WireModel


# Client -> Server: createWebRtcTransport
@dataclass
class CreateWebRtcTransportMessage(ClientMessage):
    """Message sent by the client to request a new receive transport."""

    action: Literal["createWebRtcTransport"] = "createWebRtcTransport"


# Server -> Client: transportCreated
@dataclass
class TransportCreatedPayload(WireModel):
    """Negotiation parameters of a freshly created transport."""

    transport_id: str = field(metadata=field_options(alias="transportId"))
    """Identifier of the transport, used in connectWebRtcTransport."""
    ice_parameters: dict[str, Any] = field(metadata=field_options(alias="iceParameters"))
    """ICE username fragment and password of the server side."""
    ice_candidates: list[dict[str, Any]] = field(metadata=field_options(alias="iceCandidates"))
    """ICE candidates the client may connect to."""
    dtls_parameters: dict[str, Any] = field(metadata=field_options(alias="dtlsParameters"))
    """DTLS role and certificate fingerprints of the server side."""


@dataclass
class TransportCreatedMessage(ServerMessage):
    """Message sent by the server in reply to createWebRtcTransport."""

    payload: TransportCreatedPayload
    action: Literal["transportCreated"] = "transportCreated"


# Client -> Server: connectWebRtcTransport
@dataclass
class ConnectWebRtcTransportPayload(WireModel):
    """Security parameters of the client side of a transport."""

    transport_id: str = field(metadata=field_options(alias="transportId"))
    """Transport to connect, must belong to the sending client."""
    dtls_parameters: dict[str, Any] = field(metadata=field_options(alias="dtlsParameters"))
    """DTLS role and certificate fingerprints of the client side."""


@dataclass
class ConnectWebRtcTransportMessage(ClientMessage):
    """Message sent by the client when its DTLS handshake needs the server."""

    payload: ConnectWebRtcTransportPayload
    action: Literal["connectWebRtcTransport"] = "connectWebRtcTransport"
