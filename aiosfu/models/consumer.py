"""
Consumer messages for the signaling protocol.

These messages subscribe a client to one stream at a time. The server creates
the consumer paused, announces it with consumerReady and resumes it right
after, and tells the client with consumerClosed when a consumer goes away for
a reason the client did not initiate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from mashumaro import field_options

from .types import ClientMessage, MediaKind, ServerMessage, WireModel


# Client -> Server: consume
@dataclass
class ConsumePayload(WireModel):
    """Stream the client wants to listen to."""

    stream_id: str = field(metadata=field_options(alias="streamId"))


@dataclass
class ConsumeMessage(ClientMessage):
    """Message sent by the client to start listening to a stream."""

    payload: ConsumePayload
    action: Literal["consume"] = "consume"


# Server -> Client: consumerReady
@dataclass
class ConsumerReadyPayload(WireModel):
    """Everything the client needs to build its local consumer."""

    producer_id: str = field(metadata=field_options(alias="producerId"))
    """Source the consumer reads from."""
    consumer_id: str = field(metadata=field_options(alias="consumerId"))
    """Identifier of the server-side consumer."""
    kind: MediaKind
    """Media kind, always audio in this system."""
    rtp_parameters: dict[str, Any] = field(metadata=field_options(alias="rtpParameters"))
    """RTP parameters the client must receive with."""
    transport_id: str = field(metadata=field_options(alias="transportId"))
    """Transport the consumer was created on."""
    stream_id: str = field(metadata=field_options(alias="streamId"))
    """Stream that was requested."""


@dataclass
class ConsumerReadyMessage(ServerMessage):
    """Message sent by the server once a consumer has been created."""

    payload: ConsumerReadyPayload
    action: Literal["consumerReady"] = "consumerReady"


# Server -> Client: consumerClosed
@dataclass
class ConsumerClosedPayload(WireModel):
    """Consumer that was closed on the server."""

    consumer_id: str = field(metadata=field_options(alias="consumerId"))


@dataclass
class ConsumerClosedMessage(ServerMessage):
    """Message sent by the server when a consumer closed without the client asking."""

    payload: ConsumerClosedPayload
    action: Literal["consumerClosed"] = "consumerClosed"
