"""Models for the signaling protocol."""

from __future__ import annotations

__all__ = [
    "CLIENT_MESSAGE_TYPES",
    "SERVER_MESSAGE_TYPES",
    "ClientMessage",
    "ConnectionState",
    "MediaKind",
    "ServerMessage",
    "TransportKind",
    "consumer",
    "core",
    "decode_client_message",
    "decode_server_message",
    "transport",
    "types",
]
from typing import Any, TypeVar

import orjson
from mashumaro.exceptions import MissingField

from aiosfu.exceptions import ProtocolError, UnknownActionError

from . import consumer, core, transport, types
from .types import ClientMessage, ConnectionState, MediaKind, ServerMessage, TransportKind

_MessageT = TypeVar("_MessageT", ClientMessage, ServerMessage)

CLIENT_MESSAGE_TYPES: dict[str, type[ClientMessage]] = {
    message_type.action: message_type
    for message_type in (
        core.SetRtpCapabilitiesMessage,
        core.GetRouterRtpCapabilitiesMessage,
        transport.CreateWebRtcTransportMessage,
        transport.ConnectWebRtcTransportMessage,
        consumer.ConsumeMessage,
    )
}
"""Every message a client may send, keyed by action."""

SERVER_MESSAGE_TYPES: dict[str, type[ServerMessage]] = {
    message_type.action: message_type
    for message_type in (
        core.ServerInfoMessage,
        core.RouterCapabilitiesMessage,
        core.ErrorMessage,
        transport.TransportCreatedMessage,
        consumer.ConsumerReadyMessage,
        consumer.ConsumerClosedMessage,
    )
}
"""Every message a server may send, keyed by action."""


def _decode(
    data: str | bytes, base: type[_MessageT], message_types: dict[str, type[_MessageT]]
) -> _MessageT:
    try:
        raw: Any = orjson.loads(data)
    except orjson.JSONDecodeError as err:
        raise ProtocolError(f"Invalid message: {err}") from err
    if not isinstance(raw, dict):
        raise ProtocolError("Invalid message: expected a JSON object")

    action = raw.get("action")
    message_type = message_types.get(action) if isinstance(action, str) else None
    if message_type is None:
        raise UnknownActionError(action)
    if raw.get("payload") is None:
        # Messages without a payload may be sent with "payload": null
        raw.pop("payload", None)

    try:
        # The discriminator on the base class picks the message type by action
        return base.from_dict(raw)
    except (MissingField, ValueError, TypeError) as err:
        # ValueError covers InvalidFieldValue and an unmatched variant
        raise ProtocolError(f"Invalid payload for {action}: {err}") from err


def decode_client_message(data: str | bytes) -> ClientMessage:
    """
    Decode a JSON frame sent by a client.

    Args:
        data: Raw text of the WebSocket frame.

    Returns:
        The decoded message, one of CLIENT_MESSAGE_TYPES.

    Raises:
        UnknownActionError: If the action is missing or not recognized.
        ProtocolError: If the frame is not valid JSON or the payload is malformed.
    """
    return _decode(data, ClientMessage, CLIENT_MESSAGE_TYPES)


def decode_server_message(data: str | bytes) -> ServerMessage:
    """
    Decode a JSON frame sent by the server.

    Raises:
        UnknownActionError: If the action is missing or not recognized.
        ProtocolError: If the frame is not valid JSON or the payload is malformed.
    """
    return _decode(data, ServerMessage, SERVER_MESSAGE_TYPES)
