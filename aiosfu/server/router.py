"""Maps inbound signaling messages to session and engine state transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable

from aiosfu.exceptions import (
    EngineFailureError,
    IncompatibleError,
    NoTransportError,
    NotFoundError,
    UnknownActionError,
)
from aiosfu.models.consumer import (
    ConsumeMessage,
    ConsumePayload,
    ConsumerReadyMessage,
    ConsumerReadyPayload,
)
from aiosfu.models.core import (
    GetRouterRtpCapabilitiesMessage,
    RouterCapabilitiesMessage,
    ServerInfoMessage,
    ServerInfoPayload,
    SetRtpCapabilitiesMessage,
)
from aiosfu.models.transport import (
    ConnectWebRtcTransportMessage,
    ConnectWebRtcTransportPayload,
    CreateWebRtcTransportMessage,
    TransportCreatedMessage,
    TransportCreatedPayload,
)
from aiosfu.models.types import ClientMessage, ServerMessage

from .catalog import StreamCatalog
from .engine import MediaEngine
from .session import ClientSession

logger = logging.getLogger(__name__)

SendCallback = Callable[[ServerMessage], None]


class SignalingRouter:
    """
    Authoritative handler of the signaling protocol.

    The router is the only writer of a session's resource maps. Every handler
    either completes or raises an SfuError whose message is meant for the
    client; turning that into an error event is up to the caller.
    """

    def __init__(self, engine: MediaEngine, catalog: StreamCatalog) -> None:
        """Initialize the router with the process-wide engine and catalog."""
        self._engine = engine
        self._catalog = catalog

    def server_info(self) -> ServerInfoMessage:
        """Return the message pushed to every client on connection."""
        return ServerInfoMessage(
            payload=ServerInfoPayload(
                router_rtp_capabilities=self._engine.get_receive_capabilities(),
                available_streams=self._catalog.list_available(),
            )
        )

    async def dispatch(
        self, session: ClientSession, message: ClientMessage, send: SendCallback
    ) -> None:
        """Handle one message of a session to completion."""
        match message:
            case SetRtpCapabilitiesMessage(payload=payload):
                session.rtp_capabilities = payload.rtp_capabilities
                logger.debug("Stored RTP capabilities for client %s", session.id)
            case GetRouterRtpCapabilitiesMessage():
                send(RouterCapabilitiesMessage(payload=self._engine.get_receive_capabilities()))
            case CreateWebRtcTransportMessage():
                await self._create_transport(session, send)
            case ConnectWebRtcTransportMessage(payload=payload):
                await self._connect_transport(session, payload)
            case ConsumeMessage(payload=payload):
                await self._consume(session, payload, send)
            case _:
                raise UnknownActionError(type(message).__name__)

    async def _create_transport(self, session: ClientSession, send: SendCallback) -> None:
        try:
            transport = await self._engine.create_transport(session.id)
        except EngineFailureError as err:
            raise EngineFailureError(f"Failed to create transport: {err}") from err

        if not session.add_transport(transport):
            return
        logger.info("Created WebRtcTransport %s for client %s", transport.id, session.id)
        send(
            TransportCreatedMessage(
                payload=TransportCreatedPayload(
                    transport_id=transport.id,
                    ice_parameters=transport.ice_parameters,
                    ice_candidates=transport.ice_candidates,
                    dtls_parameters=transport.dtls_parameters,
                )
            )
        )

    async def _connect_transport(
        self, session: ClientSession, payload: ConnectWebRtcTransportPayload
    ) -> None:
        transport = session.get_transport(payload.transport_id)
        try:
            await self._engine.connect_transport(transport, payload.dtls_parameters)
        except EngineFailureError as err:
            raise EngineFailureError(
                f"Failed to connect transport {payload.transport_id}: {err}"
            ) from err
        # No reply, the client observes its own transport state
        logger.info("WebRtcTransport %s connected for client %s", transport.id, session.id)

    async def _consume(
        self, session: ClientSession, payload: ConsumePayload, send: SendCallback
    ) -> None:
        stream_id = payload.stream_id
        source = self._catalog.get_source_handle(stream_id)
        if source is None:
            raise NotFoundError(f"Stream {stream_id} not found or not active")

        transport = session.client_transport()
        if transport is None:
            raise NoTransportError(f"Client {session.id} does not have an active WebRtcTransport")

        rtp_capabilities = session.rtp_capabilities
        if rtp_capabilities is None or not self._engine.can_consume(source, rtp_capabilities):
            raise IncompatibleError(f"Client {session.id} cannot consume stream {stream_id}")

        try:
            consumer = await self._engine.create_consumer(
                transport, source, rtp_capabilities, paused=True
            )
        except (EngineFailureError, IncompatibleError) as err:
            raise EngineFailureError(f"Failed to consume stream {stream_id}: {err}") from err

        if not session.add_consumer(consumer):
            if session.closed:
                return
            raise EngineFailureError(f"Failed to consume stream {stream_id}: consumer closed")
        logger.info(
            "Created consumer %s for client %s consuming %s (producer %s)",
            consumer.id,
            session.id,
            stream_id,
            source.id,
        )

        send(
            ConsumerReadyMessage(
                payload=ConsumerReadyPayload(
                    producer_id=source.id,
                    consumer_id=consumer.id,
                    kind=consumer.kind,
                    rtp_parameters=consumer.rtp_parameters,
                    transport_id=transport.id,
                    stream_id=stream_id,
                )
            )
        )
        # Created paused so media only flows once the client was told about it
        await consumer.resume()
        logger.debug("Resumed consumer %s", consumer.id)
