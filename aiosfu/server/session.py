"""Per-client ownership of engine resources and the registry of live sessions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from typing import Any

from aiosfu.exceptions import NotFoundError, WrongTypeError
from aiosfu.models.types import ConnectionState, TransportKind

from .engine import (
    Consumer,
    ConsumerCloseReason,
    ConsumerClosedEvent,
    EngineEvent,
    ProducerClosedEvent,
    Transport,
    TransportClosedEvent,
    TransportStateChangedEvent,
    WebRtcTransport,
)

logger = logging.getLogger(__name__)

ConsumerClosedCallback = Callable[[str], None]


class ClientSession:
    """
    Resources owned by one connected client.

    The session holds at most one client-facing transport and at most one
    consumer: registering a new transport closes the previous one, registering
    a new consumer closes the previous consumer first. Closing a transport
    closes every consumer bound to it. Both maps are empty right after creation
    and right after close().
    """

    def __init__(
        self,
        session_id: str,
        *,
        on_consumer_closed: ConsumerClosedCallback | None = None,
    ) -> None:
        """
        Initialize an empty session.

        Args:
            session_id: Opaque identity of the session.
            on_consumer_closed: Called with the consumer id when a consumer
                closed for a reason the client did not initiate.
        """
        self.id = session_id
        self.transports: dict[str, Transport] = {}
        self.consumers: dict[str, Consumer] = {}
        self.rtp_capabilities: dict[str, Any] | None = None
        self._on_consumer_closed = on_consumer_closed
        self._unsubscribe: dict[str, Callable[[], None]] = {}
        self._closed = False
        self._logger = logger.getChild(session_id)

    @property
    def closed(self) -> bool:
        """Return True once the session was closed."""
        return self._closed

    def set_consumer_closed_callback(self, callback: ConsumerClosedCallback | None) -> None:
        """Set the callback notified about consumers closed without the client asking."""
        self._on_consumer_closed = callback

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------
    def add_transport(self, transport: Transport) -> bool:
        """
        Register a transport and wire its close and state subscriptions.

        A previously registered client-facing transport is closed after the
        new one is registered.

        Returns:
            False if the session was already closed, the transport is closed then.
        """
        if self._closed:
            self._logger.debug("Session closed, dropping transport %s", transport.id)
            transport.close()
            return False
        if transport.closed:
            return False

        previous = [
            existing
            for existing in self.transports.values()
            if existing.kind is TransportKind.WEBRTC and transport.kind is TransportKind.WEBRTC
        ]
        self.transports[transport.id] = transport

        def on_event(event: EngineEvent) -> None:
            match event:
                case TransportStateChangedEvent(state=state):
                    self._logger.info("Transport %s state changed to %s", transport.id, state.value)
                    if state.terminal:
                        self._logger.warning("Transport %s is %s, closing it", transport.id, state.value)
                        transport.close()
                case TransportClosedEvent():
                    self._handle_transport_closed(transport)

        self._unsubscribe[transport.id] = transport.add_event_listener(on_event)

        for existing in previous:
            self._logger.info("Replacing transport %s with %s", existing.id, transport.id)
            existing.close()
        return True

    def _handle_transport_closed(self, transport: Transport) -> None:
        if self.transports.get(transport.id) is not transport:
            return
        del self.transports[transport.id]
        self._logger.info("Transport %s closed", transport.id)
        for consumer in list(self.consumers.values()):
            if consumer.transport_id == transport.id:
                consumer.close(ConsumerCloseReason.TRANSPORT_CLOSED)
        unsubscribe = self._unsubscribe.pop(transport.id, None)
        if unsubscribe is not None:
            unsubscribe()

    def get_transport(self, transport_id: str) -> WebRtcTransport:
        """
        Return a client-facing transport owned by this session.

        Raises:
            NotFoundError: If this session owns no resource with that id.
            WrongTypeError: If the id names a resource that is not a client-facing transport.
        """
        transport = self.transports.get(transport_id)
        if transport is None:
            if transport_id in self.consumers:
                raise WrongTypeError(f"Resource {transport_id} is a consumer, not a transport")
            raise NotFoundError(f"Transport {transport_id} not found for client {self.id}")
        if not isinstance(transport, WebRtcTransport):
            raise WrongTypeError(f"Transport {transport_id} is not a WebRtcTransport")
        return transport

    def client_transport(self) -> WebRtcTransport | None:
        """Return the open client-facing transport of this session."""
        for transport in self.transports.values():
            if isinstance(transport, WebRtcTransport) and not transport.closed:
                return transport
        return None

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------
    def add_consumer(self, consumer: Consumer) -> bool:
        """
        Register a consumer after closing the previous one.

        Returns:
            False if the session or the consumer was already closed.
        """
        if self._closed:
            self._logger.debug("Session closed, dropping consumer %s", consumer.id)
            consumer.close(ConsumerCloseReason.SESSION_CLOSED)
            return False
        if consumer.closed:
            return False

        for existing in list(self.consumers.values()):
            self._logger.info("Closing consumer %s for new consumer %s", existing.id, consumer.id)
            existing.close(ConsumerCloseReason.CLIENT)
        self.consumers[consumer.id] = consumer

        def on_event(event: EngineEvent) -> None:
            match event:
                case ProducerClosedEvent():
                    self._logger.info("Producer of consumer %s closed", consumer.id)
                    consumer.close(ConsumerCloseReason.PRODUCER_CLOSED)
                case ConsumerClosedEvent(reason=reason):
                    self._handle_consumer_closed(consumer, reason)

        self._unsubscribe[consumer.id] = consumer.add_event_listener(on_event)
        return True

    def _handle_consumer_closed(self, consumer: Consumer, reason: ConsumerCloseReason) -> None:
        if self.consumers.get(consumer.id) is not consumer:
            return
        del self.consumers[consumer.id]
        unsubscribe = self._unsubscribe.pop(consumer.id, None)
        if unsubscribe is not None:
            unsubscribe()
        self._logger.info("Consumer %s closed (%s)", consumer.id, reason.value)
        if reason.client_initiated or self._closed:
            return
        if self._on_consumer_closed is not None:
            self._on_consumer_closed(consumer.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        """Close every owned consumer and transport, safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._logger.debug(
            "Cleaning up %d consumer(s) and %d transport(s)",
            len(self.consumers),
            len(self.transports),
        )
        for consumer in list(self.consumers.values()):
            consumer.close(ConsumerCloseReason.SESSION_CLOSED)
        for transport in list(self.transports.values()):
            transport.close()
        for unsubscribe in self._unsubscribe.values():
            unsubscribe()
        self._unsubscribe.clear()
        self.consumers.clear()
        self.transports.clear()


class SessionRegistry:
    """One ClientSession per live connection."""

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._sessions: dict[str, ClientSession] = {}

    def create(self, *, on_consumer_closed: ConsumerClosedCallback | None = None) -> ClientSession:
        """Create and register a new session."""
        session = ClientSession(str(uuid.uuid4()), on_consumer_closed=on_consumer_closed)
        self._sessions[session.id] = session
        logger.debug("Session %s created (%d live)", session.id, len(self._sessions))
        return session

    def get(self, session_id: str) -> ClientSession | None:
        """Return the session with the given id."""
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        """Close and drop a session, doing nothing if it is already gone."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        session.close()
        logger.debug("Session %s removed (%d live)", session_id, len(self._sessions))

    def close_all(self) -> None:
        """Close and drop every session."""
        for session_id in list(self._sessions):
            self.remove(session_id)

    def __len__(self) -> int:
        """Return the number of live sessions."""
        return len(self._sessions)

    def __iter__(self) -> Iterator[ClientSession]:
        """Iterate over the live sessions."""
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: object) -> bool:
        """Return True if a session with that id is live."""
        return session_id in self._sessions
