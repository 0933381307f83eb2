"""
Boundary to the media-routing engine.

The signaling layer never touches RTP. It depends on the engine only for the
capabilities listed on MediaEngine and observes engine resources through a
fixed set of events delivered synchronously to listeners registered with
add_event_listener():

- Transport: TransportStateChangedEvent, TransportClosedEvent
- Producer: ProducerClosedEvent
- Consumer: ProducerClosedEvent, ConsumerClosedEvent

Closing any resource is idempotent and emits its closed event exactly once.
Closing a transport closes every consumer bound to it, closing a producer
closes every consumer reading from it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any

from aiosfu.config import StreamConfig
from aiosfu.models.types import ConnectionState, MediaKind, TransportKind

logger = logging.getLogger(__name__)


class EngineEvent:
    """Base event type used by engine resources and MediaEngine.add_event_listener()."""


@dataclass
class TransportStateChangedEvent(EngineEvent):
    """The DTLS/ICE connection state of a transport changed."""

    state: ConnectionState


@dataclass
class TransportClosedEvent(EngineEvent):
    """The transport was closed."""


@dataclass
class ProducerClosedEvent(EngineEvent):
    """The producer (source) was closed."""


class ConsumerCloseReason(Enum):
    """Why a consumer was closed."""

    CLIENT = "client"
    """Closed on behalf of the client, e.g. because it asked for another stream."""
    PRODUCER_CLOSED = "producer_closed"
    """The source the consumer reads from went away."""
    TRANSPORT_CLOSED = "transport_closed"
    """The transport the consumer is bound to was closed."""
    SESSION_CLOSED = "session_closed"
    """The owning client disconnected."""

    @property
    def client_initiated(self) -> bool:
        """Return True if the client already knows about this close."""
        return self in (ConsumerCloseReason.CLIENT, ConsumerCloseReason.SESSION_CLOSED)


@dataclass
class ConsumerClosedEvent(EngineEvent):
    """The consumer was closed."""

    reason: ConsumerCloseReason


@dataclass
class WorkerDiedEvent(EngineEvent):
    """The engine worker died, every resource of the engine is gone."""

    error: str


EngineEventCallback = Callable[[EngineEvent], None]


class _EventSource:
    """Keeps listeners and delivers events to them synchronously."""

    def __init__(self) -> None:
        self._event_cbs: list[EngineEventCallback] = []

    def add_event_listener(self, callback: EngineEventCallback) -> Callable[[], None]:
        """Register a callback for events of this object.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return remove

    def _signal_event(self, event: EngineEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(event)
            except Exception:
                # NOTE: one failing listener must not break the close cascade
                logger.exception("Error in engine event listener %s", cb)


class Producer(_EventSource):
    """An inbound source registered with the engine."""

    def __init__(
        self,
        producer_id: str,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> None:
        """Do not call this constructor, use MediaEngine.create_source() instead."""
        super().__init__()
        self.id = producer_id
        self.kind = kind
        self.rtp_parameters = rtp_parameters
        self.app_data = app_data or {}
        self._closed = False
        self._consumers: dict[str, Consumer] = {}

    @property
    def closed(self) -> bool:
        """Return True once the producer was closed."""
        return self._closed

    @property
    def codec(self) -> dict[str, Any]:
        """Return the first codec of the producer."""
        return self.rtp_parameters["codecs"][0]

    def close(self) -> None:
        """Close the producer and every consumer reading from it."""
        if self._closed:
            return
        self._closed = True
        logger.debug("Closing producer %s", self.id)
        for consumer in list(self._consumers.values()):
            consumer._on_producer_closed()  # noqa: SLF001
        self._consumers.clear()
        self._signal_event(ProducerClosedEvent())

    def _attach_consumer(self, consumer: Consumer) -> None:
        self._consumers[consumer.id] = consumer

    def _detach_consumer(self, consumer: Consumer) -> None:
        self._consumers.pop(consumer.id, None)


class Transport(_EventSource):
    """A network path held by the engine."""

    kind: TransportKind = TransportKind.PLAIN

    def __init__(self, transport_id: str, app_data: dict[str, Any] | None = None) -> None:
        """Do not call this constructor, use the MediaEngine factory methods instead."""
        super().__init__()
        self.id = transport_id
        self.app_data = app_data or {}
        self._state = ConnectionState.NEW
        self._closed = False
        self._consumers: dict[str, Consumer] = {}

    @property
    def state(self) -> ConnectionState:
        """Return the connection state as reported by the engine."""
        return self._state

    @property
    def closed(self) -> bool:
        """Return True once the transport was closed."""
        return self._closed

    @property
    def consumers(self) -> list[Consumer]:
        """Return the open consumers bound to this transport."""
        return list(self._consumers.values())

    def close(self) -> None:
        """Close the transport and every consumer bound to it."""
        if self._closed:
            return
        self._closed = True
        self._state = ConnectionState.CLOSED
        logger.debug("Closing transport %s", self.id)
        for consumer in list(self._consumers.values()):
            consumer.close(ConsumerCloseReason.TRANSPORT_CLOSED)
        self._consumers.clear()
        self._signal_event(TransportClosedEvent())

    def _set_state(self, state: ConnectionState) -> None:
        """Update the connection state, called by the engine."""
        if self._closed or state is self._state:
            return
        logger.debug("Transport %s state %s -> %s", self.id, self._state.value, state.value)
        self._state = state
        self._signal_event(TransportStateChangedEvent(state))

    def _attach_consumer(self, consumer: Consumer) -> None:
        self._consumers[consumer.id] = consumer

    def _detach_consumer(self, consumer: Consumer) -> None:
        self._consumers.pop(consumer.id, None)


class PlainTransport(Transport):
    """Plain RTP transport receiving from the ingest pipeline."""

    kind = TransportKind.PLAIN

    def __init__(
        self,
        transport_id: str,
        ip: str,
        port: int,
        rtcp_port: int | None,
        app_data: dict[str, Any] | None = None,
    ) -> None:
        """Do not call this constructor, use MediaEngine.create_source() instead."""
        super().__init__(transport_id, app_data)
        self.ip = ip
        self.port = port
        self.rtcp_port = rtcp_port


class WebRtcTransport(Transport):
    """Client-facing transport negotiated with ICE and DTLS."""

    kind = TransportKind.WEBRTC

    def __init__(
        self,
        transport_id: str,
        ice_parameters: dict[str, Any],
        ice_candidates: list[dict[str, Any]],
        dtls_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> None:
        """Do not call this constructor, use MediaEngine.create_transport() instead."""
        super().__init__(transport_id, app_data)
        self.ice_parameters = ice_parameters
        self.ice_candidates = ice_candidates
        self.dtls_parameters = dtls_parameters


class Consumer(_EventSource):
    """A subscription of one transport to one producer."""

    def __init__(
        self,
        consumer_id: str,
        producer: Producer,
        transport: Transport,
        rtp_parameters: dict[str, Any],
        *,
        paused: bool,
        app_data: dict[str, Any] | None = None,
    ) -> None:
        """Do not call this constructor, use MediaEngine.create_consumer() instead."""
        super().__init__()
        self.id = consumer_id
        self.producer_id = producer.id
        self.transport_id = transport.id
        self.kind = producer.kind
        self.rtp_parameters = rtp_parameters
        self.app_data = app_data or {}
        self._producer = producer
        self._transport = transport
        self._paused = paused
        self._closed = False

    @property
    def paused(self) -> bool:
        """Return True if no media is forwarded to the client."""
        return self._paused

    @property
    def closed(self) -> bool:
        """Return True once the consumer was closed."""
        return self._closed

    async def resume(self) -> None:
        """Start forwarding media."""
        if self._closed:
            return
        self._paused = False

    async def pause(self) -> None:
        """Stop forwarding media without closing."""
        if self._closed:
            return
        self._paused = True

    def close(self, reason: ConsumerCloseReason = ConsumerCloseReason.CLIENT) -> None:
        """Close the consumer, only the first call has an effect."""
        if self._closed:
            return
        self._closed = True
        logger.debug("Closing consumer %s (%s)", self.id, reason.value)
        self._transport._detach_consumer(self)  # noqa: SLF001
        self._producer._detach_consumer(self)  # noqa: SLF001
        self._signal_event(ConsumerClosedEvent(reason))

    def _on_producer_closed(self) -> None:
        if self._closed:
            return
        self._signal_event(ProducerClosedEvent())
        self.close(ConsumerCloseReason.PRODUCER_CLOSED)


class MediaEngine(ABC):
    """
    Capabilities the signaling layer needs from the media-routing engine.

    An engine is constructed once per process, started once with start() and
    then handed to the server explicitly. Worker death is reported through a
    WorkerDiedEvent and is fatal to the process.
    """

    def __init__(self) -> None:
        """Initialize the engine, call start() before use."""
        self._events = _EventSource()
        self._started = False
        self._closed = False

    @property
    def running(self) -> bool:
        """Return True between start() and close()."""
        return self._started and not self._closed

    async def start(self) -> None:
        """
        Start the engine.

        Raises:
            RuntimeError: If the engine was started before.
        """
        if self._started:
            raise RuntimeError("MediaEngine.start() must only be called once")
        self._started = True
        await self._start()

    def close(self) -> None:
        """Stop the engine, closing every resource."""
        if self._closed:
            return
        self._closed = True
        self._close()

    def add_event_listener(self, callback: EngineEventCallback) -> Callable[[], None]:
        """Register a callback for engine-wide events (WorkerDiedEvent).

        Returns a function to remove the listener.
        """
        return self._events.add_event_listener(callback)

    def _signal_event(self, event: EngineEvent) -> None:
        self._events._signal_event(event)  # noqa: SLF001

    @abstractmethod
    async def _start(self) -> None:
        """Start the engine worker."""

    @abstractmethod
    def _close(self) -> None:
        """Release every resource of the engine."""

    @abstractmethod
    def get_receive_capabilities(self) -> dict[str, Any]:
        """Return the engine-wide RTP capabilities clients load their device with."""

    @abstractmethod
    async def create_transport(self, session_id: str) -> WebRtcTransport:
        """
        Create a client-facing transport for the given session.

        Raises:
            EngineFailureError: If the transport could not be created.
        """

    @abstractmethod
    async def connect_transport(
        self, transport: WebRtcTransport, dtls_parameters: dict[str, Any]
    ) -> None:
        """
        Provide the remote DTLS parameters of a transport.

        Raises:
            EngineFailureError: If the parameters are rejected.
        """

    @abstractmethod
    def can_consume(self, source: Producer, rtp_capabilities: dict[str, Any] | None) -> bool:
        """Return True if a receiver with rtp_capabilities can consume source."""

    @abstractmethod
    async def create_consumer(
        self,
        transport: WebRtcTransport,
        source: Producer,
        rtp_capabilities: dict[str, Any],
        *,
        paused: bool,
    ) -> Consumer:
        """
        Create a consumer of source on transport.

        Raises:
            EngineFailureError: If the consumer could not be created.
        """

    @abstractmethod
    async def create_source(self, stream: StreamConfig) -> Producer:
        """
        Create the ingest transport and producer for a configured stream.

        Raises:
            EngineFailureError: If the source could not be created.
        """
