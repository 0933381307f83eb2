"""
Local media stack a listener plays streams with.

These classes describe what ListenerSession needs from the local WebRTC
implementation: a device loaded with the engine capabilities, receive
transports created from the parameters the server hands out, consumers
created on those transports and a sink that plays the received audio.
Concrete implementations wrap an actual WebRTC stack; the local objects emit
their events synchronously to listeners registered with add_event_listener().
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from aiosfu.models.types import ConnectionState, MediaKind

logger = logging.getLogger(__name__)


class LocalEvent:
    """Base event type of local transports and consumers."""


@dataclass
class TransportConnectEvent(LocalEvent):
    """
    The transport needs the server to learn its DTLS parameters.

    The handler must settle the event with succeed() or fail() once the
    parameters were handed to the server. Only the first call has an effect.
    """

    dtls_parameters: dict[str, Any]
    completion: asyncio.Future[None] = field(repr=False)

    def succeed(self) -> None:
        """Tell the transport the parameters were delivered."""
        if not self.completion.done():
            self.completion.set_result(None)

    def fail(self, error: Exception) -> None:
        """Tell the transport the parameters could not be delivered."""
        if not self.completion.done():
            self.completion.set_exception(error)


@dataclass
class ConnectionStateChangedEvent(LocalEvent):
    """The ICE/DTLS connection state of the transport changed."""

    state: ConnectionState


@dataclass
class TrackEndedEvent(LocalEvent):
    """The remote track of a consumer ended."""


@dataclass
class LocalConsumerClosedEvent(LocalEvent):
    """The consumer was closed, by the application or because its transport closed."""


LocalEventCallback = Callable[[LocalEvent], None]


class LocalEventSource:
    """Keeps listeners of a local object and delivers events to them."""

    def __init__(self) -> None:
        self._event_cbs: list[LocalEventCallback] = []

    def add_event_listener(self, callback: LocalEventCallback) -> Callable[[], None]:
        """Register a callback for events of this object.

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return remove

    def _signal_event(self, event: LocalEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                cb(event)
            except Exception:
                logger.exception("Error in local event listener %s", cb)


class LocalConsumer(LocalEventSource, ABC):
    """Receiving half of a server-side consumer."""

    id: str
    producer_id: str
    kind: MediaKind
    app_data: dict[str, Any]

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Return True once the consumer was closed."""

    @property
    @abstractmethod
    def track(self) -> Any:
        """Return the remote media track handed to the playback sink."""

    @abstractmethod
    def close(self) -> None:
        """Close the consumer and stop its track, emits LocalConsumerClosedEvent once."""

    @abstractmethod
    async def get_stats(self) -> list[dict[str, Any]]:
        """Return a WebRTC statistics report of the consumer."""


class RecvTransport(LocalEventSource, ABC):
    """
    Receiving half of a client-facing transport.

    The transport starts connecting as soon as it is created and emits a
    TransportConnectEvent when the server must learn its DTLS parameters.
    close() does not emit a ConnectionStateChangedEvent.
    """

    id: str

    @property
    @abstractmethod
    def connection_state(self) -> ConnectionState:
        """Return the current connection state."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """Return True once the transport was closed."""

    @abstractmethod
    async def consume(
        self,
        consumer_id: str,
        producer_id: str,
        kind: MediaKind,
        rtp_parameters: dict[str, Any],
        app_data: dict[str, Any] | None = None,
    ) -> LocalConsumer:
        """Create the receiving half of a server-side consumer."""

    @abstractmethod
    def close(self) -> None:
        """Close the transport and every consumer created on it."""


class Device(ABC):
    """Local WebRTC endpoint, loaded once with the engine capabilities."""

    @property
    @abstractmethod
    def loaded(self) -> bool:
        """Return True once load() succeeded."""

    @property
    @abstractmethod
    def rtp_capabilities(self) -> dict[str, Any]:
        """Return the receive capabilities declared to the server."""

    @abstractmethod
    async def load(self, router_rtp_capabilities: dict[str, Any]) -> None:
        """
        Load the device with the engine capabilities.

        Raises:
            UnsupportedDeviceError: If the local stack cannot handle any engine codec.
        """

    @abstractmethod
    def create_recv_transport(
        self,
        transport_id: str,
        ice_parameters: dict[str, Any],
        ice_candidates: list[dict[str, Any]],
        dtls_parameters: dict[str, Any],
    ) -> RecvTransport:
        """Create the receiving half of a client-facing transport."""


class PlaybackSink(ABC):
    """Plays the track of the current consumer."""

    @abstractmethod
    def attach(self, consumer: LocalConsumer) -> None:
        """Route the track of consumer to the output."""

    @abstractmethod
    async def play(self) -> None:
        """
        Start playback of the attached track.

        Raises:
            PlaybackNotAllowedError: If playback may only start after a user interaction.
        """

    @abstractmethod
    def detach(self) -> None:
        """Stop playback and release the attached track."""
