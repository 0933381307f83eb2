"""Listener side state machine: from "play stream X" to audio coming out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

from aiosfu.exceptions import PlaybackNotAllowedError, SfuError, UnsupportedDeviceError
from aiosfu.models.consumer import (
    ConsumeMessage,
    ConsumePayload,
    ConsumerClosedMessage,
    ConsumerReadyMessage,
    ConsumerReadyPayload,
)
from aiosfu.models.core import (
    ErrorMessage,
    RouterCapabilitiesMessage,
    ServerInfoMessage,
    ServerInfoPayload,
    SetRtpCapabilitiesMessage,
    SetRtpCapabilitiesPayload,
    StreamInfo,
)
from aiosfu.models.transport import (
    ConnectWebRtcTransportMessage,
    ConnectWebRtcTransportPayload,
    CreateWebRtcTransportMessage,
    TransportCreatedMessage,
    TransportCreatedPayload,
)
from aiosfu.models.types import ConnectionState, ServerMessage

from .channel import SignalingChannel
from .device import (
    ConnectionStateChangedEvent,
    Device,
    LocalConsumer,
    LocalConsumerClosedEvent,
    LocalEvent,
    PlaybackSink,
    RecvTransport,
    TrackEndedEvent,
    TransportConnectEvent,
)
from .stats import STATS_INTERVAL, StatsTracker, StreamStats

logger = logging.getLogger(__name__)

UNKNOWN_STREAM = "Unknown Stream"


class SessionEvent:
    """Base event type used by ListenerSession.add_event_listener()."""


@dataclass
class StreamsAvailableEvent(SessionEvent):
    """The server announced the streams that can be listened to."""

    streams: list[StreamInfo]


@dataclass
class DeviceReadyEvent(SessionEvent):
    """The local device is loaded, streams can be requested."""


@dataclass
class ConnectionStateChangeEvent(SessionEvent):
    """The user-visible connection state changed."""

    state: ConnectionState
    stream_name: str


@dataclass
class StatusEvent(SessionEvent):
    """Status line text for the user."""

    message: str


@dataclass
class InteractionRequiredEvent(SessionEvent):
    """Playback waits for a user interaction, call resume_playback() on one."""


@dataclass
class StatsEvent(SessionEvent):
    """Fresh receive statistics of the current stream."""

    stats: StreamStats


@dataclass
class StatsClearedEvent(SessionEvent):
    """Statistics are no longer available, the stream stopped."""


SessionEventCallback = Callable[[SessionEvent], Awaitable[None] | None]


class ListenerSession:
    """
    Drives the connection state a listener sees.

    start_consuming() hides transport setup: without a usable transport the
    request is kept pending while a transport is created and negotiated, and
    issued once the transport connected. Only one stream plays at a time,
    asking for another stream closes the current consumer first.

    Server messages are handled one after the other in arrival order. Handler
    failures never escape, they are reported as state FAILED plus a status
    message.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        device_factory: Callable[[], Device],
        sink: PlaybackSink,
        *,
        stats_interval: float = STATS_INTERVAL,
    ) -> None:
        """
        Create a session, call start() to begin.

        Args:
            channel: Signaling channel to the server, owned by the caller.
            device_factory: Creates the local device once server capabilities are known.
            sink: Plays the track of the current consumer.
            stats_interval: Seconds between two statistics polls.
        """
        self._channel = channel
        self._device_factory = device_factory
        self._sink = sink
        self._stats_interval = stats_interval
        self._stats = StatsTracker()
        self._device: Device | None = None
        self._router_rtp_capabilities: dict[str, Any] | None = None
        self._streams: list[StreamInfo] = []
        self._state = ConnectionState.NEW

        self._transport: RecvTransport | None = None
        self._remove_transport_listener: Callable[[], None] | None = None
        self._consumer: LocalConsumer | None = None
        self._consumer_stream_id: str | None = None
        self._remove_consumer_listener: Callable[[], None] | None = None
        self._pending_stream_id: str | None = None
        """Stream to consume once the transport connected."""
        self._requested_stream_id: str | None = None
        """Most recently requested stream, replies for any other stream are stale."""
        self._creating_transport = False
        self._awaiting_interaction = False
        self._stats_task: asyncio.Task[None] | None = None

        self._inbox: asyncio.Queue[ServerMessage] = asyncio.Queue()
        self._process_task: asyncio.Task[None] | None = None
        self._remove_message_listener: Callable[[], None] | None = None
        self._event_cbs: list[SessionEventCallback] = []
        self._callback_tasks: set[asyncio.Task[None]] = set()
        self._started = False
        self._closed = False

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def available_streams(self) -> list[StreamInfo]:
        """Return the streams announced by the server."""
        return list(self._streams)

    @property
    def device_loaded(self) -> bool:
        """Return True once the local device is loaded."""
        return self._device is not None and self._device.loaded

    @property
    def state(self) -> ConnectionState:
        """Return the last broadcast connection state."""
        return self._state

    @property
    def consumer(self) -> LocalConsumer | None:
        """Return the consumer of the playing stream."""
        return self._consumer

    @property
    def transport(self) -> RecvTransport | None:
        """Return the current receive transport."""
        return self._transport

    async def start(self) -> None:
        """
        Subscribe to the channel and connect it.

        Raises:
            ChannelFailureError: If the channel gave up connecting.
        """
        if self._started:
            return
        self._started = True
        self._remove_message_listener = self._channel.add_message_listener(self._on_message)
        self._process_task = asyncio.get_running_loop().create_task(self._process_messages())
        self._emit_status("Status: Connecting...")
        try:
            await self._channel.connect()
        except SfuError as err:
            self._fail(f"Error: {err}")
            raise

    def start_consuming(self, stream_id: str) -> None:
        """Start listening to stream_id, stopping the current stream first."""
        logger.info("Requested consumption of stream %s", stream_id)
        self._close_consumer()

        if not self.device_loaded:
            logger.error("Cannot start stream %s, device not loaded", stream_id)
            self._fail("Device not ready. Cannot start stream.")
            return

        self._requested_stream_id = stream_id
        transport = self._transport
        if transport is None or transport.closed or transport.connection_state.terminal:
            self._pending_stream_id = stream_id
            self._dispatch_state(ConnectionState.CONNECTING)
            if self._creating_transport:
                logger.debug("Transport creation already requested")
                return
            logger.debug("No usable transport, requesting creation")
            self._creating_transport = True
            self._channel.send(CreateWebRtcTransportMessage())
            return

        if transport.connection_state is not ConnectionState.CONNECTED:
            logger.debug(
                "Transport %s not connected yet (%s), consuming once connected",
                transport.id,
                transport.connection_state.value,
            )
            self._pending_stream_id = stream_id
            self._dispatch_state(transport.connection_state)
            return

        self._request_consume(stream_id)

    async def resume_playback(self) -> None:
        """Retry playback after a user interaction, only once per blocked attempt."""
        if not self._awaiting_interaction or self._consumer is None:
            return
        self._awaiting_interaction = False
        stream_id = self._consumer_stream_id
        try:
            await self._sink.play()
        except Exception:
            logger.exception("Playback still failed after interaction")
            self._fail("Could not start audio.")
            return
        logger.info("Playback resumed after interaction")
        self._emit_status(f"Listening to: {self._stream_name(stream_id)}")
        self._start_stats()

    async def close(self) -> None:
        """Release every local resource and stop handling server messages."""
        if self._closed:
            return
        self._closed = True
        if self._remove_message_listener is not None:
            self._remove_message_listener()
            self._remove_message_listener = None
        self._close_transport()
        self._pending_stream_id = None
        self._requested_stream_id = None
        self._creating_transport = False
        self._device = None
        self._router_rtp_capabilities = None
        self._streams = []

        if self._process_task is not None:
            _ = self._process_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._process_task
            self._process_task = None
        self._dispatch_state(ConnectionState.CLOSED)

    async def wait_idle(self) -> None:
        """Wait until every received server message was handled."""
        await self._inbox.join()

    def add_event_listener(self, callback: SessionEventCallback) -> Callable[[], None]:
        """Register a callback for UI-facing events of this session.

        Events include:
        - The stream list arrived
        - The device is ready
        - The connection state or the status line changed
        - Statistics were updated or cleared

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)

        def remove() -> None:
            with suppress(ValueError):
                self._event_cbs.remove(callback)

        return remove

    # ------------------------------------------------------------------
    # Server messages
    # ------------------------------------------------------------------
    def _on_message(self, message: ServerMessage) -> None:
        if not self._closed:
            self._inbox.put_nowait(message)

    async def _process_messages(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                await self._handle_message(message)
            except SfuError as err:
                logger.warning("Failed to handle %s: %s", type(message).__name__, err)
                self._fail(f"Error: {err}")
            except Exception:
                # NOTE: Intentional catch-all, the state machine must keep running
                logger.exception("Error handling %s", type(message).__name__)
                self._fail("Error: Unexpected client error")
            finally:
                self._inbox.task_done()

    async def _handle_message(self, message: ServerMessage) -> None:
        match message:
            case ServerInfoMessage(payload=payload):
                await self._handle_server_info(payload)
            case RouterCapabilitiesMessage(payload=capabilities):
                self._router_rtp_capabilities = capabilities
                await self._load_device()
            case TransportCreatedMessage(payload=payload):
                self._handle_transport_created(payload)
            case ConsumerReadyMessage(payload=payload):
                await self._handle_consumer_ready(payload)
            case ConsumerClosedMessage(payload=payload):
                logger.info("Consumer %s closed by server", payload.consumer_id)
                self._consumer_gone(payload.consumer_id)
            case ErrorMessage(payload=error):
                logger.error("Received server error: %s", error)
                # The transport we may have asked for is not coming
                self._creating_transport = False
                self._fail(f"Error: {error}")
                self._pending_stream_id = None
            case _:
                logger.debug("Unhandled server message type: %s", type(message).__name__)

    async def _handle_server_info(self, payload: ServerInfoPayload) -> None:
        # A new server session, nothing created on an earlier one survives
        was_live = self._transport is not None or self._consumer is not None
        stream_id = self._consumer_stream_id
        self._close_transport()
        self._creating_transport = False
        if was_live:
            self._dispatch_state(ConnectionState.CLOSED, stream_id)
        self._router_rtp_capabilities = payload.router_rtp_capabilities
        self._streams = list(payload.available_streams)
        logger.info("Server offers %d stream(s)", len(self._streams))
        self._signal_event(StreamsAvailableEvent(self.available_streams))
        await self._load_device()

    async def _load_device(self) -> None:
        if self._router_rtp_capabilities is None:
            logger.warning("Cannot load device, router capabilities not received yet")
            return
        device = self._device
        if device is None or not device.loaded:
            device = self._device_factory()
            try:
                await device.load(self._router_rtp_capabilities)
            except UnsupportedDeviceError:
                logger.exception("Device does not support the server capabilities")
                self._fail("Browser not supported")
                return
            except Exception:
                logger.exception("Error loading device")
                self._fail("Failed to load device")
                return
            self._device = device
            logger.info("Device loaded")
        # Sent on every serverInfo, each server session starts without capabilities
        self._channel.send(
            SetRtpCapabilitiesMessage(
                payload=SetRtpCapabilitiesPayload(rtp_capabilities=device.rtp_capabilities)
            )
        )
        self._signal_event(DeviceReadyEvent())

    def _handle_transport_created(self, payload: TransportCreatedPayload) -> None:
        self._creating_transport = False
        device = self._device
        if device is None or not device.loaded:
            logger.error("Device not loaded, cannot create transport %s", payload.transport_id)
            self._fail("Device not ready")
            return
        self._close_transport()

        try:
            transport = device.create_recv_transport(
                payload.transport_id,
                payload.ice_parameters,
                payload.ice_candidates,
                payload.dtls_parameters,
            )
        except Exception:
            logger.exception("Error creating receive transport")
            self._fail("Failed to create connection")
            return
        logger.info("Created receive transport %s", transport.id)
        self._transport = transport
        self._remove_transport_listener = transport.add_event_listener(
            lambda event: self._on_transport_event(transport, event)
        )

    async def _handle_consumer_ready(self, payload: ConsumerReadyPayload) -> None:
        transport = self._transport
        if transport is None or transport.connection_state is not ConnectionState.CONNECTED:
            logger.warning("Dropping consumer %s, transport not connected", payload.consumer_id)
            return
        if not self.device_loaded:
            logger.warning("Dropping consumer %s, device not loaded", payload.consumer_id)
            return
        if self._is_stale(payload):
            logger.info(
                "Dropping stale consumer %s for stream %s", payload.consumer_id, payload.stream_id
            )
            return

        self._close_consumer()
        try:
            consumer = await transport.consume(
                payload.consumer_id,
                payload.producer_id,
                payload.kind,
                payload.rtp_parameters,
                app_data={"streamId": payload.stream_id},
            )
        except Exception:
            logger.exception("Error creating consumer %s", payload.consumer_id)
            self._fail("Failed to start stream")
            return
        if self._transport is not transport or self._is_stale(payload):
            # Abandoned while the consumer was being created
            consumer.close()
            return

        logger.info("Consumer %s created for stream %s", consumer.id, payload.stream_id)
        self._consumer = consumer
        self._consumer_stream_id = payload.stream_id
        self._remove_consumer_listener = consumer.add_event_listener(
            lambda event: self._on_consumer_event(consumer, event)
        )
        self._sink.attach(consumer)
        await self._start_playback(consumer, payload.stream_id)

    def _is_stale(self, payload: ConsumerReadyPayload) -> bool:
        return (
            self._transport is None
            or payload.transport_id != self._transport.id
            or payload.stream_id != self._requested_stream_id
        )

    async def _start_playback(self, consumer: LocalConsumer, stream_id: str) -> None:
        try:
            await self._sink.play()
        except PlaybackNotAllowedError:
            logger.warning("Playback needs a user interaction first")
            if consumer is not self._consumer:
                return
            self._dispatch_state(ConnectionState.CONNECTED)
            self._emit_status("Ready. Click page or player to start audio.")
            self._awaiting_interaction = True
            self._signal_event(InteractionRequiredEvent())
            return
        except Exception:
            logger.exception("Playback failed")
            self._fail("Could not start audio.")
            return
        if consumer is not self._consumer:
            return
        logger.info("Playback of %s started", stream_id)
        self._dispatch_state(ConnectionState.CONNECTED)
        self._start_stats()

    # ------------------------------------------------------------------
    # Local events
    # ------------------------------------------------------------------
    def _on_transport_event(self, transport: RecvTransport, event: LocalEvent) -> None:
        if transport is not self._transport:
            return
        match event:
            case TransportConnectEvent(dtls_parameters=dtls_parameters):
                logger.debug("Sending DTLS parameters of transport %s", transport.id)
                try:
                    self._channel.send(
                        ConnectWebRtcTransportMessage(
                            payload=ConnectWebRtcTransportPayload(
                                transport_id=transport.id, dtls_parameters=dtls_parameters
                            )
                        )
                    )
                except Exception as err:
                    logger.exception("Error sending connect request")
                    event.fail(err)
                    return
                event.succeed()
            case ConnectionStateChangedEvent(state=state):
                logger.info("Transport %s state changed to %s", transport.id, state.value)
                self._dispatch_state(state)
                if state is ConnectionState.CONNECTED:
                    stream_id = self._pending_stream_id
                    if stream_id is not None:
                        self._pending_stream_id = None
                        self._request_consume(stream_id)
                elif state.terminal:
                    self._pending_stream_id = None
                    self._close_transport()

    def _on_consumer_event(self, consumer: LocalConsumer, event: LocalEvent) -> None:
        if isinstance(event, TrackEndedEvent):
            logger.warning("Track of consumer %s ended", consumer.id)
            self._consumer_gone(consumer.id)
        elif isinstance(event, LocalConsumerClosedEvent):
            self._consumer_gone(consumer.id)

    def _consumer_gone(self, consumer_id: str) -> None:
        """Clean up after the current consumer went away, broadcast CLOSED once."""
        if self._consumer is None or self._consumer.id != consumer_id:
            logger.debug("Ignoring close of consumer %s, not current", consumer_id)
            return
        stream_id = self._consumer_stream_id
        self._close_consumer()
        self._dispatch_state(ConnectionState.CLOSED, stream_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _request_consume(self, stream_id: str) -> None:
        logger.info("Requesting to consume stream %s", stream_id)
        self._emit_status(f"Requesting stream: {self._stream_name(stream_id)}...")
        self._channel.send(ConsumeMessage(payload=ConsumePayload(stream_id=stream_id)))

    def _close_consumer(self) -> None:
        """Close the current consumer without broadcasting a state."""
        consumer = self._consumer
        if consumer is None:
            return
        self._consumer = None
        self._consumer_stream_id = None
        self._awaiting_interaction = False
        if self._remove_consumer_listener is not None:
            self._remove_consumer_listener()
            self._remove_consumer_listener = None
        self._stop_stats()
        if not consumer.closed:
            consumer.close()
        self._sink.detach()
        logger.debug("Consumer %s closed and cleaned up", consumer.id)

    def _close_transport(self) -> None:
        """Close the current transport and its consumer without broadcasting a state."""
        self._close_consumer()
        transport = self._transport
        if transport is None:
            return
        self._transport = None
        if self._remove_transport_listener is not None:
            self._remove_transport_listener()
            self._remove_transport_listener = None
        if not transport.closed:
            transport.close()
        logger.debug("Transport %s closed", transport.id)

    def _start_stats(self) -> None:
        if self._stats_task is not None or self._consumer is None:
            return
        logger.debug("Starting stats polling")
        self._stats.reset()
        self._stats_task = asyncio.get_running_loop().create_task(
            self._poll_stats(self._consumer)
        )

    def _stop_stats(self) -> None:
        task = self._stats_task
        if task is None:
            return
        self._stats_task = None
        if task is not asyncio.current_task():
            _ = task.cancel()
        self._stats.reset()
        logger.debug("Stopped stats polling")
        self._signal_event(StatsClearedEvent())

    async def _poll_stats(self, consumer: LocalConsumer) -> None:
        while True:
            await asyncio.sleep(self._stats_interval)
            if consumer is not self._consumer or consumer.closed:
                self._stop_stats()
                return
            try:
                reports = await consumer.get_stats()
            except Exception:
                logger.exception("Error getting consumer stats")
                self._stop_stats()
                return
            self._signal_event(StatsEvent(self._stats.update(reports)))

    def _stream_name(self, stream_id: str | None) -> str:
        if stream_id is None:
            return UNKNOWN_STREAM
        for stream in self._streams:
            if stream.id == stream_id:
                return stream.name
        return UNKNOWN_STREAM

    def _dispatch_state(self, state: ConnectionState, stream_id: str | None = None) -> None:
        """Broadcast a connection state together with the matching status line."""
        if stream_id is None:
            stream_id = self._consumer_stream_id or self._pending_stream_id
            stream_id = stream_id or self._requested_stream_id
        stream_name = self._stream_name(stream_id)
        self._state = state
        self._signal_event(ConnectionStateChangeEvent(state=state, stream_name=stream_name))

        match state:
            case ConnectionState.CONNECTED if stream_id is not None:
                status = f"Listening to: {stream_name}"
            case ConnectionState.FAILED:
                status = "Status: Failed"
            case ConnectionState.CLOSED:
                status = "Status: Disconnected"
            case ConnectionState.CONNECTING | ConnectionState.CHECKING:
                status = "Status: Connecting..."
            case _:
                status = f"Connection: {state.value}"
        self._emit_status(status)

    def _fail(self, status: str) -> None:
        self._dispatch_state(ConnectionState.FAILED)
        self._emit_status(status)

    def _emit_status(self, message: str) -> None:
        self._signal_event(StatusEvent(message))

    def _signal_event(self, event: SessionEvent) -> None:
        for cb in list(self._event_cbs):
            try:
                result = cb(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._callback_tasks.add(task)
                    task.add_done_callback(self._callback_tasks.discard)
            except Exception:
                logger.exception("Error in session event listener %s", cb)
