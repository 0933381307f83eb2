"""In-process MediaEngine that models resources and negotiation without moving RTP."""

from __future__ import annotations

import hashlib
import logging
import secrets
import uuid
from typing import Any

from aiosfu.config import DEFAULT_RTC_MAX_PORT, DEFAULT_RTC_MIN_PORT, CodecConfig, StreamConfig
from aiosfu.exceptions import EngineFailureError, IncompatibleError
from aiosfu.models.types import ConnectionState, MediaKind

from .engine import (
    Consumer,
    EngineEvent,
    MediaEngine,
    PlainTransport,
    Producer,
    Transport,
    TransportClosedEvent,
    WebRtcTransport,
    WorkerDiedEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_CODECS: tuple[CodecConfig, ...] = (
    CodecConfig(
        mime_type="audio/PCMU",
        clock_rate=8000,
        channels=1,
        rtcp_feedback=[{"type": "transport-cc"}],
    ),
)
"""PCMU mono, the codec the ingest pipeline sends."""

DTLS_ROLES = ("auto", "client", "server")
FIRST_DYNAMIC_PAYLOAD_TYPE = 100


def _codec_key(codec: dict[str, Any]) -> tuple[str, int, int]:
    return (
        str(codec.get("mimeType", "")).lower(),
        int(codec.get("clockRate", 0)),
        int(codec.get("channels", 1)),
    )


def _fingerprint() -> str:
    digest = hashlib.sha256(secrets.token_bytes(32)).hexdigest().upper()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


class InMemoryMediaEngine(MediaEngine):
    """
    MediaEngine that keeps every resource in process.

    Transports connect as soon as valid DTLS parameters arrive. No packets are
    forwarded; update_transport_state() and fail_worker() drive the network
    and worker failures a real engine would report.
    """

    def __init__(
        self,
        media_codecs: tuple[CodecConfig, ...] | list[CodecConfig] = DEFAULT_MEDIA_CODECS,
        *,
        listen_ip: str = "127.0.0.1",
        announced_ip: str | None = None,
        rtc_min_port: int = DEFAULT_RTC_MIN_PORT,
        rtc_max_port: int = DEFAULT_RTC_MAX_PORT,
    ) -> None:
        """Initialize the engine, call start() before use."""
        super().__init__()
        self._media_codecs = list(media_codecs)
        self._listen_ip = listen_ip
        self._announced_ip = announced_ip or listen_ip
        self._rtc_min_port = rtc_min_port
        self._rtc_max_port = rtc_max_port
        self._used_ports: set[int] = set()
        self._transports: dict[str, Transport] = {}
        self._producers: dict[str, Producer] = {}
        self._capabilities = self._build_capabilities()

    def _build_capabilities(self) -> dict[str, Any]:
        codecs = []
        dynamic_payload_type = FIRST_DYNAMIC_PAYLOAD_TYPE
        for codec in self._media_codecs:
            entry = codec.to_capability()
            if entry["mimeType"].lower() == "audio/pcmu":
                entry["preferredPayloadType"] = 0
            elif entry["mimeType"].lower() == "audio/pcma":
                entry["preferredPayloadType"] = 8
            else:
                entry["preferredPayloadType"] = dynamic_payload_type
                dynamic_payload_type += 1
            codecs.append(entry)
        return {"codecs": codecs, "headerExtensions": []}

    async def _start(self) -> None:
        logger.info(
            "In-memory media engine started (RTC ports %d-%d)",
            self._rtc_min_port,
            self._rtc_max_port,
        )

    def _close(self) -> None:
        for producer in list(self._producers.values()):
            producer.close()
        for transport in list(self._transports.values()):
            transport.close()
        logger.info("In-memory media engine closed")

    def _ensure_running(self) -> None:
        if not self.running:
            raise EngineFailureError("Media engine is not running")

    def _allocate_port(self) -> int:
        for port in range(self._rtc_min_port, self._rtc_max_port + 1):
            if port not in self._used_ports:
                self._used_ports.add(port)
                return port
        raise EngineFailureError("No free RTC port available")

    def _track_transport(self, transport: Transport, port: int | None) -> None:
        self._transports[transport.id] = transport

        def on_event(event: EngineEvent) -> None:
            if isinstance(event, TransportClosedEvent):
                self._transports.pop(transport.id, None)
                if port is not None:
                    self._used_ports.discard(port)

        _ = transport.add_event_listener(on_event)

    @property
    def transports(self) -> list[Transport]:
        """Return every open transport of the engine."""
        return list(self._transports.values())

    def get_receive_capabilities(self) -> dict[str, Any]:
        """Return the engine-wide RTP capabilities."""
        return self._capabilities

    async def create_transport(self, session_id: str) -> WebRtcTransport:
        """Create a client-facing transport with fresh ICE/DTLS material."""
        self._ensure_running()
        port = self._allocate_port()
        transport = WebRtcTransport(
            str(uuid.uuid4()),
            ice_parameters={
                "usernameFragment": secrets.token_hex(8),
                "password": secrets.token_hex(16),
                "iceLite": True,
            },
            ice_candidates=[
                {
                    "foundation": "udpcandidate",
                    "ip": self._announced_ip,
                    "port": port,
                    "priority": 1076302079,
                    "protocol": "udp",
                    "type": "host",
                },
                {
                    "foundation": "tcpcandidate",
                    "ip": self._announced_ip,
                    "port": port,
                    "priority": 1076276479,
                    "protocol": "tcp",
                    "tcpType": "passive",
                    "type": "host",
                },
            ],
            dtls_parameters={
                "role": "auto",
                "fingerprints": [{"algorithm": "sha-256", "value": _fingerprint()}],
            },
            app_data={"sessionId": session_id},
        )
        self._track_transport(transport, port)
        logger.debug("Created WebRtcTransport %s on port %d", transport.id, port)
        return transport

    async def connect_transport(
        self, transport: WebRtcTransport, dtls_parameters: dict[str, Any]
    ) -> None:
        """Validate the remote DTLS parameters and connect the transport."""
        self._ensure_running()
        if transport.closed:
            raise EngineFailureError(f"Transport {transport.id} is closed")
        if transport.state is not ConnectionState.NEW:
            raise EngineFailureError(f"connect() already called on transport {transport.id}")

        fingerprints = dtls_parameters.get("fingerprints")
        if not isinstance(fingerprints, list) or not fingerprints:
            raise EngineFailureError("Missing DTLS fingerprints")
        for fingerprint in fingerprints:
            if (
                not isinstance(fingerprint, dict)
                or not fingerprint.get("algorithm")
                or not fingerprint.get("value")
            ):
                raise EngineFailureError("Invalid DTLS fingerprint")
        role = dtls_parameters.get("role", "auto")
        if role not in DTLS_ROLES:
            raise EngineFailureError(f"Invalid DTLS role: {role}")

        transport._set_state(ConnectionState.CONNECTING)  # noqa: SLF001
        transport._set_state(ConnectionState.CONNECTED)  # noqa: SLF001

    def update_transport_state(self, transport: Transport, state: ConnectionState) -> None:
        """Report a network state change of a transport, as ICE/DTLS would."""
        transport._set_state(state)  # noqa: SLF001

    def _match_codec(
        self, source: Producer, rtp_capabilities: dict[str, Any] | None
    ) -> dict[str, Any] | None:
        if not rtp_capabilities:
            return None
        wanted = _codec_key(source.codec)
        for codec in rtp_capabilities.get("codecs") or []:
            if isinstance(codec, dict) and _codec_key(codec) == wanted:
                return codec
        return None

    def can_consume(self, source: Producer, rtp_capabilities: dict[str, Any] | None) -> bool:
        """Return True if a codec of the receiver matches the source codec."""
        if source.closed:
            return False
        return self._match_codec(source, rtp_capabilities) is not None

    async def create_consumer(
        self,
        transport: WebRtcTransport,
        source: Producer,
        rtp_capabilities: dict[str, Any],
        *,
        paused: bool,
    ) -> Consumer:
        """Create a consumer of source on transport."""
        self._ensure_running()
        if transport.closed:
            raise EngineFailureError(f"Transport {transport.id} is closed")
        if source.closed:
            raise EngineFailureError(f"Producer {source.id} is closed")
        codec = self._match_codec(source, rtp_capabilities)
        if codec is None:
            raise IncompatibleError(f"Receiver cannot consume producer {source.id}")

        source_codec = source.codec
        rtp_parameters = {
            "mid": str(len(transport.consumers)),
            "codecs": [
                {
                    "mimeType": source_codec["mimeType"],
                    "payloadType": codec.get(
                        "preferredPayloadType", source_codec.get("payloadType", 0)
                    ),
                    "clockRate": source_codec["clockRate"],
                    "channels": source_codec.get("channels", 1),
                    "parameters": source_codec.get("parameters", {}),
                    "rtcpFeedback": codec.get("rtcpFeedback", []),
                }
            ],
            "encodings": [{"ssrc": secrets.randbelow(2**32 - 1) + 1}],
            "rtcp": {"cname": secrets.token_hex(8), "reducedSize": True},
        }
        consumer = Consumer(
            str(uuid.uuid4()),
            source,
            transport,
            rtp_parameters,
            paused=paused,
            app_data=dict(source.app_data),
        )
        transport._attach_consumer(consumer)  # noqa: SLF001
        source._attach_consumer(consumer)  # noqa: SLF001
        return consumer

    async def create_source(self, stream: StreamConfig) -> Producer:
        """Create a plain transport and producer for an ingested stream."""
        self._ensure_running()
        if stream.codec.kind is not MediaKind.AUDIO:
            raise EngineFailureError(f"Stream {stream.id}: only audio sources are supported")
        # A configured ingest port lives outside the RTC range
        allocated = None if stream.rtp_port else self._allocate_port()
        port = stream.rtp_port or allocated
        assert port is not None  # for type checking
        transport = PlainTransport(
            str(uuid.uuid4()),
            ip=self._listen_ip,
            port=port,
            rtcp_port=port + 1,
            app_data={"streamId": stream.id},
        )
        self._track_transport(transport, allocated)
        transport._set_state(ConnectionState.CONNECTED)  # noqa: SLF001

        codec = stream.codec.to_capability()
        codec["payloadType"] = stream.payload_type
        producer = Producer(
            str(uuid.uuid4()),
            stream.codec.kind,
            {"codecs": [codec], "encodings": [{"ssrc": stream.ssrc}]},
            app_data={"streamId": stream.id},
        )
        self._producers[producer.id] = producer

        def on_transport_event(event: EngineEvent) -> None:
            if isinstance(event, TransportClosedEvent):
                logger.warning("Plain transport for stream %s closed", stream.id)
                producer.close()

        def on_producer_event(_event: EngineEvent) -> None:
            # Producers only emit ProducerClosedEvent
            self._producers.pop(producer.id, None)

        _ = transport.add_event_listener(on_transport_event)
        _ = producer.add_event_listener(on_producer_event)
        logger.debug("Created producer %s for stream %s", producer.id, stream.id)
        return producer

    def fail_worker(self, error: str) -> None:
        """Simulate the death of the engine worker."""
        logger.critical("Media engine worker died: %s", error)
        self._signal_event(WorkerDiedEvent(error))
        self.close()
