"""Configuration of the relay server and its configured streams."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson
from mashumaro import field_options
from mashumaro.exceptions import MissingField

from aiosfu.models.types import MediaKind, WireModel

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3001
DEFAULT_PATH = "/ws"
DEFAULT_RTC_MIN_PORT = 20000
DEFAULT_RTC_MAX_PORT = 20100


@dataclass
class CodecConfig(WireModel):
    """Codec a configured stream is ingested with."""

    mime_type: str = field(metadata=field_options(alias="mimeType"))
    """MIME type such as audio/PCMU or audio/opus."""
    clock_rate: int = field(metadata=field_options(alias="clockRate"))
    """RTP clock rate in Hz."""
    kind: MediaKind = MediaKind.AUDIO
    channels: int = 1
    parameters: dict[str, Any] = field(default_factory=dict)
    """Codec specific format parameters."""
    rtcp_feedback: list[dict[str, Any]] = field(
        default_factory=list, metadata=field_options(alias="rtcpFeedback")
    )

    def to_capability(self) -> dict[str, Any]:
        """Return the codec as an engine capability entry."""
        return self.to_dict()


@dataclass
class StreamConfig(WireModel):
    """A stream produced by the external ingest pipeline."""

    id: str
    """Stable identifier of the stream."""
    name: str
    """Human-readable name shown to listeners."""
    codec: CodecConfig
    rtp_port: int = field(default=0, metadata=field_options(alias="rtpPort"))
    """UDP port the ingest pipeline sends RTP to, RTCP is expected on rtp_port + 1."""
    ssrc: int = 0
    """SSRC of the ingested RTP stream."""
    payload_type: int = field(default=0, metadata=field_options(alias="payloadType"))
    """RTP payload type of the ingested stream."""


@dataclass
class ServerConfig:
    """Network configuration of the relay server."""

    host: str = "0.0.0.0"  # noqa: S104
    port: int = DEFAULT_PORT
    path: str = DEFAULT_PATH
    """Path the signaling WebSocket is served on."""
    announced_ip: str | None = None
    """Address announced in ICE candidates, defaults to the listen address."""
    rtc_min_port: int = DEFAULT_RTC_MIN_PORT
    rtc_max_port: int = DEFAULT_RTC_MAX_PORT
    streams: list[StreamConfig] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate the port range."""
        if self.rtc_min_port > self.rtc_max_port:
            raise ValueError(
                f"rtc_min_port ({self.rtc_min_port}) must not exceed "
                f"rtc_max_port ({self.rtc_max_port})"
            )
        if not self.path.startswith("/"):
            self.path = "/" + self.path


def load_stream_configs(path: str | Path) -> list[StreamConfig]:
    """
    Load stream configurations from a JSON file.

    The file holds a JSON array, every entry describes one ingested stream.

    Raises:
        ValueError: If the file is not a JSON array or an entry is invalid, or
            if two entries share an id.
    """
    data = orjson.loads(Path(path).read_bytes())
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON array of streams")

    try:
        streams = [StreamConfig.from_dict(entry) for entry in data]
    except (MissingField, TypeError) as err:
        raise ValueError(f"{path}: invalid stream entry: {err}") from err
    seen: set[str] = set()
    for stream in streams:
        if stream.id in seen:
            raise ValueError(f"{path}: duplicate stream id {stream.id!r}")
        seen.add(stream.id)
    logger.info("Loaded %d stream(s): %s", len(streams), ", ".join(s.name for s in streams))
    return streams
