"""Receive statistics of the current stream."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

STATS_INTERVAL = 1.0
"""Seconds between two statistics polls."""


@dataclass(slots=True)
class StreamStats:
    """Figures shown in the statistics overlay."""

    codec: str = "N/A"
    bitrate_kbps: int = 0
    jitter_ms: float = 0.0
    packet_loss_percent: float = 0.0
    round_trip_time_ms: float | None = None
    jitter_buffer_delay_s: float = 0.0
    audio_level: float | None = None


class StatsTracker:
    """
    Turns consecutive WebRTC statistics reports into StreamStats.

    The bitrate is computed from the bytes received between two updates, so
    the first update after creation or reset() reports 0 kbps.
    """

    def __init__(self) -> None:
        self._previous_bytes = 0
        self._previous_time: float | None = None

    def reset(self) -> None:
        """Forget the previous report."""
        self._previous_bytes = 0
        self._previous_time = None

    def update(self, reports: list[dict[str, Any]], now: float | None = None) -> StreamStats:
        """Compute the statistics of the latest report list."""
        if now is None:
            now = time.monotonic()
        by_id = {report["id"]: report for report in reports if "id" in report}
        stats = StreamStats()
        bytes_received = 0
        packets_lost = 0
        packets_received = 0

        for report in reports:
            match report.get("type"):
                case "inbound-rtp" if report.get("kind") == "audio":
                    bytes_received = report.get("bytesReceived") or 0
                    if (
                        self._previous_time is not None
                        and bytes_received >= self._previous_bytes
                        and now > self._previous_time
                    ):
                        elapsed = now - self._previous_time
                        delta = bytes_received - self._previous_bytes
                        stats.bitrate_kbps = round(delta * 8 / elapsed / 1000)
                    if (jitter := report.get("jitter")) is not None:
                        stats.jitter_ms = jitter * 1000
                    packets_lost = report.get("packetsLost") or 0
                    packets_received = report.get("packetsReceived") or 0
                    stats.jitter_buffer_delay_s = report.get("jitterBufferDelay") or 0.0
                    stats.audio_level = report.get("audioLevel")
                    codec = by_id.get(report.get("codecId", ""))
                    if codec is not None:
                        stats.codec = str(codec.get("mimeType") or "Unknown").replace("audio/", "")
                case "candidate-pair" if report.get("state") == "succeeded":
                    if (rtt := report.get("currentRoundTripTime")) is not None:
                        stats.round_trip_time_ms = rtt * 1000

        self._previous_bytes = bytes_received
        self._previous_time = now

        total_packets = packets_received + packets_lost
        if total_packets > 0:
            stats.packet_loss_percent = packets_lost / total_packets * 100
        return stats
