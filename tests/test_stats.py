"""Tests for receive statistics."""

from __future__ import annotations

from typing import Any

import pytest

from aiosfu.client.stats import StatsTracker, StreamStats


def _reports(
    bytes_received: int,
    *,
    packets_received: int = 100,
    packets_lost: int = 0,
    rtt: float | None = 0.042,
) -> list[dict[str, Any]]:
    reports: list[dict[str, Any]] = [
        {
            "id": "IT01A",
            "type": "inbound-rtp",
            "kind": "audio",
            "codecId": "CIT01_0",
            "bytesReceived": bytes_received,
            "packetsReceived": packets_received,
            "packetsLost": packets_lost,
            "jitter": 0.003,
            "jitterBufferDelay": 1.5,
            "audioLevel": 0.25,
        },
        {"id": "CIT01_0", "type": "codec", "mimeType": "audio/PCMU"},
    ]
    if rtt is not None:
        reports.append(
            {"id": "CP1", "type": "candidate-pair", "state": "succeeded", "currentRoundTripTime": rtt}
        )
    return reports


def test_first_update_has_no_bitrate() -> None:
    stats = StatsTracker().update(_reports(8000), now=10.0)

    assert stats.bitrate_kbps == 0
    assert stats.codec == "PCMU"
    assert stats.jitter_ms == pytest.approx(3.0)
    assert stats.round_trip_time_ms == pytest.approx(42.0)
    assert stats.jitter_buffer_delay_s == 1.5
    assert stats.audio_level == 0.25
    assert stats.packet_loss_percent == 0


def test_bitrate_from_byte_delta() -> None:
    tracker = StatsTracker()
    tracker.update(_reports(8000), now=10.0)

    # 8000 bytes in one second
    stats = tracker.update(_reports(16000), now=11.0)
    assert stats.bitrate_kbps == 64

    stats = tracker.update(_reports(24000), now=13.0)
    assert stats.bitrate_kbps == 32


def test_reset_forgets_previous_report() -> None:
    tracker = StatsTracker()
    tracker.update(_reports(8000), now=10.0)
    tracker.reset()

    assert tracker.update(_reports(16000), now=11.0).bitrate_kbps == 0


def test_packet_loss() -> None:
    stats = StatsTracker().update(_reports(0, packets_received=90, packets_lost=10), now=1.0)
    assert stats.packet_loss_percent == pytest.approx(10.0)


def test_missing_reports_use_defaults() -> None:
    assert StatsTracker().update([], now=1.0) == StreamStats()

    stats = StatsTracker().update(
        [
            {"id": "IT01V", "type": "inbound-rtp", "kind": "video", "bytesReceived": 5000},
            {"id": "CP1", "type": "candidate-pair", "state": "in-progress", "currentRoundTripTime": 1},
        ],
        now=1.0,
    )
    assert stats.codec == "N/A"
    assert stats.round_trip_time_ms is None


def test_unknown_codec_report() -> None:
    reports = _reports(8000, rtt=None)
    reports[0]["codecId"] = "missing"
    stats = StatsTracker().update(reports, now=1.0)
    assert stats.codec == "N/A"
    assert stats.round_trip_time_ms is None
