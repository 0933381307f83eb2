"""aiosfu: signaling and session lifecycle of a selective-forwarding audio relay."""

from __future__ import annotations

# Re-export the listener client library for easy import
from aiosfu.client import (
    ListenerSession,
    SignalingChannel,
    StatsTracker,
    StreamStats,
)
from aiosfu.exceptions import SfuError

__all__ = [
    "ListenerSession",
    "SfuError",
    "SignalingChannel",
    "StatsTracker",
    "StreamStats",
]
