"""Registry of the streams produced by the external ingest pipeline."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiosfu.config import StreamConfig
from aiosfu.exceptions import SfuError
from aiosfu.models.core import StreamInfo

from .engine import EngineEvent, Producer, ProducerClosedEvent

if TYPE_CHECKING:
    from .engine import MediaEngine

logger = logging.getLogger(__name__)


class StreamCatalog:
    """
    Configured streams and the live source handle of each one.

    The catalog is read-only for the signaling layer: it lists streams and
    resolves a stream id to its source. Sources are registered by the ingest
    side and drop out of the catalog on their own when they close.
    """

    def __init__(self, streams: list[StreamConfig]) -> None:
        """Initialize the catalog with the configured streams."""
        self._streams = {stream.id: stream for stream in streams}
        self._sources: dict[str, Producer] = {}

    def list_available(self) -> list[StreamInfo]:
        """Return id and name of every configured stream."""
        return [StreamInfo(id=stream.id, name=stream.name) for stream in self._streams.values()]

    def get_stream(self, stream_id: str) -> StreamConfig | None:
        """Return the configuration of a stream."""
        return self._streams.get(stream_id)

    def get_source_handle(self, stream_id: str) -> Producer | None:
        """Return the live source of a stream, None if it has none."""
        source = self._sources.get(stream_id)
        if source is None or source.closed:
            return None
        return source

    def register_source(self, stream_id: str, source: Producer) -> None:
        """Make source the live source of stream_id."""
        if stream_id not in self._streams:
            raise KeyError(f"Unknown stream {stream_id}")
        previous = self._sources.get(stream_id)
        if previous is not None and previous is not source:
            previous.close()
        self._sources[stream_id] = source

        def on_event(event: EngineEvent) -> None:
            if not isinstance(event, ProducerClosedEvent):
                return
            # Only drop the entry if it still points at this source
            if self._sources.get(stream_id) is source:
                logger.warning("Source for stream %s closed", stream_id)
                del self._sources[stream_id]

        _ = source.add_event_listener(on_event)
        logger.info("Source %s registered for stream %s", source.id, stream_id)

    async def setup_sources(self, engine: MediaEngine) -> None:
        """Create a source for every configured stream."""
        logger.info("Setting up sources for %d stream(s)", len(self._streams))
        for stream in self._streams.values():
            try:
                source = await engine.create_source(stream)
            except SfuError:
                # Continue with the remaining streams
                logger.exception("Failed to set up source for stream %s", stream.name)
                continue
            self.register_source(stream.id, source)
        logger.info("Source setup complete")

    def close(self) -> None:
        """Close every source."""
        for source in list(self._sources.values()):
            source.close()
        self._sources.clear()
