"""Tests for the in-memory media engine and the stream catalog."""

from __future__ import annotations

import pytest
from fakes import CLIENT_DTLS, OPUS, PCMU, make_streams

from aiosfu.config import CodecConfig, StreamConfig
from aiosfu.exceptions import EngineFailureError, IncompatibleError
from aiosfu.models.types import ConnectionState, MediaKind
from aiosfu.server import InMemoryMediaEngine, StreamCatalog
from aiosfu.server.engine import (
    ConsumerCloseReason,
    ConsumerClosedEvent,
    EngineEvent,
    ProducerClosedEvent,
    TransportClosedEvent,
    TransportStateChangedEvent,
    WorkerDiedEvent,
)


@pytest.mark.asyncio
async def test_start_only_once() -> None:
    engine = InMemoryMediaEngine()
    await engine.start()
    assert engine.running
    with pytest.raises(RuntimeError):
        await engine.start()
    engine.close()
    assert not engine.running


@pytest.mark.asyncio
async def test_receive_capabilities(engine: InMemoryMediaEngine) -> None:
    codecs = engine.get_receive_capabilities()["codecs"]
    assert codecs[0]["mimeType"] == "audio/PCMU"
    assert codecs[0]["preferredPayloadType"] == 0


@pytest.mark.asyncio
async def test_create_and_connect_transport(engine: InMemoryMediaEngine) -> None:
    transport = await engine.create_transport("session-1")
    events: list[EngineEvent] = []
    transport.add_event_listener(events.append)
    assert transport.ice_candidates[0]["port"] == 40000
    assert transport.dtls_parameters["fingerprints"]

    await engine.connect_transport(transport, CLIENT_DTLS)

    assert transport.state is ConnectionState.CONNECTED
    assert events == [
        TransportStateChangedEvent(ConnectionState.CONNECTING),
        TransportStateChangedEvent(ConnectionState.CONNECTED),
    ]
    with pytest.raises(EngineFailureError, match="already called"):
        await engine.connect_transport(transport, CLIENT_DTLS)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "dtls_parameters",
    [
        {},
        {"fingerprints": []},
        {"fingerprints": [{"algorithm": "sha-256"}]},
        {"role": "both", "fingerprints": [{"algorithm": "sha-256", "value": "AA"}]},
    ],
)
async def test_connect_rejects_bad_dtls(
    engine: InMemoryMediaEngine, dtls_parameters: dict
) -> None:
    transport = await engine.create_transport("session-1")
    with pytest.raises(EngineFailureError):
        await engine.connect_transport(transport, dtls_parameters)
    assert transport.state is ConnectionState.NEW


@pytest.mark.asyncio
async def test_port_range_exhausted() -> None:
    engine = InMemoryMediaEngine(rtc_min_port=50000, rtc_max_port=50001)
    await engine.start()
    first = await engine.create_transport("a")
    await engine.create_transport("b")
    with pytest.raises(EngineFailureError, match="No free RTC port"):
        await engine.create_transport("c")
    # Closing a transport frees its port
    first.close()
    await engine.create_transport("c")
    engine.close()


@pytest.mark.asyncio
async def test_source_with_configured_port_keeps_rtc_range() -> None:
    engine = InMemoryMediaEngine(rtc_min_port=50000, rtc_max_port=50000)
    await engine.start()
    fixed, dynamic = make_streams()[0], StreamConfig(id="talk", name="Talk", codec=PCMU)

    source = await engine.create_source(fixed)
    (ingest,) = engine.transports
    assert (ingest.port, ingest.rtcp_port) == (5004, 5005)
    transport = await engine.create_transport("a")
    assert transport.ice_candidates[0]["port"] == 50000

    with pytest.raises(EngineFailureError, match="No free RTC port"):
        await engine.create_source(dynamic)
    transport.close()
    await engine.create_source(dynamic)
    assert not source.closed
    engine.close()


@pytest.mark.asyncio
async def test_transport_close_cascades_to_consumers(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    transport = await engine.create_transport("session-1")
    capabilities = engine.get_receive_capabilities()
    consumers = [
        await engine.create_consumer(
            transport, catalog.get_source_handle(stream_id), capabilities, paused=False
        )
        for stream_id in ("jazz", "news", "jazz")
    ]
    reasons: list[ConsumerCloseReason] = []
    for consumer in consumers:
        consumer.add_event_listener(
            lambda event: reasons.append(event.reason)
            if isinstance(event, ConsumerClosedEvent)
            else None
        )
    transport_events: list[EngineEvent] = []
    transport.add_event_listener(transport_events.append)

    transport.close()
    transport.close()

    assert all(consumer.closed for consumer in consumers)
    assert reasons == [ConsumerCloseReason.TRANSPORT_CLOSED] * 3
    assert transport.consumers == []
    assert transport_events == [TransportClosedEvent()]
    assert transport not in engine.transports


@pytest.mark.asyncio
async def test_consumer_close_is_idempotent(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    transport = await engine.create_transport("session-1")
    consumer = await engine.create_consumer(
        transport,
        catalog.get_source_handle("jazz"),
        engine.get_receive_capabilities(),
        paused=True,
    )
    events: list[EngineEvent] = []
    consumer.add_event_listener(events.append)
    assert consumer.paused
    await consumer.resume()
    assert not consumer.paused

    consumer.close()
    consumer.close(ConsumerCloseReason.PRODUCER_CLOSED)

    assert events == [ConsumerClosedEvent(ConsumerCloseReason.CLIENT)]
    assert transport.consumers == []


@pytest.mark.asyncio
async def test_producer_close_notifies_consumer(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    transport = await engine.create_transport("session-1")
    source = catalog.get_source_handle("jazz")
    consumer = await engine.create_consumer(
        transport, source, engine.get_receive_capabilities(), paused=False
    )
    events: list[EngineEvent] = []
    consumer.add_event_listener(events.append)

    source.close()

    assert events == [
        ProducerClosedEvent(),
        ConsumerClosedEvent(ConsumerCloseReason.PRODUCER_CLOSED),
    ]
    assert not transport.closed


@pytest.mark.asyncio
async def test_can_consume_matches_codec(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    source = catalog.get_source_handle("jazz")
    assert engine.can_consume(source, {"codecs": [{"mimeType": "audio/pcmu", "clockRate": 8000}]})
    assert not engine.can_consume(source, {"codecs": [OPUS.to_capability()]})
    assert not engine.can_consume(source, None)

    transport = await engine.create_transport("session-1")
    with pytest.raises(IncompatibleError):
        await engine.create_consumer(
            transport, source, {"codecs": [OPUS.to_capability()]}, paused=False
        )


@pytest.mark.asyncio
async def test_fail_worker_closes_everything(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    events: list[EngineEvent] = []
    engine.add_event_listener(events.append)
    transport = await engine.create_transport("session-1")

    engine.fail_worker("segfault")

    assert events == [WorkerDiedEvent("segfault")]
    assert transport.closed
    assert catalog.get_source_handle("jazz") is None
    assert not engine.running
    with pytest.raises(EngineFailureError, match="not running"):
        await engine.create_transport("session-2")


# Stream catalog


@pytest.mark.asyncio
async def test_catalog_lists_configured_streams(catalog: StreamCatalog) -> None:
    assert [(s.id, s.name) for s in catalog.list_available()] == [
        ("jazz", "Jazz FM"),
        ("news", "News 24"),
    ]
    assert catalog.get_source_handle("radio1") is None
    assert catalog.get_stream("news").codec == PCMU


@pytest.mark.asyncio
async def test_catalog_drops_closed_source(catalog: StreamCatalog) -> None:
    source = catalog.get_source_handle("jazz")
    source.close()
    assert catalog.get_source_handle("jazz") is None
    # The stream stays listed
    assert "jazz" in [s.id for s in catalog.list_available()]


@pytest.mark.asyncio
async def test_catalog_register_replaces_source(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    old = catalog.get_source_handle("jazz")
    new = await engine.create_source(catalog.get_stream("jazz"))
    catalog.register_source("jazz", new)
    assert old.closed
    assert catalog.get_source_handle("jazz") is new

    with pytest.raises(KeyError):
        catalog.register_source("radio1", new)


@pytest.mark.asyncio
async def test_setup_sources_skips_failing_stream(engine: InMemoryMediaEngine) -> None:
    streams = [
        *make_streams(),
        StreamConfig(
            id="tv",
            name="TV",
            codec=CodecConfig(mime_type="video/VP8", clock_rate=90000, kind=MediaKind.VIDEO),
        ),
    ]
    catalog = StreamCatalog(streams)
    await catalog.setup_sources(engine)
    assert catalog.get_source_handle("jazz") is not None
    assert catalog.get_source_handle("tv") is None
    catalog.close()
    assert catalog.get_source_handle("jazz") is None
