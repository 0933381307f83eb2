"""Tests for per-client resource ownership."""

from __future__ import annotations

import pytest
from fakes import CLIENT_DTLS

from aiosfu.exceptions import NotFoundError, WrongTypeError
from aiosfu.models.types import ConnectionState
from aiosfu.server import InMemoryMediaEngine, SessionRegistry, StreamCatalog
from aiosfu.server.engine import ConsumerCloseReason
from aiosfu.server.session import ClientSession


async def _consumer(
    engine: InMemoryMediaEngine, catalog: StreamCatalog, transport, stream_id: str = "jazz"
):
    return await engine.create_consumer(
        transport,
        catalog.get_source_handle(stream_id),
        engine.get_receive_capabilities(),
        paused=False,
    )


@pytest.mark.asyncio
async def test_new_transport_replaces_previous(engine: InMemoryMediaEngine) -> None:
    session = ClientSession("s1")
    first = await engine.create_transport(session.id)
    second = await engine.create_transport(session.id)

    assert session.add_transport(first)
    assert session.add_transport(second)

    assert first.closed
    assert list(session.transports) == [second.id]
    assert session.client_transport() is second


@pytest.mark.asyncio
async def test_transport_close_removes_consumers(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    notified: list[str] = []
    session = ClientSession("s1", on_consumer_closed=notified.append)
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    consumer = await _consumer(engine, catalog, transport)
    assert session.add_consumer(consumer)

    transport.close()

    assert consumer.closed
    assert session.consumers == {}
    assert session.transports == {}
    assert notified == [consumer.id]


@pytest.mark.asyncio
async def test_failed_transport_is_closed(engine: InMemoryMediaEngine) -> None:
    session = ClientSession("s1")
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)

    engine.update_transport_state(transport, ConnectionState.FAILED)

    assert transport.closed
    assert session.transports == {}


@pytest.mark.asyncio
async def test_closed_state_releases_transport_and_consumer(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    notified: list[str] = []
    session = ClientSession("s1", on_consumer_closed=notified.append)
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    await engine.connect_transport(transport, CLIENT_DTLS)
    consumer = await _consumer(engine, catalog, transport)
    session.add_consumer(consumer)

    engine.update_transport_state(transport, ConnectionState.CLOSED)

    assert transport.closed
    assert consumer.closed
    assert session.transports == {}
    assert session.consumers == {}
    assert session.client_transport() is None
    assert notified == [consumer.id]


@pytest.mark.asyncio
async def test_disconnected_transport_stays(engine: InMemoryMediaEngine) -> None:
    session = ClientSession("s1")
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    await engine.connect_transport(transport, CLIENT_DTLS)

    engine.update_transport_state(transport, ConnectionState.DISCONNECTED)
    engine.update_transport_state(transport, ConnectionState.CONNECTED)

    assert not transport.closed
    assert session.client_transport() is transport


@pytest.mark.asyncio
async def test_single_consumer(engine: InMemoryMediaEngine, catalog: StreamCatalog) -> None:
    notified: list[str] = []
    session = ClientSession("s1", on_consumer_closed=notified.append)
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    first = await _consumer(engine, catalog, transport, "jazz")
    second = await _consumer(engine, catalog, transport, "news")

    session.add_consumer(first)
    session.add_consumer(second)

    assert first.closed
    assert list(session.consumers) == [second.id]
    # Replaced on behalf of the client, nothing to report
    assert notified == []


@pytest.mark.asyncio
async def test_producer_close_is_reported(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    notified: list[str] = []
    session = ClientSession("s1", on_consumer_closed=notified.append)
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    consumer = await _consumer(engine, catalog, transport)
    session.add_consumer(consumer)

    catalog.get_source_handle("jazz").close()

    assert notified == [consumer.id]
    assert session.consumers == {}
    assert session.client_transport() is transport


@pytest.mark.asyncio
async def test_client_close_is_not_reported(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    notified: list[str] = []
    session = ClientSession("s1", on_consumer_closed=notified.append)
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    consumer = await _consumer(engine, catalog, transport)
    session.add_consumer(consumer)

    consumer.close(ConsumerCloseReason.CLIENT)
    consumer.close(ConsumerCloseReason.PRODUCER_CLOSED)

    assert notified == []
    assert session.consumers == {}


@pytest.mark.asyncio
async def test_get_transport_errors(engine: InMemoryMediaEngine, catalog: StreamCatalog) -> None:
    session = ClientSession("s1")
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    consumer = await _consumer(engine, catalog, transport)
    session.add_consumer(consumer)

    assert session.get_transport(transport.id) is transport
    with pytest.raises(NotFoundError, match="unknown"):
        session.get_transport("unknown")
    with pytest.raises(WrongTypeError):
        session.get_transport(consumer.id)


@pytest.mark.asyncio
async def test_close_releases_everything(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    notified: list[str] = []
    session = ClientSession("s1", on_consumer_closed=notified.append)
    transport = await engine.create_transport(session.id)
    session.add_transport(transport)
    consumer = await _consumer(engine, catalog, transport)
    session.add_consumer(consumer)

    session.close()
    session.close()

    assert session.closed
    assert transport.closed
    assert consumer.closed
    assert session.transports == {}
    assert session.consumers == {}
    assert notified == []
    assert transport not in engine.transports


@pytest.mark.asyncio
async def test_add_after_close_closes_resource(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> None:
    session = ClientSession("s1")
    transport = await engine.create_transport(session.id)
    consumer = await _consumer(engine, catalog, transport)
    session.close()

    assert not session.add_consumer(consumer)
    assert not session.add_transport(transport)
    assert consumer.closed
    assert transport.closed
    assert session.transports == {}


@pytest.mark.asyncio
async def test_registry(engine: InMemoryMediaEngine) -> None:
    registry = SessionRegistry()
    first = registry.create()
    second = registry.create()
    transport = await engine.create_transport(first.id)
    first.add_transport(transport)

    assert len(registry) == 2
    assert first.id != second.id
    assert registry.get(first.id) is first
    assert first.id in registry

    registry.remove(first.id)
    registry.remove(first.id)

    assert first.closed
    assert transport.closed
    assert registry.get(first.id) is None
    assert list(registry) == [second]

    registry.close_all()
    assert len(registry) == 0
    assert second.closed
