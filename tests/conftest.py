"""Shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest_asyncio
from fakes import make_streams

from aiosfu.server import InMemoryMediaEngine, SfuServer, StreamCatalog


@pytest_asyncio.fixture
async def engine() -> AsyncIterator[InMemoryMediaEngine]:
    engine = InMemoryMediaEngine(rtc_min_port=40000, rtc_max_port=40050)
    await engine.start()
    yield engine
    engine.close()


@pytest_asyncio.fixture
async def catalog(engine: InMemoryMediaEngine) -> AsyncIterator[StreamCatalog]:
    catalog = StreamCatalog(make_streams())
    await catalog.setup_sources(engine)
    yield catalog
    catalog.close()


@pytest_asyncio.fixture
async def sfu_server(
    engine: InMemoryMediaEngine, catalog: StreamCatalog
) -> AsyncIterator[SfuServer]:
    server = SfuServer(asyncio.get_running_loop(), engine, catalog)
    yield server
    await server.stop_server()
