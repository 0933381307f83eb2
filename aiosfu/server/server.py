"""Signaling server connecting browsers to the media engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass

from aiohttp import web

from aiosfu.config import DEFAULT_PATH

from .catalog import StreamCatalog
from .connection import SfuConnection
from .engine import EngineEvent, MediaEngine, WorkerDiedEvent
from .router import SignalingRouter
from .session import SessionRegistry

logger = logging.getLogger(__name__)


class SfuEvent:
    """Base event type used by SfuServer.add_event_listener()."""


@dataclass
class ClientConnectedEvent(SfuEvent):
    """A new client connected."""

    session_id: str


@dataclass
class ClientDisconnectedEvent(SfuEvent):
    """A client disconnected, all of its resources were released."""

    session_id: str


class SfuServer:
    """Signaling server handing out transports and consumers to connected clients."""

    loop: asyncio.AbstractEventLoop
    router: SignalingRouter
    registry: SessionRegistry
    _connections: set[SfuConnection]
    _event_cbs: list[Callable[[SfuEvent], Coroutine[None, None, None]]]
    _app_runner: web.AppRunner | None = None
    _tcp_site: web.TCPSite | None = None

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        engine: MediaEngine,
        catalog: StreamCatalog,
        *,
        path: str = DEFAULT_PATH,
    ) -> None:
        """
        Initialize a new server.

        Args:
            loop: Event loop the server runs on.
            engine: The started media engine, owned by the caller.
            catalog: The stream catalog, owned by the caller.
            path: Path the signaling WebSocket is served on.
        """
        self.loop = loop
        self._engine = engine
        self._catalog = catalog
        self._path = path
        self.router = SignalingRouter(engine, catalog)
        self.registry = SessionRegistry()
        self._connections = set()
        self._event_cbs = []
        self._worker_died = asyncio.Event()
        _ = engine.add_event_listener(self._on_engine_event)
        logger.debug("SfuServer initialized: path=%s", path)

    @property
    def connections(self) -> set[SfuConnection]:
        """Get the set of all connected clients."""
        return self._connections

    @property
    def catalog(self) -> StreamCatalog:
        """Get the stream catalog."""
        return self._catalog

    async def on_client_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle an incoming WebSocket connection from a browser."""
        logger.debug("Incoming client connection from %s", request.remote)
        session = self.registry.create()
        connection = SfuConnection(self, session, request, self._on_client_disconnect)
        self._connections.add(connection)
        self._signal_event(ClientConnectedEvent(session.id))
        return await connection.handle_client()

    def _on_client_disconnect(self, connection: SfuConnection) -> None:
        if connection not in self._connections:
            return
        self._connections.discard(connection)
        self.registry.remove(connection.session_id)
        logger.info(
            "Client %s removed (%d connected)", connection.session_id, len(self._connections)
        )
        self._signal_event(ClientDisconnectedEvent(connection.session_id))

    def create_app(self) -> web.Application:
        """Return an aiohttp application serving the signaling WebSocket."""
        app = web.Application()
        app.router.add_get(self._path, self.on_client_connect)
        return app

    async def start_server(self, host: str = "0.0.0.0", port: int = 3001) -> None:  # noqa: S104
        """Start serving the signaling WebSocket on host:port."""
        if self._app_runner is not None:
            logger.warning("Server is already running")
            return
        self._app_runner = web.AppRunner(self.create_app())
        await self._app_runner.setup()
        self._tcp_site = web.TCPSite(self._app_runner, host, port)
        await self._tcp_site.start()
        logger.info("Signaling server listening on ws://%s:%d%s", host, port, self._path)

    async def stop_server(self) -> None:
        """Disconnect every client and stop serving."""
        for connection in list(self._connections):
            await connection.disconnect()
        self.registry.close_all()
        if self._app_runner is not None:
            await self._app_runner.cleanup()
            self._app_runner = None
            self._tcp_site = None
        logger.info("Signaling server stopped")

    def _on_engine_event(self, event: EngineEvent) -> None:
        if isinstance(event, WorkerDiedEvent):
            logger.critical("Media engine worker died (%s), server cannot continue", event.error)
            self._worker_died.set()

    async def wait_worker_died(self) -> None:
        """Wait until the media engine worker died."""
        await self._worker_died.wait()

    def add_event_listener(
        self, callback: Callable[[SfuEvent], Coroutine[None, None, None]]
    ) -> Callable[[], None]:
        """Register a callback to listen for state changes of the server.

        State changes include:
        - A new client was connected
        - A client disconnected

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: SfuEvent) -> None:
        for cb in self._event_cbs:
            _ = self.loop.create_task(cb(event))
