"""Represents a single browser connected to the server over the signaling WebSocket."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import TYPE_CHECKING, cast

from aiohttp import WSMessage, WSMsgType, web

from aiosfu.exceptions import SfuError
from aiosfu.models import decode_client_message
from aiosfu.models.consumer import ConsumerClosedMessage, ConsumerClosedPayload
from aiosfu.models.core import ErrorMessage
from aiosfu.models.types import ServerMessage

from .session import ClientSession

MAX_PENDING_MSG = 512

logger = logging.getLogger(__name__)

# SfuServer imports this module, only the annotation needs it back
# pyright: reportImportCycles=none
if TYPE_CHECKING:
    from .server import SfuServer


class SfuConnection:
    """
    A client connected to an SfuServer.

    Messages of one connection are handled strictly one after the other, each
    to completion including engine calls, because later requests depend on
    state established by earlier ones.
    """

    _server: SfuServer
    _request: web.Request
    _wsock: web.WebSocketResponse
    session: ClientSession
    """Resources owned by this connection."""
    _writer_task: asyncio.Task[None] | None = None
    """Drains _to_write onto the socket."""
    _to_write: asyncio.Queue[ServerMessage]
    """Outbound server messages, bounded by MAX_PENDING_MSG."""
    _handle_disconnect: Callable[[SfuConnection], None]
    _logger: logging.Logger

    def __init__(
        self,
        server: SfuServer,
        session: ClientSession,
        request: web.Request,
        handle_disconnect: Callable[[SfuConnection], None],
    ) -> None:
        """
        Created by SfuServer for every accepted upgrade request.

        Application code should not build connections itself.
        """
        self._server = server
        self.session = session
        self._request = request
        self._handle_disconnect = handle_disconnect
        self._wsock = web.WebSocketResponse(heartbeat=55)
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)
        self._disconnected = False
        self._logger = logger.getChild(session.id)
        self.session.set_consumer_closed_callback(self._on_consumer_closed)

    @property
    def session_id(self) -> str:
        """Identity of the session owned by this connection."""
        return self.session.id

    @property
    def remote(self) -> str | None:
        """Remote address of the client."""
        return self._request.remote

    @property
    def websocket_connection(self) -> web.WebSocketResponse:
        """Return the WebSocket of this connection."""
        return self._wsock

    async def handle_client(self) -> web.WebSocketResponse:
        """
        Serve this socket from upgrade until close.

        The returned response is what the aiohttp route hands back.
        """
        try:
            await self._setup_connection()
            await self._run_message_loop()
        except TimeoutError:
            pass
        finally:
            await self.disconnect()
        return self._wsock

    async def _setup_connection(self) -> None:
        """Establish the WebSocket connection and push the server info."""
        try:
            async with asyncio.timeout(10):
                _ = await self._wsock.prepare(self._request)
        except TimeoutError:
            self._logger.warning("WebSocket upgrade for %s timed out", self.remote)
            raise

        self._logger.info("Connection established with %s", self.remote)
        self._writer_task = self._server.loop.create_task(self._writer())
        # Tell the client what it may ask for before it asks anything
        self.send_message(self._server.router.server_info())

    async def _run_message_loop(self) -> None:
        """Read frames until the socket or the writer goes away."""
        wsock = self._wsock
        receive_task: asyncio.Task[WSMessage] | None = None
        try:
            while not wsock.closed:
                # A finished writer means the socket can no longer be written,
                # stop reading as well
                receive_task = self._server.loop.create_task(wsock.receive())
                assert self._writer_task is not None  # for type checking
                done, pending = await asyncio.wait(
                    [receive_task, self._writer_task],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if self._writer_task in done:
                    self._logger.debug("Writer stopped, leaving receive loop")
                    if receive_task in pending:
                        _ = receive_task.cancel()
                    break

                try:
                    msg = await receive_task
                except (ConnectionError, asyncio.CancelledError, TimeoutError) as e:
                    self._logger.error("Receive failed: %s", e)
                    break

                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break
                if msg.type is WSMsgType.ERROR:
                    self._logger.error("WebSocket error: %s", wsock.exception())
                    break
                if msg.type != WSMsgType.TEXT:
                    continue

                await self._handle_frame(cast("str", msg.data))
            self._logger.debug("Socket closed, receive loop done")

        except asyncio.CancelledError:
            self._logger.debug("Receive loop cancelled")
        except Exception:
            self._logger.exception("Receive loop crashed")
        finally:
            if receive_task and not receive_task.done():
                _ = receive_task.cancel()

    async def _handle_frame(self, data: str) -> None:
        """Decode and dispatch one frame, reporting every failure as an error event."""
        try:
            message = decode_client_message(data)
            self._logger.debug("Received %s", type(message).__name__)
            await self._server.router.dispatch(self.session, message, self.send_message)
        except SfuError as err:
            self._logger.warning("Request failed: %s", err)
            self.send_message(ErrorMessage(payload=str(err)))
        except Exception as err:
            # NOTE: Intentional catch-all, a handler bug must not end the connection
            self._logger.exception("Error processing message")
            self.send_message(ErrorMessage(payload=str(err) or "Server error"))

    async def _writer(self) -> None:
        """Send queued server messages in order."""
        wsock = self._wsock
        try:
            while not wsock.closed:
                item = await self._to_write.get()
                try:
                    await wsock.send_str(item.to_json())
                except ConnectionError:
                    self._logger.warning("Socket went away while sending, writer stops")
                    break
            self._logger.debug("Socket closed, writer done")
        except asyncio.CancelledError:
            raise
        except Exception:
            self._logger.exception("Writer crashed")

    def send_message(self, message: ServerMessage) -> None:
        """Queue a message for the writer, dropped once disconnected."""
        if self._disconnected:
            self._logger.debug("Dropping %s for disconnected client", type(message).__name__)
            return
        self._logger.debug("Queueing %s", type(message).__name__)
        try:
            self._to_write.put_nowait(message)
        except asyncio.QueueFull:
            self._logger.error("Outgoing queue full, closing connection")
            _ = self._server.loop.create_task(self._wsock.close())

    def _on_consumer_closed(self, consumer_id: str) -> None:
        self.send_message(ConsumerClosedMessage(payload=ConsumerClosedPayload(consumer_id)))

    async def disconnect(self) -> None:
        """Disconnect this client and release every resource it owns, safe to call twice."""
        if self._disconnected:
            return
        self._disconnected = True
        self._logger.debug("Tearing down connection")

        # Release engine resources first, an in-flight handler sees a closed session
        self._handle_disconnect(self)

        if self._writer_task and not self._writer_task.done():
            self._logger.debug("Stopping writer")
            _ = self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task

        if not self._wsock.closed:
            try:
                _ = await self._wsock.close()
            except Exception:
                self._logger.exception("Closing the socket failed")

        self._logger.info("Connection with %s closed", self.remote)
