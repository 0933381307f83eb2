"""WebSocket signaling channel with an outbound queue and bounded reconnects."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from contextlib import suppress

from aiohttp import ClientError, ClientSession, ClientWebSocketResponse, WSMsgType

from aiosfu.exceptions import ChannelFailureError, ProtocolError
from aiosfu.models import decode_server_message
from aiosfu.models.types import ClientMessage, ServerMessage

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 3.0
"""Seconds to wait before each reconnect attempt."""

MessageListener = Callable[[ServerMessage], None]


class SignalingChannel:
    """
    Delivers signaling messages over a connection that may drop at any time.

    Messages sent while the channel is not open are queued and flushed in
    order once it opens. After the connection is lost the channel reconnects
    on its own, waiting reconnect_delay before each attempt, until
    max_reconnect_attempts consecutive attempts failed. From then on messages
    are only queued until reconnect() is called.
    """

    def __init__(
        self,
        url: str,
        *,
        session: ClientSession | None = None,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
    ) -> None:
        """
        Create a channel, nothing is connected until connect() or send().

        Args:
            url: WebSocket URL of the signaling server.
            session: aiohttp session to connect with, a private one is created if omitted.
            max_reconnect_attempts: Reconnect attempts after which the channel gives up.
            reconnect_delay: Seconds to wait before each reconnect attempt.
        """
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._ws: ClientWebSocketResponse | None = None
        self._pending: deque[ClientMessage] = deque()
        self._wakeup = asyncio.Event()
        self._listeners: list[MessageListener] = []
        self._connect_future: asyncio.Future[None] | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0

    @property
    def url(self) -> str:
        """Return the URL the channel connects to."""
        return self._url

    @property
    def connected(self) -> bool:
        """Return True if the WebSocket is open."""
        return self._ws is not None and not self._ws.closed

    @property
    def connecting(self) -> bool:
        """Return True while a connection attempt or a reconnect wait is in flight."""
        return self._run_task is not None and not self._run_task.done() and not self.connected

    @property
    def reconnect_attempts(self) -> int:
        """Return the number of reconnect attempts since the channel was last open."""
        return self._reconnect_attempts

    @property
    def pending_messages(self) -> list[ClientMessage]:
        """Return the messages waiting to be written, oldest first."""
        return list(self._pending)

    def connect(self) -> asyncio.Future[None]:
        """
        Open the channel.

        Concurrent callers share one future while an attempt is in flight. The
        future fails with ChannelFailureError once the channel gave up.
        """
        loop = asyncio.get_running_loop()
        if self._connect_future is None or self._connect_future.done():
            self._connect_future = loop.create_future()
        future = self._connect_future
        if self.connected:
            future.set_result(None)
        else:
            self._ensure_running()
        return future

    def reconnect(self) -> asyncio.Future[None]:
        """Connect again after the channel gave up or was disconnected."""
        logger.info("Manual reconnect to %s", self._url)
        self._reconnect_attempts = 0
        return self.connect()

    async def disconnect(self) -> None:
        """Close the channel, drop queued messages and stop reconnecting."""
        self._pending.clear()
        self._reconnect_attempts = self._max_reconnect_attempts
        if self._connect_future is not None and not self._connect_future.done():
            _ = self._connect_future.cancel()
        self._connect_future = None

        run_task = self._run_task
        self._run_task = None
        if run_task is not None and not run_task.done():
            _ = run_task.cancel()
            # A listener may disconnect from inside the run task
            if run_task is not asyncio.current_task():
                with suppress(asyncio.CancelledError):
                    await run_task

        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Signaling channel disconnected")

    def send(self, message: ClientMessage) -> None:
        """Send a message, queueing it until the channel is open."""
        self._pending.append(message)
        if self.connected:
            self._wakeup.set()
            return
        logger.debug("Channel not open, queued %s", type(message).__name__)
        if self._reconnect_attempts < self._max_reconnect_attempts:
            self._ensure_running()

    def add_message_listener(self, callback: MessageListener) -> Callable[[], None]:
        """Register a callback receiving every decoded server message.

        Returns a function to remove the listener.
        """
        self._listeners.append(callback)
        return lambda: self.remove_message_listener(callback)

    def remove_message_listener(self, callback: MessageListener) -> None:
        """Remove a callback registered with add_message_listener()."""
        with suppress(ValueError):
            self._listeners.remove(callback)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ensure_running(self) -> None:
        if self._run_task is None or self._run_task.done():
            self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def _open(self) -> ClientWebSocketResponse:
        if self._session is None:
            self._session = ClientSession()
        return await self._session.ws_connect(self._url, heartbeat=30)

    async def _run(self) -> None:
        """Keep the channel open until it gives up or is disconnected."""
        while True:
            try:
                logger.info("Connecting to signaling server at %s", self._url)
                ws = await self._open()
            except (ClientError, OSError, TimeoutError) as err:
                logger.warning("Connection to %s failed: %s", self._url, err)
            else:
                await self._run_connection(ws)

            if self._reconnect_attempts >= self._max_reconnect_attempts:
                logger.error(
                    "Giving up on %s after %d reconnect attempts",
                    self._url,
                    self._reconnect_attempts,
                )
                self._fail_connect(
                    ChannelFailureError("Signaling channel disconnected permanently after retries")
                )
                return

            self._reconnect_attempts += 1
            logger.info(
                "Reconnect attempt %d/%d in %.1fs",
                self._reconnect_attempts,
                self._max_reconnect_attempts,
                self._reconnect_delay,
            )
            await asyncio.sleep(self._reconnect_delay)

    async def _run_connection(self, ws: ClientWebSocketResponse) -> None:
        self._ws = ws
        self._reconnect_attempts = 0
        logger.info("Signaling channel connected")
        if self._connect_future is not None and not self._connect_future.done():
            self._connect_future.set_result(None)

        writer_task = asyncio.get_running_loop().create_task(self._writer(ws))
        try:
            await self._reader(ws)
        finally:
            _ = writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await writer_task
            self._ws = None
            if not ws.closed:
                await ws.close()
        logger.warning("Signaling channel closed (code %s)", ws.close_code)

    async def _reader(self, ws: ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type is WSMsgType.TEXT:
                self._handle_text(msg.data)
            elif msg.type is WSMsgType.ERROR:
                logger.error("WebSocket error: %s", ws.exception())
                break

    async def _writer(self, ws: ClientWebSocketResponse) -> None:
        """Write queued messages in order, a message leaves the queue once written."""
        while not ws.closed:
            if not self._pending:
                self._wakeup.clear()
                _ = await self._wakeup.wait()
                continue
            message = self._pending[0]
            try:
                await ws.send_str(message.to_json())
            except (ClientError, ConnectionError) as err:
                logger.warning("Failed to send %s: %s", type(message).__name__, err)
                return
            # The message may already be gone if disconnect() cleared the queue
            if self._pending and self._pending[0] is message:
                _ = self._pending.popleft()

    def _handle_text(self, data: str) -> None:
        try:
            message = decode_server_message(data)
        except ProtocolError:
            logger.exception("Failed to parse server message: %s", data)
            return
        logger.debug("Received %s", type(message).__name__)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                # NOTE: Intentional catch-all, one listener must not starve the others
                logger.exception("Error in message listener %s", listener)

    def _fail_connect(self, error: Exception) -> None:
        future = self._connect_future
        if future is not None and not future.done():
            future.set_exception(error)
