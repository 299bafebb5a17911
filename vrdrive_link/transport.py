from __future__ import annotations

import asyncio
import logging
import ssl
import typing

import websockets

from . import config
from . import protocol
from .errors import DecodeError, TransportError
from .events import Signal

logger = logging.getLogger(__name__)

Connector = typing.Callable[[str], typing.Awaitable[typing.Any]]


async def connect_websocket(url: str):
    if url.startswith("wss://") and config.DEBUG_SERVER_DISABLE_SSL:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        return await websockets.connect(uri=url, compression="deflate", ssl=ssl_context,
                                        open_timeout=config.CONNECTION_TIMEOUT)
    return await websockets.connect(uri=url, compression="deflate", open_timeout=config.CONNECTION_TIMEOUT)


class SignalingSocket:
    """Reconnecting websocket to the rendezvous server.

    Socket I/O runs in background tasks which only post to ``_inbox``; the
    pump task drains it and is the only place that changes state or emits
    ``connected``, ``disconnected``, ``message(event, data)`` and ``error``.
    """
    def __init__(self, *, reconnect_delay: float = config.RECONNECT_DELAY,
                 max_reconnect_attempts: int = config.MAX_RECONNECT_ATTEMPTS,
                 connector: Connector | None = None):
        self.connected = Signal("connected")
        self.disconnected = Signal("disconnected")
        self.message = Signal("message")
        self.error = Signal("error")

        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_attempts = 0
        self.connect_attempts = 0

        self._connector = connector or connect_websocket
        self._inbox: asyncio.Queue[tuple[str, tuple]] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pump_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self._websocket = None
        self._url: str | None = None
        self._is_connected = False
        self._is_connecting = False
        self._should_reconnect = True

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def is_connecting(self) -> bool:
        return self._is_connecting

    @property
    def url(self) -> str | None:
        return self._url

    def connect(self, url: str) -> None:
        self._ensure_pump()
        if self._is_connecting or self._is_connected:
            logger.debug("WSS: connect(%s) ignored, already %s", url,
                         "connected" if self._is_connected else "connecting")
            return
        self._url = url
        self._should_reconnect = True
        self._begin_connect()

    async def disconnect(self) -> None:
        self._should_reconnect = False
        for task in (self._reconnect_task, self._connect_task, self._reader_task):
            if task and not task.done():
                task.cancel()
        self._reconnect_task = self._connect_task = self._reader_task = None
        self._is_connecting = False

        websocket, self._websocket = self._websocket, None
        was_connected, self._is_connected = self._is_connected, False
        if websocket is not None:
            try:
                await websocket.close()
            except (OSError, websockets.WebSocketException):
                logger.debug("WSS: error while closing socket", exc_info=True)
        if was_connected:
            logger.info("WSS: disconnected")
            self.disconnected.emit()

    async def aclose(self) -> None:
        await self.disconnect()
        if self._pump_task:
            self._pump_task.cancel()
            self._pump_task = None

    async def send(self, event_name: str, payload: dict[str, typing.Any] | str | None = None) -> bool:
        if not self._is_connected or self._websocket is None:
            logger.warning("WSS: dropping %s, socket is not connected", event_name)
            return False
        data = protocol.make_envelope(event_name, payload)
        try:
            await self._websocket.send(data.decode())
        except (OSError, websockets.WebSocketException) as e:
            logger.warning("WSS: failed to send %s: %s", event_name, e)
            return False
        return True

    def post(self, kind: str, *args) -> None:
        '''enqueue a transport event; safe to call from any thread'''
        if self._loop is None:
            raise RuntimeError("WSS: socket was never started on an event loop")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._inbox.put_nowait((kind, args))
        else:
            self._loop.call_soon_threadsafe(self._inbox.put_nowait, (kind, args))

    async def join(self) -> None:
        await self._inbox.join()

    # ---------------------------------------------------------------- internals

    def _ensure_pump(self):
        if self._pump_task is None or self._pump_task.done():
            self._loop = asyncio.get_running_loop()
            self._pump_task = asyncio.create_task(self._pump())

    def _begin_connect(self):
        self._is_connecting = True
        self.connect_attempts += 1
        logger.info("WSS: connecting to %s", self._url)
        self._connect_task = asyncio.create_task(self._open(self._url))

    async def _open(self, url):
        try:
            websocket = await self._connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.post("error", TransportError(f"connection to {url} failed: {e!r}"))
            return
        self.post("open", websocket)

    async def _read_loop(self, websocket):
        try:
            while True:
                raw = await websocket.recv()
                self.post("message", raw)
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as e:
            self.post("close", websocket, e)
        except Exception as e:
            self.post("close", websocket, e)

    async def _pump(self) -> typing.NoReturn:
        while True:
            kind, args = await self._inbox.get()
            try:
                self._dispatch(kind, args)
            except Exception:
                logger.error("WSS: failed to dispatch %s", kind, exc_info=True)
            finally:
                self._inbox.task_done()

    def _dispatch(self, kind: str, args: tuple):
        match kind:
            case "open":
                websocket = args[0]
                if not self._is_connecting:
                    logger.debug("WSS: late connection after disconnect, closing it")
                    asyncio.create_task(websocket.close())
                    return
                self._websocket = websocket
                self._is_connected = True
                self._is_connecting = False
                self.reconnect_attempts = 0
                self._reader_task = asyncio.create_task(self._read_loop(websocket))
                logger.info("WSS: connected to %s", self._url)
                self.connected.emit()
            case "close":
                websocket, exc = args
                if websocket is not self._websocket:
                    return
                self._websocket = None
                self._is_connected = False
                self._is_connecting = False
                logger.info("WSS: connection lost (%s)", exc)
                self.disconnected.emit()
                self._schedule_reconnect()
            case "error":
                exc = args[0]
                self._is_connecting = False
                logger.warning("WSS: %s", exc)
                self.error.emit(exc)
                self._schedule_reconnect()
            case "message":
                self._handle_message(args[0])
            case _:
                logger.error("WSS: unknown transport event %s", kind)

    def _handle_message(self, raw):
        try:
            event_name, data = protocol.parse_envelope(raw)
        except DecodeError as e:
            logger.warning("WSS: parse error: %s", e)
            return
        self.message.emit(event_name, data)

    def _schedule_reconnect(self):
        if not self._should_reconnect:
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error("WSS: giving up after %d reconnect attempts", self.reconnect_attempts)
            return
        self.reconnect_attempts += 1
        logger.info("WSS: reconnecting in %.1f seconds (attempt %d/%d)", self.reconnect_delay,
                    self.reconnect_attempts, self.max_reconnect_attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_later())

    async def _reconnect_later(self):
        await asyncio.sleep(self.reconnect_delay)
        if self._should_reconnect and not (self._is_connected or self._is_connecting):
            self._begin_connect()
