import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from .. import config

log = logging.getLogger(__name__)

MessageHandler = Callable[[str, Any], Optional[Awaitable[None]]]


def channel_url(base_url: str | None = None, token: str | None = None) -> str:
    """``http(s)://host`` -> ``ws(s)://host/ws`` (token appended for cookie-less clients)."""
    parts = urlsplit(base_url or config.CONSOLE_BASE_URL)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    path = parts.path.rstrip("/") + "/ws"
    query = urlencode({"token": token}) if token else ""
    return urlunsplit((scheme, parts.netloc, path, query, ""))


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class NotificationChannel:
    """Single live connection to the server's ``/ws`` stream.

    Frames are ``{"event": str, "data": any}`` and are handed to ``on_message`` in
    arrival order. After any close the channel reconnects once ``reconnect_delay``
    seconds have passed, until ``close()`` is called.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        on_connect: Callable[[], Any] | None = None,
        on_disconnect: Callable[[], Any] | None = None,
        reconnect_delay: float | None = None,
        connector: Callable[[str], Awaitable[Any]] | None = None,
    ):
        self.url = url
        self.on_message = on_message
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        if reconnect_delay is None:
            reconnect_delay = config.CONSOLE_RECONNECT_DELAY_MS / 1000.0
        self.reconnect_delay = max(0.0, float(reconnect_delay))
        self._connector = connector or websockets.connect
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._should_reconnect = True
        self.connect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def start(self) -> None:
        self._should_reconnect = True
        self.connect()

    def connect(self) -> None:
        self._reconnect_handle = None
        if not self._should_reconnect:
            return
        # One connection at a time.
        if self._ws is not None or (self._task is not None and not self._task.done()):
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        self.connect_attempts += 1
        try:
            ws = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("Failed to open notification channel: %s", exc)
            await self._closed()
            return

        self._ws = ws
        log.debug("Notification channel connected")
        try:
            if self.on_connect is not None:
                await _maybe_await(self.on_connect())
            async for raw in ws:
                await self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("Notification channel error: %s", exc)
        finally:
            self._ws = None
            log.debug("Notification channel disconnected")
            await self._closed()

    async def _closed(self) -> None:
        try:
            if self.on_disconnect is not None:
                await _maybe_await(self.on_disconnect())
        except Exception:
            log.exception("Disconnect handler failed")
        finally:
            self._schedule_reconnect()

    async def _handle_frame(self, raw: Any) -> None:
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            message = json.loads(raw)
            event = message["event"]
            if not isinstance(event, str):
                raise TypeError("event must be a string")
        except (ValueError, TypeError, KeyError) as exc:
            log.error("Failed to parse notification frame: %s", exc)
            return
        try:
            await _maybe_await(self.on_message(event, message.get("data")))
        except Exception:
            log.exception("Handler for %s failed", event)

    def _schedule_reconnect(self) -> None:
        if not self._should_reconnect:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._reconnect)

    def _reconnect(self) -> None:
        log.debug("Attempting to reconnect...")
        self.connect()

    async def close(self) -> None:
        """Tear down: cancel any pending reconnect and close without reconnecting."""
        self._should_reconnect = False
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        ws = self._ws
        task = self._task
        if ws is None:
            # Still handshaking (or idle): nothing to close gracefully.
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            return
        try:
            await ws.close()
        except Exception as exc:
            log.debug("Notification channel close failed: %s", exc)
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=5.0)
            except asyncio.TimeoutError:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
