"""
panel-agent WebSocket Transport
Managed socket primitive on top of the `websockets` asyncio client.

The session only tells it to open/close and reacts to on_open/on_close/
on_message. Framing, TLS and keepalive pings are websockets' job. A
connection attempt that never opens still ends with exactly one on_close.
"""

import asyncio
import logging
from typing import Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

logger = logging.getLogger(__name__)

# Same readiness values as a browser WebSocket
CONNECTING = 0
OPEN = 1
CLOSING = 2
CLOSED = 3


class WebSocketTransport:
    def __init__(self, addr: str, open_timeout: float = 10.0):
        self.addr = addr
        self.open_timeout = open_timeout
        self.state = CLOSED
        self.on_open: Optional[Callable[[], None]] = None
        self.on_close: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None

    def open(self) -> None:
        if self.state in (CONNECTING, OPEN):
            return
        self.state = CONNECTING
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        """Close the connection, or abandon an attempt still opening. on_close follows."""
        if self._task is None or self._task.done():
            return
        if self.state == OPEN:
            self.state = CLOSING
        self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def send(self, text: str) -> None:
        if self.state != OPEN or self._ws is None:
            return
        asyncio.get_running_loop().create_task(self._send(self._ws, text))

    async def _send(self, ws, text: str) -> None:
        try:
            await ws.send(text)
        except ConnectionClosed:
            # on_close follows from the receive loop
            logger.debug("Send on closed connection dropped")

    async def _run(self) -> None:
        try:
            async with websockets.connect(self.addr, open_timeout=self.open_timeout) as ws:
                self._ws = ws
                self.state = OPEN
                self._notify(self.on_open)
                async for message in ws:
                    if isinstance(message, bytes):
                        message = message.decode('utf-8', 'replace')
                    self._notify(self.on_message, message)
        except ConnectionClosed as e:
            logger.debug("Connection closed: %s", e)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning("Connection to %s failed: %s", self.addr, e)
        except Exception:
            logger.exception("Connection to %s failed unexpectedly", self.addr)
        finally:
            self._ws = None
            self.state = CLOSED
            self._notify(self.on_close)

    def _notify(self, callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Transport callback failed")
