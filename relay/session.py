"""
Relay Session

One session pairs a single WebSocket client with a single TCP connection
and pumps bytes between them until either side closes or errors.

Lifecycle:
    CONNECTING --connect ok--> RELAYING --any close/error--> CLOSED
    CONNECTING --connect failed--> CLOSED

Teardown runs at most once, whichever event triggers it first.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.frames import CloseCode

from common.config import RelayConfig

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle states."""
    CONNECTING = "connecting"
    RELAYING = "relaying"
    CLOSED = "closed"


@dataclass(frozen=True)
class RoutingParams:
    """TCP target requested by the client."""
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


def parse_routing_params(path: str) -> Optional[RoutingParams]:
    """
    Extract the TCP target from a request path like ``/?host=h&port=23``.

    Returns None if ``host`` or ``port`` is missing, or if ``port`` is not
    an integer in 1..65535.
    """
    query = parse_qs(urlsplit(path).query)

    host = query.get('host', [''])[0].strip()
    raw_port = query.get('port', [''])[0].strip()
    if not host or not raw_port:
        return None

    # int() alone would also take "2_3", "+23" and non-ASCII digits
    if not (raw_port.isascii() and raw_port.isdigit()):
        return None

    port = int(raw_port)
    if not 1 <= port <= 65535:
        return None

    return RoutingParams(host=host, port=port)


class RelaySession:
    """
    Bridges one WebSocket client to one TCP target.

    The session owns both handles exclusively. Once either side closes or
    errors, the other side is closed as well and forwarding stops.
    """

    def __init__(self, websocket: ServerConnection, target: RoutingParams,
                 config: Optional[RelayConfig] = None):
        self.websocket = websocket
        self.target = target
        self.config = config or RelayConfig()

        self.state = SessionState.CONNECTING
        self.close_code: Optional[int] = None

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._last_activity = time.monotonic()
        self._client_gone: Optional[asyncio.Future] = None

        # Stats
        self.bytes_to_client = 0
        self.bytes_to_target = 0

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    async def run(self) -> None:
        """Connect to the target and relay until either side goes away."""
        tasks = []
        try:
            if not await self._connect():
                await self.close(CloseCode.INTERNAL_ERROR)
                return

            # Watched only while drain() blocks, so messages already queued
            # by the client still reach the target after it closes
            self._client_gone = asyncio.ensure_future(self.websocket.wait_closed())

            tasks.append(asyncio.create_task(self._pump_target_to_client()))
            tasks.append(asyncio.create_task(self._pump_client_to_target()))
            if self.config.idle_timeout > 0:
                tasks.append(asyncio.create_task(self._idle_watchdog()))

            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

            # First finished task decides how the client is closed
            code, reason = next(iter(done)).result()
            await self.close(code, reason)

        finally:
            if self._client_gone is not None:
                tasks.append(self._client_gone)
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await self.close(CloseCode.GOING_AWAY)

    async def _connect(self) -> bool:
        """Open the TCP connection. Never retried."""
        host, port = self.target.host, self.target.port
        try:
            connect = asyncio.open_connection(host, port)
            if self.config.connect_timeout > 0:
                self._reader, self._writer = await asyncio.wait_for(
                    connect, timeout=self.config.connect_timeout
                )
            else:
                self._reader, self._writer = await connect
        except asyncio.TimeoutError:
            logger.error(f"Timed out connecting to TCP server at {self.target}")
            return False
        except OSError as e:
            logger.error(f"Failed to connect to TCP server at {self.target}: {e}")
            return False

        self.state = SessionState.RELAYING
        self._touch()
        logger.info(f"Connected to TCP server at {host}:{port}")
        return True

    async def _pump_target_to_client(self) -> Tuple[int, str]:
        """Forward every chunk read from TCP as one binary message."""
        try:
            while True:
                data = await self._reader.read(self.config.read_chunk_size)
                if not data:
                    logger.info(f"TCP server {self.target} closed the connection")
                    return CloseCode.NORMAL_CLOSURE, ""

                await self.websocket.send(data)
                self.bytes_to_client += len(data)
                self._touch()

        except ConnectionClosedError as e:
            logger.error(f"WebSocket Error: {e}")
            return CloseCode.NORMAL_CLOSURE, ""
        except ConnectionClosed:
            # Client went away while we were sending; nothing left to tell it
            return CloseCode.NORMAL_CLOSURE, ""
        except OSError as e:
            logger.error(f"TCP Error: {e}")
            return CloseCode.INTERNAL_ERROR, ""

    async def _pump_client_to_target(self) -> Tuple[int, str]:
        """Write every client message to TCP as raw bytes."""
        try:
            async for message in self.websocket:
                if isinstance(message, str):
                    message = message.encode('utf-8')

                self._writer.write(message)
                if not await self._drain_unless_client_gone():
                    logger.info(f"Client left while {self.target} was not reading")
                    return CloseCode.NORMAL_CLOSURE, ""
                self.bytes_to_target += len(message)
                self._touch()

            logger.info(f"Client closed session to {self.target}")
            return CloseCode.NORMAL_CLOSURE, ""

        except ConnectionClosedError as e:
            logger.error(f"WebSocket Error: {e}")
            return CloseCode.NORMAL_CLOSURE, ""
        except OSError as e:
            logger.error(f"TCP Error: {e}")
            return CloseCode.INTERNAL_ERROR, ""

    async def _drain_unless_client_gone(self) -> bool:
        """
        Wait for the TCP write buffer to drain.

        Returns False if the client connection closed first, which happens
        when the target stops reading.
        """
        drain = asyncio.ensure_future(self._writer.drain())
        try:
            done, _ = await asyncio.wait(
                {drain, self._client_gone}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not drain.done():
                drain.cancel()

        if drain not in done:
            return False
        drain.result()
        return True

    async def _idle_watchdog(self) -> Tuple[int, str]:
        """Finish once no bytes moved in either direction for idle_timeout."""
        timeout = self.config.idle_timeout
        while True:
            remaining = self._last_activity + timeout - time.monotonic()
            if remaining <= 0:
                logger.info(f"Session to {self.target} idle for {timeout}s, closing")
                return CloseCode.GOING_AWAY, "Idle timeout"
            await asyncio.sleep(remaining)

    def _touch(self) -> None:
        self._last_activity = time.monotonic()

    async def close(self, code: int = CloseCode.NORMAL_CLOSURE, reason: str = "") -> None:
        """
        Tear down both sides of the session.

        Only the first call has any effect; later calls return immediately.
        """
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.close_code = code

        if self._writer is not None:
            # End our half first so the target sees EOF after pending bytes
            try:
                if self._writer.can_write_eof():
                    self._writer.write_eof()
            except OSError as e:
                logger.debug(f"Could not send EOF to {self.target}: {e}")

            # close() flushes pending bytes; a target that stopped reading
            # gets the connection aborted after close_timeout
            self._writer.close()
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._writer.wait_closed()),
                    timeout=self.config.close_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"TCP connection to {self.target} did not drain, aborting")
                self._writer.transport.abort()
            except OSError as e:
                logger.debug(f"Error closing TCP connection to {self.target}: {e}")

        await self.websocket.close(code, reason)

        logger.debug(
            f"Session to {self.target} closed (code {int(code)}): "
            f"{self.bytes_to_client} bytes to client, "
            f"{self.bytes_to_target} bytes to target"
        )
