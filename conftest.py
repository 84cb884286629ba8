"""
Shared pytest fixtures for the relay tests.

Provides:
- TcpTarget: local TCP service (echo, sink, greet-and-close, stalled or resetting)
  on an ephemeral port
- make_relay: factory for relay servers bound to 127.0.0.1 on an ephemeral port
"""

import asyncio
import socket
import struct
from typing import List, Optional

import pytest
import pytest_asyncio

from common.config import RelayConfig
from relay.server import RelayServer


class TcpTarget:
    """Local TCP service used as the relay's target."""

    def __init__(self, echo: bool = False, greeting: bytes = b"",
                 stall: bool = False, reset: bool = False):
        self.echo = echo
        self.greeting = greeting
        self.stall = stall
        self.reset = reset

        self.port: Optional[int] = None
        self.connections = 0
        self.received = bytearray()
        self.eof = asyncio.Event()
        self.disconnected = asyncio.Event()
        self.resume = asyncio.Event()  # Stalled targets start reading once set

        self._server: Optional[asyncio.Server] = None
        self._writers: List[asyncio.StreamWriter] = []

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self.resume.set()
        for writer in self._writers:
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            if self.greeting:
                # Send the greeting, then close our side
                writer.write(self.greeting)
                await writer.drain()
                return

            if self.stall:
                await self.resume.wait()

            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received += data
                if self.reset:
                    # Close with SO_LINGER 0 so the relay gets a RST
                    sock = writer.get_extra_info("socket")
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
                    writer.transport.abort()
                    return
                if self.echo:
                    writer.write(data)
                    await writer.drain()
            self.eof.set()

        except ConnectionError:
            pass
        finally:
            self.disconnected.set()
            writer.close()


async def _started(target: TcpTarget):
    await target.start()
    return target


@pytest_asyncio.fixture
async def echo_target():
    """TCP service that echoes every byte back."""
    target = await _started(TcpTarget(echo=True))
    yield target
    await target.stop()


@pytest_asyncio.fixture
async def sink_target():
    """TCP service that records bytes until EOF."""
    target = await _started(TcpTarget())
    yield target
    await target.stop()


@pytest_asyncio.fixture
async def greeting_target():
    """TCP service that sends a greeting and closes the connection."""
    target = await _started(TcpTarget(greeting=b"hello from target"))
    yield target
    await target.stop()


@pytest_asyncio.fixture
async def stalled_target():
    """TCP service that accepts but does not read until resume is set."""
    target = await _started(TcpTarget(stall=True))
    yield target
    await target.stop()


@pytest_asyncio.fixture
async def reset_target():
    """TCP service that resets the connection after the first bytes."""
    target = await _started(TcpTarget(reset=True))
    yield target
    await target.stop()


@pytest.fixture
def unused_port():
    """A local port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def make_relay():
    """Factory for listening relay servers; all are stopped after the test."""
    servers = []

    async def _make(**overrides) -> RelayServer:
        overrides.setdefault("ping_interval", 0)
        config = RelayConfig(host="127.0.0.1", port=0, **overrides)
        server = RelayServer(config)
        await server.listen()
        servers.append(server)
        return server

    yield _make

    for server in servers:
        await server.stop()


@pytest_asyncio.fixture
async def relay(make_relay):
    """Relay server with the default configuration."""
    return await make_relay()


@pytest.fixture
def relay_url():
    """Build a ws:// URL for a relay server and query string."""
    def _url(server: RelayServer, query: str = "") -> str:
        host, port = server.address
        return f"ws://{host}:{port}/{query}"
    return _url
