"""
Relay Server

WebSocket server that bridges each client to a TCP service.
The client names the target in the connection URL:

    ws://relay:19198/?host=tcp.example.com&port=23

How it works:
1. Client opens a WebSocket with host and port query parameters
2. Server validates the parameters (close 1008 if missing/invalid)
3. Server opens a TCP connection to host:port
4. Bytes flow both ways until either side closes
5. Closing one side closes the other

The relay never looks at the bytes it forwards.
"""

import logging
from typing import Optional, Tuple

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.frames import CloseCode

from common.config import RelayConfig
from .session import RelaySession, parse_routing_params

logger = logging.getLogger(__name__)

MISSING_PARAMS_REASON = "Missing required parameters: host, port"
TOO_MANY_SESSIONS_REASON = "Too many sessions"


class RelayServer:
    """
    WebSocket to TCP relay server.

    Holds no reference to running sessions; only counters are kept.
    """

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()

        self._server: Optional[Server] = None

        # Stats
        self._active_sessions = 0
        self._total_sessions = 0
        self._rejected = 0
        self._total_bytes_relayed = 0

    async def listen(self) -> None:
        """Bind the listening socket. Bind errors propagate to the caller."""
        self._server = await serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            max_size=self.config.max_message_size,
            ping_interval=self.config.ping_interval or None,
            ping_timeout=self.config.ping_timeout or None,
        )

        host, port = self.address
        logger.info(f"Listening on ws://{host}:{port}")

    async def start(self) -> None:
        """Start the relay server and serve until stopped."""
        if self._server is None:
            await self.listen()
        await self._server.serve_forever()

    async def stop(self) -> None:
        """Stop the relay server, closing in-flight connections."""
        if self._server is None:
            return

        server, self._server = self._server, None
        server.close()
        await server.wait_closed()

        logger.info("Relay server stopped")

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), or None when not listening."""
        if self._server is None or not self._server.sockets:
            return None
        sockname = self._server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Validate the routing parameters and run a session."""
        remote = websocket.remote_address
        if remote:
            peer = f"{remote[0]}:{remote[1]}"
        else:
            peer = "unknown"
        logger.info(f"New connection from {peer}")

        target = parse_routing_params(websocket.request.path)
        if target is None:
            logger.warning(f"Connection from {peer} closed due to missing parameters")
            self._rejected += 1
            await websocket.close(CloseCode.POLICY_VIOLATION, MISSING_PARAMS_REASON)
            return

        max_sessions = self.config.max_sessions
        if max_sessions and self._active_sessions >= max_sessions:
            logger.warning(f"Rejecting {peer}: {self._active_sessions} sessions active (max {max_sessions})")
            self._rejected += 1
            await websocket.close(CloseCode.TRY_AGAIN_LATER, TOO_MANY_SESSIONS_REASON)
            return

        session = RelaySession(websocket, target, self.config)
        self._active_sessions += 1
        self._total_sessions += 1
        try:
            await session.run()
        finally:
            self._active_sessions -= 1
            self._total_bytes_relayed += session.bytes_to_client + session.bytes_to_target

    @property
    def stats(self) -> dict:
        """Get server statistics."""
        return {
            'active_sessions': self._active_sessions,
            'total_sessions': self._total_sessions,
            'rejected': self._rejected,
            'total_bytes_relayed': self._total_bytes_relayed,
        }
