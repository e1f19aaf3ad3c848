"""
Sync Transport.

One JSON text message per WebSocket frame. The local CLI runs a SyncServer
on the port derived from the project id; the remote runtime connects with a
WebSocket client (PeerConnection here) and opens with a handshake.
"""

import asyncio
import errno
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from websockets.asyncio.client import ClientConnection as WebSocketClient, connect
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidHandshake
from websockets.protocol import State

from ..errors import PortInUseError, ProjectMismatchError, ProtocolError
from ..models.config import ConnectionConfig, RetryConfig
from ..models.files import WireModel
from .hashing import shorten_id
from .protocol import (
    Handshake,
    IncomingMessage,
    OutgoingMessage,
    decode_incoming,
    decode_outgoing,
    encode_message,
    message_type,
)

logger = logging.getLogger(__name__)

HandshakeCallback = Callable[['ClientConnection', Handshake], Awaitable[None]]
MessageCallback = Callable[[IncomingMessage], Awaitable[None]]
DisconnectCallback = Callable[['ClientConnection'], Awaitable[None]]

# WebSocket close codes
CLOSE_POLICY_VIOLATION = 1008
CLOSE_PROTOCOL_ERROR = 1002

__all__ = [
    "ClientConnection",
    "PeerConnection",
    "RetryConfig",
    "SyncServer",
]


class _MessageStream:
    """Send and close logic shared by both ends of a sync connection"""

    def __init__(self, websocket: Union[ServerConnection, WebSocketClient], send_timeout_s: float):
        self.websocket = websocket
        self.send_timeout_s = send_timeout_s
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self.websocket.state is State.OPEN

    @property
    def peername(self) -> Optional[Any]:
        return self.websocket.remote_address

    async def send(self, message: WireModel) -> bool:
        """
        Send one message, bounded by ``send_timeout_s``.

        Returns:
            True if the frame was sent, False if the connection is closed or the send failed
        """
        kind = message_type(message)
        if not self.is_open:
            logger.debug(f"Cannot send {kind}: connection is closed")
            return False

        try:
            await asyncio.wait_for(self.websocket.send(encode_message(message)), timeout=self.send_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Send timed out for {kind} after {self.send_timeout_s}s")
            return False
        except ConnectionClosed as e:
            logger.debug(f"Send error for {kind}: {e}")
            return False
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        await self.websocket.close(code, reason)


class ClientConnection(_MessageStream):
    """Server-side wrapper around one accepted WebSocket"""

    def __init__(self, connection_id: int, websocket: ServerConnection, send_timeout_s: float):
        super().__init__(websocket, send_timeout_s)
        self.connection_id = connection_id
        self.connected_at = datetime.now()
        self.project_name: Optional[str] = None

    def __repr__(self) -> str:
        return f"ClientConnection(conn={self.connection_id}, open={self.is_open})"


class SyncServer:
    """
    Accepts remote runtime connections for one project.

    Features:
    - Handshake identity check against the project's short id
    - A newer valid handshake replaces the active client
    - Messages and disconnects from stale clients are ignored
    - Malformed frames are dropped; the connection closes after
      ``malformed_frame_threshold`` consecutive failures
    """

    def __init__(self, port: int, project_id: str, config: Optional[ConnectionConfig] = None):
        self.port = port
        self.project_id = project_id
        self.short_id = shorten_id(project_id)
        self.config = config or ConnectionConfig()

        self.on_handshake: Optional[HandshakeCallback] = None
        self.on_message: Optional[MessageCallback] = None
        self.on_disconnect: Optional[DisconnectCallback] = None

        self._server: Optional[Server] = None
        self._active_client: Optional[ClientConnection] = None
        self._connections: Set[ClientConnection] = set()
        self._connection_counter = 0
        self._closed = False

        self._frames_received = 0
        self._protocol_errors = 0
        self._rejected_handshakes = 0

    @property
    def active_client(self) -> Optional[ClientConnection]:
        return self._active_client

    @property
    def is_connected(self) -> bool:
        return self._active_client is not None and self._active_client.is_open

    @property
    def is_serving(self) -> bool:
        return self._server is not None and not self._closed

    async def start(self) -> None:
        """
        Bind and start accepting connections.

        Raises:
            PortInUseError: If the port is already bound
        """
        if self._server is not None:
            return

        try:
            self._server = await serve(
                self._handle_client,
                self.config.host,
                self.port,
                max_size=self.config.max_message_bytes,
                close_timeout=self.config.send_timeout_s,
            )
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise PortInUseError(self.port) from e
            raise

        self._closed = False
        logger.debug(f"Sync server listening on ws://{self.config.host}:{self.port}")

    async def close(self) -> None:
        """Stop accepting and close every connection; idempotent."""
        if self._closed or self._server is None:
            self._closed = True
            return
        self._closed = True

        server = self._server
        self._server = None
        self._active_client = None

        for connection in list(self._connections):
            await connection.close(reason="server shutting down")
        self._connections.clear()

        server.close()
        await server.wait_closed()
        logger.debug("Sync server closed")

    async def send(self, message: WireModel) -> bool:
        """Send to the active client; False if there is none or the send failed."""
        client = self._active_client
        if client is None:
            logger.debug(f"No active client to send {message_type(message)}")
            return False
        return await client.send(message)

    async def _handle_client(self, websocket: ServerConnection) -> None:
        self._connection_counter += 1
        connection = ClientConnection(self._connection_counter, websocket, self.config.send_timeout_s)
        self._connections.add(connection)
        conn_id = connection.connection_id
        logger.debug(f"Client connected (conn {conn_id}, peer {connection.peername})")

        handshake_received = False
        consecutive_errors = 0

        try:
            while connection.is_open:
                try:
                    if handshake_received:
                        data = await websocket.recv()
                    else:
                        data = await asyncio.wait_for(websocket.recv(), timeout=self.config.handshake_timeout_s)
                except asyncio.TimeoutError:
                    logger.warning(f"No handshake within {self.config.handshake_timeout_s}s (conn {conn_id}), closing")
                    await connection.close(CLOSE_POLICY_VIOLATION, "handshake timeout")
                    break
                except ConnectionClosed as e:
                    logger.debug(f"Connection closed (conn {conn_id}): {e}")
                    break

                self._frames_received += 1
                try:
                    message = decode_incoming(data)
                except ProtocolError as e:
                    self._protocol_errors += 1
                    consecutive_errors += 1
                    logger.error(f"Failed to parse message (conn {conn_id}): {e}")
                    if consecutive_errors >= self.config.malformed_frame_threshold:
                        logger.error(
                            f"Closing conn {conn_id} after {consecutive_errors} consecutive malformed frames"
                        )
                        await connection.close(CLOSE_PROTOCOL_ERROR, "too many malformed messages")
                        break
                    continue
                consecutive_errors = 0

                if isinstance(message, Handshake):
                    if not await self._accept_handshake(connection, message):
                        await connection.close(CLOSE_POLICY_VIOLATION, "project mismatch")
                        break
                    handshake_received = True
                elif handshake_received and self._active_client is connection:
                    await self._dispatch(self.on_message, message)
                elif handshake_received:
                    logger.debug(f"Ignoring {message.type} from stale client (conn {conn_id})")
                else:
                    logger.debug(f"Ignoring {message.type} before handshake (conn {conn_id})")
        finally:
            self._connections.discard(connection)
            if self._active_client is connection:
                self._active_client = None
                logger.debug(f"Client disconnected (conn {conn_id})")
                await self._dispatch(self.on_disconnect, connection)
            else:
                logger.debug(f"Ignoring disconnect from stale client (conn {conn_id})")
            await connection.close()

    async def _accept_handshake(self, connection: ClientConnection, message: Handshake) -> bool:
        received_short = shorten_id(message.project_id)
        if received_short != self.short_id:
            self._rejected_handshakes += 1
            logger.warning(str(ProjectMismatchError(self.short_id, received_short)))
            return False

        logger.debug(f"Received handshake: {message.project_name} ({message.project_id}) (conn {connection.connection_id})")
        connection.project_name = message.project_name

        previous = self._active_client
        self._active_client = connection
        if previous is not None and previous is not connection:
            logger.debug(f"Replacing active client with conn {connection.connection_id}")
            await previous.close(reason="replaced by a newer connection")

        await self._dispatch(self.on_handshake, connection, message)
        return True

    async def _dispatch(self, callback: Optional[Callable[..., Awaitable[None]]], *args) -> None:
        if callback is None:
            return
        try:
            await callback(*args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error handling message: {e}", exc_info=True)

    def get_status(self) -> Dict[str, Any]:
        return {
            "host": self.config.host,
            "port": self.port,
            "short_id": self.short_id,
            "serving": self.is_serving,
            "connected": self.is_connected,
            "active_connection": self._active_client.connection_id if self._active_client else None,
            "open_connections": len(self._connections),
            "frames_received": self._frames_received,
            "protocol_errors": self._protocol_errors,
            "rejected_handshakes": self._rejected_handshakes,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class PeerConnection(_MessageStream):
    """Remote-side WebSocket connection to a SyncServer"""

    def __init__(self, websocket: WebSocketClient, config: Optional[ConnectionConfig] = None):
        self.config = config or ConnectionConfig()
        super().__init__(websocket, self.config.send_timeout_s)

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        retry: Optional[RetryConfig] = None,
        config: Optional[ConnectionConfig] = None
    ) -> 'PeerConnection':
        """
        Open a connection, retrying with exponential backoff.

        Raises:
            OSError: The last connection error once all attempts are used
            InvalidHandshake: The server refused the WebSocket upgrade on the last attempt
        """
        config = config or ConnectionConfig()
        retry = retry or config.retry
        uri = f"ws://{host}:{port}"

        for attempt in range(1, retry.max_attempts + 1):
            try:
                websocket = await connect(
                    uri,
                    max_size=config.max_message_bytes,
                    open_timeout=config.handshake_timeout_s,
                    close_timeout=config.send_timeout_s,
                    proxy=None,
                )
                logger.debug(f"Connected to {uri} (attempt {attempt})")
                return cls(websocket, config)
            except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
                if attempt >= retry.max_attempts:
                    logger.error(f"Failed to connect to {uri} after {attempt} attempts: {e}")
                    raise
                delay = retry.delay_for(attempt)
                logger.debug(f"Connect to {uri} failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)

        raise ConnectionError(f"Could not connect to {uri}")

    async def receive(self, timeout: Optional[float] = None) -> Optional[OutgoingMessage]:
        """
        Read the next message from the server.

        Returns:
            The decoded message, or None once the connection is closed

        Raises:
            asyncio.TimeoutError: No message within ``timeout``
            ProtocolError: The message could not be decoded
        """
        try:
            if timeout is not None:
                data = await asyncio.wait_for(self.websocket.recv(), timeout=timeout)
            else:
                data = await self.websocket.recv()
        except ConnectionClosed:
            return None
        return decode_outgoing(data)
