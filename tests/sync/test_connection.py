"""
Tests for the sync transport: handshake, malformed messages and client replacement.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect

from core.errors import PortInUseError
from core.models.config import ConnectionConfig, RetryConfig
from core.sync.connection import PeerConnection, SyncServer
from core.sync.hashing import shorten_id
from core.sync.protocol import FileChange, Handshake, RequestFiles, SyncComplete

OTHER_PROJECT_ID = "ffffffffffffffffffffffffffffffff"


@pytest.fixture
def connection_config():
    return ConnectionConfig(
        handshake_timeout_s=2.0,
        malformed_frame_threshold=3,
        retry=RetryConfig(max_attempts=3, initial_delay_s=0.05),
    )


@pytest_asyncio.fixture
async def server(free_port, project_id, connection_config):
    sync_server = SyncServer(free_port, project_id, connection_config)
    sync_server.on_handshake = AsyncMock()
    sync_server.on_message = AsyncMock()
    sync_server.on_disconnect = AsyncMock()
    await sync_server.start()
    yield sync_server
    await sync_server.close()


async def _connect(server, config):
    return await PeerConnection.connect("127.0.0.1", server.port, config=config)


class TestHandshake:
    """Test handshake acceptance and rejection"""

    @pytest.mark.asyncio
    async def test_valid_handshake(self, server, project_id, connection_config, wait_until):
        peer = await _connect(server, connection_config)
        try:
            await peer.send(Handshake(project_id=project_id, project_name="Demo"))

            assert await wait_until(lambda: server.on_handshake.await_count == 1)
            connection, message = server.on_handshake.await_args.args
            assert message.project_name == "Demo"
            assert connection.project_name == "Demo"
            assert server.is_connected
        finally:
            await peer.close()

    @pytest.mark.asyncio
    async def test_short_id_handshake_accepted(self, server, project_id, connection_config, wait_until):
        peer = await _connect(server, connection_config)
        try:
            await peer.send(Handshake(project_id=shorten_id(project_id)))
            assert await wait_until(lambda: server.on_handshake.await_count == 1)
        finally:
            await peer.close()

    @pytest.mark.asyncio
    async def test_project_mismatch_closes_connection(self, server, connection_config):
        peer = await _connect(server, connection_config)
        try:
            await peer.send(Handshake(project_id=OTHER_PROJECT_ID))

            assert await peer.receive(timeout=2.0) is None
            await asyncio.wait_for(peer.websocket.wait_closed(), timeout=2.0)
            assert peer.websocket.close_code == 1008
            assert server.on_handshake.await_count == 0
            assert server.get_status()["rejected_handshakes"] == 1
        finally:
            await peer.close()

    @pytest.mark.asyncio
    async def test_messages_before_handshake_are_ignored(self, server, project_id, connection_config, wait_until):
        peer = await _connect(server, connection_config)
        try:
            await peer.send(RequestFiles())
            await peer.send(Handshake(project_id=project_id))
            await peer.send(FileChange(file_name="a.tsx", content="x"))

            assert await wait_until(lambda: server.on_message.await_count == 1)
            assert isinstance(server.on_message.await_args.args[0], FileChange)
        finally:
            await peer.close()


class TestFraming:
    """Test malformed frame handling"""

    @pytest.mark.asyncio
    async def test_single_malformed_frame_is_dropped(self, server, project_id, connection_config, wait_until):
        peer = await _connect(server, connection_config)
        try:
            await peer.send(Handshake(project_id=project_id))
            await peer.websocket.send("{not json}")
            await peer.send(RequestFiles())

            assert await wait_until(lambda: server.on_message.await_count == 1)
            assert server.get_status()["protocol_errors"] == 1
            assert server.is_connected
        finally:
            await peer.close()

    @pytest.mark.asyncio
    async def test_consecutive_malformed_frames_close_connection(self, server, project_id, connection_config, wait_until):
        peer = await _connect(server, connection_config)
        try:
            await peer.send(Handshake(project_id=project_id))
            for _ in range(3):
                await peer.websocket.send("garbage")

            assert await peer.receive(timeout=2.0) is None
            await asyncio.wait_for(peer.websocket.wait_closed(), timeout=2.0)
            assert peer.websocket.close_code == 1002
            assert await wait_until(lambda: server.on_disconnect.await_count == 1)
            assert server.get_status()["protocol_errors"] == 3
        finally:
            await peer.close()


class TestClientReplacement:
    """Test that a newer handshake replaces the active client"""

    @pytest.mark.asyncio
    async def test_newer_handshake_wins(self, server, project_id, connection_config, wait_until):
        first = await _connect(server, connection_config)
        second = await _connect(server, connection_config)
        try:
            await first.send(Handshake(project_id=project_id))
            assert await wait_until(lambda: server.on_handshake.await_count == 1)

            await second.send(Handshake(project_id=project_id))
            assert await wait_until(lambda: server.on_handshake.await_count == 2)

            # The replaced client is closed and its disconnect is not reported
            assert await first.receive(timeout=2.0) is None
            await asyncio.sleep(0.1)
            assert server.on_disconnect.await_count == 0

            assert await server.send(SyncComplete()) is True
            assert isinstance(await second.receive(timeout=2.0), SyncComplete)
        finally:
            await first.close()
            await second.close()


class TestServerLifecycle:
    """Test binding, sending without a client and connecting"""

    @pytest.mark.asyncio
    async def test_port_in_use(self, server, project_id):
        other = SyncServer(server.port, project_id, ConnectionConfig())
        with pytest.raises(PortInUseError) as exc_info:
            await other.start()
        assert exc_info.value.port == server.port

    @pytest.mark.asyncio
    async def test_send_without_client(self, server):
        assert await server.send(SyncComplete()) is False

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server):
        await server.close()
        await server.close()
        assert not server.is_serving

    @pytest.mark.asyncio
    async def test_connect_gives_up_after_retries(self, free_port):
        config = ConnectionConfig(retry=RetryConfig(max_attempts=2, initial_delay_s=0.01))
        with pytest.raises(OSError):
            await PeerConnection.connect("127.0.0.1", free_port, config=config)

    def test_retry_backoff(self):
        retry = RetryConfig(initial_delay_s=0.5, backoff_factor=2.0, max_delay_s=3.0)
        assert retry.delay_for(1) == 0.5
        assert retry.delay_for(2) == 1.0
        assert retry.delay_for(5) == 3.0


class TestPlainWebSocketClient:
    """Test that any WebSocket client can talk to the server"""

    @pytest.mark.asyncio
    async def test_json_text_frames(self, server, project_id, wait_until):
        async with connect(f"ws://127.0.0.1:{server.port}", proxy=None) as websocket:
            await websocket.send(json.dumps({"type": "handshake", "projectId": project_id, "projectName": "Demo"}))
            assert await wait_until(lambda: server.on_handshake.await_count == 1)

            await websocket.send(json.dumps({"type": "file-change", "fileName": "a.tsx", "content": "x"}))
            assert await wait_until(lambda: server.on_message.await_count == 1)

            assert await server.send(SyncComplete()) is True
            reply = await asyncio.wait_for(websocket.recv(), timeout=2.0)
            assert json.loads(reply) == {"type": "sync-complete"}

    @pytest.mark.asyncio
    async def test_handshake_timeout_closes_connection(self, free_port, project_id):
        config = ConnectionConfig(handshake_timeout_s=0.2)
        async with SyncServer(free_port, project_id, config) as sync_server:
            async with connect(f"ws://127.0.0.1:{sync_server.port}", proxy=None) as websocket:
                await asyncio.wait_for(websocket.wait_closed(), timeout=2.0)
                assert websocket.close_code == 1008
