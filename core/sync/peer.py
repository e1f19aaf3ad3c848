"""
Remote Peer.

The remote runtime's side of a sync session: connects to a SyncEngine,
announces the project and keeps its own files directory in sync. Used for
integration tests and scripting.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from ..errors import ProtocolError
from ..models.config import ConnectionConfig, WatcherConfig
from ..models.files import ConflictVersion, FileInfo
from .connection import PeerConnection
from .events import SyncEvent, SyncEventKind
from .files import delete_local_file, list_files, read_file_safe, write_remote_files
from .ports import port_for
from .protocol import (
    CancelledDelete,
    ConflictsDetected,
    ConflictsResolved,
    ConflictVersionRequest,
    ConflictVersionResponse,
    DeleteCancelled,
    DeleteConfirmed,
    FileChange,
    FileDelete,
    FileList,
    FileSynced,
    Handshake,
    RequestFiles,
    SyncComplete,
    message_type,
)
from .tracker import SyncTracker
from .watcher import ProjectFileWatcher

logger = logging.getLogger(__name__)


@dataclass
class PeerMetrics:
    messages_received: int = 0
    changes_applied: int = 0
    deletes_applied: int = 0
    changes_sent: int = 0
    deletes_sent: int = 0
    echoes_suppressed: int = 0
    protocol_errors: int = 0


class RemotePeer:
    """
    Remote endpoint of a sync session.

    Features:
    - Answers ``request-files`` with its own snapshot
    - Applies ``file-change`` and ``file-delete``, remembering content in its
      tracker before each write so its watcher does not echo it back
    - Acknowledges every applied write with ``file-synced``
    - Confirms or cancels deletes that require confirmation
    - Resolves reported conflicts with a fixed policy
    - Optionally watches its own directory and forwards local edits
    """

    def __init__(
        self,
        project_id: str,
        project_name: str,
        files_dir: Union[str, Path],
        port: Optional[int] = None,
        host: str = "127.0.0.1",
        config: Optional[ConnectionConfig] = None,
        auto_confirm_deletes: bool = True,
        conflict_policy: Literal["local", "remote"] = "remote",
        watch: bool = False,
        watcher_config: Optional[WatcherConfig] = None
    ):
        self.project_id = project_id
        self.project_name = project_name
        self.files_dir = Path(files_dir)
        self.port = port or port_for(project_id)
        self.host = host
        self.config = config or ConnectionConfig()
        self.auto_confirm_deletes = auto_confirm_deletes
        self.conflict_policy = conflict_policy
        self.watch = watch
        self.watcher_config = watcher_config or WatcherConfig(initial_scan=False)

        self.tracker = SyncTracker()
        self.connection: Optional[PeerConnection] = None
        self.watcher: Optional[ProjectFileWatcher] = None
        self.metrics = PeerMetrics()

        # Every message received, in order
        self.received: List[Any] = []
        self._received_event = asyncio.Event()
        self._versions: Dict[str, float] = {}
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.is_open

    async def connect(self) -> None:
        """Connect, send the handshake and start processing messages."""
        self.files_dir.mkdir(parents=True, exist_ok=True)

        self.connection = await PeerConnection.connect(self.host, self.port, config=self.config)
        await self.connection.send(Handshake(project_id=self.project_id, project_name=self.project_name))
        self._receive_task = asyncio.create_task(self._receive_loop())

        if self.watch:
            self.watcher = ProjectFileWatcher(
                self.files_dir,
                config=self.watcher_config,
                event_callback=self._on_local_event,
            )
            await self.watcher.start()

        logger.debug(f"Peer connected to {self.host}:{self.port}")

    async def close(self) -> None:
        if self.watcher is not None:
            await self.watcher.close()
            self.watcher = None

        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self.connection is not None:
            await self.connection.close()

    async def send_file_change(self, file_name: str, content: str) -> bool:
        """Send an edit made on the remote side."""
        sent = await self._send(FileChange(file_name=file_name, content=content))
        if sent:
            self.tracker.remember(file_name, content)
            self._versions[file_name] = time.time() * 1000
            self.metrics.changes_sent += 1
        return sent

    async def send_file_delete(self, file_names: List[str]) -> bool:
        sent = await self._send(FileDelete(file_names=file_names))
        if sent:
            self.metrics.deletes_sent += len(file_names)
        return sent

    async def request_files(self) -> bool:
        return await self._send(RequestFiles())

    async def wait_for_message(
        self,
        kind: str,
        timeout: float = 5.0,
        predicate: Optional[Callable[[Any], bool]] = None
    ) -> Any:
        """
        Wait until a message of type ``kind`` has been received.

        Messages received before the call count too.

        Raises:
            asyncio.TimeoutError: Nothing matched within ``timeout``
        """
        async def _wait():
            index = 0
            while True:
                while index < len(self.received):
                    message = self.received[index]
                    index += 1
                    if message.type == kind and (predicate is None or predicate(message)):
                        return message
                self._received_event.clear()
                await self._received_event.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def _receive_loop(self) -> None:
        while self.connection is not None and self.connection.is_open:
            try:
                message = await self.connection.receive()
            except ProtocolError as e:
                self.metrics.protocol_errors += 1
                logger.warning(f"Peer dropped malformed frame: {e}")
                continue
            except (ConnectionError, OSError) as e:
                logger.debug(f"Peer connection error: {e}")
                break

            if message is None:
                logger.debug("Peer connection closed by server")
                break

            self.metrics.messages_received += 1
            self.received.append(message)
            self._received_event.set()
            await self._handle(message)

        # Half-closed by the server: release our end too
        if self.connection is not None:
            await self.connection.close()

    async def _handle(self, message) -> None:
        logger.debug(f"Peer received {message_type(message)}")

        if isinstance(message, RequestFiles):
            files = await list_files(self.files_dir)
            await self._send(FileList(files=files))

        elif isinstance(message, FileList):
            await self._apply_files(message.files)

        elif isinstance(message, FileChange):
            await self._apply_files([message])

        elif isinstance(message, FileDelete):
            await self._apply_delete(message)

        elif isinstance(message, ConflictsDetected):
            logger.debug(f"Resolving {len(message.conflicts)} conflicts as {self.conflict_policy}")
            await self._send(ConflictsResolved(resolution=self.conflict_policy))

        elif isinstance(message, ConflictVersionRequest):
            versions = [
                ConflictVersion(
                    file_name=query.file_name,
                    latest_remote_version_ms=self._versions.get(query.file_name),
                )
                for query in message.conflicts
            ]
            await self._send(ConflictVersionResponse(versions=versions))

        elif isinstance(message, SyncComplete):
            logger.debug("Peer sync complete")

        else:
            raise TypeError(f"Unhandled message type: {message_type(message)}")

    async def _apply_files(self, files) -> None:
        infos = [
            file if isinstance(file, FileInfo) else FileInfo(name=file.file_name, content=file.content)
            for file in files
        ]
        written = await write_remote_files(infos, self.files_dir, self.tracker)
        now = time.time() * 1000
        for name in written:
            self._versions[name] = now
            self.metrics.changes_applied += 1
            await self._send(FileSynced(file_name=name, remote_modified_at=now))

    async def _apply_delete(self, message: FileDelete) -> None:
        if message.require_confirmation and not self.auto_confirm_deletes:
            cancelled = []
            for name in message.file_names:
                content = await read_file_safe(name, self.files_dir)
                cancelled.append(CancelledDelete(file_name=name, content=content))
            await self._send(DeleteCancelled(files=cancelled))
            return

        for name in message.file_names:
            if await delete_local_file(name, self.files_dir, self.tracker):
                self._versions.pop(name, None)
                self.metrics.deletes_applied += 1

        if message.require_confirmation:
            await self._send(DeleteConfirmed(file_names=list(message.file_names)))

    async def _on_local_event(self, event: SyncEvent) -> None:
        if event.kind is SyncEventKind.UNLINK:
            if self.tracker.should_skip_delete(event.relative_path):
                self.tracker.clear_delete(event.relative_path)
                self.metrics.echoes_suppressed += 1
                return
            await self.send_file_delete([event.relative_path])
            return

        if self.tracker.should_skip(event.relative_path, event.content):
            logger.debug(f"Peer suppressed echo for {event.relative_path}")
            self.metrics.echoes_suppressed += 1
            return

        await self.send_file_change(event.relative_path, event.content)

    async def _send(self, message) -> bool:
        if self.connection is None:
            return False
        return await self.connection.send(message)

    def get_status(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected,
            "port": self.port,
            "files_dir": str(self.files_dir),
            "messages_received": self.metrics.messages_received,
            "changes_applied": self.metrics.changes_applied,
            "changes_sent": self.metrics.changes_sent,
            "echoes_suppressed": self.metrics.echoes_suppressed,
            "tracker": self.tracker.get_status(),
        }

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
