"""
Project Sync Engine.

Runs one project's sync session: accepts the remote runtime on the derived
port, drives the lifecycle state machine and executes its effects against
the filesystem, the metadata cache and the connection.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import CodeLinkError, ProjectDirectoryError
from ..models.config import SyncConfig
from ..models.files import Conflict, ConflictVersionQuery, DeleteOrigin, FileInfo, PendingDelete, ProjectInfo
from ..workspace.imports import ImportInfo, extract_imports, scan_directory_imports
from ..workspace.project import find_or_create_project_dir
from .conflicts import detect_conflicts
from .connection import ClientConnection, SyncServer
from .files import delete_local_file, filter_echoed_files, list_files, read_file_safe, write_remote_files
from .hashing import hash_file_content, pluralize
from .lifecycle import (
    ConflictResolutionChosen,
    ConflictsFound,
    ConflictVersionsReceived,
    DeleteLocalFiles,
    DetectConflicts,
    Disconnected,
    FileSyncedConfirmation,
    FilesRequested,
    HandshakeReceived,
    InitWorkspace,
    ListLocalFiles,
    LoadPersistedState,
    LocalDeleteApproved,
    LocalDeleteRejected,
    LocalInitiatedFileDelete,
    Log,
    PersistState,
    RemoteFileChanged,
    RemoteFileDeleted,
    RemoteFileListReceived,
    RequestConflictDecisions,
    RequestConflictVersions,
    SendLocalChange,
    SendMessage,
    SyncComplete,
    SyncMode,
    SyncState,
    UpdateFileMetadata,
    WatcherEventReceived,
    WriteFiles,
    transition,
)
from .metadata import FileMetadataCache
from .paths import resolve_remote_reference
from .pending import PendingDeleteRegistry
from .protocol import (
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
    message_type,
)
from .protocol import SyncComplete as SyncCompleteMessage
from .queue import SyncEventQueue
from .tracker import SyncTracker
from .watcher import ProjectFileWatcher

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], Any]


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class SyncEngineMetrics:
    """Counters for one engine"""

    # Messages
    messages_received: int = 0
    messages_sent: int = 0
    send_failures: int = 0

    # Local to remote
    local_changes_sent: int = 0
    local_changes_skipped: int = 0
    local_deletes_sent: int = 0
    echo_deletes_skipped: int = 0

    # Remote to local
    remote_writes: int = 0
    remote_deletes: int = 0

    # Sessions
    handshakes: int = 0
    sync_completions: int = 0

    # Errors
    watcher_errors: int = 0
    effect_errors: int = 0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None


class SyncEngine:
    """
    Sync session for one project.

    Features:
    - Single remote client per project; a newer handshake starts a fresh session
    - Every state change goes through the lifecycle ``transition`` function,
      one event at a time
    - Echo suppression for writes and deletes made on behalf of the remote
    - Local deletes wait for remote confirmation in the background
    - The watcher starts once the project directory is known
    """

    def __init__(
        self,
        config: SyncConfig,
        base_dir: Optional[Path] = None,
        status_callback: Optional[StatusCallback] = None
    ):
        """
        Initialize the engine.

        Args:
            config: Project sync configuration
            base_dir: Where project directories are looked up and created when
                ``config.project_dir`` is not set; defaults to the working directory
            status_callback: Receives user-facing status lines
        """
        self.config = config
        self.base_dir = base_dir
        self.status_callback = status_callback

        self.tracker = SyncTracker(delete_marker_ttl_s=config.watcher.delete_marker_ttl_s)
        self.metadata = FileMetadataCache()
        self.pending = PendingDeleteRegistry(timeout_s=config.connection.pending_delete_timeout_s)
        self.event_queue = SyncEventQueue(max_queue_size=config.watcher.queue_max_size)
        self.server = SyncServer(config.port, config.project_id, config.connection)
        self.watcher: Optional[ProjectFileWatcher] = None

        self.state = SyncState()
        self.project_dir: Optional[Path] = config.project_dir
        self.files_dir: Optional[Path] = config.files_dir

        self._process_lock = asyncio.Lock()
        self._consumer_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._detected_imports: Dict[str, List[ImportInfo]] = {}

        self.metrics = SyncEngineMetrics()
        self.is_running = False
        self.start_time: Optional[datetime] = None

    @property
    def mode(self) -> SyncMode:
        return self.state.mode

    @property
    def conflicts(self) -> List[Conflict]:
        """Conflicts awaiting a decision"""
        return list(self.state.pending_conflicts)

    @property
    def pending_deletes(self) -> List[PendingDelete]:
        return self.pending.snapshot()

    @property
    def detected_imports(self) -> Dict[str, List[ImportInfo]]:
        return dict(self._detected_imports)

    async def start(self) -> bool:
        """
        Start listening for the remote runtime.

        Returns:
            True once the server is listening

        Raises:
            PortInUseError: If the project's port is already bound
        """
        if self.is_running:
            logger.warning("Sync engine is already running")
            return True

        self.server.on_handshake = self._on_handshake
        self.server.on_message = self._on_message
        self.server.on_disconnect = self._on_disconnect

        await self.event_queue.start()
        try:
            await self.server.start()
        except (CodeLinkError, OSError):
            await self.event_queue.stop()
            raise

        self._consumer_task = asyncio.create_task(self._consume_watcher_events())
        self.is_running = True
        self.start_time = datetime.now()

        logger.info(f"Sync engine for {self.config.short_id} listening on port {self.config.port}")
        return True

    async def stop(self) -> None:
        """Stop the session, the watcher and the server; idempotent."""
        if not self.is_running:
            return
        self.is_running = False

        logger.info("Stopping sync engine")

        if self.state.mode is not SyncMode.DISCONNECTED:
            await self._end_session()

        if self.watcher is not None:
            await self.watcher.close()

        await self.server.close()
        await self.event_queue.stop()

        tasks = list(self._background)
        if self._consumer_task is not None:
            tasks.append(self._consumer_task)
        for task in tasks:
            task.cancel()
        if tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=self.config.watcher.shutdown_timeout_s
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for engine tasks to stop")
        self._consumer_task = None
        self._background.clear()

        await self.metadata.flush()
        logger.info("Stopped sync engine")

    async def apply_remote_change(self, file: FileInfo) -> None:
        """Apply a remote file change as if it had arrived over the connection."""
        meta = self.metadata.get(self._canonical(file.name)) if self.files_dir else None
        await self.process_event(RemoteFileChanged(file, meta))

    async def process_event(self, event) -> None:
        """Run one event through the state machine and execute its effects."""
        async with self._process_lock:
            await self._process(event)

    async def _process(self, event) -> None:
        result = transition(self.state, event, now_ms=_now_ms(), remote_drift_ms=self.config.remote_drift_ms)
        if result.state.mode is not self.state.mode:
            logger.debug(f"Sync mode {self.state.mode.value} -> {result.state.mode.value}")
        self.state = result.state

        for effect in result.effects:
            try:
                follow_ups = await self.execute_effect(effect)
            except asyncio.CancelledError:
                raise
            except (CodeLinkError, OSError) as e:
                self._record_error(f"Failed to execute {type(effect).__name__}: {e}")
                logger.error(self.metrics.last_error_message)
                continue

            for follow_up in follow_ups:
                await self._process(follow_up)

    async def execute_effect(self, effect) -> List[Any]:
        """
        Execute one effect.

        Returns:
            Follow-up events to feed back into the state machine

        Raises:
            TypeError: If ``effect`` is not a known effect type
        """
        handler = self._effect_handlers.get(type(effect))
        if handler is None:
            raise TypeError(f"Unknown sync effect: {effect!r}")
        return await handler(self, effect) or []

    # Connection callbacks

    async def _on_handshake(self, connection: ClientConnection, message: Handshake) -> None:
        self.metrics.messages_received += 1
        self.metrics.handshakes += 1

        if self.state.mode is not SyncMode.DISCONNECTED:
            logger.info("New connection replaces the active session")
            await self._end_session()

        project = ProjectInfo(
            project_id=message.project_id,
            project_name=message.project_name or self.config.project_name or "",
        )
        await self.process_event(HandshakeReceived(connection, project))

    async def _on_message(self, message) -> None:
        self.metrics.messages_received += 1

        if self.files_dir is None or not self.metadata.is_initialized:
            logger.debug(f"Ignoring {message_type(message)} before the workspace is ready")
            return

        for event in self._events_for_message(message):
            await self.process_event(event)

    async def _on_disconnect(self, connection: ClientConnection) -> None:
        logger.info(f"Remote disconnected (conn {connection.connection_id})")
        await self._end_session()

    async def _end_session(self) -> None:
        await self.process_event(Disconnected())
        cancelled = self.pending.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {pluralize(cancelled, 'pending delete')}")
        self.tracker.clear()

    def _events_for_message(self, message) -> List[Any]:
        if isinstance(message, RequestFiles):
            return [FilesRequested()]

        if isinstance(message, FileList):
            return [RemoteFileListReceived(tuple(message.files))]

        if isinstance(message, FileChange):
            file = FileInfo(name=message.file_name, content=message.content, modified_at=_now_ms())
            return [RemoteFileChanged(file, self.metadata.get(self._canonical(message.file_name)))]

        if isinstance(message, FileDelete):
            return [RemoteFileDeleted(name) for name in message.file_names]

        if isinstance(message, DeleteConfirmed):
            return [
                LocalDeleteApproved(name)
                for name in message.file_names
                if not self.pending.resolve(name, True)
            ]

        if isinstance(message, DeleteCancelled):
            events = []
            for cancelled in message.files:
                self.pending.resolve(cancelled.file_name, False)
                events.append(LocalDeleteRejected(cancelled.file_name, cancelled.content))
            return events

        if isinstance(message, FileSynced):
            return [FileSyncedConfirmation(message.file_name, message.remote_modified_at)]

        if isinstance(message, ConflictsResolved):
            return [ConflictResolutionChosen(message.resolution)]

        if isinstance(message, ConflictVersionResponse):
            return [ConflictVersionsReceived(tuple(message.versions))]

        raise TypeError(f"Unhandled message type: {message_type(message)}")

    # Watcher

    async def _start_watcher(self) -> None:
        if self.watcher is not None or self.files_dir is None:
            return

        watcher_config = self.config.watcher.model_copy(update={"initial_scan": False})
        self.watcher = ProjectFileWatcher(
            self.files_dir,
            event_queue=self.event_queue,
            config=watcher_config,
            error_callback=self._on_watcher_error,
        )
        if not await self.watcher.start():
            logger.error(f"File watcher failed to start for {self.files_dir}")

    def _on_watcher_error(self, error: CodeLinkError) -> None:
        self.metrics.watcher_errors += 1
        self._record_error(str(error))

    async def _consume_watcher_events(self) -> None:
        logger.debug("Started watcher event consumer")
        async for event in self.event_queue:
            try:
                await self.process_event(WatcherEventReceived(event))
            except asyncio.CancelledError:
                raise
            except (CodeLinkError, OSError) as e:
                self._record_error(f"Error processing {event}: {e}")
                logger.error(self.metrics.last_error_message, exc_info=True)
        logger.debug("Stopped watcher event consumer")

    # Effects

    async def _init_workspace(self, effect: InitWorkspace) -> None:
        if self.files_dir is None:
            project_dir = await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: find_or_create_project_dir(
                    effect.project.project_id,
                    self.config.project_name or effect.project.project_name,
                    base_dir=self.base_dir,
                ),
            )
            self.project_dir = project_dir.directory
            self.files_dir = project_dir.files_dir

        self.files_dir.mkdir(parents=True, exist_ok=True)
        self._notify(f"Syncing {effect.project.project_name or effect.project.short_id} to {self.files_dir}")
        await self._start_watcher()
        if self.watcher is not None and self.watcher.is_monitoring:
            await self.watcher.normalize_existing_names()

    async def _load_persisted_state(self, effect: LoadPersistedState) -> None:
        await self.metadata.initialize(self._require_project_dir())

    async def _send_message(self, effect: SendMessage) -> None:
        await self._send(effect.message)

    async def _list_local_files(self, effect: ListLocalFiles) -> None:
        files = await list_files(self._require_files_dir(), timeout=self.config.watcher.read_timeout_s)
        logger.debug(f"Sending {pluralize(len(files), 'local file')}")
        await self._send(FileList(files=files))

    async def _detect_conflicts(self, effect: DetectConflicts) -> List[Any]:
        resolution = await detect_conflicts(
            list(effect.remote_files),
            self._require_files_dir(),
            persisted_state=self.metadata.persisted_state(),
            detect=self.config.detect_conflicts,
            prefer_remote=self.config.prefer_remote,
            timeout=self.config.watcher.read_timeout_s,
        )

        now = _now_ms()
        for file in resolution.unchanged:
            self.metadata.record_remote_write(file.name, file.content, file.modified_at or now)

        return [ConflictsFound(
            tuple(resolution.conflicts),
            tuple(resolution.writes),
            tuple(resolution.local_only),
        )]

    async def _write_files(self, effect: WriteFiles) -> None:
        files = list(effect.files)
        if effect.skip_echo:
            files = filter_echoed_files(files, self.tracker)
        if not files:
            return

        files_dir = self._require_files_dir()
        by_name = {self._canonical(file.name): file for file in files}
        written = await write_remote_files(files, files_dir, self.tracker, timeout=self.config.watcher.write_timeout_s)

        now = _now_ms()
        for name in written:
            file = by_name[name]
            self.metadata.record_remote_write(name, file.content, file.modified_at or now)
            self._detected_imports[name] = extract_imports(file.content)
            if not effect.silent:
                self._notify(f"Updated {name}")
        self.metrics.remote_writes += len(written)

    async def _delete_local_files(self, effect: DeleteLocalFiles) -> None:
        files_dir = self._require_files_dir()
        for name in effect.names:
            if await delete_local_file(name, files_dir, self.tracker):
                canonical = self._canonical(name)
                self.metadata.record_delete(canonical)
                self._detected_imports.pop(canonical, None)
                self.metrics.remote_deletes += 1
                self._notify(f"Deleted {canonical}")

    async def _request_conflict_decisions(self, effect: RequestConflictDecisions) -> None:
        await self._send(ConflictsDetected(conflicts=[conflict.to_summary() for conflict in effect.conflicts]))
        self._notify(f"{pluralize(len(effect.conflicts), 'conflict')} waiting for a decision in the remote editor")

    async def _request_conflict_versions(self, effect: RequestConflictVersions) -> None:
        persisted = self.metadata.persisted_state()
        queries = []
        for conflict in effect.conflicts:
            last_synced_at = conflict.last_synced_at
            if last_synced_at is None and conflict.file_name in persisted:
                last_synced_at = persisted[conflict.file_name].timestamp
            queries.append(ConflictVersionQuery(file_name=conflict.file_name, last_synced_at=last_synced_at))
        await self._send(ConflictVersionRequest(conflicts=queries))

    async def _update_file_metadata(self, effect: UpdateFileMetadata) -> None:
        content = await read_file_safe(
            effect.file_name,
            self._require_files_dir(),
            timeout=self.config.watcher.read_timeout_s
        )
        if content is None:
            logger.debug(f"Cannot record sync of {effect.file_name}: file not readable")
            return
        self.metadata.record_synced_snapshot(
            self._canonical(effect.file_name),
            hash_file_content(content),
            effect.remote_modified_at,
        )

    async def _send_local_change(self, effect: SendLocalChange) -> None:
        name = self._canonical(effect.file_name)
        meta = self.metadata.get(name)

        if meta is not None and meta.last_synced_hash == hash_file_content(effect.content):
            logger.debug(f"Skipping unchanged file: {name}")
            self.metrics.local_changes_skipped += 1
            return

        if self.tracker.should_skip(name, effect.content):
            logger.debug(f"Skipping echo: {name}")
            self.metrics.local_changes_skipped += 1
            return

        if await self._send(FileChange(file_name=name, content=effect.content)):
            self.tracker.remember(name, effect.content)
            self.metrics.local_changes_sent += 1
            self._detected_imports[name] = extract_imports(effect.content)
            logger.info(f"Sent {name}")

    async def _local_initiated_file_delete(self, effect: LocalInitiatedFileDelete) -> None:
        names = []
        for file_name in effect.file_names:
            name = self._canonical(file_name)
            if self.tracker.should_skip_delete(name):
                self.tracker.clear_delete(name)
                self.metrics.echo_deletes_skipped += 1
                logger.debug(f"Skipping echo delete: {name}")
                continue
            names.append(name)

        if not names:
            return

        if self.config.dangerously_auto_delete:
            if await self._send(FileDelete(file_names=names, require_confirmation=False)):
                self.metrics.local_deletes_sent += len(names)
            self._forget_deleted(names)
            return

        self.pending.request(names, DeleteOrigin.LOCAL, require_confirmation=True)
        if not await self._send(FileDelete(file_names=names, require_confirmation=True)):
            for name in names:
                self.pending.resolve(name, False)
        self._spawn(self._await_delete_decisions(names))

    async def _await_delete_decisions(self, names: List[str]) -> None:
        confirmed, expired = await self.pending.wait_for_outcomes(names)
        if expired:
            await self._send(FileDelete(file_names=expired, require_confirmation=False))
        if confirmed:
            self.metrics.local_deletes_sent += len(confirmed)
            self._forget_deleted(confirmed)
            self._notify(f"Deleted {', '.join(confirmed)} remotely")

    def _forget_deleted(self, names: List[str]) -> None:
        for name in names:
            self.tracker.forget(name)
            self.metadata.record_delete(name)
            self._detected_imports.pop(name, None)

    async def _persist_state(self, effect: PersistState) -> None:
        await self.metadata.flush()

    async def _sync_complete(self, effect: SyncComplete) -> None:
        await self._send(SyncCompleteMessage())
        self.metrics.sync_completions += 1

        if self.files_dir is not None:
            self._detected_imports = await asyncio.get_running_loop().run_in_executor(
                None, scan_directory_imports, self.files_dir
            )

        summary = f"Synced {pluralize(effect.total_count, 'file')}"
        if effect.total_count:
            summary += f" ({effect.updated_count} updated, {effect.unchanged_count} unchanged)"
        logger.info(summary)
        self._notify(summary)

    async def _log(self, effect: Log) -> None:
        getattr(logger, effect.level, logger.info)(effect.message)

    _effect_handlers = {
        InitWorkspace: _init_workspace,
        LoadPersistedState: _load_persisted_state,
        SendMessage: _send_message,
        ListLocalFiles: _list_local_files,
        DetectConflicts: _detect_conflicts,
        WriteFiles: _write_files,
        DeleteLocalFiles: _delete_local_files,
        RequestConflictDecisions: _request_conflict_decisions,
        RequestConflictVersions: _request_conflict_versions,
        UpdateFileMetadata: _update_file_metadata,
        SendLocalChange: _send_local_change,
        LocalInitiatedFileDelete: _local_initiated_file_delete,
        PersistState: _persist_state,
        SyncComplete: _sync_complete,
        Log: _log,
    }

    # Helpers

    async def _send(self, message) -> bool:
        sent = await self.server.send(message)
        if sent:
            self.metrics.messages_sent += 1
        else:
            self.metrics.send_failures += 1
            logger.warning(f"Failed to send {message_type(message)}")
        return sent

    def _canonical(self, file_name: str) -> str:
        return resolve_remote_reference(self._require_files_dir(), file_name).relative_path

    def _require_files_dir(self) -> Path:
        if self.files_dir is None:
            raise ProjectDirectoryError("Workspace is not initialized")
        return self.files_dir

    def _require_project_dir(self) -> Path:
        if self.project_dir is None:
            raise ProjectDirectoryError("Workspace is not initialized")
        return self.project_dir

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._record_error(f"Background task failed: {task.exception()}")
            logger.error(self.metrics.last_error_message)

    def _notify(self, message: str) -> None:
        if self.status_callback is None:
            return
        result = self.status_callback(message)
        if inspect.isawaitable(result):
            self._spawn(result)

    def _record_error(self, message: str) -> None:
        self.metrics.effect_errors += 1
        self.metrics.last_error_message = message
        self.metrics.last_error_time = datetime.now()

    def get_status(self) -> Dict[str, Any]:
        """
        Get status information about the sync session.

        Returns:
            Dictionary with status information
        """
        uptime = (datetime.now() - self.start_time).total_seconds() if self.start_time else 0.0
        return {
            "is_running": self.is_running,
            "mode": self.state.mode.value,
            "short_id": self.config.short_id,
            "port": self.config.port,
            "project_dir": str(self.project_dir) if self.project_dir else None,
            "files_dir": str(self.files_dir) if self.files_dir else None,
            "uptime_seconds": uptime,
            "synced_files": self.metadata.size(),
            "pending_conflicts": len(self.state.pending_conflicts),
            "pending_deletes": len(self.pending),
            "expired_deletes": self.pending.expired_count,
            "tracker": self.tracker.get_status(),
            "server": self.server.get_status(),
            "watcher": self.watcher.get_status() if self.watcher else None,
            "queue": self.event_queue.get_metrics(),
            "messages_received": self.metrics.messages_received,
            "messages_sent": self.metrics.messages_sent,
            "send_failures": self.metrics.send_failures,
            "local_changes_sent": self.metrics.local_changes_sent,
            "local_changes_skipped": self.metrics.local_changes_skipped,
            "remote_writes": self.metrics.remote_writes,
            "remote_deletes": self.metrics.remote_deletes,
            "last_error": self.metrics.last_error_message,
            "last_error_time": self.metrics.last_error_time.isoformat() if self.metrics.last_error_time else None,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
