"""
Project File Watcher.

Monitors the synced files directory with watchdog, filters to supported
extensions, renames files whose names cannot be synced, reads content and
emits normalized SyncEvents for the sync engine.
"""

import asyncio
import inspect
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import aiofiles
from watchdog.events import (
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent as WatchdogEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from ..errors import CodeLinkError, FileSyncError, SanitizationError
from ..models.config import WatcherConfig
from .events import SyncEvent, SyncEventKind
from .paths import is_supported_extension, normalize_path, sanitize_file_path
from .queue import SyncEventQueue

logger = logging.getLogger(__name__)

EventCallback = Callable[[SyncEvent], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[Exception], Union[None, Awaitable[None]]]


class WatcherState(Enum):
    """Lifecycle of a ProjectFileWatcher"""
    IDLE = "idle"
    WATCHING = "watching"
    CLOSED = "closed"


class ProjectFileWatcher:
    """
    Watchdog-based watcher for a project's files directory.

    Converts raw filesystem notifications into SyncEvents.

    Features:
    - Supported extensions only (.ts, .tsx, .js, .jsx, .json); dotfiles and
      dot directories are ignored
    - Files with unsyncable names are renamed on disk to their sanitized form
    - Moves become an unlink of the source plus an add of the destination
    - Events for one path are handled one at a time, in arrival order
    - Initial scan emits add events for files already on disk
    - All reads are bounded by ``read_timeout_s``
    """

    def __init__(
        self,
        files_dir: Union[str, Path],
        event_queue: Optional[SyncEventQueue] = None,
        config: Optional[WatcherConfig] = None,
        event_callback: Optional[EventCallback] = None,
        error_callback: Optional[ErrorCallback] = None
    ):
        """
        Initialize the watcher.

        Args:
            files_dir: Directory to watch (recursively)
            event_queue: Queue that receives emitted events
            config: Watcher configuration
            event_callback: Called with every emitted event (sync or async)
            error_callback: Called with every per-path error (sync or async)
        """
        self.files_dir = Path(files_dir).resolve()
        self.event_queue = event_queue
        self.config = config or WatcherConfig()
        self.event_callback = event_callback
        self.error_callback = error_callback

        self.state = WatcherState.IDLE
        self.observer: Optional[Observer] = None
        self.event_handler: Optional['WatcherEventHandler'] = None

        # Per-path FIFO ordering
        self._path_locks: Dict[str, asyncio.Lock] = {}
        self._path_lock_users: Dict[str, int] = {}

        # Renames performed by this watcher: source path -> (destination, monotonic expiry)
        self._own_renames: Dict[str, Tuple[str, float]] = {}

        self._tasks: Set[asyncio.Task] = set()

        self._monitor_start_time: Optional[datetime] = None
        self._events_emitted = 0
        self._events_ignored = 0
        self._renames = 0
        self._error_count = 0
        self._last_error: Optional[str] = None
        self._last_error_time: Optional[datetime] = None

        logger.debug(f"Initialized ProjectFileWatcher for {self.files_dir}")

    @property
    def is_monitoring(self) -> bool:
        return self.state is WatcherState.WATCHING

    @property
    def monitoring_duration(self) -> Optional[timedelta]:
        if not self._monitor_start_time:
            return None
        return datetime.now() - self._monitor_start_time

    async def start(self) -> bool:
        """
        Start watching and run the initial scan.

        Returns:
            True if watching started (or already running), False otherwise
        """
        if self.state is WatcherState.WATCHING:
            logger.warning("File watcher is already active")
            return True
        if self.state is WatcherState.CLOSED:
            logger.error("Cannot restart a closed file watcher")
            return False

        if not self.files_dir.is_dir():
            self._record_error(f"Files directory does not exist or is not a directory: {self.files_dir}")
            logger.error(self._last_error)
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running event loop found when starting watcher - events would be dropped")
            return False

        self.event_handler = WatcherEventHandler(self)
        self.event_handler.set_event_loop(loop)

        try:
            self.observer = Observer()
            self.observer.schedule(self.event_handler, str(self.files_dir), recursive=True)
            self.observer.start()
        except OSError as e:
            self._record_error(f"Failed to start file watcher: {e}")
            logger.error(self._last_error)
            self.event_handler.set_event_loop(None)
            self.event_handler = None
            self.observer = None
            return False

        self.state = WatcherState.WATCHING
        self._monitor_start_time = datetime.now()
        logger.info(f"Watching directory: {self.files_dir}")

        if self.config.initial_scan:
            await self._scan_initial_state()

        return True

    async def close(self) -> None:
        """Stop watching; safe to call at any time and more than once."""
        if self.state is WatcherState.CLOSED:
            return

        was_watching = self.state is WatcherState.WATCHING
        self.state = WatcherState.CLOSED

        if self.event_handler:
            self.event_handler.set_event_loop(None)

        if self.observer:
            observer = self.observer
            self.observer = None
            try:
                observer.stop()
                await asyncio.get_running_loop().run_in_executor(
                    None, observer.join, self.config.observer_join_timeout_s
                )
            except RuntimeError as e:
                logger.warning(f"Error stopping observer: {e}")

        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout=self.config.shutdown_timeout_s
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for watcher tasks to stop - forcing cleanup")

        self._tasks.clear()
        self._path_locks.clear()
        self._path_lock_users.clear()
        self._own_renames.clear()
        self.event_handler = None

        if was_watching:
            logger.info(f"Stopped file watcher (duration: {self.monitoring_duration})")

    def should_watch(self, absolute_path: Union[str, Path]) -> bool:
        """True for supported, non-hidden files inside the watched directory."""
        relative = self._relative_path(absolute_path)
        if relative is None:
            return False
        if any(segment.startswith('.') for segment in relative.split('/')):
            return False
        return is_supported_extension(relative)

    def dispatch_raw(self, kind: str, src_path: str, dest_path: Optional[str] = None) -> None:
        """
        Schedule processing of one raw notification on the event loop.

        Must run on the loop thread; the watchdog handler gets here through
        ``call_soon_threadsafe`` so arrival order is preserved.
        """
        if self.state is not WatcherState.WATCHING:
            return

        if kind == "move":
            if self._consume_own_rename(src_path, dest_path):
                logger.debug(f"Suppressed move caused by sanitizing rename: {src_path} -> {dest_path}")
                return
            self._spawn(self.process_raw_event("unlink", src_path))
            self._spawn(self.process_raw_event("add", dest_path))
            return

        self._spawn(self.process_raw_event(kind, src_path))

    async def process_raw_event(self, kind: str, absolute_path: Union[str, Path]) -> Optional[SyncEvent]:
        """
        Run one raw notification through the filter, sanitize and read steps.

        Args:
            kind: "add", "change" or "unlink"
            absolute_path: Path the notification refers to

        Returns:
            The emitted SyncEvent, or None if the notification was dropped
        """
        event_kind = SyncEventKind(kind)
        absolute_path = _path_key(absolute_path)

        if not self.should_watch(absolute_path):
            self._events_ignored += 1
            return None

        async with self._path_lock(absolute_path):
            if event_kind is SyncEventKind.UNLINK and self._consume_own_rename(absolute_path):
                logger.debug(f"Suppressed unlink caused by sanitizing rename: {absolute_path}")
                return None

            raw_relative = self._relative_path(absolute_path)
            try:
                sanitized = sanitize_file_path(raw_relative, capitalize=False)
            except SanitizationError as e:
                await self._report_error(e)
                return None

            relative_path = sanitized.path
            effective_path = Path(absolute_path)

            if event_kind is SyncEventKind.ADD and relative_path != raw_relative:
                renamed = await self._rename_to_sanitized(effective_path, raw_relative, relative_path)
                if renamed is None:
                    return None
                effective_path = renamed

            content: Optional[str] = None
            if event_kind.carries_content:
                content = await self._read_content(effective_path, relative_path)
                if content is None:
                    return None

            event = SyncEvent(kind=event_kind, relative_path=relative_path, content=content)
            await self._emit(event)
            return event

    async def _rename_to_sanitized(self, source: Path, raw_relative: str, relative_path: str) -> Optional[Path]:
        target = self.files_dir / relative_path

        if target.exists() and not _same_file(source, target):
            await self._report_error(SanitizationError(raw_relative, f"sanitized name {relative_path} already exists"))
            return None

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            self._own_renames[_path_key(source)] = (str(target), time.monotonic() + self.config.rename_suppression_s)
            os.rename(source, target)
        except OSError as e:
            self._own_renames.pop(_path_key(source), None)
            await self._report_error(FileSyncError(raw_relative, e))
            return None

        self._renames += 1
        logger.debug(f"Renamed {raw_relative} -> {relative_path}")
        return target

    async def _read_content(self, path: Path, relative_path: str) -> Optional[str]:
        try:
            return await asyncio.wait_for(_read_text(path), timeout=self.config.read_timeout_s)
        except FileNotFoundError:
            logger.debug(f"File vanished before it could be read: {relative_path}")
            return None
        except asyncio.TimeoutError:
            await self._report_error(FileSyncError(relative_path, TimeoutError(f"read timed out after {self.config.read_timeout_s}s")))
            return None
        except (OSError, UnicodeDecodeError) as e:
            await self._report_error(FileSyncError(relative_path, e))
            return None

    async def _emit(self, event: SyncEvent) -> None:
        self._events_emitted += 1
        logger.debug(f"Watcher event: {event}")

        if self.event_queue is not None:
            await self.event_queue.enqueue(event)

        if self.event_callback is not None:
            result = self.event_callback(event)
            if inspect.isawaitable(result):
                await result

    async def _report_error(self, error: CodeLinkError) -> None:
        self._record_error(str(error))
        logger.warning(str(error))

        if self.error_callback is not None:
            result = self.error_callback(error)
            if inspect.isawaitable(result):
                await result

    def _record_error(self, message: str) -> None:
        self._error_count += 1
        self._last_error = message
        self._last_error_time = datetime.now()

    def _consume_own_rename(self, src_path: str, dest_path: Optional[str] = None) -> bool:
        key = _path_key(src_path)
        entry = self._own_renames.pop(key, None)
        if entry is None:
            return False
        target, expiry = entry
        if expiry <= time.monotonic():
            return False
        if dest_path is not None and _path_key(dest_path) != target:
            self._own_renames[key] = entry
            return False
        return True

    def _relative_path(self, absolute_path: Union[str, Path]) -> Optional[str]:
        try:
            relative = Path(absolute_path).resolve().relative_to(self.files_dir)
        except ValueError:
            return None
        normalized = normalize_path(relative.as_posix())
        return normalized or None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Error processing file event: {task.exception()}")

    @asynccontextmanager
    async def _path_lock(self, key: str):
        lock = self._path_locks.get(key)
        if lock is None:
            lock = self._path_locks[key] = asyncio.Lock()
        self._path_lock_users[key] = self._path_lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._path_lock_users.get(key, 1) - 1
            if remaining <= 0:
                self._path_lock_users.pop(key, None)
                self._path_locks.pop(key, None)
            else:
                self._path_lock_users[key] = remaining

    def _existing_files(self) -> List[str]:
        paths = []
        for root, dirs, files in os.walk(self.files_dir):
            dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
            for name in sorted(files):
                path = os.path.join(root, name)
                if self.should_watch(path):
                    paths.append(path)
        return paths

    async def normalize_existing_names(self) -> int:
        """
        Rename files already on disk to their sanitized names, without emitting events.

        Collisions and failures are reported through the error callback and
        the file keeps its name.

        Returns:
            Number of files renamed
        """
        renamed = 0
        for path in self._existing_files():
            key = _path_key(path)
            async with self._path_lock(key):
                if not os.path.exists(key):
                    continue
                raw_relative = self._relative_path(key)
                try:
                    relative_path = sanitize_file_path(raw_relative, capitalize=False).path
                except SanitizationError as e:
                    await self._report_error(e)
                    continue
                if relative_path == raw_relative:
                    continue
                if await self._rename_to_sanitized(Path(key), raw_relative, relative_path) is not None:
                    renamed += 1

        if renamed:
            logger.info(f"Renamed {renamed} existing files to syncable names")
        return renamed

    async def _scan_initial_state(self) -> None:
        """Emit add events for every supported file already on disk."""
        scan_tasks = [
            self._spawn(self.process_raw_event("add", path))
            for path in self._existing_files()
        ]

        if scan_tasks:
            await asyncio.gather(*scan_tasks, return_exceptions=True)
        logger.debug(f"Initial scan found {len(scan_tasks)} files")

    def get_status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "files_dir": str(self.files_dir),
            "monitoring_duration": str(self.monitoring_duration) if self.monitoring_duration else None,
            "in_flight_events": len(self._tasks),
            "events_emitted": self._events_emitted,
            "events_ignored": self._events_ignored,
            "renames": self._renames,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "last_error_time": self._last_error_time.isoformat() if self._last_error_time else None,
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class WatcherEventHandler(FileSystemEventHandler):
    """
    Watchdog event handler that forwards notifications to ProjectFileWatcher.

    Watchdog calls this from its observer thread; every notification is
    handed to the event loop with ``call_soon_threadsafe``.
    """

    def __init__(self, watcher: ProjectFileWatcher):
        super().__init__()
        self.watcher = watcher
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

    def set_event_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._event_loop = loop

    def _forward(self, kind: str, event: WatchdogEvent) -> None:
        if event.is_directory:
            return

        loop = self._event_loop
        if loop is None or loop.is_closed():
            self.logger.debug(f"No event loop available, dropping event: {event}")
            return

        src_path = os.fsdecode(event.src_path)
        dest_path = os.fsdecode(event.dest_path) if kind == "move" else None
        try:
            loop.call_soon_threadsafe(self.watcher.dispatch_raw, kind, src_path, dest_path)
        except RuntimeError as e:
            # Loop closed between the check and the call
            self.logger.debug(f"Failed to schedule event on loop: {e}")

    def on_created(self, event: FileCreatedEvent) -> None:
        self._forward("add", event)

    def on_modified(self, event: FileModifiedEvent) -> None:
        self._forward("change", event)

    def on_deleted(self, event: FileDeletedEvent) -> None:
        self._forward("unlink", event)

    def on_moved(self, event: FileMovedEvent) -> None:
        self._forward("move", event)


async def _read_text(path: Path) -> str:
    async with aiofiles.open(path, 'r', encoding='utf-8') as f:
        return await f.read()


def _path_key(path: Union[str, Path]) -> str:
    return str(Path(path).resolve())


def _same_file(a: Path, b: Path) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return False
