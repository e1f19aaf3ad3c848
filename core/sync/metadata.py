"""
File Metadata Cache.

In-memory view of per-file sync metadata on top of the persisted state.
Every mutation schedules one coalesced write of the state file.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

from .hashing import hash_file_content
from .state import PersistedFileState, load_persisted_state, save_persisted_state

logger = logging.getLogger(__name__)


@dataclass
class FileSyncMetadata:
    """What this process knows about one synced file"""
    local_hash: str
    last_synced_hash: str
    last_remote_timestamp: Optional[float] = None


class FileMetadataCache:
    """
    Per-file sync metadata with coalesced persistence.

    Writes are scheduled on the running loop; while one is pending further
    mutations only update memory and are picked up by that write.
    """

    def __init__(self):
        self._metadata: Dict[str, FileSyncMetadata] = {}
        self._persisted: Dict[str, PersistedFileState] = {}
        self._project_dir: Optional[Path] = None
        self._initialized = False
        self._pending_persist: Optional[asyncio.Task] = None
        self._dirty = False
        self._persist_count = 0

    async def initialize(self, project_dir: Union[str, Path]) -> None:
        project_dir = Path(project_dir)
        if self._initialized and self._project_dir == project_dir:
            return

        self._project_dir = project_dir
        self._persisted = await load_persisted_state(project_dir)
        self._metadata = {
            name: FileSyncMetadata(
                local_hash=state.content_hash,
                last_synced_hash=state.content_hash,
                last_remote_timestamp=state.timestamp,
            )
            for name, state in self._persisted.items()
        }
        self._initialized = True
        logger.debug(f"Loaded persisted metadata for {len(self._metadata)} files")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def get(self, file_name: str) -> Optional[FileSyncMetadata]:
        return self._metadata.get(file_name)

    def has(self, file_name: str) -> bool:
        return file_name in self._metadata

    def size(self) -> int:
        return len(self._metadata)

    def persisted_state(self) -> Dict[str, PersistedFileState]:
        return self._persisted

    def record_remote_write(self, file_name: str, content: str, remote_modified_at: float) -> None:
        self.record_synced_snapshot(file_name, hash_file_content(content), remote_modified_at)

    def record_synced_snapshot(self, file_name: str, content_hash: str, remote_modified_at: float) -> None:
        self._metadata[file_name] = FileSyncMetadata(
            local_hash=content_hash,
            last_synced_hash=content_hash,
            last_remote_timestamp=remote_modified_at,
        )
        self._persisted[file_name] = PersistedFileState(
            timestamp=remote_modified_at,
            content_hash=content_hash,
        )
        self._schedule_persist()

    def record_delete(self, file_name: str) -> None:
        self._metadata.pop(file_name, None)
        self._persisted.pop(file_name, None)
        self._schedule_persist()

    async def flush(self) -> None:
        """Wait for the pending write, if any."""
        task = self._pending_persist
        if task is not None:
            await asyncio.shield(task)

    def _schedule_persist(self) -> None:
        if self._project_dir is None:
            return
        self._dirty = True
        if self._pending_persist is not None:
            return
        self._pending_persist = asyncio.get_running_loop().create_task(self._persist())

    async def _persist(self) -> None:
        try:
            while self._dirty:
                # Let the current batch of mutations land first
                await asyncio.sleep(0)
                self._dirty = False
                await save_persisted_state(self._project_dir, dict(self._persisted))
                self._persist_count += 1
        finally:
            self._pending_persist = None
