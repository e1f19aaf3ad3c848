"""
Conflict Detection and Auto-Resolution.

Compares the remote snapshot received at connect time with the local
files and the last persisted sync state. Conflicts are reported as data;
they are only resolved automatically when one side is provably unchanged.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..models.files import AutoResolveResult, Conflict, ConflictResolution, ConflictVersion, FileInfo
from .files import DEFAULT_IO_TIMEOUT_S, list_files
from .hashing import hash_file_content, pluralize
from .paths import file_key_for_lookup, resolve_remote_reference
from .state import PersistedFileState

logger = logging.getLogger(__name__)

# Clock drift plus network latency allowed when comparing remote version times
DEFAULT_REMOTE_DRIFT_MS = 2000


def _persisted_lookup(persisted_state: Optional[Dict[str, PersistedFileState]]) -> Dict[str, PersistedFileState]:
    if not persisted_state:
        return {}
    return {file_key_for_lookup(name): state for name, state in persisted_state.items()}


async def detect_conflicts(
    remote_files: List[FileInfo],
    files_dir: Union[str, Path],
    persisted_state: Optional[Dict[str, PersistedFileState]] = None,
    detect: bool = True,
    prefer_remote: bool = False,
    timeout: float = DEFAULT_IO_TIMEOUT_S
) -> ConflictResolution:
    """
    Classify every file present on either side.

    Args:
        remote_files: Snapshot sent by the remote runtime
        files_dir: Local synced files directory
        persisted_state: Last known synced state, keyed by file name
        detect: When False, differing files are simply overwritten by remote
        prefer_remote: Same effect as ``detect=False`` for differing files
        timeout: Per-file read bound for the local listing

    Returns:
        ConflictResolution with conflicts, safe writes, local-only and
        unchanged files. Matching between sides is case-insensitive.
    """
    resolution = ConflictResolution()
    persisted = _persisted_lookup(persisted_state)

    logger.debug(f"Detecting conflicts for {pluralize(len(remote_files), 'remote file')}")

    local_files = await list_files(files_dir, timeout=timeout)
    local_by_key = {file_key_for_lookup(f.name): f for f in local_files}
    processed = set()

    for remote in remote_files:
        reference = resolve_remote_reference(files_dir, remote.name)
        name = reference.relative_path
        key = file_key_for_lookup(name)
        processed.add(key)

        local = local_by_key.get(key)
        state = persisted.get(key)
        incoming = FileInfo(name=name, content=remote.content, modified_at=remote.modified_at)

        if local is None:
            if state is not None:
                logger.debug(f"Conflict: {name} deleted locally while offline")
                resolution.conflicts.append(Conflict(
                    file_name=name,
                    local_content=None,
                    remote_content=remote.content,
                    remote_modified_at=remote.modified_at,
                    last_synced_at=state.timestamp,
                ))
            else:
                resolution.writes.append(incoming)
            continue

        if local.content == remote.content:
            resolution.unchanged.append(incoming)
            continue

        if not detect or prefer_remote:
            resolution.writes.append(incoming)
            continue

        local_clean = None
        if state is not None:
            local_clean = hash_file_content(local.content) == state.content_hash

        resolution.conflicts.append(Conflict(
            file_name=name,
            local_content=local.content,
            remote_content=remote.content,
            local_modified_at=local.modified_at,
            remote_modified_at=remote.modified_at,
            last_synced_at=state.timestamp if state else None,
            local_clean=local_clean,
        ))

    for local in local_files:
        key = file_key_for_lookup(local.name)
        if key in processed:
            continue

        state = persisted.get(key)
        if state is not None:
            local_clean = hash_file_content(local.content) == state.content_hash
            logger.debug(f"Conflict: {local.name} deleted remotely (local_clean={local_clean})")
            resolution.conflicts.append(Conflict(
                file_name=local.name,
                local_content=local.content,
                remote_content=None,
                local_modified_at=local.modified_at,
                last_synced_at=state.timestamp,
                local_clean=local_clean,
            ))
        else:
            resolution.local_only.append(local)

    for key in persisted:
        if key not in processed and key not in local_by_key:
            logger.debug(f"{key}: deleted on both sides, no conflict")

    return resolution


def auto_resolve_conflicts(
    conflicts: List[Conflict],
    versions: List[ConflictVersion],
    remote_drift_ms: int = DEFAULT_REMOTE_DRIFT_MS
) -> AutoResolveResult:
    """
    Split conflicts into the ones one side can win without asking.

    - Remote deleted and local clean: take remote (delete locally)
    - Remote deleted otherwise: ask
    - Local clean: take remote
    - No remote version time or no last sync time: ask
    - Remote not changed since the last sync (within drift): take local
    - Otherwise both changed: ask
    """
    version_map = {version.file_name: version.latest_remote_version_ms for version in versions}
    result = AutoResolveResult()

    for conflict in conflicts:
        latest_remote = version_map.get(conflict.file_name)
        last_synced = conflict.last_synced_at
        local_clean = conflict.local_clean is True

        if conflict.remote_content is None:
            if local_clean:
                logger.debug(f"{conflict.file_name}: remote deleted, local clean -> remote")
                result.auto_resolved_remote.append(conflict)
            else:
                logger.debug(f"{conflict.file_name}: remote deleted, local modified -> conflict")
                result.remaining_conflicts.append(conflict)
            continue

        if local_clean:
            logger.debug(f"{conflict.file_name}: local clean -> remote")
            result.auto_resolved_remote.append(conflict)
            continue

        if not latest_remote:
            logger.debug(f"{conflict.file_name}: local modified, no remote version data -> conflict")
            result.remaining_conflicts.append(conflict)
            continue

        if not last_synced:
            logger.debug(f"{conflict.file_name}: local modified, no sync timestamp -> conflict")
            result.remaining_conflicts.append(conflict)
            continue

        drift = latest_remote - last_synced
        if latest_remote <= last_synced + remote_drift_ms:
            logger.debug(
                f"{conflict.file_name}: remote unchanged since "
                f"{datetime.fromtimestamp(last_synced / 1000).isoformat()} -> local"
            )
            result.auto_resolved_local.append(conflict)
        else:
            logger.debug(f"{conflict.file_name}: both changed (remote ahead by {drift:.0f}ms) -> conflict")
            result.remaining_conflicts.append(conflict)

    return result
