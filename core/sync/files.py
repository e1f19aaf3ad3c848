"""
File Operations.

The one place that reads and writes synced files on disk. Callers decide
when to call these; nothing here keeps state beyond the tracker passed in.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

import aiofiles

from ..errors import FileSyncError, SanitizationError
from ..models.files import FileInfo
from .hashing import pluralize
from .paths import is_supported_extension, normalize_path, resolve_remote_reference, sanitize_file_path
from .tracker import SyncTracker

logger = logging.getLogger(__name__)

DEFAULT_IO_TIMEOUT_S = 5.0


async def _read_text(path: Path) -> str:
    async with aiofiles.open(path, 'r', encoding='utf-8') as f:
        return await f.read()


async def _write_text(path: Path, content: str) -> None:
    """Write through a hidden temporary file so watchers never see a partial file."""
    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(content)
        os.replace(temp_path, path)
    finally:
        # Gone after a successful replace; left over after a failure or a timeout
        temp_path.unlink(missing_ok=True)


async def list_files(files_dir: Union[str, Path], timeout: float = DEFAULT_IO_TIMEOUT_S) -> List[FileInfo]:
    """
    List every supported, non-hidden file under ``files_dir``.

    A file whose name on disk is not already its sanitized form is skipped
    with a warning: the watcher renames such files, and one that is still
    there could not be renamed. Unreadable files are skipped likewise.

    Args:
        files_dir: Root of the synced files
        timeout: Per-file read bound in seconds

    Returns:
        FileInfo per file, with ``modified_at`` in epoch milliseconds
    """
    root = Path(files_dir)
    files: List[FileInfo] = []

    if not root.is_dir():
        logger.debug(f"Files directory does not exist yet: {root}")
        return files

    for current, dirs, names in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
        for name in sorted(names):
            if name.startswith('.') or not is_supported_extension(name):
                continue

            entry_path = Path(current) / name
            relative_path = normalize_path(entry_path.relative_to(root).as_posix())

            try:
                sanitized = sanitize_file_path(relative_path, capitalize=False).path
            except SanitizationError as e:
                logger.warning(f"Skipping {entry_path}: {e}")
                continue
            if sanitized != relative_path:
                logger.warning(f"Skipping {relative_path}: unsyncable name (would be {sanitized})")
                continue

            try:
                content = await asyncio.wait_for(_read_text(entry_path), timeout=timeout)
                modified_at = entry_path.stat().st_mtime * 1000
            except (OSError, UnicodeDecodeError, asyncio.TimeoutError) as e:
                logger.warning(f"Failed to read {entry_path}: {e}")
                continue

            files.append(FileInfo(name=relative_path, content=content, modified_at=modified_at))

    return files


async def read_file_safe(
    file_name: str,
    files_dir: Union[str, Path],
    timeout: float = DEFAULT_IO_TIMEOUT_S
) -> Optional[str]:
    """Read one synced file; None if it is missing or unreadable."""
    reference = resolve_remote_reference(files_dir, file_name)
    try:
        return await asyncio.wait_for(_read_text(reference.absolute_path), timeout=timeout)
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, asyncio.TimeoutError) as e:
        logger.debug(f"Failed to read {reference.relative_path}: {e}")
        return None


async def write_remote_files(
    files: List[FileInfo],
    files_dir: Union[str, Path],
    tracker: SyncTracker,
    timeout: float = DEFAULT_IO_TIMEOUT_S
) -> List[str]:
    """
    Write files received from the remote side.

    The tracker remembers each file's content before the write, so the
    watcher notification caused by the write is recognised as an echo.
    Failures are per file; the remaining files are still written.

    Returns:
        Canonical names of the files that were written
    """
    logger.debug(f"Writing {pluralize(len(files), 'remote file')}")

    written: List[str] = []
    failures: List[FileSyncError] = []

    for file in files:
        try:
            reference = resolve_remote_reference(files_dir, file.name)
            reference.absolute_path.parent.mkdir(parents=True, exist_ok=True)

            tracker.remember(reference.relative_path, file.content)

            await asyncio.wait_for(_write_text(reference.absolute_path, file.content), timeout=timeout)
        except (OSError, asyncio.TimeoutError, SanitizationError) as e:
            failures.append(FileSyncError(file.name, e))
            continue

        written.append(reference.relative_path)
        logger.debug(f"Wrote file: {reference.relative_path}")

    for failure in failures:
        logger.warning(f"Failed to write file {failure.path}: {failure.cause}")

    return written


async def delete_local_file(file_name: str, files_dir: Union[str, Path], tracker: SyncTracker) -> bool:
    """
    Delete a synced file on behalf of the remote side.

    The delete marker is set before unlinking so the watcher's unlink
    notification is not echoed back. A missing file counts as deleted.

    Returns:
        True if the file is gone, False if the delete failed
    """
    reference = resolve_remote_reference(files_dir, file_name)

    tracker.mark_delete(reference.relative_path)
    try:
        reference.absolute_path.unlink()
    except FileNotFoundError:
        tracker.forget(reference.relative_path)
        logger.debug(f"File already deleted: {reference.relative_path}")
        return True
    except OSError as e:
        tracker.clear_delete(reference.relative_path)
        logger.warning(f"Failed to delete file {file_name}: {e}")
        return False

    tracker.forget(reference.relative_path)
    logger.debug(f"Deleted file: {reference.relative_path}")
    return True


def filter_echoed_files(files: List[FileInfo], tracker: SyncTracker) -> List[FileInfo]:
    """Drop files whose content matches what the tracker last remembered."""
    return [file for file in files if not tracker.should_skip(file.name, file.content)]
