"""
Persisted Sync State.

Stores, per synced file, the remote modification time and the sha256 of
the content at the last confirmed sync in ``.code-link-state.json`` inside
the project directory. Conflict detection only treats a local file as
clean while its current hash still matches the persisted one.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Union

import aiofiles
from pydantic import ValidationError

from ..models.files import WireModel
from .paths import ensure_extension, normalize_path

logger = logging.getLogger(__name__)

STATE_FILE_NAME = ".code-link-state.json"
STATE_VERSION = 1


class PersistedFileState(WireModel):
    """Last confirmed sync of one file"""
    timestamp: float  # remote modified time, epoch milliseconds
    content_hash: str


def state_file_path(project_dir: Union[str, Path]) -> Path:
    return Path(project_dir) / STATE_FILE_NAME


def normalize_persisted_file_name(file_name: str) -> str:
    """Normalize a persisted key, adding the default extension when missing."""
    return ensure_extension(normalize_path(file_name.strip()))


async def load_persisted_state(project_dir: Union[str, Path]) -> Dict[str, PersistedFileState]:
    """
    Load the persisted state of a project.

    A missing file means first run. A version mismatch or an unreadable
    file is logged and treated as empty state.
    """
    state_file = state_file_path(project_dir)
    result: Dict[str, PersistedFileState] = {}

    try:
        async with aiofiles.open(state_file, 'r', encoding='utf-8') as f:
            raw_data = json.loads(await f.read())
    except FileNotFoundError:
        logger.debug("No persisted state found (first run)")
        return result
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load persisted state {state_file}: {e}. Starting with empty state.")
        return result

    if not isinstance(raw_data, dict) or raw_data.get("version") != STATE_VERSION:
        version = raw_data.get("version") if isinstance(raw_data, dict) else None
        logger.warning(
            f"State file version mismatch (expected {STATE_VERSION}, got {version}). Ignoring persisted state."
        )
        return result

    files = raw_data.get("files") or {}
    if not isinstance(files, dict):
        logger.warning(f"Malformed files section in {state_file}. Ignoring persisted state.")
        return result

    for file_name, entry in files.items():
        normalized = normalize_persisted_file_name(file_name)
        if normalized != file_name:
            logger.debug(f"Normalized persisted key {file_name!r} -> {normalized!r}")
        try:
            result[normalized] = PersistedFileState.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Invalid state entry for {file_name}: {e}")

    logger.debug(f"Loaded persisted state for {len(result)} files")
    return result


async def save_persisted_state(project_dir: Union[str, Path], state: Dict[str, PersistedFileState]) -> bool:
    """
    Write the state file atomically (temporary file, then rename).

    Returns:
        True if the state was written
    """
    state_file = state_file_path(project_dir)
    payload = {
        "version": STATE_VERSION,
        "files": {
            name: entry.model_dump(by_alias=True)
            for name, entry in sorted(state.items())
        },
    }

    temp_file = state_file.with_suffix('.tmp')
    try:
        async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(payload, indent=2))
        temp_file.replace(state_file)
    except OSError as e:
        logger.warning(f"Failed to save persisted state {state_file}: {e}")
        return False

    logger.debug(f"Saved persisted state for {len(state)} files")
    return True

