"""
Project Directory Discovery.

A synced project lives in a directory holding a ``package.json`` that
records the project's short id, with the synced files under ``files/``.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..errors import ProjectDirectoryError
from ..models.config import FILES_DIR_NAME
from ..sync.hashing import shorten_id

logger = logging.getLogger(__name__)

PACKAGE_JSON = "package.json"


@dataclass
class ProjectDirectory:
    """Resolved project directory and whether it was just created"""
    directory: Path
    created: bool = False

    @property
    def files_dir(self) -> Path:
        return self.directory / FILES_DIR_NAME


def to_package_name(name: str) -> str:
    """Lower-case npm package name: ``"Hello World!"`` -> ``"hello-world"``."""
    result = re.sub(r'[^a-z0-9-]', '-', name.lower())
    result = re.sub(r'^-+|-+$', '', result)
    return re.sub(r'-+', '-', result)


def to_dir_name(name: str) -> str:
    """Directory name keeping case and spaces: ``"Hello World!"`` -> ``"Hello World"``."""
    result = re.sub(r'[^a-zA-Z0-9- ]', '-', name)
    result = re.sub(r'^[-\s]+|[-\s]+$', '', result)
    return re.sub(r'-+', '-', result)


def _read_package_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.debug(f"Unreadable {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def get_project_hash_from_cwd(cwd: Optional[Union[str, Path]] = None) -> Optional[str]:
    """Short project id recorded in ``package.json`` of the working directory."""
    base = Path(cwd) if cwd is not None else Path.cwd()
    data = _read_package_json(base / PACKAGE_JSON)
    if data is None:
        return None
    value = data.get("shortProjectHash")
    return value if isinstance(value, str) and value else None


def _matches_project(directory: Path, short_id: str) -> bool:
    data = _read_package_json(directory / PACKAGE_JSON)
    return data is not None and data.get("shortProjectHash") == short_id


def find_project_dir(project_hash: str, base_dir: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Existing directory for a project under ``base_dir``, without creating anything."""
    base = Path(base_dir).resolve() if base_dir is not None else Path.cwd()
    return _find_existing_project_dir(base, shorten_id(project_hash))


def _find_existing_project_dir(base_dir: Path, short_id: str) -> Optional[Path]:
    if _matches_project(base_dir, short_id):
        return base_dir

    try:
        children = sorted(p for p in base_dir.iterdir() if p.is_dir())
    except OSError as e:
        logger.debug(f"Cannot list {base_dir}: {e}")
        return None

    for child in children:
        if _matches_project(child, short_id):
            return child
    return None


def find_or_create_project_dir(
    project_hash: str,
    project_name: Optional[str] = None,
    explicit_dir: Optional[Union[str, Path]] = None,
    base_dir: Optional[Union[str, Path]] = None
) -> ProjectDirectory:
    """
    Locate the directory for a project, creating it on first sync.

    Lookup order:
    1. ``explicit_dir``, created with its ``files/`` subdirectory
    2. ``base_dir`` itself, or a direct child, whose ``package.json`` holds
       the project's short id
    3. A new directory under ``base_dir`` named after the project; when that
       name already belongs to another project the short id is appended

    Args:
        project_hash: Full project hash or short id
        project_name: Display name, required to create a new directory
        explicit_dir: Directory chosen by the user
        base_dir: Where to look and create; defaults to the working directory

    Raises:
        ProjectDirectoryError: No existing directory matches and no name was given,
            or the directory cannot be created
    """
    if explicit_dir is not None:
        directory = Path(explicit_dir).expanduser().resolve()
        created = not directory.exists()
        try:
            (directory / FILES_DIR_NAME).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProjectDirectoryError(f"Cannot create project directory {directory}: {e}") from e
        return ProjectDirectory(directory=directory, created=created)

    base = Path(base_dir).resolve() if base_dir is not None else Path.cwd()
    short_id = shorten_id(project_hash)

    existing = _find_existing_project_dir(base, short_id)
    if existing is not None:
        logger.debug(f"Found project directory {existing} for {short_id}")
        return ProjectDirectory(directory=existing, created=False)

    if not project_name:
        raise ProjectDirectoryError("Failed to get project name. Pass --name <project name>.")

    dir_name = to_dir_name(project_name) or short_id
    directory = base / dir_name
    if directory.exists():
        directory = base / f"{dir_name}-{short_id}"

    package = {
        "name": to_package_name(project_name) or short_id,
        "version": "1.0.0",
        "private": True,
        "shortProjectHash": short_id,
        "projectName": project_name,
    }

    try:
        (directory / FILES_DIR_NAME).mkdir(parents=True, exist_ok=True)
        with open(directory / PACKAGE_JSON, 'w', encoding='utf-8') as f:
            json.dump(package, f, indent=2)
    except OSError as e:
        raise ProjectDirectoryError(f"Cannot create project directory {directory}: {e}") from e

    logger.info(f"Created project directory {directory}")
    return ProjectDirectory(directory=directory, created=True)
