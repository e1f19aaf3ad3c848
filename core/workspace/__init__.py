"""
Workspace helpers for code-link.

Project directory discovery and the import declaration scanner.
"""

from .project import (
    ProjectDirectory,
    find_or_create_project_dir,
    find_project_dir,
    get_project_hash_from_cwd,
    to_dir_name,
    to_package_name,
)
from .imports import ImportInfo, extract_imports, extract_package_from_url, scan_directory_imports

__all__ = [
    "ProjectDirectory",
    "find_or_create_project_dir",
    "find_project_dir",
    "get_project_hash_from_cwd",
    "to_dir_name",
    "to_package_name",
    "ImportInfo",
    "extract_imports",
    "extract_package_from_url",
    "scan_directory_imports",
]
