"""
Core data models for code-link

Pydantic models for files, conflicts, pending deletes and configuration.
"""

from .files import (
    WireModel,
    DeleteOrigin,
    ProjectInfo,
    FileInfo,
    PendingDelete,
    ConflictSummary,
    Conflict,
    ConflictResolution,
    ConflictVersion,
    ConflictVersionQuery,
    AutoResolveResult,
)
from .config import WatcherConfig, RetryConfig, ConnectionConfig, SyncConfig, GlobalSettings

__all__ = [
    # Files and conflicts
    "WireModel",
    "DeleteOrigin",
    "ProjectInfo",
    "FileInfo",
    "PendingDelete",
    "ConflictSummary",
    "Conflict",
    "ConflictResolution",
    "ConflictVersion",
    "ConflictVersionQuery",
    "AutoResolveResult",

    # Configuration
    "WatcherConfig",
    "RetryConfig",
    "ConnectionConfig",
    "SyncConfig",
    "GlobalSettings",
]
