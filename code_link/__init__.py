"""
Code Link - local development sync with a remote runtime.

Watches a project directory and keeps it in sync with a remote runtime
over a local WebSocket connection, without echoing each side's writes back.
"""

__version__ = "1.0.0"
__author__ = "Code Link Team"

# Package imports for convenient access
from core.models.files import FileInfo, ProjectInfo, ConflictSummary
from core.models.config import SyncConfig, GlobalSettings

__all__ = [
    "FileInfo",
    "ProjectInfo",
    "ConflictSummary",
    "SyncConfig",
    "GlobalSettings",
    "__version__",
]
