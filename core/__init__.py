"""
code-link core package

Bidirectional file sync between a local project directory and a remote
runtime, with echo suppression.
"""

__version__ = "1.0.0"
__author__ = "Code Link Team"

from .errors import CodeLinkError
from .models import FileInfo, ProjectInfo, SyncConfig

__all__ = [
    "CodeLinkError",
    "FileInfo",
    "ProjectInfo",
    "SyncConfig",
]
