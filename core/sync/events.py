"""
Sync Event Models.

Defines the normalized change notifications emitted by the filesystem
watcher. Every event carries a canonical, sanitized, relative path of a
supported file.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator
import uuid

from .hashing import fingerprint


class SyncEventKind(Enum):
    """Kinds of normalized file changes"""
    ADD = "add"         # File appeared (or existed at startup)
    CHANGE = "change"   # Existing file content changed
    UNLINK = "unlink"   # File removed

    @property
    def carries_content(self) -> bool:
        return self is not SyncEventKind.UNLINK


class SyncEvent(BaseModel):
    """
    A normalized file change ready for the outbound sync path.

    ``relative_path`` is the canonical path relative to the watched files
    directory. ``content`` is present for add and change, and absent for
    unlink: the watcher never reads a file it has been told is gone.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: SyncEventKind
    relative_path: str = Field(..., min_length=1)
    content: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('relative_path')
    @classmethod
    def validate_relative_path(cls, v: str) -> str:
        """Ensure the path is relative and forward-slash separated"""
        if v.startswith('/') or '\\' in v:
            raise ValueError('Event path must be relative and use forward slashes')
        return v

    @model_validator(mode='after')
    def validate_content(self) -> 'SyncEvent':
        if self.kind.carries_content and self.content is None:
            raise ValueError(f'{self.kind.value} events require content')
        if not self.kind.carries_content and self.content is not None:
            raise ValueError('unlink events must not carry content')
        return self

    @classmethod
    def create_add(cls, relative_path: str, content: str, **kwargs) -> 'SyncEvent':
        return cls(kind=SyncEventKind.ADD, relative_path=relative_path, content=content, **kwargs)

    @classmethod
    def create_change(cls, relative_path: str, content: str, **kwargs) -> 'SyncEvent':
        return cls(kind=SyncEventKind.CHANGE, relative_path=relative_path, content=content, **kwargs)

    @classmethod
    def create_unlink(cls, relative_path: str, **kwargs) -> 'SyncEvent':
        return cls(kind=SyncEventKind.UNLINK, relative_path=relative_path, **kwargs)

    @property
    def fingerprint(self) -> Optional[str]:
        return fingerprint(self.content) if self.content is not None else None

    @property
    def age_seconds(self) -> float:
        """Get event age in seconds"""
        return (datetime.now() - self.timestamp).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization"""
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "relative_path": self.relative_path,
            "content_length": len(self.content) if self.content is not None else None,
            "timestamp": self.timestamp.isoformat(),
            "age_seconds": self.age_seconds,
        }

    def __str__(self) -> str:
        """String representation for logging"""
        return f"{self.kind.value.upper()}: {self.relative_path}"
