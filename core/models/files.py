"""
File and conflict models for code-link.

Wire-facing models serialize with camelCase aliases (``fileName``) and
accept either spelling on input.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..sync.hashing import fingerprint, shorten_id
from ..sync.ports import port_for


class WireModel(BaseModel):
    """Base for models that travel inside protocol messages"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore"
    )


class DeleteOrigin(Enum):
    """Which side initiated a delete"""
    LOCAL = "local"
    REMOTE = "remote"


class ProjectInfo(BaseModel):
    """Identity of the project being synced"""
    model_config = ConfigDict(str_strip_whitespace=True)

    project_id: str = Field(..., min_length=1)
    project_name: str = ""

    @property
    def short_id(self) -> str:
        return shorten_id(self.project_id)

    @property
    def port(self) -> int:
        return port_for(self.project_id)


class FileInfo(WireModel):
    """A file snapshot: canonical relative name plus text content"""

    name: str = Field(..., min_length=1)
    content: str
    modified_at: Optional[float] = None  # epoch milliseconds

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.content)


class PendingDelete(WireModel):
    """
    A delete awaiting a decision from the other side.

    On the wire (``delete-cancelled``) only ``fileName`` and the optional
    ``content`` used to restore the file are sent.
    """

    file_name: str = Field(..., min_length=1)
    content: Optional[str] = None
    origin: DeleteOrigin = DeleteOrigin.LOCAL
    requested_at: datetime = Field(default_factory=datetime.now)
    require_confirmation: bool = True

    @property
    def age_seconds(self) -> float:
        return (datetime.now() - self.requested_at).total_seconds()


class ConflictSummary(WireModel):
    """
    A file that differs between the two sides and needs a decision.

    ``None`` content means the file was deleted on that side.
    """

    file_name: str = Field(..., min_length=1)
    local_content: Optional[str] = None
    remote_content: Optional[str] = None
    local_fingerprint: Optional[str] = None
    remote_fingerprint: Optional[str] = None
    detected_at: datetime = Field(default_factory=datetime.now)

    @field_validator('local_fingerprint', 'remote_fingerprint', mode='before')
    @classmethod
    def drop_blank_fingerprint(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @model_validator(mode='after')
    def fill_fingerprints(self) -> 'ConflictSummary':
        if self.local_fingerprint is None and self.local_content is not None:
            self.local_fingerprint = fingerprint(self.local_content)
        if self.remote_fingerprint is None and self.remote_content is not None:
            self.remote_fingerprint = fingerprint(self.remote_content)
        return self

    @property
    def deleted_locally(self) -> bool:
        return self.local_content is None

    @property
    def deleted_remotely(self) -> bool:
        return self.remote_content is None


class Conflict(ConflictSummary):
    """Conflict with the timing data used for auto-resolution"""

    local_modified_at: Optional[float] = None
    remote_modified_at: Optional[float] = None
    last_synced_at: Optional[float] = None
    local_clean: Optional[bool] = None  # None: never persisted

    def to_summary(self) -> ConflictSummary:
        return ConflictSummary(
            file_name=self.file_name,
            local_content=self.local_content,
            remote_content=self.remote_content,
            local_fingerprint=self.local_fingerprint,
            remote_fingerprint=self.remote_fingerprint,
            detected_at=self.detected_at,
        )


class ConflictResolution(BaseModel):
    """Outcome of comparing a remote snapshot with the local files"""

    conflicts: List[Conflict] = Field(default_factory=list)
    writes: List[FileInfo] = Field(default_factory=list)
    local_only: List[FileInfo] = Field(default_factory=list)
    unchanged: List[FileInfo] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class ConflictVersion(WireModel):
    """Latest remote version time for a conflicting file"""

    file_name: str
    latest_remote_version_ms: Optional[float] = None


class ConflictVersionQuery(WireModel):
    """Request entry for the remote's version history of one file"""

    file_name: str
    last_synced_at: Optional[float] = None


class AutoResolveResult(BaseModel):
    """Conflicts split by which side can be taken without asking"""

    auto_resolved_local: List[Conflict] = Field(default_factory=list)
    auto_resolved_remote: List[Conflict] = Field(default_factory=list)
    remaining_conflicts: List[Conflict] = Field(default_factory=list)
