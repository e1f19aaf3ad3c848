"""
Incoming Change Validation.

Decides whether a file change pushed by the remote runtime is applied,
held back while the connect-time snapshot is reconciled, or rejected.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .metadata import FileSyncMetadata


class SyncMode(Enum):
    """Sync lifecycle modes"""
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    SNAPSHOT_PROCESSING = "snapshot_processing"
    CONFLICT_RESOLUTION = "conflict_resolution"
    WATCHING = "watching"

    @property
    def is_connected(self) -> bool:
        return self is not SyncMode.DISCONNECTED


class ValidationAction(Enum):
    APPLY = "apply"
    QUEUE = "queue"
    REJECT = "reject"


@dataclass(frozen=True)
class ChangeValidation:
    """Verdict for one incoming change"""
    action: ValidationAction
    reason: str  # new-file, safe-update, snapshot-in-progress, unknown-file


def validate_incoming_change(file_meta: Optional[FileSyncMetadata], mode: SyncMode) -> ChangeValidation:
    """
    Validate a remote file change against the current mode.

    While watching, remote changes are trusted and applied. During the
    handshake, snapshot processing and conflict resolution they are held
    back, since the snapshot already reconciles both sides. Nothing is
    accepted while disconnected.
    """
    if mode in (SyncMode.HANDSHAKING, SyncMode.SNAPSHOT_PROCESSING, SyncMode.CONFLICT_RESOLUTION):
        return ChangeValidation(ValidationAction.QUEUE, "snapshot-in-progress")

    if mode is SyncMode.WATCHING:
        if file_meta is None:
            return ChangeValidation(ValidationAction.APPLY, "new-file")
        return ChangeValidation(ValidationAction.APPLY, "safe-update")

    return ChangeValidation(ValidationAction.REJECT, "unknown-file")
