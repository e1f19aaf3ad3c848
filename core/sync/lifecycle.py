"""
Sync Lifecycle State Machine.

``transition`` is a pure function from (state, event) to (new state,
effects). It performs no IO; the SyncEngine executes the effects and feeds
any follow-up events back in.

Modes: disconnected -> handshaking -> snapshot_processing ->
(conflict_resolution ->) watching, and back to disconnected on disconnect.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from ..models.files import Conflict, ConflictVersion, FileInfo, ProjectInfo
from .conflicts import DEFAULT_REMOTE_DRIFT_MS, auto_resolve_conflicts
from .events import SyncEvent as WatcherEvent, SyncEventKind
from .hashing import pluralize
from .metadata import FileSyncMetadata
from .protocol import FileChange, RequestFiles
from .validator import SyncMode, ValidationAction, validate_incoming_change


__all__ = [
    "SyncMode",
    "SyncState",
    "TransitionResult",
    "transition",
]


@dataclass(frozen=True)
class SyncState:
    """Engine state carried between transitions"""
    mode: SyncMode = SyncMode.DISCONNECTED
    connection: Optional[Any] = None
    pending_remote_changes: Tuple[FileInfo, ...] = ()
    pending_conflicts: Tuple[Conflict, ...] = ()


# Events

@dataclass(frozen=True)
class HandshakeReceived:
    connection: Any
    project: ProjectInfo


@dataclass(frozen=True)
class FilesRequested:
    pass


@dataclass(frozen=True)
class RemoteFileListReceived:
    files: Tuple[FileInfo, ...]


@dataclass(frozen=True)
class ConflictsFound:
    conflicts: Tuple[Conflict, ...]
    safe_writes: Tuple[FileInfo, ...]
    local_only: Tuple[FileInfo, ...]


@dataclass(frozen=True)
class RemoteFileChanged:
    file: FileInfo
    file_meta: Optional[FileSyncMetadata] = None


@dataclass(frozen=True)
class RemoteFileDeleted:
    file_name: str


@dataclass(frozen=True)
class LocalDeleteApproved:
    file_name: str


@dataclass(frozen=True)
class LocalDeleteRejected:
    file_name: str
    content: Optional[str]


@dataclass(frozen=True)
class ConflictResolutionChosen:
    resolution: str  # "local" or "remote"


@dataclass(frozen=True)
class FileSyncedConfirmation:
    file_name: str
    remote_modified_at: float


@dataclass(frozen=True)
class Disconnected:
    pass


@dataclass(frozen=True)
class WatcherEventReceived:
    event: WatcherEvent


@dataclass(frozen=True)
class ConflictVersionsReceived:
    versions: Tuple[ConflictVersion, ...]


Event = Union[
    HandshakeReceived,
    FilesRequested,
    RemoteFileListReceived,
    ConflictsFound,
    RemoteFileChanged,
    RemoteFileDeleted,
    LocalDeleteApproved,
    LocalDeleteRejected,
    ConflictResolutionChosen,
    FileSyncedConfirmation,
    Disconnected,
    WatcherEventReceived,
    ConflictVersionsReceived,
]


# Effects

@dataclass(frozen=True)
class InitWorkspace:
    project: ProjectInfo


@dataclass(frozen=True)
class LoadPersistedState:
    pass


@dataclass(frozen=True)
class SendMessage:
    message: Any


@dataclass(frozen=True)
class ListLocalFiles:
    pass


@dataclass(frozen=True)
class DetectConflicts:
    remote_files: Tuple[FileInfo, ...]


@dataclass(frozen=True)
class WriteFiles:
    files: Tuple[FileInfo, ...]
    silent: bool = False
    skip_echo: bool = False


@dataclass(frozen=True)
class DeleteLocalFiles:
    names: Tuple[str, ...]


@dataclass(frozen=True)
class RequestConflictDecisions:
    conflicts: Tuple[Conflict, ...]


@dataclass(frozen=True)
class RequestConflictVersions:
    conflicts: Tuple[Conflict, ...]


@dataclass(frozen=True)
class UpdateFileMetadata:
    file_name: str
    remote_modified_at: float


@dataclass(frozen=True)
class SendLocalChange:
    file_name: str
    content: str


@dataclass(frozen=True)
class LocalInitiatedFileDelete:
    file_names: Tuple[str, ...]


@dataclass(frozen=True)
class PersistState:
    pass


@dataclass(frozen=True)
class SyncComplete:
    total_count: int
    updated_count: int
    unchanged_count: int


@dataclass(frozen=True)
class Log:
    level: str  # debug, info, warning
    message: str


Effect = Union[
    InitWorkspace,
    LoadPersistedState,
    SendMessage,
    ListLocalFiles,
    DetectConflicts,
    WriteFiles,
    DeleteLocalFiles,
    RequestConflictDecisions,
    RequestConflictVersions,
    UpdateFileMetadata,
    SendLocalChange,
    LocalInitiatedFileDelete,
    PersistState,
    SyncComplete,
    Log,
]


@dataclass
class TransitionResult:
    state: SyncState
    effects: List[Effect] = field(default_factory=list)


def _ignored(state: SyncState, event_name: str) -> TransitionResult:
    return TransitionResult(state, [Log("warning", f"Received {event_name} in mode {state.mode.value}, ignoring")])


def _on_handshake(state: SyncState, event: HandshakeReceived, **_) -> TransitionResult:
    if state.mode is not SyncMode.DISCONNECTED:
        return _ignored(state, "handshake")

    return TransitionResult(
        replace(state, mode=SyncMode.HANDSHAKING, connection=event.connection),
        [InitWorkspace(event.project), LoadPersistedState(), SendMessage(RequestFiles())],
    )


def _on_files_requested(state: SyncState, event: FilesRequested, **_) -> TransitionResult:
    if state.mode is SyncMode.DISCONNECTED:
        return _ignored(state, "request-files")
    return TransitionResult(state, [Log("debug", "Remote requested file list"), ListLocalFiles()])


def _on_remote_file_list(state: SyncState, event: RemoteFileListReceived, **_) -> TransitionResult:
    if state.mode is not SyncMode.HANDSHAKING:
        return _ignored(state, "file-list")

    return TransitionResult(
        replace(state, mode=SyncMode.SNAPSHOT_PROCESSING, pending_remote_changes=tuple(event.files)),
        [
            Log("debug", f"Received file list: {pluralize(len(event.files), 'file')}"),
            DetectConflicts(tuple(event.files)),
        ],
    )


def _on_conflicts_found(state: SyncState, event: ConflictsFound, **_) -> TransitionResult:
    if state.mode is not SyncMode.SNAPSHOT_PROCESSING:
        return _ignored(state, "conflict detection result")

    effects: List[Effect] = []

    if event.safe_writes:
        effects.append(Log("debug", f"Applying {pluralize(len(event.safe_writes), 'safe write')}"))
        effects.append(WriteFiles(tuple(event.safe_writes), silent=True))

    if event.local_only:
        effects.append(Log("debug", f"Uploading {pluralize(len(event.local_only), 'local-only file')}"))
        for file in event.local_only:
            effects.append(SendMessage(FileChange(file_name=file.name, content=file.content)))

    if event.conflicts:
        effects.append(Log("debug", f"{pluralize(len(event.conflicts), 'conflict')} require version check"))
        effects.append(RequestConflictVersions(tuple(event.conflicts)))
        return TransitionResult(
            replace(state, mode=SyncMode.CONFLICT_RESOLUTION, pending_conflicts=tuple(event.conflicts)),
            effects,
        )

    remote_total = len(state.pending_remote_changes)
    effects.append(PersistState())
    effects.append(SyncComplete(
        total_count=remote_total + len(event.local_only),
        updated_count=len(event.safe_writes) + len(event.local_only),
        unchanged_count=max(0, remote_total - len(event.safe_writes)),
    ))
    return TransitionResult(replace(state, mode=SyncMode.WATCHING, pending_remote_changes=()), effects)


def _on_remote_file_changed(state: SyncState, event: RemoteFileChanged, **_) -> TransitionResult:
    validation = validate_incoming_change(event.file_meta, state.mode)

    if validation.action is ValidationAction.QUEUE:
        return TransitionResult(state, [Log("debug", f"Ignoring file change during sync: {event.file.name}")])

    if validation.action is ValidationAction.REJECT:
        return TransitionResult(
            state, [Log("warning", f"Rejected file change: {event.file.name} ({validation.reason})")]
        )

    return TransitionResult(state, [
        Log("debug", f"Applying remote change: {event.file.name} ({validation.reason})"),
        WriteFiles((event.file,), skip_echo=True),
    ])


def _on_remote_file_deleted(state: SyncState, event: RemoteFileDeleted, **_) -> TransitionResult:
    if state.mode is SyncMode.DISCONNECTED:
        return TransitionResult(state, [Log("warning", f"Rejected delete while disconnected: {event.file_name}")])

    return TransitionResult(state, [
        Log("debug", f"Remote delete applied: {event.file_name}"),
        DeleteLocalFiles((event.file_name,)),
        PersistState(),
    ])


def _on_local_delete_approved(state: SyncState, event: LocalDeleteApproved, **_) -> TransitionResult:
    return TransitionResult(state, [
        Log("debug", f"Delete confirmed: {event.file_name}"),
        DeleteLocalFiles((event.file_name,)),
        PersistState(),
    ])


def _on_local_delete_rejected(state: SyncState, event: LocalDeleteRejected, now_ms: float, **_) -> TransitionResult:
    if event.content is None:
        return TransitionResult(state, [
            Log("warning", f"Delete cancelled for {event.file_name} without content to restore")
        ])

    return TransitionResult(state, [
        Log("debug", f"Delete cancelled: {event.file_name}"),
        WriteFiles((FileInfo(name=event.file_name, content=event.content, modified_at=now_ms),)),
    ])


def _on_conflict_resolution(state: SyncState, event: ConflictResolutionChosen, **_) -> TransitionResult:
    if state.mode is not SyncMode.CONFLICT_RESOLUTION:
        return _ignored(state, "conflicts-resolved")

    effects: List[Effect] = []

    if event.resolution == "remote":
        for conflict in state.pending_conflicts:
            if conflict.remote_content is None:
                effects.append(DeleteLocalFiles((conflict.file_name,)))
            else:
                effects.append(WriteFiles((FileInfo(
                    name=conflict.file_name,
                    content=conflict.remote_content,
                    modified_at=conflict.remote_modified_at,
                ),), silent=True))
        effects.append(Log("info", "Keeping remote changes"))
    else:
        local_deletes: List[str] = []
        for conflict in state.pending_conflicts:
            if conflict.local_content is None:
                local_deletes.append(conflict.file_name)
            else:
                effects.append(SendMessage(FileChange(file_name=conflict.file_name, content=conflict.local_content)))
        if local_deletes:
            effects.append(LocalInitiatedFileDelete(tuple(local_deletes)))
        effects.append(Log("info", "Keeping local changes"))

    count = len(state.pending_conflicts)
    effects.append(PersistState())
    effects.append(SyncComplete(total_count=count, updated_count=count, unchanged_count=0))

    return TransitionResult(replace(state, mode=SyncMode.WATCHING, pending_conflicts=()), effects)


def _on_file_synced(state: SyncState, event: FileSyncedConfirmation, **_) -> TransitionResult:
    return TransitionResult(state, [
        Log("debug", f"Remote confirmed sync: {event.file_name}"),
        UpdateFileMetadata(event.file_name, event.remote_modified_at),
    ])


def _on_disconnected(state: SyncState, event: Disconnected, **_) -> TransitionResult:
    return TransitionResult(
        replace(state, mode=SyncMode.DISCONNECTED, connection=None, pending_conflicts=()),
        [PersistState(), Log("debug", "Disconnected, persisting state")],
    )


def _on_watcher_event(state: SyncState, event: WatcherEventReceived, **_) -> TransitionResult:
    change = event.event
    if state.mode is not SyncMode.WATCHING:
        return TransitionResult(state, [
            Log("debug", f"Ignoring watcher event in {state.mode.value} mode: {change}")
        ])

    if change.kind is SyncEventKind.UNLINK:
        return TransitionResult(state, [
            Log("debug", f"Local delete detected: {change.relative_path}"),
            LocalInitiatedFileDelete((change.relative_path,)),
        ])

    return TransitionResult(state, [SendLocalChange(change.relative_path, change.content)])


def _on_conflict_versions(
    state: SyncState,
    event: ConflictVersionsReceived,
    now_ms: float,
    remote_drift_ms: int,
    **_
) -> TransitionResult:
    if state.mode is not SyncMode.CONFLICT_RESOLUTION:
        return _ignored(state, "conflict-version-response")

    result = auto_resolve_conflicts(list(state.pending_conflicts), list(event.versions), remote_drift_ms)
    effects: List[Effect] = []

    if result.auto_resolved_local:
        effects.append(Log("debug", f"Auto-resolved {pluralize(len(result.auto_resolved_local), 'local change')}"))
        local_deletes: List[str] = []
        for conflict in result.auto_resolved_local:
            if conflict.local_content is None:
                local_deletes.append(conflict.file_name)
            else:
                effects.append(SendLocalChange(conflict.file_name, conflict.local_content))
        if local_deletes:
            effects.append(LocalInitiatedFileDelete(tuple(local_deletes)))

    if result.auto_resolved_remote:
        effects.append(Log("debug", f"Auto-resolved {pluralize(len(result.auto_resolved_remote), 'remote change')}"))
        for conflict in result.auto_resolved_remote:
            if conflict.remote_content is None:
                effects.append(DeleteLocalFiles((conflict.file_name,)))
            else:
                effects.append(WriteFiles((FileInfo(
                    name=conflict.file_name,
                    content=conflict.remote_content,
                    modified_at=conflict.remote_modified_at or now_ms,
                ),), silent=True))

    if result.remaining_conflicts:
        remaining = tuple(result.remaining_conflicts)
        effects.append(Log("warning", f"{pluralize(len(remaining), 'conflict')} require resolution"))
        effects.append(RequestConflictDecisions(remaining))
        return TransitionResult(replace(state, pending_conflicts=remaining), effects)

    resolved = len(result.auto_resolved_local) + len(result.auto_resolved_remote)
    effects.append(PersistState())
    effects.append(SyncComplete(total_count=resolved, updated_count=resolved, unchanged_count=0))
    return TransitionResult(
        replace(state, mode=SyncMode.WATCHING, pending_conflicts=(), pending_remote_changes=()),
        effects,
    )


_TRANSITIONS: Dict[Type, Callable[..., TransitionResult]] = {
    HandshakeReceived: _on_handshake,
    FilesRequested: _on_files_requested,
    RemoteFileListReceived: _on_remote_file_list,
    ConflictsFound: _on_conflicts_found,
    RemoteFileChanged: _on_remote_file_changed,
    RemoteFileDeleted: _on_remote_file_deleted,
    LocalDeleteApproved: _on_local_delete_approved,
    LocalDeleteRejected: _on_local_delete_rejected,
    ConflictResolutionChosen: _on_conflict_resolution,
    FileSyncedConfirmation: _on_file_synced,
    Disconnected: _on_disconnected,
    WatcherEventReceived: _on_watcher_event,
    ConflictVersionsReceived: _on_conflict_versions,
}


def transition(
    state: SyncState,
    event: Event,
    now_ms: float = 0.0,
    remote_drift_ms: int = DEFAULT_REMOTE_DRIFT_MS
) -> TransitionResult:
    """
    Compute the next state and the effects to execute.

    Args:
        state: Current state
        event: Event to apply
        now_ms: Current time in epoch milliseconds, for restored files
        remote_drift_ms: Drift tolerance for conflict auto-resolution

    Raises:
        TypeError: If ``event`` is not a known event type
    """
    handler = _TRANSITIONS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown sync event: {event!r}")
    return handler(state, event, now_ms=now_ms, remote_drift_ms=remote_drift_ms)
