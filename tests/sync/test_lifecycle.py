"""
Tests for the pure sync lifecycle transitions.

Each test feeds one event into ``transition`` and checks the resulting
mode and the effects the engine would execute.
"""

import pytest

from core.models.files import Conflict, ConflictVersion, FileInfo, ProjectInfo
from core.sync.events import SyncEvent
from core.sync.lifecycle import (
    ConflictResolutionChosen,
    ConflictsFound,
    ConflictVersionsReceived,
    DeleteLocalFiles,
    DetectConflicts,
    Disconnected,
    FileSyncedConfirmation,
    FilesRequested,
    HandshakeReceived,
    InitWorkspace,
    ListLocalFiles,
    LoadPersistedState,
    LocalDeleteApproved,
    LocalDeleteRejected,
    LocalInitiatedFileDelete,
    Log,
    PersistState,
    RemoteFileChanged,
    RemoteFileDeleted,
    RemoteFileListReceived,
    RequestConflictDecisions,
    RequestConflictVersions,
    SendLocalChange,
    SendMessage,
    SyncComplete,
    SyncMode,
    SyncState,
    UpdateFileMetadata,
    WatcherEventReceived,
    WriteFiles,
    transition,
)
from core.sync.protocol import FileChange, RequestFiles

PROJECT = ProjectInfo(project_id="a1b2c3d4e5f60718293a4b5c6d7e8f90", project_name="Demo")
CONNECTION = object()


def _effects_of(result, effect_type):
    return [effect for effect in result.effects if isinstance(effect, effect_type)]


def _state(mode: SyncMode, **kwargs) -> SyncState:
    return SyncState(mode=mode, connection=CONNECTION, **kwargs)


class TestHandshakeAndSnapshot:
    """Test the connect-time path up to watching"""

    def test_handshake_from_disconnected(self):
        result = transition(SyncState(), HandshakeReceived(CONNECTION, PROJECT))

        assert result.state.mode is SyncMode.HANDSHAKING
        assert result.state.connection is CONNECTION
        assert isinstance(result.effects[0], InitWorkspace)
        assert isinstance(result.effects[1], LoadPersistedState)
        assert isinstance(result.effects[2], SendMessage)
        assert isinstance(result.effects[2].message, RequestFiles)

    def test_handshake_while_connected_is_ignored(self):
        state = _state(SyncMode.WATCHING)
        result = transition(state, HandshakeReceived(object(), PROJECT))

        assert result.state == state
        assert _effects_of(result, Log)[0].level == "warning"

    def test_files_requested(self):
        result = transition(_state(SyncMode.WATCHING), FilesRequested())
        assert _effects_of(result, ListLocalFiles)

    def test_files_requested_while_disconnected(self):
        result = transition(SyncState(), FilesRequested())
        assert not _effects_of(result, ListLocalFiles)

    def test_file_list_starts_snapshot_processing(self):
        files = (FileInfo(name="A.tsx", content="a"),)
        result = transition(_state(SyncMode.HANDSHAKING), RemoteFileListReceived(files))

        assert result.state.mode is SyncMode.SNAPSHOT_PROCESSING
        assert result.state.pending_remote_changes == files
        assert _effects_of(result, DetectConflicts)[0].remote_files == files

    def test_file_list_outside_handshake_is_ignored(self):
        result = transition(_state(SyncMode.WATCHING), RemoteFileListReceived(()))
        assert result.state.mode is SyncMode.WATCHING
        assert not _effects_of(result, DetectConflicts)

    def test_no_conflicts_goes_to_watching(self):
        remote = (FileInfo(name="A.tsx", content="a"), FileInfo(name="B.tsx", content="b"))
        state = _state(SyncMode.SNAPSHOT_PROCESSING, pending_remote_changes=remote)
        local_only = (FileInfo(name="Mine.tsx", content="m"),)

        result = transition(state, ConflictsFound(conflicts=(), safe_writes=remote[:1], local_only=local_only))

        assert result.state.mode is SyncMode.WATCHING
        assert result.state.pending_remote_changes == ()

        writes = _effects_of(result, WriteFiles)
        assert writes[0].files == remote[:1]
        assert writes[0].silent is True

        uploads = [e.message for e in _effects_of(result, SendMessage)]
        assert uploads == [FileChange(file_name="Mine.tsx", content="m")]

        assert _effects_of(result, PersistState)
        summary = _effects_of(result, SyncComplete)[0]
        assert (summary.total_count, summary.updated_count, summary.unchanged_count) == (3, 2, 1)

    def test_conflicts_request_versions(self):
        conflict = Conflict(file_name="A.tsx", local_content="l", remote_content="r")
        result = transition(
            _state(SyncMode.SNAPSHOT_PROCESSING),
            ConflictsFound(conflicts=(conflict,), safe_writes=(), local_only=()),
        )

        assert result.state.mode is SyncMode.CONFLICT_RESOLUTION
        assert result.state.pending_conflicts == (conflict,)
        assert _effects_of(result, RequestConflictVersions)[0].conflicts == (conflict,)
        assert not _effects_of(result, SyncComplete)


class TestConflictResolution:
    """Test auto-resolution and explicit decisions"""

    def test_versions_auto_resolve_everything(self):
        clean = Conflict(file_name="Clean.tsx", local_content="l", remote_content="r", local_clean=True)
        stale_remote = Conflict(
            file_name="Mine.tsx", local_content="mine", remote_content="old", local_clean=False, last_synced_at=1000
        )
        state = _state(SyncMode.CONFLICT_RESOLUTION, pending_conflicts=(clean, stale_remote))
        versions = (ConflictVersion(file_name="Mine.tsx", latest_remote_version_ms=1500),)

        result = transition(state, ConflictVersionsReceived(versions), now_ms=9999, remote_drift_ms=2000)

        assert result.state.mode is SyncMode.WATCHING
        assert _effects_of(result, SendLocalChange) == [SendLocalChange("Mine.tsx", "mine")]
        written = _effects_of(result, WriteFiles)[0].files[0]
        assert (written.name, written.content, written.modified_at) == ("Clean.tsx", "r", 9999)
        assert _effects_of(result, SyncComplete)[0].updated_count == 2

    def test_versions_leave_real_conflicts(self):
        both = Conflict(file_name="Both.tsx", local_content="l", remote_content="r", last_synced_at=1000)
        state = _state(SyncMode.CONFLICT_RESOLUTION, pending_conflicts=(both,))
        versions = (ConflictVersion(file_name="Both.tsx", latest_remote_version_ms=50000),)

        result = transition(state, ConflictVersionsReceived(versions))

        assert result.state.mode is SyncMode.CONFLICT_RESOLUTION
        assert _effects_of(result, RequestConflictDecisions)[0].conflicts == (both,)

    def test_auto_resolved_local_deletion_is_sent(self):
        deleted = Conflict(file_name="Gone.tsx", local_content=None, remote_content="r", last_synced_at=1000)
        state = _state(SyncMode.CONFLICT_RESOLUTION, pending_conflicts=(deleted,))
        versions = (ConflictVersion(file_name="Gone.tsx", latest_remote_version_ms=1000),)

        result = transition(state, ConflictVersionsReceived(versions))
        assert _effects_of(result, LocalInitiatedFileDelete)[0].file_names == ("Gone.tsx",)

    def test_keep_remote(self):
        changed = Conflict(file_name="A.tsx", local_content="l", remote_content="r", remote_modified_at=7)
        removed = Conflict(file_name="B.tsx", local_content="l", remote_content=None)
        state = _state(SyncMode.CONFLICT_RESOLUTION, pending_conflicts=(changed, removed))

        result = transition(state, ConflictResolutionChosen("remote"))

        assert result.state.mode is SyncMode.WATCHING
        assert result.state.pending_conflicts == ()
        assert _effects_of(result, WriteFiles)[0].files[0].content == "r"
        assert _effects_of(result, DeleteLocalFiles)[0].names == ("B.tsx",)
        assert _effects_of(result, SyncComplete)[0].total_count == 2

    def test_keep_local(self):
        changed = Conflict(file_name="A.tsx", local_content="l", remote_content="r")
        removed = Conflict(file_name="B.tsx", local_content=None, remote_content="r")
        state = _state(SyncMode.CONFLICT_RESOLUTION, pending_conflicts=(changed, removed))

        result = transition(state, ConflictResolutionChosen("local"))

        assert [e.message for e in _effects_of(result, SendMessage)] == [FileChange(file_name="A.tsx", content="l")]
        assert _effects_of(result, LocalInitiatedFileDelete)[0].file_names == ("B.tsx",)

    def test_resolution_outside_conflict_mode_is_ignored(self):
        result = transition(_state(SyncMode.WATCHING), ConflictResolutionChosen("local"))
        assert not _effects_of(result, SyncComplete)


class TestWatchingMode:
    """Test remote and local changes while watching"""

    def test_remote_change_applied(self):
        file = FileInfo(name="A.tsx", content="x")
        result = transition(_state(SyncMode.WATCHING), RemoteFileChanged(file))

        writes = _effects_of(result, WriteFiles)
        assert writes[0].files == (file,)
        assert writes[0].skip_echo is True

    @pytest.mark.parametrize("mode", [SyncMode.SNAPSHOT_PROCESSING, SyncMode.CONFLICT_RESOLUTION, SyncMode.DISCONNECTED])
    def test_remote_change_not_applied_outside_watching(self, mode):
        result = transition(_state(mode), RemoteFileChanged(FileInfo(name="A.tsx", content="x")))
        assert not _effects_of(result, WriteFiles)

    def test_remote_delete(self):
        result = transition(_state(SyncMode.WATCHING), RemoteFileDeleted("A.tsx"))
        assert _effects_of(result, DeleteLocalFiles)[0].names == ("A.tsx",)
        assert _effects_of(result, PersistState)

    def test_remote_delete_while_disconnected(self):
        result = transition(SyncState(), RemoteFileDeleted("A.tsx"))
        assert not _effects_of(result, DeleteLocalFiles)

    def test_local_change_is_sent(self):
        event = SyncEvent.create_change("A.tsx", "edit")
        result = transition(_state(SyncMode.WATCHING), WatcherEventReceived(event))
        assert result.effects == [SendLocalChange("A.tsx", "edit")]

    def test_local_unlink_requests_delete(self):
        event = SyncEvent.create_unlink("A.tsx")
        result = transition(_state(SyncMode.WATCHING), WatcherEventReceived(event))
        assert _effects_of(result, LocalInitiatedFileDelete)[0].file_names == ("A.tsx",)

    def test_watcher_event_before_watching_is_dropped(self):
        event = SyncEvent.create_add("A.tsx", "x")
        result = transition(_state(SyncMode.SNAPSHOT_PROCESSING), WatcherEventReceived(event))
        assert not _effects_of(result, SendLocalChange)

    def test_delete_approved(self):
        result = transition(_state(SyncMode.WATCHING), LocalDeleteApproved("A.tsx"))
        assert _effects_of(result, DeleteLocalFiles)[0].names == ("A.tsx",)

    def test_delete_rejected_restores_content(self):
        result = transition(_state(SyncMode.WATCHING), LocalDeleteRejected("A.tsx", "restored"), now_ms=42)
        restored = _effects_of(result, WriteFiles)[0].files[0]
        assert (restored.name, restored.content, restored.modified_at) == ("A.tsx", "restored", 42)

    def test_delete_rejected_without_content(self):
        result = transition(_state(SyncMode.WATCHING), LocalDeleteRejected("A.tsx", None))
        assert not _effects_of(result, WriteFiles)
        assert _effects_of(result, Log)[0].level == "warning"

    def test_file_synced_updates_metadata(self):
        result = transition(_state(SyncMode.WATCHING), FileSyncedConfirmation("A.tsx", 123.0))
        assert _effects_of(result, UpdateFileMetadata) == [UpdateFileMetadata("A.tsx", 123.0)]


class TestDisconnect:

    def test_disconnect_clears_connection(self):
        conflict = Conflict(file_name="A.tsx", local_content="l", remote_content="r")
        state = _state(SyncMode.CONFLICT_RESOLUTION, pending_conflicts=(conflict,))

        result = transition(state, Disconnected())

        assert result.state.mode is SyncMode.DISCONNECTED
        assert result.state.connection is None
        assert result.state.pending_conflicts == ()
        assert _effects_of(result, PersistState)

    def test_unknown_event_raises(self):
        with pytest.raises(TypeError):
            transition(SyncState(), "not an event")
