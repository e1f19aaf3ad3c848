"""
Tests for protocol message encoding and decoding.
"""

import json

import pytest

from core.errors import ProtocolError
from core.models.files import ConflictSummary, FileInfo
from core.sync.protocol import (
    ConflictsDetected,
    ConflictsResolved,
    DeleteCancelled,
    FileChange,
    FileDelete,
    FileList,
    FileSynced,
    Handshake,
    RequestFiles,
    SyncComplete,
    decode_incoming,
    decode_outgoing,
    encode_message,
    message_type,
)


class TestEncoding:
    """Test message encoding"""

    def test_frame_is_compact_json_text(self):
        frame = encode_message(FileChange(file_name="a.tsx", content="x"))

        assert isinstance(frame, str)
        assert " " not in frame
        assert json.loads(frame) == {"type": "file-change", "fileName": "a.tsx", "content": "x"}

    def test_camel_case_fields(self):
        data = json.loads(encode_message(FileDelete(file_names=["a.tsx"], require_confirmation=True)))
        assert data == {"type": "file-delete", "fileNames": ["a.tsx"], "requireConfirmation": True}

    def test_newlines_in_content_are_escaped(self):
        frame = encode_message(FileChange(file_name="a.tsx", content="line1\nline2"))
        assert "\n" not in frame
        assert json.loads(frame)["content"] == "line1\nline2"

    def test_message_type(self):
        assert message_type(SyncComplete()) == "sync-complete"
        assert message_type(RequestFiles()) == "request-files"


class TestDecodeIncoming:
    """Test decoding of frames sent by the remote runtime"""

    def test_handshake(self):
        message = decode_incoming(b'{"type":"handshake","projectId":"abc","projectName":"Demo"}\n')
        assert isinstance(message, Handshake)
        assert message.project_id == "abc"
        assert message.project_name == "Demo"

    def test_file_list(self):
        message = decode_incoming('{"type":"file-list","files":[{"name":"A.tsx","content":"x","modifiedAt":5}]}')
        assert isinstance(message, FileList)
        assert message.files[0] == FileInfo(name="A.tsx", content="x", modified_at=5)

    def test_file_synced(self):
        message = decode_incoming('{"type":"file-synced","fileName":"A.tsx","remoteModifiedAt":1700000000000}')
        assert isinstance(message, FileSynced)
        assert message.remote_modified_at == 1700000000000

    def test_delete_cancelled(self):
        message = decode_incoming('{"type":"delete-cancelled","files":[{"fileName":"A.tsx","content":"x"}]}')
        assert isinstance(message, DeleteCancelled)
        assert message.files[0].content == "x"

    def test_conflicts_resolved(self):
        message = decode_incoming('{"type":"conflicts-resolved","resolution":"local"}')
        assert isinstance(message, ConflictsResolved)
        assert message.resolution == "local"

    def test_unknown_fields_ignored(self):
        message = decode_incoming('{"type":"request-files","extra":1}')
        assert isinstance(message, RequestFiles)

    @pytest.mark.parametrize("frame", [
        "not json",
        "",
        "   \n",
        '{"type":"bogus"}',
        '{"fileName":"a.tsx"}',
        '{"type":"file-change","fileName":"a.tsx"}',
        '{"type":"conflicts-resolved","resolution":"both"}',
        '{"type":"sync-complete"}',
        b"\xff\xfe",
    ])
    def test_malformed_frames(self, frame):
        with pytest.raises(ProtocolError):
            decode_incoming(frame)


class TestDecodeOutgoing:
    """Test decoding of frames sent by the local side"""

    def test_conflicts_detected_keeps_deletions(self):
        message = ConflictsDetected(conflicts=[
            ConflictSummary(file_name="a.tsx", local_content="local", remote_content=None),
        ])
        decoded = decode_outgoing(encode_message(message))

        assert isinstance(decoded, ConflictsDetected)
        assert decoded.conflicts[0].remote_content is None
        assert decoded.conflicts[0].deleted_remotely
        assert decoded.conflicts[0].local_fingerprint == "5:local:local"

    def test_sync_complete(self):
        assert isinstance(decode_outgoing('{"type":"sync-complete"}'), SyncComplete)

    def test_handshake_is_not_outgoing(self):
        with pytest.raises(ProtocolError):
            decode_outgoing('{"type":"handshake","projectId":"abc"}')
