"""
Sync Protocol Messages.

Closed sets of message variants exchanged between the local CLI and the
remote runtime, tagged by their ``type`` field. Each message travels as
one compact JSON object in its own WebSocket text frame.

Outgoing (local -> remote): request-files, file-list, file-change,
file-delete, conflicts-detected, conflict-version-request, sync-complete.

Incoming (remote -> local): handshake, request-files, file-list,
file-change, file-delete, delete-confirmed, delete-cancelled, file-synced,
conflicts-resolved, conflict-version-response.
"""

import logging
from typing import Annotated, List, Literal, Optional, Union
from pydantic import Field, TypeAdapter, ValidationError

from ..errors import ProtocolError
from ..models.files import (
    ConflictSummary,
    ConflictVersion,
    ConflictVersionQuery,
    FileInfo,
    WireModel,
)

logger = logging.getLogger(__name__)


class Handshake(WireModel):
    type: Literal["handshake"] = "handshake"
    project_id: str = Field(..., min_length=1)
    project_name: str = ""


class RequestFiles(WireModel):
    type: Literal["request-files"] = "request-files"


class FileList(WireModel):
    type: Literal["file-list"] = "file-list"
    files: List[FileInfo] = Field(default_factory=list)


class FileChange(WireModel):
    type: Literal["file-change"] = "file-change"
    file_name: str = Field(..., min_length=1)
    content: str


class FileDelete(WireModel):
    """Delete notification; ``require_confirmation`` is only set by the local side"""
    type: Literal["file-delete"] = "file-delete"
    file_names: List[str] = Field(default_factory=list)
    require_confirmation: bool = False


class DeleteConfirmed(WireModel):
    type: Literal["delete-confirmed"] = "delete-confirmed"
    file_names: List[str] = Field(default_factory=list)


class CancelledDelete(WireModel):
    """A rejected delete plus the content needed to restore the file"""
    file_name: str = Field(..., min_length=1)
    content: Optional[str] = None


class DeleteCancelled(WireModel):
    type: Literal["delete-cancelled"] = "delete-cancelled"
    files: List[CancelledDelete] = Field(default_factory=list)


class FileSynced(WireModel):
    type: Literal["file-synced"] = "file-synced"
    file_name: str = Field(..., min_length=1)
    remote_modified_at: float


class ConflictsDetected(WireModel):
    type: Literal["conflicts-detected"] = "conflicts-detected"
    conflicts: List[ConflictSummary] = Field(default_factory=list)


class ConflictsResolved(WireModel):
    type: Literal["conflicts-resolved"] = "conflicts-resolved"
    resolution: Literal["local", "remote"]


class ConflictVersionRequest(WireModel):
    type: Literal["conflict-version-request"] = "conflict-version-request"
    conflicts: List[ConflictVersionQuery] = Field(default_factory=list)


class ConflictVersionResponse(WireModel):
    type: Literal["conflict-version-response"] = "conflict-version-response"
    versions: List[ConflictVersion] = Field(default_factory=list)


class SyncComplete(WireModel):
    type: Literal["sync-complete"] = "sync-complete"


OutgoingMessage = Annotated[
    Union[
        RequestFiles,
        FileList,
        FileChange,
        FileDelete,
        ConflictsDetected,
        ConflictVersionRequest,
        SyncComplete,
    ],
    Field(discriminator="type"),
]

IncomingMessage = Annotated[
    Union[
        Handshake,
        RequestFiles,
        FileList,
        FileChange,
        FileDelete,
        DeleteConfirmed,
        DeleteCancelled,
        FileSynced,
        ConflictsResolved,
        ConflictVersionResponse,
    ],
    Field(discriminator="type"),
]

_outgoing_adapter: TypeAdapter = TypeAdapter(OutgoingMessage)
_incoming_adapter: TypeAdapter = TypeAdapter(IncomingMessage)


def encode_message(message: WireModel) -> str:
    """Serialize a message to the compact JSON text of one frame."""
    return message.model_dump_json(by_alias=True)


def _decode(adapter: TypeAdapter, data: Union[bytes, str], direction: str):
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e

    data = data.strip()
    if not data:
        raise ProtocolError("Empty frame")

    try:
        return adapter.validate_json(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '<frame>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ProtocolError(f"Invalid {direction} message: {errors}") from e


def decode_incoming(data: Union[bytes, str]) -> IncomingMessage:
    """
    Parse a frame sent by the remote runtime.

    Raises:
        ProtocolError: Malformed JSON, unknown ``type`` or invalid fields
    """
    return _decode(_incoming_adapter, data, "incoming")


def decode_outgoing(data: Union[bytes, str]) -> OutgoingMessage:
    """
    Parse a frame sent by the local CLI (used by the remote endpoint).

    Raises:
        ProtocolError: Malformed JSON, unknown ``type`` or invalid fields
    """
    return _decode(_outgoing_adapter, data, "outgoing")


def message_type(message: WireModel) -> str:
    return getattr(message, "type", type(message).__name__)
