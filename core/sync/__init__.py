"""
Bidirectional file synchronization with echo suppression.

This package keeps a local project directory and a remote runtime in sync
over a persistent WebSocket connection, without bouncing each side's writes back
to it.

Key Components:
- hashing / ports: content fingerprints, short project ids, port derivation
- paths: path normalization and module-name sanitization
- SyncTracker: echo suppression for writes made on behalf of the remote
- SyncEvent / SyncEventQueue: normalized watcher events and their FIFO
- ProjectFileWatcher (watcher): watchdog-based filesystem monitoring
- protocol / connection: message envelope and WebSocket transport
- files / conflicts / state / metadata / pending: snapshot, conflict and
  delete bookkeeping
- lifecycle / SyncEngine (engine): state machine and effect execution
- RemotePeer (peer): the remote end of a session, for tests and scripting

Only the dependency-free leaves are re-exported here; import the
connection, watcher and engine layers from their modules.
"""

from .hashing import fingerprint, shorten_id, hash_file_content, pluralize
from .ports import port_for, PORT_RANGE_START, PORT_WINDOW_SIZE
from .paths import (
    normalize_path,
    sanitize_file_path,
    sanitize_file_name,
    canonical_file_name,
    is_supported_extension,
    SUPPORTED_EXTENSIONS,
)
from .tracker import SyncTracker
from .events import SyncEvent, SyncEventKind
from .queue import SyncEventQueue

__all__ = [
    "fingerprint",
    "shorten_id",
    "hash_file_content",
    "pluralize",
    "port_for",
    "PORT_RANGE_START",
    "PORT_WINDOW_SIZE",
    "normalize_path",
    "sanitize_file_path",
    "sanitize_file_name",
    "canonical_file_name",
    "is_supported_extension",
    "SUPPORTED_EXTENSIONS",
    "SyncTracker",
    "SyncEvent",
    "SyncEventKind",
    "SyncEventQueue",
]
