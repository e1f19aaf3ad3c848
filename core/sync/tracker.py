"""
Sync Tracker (echo suppression).

Remembers the fingerprint of the last content this process wrote on behalf
of the remote side, so the local watcher can tell its own writes apart
from genuine user edits.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from .hashing import fingerprint
from .paths import canonical_file_name

logger = logging.getLogger(__name__)

DEFAULT_DELETE_MARKER_TTL_S = 5.0


class SyncTracker:
    """
    Canonical path -> last-known content fingerprint.

    The inbound path (network -> disk) calls ``remember`` before writing and
    the outbound path (disk -> network) calls ``should_skip`` before
    forwarding. Both paths share this object, so every access goes through
    one lock.

    Fingerprints are approximate: a genuine local edit that happens to share
    length, first 50 and last 50 characters with the last remote write is
    suppressed. That is an accepted, bounded risk.
    """

    def __init__(self, delete_marker_ttl_s: float = DEFAULT_DELETE_MARKER_TTL_S):
        self.delete_marker_ttl_s = delete_marker_ttl_s
        self._fingerprints: Dict[str, str] = {}
        self._delete_markers: Dict[str, float] = {}  # path -> monotonic expiry
        self._lock = threading.Lock()

    def remember(self, path: str, content: str) -> None:
        """Record content this process is about to write for the remote side."""
        key = canonical_file_name(path)
        with self._lock:
            self._fingerprints[key] = fingerprint(content)
        logger.debug(f"Remembered fingerprint for {key}")

    def should_skip(self, path: str, content: str) -> bool:
        """True if ``content`` matches the last remembered write for ``path``."""
        key = canonical_file_name(path)
        with self._lock:
            stored = self._fingerprints.get(key)
        return stored is not None and stored == fingerprint(content)

    def forget(self, path: str) -> None:
        key = canonical_file_name(path)
        with self._lock:
            self._fingerprints.pop(key, None)

    def clear(self) -> None:
        """Drop every fingerprint and delete marker (full resync or reconnect)."""
        with self._lock:
            self._fingerprints.clear()
            self._delete_markers.clear()
        logger.debug("Cleared sync tracker")

    def mark_delete(self, path: str, ttl_s: Optional[float] = None) -> None:
        """Mark a delete this process is about to perform; expires after ``ttl_s``."""
        key = canonical_file_name(path)
        ttl = self.delete_marker_ttl_s if ttl_s is None else ttl_s
        with self._lock:
            self._delete_markers[key] = time.monotonic() + ttl

    def should_skip_delete(self, path: str) -> bool:
        key = canonical_file_name(path)
        with self._lock:
            expiry = self._delete_markers.get(key)
            if expiry is None:
                return False
            if expiry <= time.monotonic():
                del self._delete_markers[key]
                return False
            return True

    def clear_delete(self, path: str) -> None:
        key = canonical_file_name(path)
        with self._lock:
            self._delete_markers.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._fingerprints)

    def __contains__(self, path: str) -> bool:
        key = canonical_file_name(path)
        with self._lock:
            return key in self._fingerprints

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            now = time.monotonic()
            return {
                "tracked_files": len(self._fingerprints),
                "pending_delete_markers": sum(1 for expiry in self._delete_markers.values() if expiry > now),
                "delete_marker_ttl_s": self.delete_marker_ttl_s,
            }
