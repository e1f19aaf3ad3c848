"""
Test suite for the sync layer.

Covers hashing and port derivation, path sanitization, the echo-suppressing
SyncTracker, the event queue and file watcher, the WebSocket protocol and
transport, conflict detection, persisted state, pending deletes, the
lifecycle state machine, and the engine against a remote peer over a real
socket.
"""
