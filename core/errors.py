"""
Exception hierarchy for code-link-sync.

Every error raised by the sync core derives from CodeLinkError so callers
can catch the whole family at the CLI boundary.
"""


class CodeLinkError(Exception):
    """Base class for all code-link-sync errors"""
    pass


class ProtocolError(CodeLinkError):
    """A frame could not be decoded into a known message variant"""
    pass


class ProjectMismatchError(CodeLinkError):
    """The peer announced a different project than the one being synced"""

    def __init__(self, expected: str, received: str):
        super().__init__(f"Project ID mismatch: expected {expected}, got {received}")
        self.expected = expected
        self.received = received


class PortInUseError(CodeLinkError):
    """The derived sync port is already bound by another process"""

    def __init__(self, port: int):
        super().__init__(f"Port {port} is already in use")
        self.port = port


class SanitizationError(CodeLinkError):
    """A file name sanitized to an empty or already-taken name"""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot sanitize {path!r}: {reason}")
        self.path = path
        self.reason = reason


class FileSyncError(CodeLinkError):
    """A filesystem read or write failed for a single synced path"""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Filesystem operation failed for {path}: {cause}")
        self.path = path
        self.cause = cause


class ProjectDirectoryError(CodeLinkError):
    """The project directory could not be located or created"""
    pass
