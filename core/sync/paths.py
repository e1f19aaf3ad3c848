"""
Path Normalization and Sanitization.

Pure string transforms shared by both sync endpoints. Nothing here touches
the filesystem except ``resolve_remote_reference``, which only joins paths.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

from ..errors import SanitizationError

SUPPORTED_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".json")
DEFAULT_EXTENSION = ".tsx"

_SUPPORTED_EXTENSION_RE = re.compile(r"\.(tsx?|jsx?|json)$", re.IGNORECASE)
_STRIP_EXTENSION_RE = re.compile(r"\.(tsx?|jsx?)$")
_SPLIT_EXTENSION_RE = re.compile(r"^(.+?)(\.[^.]+)?$")
_FIRST_CHARACTER_RE = re.compile(r"^[a-zA-Z$_]")
_INVALID_CHARACTERS_RE = re.compile(r"[^a-zA-Z0-9$_]")
_UNDERSCORE_RUN_RE = re.compile(r"_+")
_ONLY_DOTS_RE = re.compile(r"^\.+$")

_SUBSTITUTE = "_"
_VALID_FIRST_CHAR = "$"


@dataclass(frozen=True)
class SanitizedPath:
    """Result of sanitizing a relative file path."""
    path: str
    dir_name: str
    name: str
    extension: str  # without the leading dot


@dataclass(frozen=True)
class RemoteReference:
    """A remote file name resolved against the local files directory."""
    relative_path: str
    absolute_path: Path
    extension: str


def normalize_path(file_path: str) -> str:
    """
    Canonicalize a path without touching the filesystem.

    Backslashes become forward slashes, empty and ``.`` segments are
    dropped, ``..`` pops one segment (and is ignored at the root), and a
    leading ``/`` is preserved.

    Example:
        normalize_path("a/b/../../c") -> "c"
        normalize_path("/x/./y/") -> "/x/y"
    """
    if not file_path:
        return ""

    is_absolute = file_path.startswith("/")
    stack = []

    for segment in file_path.replace("\\", "/").split("/"):
        if not segment or segment == ".":
            continue
        if segment == "..":
            if stack:
                stack.pop()
            continue
        stack.append(segment)

    normalized = "/".join(stack)
    return f"/{normalized}" if is_absolute else normalized


def normalize_code_file_path(file_path: str) -> str:
    """Normalize and always return a relative path."""
    normalized = normalize_path(file_path)
    return normalized[1:] if normalized.startswith("/") else normalized


def is_supported_extension(file_path: Union[str, Path]) -> bool:
    """Check whether a path has a synced extension (.ts, .tsx, .js, .jsx, .json)."""
    return bool(_SUPPORTED_EXTENSION_RE.search(str(file_path)))


def ensure_extension(file_path: str, extension: str = DEFAULT_EXTENSION) -> str:
    normalized = normalize_code_file_path(file_path)
    return normalized if is_supported_extension(normalized) else f"{normalized}{extension}"


def strip_extension(file_path: str) -> str:
    return _STRIP_EXTENSION_RE.sub("", normalize_code_file_path(file_path))


def _sanitized_segment(name: Optional[str], is_directory: bool) -> Optional[str]:
    if not name:
        return None

    valid = name.strip()
    if not valid:
        return None

    if is_directory:
        if _ONLY_DOTS_RE.match(valid):
            return None
    elif not _FIRST_CHARACTER_RE.match(valid):
        valid = _VALID_FIRST_CHAR + valid

    valid = _INVALID_CHARACTERS_RE.sub(_SUBSTITUTE, valid)
    valid = _UNDERSCORE_RUN_RE.sub(_SUBSTITUTE, valid)
    if valid.startswith("$_"):
        valid = _VALID_FIRST_CHAR + valid[2:]
    return valid


def _split_extension(file_name: str) -> Tuple[str, str]:
    match = _SPLIT_EXTENSION_RE.match(file_name)
    if not match:
        return file_name, ""
    return match.group(1), (match.group(2) or "")[1:]


def _join(*parts: str) -> str:
    cleaned = [part.strip("/") for part in parts]
    return "/".join(part for part in cleaned if part)


def sanitize_file_path(file_path: str, capitalize: bool = True) -> SanitizedPath:
    """
    Sanitize a relative path so both endpoints accept it as a module name.

    Directory segments and the base name have characters outside
    ``[a-zA-Z0-9$_]`` replaced by ``_``; a base name that does not start with
    a letter, ``$`` or ``_`` gets a ``$`` prefix. With ``capitalize``, React
    component names (``.tsx`` or no recognised extension) get an upper-case
    first letter.

    Args:
        file_path: Relative path, forward-slash separated
        capitalize: Whether to capitalize component names

    Returns:
        SanitizedPath with the joined path and its parts

    Raises:
        SanitizationError: If the base name is empty
    """
    trimmed = file_path.strip()
    slash = trimmed.rfind("/")
    raw_dir = trimmed[:slash] if slash >= 0 else ""
    raw_name, extension = _split_extension(trimmed[slash + 1:])

    dir_parts = [_sanitized_segment(part, is_directory=True) for part in raw_dir.split("/")]
    dir_name = "/".join(part for part in dir_parts if part)

    name = _sanitized_segment(raw_name, is_directory=False)
    if name is None:
        raise SanitizationError(file_path, "file name is empty")

    extension_with_dot = f".{extension}" if extension else ""
    is_component = extension_with_dot == ".tsx" or not is_supported_extension(extension_with_dot)
    if capitalize and is_component:
        name = name[0].upper() + name[1:]

    return SanitizedPath(
        path=_join(dir_name, name + extension_with_dot),
        dir_name=dir_name,
        name=name,
        extension=extension,
    )


def sanitize_file_name(name: str) -> str:
    """
    Sanitize a bare file name, keeping its casing.

    Example:
        sanitize_file_name("bad name!.tsx") -> "bad_name_.tsx"
    """
    return sanitize_file_path(name.replace("/", _SUBSTITUTE), capitalize=False).path


def canonical_file_name(file_path: str) -> str:
    """
    Identity key for tracker and metadata lookups.

    Superficially different spellings of the same logical file
    (``./a.tsx``, ``/a.tsx``, ``b/../a.tsx``) collapse to one key.
    """
    return sanitize_file_path(normalize_code_file_path(file_path), capitalize=False).path


def file_key_for_lookup(file_path: str) -> str:
    """Case-insensitive lookup key."""
    return canonical_file_name(file_path).lower()


def resolve_remote_reference(files_dir: Union[str, Path], raw_name: str) -> RemoteReference:
    """
    Resolve a file name received from the remote side.

    The name is trimmed, normalized, given the default ``.tsx`` extension
    when it has no supported one, and sanitized without capitalization.
    Normalization drops leading ``..`` segments, so the result always stays
    inside ``files_dir``.
    """
    candidate = ensure_extension(raw_name.strip())
    sanitized = sanitize_file_path(candidate, capitalize=False)
    relative_path = normalize_path(sanitized.path)
    extension = sanitized.extension or Path(relative_path).suffix.lstrip(".") or DEFAULT_EXTENSION[1:]

    return RemoteReference(
        relative_path=relative_path,
        absolute_path=Path(files_dir) / relative_path,
        extension=extension,
    )
