"""
Content Fingerprints and Project Identity.

Provides the cheap content signature used for echo suppression, the
deterministic short project identifier, and the sha256 content hash used
for persisted sync state.
"""

import hashlib
from typing import List, Optional


# Base58 alphabet without 0/O/I/l
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

SHORT_ID_LENGTH = 8
FINGERPRINT_SAMPLE_CHARS = 50

_UINT32_MASK = 0xFFFFFFFF


def to_int32(value: int) -> int:
    """Wrap an integer to a signed 32-bit value."""
    value &= _UINT32_MASK
    return value - 0x100000000 if value & 0x80000000 else value


def _imul(a: int, b: int) -> int:
    """Signed 32-bit multiplication with overflow wrap-around."""
    return to_int32((a & _UINT32_MASK) * (b & _UINT32_MASK))


def utf16_code_units(text: str) -> List[int]:
    """
    Split text into UTF-16 code units.

    The remote runtime hashes strings per UTF-16 code unit; both endpoints
    must agree on identifiers and ports for non-BMP input as well.
    """
    data = text.encode("utf-16-le")
    return [int.from_bytes(data[i:i + 2], "little") for i in range(0, len(data), 2)]


def fingerprint(content: str) -> str:
    """
    Cheap content signature: length plus a fixed-size prefix and suffix.

    Not a cryptographic hash. Two contents with equal length, equal first
    50 and equal last 50 characters share a fingerprint and are treated as
    "no observable change" for echo suppression.

    Args:
        content: File content

    Returns:
        Fingerprint string
    """
    n = FINGERPRINT_SAMPLE_CHARS
    return f"{len(content)}:{content[:n]}:{content[-n:]}"


def shorten_id(full_id: str, length: int = SHORT_ID_LENGTH) -> str:
    """
    Derive a fixed-length base58 identifier from a full project hash.

    Two 32-bit multiplicative accumulators are folded together and encoded
    least-significant digit first. An input that already has the target
    length is returned unchanged, so shortening is idempotent.

    Args:
        full_id: Full project hash (opaque string)
        length: Number of base58 symbols to produce

    Returns:
        Short identifier of exactly ``length`` characters
    """
    code_units = utf16_code_units(full_id)
    if len(code_units) == length:
        return full_id

    h1 = 0
    h2 = 0
    for code in code_units:
        h1 = _imul(h1 ^ code, 0x85EBCA6B)
        h2 = _imul(h2 ^ code, 0xC2B2AE35)

    # Fold the accumulators (unsigned shifts)
    h1 = to_int32(h1 ^ ((h2 & _UINT32_MASK) >> 16))
    h2 = to_int32(h2 ^ ((h1 & _UINT32_MASK) >> 13))

    symbols = []
    for n in (abs(h1), abs(h2)):
        while n > 0 and len(symbols) < length:
            symbols.append(BASE58_ALPHABET[n % 58])
            n //= 58

    while len(symbols) < length:
        symbols.append(BASE58_ALPHABET[0])

    return "".join(symbols[:length])


def hash_file_content(content: str) -> str:
    """SHA-256 hex digest of UTF-8 encoded content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def pluralize(count: int, singular: str, plural: Optional[str] = None) -> str:
    """
    Format a count with a singular or plural noun.

    Example:
        pluralize(1, "file") -> "1 file"
        pluralize(3, "file") -> "3 files"
    """
    word = singular if count == 1 else (plural or f"{singular}s")
    return f"{count} {word}"
