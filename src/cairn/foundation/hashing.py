"""Content hashing utilities.

Effective versions and build keys are truncated SHA-256 digests over
NUL-separated parts. 20 hex characters (80 bits) keeps collisions out of
reach for any realistic workspace while staying readable in directory names.
"""

import hashlib
from collections.abc import Iterable

DEFAULT_HASH_LENGTH = 20


def hash_strings(parts: Iterable[str], length: int = DEFAULT_HASH_LENGTH) -> str:
    """Hash an ordered sequence of strings.

    Each part is followed by a NUL byte so ("ab", "c") and ("a", "bc")
    produce different digests.

    Args:
        parts: Strings to hash, in order.
        length: Number of hex characters to keep.

    Returns:
        Truncated hex digest.

    Example:
        >>> hash_strings(["tree", "dep"]) == hash_strings(["tree", "dep"])
        True
    """
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\0")
    return hasher.hexdigest()[:length]
