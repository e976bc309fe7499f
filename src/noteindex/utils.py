"""Utility functions for the note index."""
import hashlib


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw file bytes.

    Change detection compares these digests, never modification times.
    """
    return hashlib.sha256(data).hexdigest()


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Use together with ``ESCAPE '\\'`` in the LIKE clause.

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)
