"""
Filter list checksums (Adblock Plus scheme).

The checksum is the MD5 digest of the list text with carriage returns
removed, runs of newlines collapsed and the ``! Checksum:`` line itself
dropped, rendered as base64 without padding.
"""

from __future__ import annotations

import base64
import hashlib
import re

from ..errors import ChecksumMismatchError

_CHECKSUM_LINE_RE = re.compile(
    r"^\s*!\s*checksum[\s\-:]+([\w+/=]+).*(?:\n|$)", re.IGNORECASE | re.MULTILINE
)
_NEWLINES_RE = re.compile(r"\n+")


def _normalize(text: str) -> str:
    text = text.lstrip("\ufeff").replace("\r", "")
    text = _NEWLINES_RE.sub("\n", text)
    return _CHECKSUM_LINE_RE.sub("", text, count=1)


def declared_checksum(text: str) -> str | None:
    """Return the checksum embedded in the list header, if any."""
    match = _CHECKSUM_LINE_RE.search(text.replace("\r", ""))
    if match:
        return match.group(1).rstrip("=")
    return None


def compute_checksum(text: str) -> str:
    """Compute the checksum of filter list text."""
    digest = hashlib.md5(_normalize(text).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii").rstrip("=")


def add_checksum(text: str) -> str:
    """Insert a ``! Checksum:`` line after the header (for publishing lists)."""
    text = _CHECKSUM_LINE_RE.sub("", text.replace("\r", ""), count=1)
    header, sep, body = text.partition("\n")
    return f"{header}\n! Checksum: {compute_checksum(text)}\n{body}" if sep else text


def verify_checksum(text: str, expected: str | None = None) -> str:
    """Verify list text against its embedded or a published checksum.

    The embedded checksum takes precedence over ``expected``. Lists with
    neither are accepted.

    Returns:
        The computed checksum.

    Raises:
        ChecksumMismatchError: If the computed checksum differs.
    """
    actual = compute_checksum(text)
    declared = declared_checksum(text) or (expected.rstrip("=") if expected else None)
    if declared is not None and declared != actual:
        raise ChecksumMismatchError(declared, actual)
    return actual
