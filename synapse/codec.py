"""Reversible compression of large content blobs."""

from __future__ import annotations

import base64
import binascii
import zlib

from .errors import DecodeError


def compress(content: str) -> str:
    """Compress text into an ASCII token safe for a text column."""
    packed = zlib.compress(content.encode("utf-8"), level=9)
    return base64.b64encode(packed).decode("ascii")


def decompress(token: str) -> str:
    """Inverse of `compress`. Raises DecodeError on malformed tokens."""
    try:
        packed = base64.b64decode(token.encode("ascii"), validate=True)
        return zlib.decompress(packed).decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeError, ValueError) as exc:
        raise DecodeError("Compressed content is corrupt", {"error": str(exc)}) from exc
