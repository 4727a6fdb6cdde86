"""Submission digests — fixed-size content references for delivered work.

A digest may stand for a bundle of files through an external
content-addressing scheme; the escrow only stores the fixed-size value.
"""

from __future__ import annotations

import hashlib
import json
from typing import Iterable, Union

from jobescrow.errors import InvalidParameter

DIGEST_SIZE = 32

DigestLike = Union[bytes, bytearray, str]


def parse_digest(value: DigestLike, size: int = DIGEST_SIZE) -> bytes:
    """Normalise a digest to exactly ``size`` raw bytes.

    Accepts raw bytes or a hex string with optional ``0x`` or ``sha256:``
    prefix. Anything else is an InvalidParameter.
    """
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str):
        text = value.strip()
        for prefix in ("sha256:", "0x"):
            if text.lower().startswith(prefix):
                text = text[len(prefix):]
                break
        try:
            raw = bytes.fromhex(text)
        except ValueError:
            raise InvalidParameter(f"Submission digest is not valid hex: {value!r}") from None
    else:
        raise InvalidParameter(
            f"Submission digest must be bytes or hex, got {type(value).__name__}"
        )
    if len(raw) != size:
        raise InvalidParameter(
            f"Submission digest must be {size} bytes, got {len(raw)}"
        )
    return raw


def content_digest(data: bytes) -> bytes:
    """SHA-256 of a single delivered artefact."""
    return hashlib.sha256(data).digest()


def bundle_digest(file_digests: Iterable[DigestLike]) -> bytes:
    """Digest for a multi-file delivery.

    Canonical form: sorted hex digests as a JSON array, UTF-8 encoded.
    The same set of files always produces the same bundle digest,
    regardless of listing order.
    """
    hexes = sorted(parse_digest(d).hex() for d in file_digests)
    canonical = json.dumps(hexes, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(canonical).digest()
