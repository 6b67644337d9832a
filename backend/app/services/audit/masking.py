"""Irreversible masking of values before they reach the audit trail."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

MASK_PREFIX_CHARS = 8
MASK_MARKER = "…[redacted]"


@dataclass(frozen=True)
class MaskedValue:
    """Short visible prefix plus a keyed fingerprint of the full value."""

    masked: str
    fingerprint: str


def fingerprint(value: str, key: bytes) -> str:
    """HMAC-SHA256 hex digest of ``value``."""
    return hmac.new(key, value.encode("utf-8"), hashlib.sha256).hexdigest()


def mask_content(value: str, key: bytes) -> MaskedValue:
    """
    Mask ``value`` for audit storage.

    The output is deterministic for a given key and its length is bounded by
    the prefix and marker no matter how long the input is. An auditor holding
    a candidate plaintext and the key can prove (in)equality via the
    fingerprint without the audit store ever holding the content.
    """
    return MaskedValue(
        masked=value[:MASK_PREFIX_CHARS] + MASK_MARKER,
        fingerprint=fingerprint(value, key),
    )


def matches(candidate: str, stored_fingerprint: str, key: bytes) -> bool:
    """True when ``candidate`` is the value whose fingerprint was stored."""
    return hmac.compare_digest(fingerprint(candidate, key), stored_fingerprint)
