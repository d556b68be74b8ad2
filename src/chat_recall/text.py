"""
Text normalization and hashing shared by indexing and caching.
"""

from __future__ import annotations

import hashlib
import re

_NON_WORD_RE = re.compile(r"[^\w\s]+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace.

    ``\\w`` is unicode-aware, so CJK and accented letters survive.
    """
    cleaned = _NON_WORD_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", cleaned).strip().lower()


def content_hash(content: str) -> str:
    """Stable hash of the normalized content, used for change detection."""
    return hashlib.sha256(normalize_text(content).encode("utf-8")).hexdigest()


def query_hash(*parts: str) -> str:
    hasher = hashlib.blake2b(digest_size=20)
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    return hasher.hexdigest()
