"""
Content fingerprinting for exact duplicate lookups.

Text is normalized (lowercase, punctuation stripped, whitespace collapsed)
and digested with SHA-256. Near-empty texts are never hashed by content:
they receive a digest of a fresh unique placeholder so that two empty or
boilerplate articles can never collide on an exact-match lookup.
"""

from __future__ import annotations

import hashlib
import re
import uuid
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MIN_LENGTH = 10

_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_for_hash(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    normalized = _PUNCTUATION_PATTERN.sub("", text.lower())
    return _WHITESPACE_PATTERN.sub(" ", normalized).strip()


def _placeholder_digest(kind: str) -> str:
    token = f"{kind}_CONTENT_{uuid.uuid4().hex}"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class ContentHasher:
    """
    Deterministic SHA-256 fingerprinting of title/content text.

    Args:
        min_length: Floor below which text is considered too short to
            fingerprint; such texts get a unique placeholder digest.
    """

    def __init__(self, min_length: int = DEFAULT_MIN_LENGTH) -> None:
        self.min_length = min_length
        self._hashed_count = 0
        self._placeholder_count = 0

    def hash(self, text: Optional[str]) -> str:
        """
        Fingerprint text for exact-match lookups.

        Returns:
            64-character hexadecimal SHA-256 digest
        """
        if not text or len(text.strip()) < self.min_length:
            self._placeholder_count += 1
            return _placeholder_digest("EMPTY")

        normalized = normalize_for_hash(text)
        if len(normalized) < self.min_length:
            self._placeholder_count += 1
            return _placeholder_digest("SHORT")

        self._hashed_count += 1
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    def content_hash(self, title: str, content: str) -> str:
        """Fingerprint of title and content together."""
        return self.hash(f"{title} {content}")

    def title_hash(self, title: str) -> str:
        return self.hash(title)

    def get_stats(self) -> dict:
        total = self._hashed_count + self._placeholder_count
        return {
            "hashed_count": self._hashed_count,
            "placeholder_count": self._placeholder_count,
            "placeholder_rate": self._placeholder_count / max(1, total),
            "min_length": self.min_length,
        }


def calculate_content_hash(text: str, min_length: int = DEFAULT_MIN_LENGTH) -> str:
    """
    Convenience function for one-off fingerprinting.

    Args:
        text: Text to fingerprint
        min_length: Normalized length floor

    Returns:
        Hexadecimal SHA-256 hash
    """
    return ContentHasher(min_length).hash(text)
