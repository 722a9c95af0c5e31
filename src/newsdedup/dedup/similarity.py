"""
Pure text-similarity scoring used by every deduplication engine.

Three independent, stateless functions:
- simple_similarity: token-set Jaccard over lightly normalized text
- detailed_similarity: mean of Jaccard and minimum coverage after a richer
  normalization with stop-word removal; favours teaser/full-article pairs
- edit_similarity: normalized Levenshtein similarity (source metadata)
"""

from __future__ import annotations

import re
from typing import FrozenSet, Optional, Set

from rapidfuzz.distance import Levenshtein

MIN_TOKEN_LENGTH = 3

# Short Russian function words that carry no topical signal.
STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "для",
        "как",
        "что",
        "это",
        "все",
        "она",
        "они",
        "его",
        "её",
        "их",
        "был",
        "была",
        "были",
        "при",
        "над",
        "под",
        "про",
        "без",
        "через",
    }
)

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_QUOTES = re.compile(r"[«»\"“”„']")
_DASHES = re.compile(r"[—–-]")
_PUNCTUATION = re.compile(r"[.,!?;:()]")


def _simple_normalize(text: str) -> str:
    text = _NON_WORD.sub("", text.lower().strip())
    return _WHITESPACE.sub(" ", text)


def _detailed_normalize(text: str) -> str:
    text = _QUOTES.sub("", text.lower())
    text = _DASHES.sub(" ", text)
    text = _PUNCTUATION.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def _tokens(text: str, stop_words: FrozenSet[str] = frozenset()) -> Set[str]:
    return {w for w in text.split(" ") if len(w) >= MIN_TOKEN_LENGTH and w not in stop_words}


def simple_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """Jaccard index of the >2-character token sets; 1.0 when equal after normalization."""
    if not text1 or not text2:
        return 0.0

    norm1 = _simple_normalize(text1)
    norm2 = _simple_normalize(text2)
    if norm1 == norm2:
        return 1.0

    set1 = _tokens(norm1)
    set2 = _tokens(norm2)
    if not set1 or not set2:
        return 0.0

    return len(set1 & set2) / len(set1 | set2)


def detailed_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """
    Average of Jaccard similarity and the minimum per-side coverage.

    Coverage is ``|intersection| / |set|`` for each side, so a short teaser
    fully contained in a long article still scores well.
    """
    if not text1 or not text2:
        return 0.0

    set1 = _tokens(_detailed_normalize(text1), STOP_WORDS)
    set2 = _tokens(_detailed_normalize(text2), STOP_WORDS)
    if not set1 or not set2:
        return 0.0

    common = len(set1 & set2)
    jaccard = common / len(set1 | set2)
    coverage = min(common / len(set1), common / len(set2))
    return (jaccard + coverage) / 2


def edit_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """``(maxLen - distance) / maxLen`` over lowercased, trimmed strings."""
    if text1 is None or text2 is None:
        return 0.0

    s1 = text1.lower().strip()
    s2 = text2.lower().strip()
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    max_length = max(len(s1), len(s2))
    distance = Levenshtein.distance(s1, s2)
    return (max_length - distance) / max_length
