"""Rule-based keyword extraction used to bootstrap system-generated memories."""

from __future__ import annotations

import re
from collections import Counter
from typing import List

MAX_KEYWORDS = 10

STOPWORDS = frozenset(
    {
        "the", "and", "are", "was", "were", "been", "have", "has", "had", "does",
        "did", "this", "that", "these", "those", "its", "they", "them", "but",
        "when", "where", "what", "who", "why", "how", "for", "with", "you", "your",
        "not", "from", "then", "than", "there", "their", "will", "would", "could",
        "should", "into", "about", "user", "users", "img",
    }
)

_PUNCTUATION = re.compile(r"[^\w\s]+")


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Return up to ``limit`` distinct tokens of ``text``, most frequent first.

    Ties keep the order in which the tokens first appear.
    """

    tokens = _PUNCTUATION.sub(" ", text or "").lower().split()
    counts: Counter = Counter()
    for token in tokens:
        if len(token) <= 2 or token.isdigit() or token in STOPWORDS:
            continue
        counts[token] += 1
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [token for token, _ in ranked[:limit]]


def matches_keywords(keywords: List[str], text: str) -> bool:
    """Case-insensitive substring match of any keyword against ``text``."""

    haystack = (text or "").lower()
    return any(keyword and keyword.lower() in haystack for keyword in keywords)


__all__ = ["MAX_KEYWORDS", "STOPWORDS", "extract_keywords", "matches_keywords"]
