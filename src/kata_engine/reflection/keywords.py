"""Keyword extraction shared by the prediction matcher and friction analyzer."""

from __future__ import annotations

import re

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "will", "it", "this",
        "that", "of", "in", "to", "for", "with", "by",
    }
)

_NON_WORD = re.compile(r"[^a-z0-9]")


def extract_keywords(text: str) -> list[str]:
    """Lower-cased words stripped of punctuation, minus stop words."""
    words = (_NON_WORD.sub("", word) for word in text.lower().split())
    return [word for word in words if word and word not in STOP_WORDS]


def keyword_overlap_ratio(source: str, target: str) -> float:
    """Fraction of *source* keywords that occur anywhere in *target*."""
    keywords = extract_keywords(source)
    if not keywords:
        return 0.0
    haystack = target.lower()
    return sum(1 for keyword in keywords if keyword in haystack) / len(keywords)
