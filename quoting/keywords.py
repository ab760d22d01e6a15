"""Keyword matching shared by the scoring and risk heuristics."""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache


@lru_cache(maxsize=None)
def keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Short alphanumeric tokens match whole words or their plural ("eu" must not hit
    # "queue", "nft" must hit "nfts").
    if len(keyword) <= 4 and keyword.isalnum():
        return re.compile(rf"\b{re.escape(keyword)}s?\b")
    return re.compile(re.escape(keyword))


def matches_any(text: str, keywords: Iterable[str]) -> bool:
    """True if any keyword occurs in the already lower-cased ``text``."""
    return any(keyword_pattern(kw).search(text) for kw in keywords)


def matched(text: str, keywords: Iterable[str]) -> list[str]:
    return [kw for kw in keywords if keyword_pattern(kw).search(text)]
