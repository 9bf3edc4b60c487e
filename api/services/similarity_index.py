"""
Fuzzy similarity index over normalized strings.

Thin wrapper around rapidfuzz so callers only deal with a distance in
[0, 1] (0 = identical) and an acceptance threshold. Only relative ranking
and the confidence caps applied by callers matter, not the exact scorer.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from rapidfuzz import fuzz, process

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SimilarityMatch(Generic[T]):
    """A single search hit."""
    item: T
    score: float  # similarity, 1.0 = identical
    distance: float  # 1 - score

    @property
    def similarity(self) -> float:
        return self.score


# WRatio switches to partial matching once one string is this many times
# longer than the other
PARTIAL_LENGTH_RATIO = 1.5


def name_ratio(s1: str, s2: str, *, score_cutoff: Optional[float] = None, **kwargs) -> float:
    """
    WRatio that only credits whole-word containment.

    WRatio scores "meta" about 90 inside "metadata review" because it
    matches substrings. When the lengths differ that much the score is
    capped by token_set_ratio, which only rewards shared words, so "acme"
    still scores high inside "acme quarterly review".
    """
    score = fuzz.WRatio(s1, s2)
    shorter, longer = sorted((len(s1), len(s2)))
    if shorter and longer / shorter >= PARTIAL_LENGTH_RATIO:
        score = min(score, fuzz.token_set_ratio(s1, s2))
    if score_cutoff is not None and score < score_cutoff:
        return 0.0
    return score


class SimilarityIndex(Generic[T]):
    """
    In-memory fuzzy index.

    Usage:
        index = SimilarityIndex(threshold=0.3)
        index.index(accounts, key=lambda a: a.normalized_name)
        matches = index.search("acme")
    """

    def __init__(self, threshold: float = 0.3, scorer: Callable[..., float] = name_ratio):
        """
        Args:
            threshold: Maximum accepted distance (0 = exact only, 1 = anything)
            scorer: rapidfuzz scorer returning 0-100
        """
        self.threshold = threshold
        self.scorer = scorer
        self._items: list[T] = []
        self._keys: list[str] = []

    def index(self, items: list[T], key: Optional[Callable[[T], str]] = None) -> "SimilarityIndex[T]":
        """Replace the indexed items. Items whose key is empty are ignored."""
        self._items = []
        self._keys = []
        for item in items:
            value = key(item) if key else str(item)
            if not value:
                continue
            self._items.append(item)
            self._keys.append(value)
        return self

    def __len__(self) -> int:
        return len(self._items)

    def search(self, query: str, limit: Optional[int] = None) -> list[SimilarityMatch[T]]:
        """
        Return indexed items within the threshold, best first.

        Ties keep indexing order.
        """
        if not query or not self._keys:
            return []

        cutoff = (1.0 - self.threshold) * 100.0
        hits = process.extract(
            query,
            self._keys,
            scorer=self.scorer,
            score_cutoff=cutoff,
            limit=None,
        )

        matches = []
        for _key, raw_score, idx in sorted(hits, key=lambda h: (-h[1], h[2])):
            score = round(raw_score / 100.0, 4)
            matches.append(SimilarityMatch(
                item=self._items[idx],
                score=score,
                distance=round(1.0 - score, 4),
            ))

        if limit is not None:
            matches = matches[:limit]
        return matches

    def best(self, query: str) -> Optional[SimilarityMatch[T]]:
        """Return the single best match, or None."""
        matches = self.search(query, limit=1)
        return matches[0] if matches else None


def build_index(items: list[Any], key: Callable[[Any], str], threshold: float) -> SimilarityIndex:
    """Convenience constructor used by the resolver, review queue and merge engine."""
    index = SimilarityIndex(threshold=threshold)
    index.index(items, key=key)
    logger.debug(f"Built similarity index over {len(index)} items (threshold={threshold})")
    return index
