"""
modules/recommendation/deduplicator.py
----------------------------------------
Merge near-duplicate events reported by different discovery channels.

Two records are duplicates when EITHER
  (a) their source URLs are equal after normalisation (query string and
      trailing slashes dropped, lowercased), OR
  (b) their normalised names have LCS similarity ≥ 0.75 AND their time
      slots overlap (half-open).

Of a duplicate pair the record with the higher data score survives:
  price +2 · rating +2 · image +1 · reviews > 0 +1 · description > 50 chars +1
Ties keep the earlier record. O(n²) pairwise; n is tens per run.
"""

from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field

from schemas.event import Event

logger = logging.getLogger(__name__)

NAME_SIMILARITY_THRESHOLD = 0.75

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WS = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    return _WS.sub(" ", _NON_ALNUM.sub("", name.lower())).strip()


def name_similarity(a: str, b: str) -> float:
    """Longest-common-subsequence length over the longer length."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    prev = [0] * (len(b) + 1)
    for ca in a:
        curr = [0] * (len(b) + 1)
        for j, cb in enumerate(b, start=1):
            curr[j] = prev[j - 1] + 1 if ca == cb else max(prev[j], curr[j - 1])
        prev = curr
    return prev[-1] / max(len(a), len(b))


def normalize_url(url: str) -> str:
    return url.split("?")[0].rstrip("/").lower()


def same_url(a: Event, b: Event) -> bool:
    if not a.source_url or not b.source_url:
        return False
    return normalize_url(a.source_url) == normalize_url(b.source_url)


def data_score(e: Event) -> int:
    score = 0
    if e.price is not None:
        score += 2
    if e.rating is not None:
        score += 2
    if e.image_url:
        score += 1
    if e.review_count and e.review_count > 0:
        score += 1
    if len(e.description) > 50:
        score += 1
    return score


def is_duplicate(a: Event, b: Event) -> bool:
    if same_url(a, b):
        return True
    sim = name_similarity(normalize_name(a.name), normalize_name(b.name))
    return sim >= NAME_SIMILARITY_THRESHOLD and a.time_slot.overlaps(b.time_slot)


@dataclass
class DedupResult:
    events: list[Event] = field(default_factory=list)
    original_count: int = 0
    deduplicated_count: int = 0
    removed_count: int = 0


class EventDeduplicator:

    def deduplicate(self, events: list[Event]) -> DedupResult:
        original = len(events)
        if original <= 1:
            return DedupResult(list(events), original, original, 0)

        merged: set[int] = set()
        kept: list[Event] = []
        for i, first in enumerate(events):
            if i in merged:
                continue
            best = first
            for j in range(i + 1, original):
                if j in merged:
                    continue
                candidate = events[j]
                if not is_duplicate(best, candidate):
                    continue
                logger.debug("[dedup] %r (%s) ≈ %r (%s)",
                             candidate.name, candidate.source, best.name, best.source)
                merged.add(j)
                if data_score(candidate) > data_score(best):
                    best = candidate
            kept.append(best)

        removed = original - len(kept)
        logger.info("[dedup] %d → %d (%d duplicates removed)", original, len(kept), removed)
        return DedupResult(kept, original, len(kept), removed)
