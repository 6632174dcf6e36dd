"""
modules/recommendation/ranker.py
----------------------------------
Deterministic multi-factor event ranking.

Phase 1 — hard filters (evaluated in this order, first failure drops):
  hf1: availability == sold_out
  hf2: category ∈ excluded_categories
  hf3: price.min > 1.5 × budget_max      (only when both are known)

Phase 2 — soft scores, each in [0, 1], combined by fixed weights:
  budget fit      0.30
  category match  0.25
  rating          0.20
  availability    0.15
  weather         0.10

  final = clamp(Σ wᵢ·sᵢ + free_boost, 0, 1), rounded to 2 dp
  free_boost = 0.25 when prefer_free_events and price.max == 0

Output is sorted descending by final score. Python's sort is stable, so
equal scores keep their input order.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from schemas.event import Availability, Event, EventCategory, RankedEvent

logger = logging.getLogger(__name__)


_DEFAULT_WEIGHTS: dict[str, float] = {
    "budget":       0.30,
    "category":     0.25,
    "rating":       0.20,
    "availability": 0.15,
    "weather":      0.10,
}

FREE_EVENT_BOOST = 0.25
WAY_OVER_BUDGET_FACTOR = 1.5
BUDGET_SWEET_SPOT = 0.7

_AVAILABILITY_SCORES: dict[Availability, tuple[float, str]] = {
    Availability.AVAILABLE: (1.0, "Available"),
    Availability.LIMITED:   (0.8, "Limited availability"),
    Availability.UNKNOWN:   (0.5, "Availability unknown"),
    Availability.SOLD_OUT:  (0.0, "Sold out"),
}


@dataclass(frozen=True)
class SubScore:
    score: float
    detail: str


@dataclass
class FilterStats:
    total_input: int
    passed_filters: int
    final_count: int

    def to_dict(self) -> dict:
        return {
            "totalInput": self.total_input,
            "passedFilters": self.passed_filters,
            "finalCount": self.final_count,
        }


@dataclass
class RankingResult:
    ranked_events: list[RankedEvent] = field(default_factory=list)
    filter_stats: FilterStats = field(default_factory=lambda: FilterStats(0, 0, 0))


# ── Sub-scores ───────────────────────────────────────────────────────────────

def _money(v: float) -> str:
    return f"{v:g}"


def score_budget_fit(
    event: Event,
    budget_min: Optional[float] = None,
    budget_max: Optional[float] = None,
) -> SubScore:
    if event.price is None:
        return SubScore(0.5, "No price info — neutral score")

    lo, hi = event.price.min, event.price.max
    if hi == 0:
        return SubScore(1.0, "Free event")
    if budget_max is None:
        return SubScore(0.7, "No budget constraint set")

    span = f"${_money(lo)}-{_money(hi)}"
    if budget_max == 0:
        # Free-only budget and a paid event: the over-ratio is unbounded.
        if lo <= 0:
            return SubScore(0.1, f"{span} partially exceeds free-only budget")
        return SubScore(0.0, f"{span} exceeds free-only budget")

    if hi <= budget_max and (budget_min is None or lo >= budget_min):
        utilization = hi / budget_max
        sweet_spot = 1.0 - abs(utilization - BUDGET_SWEET_SPOT) * 0.5
        return SubScore(max(0.6, sweet_spot), f"{span} within ${_money(budget_max)} budget")

    if hi <= budget_max:
        # Cheaper than the stated minimum.
        return SubScore(0.6, f"{span} below ${_money(budget_min or 0)}-{_money(budget_max)} range")

    if lo <= budget_max:
        over_ratio = (hi - budget_max) / budget_max
        return SubScore(max(0.1, 0.6 - over_ratio),
                        f"{span} partially exceeds ${_money(budget_max)} budget")

    over_ratio = (lo - budget_max) / budget_max
    return SubScore(max(0.0, 0.3 - over_ratio), f"{span} exceeds ${_money(budget_max)} budget")


def score_category_match(
    event: Event,
    preferred: Iterable[EventCategory] = (),
    excluded: Iterable[EventCategory] = (),
) -> SubScore:
    cat = event.category
    preferred = set(preferred)
    if cat in set(excluded):
        return SubScore(0.0, f'Category "{cat.value}" is excluded')
    if not preferred:
        return SubScore(0.5, "No category preference — neutral score")
    if cat in preferred:
        return SubScore(1.0, f'Category "{cat.value}" matches preference')
    return SubScore(0.3, f'Category "{cat.value}" not in preferred list')


def score_rating(event: Event) -> SubScore:
    if event.rating is None:
        return SubScore(0.4, "No rating — below-average default")
    boost = 0.05 if event.review_count > 50 else 0.0
    reviews = f" ({event.review_count} reviews)" if event.review_count else ""
    return SubScore(min(1.0, event.rating / 5 + boost), f"{event.rating:g}/5 stars{reviews}")


def score_availability(event: Event) -> SubScore:
    score, detail = _AVAILABILITY_SCORES.get(event.availability, (0.5, "Availability unknown"))
    return SubScore(score, detail)


def score_weather(event: Event, outdoor_friendly: Optional[bool] = None) -> SubScore:
    if outdoor_friendly is None:
        return SubScore(0.5, "Weather data unavailable — neutral")
    outdoor = event.category is EventCategory.OUTDOOR
    if outdoor and not outdoor_friendly:
        return SubScore(0.1, "Outdoor event but weather is poor")
    if outdoor:
        return SubScore(1.0, "Outdoor event with good weather")
    return SubScore(0.6, "Indoor event, good weather outside" if outdoor_friendly
                    else "Indoor event, bad weather outside — good choice")


# ── Ranker ───────────────────────────────────────────────────────────────────

class EventRanker:
    """
    Hard-filter then score events against one user's constraints.

    Weights default to `_DEFAULT_WEIGHTS`; override via `weights`.
    """

    _LABELS = {
        "budget": "Budget",
        "category": "Category",
        "rating": "Rating",
        "availability": "Availability",
        "weather": "Weather",
    }

    def __init__(self, weights: dict[str, float] | None = None) -> None:
        self.weights = dict(weights or _DEFAULT_WEIGHTS)

    # ── Public ────────────────────────────────────────────────────────────────

    def rank(
        self,
        events: list[Event],
        budget_min: Optional[float] = None,
        budget_max: Optional[float] = None,
        preferred_categories: Iterable[EventCategory] = (),
        excluded_categories: Iterable[EventCategory] = (),
        outdoor_friendly: Optional[bool] = None,
        prefer_free_events: bool = False,
    ) -> RankingResult:
        preferred = tuple(preferred_categories)
        excluded = tuple(excluded_categories)

        survivors = [e for e in events if self._passes_hard_filters(e, excluded, budget_max)]
        logger.info("[rank] passed hard filters: %d/%d", len(survivors), len(events))

        scored = [
            self._score_one(e, budget_min, budget_max, preferred, excluded,
                            outdoor_friendly, prefer_free_events)
            for e in survivors
        ]
        scored.sort(key=lambda r: r.score, reverse=True)

        for i, r in enumerate(scored[:5], start=1):
            logger.debug("[rank] %d. %s — score %s", i, r.event.name, r.score)

        return RankingResult(
            ranked_events=scored,
            filter_stats=FilterStats(len(events), len(survivors), len(scored)),
        )

    # ── Internal ──────────────────────────────────────────────────────────────

    @staticmethod
    def _passes_hard_filters(
        event: Event,
        excluded: tuple[EventCategory, ...],
        budget_max: Optional[float],
    ) -> bool:
        if event.availability is Availability.SOLD_OUT:
            logger.debug("[rank] filtered (sold out): %s", event.name)
            return False
        if event.category in excluded:
            logger.debug("[rank] filtered (excluded category %s): %s", event.category.value, event.name)
            return False
        if (
            budget_max is not None
            and event.price is not None
            and event.price.min > budget_max * WAY_OVER_BUDGET_FACTOR
        ):
            logger.debug("[rank] filtered (way over budget $%s > $%s): %s",
                         event.price.min, budget_max * WAY_OVER_BUDGET_FACTOR, event.name)
            return False
        return True

    def _score_one(
        self,
        event: Event,
        budget_min: Optional[float],
        budget_max: Optional[float],
        preferred: tuple[EventCategory, ...],
        excluded: tuple[EventCategory, ...],
        outdoor_friendly: Optional[bool],
        prefer_free_events: bool,
    ) -> RankedEvent:
        subs: dict[str, SubScore] = {
            "budget":       score_budget_fit(event, budget_min, budget_max),
            "category":     score_category_match(event, preferred, excluded),
            "rating":       score_rating(event),
            "availability": score_availability(event),
            "weather":      score_weather(event, outdoor_friendly),
        }
        combined = sum(self.weights[k] * s.score for k, s in subs.items())

        free_boost = (
            FREE_EVENT_BOOST
            if prefer_free_events and event.price is not None and event.price.max == 0
            else 0.0
        )
        score = round(min(1.0, max(0.0, combined + free_boost)), 2)

        parts = [
            f"{self._LABELS[k]}: {s.detail} ({s.score * 100:.0f}%, "
            f"weighted {s.score * self.weights[k] * 100:.0f}%)"
            for k, s in subs.items()
        ]
        if free_boost:
            parts.append(f"Free event boost: +{free_boost * 100:.0f}%")
        reasoning = f"Score {score:.2f}/1.00 — " + "; ".join(parts)
        return RankedEvent(event=event, score=score, reasoning=reasoning)
