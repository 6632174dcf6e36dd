"""
modules/discovery/base.py
---------------------------
Shared types for discovery channels.

A channel turns a SearchQuery into a SearchResult. Channels never raise
for upstream trouble: they fall back to demo data and set `mode="demo"`
(plus `error` when a live call failed). The orchestrator still guards
each call, since a channel bug must not abort the other channel.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Literal, Optional, Protocol

from schemas.event import Availability, Event, EventCategory


@dataclass(frozen=True)
class SearchQuery:
    date: date
    date_end: Optional[date] = None
    categories: tuple[EventCategory, ...] = ()
    budget_max: Optional[float] = None
    areas: tuple[str, ...] = ()
    max_results: int = 20

    @property
    def range_end(self) -> date:
        """Inclusive end of the search window; three days out by default."""
        return self.date_end or self.date + timedelta(days=3)


@dataclass
class SearchResult:
    source: str
    events: list[Event] = field(default_factory=list)
    mode: Literal["live", "demo"] = "live"
    duration_ms: int = 0
    error: Optional[str] = None


class DiscoveryChannel(Protocol):
    name: str

    def search(self, query: SearchQuery) -> SearchResult: ...


def post_filter(events: list[Event], query: SearchQuery) -> list[Event]:
    """
    Filters every channel applies to its own output:
    sold-out events out, price.min within budget, requested categories only.
    """
    kept = [e for e in events if e.availability is not Availability.SOLD_OUT]
    if query.budget_max is not None:
        kept = [e for e in kept if e.price is None or e.price.min <= query.budget_max]
    if query.categories:
        wanted = set(query.categories)
        kept = [e for e in kept if e.category in wanted]
    return kept[: query.max_results]
