"""Builders and fakes shared by the test modules."""

from __future__ import annotations

import datetime as dt
import json
from collections import deque
from zoneinfo import ZoneInfo

from main import Services
from modules.approval.registry import ApprovalRegistry
from modules.context.run_context import ContextStore
from modules.discovery.base import SearchQuery, SearchResult
from modules.execution.booking_executor import BookingExecutor
from modules.execution.browser import StubBrowser
from modules.observability.logger import StructuredLogger
from modules.observability.trace_bus import TraceBus
from modules.pipeline.orchestrator import PipelineOrchestrator
from schemas.event import Availability, Event, EventCategory, Location, PriceRange, RankedEvent, TimeSlot

SGT = ZoneInfo("Asia/Singapore")
PLAN_DATE = dt.date(2030, 3, 15)


def at(hhmm: str, day: dt.date = PLAN_DATE) -> dt.datetime:
    """Venue-local instant on the plan date."""
    return dt.datetime.combine(day, dt.time.fromisoformat(hhmm), tzinfo=SGT)


def make_event(
    event_id: str = "ev-1",
    name: str = "Jazz Night at Esplanade",
    *,
    start: str = "19:00",
    end: str = "22:00",
    category: EventCategory = EventCategory.CONCERT,
    price: tuple[float, float] | None = (25, 45),
    rating: float | None = 4.5,
    availability: Availability = Availability.AVAILABLE,
    source: str = "eventbrite",
    source_url: str | None = "https://www.eventbrite.sg/e/jazz-night",
    booking_required: bool = True,
    description: str = "Smooth jazz by the bay.",
    image_url: str | None = None,
    review_count: int = 0,
) -> Event:
    return Event(
        id=event_id,
        name=name,
        description=description,
        category=category,
        location=Location("Esplanade", "1 Esplanade Dr", 1.2899, 103.8556),
        time_slot=TimeSlot(at(start), at(end)),
        source=source,
        price=PriceRange(price[0], price[1], "SGD") if price is not None else None,
        rating=rating,
        availability=availability,
        booking_required=booking_required,
        source_url=source_url,
        image_url=image_url,
        review_count=review_count,
    )


def rank_of(event: Event, score: float = 0.8) -> RankedEvent:
    return RankedEvent(event=event, score=score, reasoning=f"Score {score:.2f}/1.00")


class ScriptedLLM:
    """Returns queued answers in call order; Exception entries are raised."""

    def __init__(self, *answers):
        self.answers = deque(answers)
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            return "[stub response]"
        answer = self.answers.popleft()
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeChannel:
    """Discovery channel serving a fixed event list."""

    def __init__(self, name: str, events: list[Event], mode: str = "live"):
        self.name = name
        self.events = events
        self.mode = mode
        self.queries: list[SearchQuery] = []

    def search(self, query: SearchQuery) -> SearchResult:
        self.queries.append(query)
        return SearchResult(self.name, list(self.events), mode=self.mode)


class BrokenChannel:
    name = "broken"

    def search(self, query: SearchQuery) -> SearchResult:
        raise RuntimeError("upstream exploded")


# ── Pipeline wiring ──────────────────────────────────────────────────────────

JAZZ = "Jazz Night at Esplanade"

NARRATIVE = json.dumps({
    "narrative": "Live jazz by the bay is the strongest match for a date night.",
    "topPickReasoning": [{"eventName": JAZZ, "why": "Romantic venue, fits the budget."}],
    "tradeoffs": ["Seating is unreserved"],
    "confidence": 0.8,
})


def plan_item(name, start, end, *, main=False, cost=0, category="other", duration=60,
              travel=None, **extra) -> dict:
    """One item of a planning answer, shaped like the LLM returns it."""
    item = {
        "name": name,
        "description": f"{name} description",
        "category": category,
        "isMainEvent": main,
        "startTime": start,
        "endTime": end,
        "durationMinutes": duration,
        "location": {"name": f"{name} venue", "address": "Somewhere 123"},
        "estimatedCostPerPerson": cost,
        "priceCategory": "moderate",
    }
    if travel is not None:
        item["travelFromPrevious"] = {"durationMinutes": travel, "mode": "mrt", "description": "Take the MRT"}
    item.update(extra)
    return item


PLAN = json.dumps({
    "itineraryName": "Jazz & Dinner",
    "items": [
        plan_item("Dinner at Lau Pa Sat", "17:30", "18:45", cost=15, category="dining", duration=75),
        plan_item(JAZZ, "19:00", "22:00", main=True, cost=45, category="concert", duration=180),
    ],
    "totalEstimatedCostPerPerson": 60,
    "budgetStatus": "within_budget",
    "overallVibe": "Relaxed evening",
})


def make_services(tmp_path, llm, channels=None, contexts=None, approvals=None,
                  **orchestrator_kwargs) -> Services:
    """In-memory services booking against the stub browser; traces land under tmp_path/logs."""
    bus = TraceBus()
    if approvals is None:
        approvals = ApprovalRegistry()
    if contexts is None:
        contexts = ContextStore(mirror=None)
    trace_log = StructuredLogger(tmp_path / "logs")
    if channels is None:
        channels = [FakeChannel("eventbrite", [make_event()])]
    orchestrator_kwargs.setdefault("booking_executor", BookingExecutor(
        browser_factory=StubBrowser, settle_s=0, screenshot_dir=str(tmp_path)))
    orchestrator = PipelineOrchestrator(
        bus=bus,
        approvals=approvals,
        contexts=contexts,
        channels=channels,
        llm=llm,
        trace_log=trace_log,
        venue_tz="Asia/Singapore",
        **orchestrator_kwargs,
    )
    return Services(bus, approvals, contexts, trace_log, orchestrator)
