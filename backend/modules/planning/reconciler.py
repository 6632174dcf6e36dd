"""
modules/planning/reconciler.py
--------------------------------
Turn an untrusted generative plan into a validated Itinerary.

Passes, in order:
  1. schema validation       — failure → one-item fallback from the top ranked event
  2. item cap                — keep every main item, fill with non-main in order
  3. fuzzy match             — main items only: exact → normalised → substring → word overlap
  4. time authority          — matched main items take the real event's time slot
  5. sequencing checks       — overlap / tight transition / excessive gap (warnings)
  6. end-of-day cutoff       — non-main items past the cutoff are dropped
  7. span check              — first start → last end over the limit (warning)
  8. budget check            — >20 % over → overrun, any over → slightly over

Nothing here raises for bad plan content; every problem becomes a warning
string returned alongside the itinerary.

Plan times are HH:MM in venue-local time (config.VENUE_TIMEZONE).
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any, Optional
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

from pydantic import ValidationError

import config
from modules.planning.plan_schema import GenerativePlan, PlanItem
from modules.recommendation.deduplicator import normalize_name
from schemas.event import Availability, Event, Location, PriceRange, RankedEvent, TimeSlot
from schemas.itinerary import (
    BudgetStatus, Itinerary, ItineraryItem, PlanMetadata, TravelMode,
)

logger = logging.getLogger(__name__)

WORD_OVERLAP_THRESHOLD = 0.6
TIGHT_TRANSITION_MINUTES = 5
BUDGET_OVERRUN_FACTOR = 1.2

_TRAVEL_MODES: dict[str, Optional[TravelMode]] = {
    "walk": TravelMode.WALK,
    "mrt":  TravelMode.PUBLIC_TRANSPORT,
    "bus":  TravelMode.PUBLIC_TRANSPORT,
    "taxi": TravelMode.TAXI,
    "none": None,
}


@dataclass
class ReconcileResult:
    itinerary: Itinerary
    metadata: PlanMetadata
    warnings: list[str] = field(default_factory=list)
    used_fallback: bool = False


@dataclass
class _Resolved:
    """One plan item after matching and time resolution, before checks."""
    plan_item: PlanItem
    match: Optional[RankedEvent]
    rank: Optional[int]
    start: datetime
    end: datetime


# ── Helpers ──────────────────────────────────────────────────────────────────

def _hhmm(dt: datetime) -> str:
    return dt.strftime("%H:%M")


def _money(v: float) -> str:
    return f"{int(v)}" if float(v).is_integer() else f"{v:.2f}"


def _split_words(norm: str) -> set[str]:
    return {w for w in norm.split(" ") if len(w) > 2}


def fuzzy_match_event(name: str, ranked: list[RankedEvent]) -> Optional[RankedEvent]:
    """Resolve a generated name to a ranked event, or None.

    Tries exact (case-insensitive), normalised exact, substring either way,
    then word overlap ≥ 60 % among words longer than 2 chars. In the last
    pass the candidate with the most shared words wins.
    """
    key = name.lower().strip()
    by_name: dict[str, RankedEvent] = {}
    for r in ranked:
        by_name.setdefault(r.event.name.lower().strip(), r)

    if key in by_name:
        return by_name[key]

    target = normalize_name(name)
    for k, r in by_name.items():
        if normalize_name(k) == target:
            return r

    for k, r in by_name.items():
        kn = normalize_name(k)
        if kn and target and (kn in target or target in kn):
            return r

    words = _split_words(target)
    best: Optional[RankedEvent] = None
    best_overlap = 0
    for k, r in by_name.items():
        kw = _split_words(normalize_name(k))
        overlap = len(words & kw)
        ratio = overlap / max(len(words), len(kw), 1)
        if ratio >= WORD_OVERLAP_THRESHOLD and overlap > best_overlap:
            best, best_overlap = r, overlap
    return best


# ── Reconciler ───────────────────────────────────────────────────────────────

class ItineraryReconciler:
    """Validate a generative plan against ranked ground-truth events."""

    def __init__(
        self,
        max_items: int = config.MAX_ITINERARY_ITEMS,
        day_cutoff: str = config.DAY_CUTOFF,
        max_gap_minutes: int = config.MAX_GAP_MINUTES,
        max_span_hours: float = config.MAX_PLAN_SPAN_HOURS,
        venue_tz: tzinfo | str = config.VENUE_TIMEZONE,
        currency: str = config.DEFAULT_CURRENCY,
        city: str = config.VENUE_CITY,
        default_coords: tuple[float, float] = (config.DEFAULT_LAT, config.DEFAULT_LNG),
    ) -> None:
        self.max_items = max_items
        self.cutoff = time.fromisoformat(day_cutoff)
        self.max_gap_minutes = max_gap_minutes
        self.max_span_hours = max_span_hours
        self.tz = ZoneInfo(venue_tz) if isinstance(venue_tz, str) else venue_tz
        self.currency = currency
        self.city = city
        self.default_coords = default_coords

    # ── Public ────────────────────────────────────────────────────────────────

    def reconcile(
        self,
        raw_plan: Any,
        ranked: list[RankedEvent],
        plan_date: date,
        budget_max: Optional[float] = None,
        party_size: int = 1,
    ) -> ReconcileResult:
        try:
            plan = GenerativePlan.model_validate(raw_plan)
        except ValidationError as exc:
            logger.warning("[reconcile] plan validation failed: %d error(s)", exc.error_count())
            return self._fallback(ranked, plan_date)

        logger.info("[reconcile] plan %r with %d item(s)", plan.itinerary_name, len(plan.items))
        warnings: list[str] = []

        items = self._cap_items(plan.items, warnings)
        resolved = [self._resolve(i, it, ranked, plan_date, warnings) for i, it in enumerate(items)]
        resolved.sort(key=lambda r: r.start)

        kept = self._sequence_and_cut(resolved, warnings)
        itinerary_items: list[ItineraryItem] = []
        cost_pp = 0.0
        duration = 0
        for idx, r in enumerate(kept):
            itinerary_items.append(self._to_item(idx, r))
            travel = r.plan_item.travel_from_previous
            cost_pp += r.plan_item.estimated_cost_per_person
            duration += int(r.plan_item.duration_minutes + (travel.duration_minutes if travel else 0))

        self._check_span(itinerary_items, warnings)
        budget_status = self._check_budget(cost_pp, budget_max, warnings)
        if budget_status is BudgetStatus.WITHIN_BUDGET:
            budget_status = BudgetStatus(plan.budget_status)

        main_count = sum(1 for it in itinerary_items if it.event.source != "planned")
        itinerary = Itinerary(
            id=f"itinerary-{uuid.uuid4().hex[:12]}",
            name=plan.itinerary_name,
            date=self._day_start(plan_date).isoformat(),
            items=itinerary_items,
            total_cost=cost_pp * party_size,
            total_duration=duration,
        )
        metadata = PlanMetadata(
            itinerary_name=plan.itinerary_name,
            budget_status=budget_status,
            budget_notes=plan.budget_notes or "",
            overall_vibe=plan.overall_vibe or "",
            practical_tips=list(plan.practical_tips or []),
            weather_consideration=plan.weather_consideration or "",
            total_estimated_cost_per_person=cost_pp,
            item_count=len(itinerary_items),
            main_event_count=main_count,
            generated_count=len(itinerary_items) - main_count,
        )
        logger.info("[reconcile] built %r: %d item(s) (%d main), $%s total, %d min, %d warning(s)",
                    itinerary.name, len(itinerary_items), main_count,
                    _money(itinerary.total_cost), duration, len(warnings))
        return ReconcileResult(itinerary, metadata, warnings)

    # ── Passes ────────────────────────────────────────────────────────────────

    def _cap_items(self, items: list[PlanItem], warnings: list[str]) -> list[PlanItem]:
        if len(items) <= self.max_items:
            return list(items)
        warnings.append(
            f"Item cap: LLM generated {len(items)} items but max is {self.max_items}. "
            f"Keeping main events and trimming complementary activities."
        )
        main = [i for i in items if i.is_main_event]
        extra = [i for i in items if not i.is_main_event]
        kept = main + extra[: max(0, self.max_items - len(main))]
        kept.sort(key=lambda i: time.fromisoformat(i.start_time.zfill(5)))
        return kept

    def _resolve(
        self,
        index: int,
        item: PlanItem,
        ranked: list[RankedEvent],
        plan_date: date,
        warnings: list[str],
    ) -> _Resolved:
        start = self._local(plan_date, item.start_time)
        end = self._local(plan_date, item.end_time)
        if end < start:
            end += timedelta(days=1)

        match = fuzzy_match_event(item.name, ranked) if item.is_main_event else None
        rank = None
        if item.is_main_event and match is None:
            warnings.append(
                f'Unmatched main event: "{item.name}" could not be matched to discovered events. '
                f"Times may be inaccurate."
            )
        elif match is not None:
            rank = ranked.index(match) + 1
            real_start = match.event.time_slot.start.astimezone(self.tz)
            real_end = match.event.time_slot.end.astimezone(self.tz)
            if item.start_time.zfill(5) != _hhmm(real_start) or item.end_time.zfill(5) != _hhmm(real_end):
                warnings.append(
                    f'Time correction: LLM scheduled "{item.name}" at {item.start_time}–{item.end_time} '
                    f"but the real event runs {_hhmm(real_start)}–{_hhmm(real_end)}. Using real event times."
                )
            start, end = real_start, real_end
            logger.debug("[reconcile] matched %r → %r", item.name, match.event.name)
        return _Resolved(item, match, rank, start, end)

    def _sequence_and_cut(self, resolved: list[_Resolved], warnings: list[str]) -> list[_Resolved]:
        kept: list[_Resolved] = []
        cutoff_label = self.cutoff.strftime("%H:%M")
        for r in resolved:
            item = r.plan_item
            if kept:
                prev = kept[-1]
                gap = int((r.start - prev.end).total_seconds() // 60)
                travel = item.travel_from_previous.duration_minutes if item.travel_from_previous else 0
                if gap < 0:
                    warnings.append(
                        f'Time overlap: "{prev.plan_item.name}" ends at {_hhmm(prev.end)} '
                        f'but "{item.name}" starts at {_hhmm(r.start)}'
                    )
                elif gap < TIGHT_TRANSITION_MINUTES and travel > 0:
                    warnings.append(
                        f'Tight transition: only {gap}min between "{prev.plan_item.name}" and '
                        f'"{item.name}" ({travel:g}min travel needed)'
                    )
                elif gap > self.max_gap_minutes:
                    warnings.append(
                        f'Excessive gap: {gap}min idle time between "{prev.plan_item.name}" '
                        f'(ends {_hhmm(prev.end)}) and "{item.name}" (starts {_hhmm(r.start)}). '
                        f"Max recommended: {self.max_gap_minutes}min"
                    )

            cutoff = datetime.combine(r.start.date(), self.cutoff, tzinfo=self.tz)
            if r.end > cutoff:
                if not item.is_main_event:
                    warnings.append(
                        f'Dropped "{item.name}" — ends at {_hhmm(r.end)} '
                        f"which is past the {cutoff_label} cutoff"
                    )
                    continue
                warnings.append(
                    f'Main event "{item.name}" ends at {_hhmm(r.end)} which is past {cutoff_label} '
                    f"— included because it's the main event"
                )
            kept.append(r)
        return kept

    def _check_span(self, items: list[ItineraryItem], warnings: list[str]) -> None:
        if len(items) < 2:
            return
        span_h = (items[-1].scheduled_time.end - items[0].scheduled_time.start).total_seconds() / 3600
        if span_h > self.max_span_hours:
            warnings.append(
                f"Plan span too long: {span_h:.1f} hours from first activity to last "
                f"(max recommended: {self.max_span_hours:g}h)"
            )

    @staticmethod
    def _check_budget(cost_pp: float, budget_max: Optional[float], warnings: list[str]) -> BudgetStatus:
        if budget_max is None:
            return BudgetStatus.WITHIN_BUDGET
        if cost_pp > budget_max * BUDGET_OVERRUN_FACTOR:
            warnings.append(
                f"Budget overrun: estimated ${_money(cost_pp)}/person exceeds ${_money(budget_max)} "
                f"budget by ${_money(cost_pp - budget_max)}"
            )
            return BudgetStatus.OVER_BUDGET
        if cost_pp > budget_max:
            warnings.append(
                f"Slightly over budget: estimated ${_money(cost_pp)}/person vs ${_money(budget_max)} budget"
            )
            return BudgetStatus.SLIGHTLY_OVER
        return BudgetStatus.WITHIN_BUDGET

    # ── Builders ──────────────────────────────────────────────────────────────

    def _to_item(self, idx: int, r: _Resolved) -> ItineraryItem:
        item = r.plan_item
        slot = TimeSlot(r.start, r.end)
        event = r.match.event if r.match is not None else self._generated_event(idx, item, slot)

        travel = item.travel_from_previous
        travel_minutes = int(travel.duration_minutes) if travel else 0
        notes: list[str] = []
        if item.vibe_notes:
            notes.append(item.vibe_notes)
        if travel and travel.description:
            notes.append(f"Getting there: {travel.description}")
        notes.append(f"Price tier: {item.price_category}")
        if r.match is not None:
            notes.append(f"Ranked #{r.rank} (score: {r.match.score})")

        return ItineraryItem(
            id=f"item-{idx}-{uuid.uuid4().hex[:8]}",
            event=event,
            scheduled_time=slot,
            travel_time_from_previous=travel_minutes or None,
            travel_mode=_TRAVEL_MODES.get(travel.mode) if travel else None,
            notes=" | ".join(notes),
        )

    def _generated_event(self, idx: int, item: PlanItem, slot: TimeSlot) -> Event:
        lat, lng = self.default_coords
        cost = item.estimated_cost_per_person
        return Event(
            id=f"generated-{idx}-{uuid.uuid4().hex[:8]}",
            name=item.name,
            description=item.description,
            category=item.category,
            location=Location(item.location.name, item.location.address, lat, lng),
            time_slot=slot,
            source="discovered" if item.is_main_event else "planned",
            price=PriceRange(cost, cost, self.currency),
            availability=Availability.UNKNOWN,
            booking_required=item.booking_required,
            source_url=item.source_url
            or f"https://www.google.com/search?q={quote_plus(f'{item.name} {self.city}')}",
        )

    def _fallback(self, ranked: list[RankedEvent], plan_date: date) -> ReconcileResult:
        items = [
            ItineraryItem(
                id=f"item-fallback-{i}-{uuid.uuid4().hex[:8]}",
                event=r.event,
                scheduled_time=r.event.time_slot,
                notes=f"Ranked #{i + 1} — {r.reasoning}",
            )
            for i, r in enumerate(ranked[:1])
        ]
        itinerary = Itinerary(
            id=f"itinerary-{uuid.uuid4().hex[:12]}",
            name="Your Plan (simplified)",
            date=self._day_start(plan_date).isoformat(),
            items=items,
            total_cost=sum(r.event.price.max for r in ranked[:1] if r.event.price),
            total_duration=0,
        )
        metadata = PlanMetadata(
            itinerary_name="Simplified Plan",
            budget_status=BudgetStatus.WITHIN_BUDGET,
            budget_notes="LLM plan validation failed — showing ranked events only",
            total_estimated_cost_per_person=0.0,
            item_count=len(items),
            main_event_count=len(items),
            generated_count=0,
        )
        return ReconcileResult(
            itinerary,
            metadata,
            ["LLM plan validation failed — showing top ranked events as fallback"],
            used_fallback=True,
        )

    def _local(self, d: date, hhmm: str) -> datetime:
        return datetime.combine(d, time.fromisoformat(hhmm.zfill(5)), tzinfo=self.tz)

    def _day_start(self, d: date) -> datetime:
        return datetime.combine(d, time(0, 0), tzinfo=self.tz)
