"""
modules/planning/prompts.py
-----------------------------
Prompt templates for the three LLM touch points of the pipeline and the
JSON extraction helper shared by all of them.

  intent          → category enrichment for the form submission
  recommendation  → narrative around the deterministic ranking
  planning        → the generative itinerary the reconciler validates

The LLM interface is a single `complete(prompt)` call, so each builder
returns the system prompt and the request joined into one string.
"""

from __future__ import annotations
import json
import re
from datetime import tzinfo
from typing import Any, Optional

import config
from modules.errors import PlanParseError
from schemas.constraints import PlanFormData, UserConstraints
from schemas.event import RankedEvent

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

# ── Time windows ─────────────────────────────────────────────────────────────

TIME_OF_DAY_WINDOWS: dict[str, tuple[str, str]] = {
    "morning":   ("Morning",   "08:00–12:00"),
    "afternoon": ("Afternoon", "12:00–17:00"),
    "evening":   ("Evening",   "17:00–23:00"),
    "night":     ("Night",     "20:00–02:00"),
}

# Used when time_of_day is "flexible"
OCCASION_DEFAULT_WINDOWS: dict[str, tuple[str, str]] = {
    "date_night":      ("Evening to Night",     "17:00–23:00"),
    "celebration":     ("Evening to Night",     "17:00–23:00"),
    "friends_day_out": ("Afternoon to Evening", "12:00–22:00"),
    "family_outing":   ("Morning to Afternoon", "09:00–17:00"),
    "solo_adventure":  ("Morning to Evening",   "09:00–21:00"),
    "chill_hangout":   ("Afternoon to Evening", "12:00–21:00"),
}

FLEXIBLE_FALLBACK = ("Daytime", "10:00–21:00")

# Hard plan-length limit given to the planner, per duration choice
DURATION_HOURS: dict[str, int] = {
    "2_3_hours": 3,
    "half_day":  4,
    "full_day":  8,
}


# ── System prompts ───────────────────────────────────────────────────────────

INTENT_SYSTEM_PROMPT = """You are an Intent Understanding Agent for an itinerary planner focused on {city}.

You receive structured data from a planning wizard (occasion, budget, party size, date, time, duration, areas, and optional notes). Your job is to:

1. Interpret the structured input into a rich understanding of what the user wants
2. Infer implicit preferences from the occasion type (e.g. "date_night" implies romantic venues, dinner + activity)
3. Map the occasion to relevant event categories: concert, theatre, sports, dining, nightlife, outdoor, cultural, workshop, exhibition, festival, other
4. Flag anything contradictory

Respond with a JSON object matching this exact schema:
{{
  "preferredCategories": ["dining", "nightlife"],
  "excludedCategories": [],
  "weatherSensitive": true,
  "reasoning": "Brief explanation of your interpretation",
  "confidence": 0.0
}}

Category guidelines:
- date_night → dining, nightlife, cultural, concert, theatre, exhibition
- friends_day_out → dining, outdoor, sports, nightlife, festival
- family_outing → outdoor, cultural, exhibition, dining, workshop
- solo_adventure → cultural, outdoor, exhibition, workshop, concert
- celebration → dining, nightlife, concert, festival
- chill_hangout → dining, outdoor, cultural, exhibition

Respond ONLY with the JSON object, no markdown fencing or extra text."""

RECOMMENDATION_SYSTEM_PROMPT = """You are the Recommendation Agent for an itinerary planner focused on {city}.

The events below were already scored and ranked by a deterministic tool. Do NOT re-rank them. Explain concisely:

1. WHY the top-ranked events fit this user's occasion, budget, and preferences
2. Notable trade-offs (e.g. "slightly over budget but highest-rated")
3. Caveats (outdoor events with uncertain weather, tight timing between venues)

Respond with a JSON object matching this exact schema:
{{
  "narrative": "2-4 sentence overview of why these picks work",
  "topPickReasoning": [{{"eventName": "...", "why": "one sentence"}}],
  "tradeoffs": ["..."],
  "confidence": 0.0
}}

Respond ONLY with the JSON object, no markdown fencing or extra text."""

PLANNING_SYSTEM_PROMPT = """You are an Itinerary Planning Agent for an itinerary planner focused on {city}.

Create a SHORT, focused plan that wraps around ONE main event. Quality over quantity.

ABSOLUTE RULES:
1. MAIN EVENT TIMES ARE SACRED. Copy the given startTime and endTime EXACTLY. Copy the event name EXACTLY.
2. Generate 3-4 items in total: 1 main event (isMainEvent=true) plus 1-3 complementary activities. Never more than 4.
3. Every activity ends by {cutoff}. All items fit inside the given TIME WINDOW.
4. Items are in chronological order with no overlaps and realistic travel time between venues.

Respond with a JSON object matching this exact schema:
{{
  "itineraryName": "Short catchy name",
  "items": [
    {{
      "name": "EXACT event name for the main event, venue name otherwise",
      "description": "What you'll do here",
      "category": "dining|nightlife|outdoor|cultural|concert|theatre|sports|workshop|exhibition|festival|other",
      "isMainEvent": true,
      "startTime": "HH:MM",
      "endTime": "HH:MM",
      "durationMinutes": 60,
      "location": {{"name": "Venue", "address": "Full address", "area": "Neighbourhood"}},
      "estimatedCostPerPerson": 25,
      "priceCategory": "free|budget|moderate|premium|luxury",
      "travelFromPrevious": {{"durationMinutes": 10, "mode": "walk|mrt|taxi|bus|none", "description": "..."}},
      "vibeNotes": "Why this fits the plan",
      "bookingRequired": false,
      "sourceUrl": null
    }}
  ],
  "totalEstimatedCostPerPerson": 120,
  "budgetStatus": "within_budget|slightly_over|over_budget",
  "budgetNotes": "...",
  "overallVibe": "...",
  "practicalTips": ["..."],
  "weatherConsideration": "..."
}}

All times are 24h local time ({tz_name}). Respond ONLY with the JSON object, no markdown fencing or extra text."""


# ── JSON extraction ──────────────────────────────────────────────────────────

def extract_json_object(text: str) -> dict:
    """Parse `text` as a JSON object, falling back to the outermost {...} span."""
    text = (text or "").strip()
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass
    match = _JSON_OBJECT.search(text)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise PlanParseError("No JSON object found in LLM response")


# ── Builders ─────────────────────────────────────────────────────────────────

def time_window(time_of_day: str, occasion: str) -> tuple[str, str]:
    if time_of_day == "flexible":
        return OCCASION_DEFAULT_WINDOWS.get(occasion, FLEXIBLE_FALLBACK)
    return TIME_OF_DAY_WINDOWS.get(time_of_day, FLEXIBLE_FALLBACK)


def build_intent_prompt(form: PlanFormData, summary: str, city: str = config.VENUE_CITY) -> str:
    lines = [
        INTENT_SYSTEM_PROMPT.format(city=city),
        "",
        f"User request: {summary}",
        "",
        f"Occasion: {form.occasion}",
        f"Budget: {form.budget_range}",
        f"Party size: {form.party_size}",
        f"Time: {form.time_of_day}",
        f"Duration: {form.duration}",
        f"Areas: {', '.join(form.areas)}",
    ]
    if form.additional_notes:
        lines.append(f"Notes: {form.additional_notes}")
    return "\n".join(lines)


def build_recommendation_prompt(
    summary: str,
    constraints: UserConstraints,
    ranked: list[RankedEvent],
    total_input: int,
    passed_filters: int,
    city: str = config.VENUE_CITY,
) -> str:
    budget = constraints.budget
    budget_str = f"${budget.min:g}-{budget.max:g}" if budget else "$0-∞"
    picks = []
    for i, r in enumerate(ranked, start=1):
        e = r.event
        price = f"${e.price.min:g}-{e.price.max:g}" if e.price else "free"
        picks.append(f"{i}. {e.name} ({e.category.value}, {price}) — score {r.score} — {r.reasoning}")
    return "\n".join([
        RECOMMENDATION_SYSTEM_PROMPT.format(city=city),
        "",
        f"User request: {summary}",
        f"Budget: {budget_str}",
        f"Preferred categories: {', '.join(c.value for c in constraints.preferred_categories) or 'all'}",
        f"Excluded categories: {', '.join(c.value for c in constraints.excluded_categories) or 'none'}",
        "",
        f"Filter stats: {total_input} total → {passed_filters} passed hard filters → {len(ranked)} top picks.",
        "",
        "Top ranked events:",
        *picks,
    ])


def _describe_anchor(r: RankedEvent, tz: tzinfo) -> str:
    e = r.event
    start = e.time_slot.start.astimezone(tz).strftime("%H:%M")
    end = e.time_slot.end.astimezone(tz).strftime("%H:%M")
    price = f"${e.price.min:g}-{e.price.max:g} {e.price.currency}" if e.price else "free/unknown"
    rating = f"{e.rating:g}" if e.rating is not None else "unrated"
    return (
        f'EXACT EVENT NAME: "{e.name}"\n'
        f"   Category: {e.category.value}\n"
        f"   Location: {e.location.name}, {e.location.address}\n"
        f'   EXACT TIME SLOT: startTime="{start}" endTime="{end}"\n'
        f"   Price: {price}/person\n"
        f"   Rating: {rating}/5\n"
        f"   Score: {r.score}/1.00\n"
        f"   Why: {r.reasoning}"
    )


def build_planning_prompt(
    constraints: UserConstraints,
    anchor: RankedEvent,
    tz: tzinfo,
    narrative: Optional[str] = None,
    max_gap_minutes: int = config.MAX_GAP_MINUTES,
    cutoff: str = config.DAY_CUTOFF,
    city: str = config.VENUE_CITY,
) -> str:
    occasion = constraints.occasion.replace("_", " ")
    label, window = time_window(constraints.time_of_day, constraints.occasion)
    max_hours = DURATION_HOURS.get(constraints.duration_choice, 4)
    party = constraints.party_size
    people = "person" if party == 1 else "people"
    budget_max = constraints.budget_max
    per_person = f"${budget_max:g}" if budget_max is not None else "unlimited"
    group = f"${budget_max * party:g}" if budget_max is not None else "unlimited"

    lines = [
        PLANNING_SYSTEM_PROMPT.format(city=city, cutoff=cutoff, tz_name=str(tz)),
        "",
        f"Plan a complete {occasion} itinerary for {constraints.date.isoformat()}.",
        "",
        f"TIME WINDOW: {label} ({window}) — all activities MUST start and end within this window.",
        f"TOTAL PLAN DURATION: first start to last end MUST NOT exceed {max_hours} hours.",
        f"SCHEDULING RULE: at most {max_gap_minutes} minutes idle between consecutive activities "
        f"(including travel). Aim for 15-30 minute gaps.",
        "",
        f"PARTY: {party} {people}",
        f"BUDGET: {per_person} per person (total group budget: {group})",
        f"PREFERRED AREAS: {', '.join(constraints.areas) or f'anywhere in {city}'}",
    ]
    if constraints.additional_notes:
        lines.append(f"NOTES: {constraints.additional_notes}")
    if narrative:
        lines.append(f"RECOMMENDATION CONTEXT: {narrative}")
    lines += [
        "",
        "TOP RANKED EVENT (anchor the entire plan around it):",
        f"1. {_describe_anchor(anchor, tz)}",
        "",
        "For the main event item set the EXACT name, the EXACT startTime/endTime above and isMainEvent=true.",
    ]
    return "\n".join(lines)


def parse_narrative(text: str) -> dict[str, Any]:
    """Recommendation answer as a dict; non-JSON text becomes the narrative."""
    try:
        return extract_json_object(text)
    except PlanParseError:
        return {"narrative": text.strip()}
