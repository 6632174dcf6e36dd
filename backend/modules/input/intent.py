"""
modules/input/intent.py
-------------------------
Turns a plan-form submission into the run's UserConstraints.

  map_plan_form()   — deterministic mapping (always succeeds)
  IntentResolver    — adds LLM category enrichment on top; any LLM
                      failure or non-JSON answer keeps the mapping as is
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

import config
from modules.errors import PlanParseError
from modules.planning.prompts import build_intent_prompt, extract_json_object
from schemas.constraints import IntentType, PlanFormData, UserConstraints
from schemas.event import EventCategory, PriceRange
from schemas.trace import ReasoningStep

logger = logging.getLogger(__name__)


_OCCASION_TO_INTENT: dict[str, IntentType] = {
    "date_night":      IntentType.PLAN_DATE,
    "celebration":     IntentType.PLAN_DATE,
    "friends_day_out": IntentType.PLAN_TRIP,
    "family_outing":   IntentType.PLAN_TRIP,
    "solo_adventure":  IntentType.FIND_EVENTS,
    "chill_hangout":   IntentType.FIND_EVENTS,
}

_BUDGETS: dict[str, tuple[float, float]] = {
    "free":      (0, 0),
    "under_30":  (0, 30),
    "30_to_80":  (30, 80),
    "80_to_150": (80, 150),
    "150_plus":  (150, 500),
}

_DURATION_HOURS: dict[str, float] = {"2_3_hours": 3, "half_day": 5, "full_day": 10}

_START_TIMES: dict[str, str] = {
    "morning": "09:00",
    "afternoon": "12:00",
    "evening": "18:00",
    "night": "20:00",
    "flexible": "12:00",
}

_OCCASION_LABELS: dict[str, str] = {
    "date_night":      "a date night",
    "friends_day_out": "a day out with friends",
    "family_outing":   "a family outing",
    "solo_adventure":  "a solo adventure",
    "celebration":     "a celebration",
    "chill_hangout":   "a chill hangout",
}

_BUDGET_LABELS: dict[str, str] = {
    "free":      "free activities",
    "under_30":  "under $30 per person",
    "30_to_80":  "$30-80 per person",
    "80_to_150": "$80-150 per person",
    "150_plus":  "$150+ per person",
}


@dataclass
class Enrichment:
    preferred_categories: tuple[EventCategory, ...] = ()
    excluded_categories: tuple[EventCategory, ...] = ()
    weather_sensitive: Optional[bool] = None
    reasoning: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class ResolvedIntent:
    intent_type: IntentType
    constraints: UserConstraints
    summary: str
    enrichment: Optional[Enrichment] = None
    reasoning_steps: list[ReasoningStep] = field(default_factory=list)

    @property
    def categories_label(self) -> str:
        cats = self.constraints.preferred_categories
        return ", ".join(c.value for c in cats) if cats else "general"


def summarize_form(form: PlanFormData, city: str = config.VENUE_CITY) -> str:
    people = "person" if form.party_size == 1 else "people"
    areas = f"anywhere in {city}" if "anywhere" in form.areas else f"in {', '.join(form.areas)}"
    notes = f" I'm interested in: {form.additional_notes}." if form.additional_notes else ""
    free = " Prioritise free events." if form.prefer_free_events else ""
    return (
        f"Plan {_OCCASION_LABELS[form.occasion]} for {form.party_size} {people}, "
        f"budget {_BUDGET_LABELS[form.budget_range]}, on {form.date.isoformat()} ({form.time_of_day}), "
        f"lasting {form.duration.replace('_', ' ')}, {areas}.{notes}{free}"
    )


def map_plan_form(form: PlanFormData, currency: str = config.DEFAULT_CURRENCY) -> ResolvedIntent:
    lo, hi = _BUDGETS[form.budget_range]
    constraints = UserConstraints(
        date=form.date,
        party_size=form.party_size,
        budget=PriceRange(lo, hi, currency),
        start_time=_START_TIMES[form.time_of_day],
        duration_hours=_DURATION_HOURS[form.duration],
        time_of_day=form.time_of_day,
        occasion=form.occasion,
        duration_choice=form.duration,
        areas=tuple(form.areas),
        additional_notes=form.additional_notes,
        prefer_free_events=form.prefer_free_events,
    )
    return ResolvedIntent(
        intent_type=_OCCASION_TO_INTENT[form.occasion],
        constraints=constraints,
        summary=summarize_form(form),
    )


def _categories(raw) -> tuple[EventCategory, ...]:
    """Known category values only, in order, without repeats."""
    out: list[EventCategory] = []
    for value in raw or []:
        try:
            cat = EventCategory(str(value).strip().lower())
        except ValueError:
            continue
        if cat not in out:
            out.append(cat)
    return tuple(out)


def parse_enrichment(text: str) -> Enrichment:
    data = extract_json_object(text)
    confidence = data.get("confidence")
    weather = data.get("weatherSensitive")
    return Enrichment(
        preferred_categories=_categories(data.get("preferredCategories")),
        excluded_categories=_categories(data.get("excludedCategories")),
        weather_sensitive=weather if isinstance(weather, bool) else None,
        reasoning=data.get("reasoning") or None,
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
    )


class IntentResolver:
    def __init__(self, llm):
        self.llm = llm

    def resolve(self, form: PlanFormData) -> ResolvedIntent:
        resolved = map_plan_form(form)
        enrichment: Optional[Enrichment] = None
        try:
            answer = self.llm.complete(build_intent_prompt(form, resolved.summary))
            enrichment = parse_enrichment(answer)
        except PlanParseError:
            logger.warning("[intent] LLM answer was not JSON — using deterministic mapping only")
        except Exception as exc:
            logger.warning("[intent] LLM enrichment failed (%s) — using deterministic mapping only", exc)

        if enrichment is not None:
            updates = {
                "preferred_categories": enrichment.preferred_categories,
                "excluded_categories": enrichment.excluded_categories,
            }
            if enrichment.weather_sensitive is not None:
                updates["weather_sensitive"] = enrichment.weather_sensitive
            resolved.constraints = replace(resolved.constraints, **updates)
            resolved.enrichment = enrichment
            logger.info("[intent] enriched categories: %s (confidence %s)",
                        resolved.categories_label, enrichment.confidence)

        resolved.reasoning_steps = self._reasoning_steps(form, resolved)
        return resolved

    @staticmethod
    def _reasoning_steps(form: PlanFormData, resolved: ResolvedIntent) -> list[ReasoningStep]:
        cats = resolved.categories_label
        enrichment = resolved.enrichment
        return [
            ReasoningStep("Occasion analysis",
                          f'Identified "{form.occasion}" → intent type "{resolved.intent_type.value}"',
                          "pass"),
            ReasoningStep("Category mapping",
                          f"Matched categories: {cats}" if cats != "general"
                          else "No specific category match — using general discovery",
                          "pass" if cats != "general" else "info"),
            ReasoningStep("Budget constraint",
                          f'Budget range "{form.budget_range}" applied as filter'),
            ReasoningStep("LLM enrichment",
                          f"Enriched with confidence {round((enrichment.confidence or 0) * 100)}%"
                          if enrichment else "Skipped — using deterministic mapping only",
                          "pass" if enrichment else "info"),
        ]
