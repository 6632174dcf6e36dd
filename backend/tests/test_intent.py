"""Unit tests for plan-form intent resolution."""

import json

import pytest
from pydantic import ValidationError

from helpers import PLAN_DATE, ScriptedLLM
from modules.input.intent import IntentResolver, map_plan_form, parse_enrichment, summarize_form
from schemas.constraints import IntentType, PlanFormData
from schemas.event import EventCategory


ENRICHMENT = json.dumps({
    "preferredCategories": ["concert", "dining", "Concert", "karaoke"],
    "excludedCategories": ["sports"],
    "weatherSensitive": False,
    "reasoning": "Live music suits a date night.",
    "confidence": 0.9,
})


class TestPlanFormMapping:
    """Test suite for the deterministic form mapping."""

    @pytest.mark.parametrize(
        "budget, expected",
        [
            ("free", (0, 0)),
            ("under_30", (0, 30)),
            ("30_to_80", (30, 80)),
            ("80_to_150", (80, 150)),
            ("150_plus", (150, 500)),
        ],
    )
    def test_budget_ranges(self, plan_form, budget, expected) -> None:
        constraints = map_plan_form(plan_form(budget_range=budget)).constraints

        assert (constraints.budget.min, constraints.budget.max) == expected

    @pytest.mark.parametrize(
        "time_of_day, start",
        [("morning", "09:00"), ("afternoon", "12:00"), ("evening", "18:00"),
         ("night", "20:00"), ("flexible", "12:00")],
    )
    def test_start_times(self, plan_form, time_of_day, start) -> None:
        assert map_plan_form(plan_form(time_of_day=time_of_day)).constraints.start_time == start

    @pytest.mark.parametrize(
        "occasion, intent",
        [
            ("date_night", IntentType.PLAN_DATE),
            ("celebration", IntentType.PLAN_DATE),
            ("friends_day_out", IntentType.PLAN_TRIP),
            ("family_outing", IntentType.PLAN_TRIP),
            ("solo_adventure", IntentType.FIND_EVENTS),
            ("chill_hangout", IntentType.FIND_EVENTS),
        ],
    )
    def test_occasion_intent(self, plan_form, occasion, intent) -> None:
        assert map_plan_form(plan_form(occasion=occasion)).intent_type is intent

    def test_carries_form_fields(self, plan_form) -> None:
        form = plan_form(party_size=4, duration="half_day", areas=["Bugis", "Clarke Quay"],
                         prefer_free_events=True)

        constraints = map_plan_form(form).constraints

        assert constraints.date == PLAN_DATE
        assert constraints.party_size == 4
        assert constraints.duration_hours == 5
        assert constraints.areas == ("Bugis", "Clarke Quay")
        assert constraints.prefer_free_events
        assert constraints.preferred_categories == ()

    def test_summary(self, plan_form) -> None:
        summary = summarize_form(plan_form(), city="Singapore")

        assert summary.startswith(
            "Plan a date night for 2 people, budget $30-80 per person, on 2030-03-15 (evening)"
        )
        assert summary.endswith("anywhere in Singapore.")

    def test_summary_for_solo_with_notes(self, plan_form) -> None:
        form = plan_form(occasion="solo_adventure", party_size=1, areas=["Bugis"],
                         additional_notes="indie films", prefer_free_events=True)

        summary = summarize_form(form)

        assert "for 1 person" in summary
        assert "in Bugis." in summary
        assert "I'm interested in: indie films." in summary
        assert summary.endswith("Prioritise free events.")


class TestEnrichmentParsing:
    """Test suite for parse_enrichment."""

    def test_known_categories_only(self) -> None:
        enrichment = parse_enrichment(ENRICHMENT)

        assert enrichment.preferred_categories == (EventCategory.CONCERT, EventCategory.DINING)
        assert enrichment.excluded_categories == (EventCategory.SPORTS,)
        assert enrichment.weather_sensitive is False
        assert enrichment.confidence == 0.9

    def test_json_inside_prose(self) -> None:
        enrichment = parse_enrichment('Sure! {"preferredCategories": ["theatre"]} Hope that helps.')

        assert enrichment.preferred_categories == (EventCategory.THEATRE,)
        assert enrichment.weather_sensitive is None
        assert enrichment.confidence is None


class TestIntentResolver:
    """Test suite for IntentResolver."""

    def test_enrichment_applied(self, plan_form) -> None:
        llm = ScriptedLLM(ENRICHMENT)

        resolved = IntentResolver(llm).resolve(plan_form())

        constraints = resolved.constraints
        assert constraints.preferred_categories == (EventCategory.CONCERT, EventCategory.DINING)
        assert constraints.excluded_categories == (EventCategory.SPORTS,)
        assert constraints.weather_sensitive is False
        assert resolved.categories_label == "concert, dining"
        step = resolved.reasoning_steps[-1]
        assert step.label == "LLM enrichment"
        assert step.detail == "Enriched with confidence 90%"
        assert len(llm.prompts) == 1

    @pytest.mark.parametrize("answer", ["[stub response]", RuntimeError("quota exceeded")])
    def test_llm_failure_keeps_mapping(self, plan_form, answer) -> None:
        """Test that a non-JSON or failing LLM leaves the deterministic mapping untouched."""
        resolved = IntentResolver(ScriptedLLM(answer)).resolve(plan_form())

        assert resolved.enrichment is None
        assert resolved.constraints == map_plan_form(plan_form()).constraints
        assert resolved.categories_label == "general"
        assert resolved.reasoning_steps[-1].detail.startswith("Skipped")
        assert resolved.reasoning_steps[1].status == "info"


class TestPlanFormValidation:
    """Test suite for PlanFormData."""

    def test_camel_case_aliases(self) -> None:
        form = PlanFormData.model_validate({
            "occasion": "celebration",
            "budgetRange": "80_to_150",
            "partySize": 6,
            "date": "2030-03-15",
            "timeOfDay": "night",
            "duration": "full_day",
            "areas": ["Marina Bay"],
            "preferFreeEvents": True,
        })

        assert form.budget_range == "80_to_150"
        assert form.party_size == 6
        assert form.date == PLAN_DATE
        assert form.prefer_free_events

    @pytest.mark.parametrize(
        "overrides",
        [{"party_size": 11}, {"party_size": 0}, {"areas": []}, {"occasion": "wedding"}],
    )
    def test_rejects_invalid(self, plan_form, overrides) -> None:
        with pytest.raises(ValidationError):
            plan_form(**overrides)
