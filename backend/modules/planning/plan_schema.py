"""
modules/planning/plan_schema.py
---------------------------------
Pydantic shape of the generative plan returned by the planning LLM.

The LLM speaks camelCase JSON; fields are snake_case here with camelCase
aliases. Anything that fails validation sends the reconciler down its
single-event fallback path.
"""

from __future__ import annotations
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from schemas.event import EventCategory

_HHMM = r"^([01]?\d|2[0-3]):[0-5]\d$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlanLocation(_CamelModel):
    name: str
    address: str
    area: Optional[str] = None


class PlanTravel(_CamelModel):
    duration_minutes: float = Field(0, ge=0)
    mode: Literal["walk", "mrt", "taxi", "bus", "none"] = "walk"
    description: str = ""


class PlanItem(_CamelModel):
    name: str
    description: str
    category: EventCategory = EventCategory.OTHER
    is_main_event: bool = False
    start_time: str = Field(..., pattern=_HHMM)
    end_time: str = Field(..., pattern=_HHMM)
    duration_minutes: float = Field(..., ge=0)
    location: PlanLocation
    estimated_cost_per_person: float = Field(0, ge=0)
    price_category: Literal["free", "budget", "moderate", "premium", "luxury"] = "moderate"
    travel_from_previous: Optional[PlanTravel] = None
    vibe_notes: Optional[str] = None
    booking_required: bool = False
    source_url: Optional[str] = None

    @field_validator("category", mode="before")
    @classmethod
    def _any_category(cls, v):
        # Unknown categories degrade to OTHER instead of failing the plan.
        return EventCategory.coerce(v)


class GenerativePlan(_CamelModel):
    itinerary_name: str
    items: list[PlanItem] = Field(..., min_length=1)
    total_estimated_cost_per_person: float = Field(..., ge=0)
    budget_status: Literal["within_budget", "slightly_over", "over_budget"] = "within_budget"
    budget_notes: Optional[str] = None
    overall_vibe: Optional[str] = None
    practical_tips: Optional[list[str]] = None
    weather_consideration: Optional[str] = None
