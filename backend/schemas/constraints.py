"""
schemas/constraints.py
----------------------
User input structures.

  PlanFormData     — the structured wizard submission (pydantic; validated at
                     the API boundary, camelCase aliases accepted)
  UserConstraints  — immutable constraints derived from the form, owned by
                     the orchestrator for the duration of one run
"""

from __future__ import annotations
import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from schemas.event import EventCategory, PriceRange

Occasion = Literal[
    "date_night", "friends_day_out", "family_outing",
    "solo_adventure", "celebration", "chill_hangout",
]
BudgetRange = Literal["free", "under_30", "30_to_80", "80_to_150", "150_plus"]
TimeOfDay = Literal["morning", "afternoon", "evening", "night", "flexible"]
DurationChoice = Literal["2_3_hours", "half_day", "full_day"]


class IntentType(str, Enum):
    PLAN_DATE     = "plan_date"
    PLAN_TRIP     = "plan_trip"
    FIND_EVENTS   = "find_events"
    BOOK_SPECIFIC = "book_specific"
    MODIFY_PLAN   = "modify_plan"


class PlanFormData(BaseModel):
    """One submission of the plan wizard."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    occasion: Occasion
    budget_range: BudgetRange
    party_size: int = Field(..., ge=1, le=10)
    date: dt.date
    time_of_day: TimeOfDay
    duration: DurationChoice
    areas: list[str] = Field(..., min_length=1)
    additional_notes: str = ""
    prefer_free_events: bool = False


@dataclass(frozen=True)
class UserConstraints:
    """
    Constraints for one run.

    `budget` is per person; None means no budget was expressed.
    `start_time` is venue-local HH:MM and `duration_hours` the planned length.
    """
    date: dt.date
    party_size: int = 1
    budget: Optional[PriceRange] = None
    start_time: str = "12:00"
    duration_hours: float = 3
    time_of_day: str = "flexible"
    occasion: str = "chill_hangout"
    duration_choice: str = "2_3_hours"
    preferred_categories: tuple[EventCategory, ...] = ()
    excluded_categories: tuple[EventCategory, ...] = ()
    areas: tuple[str, ...] = field(default_factory=tuple)
    additional_notes: str = ""
    prefer_free_events: bool = False
    weather_sensitive: bool = True

    @property
    def budget_max(self) -> Optional[float]:
        return self.budget.max if self.budget else None

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "partySize": self.party_size,
            "budget": self.budget.to_dict() if self.budget else None,
            "startTime": self.start_time,
            "durationHours": self.duration_hours,
            "timeOfDay": self.time_of_day,
            "occasion": self.occasion,
            "preferredCategories": [c.value for c in self.preferred_categories],
            "excludedCategories": [c.value for c in self.excluded_categories],
            "areas": list(self.areas),
            "preferFreeEvents": self.prefer_free_events,
            "weatherSensitive": self.weather_sensitive,
        }
