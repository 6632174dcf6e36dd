"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from helpers import PLAN_DATE, make_event
from schemas.booking import UserProfile
from schemas.constraints import PlanFormData


@pytest.fixture
def event_factory():
    """Provide the event builder."""
    return make_event


@pytest.fixture
def plan_form():
    """Provide a plan form builder with evening date-night defaults."""

    def build(**overrides) -> PlanFormData:
        data = {
            "occasion": "date_night",
            "budget_range": "30_to_80",
            "party_size": 2,
            "date": PLAN_DATE,
            "time_of_day": "evening",
            "duration": "2_3_hours",
            "areas": ["anywhere"],
            "additional_notes": "",
        }
        data.update(overrides)
        return PlanFormData(**data)

    return build


@pytest.fixture
def profile() -> UserProfile:
    """Provide a booking profile."""
    return UserProfile(name="Alex Tan", email="alex@example.com", phone="+6591234567")
