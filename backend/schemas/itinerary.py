"""
schemas/itinerary.py
--------------------
Dataclass definitions for the reconciled itinerary.

Lifecycle: an Itinerary is created once per successful planning stage as
DRAFT, mutated only by the reconciler, then moved to APPROVED or REJECTED
by the approval gate. Approved itineraries are not mutated again.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from schemas.event import Event, TimeSlot


class ItineraryStatus(str, Enum):
    DRAFT       = "draft"
    APPROVED    = "approved"
    REJECTED    = "rejected"
    CONFIRMED   = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    CANCELLED   = "cancelled"


class ItemStatus(str, Enum):
    PLANNED   = "planned"
    BOOKED    = "booked"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class TravelMode(str, Enum):
    WALK             = "walk"
    PUBLIC_TRANSPORT = "public_transport"
    TAXI             = "taxi"
    DRIVE            = "drive"


class BudgetStatus(str, Enum):
    WITHIN_BUDGET   = "within_budget"
    SLIGHTLY_OVER   = "slightly_over"
    OVER_BUDGET     = "over_budget"


@dataclass
class ItineraryItem:
    """One scheduled stop. `scheduled_time` may differ from `event.time_slot`
    for generated items; for matched main events the two are identical."""
    id: str
    event: Event
    scheduled_time: TimeSlot
    travel_time_from_previous: Optional[int] = None     # minutes
    travel_mode: Optional[TravelMode] = None
    status: ItemStatus = ItemStatus.PLANNED
    booking_reference: Optional[str] = None
    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event": self.event.to_dict(),
            "scheduledTime": self.scheduled_time.to_dict(),
            "travelTimeFromPrevious": self.travel_time_from_previous,
            "travelMode": self.travel_mode.value if self.travel_mode else None,
            "status": self.status.value,
            "bookingReference": self.booking_reference,
            "notes": self.notes,
        }


@dataclass
class Itinerary:
    """Ordered items (non-decreasing start) plus aggregate totals.

    total_cost is for the whole party; total_duration is in minutes and
    includes travel time between items.
    """
    id: str
    name: str
    date: str
    items: list[ItineraryItem] = field(default_factory=list)
    total_cost: float = 0.0
    total_duration: int = 0
    status: ItineraryStatus = ItineraryStatus.DRAFT
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def approve(self) -> None:
        self._transition(ItineraryStatus.APPROVED)

    def reject(self) -> None:
        self._transition(ItineraryStatus.REJECTED)

    def _transition(self, target: ItineraryStatus) -> None:
        if self.status is not ItineraryStatus.DRAFT:
            raise ValueError(f"Cannot move itinerary from {self.status.value} to {target.value}")
        self.status = target
        self.updated_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "date": self.date,
            "items": [i.to_dict() for i in self.items],
            "totalCost": self.total_cost,
            "totalDuration": self.total_duration,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class PlanMetadata:
    """Summary of a reconciled plan, shown to the approver."""
    itinerary_name: str
    budget_status: BudgetStatus = BudgetStatus.WITHIN_BUDGET
    budget_notes: str = ""
    overall_vibe: str = ""
    practical_tips: list[str] = field(default_factory=list)
    weather_consideration: str = ""
    total_estimated_cost_per_person: float = 0.0
    item_count: int = 0
    main_event_count: int = 0
    generated_count: int = 0

    def to_dict(self) -> dict:
        return {
            "itineraryName": self.itinerary_name,
            "budgetStatus": self.budget_status.value,
            "budgetNotes": self.budget_notes,
            "overallVibe": self.overall_vibe,
            "practicalTips": list(self.practical_tips),
            "weatherConsideration": self.weather_consideration,
            "totalEstimatedCostPerPerson": self.total_estimated_cost_per_person,
            "itemCount": self.item_count,
            "mainEventCount": self.main_event_count,
            "generatedCount": self.generated_count,
        }
