"""
schemas/event.py
----------------
Dataclass definitions for discovered events and their ranked form.

An Event is created by a discovery channel, may be superseded during
deduplication, and is read-only from ranking onwards.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EventCategory(str, Enum):
    CONCERT    = "concert"
    THEATRE    = "theatre"
    SPORTS     = "sports"
    DINING     = "dining"
    NIGHTLIFE  = "nightlife"
    OUTDOOR    = "outdoor"
    CULTURAL   = "cultural"
    WORKSHOP   = "workshop"
    EXHIBITION = "exhibition"
    FESTIVAL   = "festival"
    OTHER      = "other"

    @classmethod
    def coerce(cls, value: Any) -> "EventCategory":
        """Map any string onto the closed set; unknown values become OTHER."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class Availability(str, Enum):
    AVAILABLE = "available"
    LIMITED   = "limited"
    SOLD_OUT  = "sold_out"
    UNKNOWN   = "unknown"


@dataclass
class Location:
    name: str
    address: str = ""
    lat: float = 0.0
    lng: float = 0.0

    def to_dict(self) -> dict:
        return {"name": self.name, "address": self.address, "lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, d: dict) -> "Location":
        return cls(
            name=d.get("name", ""),
            address=d.get("address", ""),
            lat=float(d.get("lat", 0.0)),
            lng=float(d.get("lng", 0.0)),
        )


@dataclass
class TimeSlot:
    """Half-open [start, end) window; both instants are timezone-aware."""
    start: datetime
    end: datetime

    def overlaps(self, other: "TimeSlot") -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, d: dict) -> "TimeSlot":
        return cls(
            start=datetime.fromisoformat(d["start"]),
            end=datetime.fromisoformat(d["end"]),
        )


@dataclass
class PriceRange:
    min: float
    max: float
    currency: str = "SGD"

    @property
    def is_free(self) -> bool:
        return self.max == 0

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max, "currency": self.currency}

    @classmethod
    def from_dict(cls, d: dict) -> "PriceRange":
        return cls(
            min=float(d.get("min", 0)),
            max=float(d.get("max", 0)),
            currency=d.get("currency", "SGD"),
        )


@dataclass
class Event:
    """
    A discoverable activity.

    `price` is None when unknown. `source` names the discovery channel
    ("eventfinda", "eventbrite") or "discovered"/"planned" for items the
    reconciler synthesises from a generative plan.
    """
    id: str
    name: str
    description: str
    category: EventCategory
    location: Location
    time_slot: TimeSlot
    source: str
    price: Optional[PriceRange] = None
    rating: Optional[float] = None
    availability: Availability = Availability.UNKNOWN
    booking_required: bool = False
    source_url: Optional[str] = None
    image_url: Optional[str] = None
    review_count: int = 0
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "location": self.location.to_dict(),
            "timeSlot": self.time_slot.to_dict(),
            "price": self.price.to_dict() if self.price else None,
            "rating": self.rating,
            "source": self.source,
            "availability": self.availability.value,
            "bookingRequired": self.booking_required,
            "sourceUrl": self.source_url,
            "imageUrl": self.image_url,
            "reviewCount": self.review_count,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Event":
        price = d.get("price")
        return cls(
            id=d["id"],
            name=d["name"],
            description=d.get("description", ""),
            category=EventCategory.coerce(d.get("category", "other")),
            location=Location.from_dict(d.get("location", {})),
            time_slot=TimeSlot.from_dict(d["timeSlot"]),
            source=d.get("source", "unknown"),
            price=PriceRange.from_dict(price) if price else None,
            rating=d.get("rating"),
            availability=Availability(d.get("availability", "unknown")),
            booking_required=bool(d.get("bookingRequired", False)),
            source_url=d.get("sourceUrl"),
            image_url=d.get("imageUrl"),
            review_count=int(d.get("reviewCount") or 0),
            tags=list(d.get("tags", [])),
        )


@dataclass(frozen=True)
class RankedEvent:
    """An Event with its final score in [0, 1] and the explanation string."""
    event: Event
    score: float
    reasoning: str

    def to_dict(self) -> dict:
        return {"event": self.event.to_dict(), "score": self.score, "reasoning": self.reasoning}
