"""
modules/discovery/demo_events.py
----------------------------------
Deterministic placeholder listings served when a channel has no
credentials or its live call fails. Times are venue-local on the
requested date.
"""

from __future__ import annotations
from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import config
from schemas.event import Availability, Event, EventCategory, Location, PriceRange, TimeSlot

# id, name, description, category, (venue, address, lat, lng), start, end,
# (price min, max), rating, url, availability, booking_required
_EVENTFINDA_ROWS = [
    ("ef_demo_1", "Singapore Comedy Night",
     "An evening of stand-up comedy featuring top local and international comedians at the Arts House.",
     EventCategory.THEATRE,
     ("The Arts House", "1 Old Parliament Lane, Singapore 179429", 1.2884, 103.8508),
     "19:30", "22:00", (25, 40), 4.4, "https://www.eventfinda.sg/comedy-night",
     Availability.AVAILABLE, True),
    ("ef_demo_2", "Artisan Craft Market @ Haji Lane",
     "Browse unique handmade crafts, local art, and artisanal food at this vibrant street market.",
     EventCategory.EXHIBITION,
     ("Haji Lane", "Haji Lane, Singapore 189241", 1.3017, 103.8593),
     "10:00", "18:00", (0, 0), 4.2, "https://www.eventfinda.sg/artisan-market",
     Availability.AVAILABLE, False),
    ("ef_demo_3", "Sunset Yoga at Marina Barrage",
     "Unwind with a relaxing sunset yoga session overlooking the Marina Bay skyline.",
     EventCategory.SPORTS,
     ("Marina Barrage", "8 Marina Gardens Dr, Singapore 018951", 1.2808, 103.8713),
     "17:30", "19:00", (15, 15), 4.6, "https://www.eventfinda.sg/sunset-yoga",
     Availability.AVAILABLE, True),
    ("ef_demo_4", "Local Beats: Indie Music Showcase",
     "Discover Singapore's best indie bands and solo artists at this intimate live music event.",
     EventCategory.CONCERT,
     ("Esplanade Annexe Studio", "1 Esplanade Dr, Singapore 038981", 1.2899, 103.8556),
     "20:00", "23:00", (20, 35), 4.5, "https://www.eventfinda.sg/indie-music",
     Availability.LIMITED, True),
    ("ef_demo_5", "Weekend Pottery Workshop",
     "Hands-on pottery making for beginners. Create your own ceramic bowl or mug to take home.",
     EventCategory.WORKSHOP,
     ("Thow Kwang Pottery Jungle", "85 Lorong Tawas, Singapore 639823", 1.3312, 103.7195),
     "10:00", "13:00", (60, 80), 4.7, "https://www.eventfinda.sg/pottery-workshop",
     Availability.AVAILABLE, True),
]

_EVENTBRITE_ROWS = [
    ("eb_demo_1", "Jazz Night at Esplanade",
     "An evening of smooth jazz performances featuring local and international artists at the iconic Esplanade.",
     EventCategory.CONCERT,
     ("Esplanade – Theatres on the Bay", "1 Esplanade Dr, Singapore 038981", 1.2899, 103.8556),
     "19:00", "22:00", (25, 65), 4.5, "https://www.eventbrite.sg/e/jazz-night-esplanade",
     Availability.AVAILABLE, True),
    ("eb_demo_2", "Singapore Food Festival Street Market",
     "Sample the best of Singapore street food at this outdoor festival featuring over 50 hawker stalls.",
     EventCategory.DINING,
     ("Clarke Quay", "3 River Valley Rd, Singapore 179024", 1.2883, 103.8467),
     "11:00", "21:00", (0, 30), 4.3, "https://www.eventbrite.sg/e/sg-food-festival",
     Availability.AVAILABLE, False),
    ("eb_demo_3", "Night Photography Workshop",
     "Learn night photography techniques in Marina Bay. Covers long exposure, light trails, and cityscape composition.",
     EventCategory.WORKSHOP,
     ("Marina Bay Sands", "10 Bayfront Ave, Singapore 018956", 1.2834, 103.8607),
     "18:30", "21:30", (45, 45), 4.7, "https://www.eventbrite.sg/e/night-photography-workshop",
     Availability.LIMITED, True),
    ("eb_demo_4", "Gardens by the Bay Light Show",
     "Experience the spectacular Garden Rhapsody light and sound show at the Supertree Grove.",
     EventCategory.OUTDOOR,
     ("Gardens by the Bay", "18 Marina Gardens Dr, Singapore 018953", 1.2816, 103.8636),
     "19:45", "20:15", (0, 0), 4.6, "https://www.eventbrite.sg/e/gardens-light-show",
     Availability.AVAILABLE, False),
    ("eb_demo_5", "Rooftop Cocktail & DJ Session",
     "Sunset drinks with panoramic views and live DJ spinning house and chill beats.",
     EventCategory.NIGHTLIFE,
     ("CÉ LA VI", "1 Bayfront Ave, Level 57, Singapore 018971", 1.2838, 103.8610),
     "17:00", "23:00", (30, 80), 4.4, "https://www.eventbrite.sg/e/rooftop-cocktail-dj",
     Availability.AVAILABLE, True),
]


def _build(rows: list, source: str, on: date, tz_name: str) -> list[Event]:
    tz = ZoneInfo(tz_name)
    events = []
    for (eid, name, desc, cat, (venue, addr, lat, lng), start, end,
         (lo, hi), rating, url, availability, booking_required) in rows:
        events.append(Event(
            id=eid,
            name=name,
            description=desc,
            category=cat,
            location=Location(venue, addr, lat, lng),
            time_slot=TimeSlot(
                datetime.combine(on, time.fromisoformat(start), tzinfo=tz),
                datetime.combine(on, time.fromisoformat(end), tzinfo=tz),
            ),
            source=source,
            price=PriceRange(lo, hi, "SGD"),
            rating=rating,
            availability=availability,
            booking_required=booking_required,
            source_url=url,
        ))
    return events


def eventfinda_demo_events(on: date, tz_name: str = config.VENUE_TIMEZONE) -> list[Event]:
    return _build(_EVENTFINDA_ROWS, "eventfinda", on, tz_name)


def eventbrite_demo_events(on: date, tz_name: str = config.VENUE_TIMEZONE) -> list[Event]:
    return _build(_EVENTBRITE_ROWS, "eventbrite", on, tz_name)
