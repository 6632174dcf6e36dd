"""
modules/discovery/categories.py
---------------------------------
Category inference for raw listings and the per-source category maps.
"""

from __future__ import annotations
import re
from typing import Optional

from schemas.event import EventCategory

# Checked in order; the first category with a keyword hit wins.
_KEYWORDS: list[tuple[EventCategory, tuple[str, ...]]] = [
    (EventCategory.FESTIVAL,   ("festival", "fest", "carnival", "bazaar", "fair")),
    (EventCategory.CONCERT,    ("concert", "live music", "gig", "band", "orchestra", "jazz",
                                "dj set", "symphony", "choir", "k-pop", "kpop")),
    (EventCategory.THEATRE,    ("theatre", "theater", "musical", "play", "comedy", "stand-up",
                                "standup", "improv", "ballet", "opera")),
    (EventCategory.WORKSHOP,   ("workshop", "class", "masterclass", "course", "bootcamp",
                                "seminar", "hands-on", "lesson")),
    (EventCategory.EXHIBITION, ("exhibition", "exhibit", "gallery", "museum", "showcase",
                                "art fair", "expo", "market")),
    (EventCategory.SPORTS,     ("run", "marathon", "yoga", "fitness", "football", "tennis",
                                "cycling", "match", "tournament", "sports")),
    (EventCategory.DINING,     ("dinner", "brunch", "lunch", "food", "tasting", "wine",
                                "restaurant", "supper", "cooking")),
    (EventCategory.NIGHTLIFE,  ("party", "club", "cocktail", "bar crawl", "rooftop", "nightlife")),
    (EventCategory.OUTDOOR,    ("hike", "trail", "park", "garden", "beach", "kayak", "outdoor",
                                "nature", "island")),
    (EventCategory.CULTURAL,   ("heritage", "cultural", "culture", "history", "temple",
                                "tour", "film", "screening", "poetry")),
]

_PATTERNS: list[tuple[EventCategory, re.Pattern]] = [
    (category, re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b"))
    for category, keywords in _KEYWORDS
]

EVENTFINDA_SLUG_TO_CATEGORY: dict[str, EventCategory] = {
    "concerts-gig-guide": EventCategory.CONCERT,
    "performing-arts": EventCategory.THEATRE,
    "sports-outdoors": EventCategory.SPORTS,
    "food-wine": EventCategory.DINING,
    "festivals-lifestyle": EventCategory.FESTIVAL,
    "exhibitions": EventCategory.EXHIBITION,
    "workshops-classes-education": EventCategory.WORKSHOP,
    "nightlife": EventCategory.NIGHTLIFE,
}

CATEGORY_TO_EVENTFINDA_SLUG: dict[EventCategory, str] = {
    EventCategory.CONCERT: "concerts-gig-guide",
    EventCategory.THEATRE: "performing-arts",
    EventCategory.SPORTS: "sports-outdoors",
    EventCategory.OUTDOOR: "sports-outdoors",
    EventCategory.DINING: "food-wine",
    EventCategory.FESTIVAL: "festivals-lifestyle",
    EventCategory.EXHIBITION: "exhibitions",
    EventCategory.CULTURAL: "exhibitions",
    EventCategory.WORKSHOP: "workshops-classes-education",
    EventCategory.NIGHTLIFE: "festivals-lifestyle",
}

# Eventbrite supports a single category keyword in the listing path
CATEGORY_TO_EVENTBRITE_KEYWORD: dict[EventCategory, str] = {
    EventCategory.CONCERT: "music",
    EventCategory.THEATRE: "performing-visual-arts",
    EventCategory.SPORTS: "sports-fitness",
    EventCategory.DINING: "food-drink",
    EventCategory.NIGHTLIFE: "nightlife",
    EventCategory.OUTDOOR: "travel-outdoor",
    EventCategory.CULTURAL: "performing-visual-arts",
    EventCategory.WORKSHOP: "business",
    EventCategory.EXHIBITION: "performing-visual-arts",
    EventCategory.FESTIVAL: "music",
}


def infer_category(name: str, description: Optional[str] = None) -> EventCategory:
    text = f"{name} {description or ''}".lower()
    for category, pattern in _PATTERNS:
        if pattern.search(text):
            return category
    return EventCategory.OTHER


def infer_category_from_eventfinda(
    name: str,
    description: Optional[str],
    slug: Optional[str],
) -> EventCategory:
    """Eventfinda's own slug when it maps cleanly, keyword inference otherwise."""
    if slug and slug in EVENTFINDA_SLUG_TO_CATEGORY:
        return EVENTFINDA_SLUG_TO_CATEGORY[slug]
    return infer_category(name, description)
