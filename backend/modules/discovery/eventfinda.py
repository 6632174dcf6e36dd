"""
modules/discovery/eventfinda.py
---------------------------------
Eventfinda REST channel.

  GET {EVENTFINDA_API_BASE}/events.json   (HTTP Basic auth)

The API allows about one request per second, which the retry base delay
of 1.1 s respects. Missing credentials or any failure fall back to the
demo listings.
"""

from __future__ import annotations
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import config
from modules.discovery.base import SearchQuery, SearchResult, post_filter
from modules.discovery.categories import CATEGORY_TO_EVENTFINDA_SLUG, infer_category_from_eventfinda
from modules.discovery.demo_events import eventfinda_demo_events
from modules.discovery.http import fetch_with_retry
from schemas.event import Availability, Event, Location, PriceRange, TimeSlot

logger = logging.getLogger(__name__)

_FIELDS = (
    "event:(id,name,url,url_slug,description,address,location_summary,datetime_start,"
    "datetime_end,datetime_summary,is_free,is_cancelled,is_featured,restrictions,point,"
    "category,location,images,sessions,ticket_types),category:(id,name,url_slug),"
    "location:(id,name),session:(datetime_start,datetime_end,is_cancelled),"
    "image:(id,transforms),ticket_type:(name,price,is_free)"
)


def _parse_dt(raw: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)


def map_eventfinda_row(raw: dict, tz: ZoneInfo, fallback_start: datetime) -> Optional[Event]:
    """One API row → Event. Cancelled rows and rows without a name or URL give None."""
    if not raw.get("name") or not raw.get("url") or raw.get("is_cancelled"):
        return None

    start = _parse_dt(raw.get("datetime_start"), tz) or fallback_start
    end = _parse_dt(raw.get("datetime_end"), tz) or start + timedelta(hours=2)

    price: Optional[PriceRange] = None
    if raw.get("is_free"):
        price = PriceRange(0, 0, config.DEFAULT_CURRENCY)
    else:
        prices = []
        for tt in (raw.get("ticket_types") or {}).get("ticket_types") or []:
            try:
                p = float(tt.get("price") or "")
            except ValueError:
                continue
            if p > 0:
                prices.append(p)
        if prices:
            price = PriceRange(min(prices), max(prices), config.DEFAULT_CURRENCY)

    image_url = None
    images = (raw.get("images") or {}).get("images") or []
    if images:
        transforms = (images[0].get("transforms") or {}).get("transforms") or []
        if transforms:
            image_url = transforms[0].get("url")

    point = raw.get("point") or {}
    venue = raw.get("location") or {}
    description = raw.get("description") or ""

    return Event(
        id=f"ef_{raw.get('id') or raw.get('url_slug') or raw['url']}",
        name=raw["name"],
        description=description[:500],
        category=infer_category_from_eventfinda(
            raw["name"], description, (raw.get("category") or {}).get("url_slug")
        ),
        location=Location(
            name=venue.get("name") or raw.get("location_summary") or config.VENUE_CITY,
            address=raw.get("address") or raw.get("location_summary") or config.VENUE_CITY,
            lat=float(point.get("lat") or config.DEFAULT_LAT),
            lng=float(point.get("lng") or config.DEFAULT_LNG),
        ),
        time_slot=TimeSlot(start, end),
        source="eventfinda",
        price=price,
        availability=Availability.UNKNOWN,
        booking_required=not raw.get("is_free", False),
        source_url=raw["url"],
        image_url=image_url,
    )


class EventfindaChannel:
    name = "eventfinda"

    def __init__(
        self,
        username: str = config.EVENTFINDA_USERNAME,
        password: str = config.EVENTFINDA_PASSWORD,
        api_base: str = config.EVENTFINDA_API_BASE,
        tz_name: str = config.VENUE_TIMEZONE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.username = username
        self.password = password
        self.api_base = api_base.rstrip("/")
        self.tz = ZoneInfo(tz_name)
        self._sleep = sleep

    def search(self, query: SearchQuery) -> SearchResult:
        t0 = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - t0) * 1000)

        if not (self.username and self.password):
            logger.info("[eventfinda] no credentials — using demo data")
            events = post_filter(eventfinda_demo_events(query.date, str(self.tz)), query)
            return SearchResult(self.name, events, mode="demo", duration_ms=elapsed())

        try:
            rows = self._fetch(query)
            fallback_start = datetime.combine(query.date, datetime.min.time(), tzinfo=self.tz)
            events = [e for e in (map_eventfinda_row(r, self.tz, fallback_start) for r in rows) if e]
            logger.info("[eventfinda] API returned %d rows, %d mapped", len(rows), len(events))
            return SearchResult(self.name, post_filter(events, query), mode="live", duration_ms=elapsed())
        except Exception as exc:
            logger.error("[eventfinda] search failed, using demo data: %s", exc)
            events = eventfinda_demo_events(query.date, str(self.tz))[: query.max_results]
            return SearchResult(self.name, events, mode="demo", duration_ms=elapsed(), error=str(exc))

    def _fetch(self, query: SearchQuery) -> list[dict]:
        params: dict[str, str] = {
            "start_date": query.date.isoformat(),
            "end_date": query.range_end.isoformat(),
            "rows": str(query.max_results),
            "order": "popularity",
            "fields": _FIELDS,
        }
        slugs: list[str] = []
        for cat in query.categories:
            slug = CATEGORY_TO_EVENTFINDA_SLUG.get(cat)
            if slug and slug not in slugs:
                slugs.append(slug)
        if slugs:
            params["category_slug"] = ",".join(slugs)
        if query.budget_max == 0:
            params["free"] = "1"
        elif query.budget_max is not None:
            params["price_max"] = f"{query.budget_max:g}"

        logger.info("[eventfinda] search %s→%s categories=%s budget=%s",
                    params["start_date"], params["end_date"],
                    params.get("category_slug", "all"), query.budget_max)
        response = fetch_with_retry(
            "GET",
            f"{self.api_base}/events.json",
            source="EventFinda API",
            params=params,
            auth=(self.username, self.password),
            headers={"Accept": "application/json"},
            sleep=self._sleep,
        )
        return response.json().get("events") or []
