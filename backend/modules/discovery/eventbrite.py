"""
modules/discovery/eventbrite.py
---------------------------------
Eventbrite channel. Listing pages are fetched through the Bright Data
request API (they are bot-protected) and parsed from embedded JSON-LD.

Listing pages carry dates without times and no prices, so each listed
event's own page is fetched too (five at a time) to fill in the real
start/end, offers and venue. Enrichment failures keep the listing data.
"""

from __future__ import annotations
import hashlib
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import config
from modules.discovery.base import SearchQuery, SearchResult, post_filter
from modules.discovery.categories import CATEGORY_TO_EVENTBRITE_KEYWORD, infer_category
from modules.discovery.demo_events import eventbrite_demo_events
from modules.discovery.http import fetch_with_retry
from schemas.event import Availability, Event, EventCategory, Location, PriceRange, TimeSlot

logger = logging.getLogger(__name__)

_SERVER_DATA_MARKER = "window.__SERVER_DATA__ ="
_LD_JSON = re.compile(
    r'<script[^>]*type="application/ld\+json"[^>]*>([\s\S]*?)</script>', re.IGNORECASE
)
_EVENT_TYPES = {
    "Event", "SocialEvent", "EducationEvent", "BusinessEvent", "MusicEvent",
    "DanceEvent", "TheaterEvent", "VisualArtsEvent", "LiteraryEvent", "Festival",
    "FoodEvent", "SportsEvent", "ScreeningEvent", "ComedyEvent", "SaleEvent",
    "ExhibitionEvent", "SocialInteraction", "Hackathon", "CourseInstance",
}
ENRICH_BATCH = 5


# ── Parsing ──────────────────────────────────────────────────────────────────

def build_listing_url(base_url: str, city_slug: str, categories: tuple[EventCategory, ...]) -> str:
    keyword = "events"
    for cat in categories:
        if cat in CATEGORY_TO_EVENTBRITE_KEYWORD:
            keyword = f"{CATEGORY_TO_EVENTBRITE_KEYWORD[cat]}--events"
            break
    return f"{base_url.rstrip('/')}/d/{city_slug}/{keyword}/"


def extract_listing_events(html: str) -> list[dict]:
    """
    Events from a listing page: the ItemList inside window.__SERVER_DATA__
    first, then any standalone ld+json Event / ItemList blocks.
    """
    start = html.find(_SERVER_DATA_MARKER)
    if start != -1:
        brace = html.find("{", start + len(_SERVER_DATA_MARKER))
        if brace != -1:
            try:
                server_data, _ = json.JSONDecoder().raw_decode(html, brace)
            except ValueError:
                server_data = None
            for entry in (server_data or {}).get("jsonld") or []:
                if isinstance(entry, dict) and entry.get("@type") == "ItemList":
                    items = entry.get("itemListElement") or []
                    return [i["item"] for i in items if isinstance(i, dict) and i.get("item")]

    events: list[dict] = []
    for block in _LD_JSON.findall(html):
        try:
            data = json.loads(block)
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        if data.get("@type") in ("Event", "SocialEvent"):
            events.append(data)
        elif data.get("@type") == "ItemList":
            for item in data.get("itemListElement") or []:
                inner = item.get("item") if isinstance(item, dict) else None
                if isinstance(inner, dict) and inner.get("@type") == "Event":
                    events.append(inner)
    return events


def extract_event_details(html: str) -> Optional[dict]:
    """The first schema.org Event-like ld+json block with a startDate."""
    for block in _LD_JSON.findall(html):
        try:
            data = json.loads(block)
        except ValueError:
            continue
        if isinstance(data, dict) and data.get("@type") in _EVENT_TYPES and data.get("startDate"):
            return data
    return None


def _dedupe_by_url(rows: list[dict]) -> list[dict]:
    seen: set[str] = set()
    unique = []
    for r in rows:
        url = r.get("url")
        if url:
            key = url.split("?")[0].rstrip("/").lower()
            if key in seen:
                continue
            seen.add(key)
        unique.append(r)
    return unique


def _parse_price(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _availability(offer: Optional[dict]) -> Availability:
    raw = str((offer or {}).get("availability") or "").lower()
    if "limited" in raw:
        return Availability.LIMITED
    if "instock" in raw or "available" in raw:
        return Availability.AVAILABLE
    if "soldout" in raw or "sold_out" in raw:
        return Availability.SOLD_OUT
    return Availability.UNKNOWN


def _parse_dt(raw: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)


def map_eventbrite_row(raw: dict, tz: ZoneInfo, fallback_start: datetime) -> Optional[Event]:
    if not raw.get("name") or not raw.get("url"):
        return None

    start = _parse_dt(raw.get("startDate"), tz) or fallback_start
    end = _parse_dt(raw.get("endDate"), tz) or start + timedelta(hours=2)

    offers = raw.get("offers")
    offer = offers[0] if isinstance(offers, list) and offers else offers if isinstance(offers, dict) else None
    price = None
    if offer:
        low = _parse_price(offer.get("lowPrice", offer.get("price")))
        high = _parse_price(offer.get("highPrice", offer.get("price")))
        if low is not None or high is not None:
            price = PriceRange(
                min=low if low is not None else 0,
                max=high if high is not None else low,
                currency=offer.get("priceCurrency") or config.DEFAULT_CURRENCY,
            )

    venue = raw.get("location") or {}
    address = venue.get("address") or {}
    geo = venue.get("geo") or {}
    if isinstance(address, dict):
        address_str = ", ".join(
            str(p) for p in (address.get("streetAddress"), address.get("addressLocality"),
                             address.get("postalCode")) if p
        ) or config.VENUE_CITY
    else:
        address_str = str(address) or config.VENUE_CITY

    description = raw.get("description") or ""
    image = raw.get("image")
    return Event(
        id="eb_" + hashlib.sha1(raw["url"].encode()).hexdigest()[:10],
        name=raw["name"],
        description=description[:500],
        category=infer_category(raw["name"], description),
        location=Location(
            name=venue.get("name") or config.VENUE_CITY,
            address=address_str,
            lat=float(geo.get("latitude") or config.DEFAULT_LAT),
            lng=float(geo.get("longitude") or config.DEFAULT_LNG),
        ),
        time_slot=TimeSlot(start, end),
        source="eventbrite",
        price=price,
        availability=_availability(offer),
        booking_required=True,
        source_url=raw["url"],
        image_url=image if isinstance(image, str) else None,
    )


# ── Channel ──────────────────────────────────────────────────────────────────

class EventbriteChannel:
    name = "eventbrite"

    def __init__(
        self,
        api_key: str = config.BRIGHT_DATA_API_KEY,
        zone: str = config.BRIGHT_DATA_ZONE,
        api_url: str = config.BRIGHT_DATA_API_URL,
        base_url: str = config.EVENTBRITE_BASE_URL,
        city_slug: str = "singapore--singapore",
        tz_name: str = config.VENUE_TIMEZONE,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.zone = zone
        self.api_url = api_url
        self.base_url = base_url
        self.city_slug = city_slug
        self.tz = ZoneInfo(tz_name)
        self._sleep = sleep

    def search(self, query: SearchQuery) -> SearchResult:
        t0 = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - t0) * 1000)

        if not self.api_key:
            logger.info("[eventbrite] no API key — using demo data")
            events = post_filter(eventbrite_demo_events(query.date, str(self.tz)), query)
            return SearchResult(self.name, events, mode="demo", duration_ms=elapsed())

        try:
            url = build_listing_url(self.base_url, self.city_slug, query.categories)
            logger.info("[eventbrite] fetching %s", url)
            raw = extract_listing_events(self._fetch_html(url))
            in_range = [r for r in raw if self._in_range(r, query.date, query.range_end)]
            logger.info("[eventbrite] parsed %d raw → %d in range %s→%s",
                        len(raw), len(in_range), query.date, query.range_end)

            enriched = self._enrich(_dedupe_by_url(in_range[: query.max_results]))
            fallback_start = datetime.combine(query.date, datetime.min.time(), tzinfo=self.tz)
            events = [e for e in (map_eventbrite_row(r, self.tz, fallback_start) for r in enriched) if e]
            return SearchResult(self.name, post_filter(events, query), mode="live", duration_ms=elapsed())
        except Exception as exc:
            logger.error("[eventbrite] search failed, using demo data: %s", exc)
            events = eventbrite_demo_events(query.date, str(self.tz))[: query.max_results]
            return SearchResult(self.name, events, mode="demo", duration_ms=elapsed(), error=str(exc))

    # ── Internal ──────────────────────────────────────────────────────────────

    def _fetch_html(self, target_url: str) -> str:
        body = {"url": target_url, "format": "raw"}
        if self.zone:
            body["zone"] = self.zone
        response = fetch_with_retry(
            "POST",
            self.api_url,
            source="Bright Data",
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
            sleep=self._sleep,
        )
        return response.text

    @staticmethod
    def _in_range(row: dict, start: date, end: date) -> bool:
        raw = row.get("startDate")
        if not raw:
            return True
        day = str(raw)[:10]
        return start.isoformat() <= day <= end.isoformat()

    def _enrich(self, rows: list[dict]) -> list[dict]:
        enriched = list(rows)
        targets = [(i, r["url"]) for i, r in enumerate(rows) if r.get("url")]
        if not targets:
            return enriched

        def details(url: str) -> Optional[dict]:
            try:
                return extract_event_details(self._fetch_html(url))
            except Exception as exc:
                logger.debug("[eventbrite] detail fetch failed for %s: %s", url, exc)
                return None

        updated = 0
        with ThreadPoolExecutor(max_workers=ENRICH_BATCH) as pool:
            for i in range(0, len(targets), ENRICH_BATCH):
                batch = targets[i:i + ENRICH_BATCH]
                for (index, _), found in zip(batch, pool.map(details, [u for _, u in batch])):
                    if not found:
                        continue
                    original = enriched[index]
                    enriched[index] = {
                        **original,
                        **{k: found[k] for k in ("startDate", "endDate", "offers", "location", "description")
                           if found.get(k)},
                    }
                    updated += 1
        logger.info("[eventbrite] enriched %d/%d events", updated, len(targets))
        return enriched
