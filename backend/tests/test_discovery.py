"""Unit tests for the discovery channels and their HTTP layer."""

import json
from datetime import datetime

import pytest
import requests

from helpers import PLAN_DATE, SGT
from modules.discovery import http as discovery_http
from modules.discovery.base import SearchQuery, post_filter
from modules.discovery.categories import infer_category, infer_category_from_eventfinda
from modules.discovery.eventbrite import (
    EventbriteChannel,
    build_listing_url,
    extract_event_details,
    extract_listing_events,
    map_eventbrite_row,
)
from modules.discovery.eventfinda import EventfindaChannel, map_eventfinda_row
from modules.discovery.http import fetch_with_retry
from modules.errors import DiscoveryError, NonRetryableHTTPError
from schemas.event import Availability, EventCategory


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        return self._payload


class ScriptedTransport:
    """Stands in for requests.request; replays responses or raises exceptions in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _ld_json(data: dict) -> str:
    return f'<script type="application/ld+json">{json.dumps(data)}</script>'


class TestFetchWithRetry:
    """Test suite for the retrying HTTP wrapper."""

    def test_retries_server_errors_and_rate_limits(self, monkeypatch) -> None:
        transport = ScriptedTransport(
            FakeResponse(503),
            FakeResponse(429, headers={"Retry-After": "7"}),
            FakeResponse(200, payload={"ok": True}),
        )
        monkeypatch.setattr(discovery_http.requests, "request", transport)
        sleeps = []

        response = fetch_with_retry("GET", "https://api.test/x", max_retries=3, base_delay_s=0.5,
                                    sleep=sleeps.append)

        assert response.json() == {"ok": True}
        assert sleeps == [0.5, 7.0]
        assert len(transport.calls) == 3

    def test_client_error_is_not_retried(self, monkeypatch) -> None:
        transport = ScriptedTransport(FakeResponse(404, text="not here"))
        monkeypatch.setattr(discovery_http.requests, "request", transport)

        with pytest.raises(NonRetryableHTTPError) as exc_info:
            fetch_with_retry("GET", "https://api.test/x", sleep=lambda s: None)

        assert exc_info.value.status_code == 404
        assert len(transport.calls) == 1

    def test_gives_up_after_max_retries(self, monkeypatch) -> None:
        transport = ScriptedTransport(requests.ConnectionError("refused"))
        monkeypatch.setattr(discovery_http.requests, "request", transport)
        sleeps = []

        with pytest.raises(DiscoveryError, match="after 2 retries"):
            fetch_with_retry("GET", "https://api.test/x", max_retries=2, base_delay_s=1.0,
                             sleep=sleeps.append)

        assert sleeps == [1.0, 2.0]
        assert len(transport.calls) == 3


class TestCategories:
    """Test suite for category inference."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Jazz Night at Esplanade", EventCategory.CONCERT),
            ("Sunset Yoga", EventCategory.SPORTS),
            ("Night Food Festival", EventCategory.FESTIVAL),
            ("Pottery Workshop", EventCategory.WORKSHOP),
            ("Something Else Entirely", EventCategory.OTHER),
        ],
    )
    def test_infer_category(self, name, expected) -> None:
        assert infer_category(name) is expected

    def test_keywords_match_whole_words(self) -> None:
        assert infer_category("Brunch Club") is EventCategory.DINING
        assert infer_category("Runway Preview") is EventCategory.OTHER

    def test_eventfinda_slug_wins(self) -> None:
        assert infer_category_from_eventfinda("Jazz", None, "food-wine") is EventCategory.DINING
        assert infer_category_from_eventfinda("Jazz", None, "unknown-slug") is EventCategory.CONCERT


class TestPostFilter:
    """Test suite for the per-channel output filter."""

    def test_filters(self, event_factory) -> None:
        events = [
            event_factory("sold", availability=Availability.SOLD_OUT),
            event_factory("pricey", price=(90, 120)),
            event_factory("no-price", price=None),
            event_factory("dining", category=EventCategory.DINING),
            event_factory("ok"),
        ]
        query = SearchQuery(date=PLAN_DATE, budget_max=80, categories=(EventCategory.CONCERT,))

        assert [e.id for e in post_filter(events, query)] == ["no-price", "ok"]

    def test_max_results(self, event_factory) -> None:
        events = [event_factory(f"e{i}") for i in range(5)]

        assert len(post_filter(events, SearchQuery(date=PLAN_DATE, max_results=2))) == 2


class TestEventfindaChannel:
    """Test suite for the Eventfinda channel."""

    def test_demo_without_credentials(self) -> None:
        channel = EventfindaChannel(username="", password="")

        result = channel.search(SearchQuery(date=PLAN_DATE, budget_max=30))

        assert result.mode == "demo"
        assert result.error is None
        assert [e.id for e in result.events] == ["ef_demo_1", "ef_demo_2", "ef_demo_3", "ef_demo_4"]
        assert result.events[0].time_slot.start.tzinfo is not None
        assert result.events[0].time_slot.start.date() == PLAN_DATE

    def test_live_search_maps_rows(self, monkeypatch) -> None:
        rows = {"events": [
            {"id": 1, "name": "Cancelled Gig", "url": "https://ef.sg/1", "is_cancelled": True},
            {
                "id": 42,
                "name": "Indie Night",
                "url": "https://www.eventfinda.sg/2030/indie-night",
                "description": "Local bands live",
                "datetime_start": "2030-03-15 20:00:00",
                "datetime_end": "2030-03-15 23:00:00",
                "category": {"url_slug": "concerts-gig-guide"},
                "location": {"name": "The Projector"},
                "point": {"lat": 1.30, "lng": 103.86},
                "ticket_types": {"ticket_types": [{"price": "25.00"}, {"price": "40"}, {"price": ""}]},
            },
        ]}
        transport = ScriptedTransport(FakeResponse(200, payload=rows))
        monkeypatch.setattr(discovery_http.requests, "request", transport)
        channel = EventfindaChannel(username="u", password="p", api_base="https://api.test/v2/",
                                    sleep=lambda s: None)

        result = channel.search(SearchQuery(date=PLAN_DATE, budget_max=50))

        assert result.mode == "live"
        assert len(result.events) == 1
        event = result.events[0]
        assert event.id == "ef_42"
        assert event.category is EventCategory.CONCERT
        assert (event.price.min, event.price.max) == (25.0, 40.0)
        assert event.time_slot.start.tzinfo is not None
        assert event.booking_required

        method, url, kwargs = transport.calls[0]
        assert (method, url) == ("GET", "https://api.test/v2/events.json")
        assert kwargs["auth"] == ("u", "p")
        assert kwargs["params"]["price_max"] == "50"

    def test_live_failure_falls_back_to_demo(self, monkeypatch) -> None:
        monkeypatch.setattr(discovery_http.requests, "request",
                            ScriptedTransport(FakeResponse(401, text="bad credentials")))
        channel = EventfindaChannel(username="u", password="wrong", sleep=lambda s: None)

        result = channel.search(SearchQuery(date=PLAN_DATE))

        assert result.mode == "demo"
        assert "401" in result.error
        assert len(result.events) == 5

    def test_map_row_free_event(self) -> None:
        fallback = PLAN_DATE
        row = {"id": 7, "name": "Free Yoga", "url": "https://ef.sg/7", "is_free": True}

        event = map_eventfinda_row(row, SGT, datetime.combine(fallback, datetime.min.time(), tzinfo=SGT))

        assert event.price.is_free
        assert not event.booking_required
        assert event.time_slot.duration_minutes == 120


class TestEventbriteParsing:
    """Test suite for Eventbrite page parsing."""

    def test_listing_url(self) -> None:
        url = build_listing_url("https://www.eventbrite.sg/", "singapore--singapore", (EventCategory.CONCERT,))

        assert url == "https://www.eventbrite.sg/d/singapore--singapore/music--events/"
        assert build_listing_url("https://x", "c", ()).endswith("/d/c/events/")

    def test_listing_from_server_data(self) -> None:
        server_data = {"jsonld": [{"@type": "ItemList", "itemListElement": [
            {"item": {"name": "A", "url": "https://e/1"}},
            {"item": {"name": "B", "url": "https://e/2"}},
        ]}]}
        html = f"<html><script>window.__SERVER_DATA__ = {json.dumps(server_data)};</script></html>"

        assert [e["name"] for e in extract_listing_events(html)] == ["A", "B"]

    def test_listing_from_ld_json_blocks(self) -> None:
        html = _ld_json({"@type": "Event", "name": "Solo", "url": "https://e/3"}) + "<script type=\"application/ld+json\">{broken</script>"

        assert [e["name"] for e in extract_listing_events(html)] == ["Solo"]

    def test_event_details_need_start_date(self) -> None:
        html = _ld_json({"@type": "Organization", "name": "Org"}) + _ld_json(
            {"@type": "MusicEvent", "name": "Gig", "startDate": "2030-03-15T20:00:00+08:00"})

        assert extract_event_details(html)["name"] == "Gig"
        assert extract_event_details(_ld_json({"@type": "Event", "name": "No date"})) is None

    def test_map_row(self) -> None:
        row = {
            "name": "Jazz Under the Stars",
            "url": "https://www.eventbrite.sg/e/jazz-123",
            "startDate": "2030-03-15T19:30:00+08:00",
            "endDate": "2030-03-15T22:00:00+08:00",
            "offers": [{"lowPrice": "20", "highPrice": "40", "priceCurrency": "SGD",
                        "availability": "https://schema.org/InStock"}],
            "location": {"name": "Fort Canning", "address": {"streetAddress": "River Valley Rd",
                                                            "postalCode": "179037"}},
        }

        event = map_eventbrite_row(row, SGT, datetime.combine(PLAN_DATE, datetime.min.time(), tzinfo=SGT))

        assert event.id.startswith("eb_")
        assert event.category is EventCategory.CONCERT
        assert (event.price.min, event.price.max) == (20.0, 40.0)
        assert event.availability is Availability.AVAILABLE
        assert event.location.address == "River Valley Rd, 179037"
        assert event.time_slot.duration_minutes == 150


class TestEventbriteChannel:
    """Test suite for the Eventbrite channel."""

    def test_demo_without_api_key(self) -> None:
        result = EventbriteChannel(api_key="").search(SearchQuery(date=PLAN_DATE, budget_max=30))

        assert result.mode == "demo"
        assert [e.id for e in result.events] == ["eb_demo_1", "eb_demo_2", "eb_demo_4", "eb_demo_5"]

    def test_live_search_enriches_listing(self, monkeypatch) -> None:
        listing = _ld_json({"@type": "ItemList", "itemListElement": [
            {"item": {"@type": "Event", "name": "Jazz Under the Stars",
                      "url": "https://www.eventbrite.sg/e/jazz-1", "startDate": "2030-03-15"}},
            {"item": {"@type": "Event", "name": "Far Future Gig",
                      "url": "https://www.eventbrite.sg/e/gig-2", "startDate": "2031-01-01"}},
        ]})
        detail = _ld_json({"@type": "MusicEvent", "name": "Jazz Under the Stars",
                           "startDate": "2030-03-15T19:30:00+08:00",
                           "endDate": "2030-03-15T22:00:00+08:00",
                           "offers": {"price": "35", "availability": "LimitedAvailability"}})

        def transport(method, url, **kwargs):
            target = kwargs["json"]["url"]
            return FakeResponse(200, text=listing if "/d/" in target else detail)

        monkeypatch.setattr(discovery_http.requests, "request", transport)
        channel = EventbriteChannel(api_key="key", api_url="https://brightdata.test/request",
                                    sleep=lambda s: None)

        result = channel.search(SearchQuery(date=PLAN_DATE))

        assert result.mode == "live"
        assert [e.name for e in result.events] == ["Jazz Under the Stars"]
        event = result.events[0]
        assert event.time_slot.start.hour == 19
        assert (event.price.min, event.price.max) == (35.0, 35.0)
        assert event.availability is Availability.LIMITED

    def test_live_failure_falls_back_to_demo(self, monkeypatch) -> None:
        monkeypatch.setattr(discovery_http.requests, "request",
                            ScriptedTransport(requests.Timeout("slow")))
        channel = EventbriteChannel(api_key="key", sleep=lambda s: None)

        result = channel.search(SearchQuery(date=PLAN_DATE))

        assert result.mode == "demo"
        assert result.error
        assert len(result.events) == 5
