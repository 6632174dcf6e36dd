"""Unit tests for event deduplication."""

from helpers import make_event
from modules.recommendation.deduplicator import (
    EventDeduplicator,
    data_score,
    name_similarity,
    normalize_name,
    normalize_url,
)


class TestNormalisation:
    """Test suite for name and URL normalisation helpers."""

    def test_normalize_name_strips_punctuation_and_case(self) -> None:
        assert normalize_name("  Jazz   Night @ Esplanade! ") == "jazz night esplanade"

    def test_normalize_url(self) -> None:
        assert normalize_url("https://Example.com/e/123/?aff=x") == "https://example.com/e/123"

    def test_name_similarity_bounds(self) -> None:
        assert name_similarity("abc", "abc") == 1.0
        assert name_similarity("", "abc") == 0.0
        assert name_similarity("abcd", "abxd") == 0.75

    def test_data_score_counts_populated_fields(self) -> None:
        sparse = make_event(price=None, rating=None, description="short")
        rich = make_event(image_url="https://img", review_count=12, description="x" * 60)

        assert data_score(sparse) == 0
        assert data_score(rich) == 7


class TestEventDeduplicator:
    """Test suite for EventDeduplicator."""

    def test_empty_and_single_inputs(self) -> None:
        dedup = EventDeduplicator()

        assert dedup.deduplicate([]).events == []
        single = make_event()
        result = dedup.deduplicate([single])
        assert result.events == [single]
        assert result.removed_count == 0

    def test_same_url_is_duplicate(self) -> None:
        """Test that matching URLs merge regardless of name."""
        a = make_event("a", "Jazz Night", source_url="https://x.sg/e/1?ref=home")
        b = make_event("b", "Completely Different", start="09:00", end="10:00",
                       source_url="https://X.sg/e/1/")

        result = EventDeduplicator().deduplicate([a, b])

        assert [e.id for e in result.events] == ["a"]
        assert (result.original_count, result.deduplicated_count, result.removed_count) == (2, 1, 1)

    def test_similar_names_with_overlapping_times(self) -> None:
        """Test that near-identical names in overlapping slots merge."""
        a = make_event("a", "Jazz Night at Esplanade", source_url="https://eventbrite.sg/1")
        b = make_event("b", "Jazz Night @ the Esplanade", start="19:30", end="21:00",
                       source_url="https://eventfinda.sg/2")

        result = EventDeduplicator().deduplicate([a, b])

        assert len(result.events) == 1

    def test_similar_names_at_different_times_are_kept(self) -> None:
        """Test that a recurring event at another time is not a duplicate."""
        a = make_event("a", "Sunset Yoga", start="07:00", end="08:00", source_url="https://x/1")
        b = make_event("b", "Sunset Yoga", start="18:00", end="19:00", source_url="https://x/2")

        assert len(EventDeduplicator().deduplicate([a, b]).events) == 2

    def test_adjacent_slots_do_not_overlap(self) -> None:
        """Test that half-open slots touching at one instant are distinct."""
        a = make_event("a", "Pottery Class", start="10:00", end="12:00", source_url="https://x/1")
        b = make_event("b", "Pottery Class", start="12:00", end="14:00", source_url="https://x/2")

        assert len(EventDeduplicator().deduplicate([a, b]).events) == 2

    def test_richer_record_survives(self) -> None:
        """Test that the duplicate with more data replaces the first one."""
        poor = make_event("poor", rating=None, price=None, source_url="https://x/1")
        rich = make_event("rich", image_url="https://img", review_count=40, source_url="https://x/1")

        result = EventDeduplicator().deduplicate([poor, rich])

        assert [e.id for e in result.events] == ["rich"]

    def test_tie_keeps_earlier_record(self) -> None:
        """Test that equal data scores keep the first occurrence."""
        first = make_event("first", source="eventbrite", source_url="https://x/1")
        second = make_event("second", source="eventfinda", source_url="https://x/1")

        assert [e.id for e in EventDeduplicator().deduplicate([first, second]).events] == ["first"]

    def test_order_of_survivors_follows_first_occurrence(self) -> None:
        """Test that output keeps the position of each group's first member."""
        a = make_event("a", "Alpha Concert", source_url="https://x/a")
        b = make_event("b", "Bravo Workshop", start="10:00", end="11:00", source_url="https://x/b")
        a_dup = make_event("a2", "Alpha Concert", source_url="https://y/a", image_url="https://img")

        result = EventDeduplicator().deduplicate([a, b, a_dup])

        assert [e.id for e in result.events] == ["a2", "b"]
        assert result.removed_count == 1
