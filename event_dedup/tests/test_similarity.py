"""
Tests for the similarity engine: per-field scores, renormalization over
absent fields and the duplicate qualification rule.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from event_dedup.models.config import SimilarityConfig, SimilarityThresholds
from event_dedup.models.events import Event
from event_dedup.processing.fingerprint import FingerprintBuilder
from event_dedup.processing.similarity import SimilarityCalculator, fuzzy_text_similarity, haversine_distance

START = datetime(2025, 6, 1, 20, 0, tzinfo=timezone.utc)


@pytest.fixture
def builder() -> FingerprintBuilder:
    return FingerprintBuilder()


@pytest.fixture
def calculator() -> SimilarityCalculator:
    return SimilarityCalculator()


def compare(builder: FingerprintBuilder, calculator: SimilarityCalculator, first: Event, second: Event):
    return calculator.compare(builder.build_fingerprint(first), builder.build_fingerprint(second))


class TestScenarios:
    """End-to-end scenarios for duplicate qualification"""

    def test_same_event_listed_twice_is_duplicate(self, builder, calculator):
        primary = Event(id="a", title="Jazz Night", venue_name="Blue Note", start_time=START)
        duplicate = Event(
            id="b",
            title="jazz night!!",
            venue_name="The Blue Note Club",
            start_time=START + timedelta(minutes=30),
            price_min=25,
        )

        result = compare(builder, calculator, primary, duplicate)

        assert result.title == 1.0
        assert result.venue == 1.0
        assert result.time == 1.0
        assert result.location is None
        assert result.price is None
        assert result.overall == pytest.approx(1.0)
        assert calculator.is_duplicate(result)

    def test_distant_locations_are_rejected_despite_matching_title_and_time(self, builder, calculator):
        first = Event(
            id="a", title="Jazz Night", venue_name="Blue Note", start_time=START,
            latitude=-33.8688, longitude=151.2093, price_min=25,
        )
        second = Event(
            id="b", title="Jazz Night", venue_name="Blue Note", start_time=START,
            latitude=-33.8688 + 0.045, longitude=151.2093, price_min=25,
        )

        result = compare(builder, calculator, first, second)

        assert result.title == 1.0
        assert result.time == 1.0
        assert result.location == 0.0
        assert not calculator.is_duplicate(result)
        assert any("location" in reason for reason in calculator.rejection_reasons(result))


class TestSimilarityCalculator:
    """Per-field scoring rules"""

    def test_compare_is_symmetric(self, builder, calculator):
        first = Event(id="a", title="Summer Music Festival", venue_name="Harbour Stage", start_time=START)
        second = Event(
            id="b", title="Music Festival Summer 2025", venue_name="Harbor Stage",
            start_time=START + timedelta(hours=2),
        )

        forward = compare(builder, calculator, first, second)
        backward = compare(builder, calculator, second, first)

        assert forward.field_scores() == backward.field_scores()
        assert forward.overall == backward.overall

    def test_word_order_does_not_matter(self, builder, calculator):
        result = compare(builder, calculator, Event(title="Night Jazz"), Event(title="Jazz Night"))
        assert result.title == 1.0

    def test_missing_fields_are_renormalized(self, builder, calculator):
        first = Event(title="Open Mic", start_time=START)
        second = Event(title="Open Mic", start_time=START, venue_name="Corner Bar", latitude=1.0, longitude=1.0)

        result = compare(builder, calculator, first, second)

        assert result.compared_fields() == ["title", "time"]
        assert result.overall == pytest.approx(1.0)

    def test_no_comparable_fields_scores_zero(self, builder, calculator):
        result = compare(builder, calculator, Event(), Event(title="Something"))
        assert result.overall == 0.0
        assert not calculator.is_duplicate(result)

    def test_time_score_decays_over_window(self, builder, calculator):
        base = Event(title="Gig", start_time=START)
        three_hours = compare(builder, calculator, base, Event(title="Gig", start_time=START + timedelta(hours=3)))
        seven_hours = compare(builder, calculator, base, Event(title="Gig", start_time=START + timedelta(hours=7)))

        assert three_hours.time == pytest.approx(0.5)
        assert seven_hours.time == 0.0
        assert not calculator.is_duplicate(seven_hours)

    def test_location_scores(self, builder, calculator):
        base = Event(latitude=0.0, longitude=0.0)
        near = compare(builder, calculator, base, Event(latitude=0.0003, longitude=0.0))
        far = compare(builder, calculator, base, Event(latitude=0.05, longitude=0.0))

        assert near.location == 1.0
        assert far.location == 0.0

    def test_price_scores(self, builder, calculator):
        paid_20 = Event(price_min=20)
        assert compare(builder, calculator, paid_20, Event(price_min=15)).price == 1.0
        assert compare(builder, calculator, paid_20, Event(price_min=30)).price == 0.5
        assert compare(builder, calculator, paid_20, Event(price_min=150)).price == 0.0
        assert compare(builder, calculator, paid_20, Event(is_free=True)).price == 0.0
        assert compare(builder, calculator, paid_20, Event()).price is None

    def test_fuzzy_venue_never_reaches_exact_score(self, builder, calculator):
        result = compare(builder, calculator, Event(venue_name="Blue Note Jazz"), Event(venue_name="Blue Note"))
        assert 0.0 < result.venue <= 0.95

    def test_scores_are_bounded(self, builder, calculator):
        events = [
            Event(title="Jazz Night", venue_name="Blue Note", start_time=START, latitude=1.0, longitude=1.0),
            Event(title="Comedy Gala", venue_name="Town Hall", start_time=START + timedelta(days=3),
                  latitude=-1.0, longitude=-1.0, price_min=500),
            Event(title="jazz", is_free=True),
        ]
        for first in events:
            for second in events:
                result = compare(builder, calculator, first, second)
                assert 0.0 <= result.overall <= 1.0
                for score in result.field_scores().values():
                    assert score is None or 0.0 <= score <= 1.0

    def test_title_floor_blocks_strong_other_fields(self, builder):
        calculator = SimilarityCalculator(SimilarityConfig(thresholds=SimilarityThresholds(overall=0.5, title=0.9)))
        first = Event(title="Jazz Night", venue_name="Blue Note", start_time=START, price_min=20)
        second = Event(title="Jazz Brunch", venue_name="Blue Note", start_time=START, price_min=20)

        result = compare(builder, calculator, first, second)

        assert result.overall >= 0.5
        assert not calculator.is_duplicate(result)
        assert any("title" in reason for reason in calculator.rejection_reasons(result))

    def test_reasoning_mentions_matches(self, builder, calculator):
        result = compare(builder, calculator, Event(title="Jazz Night", venue_name="Blue Note"),
                         Event(title="Jazz Night", venue_name="Blue Note"))
        assert "titles are very similar" in result.reasoning
        assert "venues match" in result.reasoning


def test_fuzzy_text_similarity_substring_floor() -> None:
    score = fuzzy_text_similarity("jazz night", "jazz night at the park", ("jazz", "night"),
                                  ("jazz", "night", "at", "the", "park"))
    assert score >= 0.8


def test_haversine_distance_one_degree_at_equator() -> None:
    assert haversine_distance((0.0, 0.0), (0.0, 1.0)) == pytest.approx(111_195, rel=1e-3)
    assert haversine_distance((10.0, 10.0), (10.0, 10.0)) == 0.0
