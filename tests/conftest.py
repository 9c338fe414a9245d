"""Shared fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from edgescan.config import AggregationSettings, OddsAPISettings, ScanConfig
from edgescan.models.schemas import BookmakerQuote, ProbabilitySnapshot
from edgescan.storage.store import ScanStore

LAKERS = "Los Angeles Lakers"
CELTICS = "Boston Celtics"
NBA = "basketball_nba"


@pytest.fixture
def now():
    return datetime(2026, 1, 10, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def commence(now):
    return now + timedelta(hours=3)


@pytest.fixture
def config():
    return ScanConfig(
        enabled_sports=NBA,
        max_sports_per_tick=1,
        event_workers=2,
        db_path=":memory:",
        odds_api=OddsAPISettings(api_key="test-key", timeout_seconds=5.0),
    )


@pytest.fixture
def store():
    s = ScanStore(":memory:").init_db()
    yield s
    s.close()


@pytest.fixture
def make_quote(now, commence):
    """Factory for Lakers vs Celtics quotes."""
    weights = AggregationSettings()

    def _make(
        source: str,
        outcome: str,
        odds: float,
        at=None,
        home: str = LAKERS,
        away: str = CELTICS,
        sport: str = NBA,
        weight=None,
    ) -> BookmakerQuote:
        return BookmakerQuote.from_decimal(
            source_id=source,
            outcome_id=outcome,
            decimal_odds=odds,
            captured_at=at or now,
            sharpness_weight=weights.weight_for(source) if weight is None else weight,
            sport=sport,
            home_team=home,
            away_team=away,
            commence_time=commence,
        )

    return _make


@pytest.fixture
def make_line(make_quote):
    """Both outcomes of one source's line, priced at fair probability p plus vig."""

    def _make(source: str, p: float, at=None, vig: float = 1.03, **kwargs) -> list[BookmakerQuote]:
        return [
            make_quote(source, LAKERS, round(1 / (p * vig), 4), at=at, **kwargs),
            make_quote(source, CELTICS, round(1 / ((1 - p) * vig), 4), at=at, **kwargs),
        ]

    return _make


@pytest.fixture
def snapshot():
    def _make(event_key, probability, at, source="consensus", outcome=LAKERS):
        return ProbabilitySnapshot(
            event_key=event_key,
            outcome_id=outcome,
            fair_probability=probability,
            captured_at=at,
            source=source,
        )

    return _make
