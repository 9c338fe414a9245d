"""Tests for the team directory, book index and market matcher."""

from datetime import timedelta

import pytest

from edgescan.errors import AmbiguousMatch, UnresolvedEntity
from edgescan.matching.index import (
    BookIndex,
    MarketMatcher,
    MatchStatus,
    TeamDirectory,
)
from edgescan.models.schemas import CandidateMarket, MarketStatus

LAKERS = "Los Angeles Lakers"
CELTICS = "Boston Celtics"
KEY = "basketball_nba|boston_celtics|los_angeles_lakers"


@pytest.fixture
def directory():
    return TeamDirectory()


def market(market_id, home="Lakers", away="Celtics", **kwargs):
    return CandidateMarket(
        market_id=market_id,
        outcome_id_home=home,
        outcome_id_away=away,
        price_yes=0.47,
        price_no=0.55,
        sport="basketball_nba",
        **kwargs,
    )


class TestTeamDirectory:
    """Tests for snapshot swapping."""

    def test_require_raises_for_unknown(self, directory):
        with pytest.raises(UnresolvedEntity):
            directory.require("Springfield Isotopes", "basketball_nba")

    def test_with_overrides_publishes_new_snapshot(self, directory):
        before = directory.snapshot
        assert directory.resolve("Lake Show", "basketball_nba") is None

        after = directory.with_overrides("basketball_nba", {"Lake Show": LAKERS})

        assert after.version == before.version + 1
        assert directory.resolve("lake show", "basketball_nba") == LAKERS
        # Old readers keep their consistent view
        assert before.user_overrides.get("basketball_nba") is None

    def test_snapshot_tables_are_read_only(self, directory):
        with pytest.raises(TypeError):
            directory.snapshot.alias_tables["basketball_nba"]["xyz"] = LAKERS

    def test_swap_carries_over_omitted_tables(self, directory):
        directory.swap(user_overrides={"basketball_nba": {"lake show": LAKERS}})
        directory.swap(alias_tables={"basketball_nba": {"lal": LAKERS, "bos": CELTICS}})
        assert directory.resolve("Lake Show", "basketball_nba") == LAKERS
        assert directory.resolve("GSW", "basketball_nba") is None


class TestBookIndex:
    """Tests for building the per-cycle index."""

    def test_spelling_variants_share_one_entry(self, directory, make_quote, now):
        quotes = [
            make_quote("pinnacle", LAKERS, 1.80),
            make_quote("pinnacle", CELTICS, 2.10),
            make_quote("fanduel", "Lakers", 1.85, home="LA Lakers", away="Celtics"),
            make_quote("fanduel", "Celtics", 2.00, home="LA Lakers", away="Celtics"),
        ]
        index = BookIndex.build(quotes, directory, now)

        assert len(index) == 1
        entry = index.get(KEY)
        assert entry.sources == ["fanduel", "pinnacle"]
        assert set(entry.quotes["fanduel"]) == {LAKERS, CELTICS}
        assert entry.event_key == f"{KEY}|{entry.commence_time.date().isoformat()}"
        assert index.by_event_key(entry.event_key) is entry

    def test_keeps_latest_quote_per_source_and_outcome(self, directory, make_quote, now):
        quotes = [
            make_quote("pinnacle", LAKERS, 1.70, at=now),
            make_quote("pinnacle", LAKERS, 1.90, at=now - timedelta(minutes=5)),
            make_quote("pinnacle", CELTICS, 2.10, at=now),
        ]
        entry = BookIndex.build(quotes, directory, now).get(KEY)
        assert entry.quotes["pinnacle"][LAKERS].decimal_odds == 1.70

    def test_drops_quotes_outside_lookback(self, directory, make_quote, now):
        quotes = [make_quote("pinnacle", LAKERS, 1.8, at=now - timedelta(hours=25))]
        assert len(BookIndex.build(quotes, directory, now, lookback_hours=24)) == 0

    def test_unresolved_quotes_are_counted_not_fatal(self, directory, make_quote, now):
        quotes = [
            make_quote("pinnacle", LAKERS, 1.80),
            make_quote("pinnacle", CELTICS, 2.10),
            make_quote("pinnacle", "Springfield Isotopes", 1.9, home="Springfield Isotopes"),
        ]
        index = BookIndex.build(quotes, directory, now)

        assert len(index) == 1
        assert sum(index.unresolved.values()) == 1

    def test_draw_outcome_is_kept(self, directory, make_quote, now):
        quotes = [
            make_quote("pinnacle", "Arsenal", 2.0, home="Arsenal", away="Chelsea", sport="soccer_epl"),
            make_quote("pinnacle", "Chelsea", 3.8, home="Arsenal", away="Chelsea", sport="soccer_epl"),
            make_quote("pinnacle", "draw", 3.5, home="Arsenal", away="Chelsea", sport="soccer_epl"),
        ]
        entry = next(iter(BookIndex.build(quotes, directory, now)))
        assert "Draw" in entry.quotes["pinnacle"]


class TestMarketMatcher:
    """Tests for mapping candidate markets onto events."""

    @pytest.fixture
    def entry(self, directory, make_quote, now):
        quotes = [make_quote("pinnacle", LAKERS, 1.8), make_quote("pinnacle", CELTICS, 2.1)]
        return BookIndex.build(quotes, directory, now).get(KEY)

    def test_single_match(self, directory, entry):
        matcher = MarketMatcher(directory).load([market("m1")])
        match = matcher.match(entry)

        assert match.market.market_id == "m1"
        assert match.yes_outcome == LAKERS
        assert match.no_outcome == CELTICS
        assert matcher.annotations == {"m1": MatchStatus.MATCHED}

    def test_orientation_follows_listing(self, directory, entry):
        match = MarketMatcher(directory).load([market("m1", home="BOS", away="LAL")]).match(entry)
        assert match.yes_outcome == CELTICS

    def test_no_match(self, directory, entry):
        assert MarketMatcher(directory).load([]).match(entry) is None

    def test_ambiguous_match_raises(self, directory, entry):
        matcher = MarketMatcher(directory).load([market("m1"), market("m2", home="LAL", away="BOS")])

        with pytest.raises(AmbiguousMatch) as exc:
            matcher.match(entry)

        assert sorted(exc.value.market_ids) == ["m1", "m2"]
        assert matcher.annotations == {"m1": MatchStatus.AMBIGUOUS, "m2": MatchStatus.AMBIGUOUS}

    def test_inactive_and_unresolved_listings(self, directory, entry):
        matcher = MarketMatcher(directory).load([
            market("closed", status=MarketStatus.INACTIVE),
            market("weird", home="Springfield Isotopes"),
        ])
        assert matcher.match(entry) is None
        assert matcher.annotations["closed"] == MatchStatus.UNTRADEABLE
        assert matcher.annotations["weird"] == MatchStatus.UNRESOLVED
