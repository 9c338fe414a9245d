"""Tests for participant-name canonicalization."""

from datetime import datetime, timezone

import pytest

from edgescan.matching.canonical import (
    event_key,
    normalize_raw,
    resolve,
    split_teams,
    team_id,
    team_set_key,
)
from edgescan.matching.teams import NBA_TEAMS, NHL_TEAMS


class TestNormalization:
    """Tests for slugs and keys."""

    def test_normalize_raw(self):
        assert normalize_raw("  St. Louis   Blues! ") == "st louis blues"

    def test_team_id(self):
        assert team_id("Toronto Maple Leafs") == "toronto_maple_leafs"

    def test_team_set_key_is_order_independent(self):
        a, b = team_id("Boston Celtics"), team_id("Los Angeles Lakers")
        assert team_set_key(a, b) == team_set_key(b, a)
        assert team_set_key(a, b) == "boston_celtics|los_angeles_lakers"

    def test_event_key_uses_utc_date(self):
        commence = datetime(2026, 1, 5, 0, 30, tzinfo=timezone.utc)
        key = event_key("basketball_nba", "boston_celtics|los_angeles_lakers", commence)
        assert key == "basketball_nba|boston_celtics|los_angeles_lakers|2026-01-05"

    def test_event_key_without_start_time(self):
        assert event_key("basketball_nba", "a|b", None).endswith("|undated")


class TestResolve:
    """Tests for the resolution order."""

    def test_exact_official_name(self):
        assert resolve("los angeles lakers", "basketball_nba", NBA_TEAMS) == "Los Angeles Lakers"

    def test_alias(self):
        assert resolve("GSW", "basketball_nba", NBA_TEAMS) == "Golden State Warriors"
        assert resolve("LA Lakers", "basketball_nba", NBA_TEAMS) == "Los Angeles Lakers"

    def test_same_alias_differs_by_sport(self):
        assert resolve("TOR", "basketball_nba", NBA_TEAMS) == "Toronto Raptors"
        assert resolve("TOR", "icehockey_nhl", NHL_TEAMS) == "Toronto Maple Leafs"

    def test_override_beats_alias(self):
        overrides = {"lal": "Los Angeles Clippers"}
        assert resolve("LAL", "basketball_nba", NBA_TEAMS, overrides) == "Los Angeles Clippers"

    def test_exact_name_beats_override(self):
        overrides = {"boston celtics": "Brooklyn Nets"}
        assert resolve("Boston Celtics", "basketball_nba", NBA_TEAMS, overrides) == "Boston Celtics"

    def test_nickname(self):
        assert resolve("Lakers", "basketball_nba", NBA_TEAMS) == "Los Angeles Lakers"
        assert resolve("76ers", "basketball_nba", NBA_TEAMS) == "Philadelphia 76ers"

    def test_shared_nickname_is_unresolved(self):
        table = {"nyr": "New York Rangers", "tex": "Texas Rangers"}
        assert resolve("Rangers", "mixed", table) is None

    @pytest.mark.parametrize("name", ["Springfield Isotopes", "", "   "])
    def test_unknown_names(self, name):
        assert resolve(name, "basketball_nba", NBA_TEAMS) is None


class TestSplitTeams:
    """Tests for market-title parsing."""

    @pytest.mark.parametrize("title", [
        "Lakers vs Celtics",
        "Lakers vs. Celtics",
        "Lakers @ Celtics",
        "Lakers v Celtics",
        "Lakers vs. Celtics - Game 3",
    ])
    def test_two_team_titles(self, title):
        assert split_teams(title) == ("Lakers", "Celtics")

    def test_non_matchup_title(self):
        assert split_teams("Will the Lakers win the 2026 title?") is None
