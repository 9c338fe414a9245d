"""Team canonicalization and the bookmaker/market matching index."""

from edgescan.matching.canonical import (
    normalize_raw,
    resolve,
    team_id,
    team_set_key,
    event_key,
    index_key,
    split_teams,
)
from edgescan.matching.index import (
    TeamDirectory,
    BookEntry,
    BookIndex,
    MarketMatch,
    MarketMatcher,
    MatchStatus,
)

__all__ = [
    "normalize_raw",
    "resolve",
    "team_id",
    "team_set_key",
    "event_key",
    "index_key",
    "split_teams",
    "TeamDirectory",
    "BookEntry",
    "BookIndex",
    "MarketMatch",
    "MarketMatcher",
    "MatchStatus",
]
