"""
Matching index.

Joins bookmaker quotes and candidate markets on a shared key:
    sport|team_set_key

- TeamDirectory: read-mostly alias/override tables, swapped as a whole
- BookIndex: rebuilt every cycle from recent quotes, latest quote per
  (source, outcome), sparse so each event can have a different book set
- MarketMatcher: maps candidate markets onto the same keys and refuses to
  pick when more than one market claims an event
"""

import threading
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

import structlog

from edgescan.errors import AmbiguousMatch, UnresolvedEntity
from edgescan.matching.canonical import (
    event_key,
    index_key,
    normalize_raw,
    resolve,
    team_id,
    team_set_key,
)
from edgescan.matching.teams import ALIAS_TABLES
from edgescan.models.schemas import BookmakerQuote, CandidateMarket

logger = structlog.get_logger()

DRAW_OUTCOME = "Draw"


# =============================================================================
# Team directory
# =============================================================================

@dataclass(frozen=True)
class DirectorySnapshot:
    """One consistent view of the alias and override tables."""
    alias_tables: Mapping[str, Mapping[str, str]]
    user_overrides: Mapping[str, Mapping[str, str]]
    version: int = 0


def _freeze(tables: Mapping[str, Mapping[str, str]]) -> Mapping[str, Mapping[str, str]]:
    return MappingProxyType({
        sport: MappingProxyType(dict(table)) for sport, table in tables.items()
    })


class TeamDirectory:
    """
    Name resolution backed by an immutable snapshot.

    Readers grab the current snapshot once per call, so a concurrent swap()
    never shows them half-updated tables.
    """

    def __init__(
        self,
        alias_tables: Optional[Mapping[str, Mapping[str, str]]] = None,
        user_overrides: Optional[Mapping[str, Mapping[str, str]]] = None,
    ):
        self._snapshot = DirectorySnapshot(
            alias_tables=_freeze(ALIAS_TABLES if alias_tables is None else alias_tables),
            user_overrides=_freeze(user_overrides or {}),
        )
        self._write_lock = threading.Lock()
        self.logger = logger.bind(component="team_directory")

    @property
    def snapshot(self) -> DirectorySnapshot:
        return self._snapshot

    def swap(
        self,
        alias_tables: Optional[Mapping[str, Mapping[str, str]]] = None,
        user_overrides: Optional[Mapping[str, Mapping[str, str]]] = None,
    ) -> DirectorySnapshot:
        """Replace the tables wholesale. Omitted tables are carried over."""
        with self._write_lock:
            current = self._snapshot
            self._snapshot = DirectorySnapshot(
                alias_tables=(
                    _freeze(alias_tables) if alias_tables is not None else current.alias_tables
                ),
                user_overrides=(
                    _freeze(user_overrides) if user_overrides is not None else current.user_overrides
                ),
                version=current.version + 1,
            )
            self.logger.info("Directory swapped", version=self._snapshot.version)
            return self._snapshot

    def with_overrides(self, sport: str, overrides: Mapping[str, str]) -> DirectorySnapshot:
        """Merge operator corrections for one sport (keys are raw names)."""
        with self._write_lock:
            merged = {s: dict(t) for s, t in self._snapshot.user_overrides.items()}
        table = merged.setdefault(sport, {})
        for raw, official in overrides.items():
            table[normalize_raw(raw)] = official
        return self.swap(user_overrides=merged)

    def resolve(self, name: str, sport: str) -> Optional[str]:
        snap = self._snapshot
        return resolve(
            name,
            sport,
            alias_table=snap.alias_tables.get(sport),
            user_overrides=snap.user_overrides.get(sport),
        )

    def require(self, name: str, sport: str) -> str:
        official = self.resolve(name, sport)
        if official is None:
            raise UnresolvedEntity(name, sport)
        return official


# =============================================================================
# Book index
# =============================================================================

@dataclass
class BookEntry:
    """
    Latest quotes for one event, keyed source_id -> outcome_id -> quote.

    Outcome ids are the official team names (plus "Draw" for three-way
    markets), so every source lines up regardless of its own spelling.
    """
    index_key: str
    event_key: str
    sport: str
    home_team: str
    away_team: str
    commence_time: Optional[datetime] = None
    quotes: dict[str, dict[str, BookmakerQuote]] = field(default_factory=dict)

    @property
    def event_name(self) -> str:
        return f"{self.home_team} vs {self.away_team}"

    @property
    def sources(self) -> list[str]:
        return sorted(self.quotes)

    def all_quotes(self) -> list[BookmakerQuote]:
        return [q for by_outcome in self.quotes.values() for q in by_outcome.values()]

    def put(self, quote: BookmakerQuote) -> None:
        by_outcome = self.quotes.setdefault(quote.source_id, {})
        existing = by_outcome.get(quote.outcome_id)
        if existing is None or quote.captured_at >= existing.captured_at:
            by_outcome[quote.outcome_id] = quote


class BookIndex:
    """Per-cycle index of recent quotes grouped by sport|team_set_key."""

    def __init__(self, entries: dict[str, BookEntry], unresolved: Optional[Counter] = None):
        self._entries = entries
        self._by_event = {e.event_key: e for e in entries.values()}
        self.unresolved = unresolved or Counter()

    @classmethod
    def build(
        cls,
        quotes: Iterable[BookmakerQuote],
        directory: TeamDirectory,
        now: datetime,
        lookback_hours: float = 24.0,
    ) -> "BookIndex":
        """
        Build the index from quotes captured within the lookback window.

        Quotes whose teams cannot be resolved are dropped and counted; they
        never stop the rest of the batch from being indexed.
        """
        cutoff = now - timedelta(hours=lookback_hours)
        entries: dict[str, BookEntry] = {}
        unresolved: Counter = Counter()

        for quote in sorted(quotes, key=lambda q: q.captured_at):
            if quote.captured_at < cutoff:
                continue

            home = directory.resolve(quote.home_team, quote.sport)
            away = directory.resolve(quote.away_team, quote.sport)
            if home is None or away is None:
                unresolved[quote.home_team if home is None else quote.away_team] += 1
                continue

            outcome = _resolve_outcome(quote.outcome_id, quote.sport, home, away, directory)
            if outcome is None:
                unresolved[quote.outcome_id] += 1
                continue

            pair = team_set_key(team_id(home), team_id(away))
            key = index_key(quote.sport, pair)
            entry = entries.get(key)
            if entry is None or (
                quote.commence_time is not None and entry.commence_time != quote.commence_time
            ):
                # New event, or a rescheduled/next meeting of the same pair
                entry = BookEntry(
                    index_key=key,
                    event_key=event_key(quote.sport, pair, quote.commence_time),
                    sport=quote.sport,
                    home_team=home,
                    away_team=away,
                    commence_time=quote.commence_time,
                )
                entries[key] = entry

            if outcome != quote.outcome_id:
                quote = replace(quote, outcome_id=outcome)
            entry.put(quote)

        if unresolved:
            logger.info(
                "Unresolved entities dropped",
                count=sum(unresolved.values()),
                names=sorted(unresolved)[:10],
            )

        return cls(entries, unresolved)

    def get(self, key: str) -> Optional[BookEntry]:
        return self._entries.get(key)

    def by_event_key(self, key: str) -> Optional[BookEntry]:
        return self._by_event.get(key)

    def __iter__(self) -> Iterator[BookEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


def _resolve_outcome(
    outcome_name: str,
    sport: str,
    home: str,
    away: str,
    directory: TeamDirectory,
) -> Optional[str]:
    if normalize_raw(outcome_name) == "draw":
        return DRAW_OUTCOME
    if outcome_name in (home, away):
        return outcome_name
    official = directory.resolve(outcome_name, sport)
    if official in (home, away):
        return official
    return None


# =============================================================================
# Candidate-market matching
# =============================================================================

class MatchStatus:
    MATCHED = "matched"
    AMBIGUOUS = "ambiguous"
    UNRESOLVED = "unresolved"
    UNTRADEABLE = "untradeable"


@dataclass(frozen=True)
class MarketMatch:
    """A candidate market tied to an event, with its sides in official names."""
    market: CandidateMarket
    index_key: str
    yes_outcome: str
    no_outcome: str


class MarketMatcher:
    """
    Resolves candidate markets onto book index keys.

    Listings are never modified; what the matcher learns about each one is
    kept in `annotations` (market_id -> status) for the store.
    """

    def __init__(self, directory: TeamDirectory):
        self.directory = directory
        self.logger = logger.bind(component="market_matcher")
        self._by_key: dict[str, list[MarketMatch]] = defaultdict(list)
        self.annotations: dict[str, str] = {}

    def load(self, markets: Iterable[CandidateMarket]) -> "MarketMatcher":
        self._by_key = defaultdict(list)
        self.annotations = {}

        for market in markets:
            if not market.is_active:
                self.annotations[market.market_id] = MatchStatus.UNTRADEABLE
                continue

            yes = self.directory.resolve(market.outcome_id_home, market.sport)
            no = self.directory.resolve(market.outcome_id_away, market.sport)
            if yes is None or no is None or yes == no:
                self.annotations[market.market_id] = MatchStatus.UNRESOLVED
                self.logger.debug(
                    "Unresolved market",
                    market_id=market.market_id,
                    home=market.outcome_id_home,
                    away=market.outcome_id_away,
                )
                continue

            key = index_key(market.sport, team_set_key(team_id(yes), team_id(no)))
            self._by_key[key].append(MarketMatch(market, key, yes, no))

        for key, matches in self._by_key.items():
            status = MatchStatus.MATCHED if len(matches) == 1 else MatchStatus.AMBIGUOUS
            for m in matches:
                self.annotations[m.market.market_id] = status

        return self

    def match(self, entry: BookEntry) -> Optional[MarketMatch]:
        """
        The single candidate market for an event.

        Returns None when nothing matches; raises AmbiguousMatch when more
        than one listing claims the event.
        """
        matches = self._by_key.get(entry.index_key, [])
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousMatch(entry.event_key, [m.market.market_id for m in matches])
        return matches[0]
