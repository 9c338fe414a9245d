"""
Scan pipeline.

Two independent cadences:

- watch_tick (minutes): fetch a rotating subset of sports, rebuild the index,
  aggregate every event with fresh quotes, record snapshots, measure
  movement and admit the biggest consensus moves into the active tier.
  Also keeps signal-state events fresh, retires finished events and looks
  for correlated combinations.
- active_tick (about a minute): re-poll only the hot events, sample them,
  confirm or drop, and score confirmed events against their market.

Per-event work runs in a thread pool; writes to a single event's watch
state go through EscalationManager's per-key locks. Only StoreUnavailable
aborts a tick; source, event and market errors are logged and skipped.
"""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol

import structlog

from edgescan.config import ScanConfig, get_settings
from edgescan.engine.aggregator import AggregatedMarket, ProbabilityAggregator
from edgescan.engine.escalation import (
    MARKET_INACTIVE,
    REARMABLE,
    STARTED,
    EscalationManager,
)
from edgescan.engine.movement import MovementDetector, MovementReading
from edgescan.engine.scorer import EdgeScorer
from edgescan.engine.staking import StakingEngine
from edgescan.errors import (
    AmbiguousMatch,
    DegenerateMarket,
    QuotaExhausted,
    SourceUnavailable,
    StoreUnavailable,
)
from edgescan.feeds.markets import MarketSource
from edgescan.matching.index import BookEntry, BookIndex, MarketMatcher, MatchStatus, TeamDirectory
from edgescan.models.schemas import (
    BookmakerQuote,
    EventWatchState,
    ProbabilitySnapshot,
    Side,
    SignalOpportunity,
    WatchState,
    utc_now,
)
from edgescan.storage.store import ScanStore
from edgescan.utils.logging import SignalJournal

logger = structlog.get_logger()


class QuoteSource(Protocol):
    async def fetch_odds(
        self, sport: str, captured_at: Optional[datetime] = None
    ) -> list[BookmakerQuote]:
        ...

    def quota_available(self, requests: int = 1) -> bool:
        ...


@dataclass
class TickReport:
    """What one tick did."""
    tier: str
    started_at: datetime
    sports: list[str] = field(default_factory=list)
    quotes: int = 0
    events: int = 0
    snapshots: int = 0
    escalated: int = 0
    confirmed: int = 0
    dropped: int = 0
    retired: int = 0
    signals: int = 0
    withdrawn: int = 0
    correlated: int = 0
    source_errors: int = 0
    degenerate: int = 0
    ambiguous: int = 0
    unresolved: int = 0
    quota_exhausted: bool = False
    aborted: bool = False
    duration_ms: float = 0.0

    def to_log(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["duration_ms"] = round(self.duration_ms, 1)
        return data


@dataclass
class EventUpdate:
    """Aggregation result for one event, produced in a worker thread."""
    entry: BookEntry
    aggregated: AggregatedMarket
    snapshots: list[ProbabilitySnapshot]

    @property
    def primary_probability(self) -> float:
        return self.aggregated.fair[self.entry.home_team]


class ScanPipeline:
    """Runs watch and active ticks against the store."""

    def __init__(
        self,
        quote_source: QuoteSource,
        market_source: MarketSource,
        store: ScanStore,
        config: Optional[ScanConfig] = None,
        directory: Optional[TeamDirectory] = None,
        journal: Optional[SignalJournal] = None,
    ):
        self.config = config or get_settings()
        self.quote_source = quote_source
        self.market_source = market_source
        self.store = store
        self.directory = directory or TeamDirectory()
        self.journal = journal

        self.aggregator = ProbabilityAggregator(self.config.aggregation)
        self.detector = MovementDetector(self.config.movement)
        self.escalation = EscalationManager(self.config.movement)
        self.scorer = EdgeScorer(self.config.scoring)
        self.staking = StakingEngine(self.config.staking)

        self.logger = logger.bind(component="pipeline")
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.event_workers,
            thread_name_prefix="edgescan-event",
        )
        self._rotation = 0
        self._loaded = False

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.escalation.load(self.store.load_watch_states())
            self._loaded = True

    # =========================================================================
    # Fetching
    # =========================================================================

    def next_sports(self) -> list[str]:
        """Rotating, bounded subset of enabled sports for this tick."""
        sports = self.config.sports
        if not sports:
            return []
        count = min(self.config.max_sports_per_tick, len(sports))
        start = self._rotation % len(sports)
        self._rotation += count
        return [sports[(start + i) % len(sports)] for i in range(count)]

    async def _fetch_quotes(
        self,
        sports: list[str],
        now: datetime,
        report: TickReport,
    ) -> tuple[list[BookmakerQuote], list[str]]:
        """Fetch sports concurrently. Returns quotes and the sports that answered."""
        if not sports:
            return [], []
        if not self.quote_source.quota_available(len(sports)):
            self.logger.warning("Quota exhausted, skipping fetch", sports=sports)
            report.quota_exhausted = True
            return [], []

        semaphore = asyncio.Semaphore(self.config.odds_api.max_concurrency)
        timeout = self.config.odds_api.timeout_seconds

        async def fetch(sport: str) -> list[BookmakerQuote]:
            async with semaphore:
                return await asyncio.wait_for(
                    self.quote_source.fetch_odds(sport, captured_at=now),
                    timeout=timeout,
                )

        results = await asyncio.gather(*(fetch(s) for s in sports), return_exceptions=True)

        quotes: list[BookmakerQuote] = []
        fresh: list[str] = []
        for sport, result in zip(sports, results):
            if isinstance(result, QuotaExhausted):
                report.quota_exhausted = True
                report.source_errors += 1
                self.logger.warning("Quota exhausted", sport=sport, reason=result.reason)
            elif isinstance(result, SourceUnavailable):
                report.source_errors += 1
                self.logger.warning("Source unavailable", sport=sport, reason=result.reason)
            elif isinstance(result, asyncio.TimeoutError):
                report.source_errors += 1
                self.logger.warning("Source timed out", sport=sport, timeout=timeout)
            elif isinstance(result, Exception):
                report.source_errors += 1
                self.logger.error("Source failed", sport=sport, error=repr(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                quotes.extend(result)
                fresh.append(sport)

        return quotes, fresh

    async def _load_matcher(self, sports: Iterable[str]) -> MarketMatcher:
        matcher = MarketMatcher(self.directory)
        try:
            markets = await self.market_source.fetch_markets(list(sports))
        except SourceUnavailable as e:
            self.logger.warning("Market source unavailable", reason=e.reason)
            markets = []
        return matcher.load(markets)

    def _build_index(self, now: datetime, report: TickReport) -> BookIndex:
        lookback = self.config.index_lookback_hours
        quotes = self.store.recent_quotes(now - timedelta(hours=lookback))
        index = BookIndex.build(quotes, self.directory, now, lookback)
        report.unresolved = sum(index.unresolved.values())
        return index

    # =========================================================================
    # Per-event work (worker threads)
    # =========================================================================

    def _aggregate_event(self, entry: BookEntry, now: datetime) -> Optional[EventUpdate]:
        try:
            aggregated = self.aggregator.aggregate(entry.all_quotes(), entry.event_key)
        except DegenerateMarket as e:
            self.logger.debug("Degenerate market skipped", event_key=entry.event_key, reason=e.reason)
            return None
        if entry.home_team not in aggregated.fair:
            return None

        snapshots = []
        for outcome, probability in aggregated.fair.items():
            if 0 < probability < 1:
                snapshots.append(ProbabilitySnapshot(entry.event_key, outcome, probability, now))
        for source, line in aggregated.source_fair.items():
            for outcome, probability in line.items():
                if 0 < probability < 1:
                    snapshots.append(
                        ProbabilitySnapshot(entry.event_key, outcome, probability, now, source=source)
                    )
        return EventUpdate(entry, aggregated, snapshots)

    def _measure(self, entry: BookEntry, now: datetime) -> Optional[MovementReading]:
        since = now - timedelta(minutes=self.config.movement.lookback_minutes)
        history = self.store.snapshots_for(entry.event_key, since, outcome_id=entry.home_team)
        return self.detector.measure(history, now, outcome_id=entry.home_team)

    def _observe_event(self, update: EventUpdate, now: datetime) -> Optional[MovementReading]:
        """Observe one event; returns its reading when it qualifies for promotion."""
        entry = update.entry
        reading = self._measure(entry, now)
        state = self.escalation.observe(
            entry.event_key,
            update.primary_probability,
            now,
            reading=reading,
            event_name=entry.event_name,
            sport=entry.sport,
            primary_outcome=entry.home_team,
            commence_time=entry.commence_time,
        )
        if state.watch_state == WatchState.WATCHING and self.detector.qualifies(reading):
            return reading
        return None

    def _sample_event(self, update: EventUpdate, now: datetime) -> Optional[EventWatchState]:
        reading = self._measure(update.entry, now)
        return self.escalation.sample(
            update.entry.event_key,
            update.primary_probability,
            now,
            velocity=reading.velocity if reading is not None else None,
        )

    async def _run_all(self, fn, items: Iterable, now: datetime) -> list:
        loop = asyncio.get_running_loop()
        futures = [loop.run_in_executor(self._executor, fn, item, now) for item in items]
        return await asyncio.gather(*futures)

    # =========================================================================
    # Scoring
    # =========================================================================

    def _score_event(
        self,
        update: EventUpdate,
        matcher: MarketMatcher,
        now: datetime,
        report: TickReport,
    ) -> list[SignalOpportunity]:
        entry = update.entry
        try:
            match = matcher.match(entry)
        except AmbiguousMatch as e:
            report.ambiguous += 1
            self.logger.warning(
                "Ambiguous market match",
                event_key=e.event_key,
                market_ids=e.market_ids,
            )
            return []
        if match is None:
            return []

        state = self.escalation.get(entry.event_key)
        confirming = None
        reading = self._measure(entry, now)
        if reading is not None:
            confirming = reading.confirming_sources

        signals = []
        for score in self.scorer.score(update.aggregated, match, now, entry.commence_time, confirming):
            if not score.accepted:
                continue
            stake = self.staking.single_leg(score.fair_probability, score.market_price)
            if stake <= 0:
                continue
            existing = self.store.get_signal(entry.event_key, score.side)
            signals.append(
                self.scorer.build_signal(
                    score,
                    entry.event_key,
                    match,
                    now,
                    commence_time=entry.commence_time,
                    stake_pct=stake,
                    sport=entry.sport,
                    event_name=entry.event_name,
                    existing=existing,
                )
            )

        stale = set(Side) - {s.side for s in signals}
        withdrawn = self.store.expire_sides(entry.event_key, stale, now)
        if withdrawn:
            report.withdrawn += withdrawn
            self.logger.info(
                "Signal withdrawn",
                event_key=entry.event_key,
                sides=sorted(s.value for s in stale),
            )

        if not signals:
            return []

        self.store.upsert_signals(signals)
        if state is not None and state.watch_state in (WatchState.CONFIRMED, WatchState.SIGNAL):
            best = max(s.edge_pct for s in signals)
            self.escalation.mark_signal(entry.event_key, match.market.market_id, now, edge_pct=best)
        for signal in signals:
            self.logger.info("Signal", **signal.to_log())
            if self.journal is not None:
                self.journal.log_signal(signal, now)
        return signals

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def _retire_finished(
        self,
        matcher: Optional[MarketMatcher],
        now: datetime,
        report: TickReport,
    ) -> list[str]:
        retired = []
        for state in self.escalation.states():
            if state.watch_state == WatchState.DROPPED:
                continue
            reason = None
            if state.commence_time is not None and state.commence_time <= now:
                reason = STARTED
            elif (
                matcher is not None
                and state.watch_state == WatchState.SIGNAL
                and state.matched_market_id is not None
                and matcher.annotations.get(state.matched_market_id) != MatchStatus.MATCHED
            ):
                reason = MARKET_INACTIVE
            if reason is not None:
                self.escalation.retire(state.event_key, reason, now)
                retired.append(state.event_key)
        report.retired += len(retired)
        return retired

    def _archive(self, now: datetime) -> None:
        """Forget dropped events that can never be re-armed."""
        cutoff = now - timedelta(hours=self.config.index_lookback_hours)
        stale = [
            s.event_key
            for s in self.escalation.in_state(WatchState.DROPPED)
            if s.drop_reason not in REARMABLE and s.updated_at is not None and s.updated_at < cutoff
        ]
        if stale:
            self.store.delete_watch_states(stale)
            for key in stale:
                self.escalation.forget(key)

    def _persist_states(self, report: TickReport, before: dict[str, WatchState]) -> None:
        confirmed = (WatchState.CONFIRMED, WatchState.SIGNAL)
        states = self.escalation.states()
        for state in states:
            previous = before.get(state.event_key)
            if previous == state.watch_state:
                continue
            # Active -> confirmed -> signal can happen inside one tick
            if state.watch_state in confirmed and previous not in confirmed:
                report.confirmed += 1
            elif state.watch_state == WatchState.DROPPED:
                report.dropped += 1
        self.store.upsert_watch_states(states)
        self.store.insert_movement_logs(self.escalation.drain_logs())

    # =========================================================================
    # Ticks
    # =========================================================================

    async def watch_tick(self, now: Optional[datetime] = None) -> TickReport:
        """Low-frequency tick over all watching events."""
        now = now or utc_now()
        report = TickReport(tier="watch", started_at=now)
        started = time.perf_counter()

        try:
            self.store.ping()
            self._ensure_loaded()
            before = {s.event_key: s.watch_state for s in self.escalation.states()}

            sports = self.next_sports()
            report.sports = sports
            quotes, fresh = await self._fetch_quotes(sports, now, report)
            report.quotes = len(quotes)
            if quotes:
                self.store.insert_quotes(quotes)

            index = self._build_index(now, report)
            matcher = await self._load_matcher(self.config.sports)
            self.store.annotate_markets(matcher.annotations, now)

            entries = [e for e in index if e.sport in fresh]
            entries = [e for e in entries if e.commence_time is None or e.commence_time > now]
            updates = [u for u in await self._run_all(self._aggregate_event, entries, now) if u]
            report.degenerate = len(entries) - len(updates)
            report.events = len(updates)

            snapshots = [s for u in updates for s in u.snapshots]
            self.store.insert_snapshots(snapshots)
            report.snapshots = len(snapshots)

            readings = await self._run_all(self._observe_event, updates, now)
            candidates = [r for r in readings if r is not None]
            report.escalated = len(self.escalation.admit(candidates, now))

            for update in updates:
                state = self.escalation.get(update.entry.event_key)
                if state is not None and state.watch_state == WatchState.SIGNAL:
                    report.signals += len(self._score_event(update, matcher, now, report))

            self.escalation.expire_due(now)
            retired = self._retire_finished(matcher, now, report)
            self.store.expire_signals(now, retired)

            opportunities = self.staking.detect_correlated(self.store.active_signals())
            self.store.upsert_correlated(opportunities)
            report.correlated = len(opportunities)
            if self.journal is not None:
                for opportunity in opportunities:
                    self.journal.log_correlated(opportunity, now)

            self._persist_states(report, before)
            self._archive(now)
            self.store.prune(now - timedelta(hours=self.config.snapshot_retention_hours))

        except StoreUnavailable as e:
            report.aborted = True
            self.logger.error("Watch tick aborted", error=str(e))

        report.duration_ms = (time.perf_counter() - started) * 1000
        self.logger.info("Watch tick complete", **report.to_log())
        return report

    async def active_tick(self, now: Optional[datetime] = None) -> TickReport:
        """High-frequency tick over hot events only."""
        now = now or utc_now()
        report = TickReport(tier="active", started_at=now)
        started = time.perf_counter()

        try:
            self.store.ping()
            self._ensure_loaded()
            before = {s.event_key: s.watch_state for s in self.escalation.states()}

            self.escalation.expire_due(now)
            hot = self.escalation.hot()[: self.config.movement.max_simultaneous_active]
            if hot:
                await self._sample_hot(hot, now, report)
            self._persist_states(report, before)

        except StoreUnavailable as e:
            report.aborted = True
            self.logger.error("Active tick aborted", error=str(e))

        report.duration_ms = (time.perf_counter() - started) * 1000
        self.logger.info("Active tick complete", **report.to_log())
        return report

    async def _sample_hot(
        self,
        hot: list[EventWatchState],
        now: datetime,
        report: TickReport,
    ) -> None:
        sports = sorted({s.sport for s in hot if s.sport})
        report.sports = sports
        quotes, fresh = await self._fetch_quotes(sports, now, report)
        report.quotes = len(quotes)
        if quotes:
            self.store.insert_quotes(quotes)

        index = self._build_index(now, report)
        matcher = await self._load_matcher(sports)
        self.store.annotate_markets(matcher.annotations, now)

        entries = [
            entry
            for entry in (index.by_event_key(s.event_key) for s in hot)
            if entry is not None and entry.sport in fresh
        ]
        updates = [u for u in await self._run_all(self._aggregate_event, entries, now) if u]
        report.degenerate = len(entries) - len(updates)
        report.events = len(updates)

        snapshots = [s for u in updates for s in u.snapshots]
        self.store.insert_snapshots(snapshots)
        report.snapshots = len(snapshots)

        await self._run_all(self._sample_event, updates, now)

        for update in updates:
            state = self.escalation.get(update.entry.event_key)
            if state is not None and state.watch_state == WatchState.CONFIRMED:
                report.signals += len(self._score_event(update, matcher, now, report))
