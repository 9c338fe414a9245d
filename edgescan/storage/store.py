"""
SQLite persistence.

Every write is an idempotent upsert on the record's natural key, so a
retried or overlapping tick cannot duplicate rows:

    quotes             (sport, home, away, source, outcome, market_type, captured_at)
    snapshots          (event_key, outcome_id, source, captured_at)
    watch_states       (event_key)
    signals            (event_key, side)
    correlated         (opportunity_key)
    market_annotations (market_id)

Any sqlite3 failure surfaces as StoreUnavailable, which aborts the tick.
"""

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional

import orjson
import structlog

from edgescan.errors import StoreUnavailable
from edgescan.models.schemas import (
    BookmakerQuote,
    CorrelatedOpportunity,
    EventWatchState,
    MovementLog,
    ProbabilitySnapshot,
    Side,
    SignalOpportunity,
    Tier,
    Urgency,
    WatchState,
)

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS quotes (
    sport TEXT NOT NULL,
    home_team TEXT NOT NULL,
    away_team TEXT NOT NULL,
    commence_time TEXT,
    source_id TEXT NOT NULL,
    outcome_id TEXT NOT NULL,
    market_type TEXT NOT NULL,
    decimal_odds REAL NOT NULL,
    implied_probability REAL NOT NULL,
    sharpness_weight REAL NOT NULL,
    captured_at TEXT NOT NULL,
    PRIMARY KEY (sport, home_team, away_team, source_id, outcome_id, market_type, captured_at)
);
CREATE INDEX IF NOT EXISTS idx_quotes_captured ON quotes (captured_at);

CREATE TABLE IF NOT EXISTS snapshots (
    event_key TEXT NOT NULL,
    outcome_id TEXT NOT NULL,
    source TEXT NOT NULL,
    fair_probability REAL NOT NULL,
    captured_at TEXT NOT NULL,
    PRIMARY KEY (event_key, outcome_id, source, captured_at)
);
CREATE INDEX IF NOT EXISTS idx_snapshots_captured ON snapshots (captured_at);

CREATE TABLE IF NOT EXISTS watch_states (
    event_key TEXT PRIMARY KEY,
    watch_state TEXT NOT NULL,
    initial_probability REAL,
    peak_probability REAL,
    current_probability REAL,
    movement_pct REAL,
    movement_velocity REAL,
    escalated_at TEXT,
    active_until TEXT,
    hold_start_at TEXT,
    samples_since_hold INTEGER,
    reverted INTEGER,
    matched_market_id TEXT,
    event_name TEXT,
    sport TEXT,
    primary_outcome TEXT,
    commence_time TEXT,
    drop_reason TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS signals (
    event_key TEXT NOT NULL,
    side TEXT NOT NULL,
    outcome_id TEXT,
    market_id TEXT,
    market_type TEXT,
    sport TEXT,
    event_name TEXT,
    market_price REAL,
    fair_probability REAL,
    edge_pct REAL,
    confidence_score INTEGER,
    urgency TEXT,
    tier TEXT,
    recommended_stake_pct REAL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    expires_at TEXT,
    PRIMARY KEY (event_key, side)
);

CREATE TABLE IF NOT EXISTS correlated_opportunities (
    opportunity_key TEXT PRIMARY KEY,
    entity TEXT NOT NULL,
    sport TEXT,
    legs_json TEXT NOT NULL,
    correlation_coefficient REAL,
    combined_probability REAL,
    combined_edge REAL,
    kelly_fraction REAL,
    max_loss REAL,
    expected_value REAL,
    risk_tier TEXT,
    correlation_type TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS movement_logs (
    event_key TEXT NOT NULL,
    final_state TEXT NOT NULL,
    movement_pct REAL,
    velocity REAL,
    hold_duration_seconds REAL,
    samples_captured INTEGER,
    market_matched INTEGER,
    edge_at_confirmation REAL,
    logged_at TEXT NOT NULL,
    PRIMARY KEY (event_key, final_state, logged_at)
);

CREATE TABLE IF NOT EXISTS market_annotations (
    market_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ScanStore:
    """
    One shared connection guarded by a lock.

    Ticks run aggregation in worker threads, so the connection is opened
    with check_same_thread=False and every statement goes through _tx().
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.logger = logger.bind(component="store")
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except (OSError, sqlite3.Error) as e:
                raise StoreUnavailable(f"cannot open {self.db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._conn = conn
        return self._conn

    def init_db(self) -> "ScanStore":
        with self._tx() as conn:
            conn.executescript(SCHEMA)
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                self.logger.error("Store error", error=str(e))
                raise StoreUnavailable(str(e)) from e

    def ping(self) -> None:
        """Raise StoreUnavailable if the database cannot be queried."""
        with self._tx() as conn:
            conn.execute("SELECT 1").fetchone()

    def count(self, table: str) -> int:
        with self._tx() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # =========================================================================
    # Quotes
    # =========================================================================

    def insert_quotes(self, quotes: Iterable[BookmakerQuote]) -> None:
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO quotes (
                    sport, home_team, away_team, commence_time, source_id, outcome_id,
                    market_type, decimal_odds, implied_probability, sharpness_weight, captured_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(sport, home_team, away_team, source_id, outcome_id, market_type, captured_at)
                DO UPDATE SET
                    decimal_odds=excluded.decimal_odds,
                    implied_probability=excluded.implied_probability,
                    sharpness_weight=excluded.sharpness_weight,
                    commence_time=excluded.commence_time
                """,
                [
                    (
                        q.sport,
                        q.home_team,
                        q.away_team,
                        _ts(q.commence_time),
                        q.source_id,
                        q.outcome_id,
                        q.market_type,
                        q.decimal_odds,
                        q.implied_probability,
                        q.sharpness_weight,
                        _ts(q.captured_at),
                    )
                    for q in quotes
                ],
            )

    def recent_quotes(self, since: datetime, sport: Optional[str] = None) -> list[BookmakerQuote]:
        sql = "SELECT * FROM quotes WHERE captured_at >= ?"
        params: list = [_ts(since)]
        if sport:
            sql += " AND sport = ?"
            params.append(sport)
        with self._tx() as conn:
            rows = conn.execute(sql + " ORDER BY captured_at", params).fetchall()
        return [
            BookmakerQuote(
                source_id=r["source_id"],
                sharpness_weight=r["sharpness_weight"],
                outcome_id=r["outcome_id"],
                decimal_odds=r["decimal_odds"],
                implied_probability=r["implied_probability"],
                captured_at=_dt(r["captured_at"]),
                sport=r["sport"],
                home_team=r["home_team"],
                away_team=r["away_team"],
                commence_time=_dt(r["commence_time"]),
                market_type=r["market_type"],
            )
            for r in rows
        ]

    # =========================================================================
    # Probability snapshots
    # =========================================================================

    def insert_snapshots(self, snapshots: Iterable[ProbabilitySnapshot]) -> None:
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO snapshots (event_key, outcome_id, source, fair_probability, captured_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(event_key, outcome_id, source, captured_at) DO UPDATE SET
                    fair_probability=excluded.fair_probability
                """,
                [
                    (s.event_key, s.outcome_id, s.source, s.fair_probability, _ts(s.captured_at))
                    for s in snapshots
                ],
            )

    def snapshots_for(
        self,
        event_key: str,
        since: datetime,
        outcome_id: Optional[str] = None,
    ) -> list[ProbabilitySnapshot]:
        sql = "SELECT * FROM snapshots WHERE event_key = ? AND captured_at >= ?"
        params: list = [event_key, _ts(since)]
        if outcome_id is not None:
            sql += " AND outcome_id = ?"
            params.append(outcome_id)
        with self._tx() as conn:
            rows = conn.execute(sql + " ORDER BY captured_at", params).fetchall()
        return [
            ProbabilitySnapshot(
                event_key=r["event_key"],
                outcome_id=r["outcome_id"],
                fair_probability=r["fair_probability"],
                captured_at=_dt(r["captured_at"]),
                source=r["source"],
            )
            for r in rows
        ]

    # =========================================================================
    # Watch states
    # =========================================================================

    def upsert_watch_states(self, states: Iterable[EventWatchState]) -> None:
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO watch_states (
                    event_key, watch_state, initial_probability, peak_probability,
                    current_probability, movement_pct, movement_velocity, escalated_at,
                    active_until, hold_start_at, samples_since_hold, reverted,
                    matched_market_id, event_name, sport, primary_outcome, commence_time,
                    drop_reason, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_key) DO UPDATE SET
                    watch_state=excluded.watch_state,
                    initial_probability=excluded.initial_probability,
                    peak_probability=excluded.peak_probability,
                    current_probability=excluded.current_probability,
                    movement_pct=excluded.movement_pct,
                    movement_velocity=excluded.movement_velocity,
                    escalated_at=excluded.escalated_at,
                    active_until=excluded.active_until,
                    hold_start_at=excluded.hold_start_at,
                    samples_since_hold=excluded.samples_since_hold,
                    reverted=excluded.reverted,
                    matched_market_id=excluded.matched_market_id,
                    event_name=excluded.event_name,
                    sport=excluded.sport,
                    primary_outcome=excluded.primary_outcome,
                    commence_time=excluded.commence_time,
                    drop_reason=excluded.drop_reason,
                    updated_at=excluded.updated_at
                """,
                [
                    (
                        s.event_key,
                        s.watch_state.value,
                        s.initial_probability,
                        s.peak_probability,
                        s.current_probability,
                        s.movement_pct,
                        s.movement_velocity,
                        _ts(s.escalated_at),
                        _ts(s.active_until),
                        _ts(s.hold_start_at),
                        s.samples_since_hold,
                        int(s.reverted),
                        s.matched_market_id,
                        s.event_name,
                        s.sport,
                        s.primary_outcome,
                        _ts(s.commence_time),
                        s.drop_reason,
                        _ts(s.updated_at),
                    )
                    for s in states
                ],
            )

    def load_watch_states(self) -> list[EventWatchState]:
        with self._tx() as conn:
            rows = conn.execute("SELECT * FROM watch_states").fetchall()
        return [
            EventWatchState(
                event_key=r["event_key"],
                watch_state=WatchState(r["watch_state"]),
                initial_probability=r["initial_probability"] or 0.0,
                peak_probability=r["peak_probability"] or 0.0,
                current_probability=r["current_probability"] or 0.0,
                movement_pct=r["movement_pct"] or 0.0,
                movement_velocity=r["movement_velocity"] or 0.0,
                escalated_at=_dt(r["escalated_at"]),
                active_until=_dt(r["active_until"]),
                hold_start_at=_dt(r["hold_start_at"]),
                samples_since_hold=r["samples_since_hold"] or 0,
                reverted=bool(r["reverted"]),
                matched_market_id=r["matched_market_id"],
                event_name=r["event_name"] or "",
                sport=r["sport"] or "",
                primary_outcome=r["primary_outcome"] or "",
                commence_time=_dt(r["commence_time"]),
                drop_reason=r["drop_reason"],
                updated_at=_dt(r["updated_at"]),
            )
            for r in rows
        ]

    def delete_watch_states(self, event_keys: Iterable[str]) -> None:
        with self._tx() as conn:
            conn.executemany(
                "DELETE FROM watch_states WHERE event_key = ?",
                [(k,) for k in event_keys],
            )

    # =========================================================================
    # Signals
    # =========================================================================

    def upsert_signals(self, signals: Iterable[SignalOpportunity]) -> None:
        """Insert or refresh on (event_key, side). created_at is never overwritten."""
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO signals (
                    event_key, side, outcome_id, market_id, market_type, sport, event_name,
                    market_price, fair_probability, edge_pct, confidence_score, urgency, tier,
                    recommended_stake_pct, status, created_at, updated_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_key, side) DO UPDATE SET
                    outcome_id=excluded.outcome_id,
                    market_id=excluded.market_id,
                    market_type=excluded.market_type,
                    sport=excluded.sport,
                    event_name=excluded.event_name,
                    market_price=excluded.market_price,
                    fair_probability=excluded.fair_probability,
                    edge_pct=excluded.edge_pct,
                    confidence_score=excluded.confidence_score,
                    urgency=excluded.urgency,
                    tier=excluded.tier,
                    recommended_stake_pct=excluded.recommended_stake_pct,
                    status=excluded.status,
                    updated_at=excluded.updated_at,
                    expires_at=excluded.expires_at
                """,
                [
                    (
                        s.event_key,
                        s.side.value,
                        s.outcome_id,
                        s.market_id,
                        s.market_type,
                        s.sport,
                        s.event_name,
                        s.market_price,
                        s.fair_probability,
                        s.edge_pct,
                        s.confidence_score,
                        s.urgency.value,
                        s.tier.value,
                        s.recommended_stake_pct,
                        s.status,
                        _ts(s.created_at),
                        _ts(s.updated_at),
                        _ts(s.expires_at),
                    )
                    for s in signals
                ],
            )

    def _signal_from_row(self, r: sqlite3.Row) -> SignalOpportunity:
        return SignalOpportunity(
            event_key=r["event_key"],
            side=Side(r["side"]),
            market_price=r["market_price"],
            fair_probability=r["fair_probability"],
            edge_pct=r["edge_pct"],
            confidence_score=r["confidence_score"],
            urgency=Urgency(r["urgency"]),
            tier=Tier(r["tier"]),
            created_at=_dt(r["created_at"]),
            expires_at=_dt(r["expires_at"]),
            outcome_id=r["outcome_id"] or "",
            market_id=r["market_id"] or "",
            market_type=r["market_type"] or "",
            sport=r["sport"] or "",
            event_name=r["event_name"] or "",
            recommended_stake_pct=r["recommended_stake_pct"] or 0.0,
            updated_at=_dt(r["updated_at"]),
            status=r["status"],
        )

    def get_signal(self, event_key: str, side: Side) -> Optional[SignalOpportunity]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM signals WHERE event_key = ? AND side = ?",
                (event_key, side.value),
            ).fetchone()
        return self._signal_from_row(row) if row else None

    def active_signals(self) -> list[SignalOpportunity]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM signals WHERE status = 'active' ORDER BY edge_pct DESC"
            ).fetchall()
        return [self._signal_from_row(r) for r in rows]

    def expire_signals(self, now: datetime, event_keys: Iterable[str] = ()) -> int:
        """Mark signals expired when past expires_at or belonging to retired events."""
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE signals SET status = 'expired', updated_at = ? "
                "WHERE status = 'active' AND expires_at <= ?",
                (_ts(now), _ts(now)),
            )
            expired = cur.rowcount
            for key in event_keys:
                cur = conn.execute(
                    "UPDATE signals SET status = 'expired', updated_at = ? "
                    "WHERE status = 'active' AND event_key = ?",
                    (_ts(now), key),
                )
                expired += cur.rowcount
        return expired

    def expire_sides(self, event_key: str, sides: Iterable[Side], now: datetime) -> int:
        """Mark the given sides of one event expired; returns rows changed."""
        expired = 0
        with self._tx() as conn:
            for side in sides:
                cur = conn.execute(
                    "UPDATE signals SET status = 'expired', updated_at = ? "
                    "WHERE status = 'active' AND event_key = ? AND side = ?",
                    (_ts(now), event_key, side.value),
                )
                expired += cur.rowcount
        return expired

    # =========================================================================
    # Correlated opportunities / movement logs / annotations
    # =========================================================================

    def upsert_correlated(self, opportunities: Iterable[CorrelatedOpportunity]) -> None:
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO correlated_opportunities (
                    opportunity_key, entity, sport, legs_json, correlation_coefficient,
                    combined_probability, combined_edge, kelly_fraction, max_loss,
                    expected_value, risk_tier, correlation_type, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(opportunity_key) DO UPDATE SET
                    legs_json=excluded.legs_json,
                    correlation_coefficient=excluded.correlation_coefficient,
                    combined_probability=excluded.combined_probability,
                    combined_edge=excluded.combined_edge,
                    kelly_fraction=excluded.kelly_fraction,
                    max_loss=excluded.max_loss,
                    expected_value=excluded.expected_value,
                    risk_tier=excluded.risk_tier,
                    correlation_type=excluded.correlation_type,
                    updated_at=excluded.updated_at
                """,
                [
                    (
                        o.opportunity_key,
                        o.entity,
                        o.sport,
                        orjson.dumps([
                            {
                                "event_key": leg.event_key,
                                "market_type": leg.market_type,
                                "side": leg.side.value,
                                "market_id": leg.market_id,
                                "market_price": leg.market_price,
                                "fair_probability": leg.fair_probability,
                                "edge_pct": leg.edge_pct,
                                "stake": leg.stake,
                            }
                            for leg in o.legs
                        ]).decode(),
                        o.correlation_coefficient,
                        o.combined_probability,
                        o.combined_edge,
                        o.kelly_fraction,
                        o.max_loss,
                        o.expected_value,
                        o.risk_tier,
                        o.correlation_type,
                        _ts(o.created_at),
                        _ts(o.created_at),
                    )
                    for o in opportunities
                ],
            )

    def insert_movement_logs(self, logs: Iterable[MovementLog]) -> None:
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO movement_logs (
                    event_key, final_state, movement_pct, velocity, hold_duration_seconds,
                    samples_captured, market_matched, edge_at_confirmation, logged_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(event_key, final_state, logged_at) DO NOTHING
                """,
                [
                    (
                        log.event_key,
                        log.final_state,
                        log.movement_pct,
                        log.velocity,
                        log.hold_duration_seconds,
                        log.samples_captured,
                        int(log.market_matched),
                        log.edge_at_confirmation,
                        _ts(log.logged_at),
                    )
                    for log in logs
                ],
            )

    def annotate_markets(self, annotations: dict[str, str], now: datetime) -> None:
        with self._tx() as conn:
            conn.executemany(
                """
                INSERT INTO market_annotations (market_id, status, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(market_id) DO UPDATE SET
                    status=excluded.status,
                    updated_at=excluded.updated_at
                """,
                [(market_id, status, _ts(now)) for market_id, status in annotations.items()],
            )

    def market_annotation(self, market_id: str) -> Optional[str]:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT status FROM market_annotations WHERE market_id = ?", (market_id,)
            ).fetchone()
        return row["status"] if row else None

    # =========================================================================
    # Retention
    # =========================================================================

    def prune(self, before: datetime) -> dict[str, int]:
        """Delete quotes and snapshots captured before `before`."""
        cutoff = _ts(before)
        with self._tx() as conn:
            quotes = conn.execute("DELETE FROM quotes WHERE captured_at < ?", (cutoff,)).rowcount
            snaps = conn.execute("DELETE FROM snapshots WHERE captured_at < ?", (cutoff,)).rowcount
        if quotes or snaps:
            self.logger.debug("Pruned history", quotes=quotes, snapshots=snaps)
        return {"quotes": quotes, "snapshots": snaps}
