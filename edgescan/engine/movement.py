"""
Movement Detector.

Measures how far the consensus probability of an event has moved inside the
lookback window and whether the individual books agree that it moved.

A raw delta on the consensus line is not enough: one book re-pricing can
drag the weighted mean around. The consensus gate requires several sources
moving the same way, with their latest lines still tightly grouped.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from edgescan.config import MovementSettings
from edgescan.errors import NoConsensus
from edgescan.models.schemas import CONSENSUS_SOURCE, ProbabilitySnapshot

logger = structlog.get_logger()


def _sign(value: float) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


@dataclass(frozen=True)
class MovementReading:
    """Movement of one outcome's consensus probability over the window."""
    event_key: str
    outcome_id: str
    initial_probability: float
    current_probability: float
    movement_pct: float          # probability points, signed
    velocity: float              # points per minute
    elapsed_minutes: float
    first_at: datetime
    last_at: datetime

    # Consensus gate inputs
    confirming_sources: int = 0
    spread_pts: float = 0.0
    consensus: bool = False

    @property
    def direction(self) -> int:
        return _sign(self.movement_pct)


class MovementDetector:
    """Computes MovementReadings and decides whether they qualify."""

    def __init__(self, settings: Optional[MovementSettings] = None):
        self.settings = settings or MovementSettings()
        self.logger = logger.bind(component="movement_detector")

    def measure(
        self,
        snapshots: Iterable[ProbabilitySnapshot],
        now: datetime,
        outcome_id: Optional[str] = None,
    ) -> Optional[MovementReading]:
        """
        Measure movement for one event.

        `snapshots` may mix the consensus series and per-source series for
        any outcome; only the requested outcome (default: the outcome of the
        first snapshot) inside the lookback window is used. Returns None
        with fewer than two consensus points in the window.
        """
        cutoff = now - timedelta(minutes=self.settings.lookback_minutes)
        window = [s for s in snapshots if cutoff <= s.captured_at <= now]
        if outcome_id is None:
            if not window:
                return None
            outcome_id = window[0].outcome_id
        window = sorted(
            (s for s in window if s.outcome_id == outcome_id),
            key=lambda s: s.captured_at,
        )

        consensus = [s for s in window if s.source == CONSENSUS_SOURCE]
        if len(consensus) < 2:
            return None

        first, last = consensus[0], consensus[-1]
        movement_pct = (last.fair_probability - first.fair_probability) * 100
        elapsed = (last.captured_at - first.captured_at).total_seconds() / 60
        velocity = abs(movement_pct) / elapsed if elapsed > 0 else 0.0

        by_source: dict[str, list[ProbabilitySnapshot]] = defaultdict(list)
        for s in window:
            if s.source != CONSENSUS_SOURCE:
                by_source[s.source].append(s)

        direction = _sign(movement_pct)
        confirming = 0
        latest = []
        for series in by_source.values():
            latest.append(series[-1].fair_probability)
            if len(series) >= 2 and direction != 0:
                if _sign(series[-1].fair_probability - series[0].fair_probability) == direction:
                    confirming += 1

        spread_pts = statistics.pstdev(latest) * 100 if len(latest) > 1 else 0.0
        holds = (
            confirming >= self.settings.min_confirming_books
            and spread_pts < self.settings.max_source_spread_pts
        )

        return MovementReading(
            event_key=first.event_key,
            outcome_id=outcome_id,
            initial_probability=first.fair_probability,
            current_probability=last.fair_probability,
            movement_pct=movement_pct,
            velocity=velocity,
            elapsed_minutes=elapsed,
            first_at=first.captured_at,
            last_at=last.captured_at,
            confirming_sources=confirming,
            spread_pts=spread_pts,
            consensus=holds,
        )

    def exceeds_thresholds(self, reading: MovementReading) -> bool:
        return (
            abs(reading.movement_pct) >= self.settings.movement_threshold_pct
            and reading.velocity >= self.settings.min_velocity
        )

    def check_consensus(self, reading: MovementReading) -> None:
        """Raise NoConsensus when too few books agree or they disagree too much."""
        if not reading.consensus:
            raise NoConsensus(reading.event_key, reading.confirming_sources, reading.spread_pts)

    def qualifies(self, reading: Optional[MovementReading]) -> bool:
        """Candidate for promotion: big and fast enough, and real."""
        if reading is None or not self.exceeds_thresholds(reading):
            return False
        try:
            self.check_consensus(reading)
        except NoConsensus as e:
            self.logger.info(
                "Movement suppressed",
                event_key=e.event_key,
                movement_pct=round(reading.movement_pct, 2),
                confirming=e.confirming,
                spread_pts=round(e.spread_pts, 2),
            )
            return False
        return True
