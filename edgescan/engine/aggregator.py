"""
Probability Aggregator.

Turns a set of bookmaker quotes for one event into a vig-free consensus
probability per outcome:

1. Raw implied probability 1/decimal_odds per quote
2. Duplicate quotes from the same source are averaged
3. Outlier sources (> outlier_sigma std devs from the mean) are dropped,
   unless every source is sharp
4. Sharpness-weighted mean per outcome
5. Divide by the overround so the fair probabilities sum to 1
"""

import math
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from edgescan.config import AggregationSettings
from edgescan.errors import DegenerateMarket
from edgescan.models.schemas import BookmakerQuote

logger = structlog.get_logger()


@dataclass(frozen=True)
class AggregatedMarket:
    """Consensus estimate for one event."""
    fair: dict[str, float]
    raw_means: dict[str, float]
    overround: float

    # Each source's own de-vigged line (only sources quoting every outcome)
    source_fair: dict[str, dict[str, float]] = field(default_factory=dict)
    # Std dev of source_fair per outcome, in probability points
    dispersion: dict[str, float] = field(default_factory=dict)
    source_count: int = 0
    sharp_count: int = 0
    dropped_outliers: int = 0

    def probability(self, outcome_id: str) -> Optional[float]:
        return self.fair.get(outcome_id)


class ProbabilityAggregator:
    """De-vigs and combines quotes from many sources."""

    def __init__(self, settings: Optional[AggregationSettings] = None):
        self.settings = settings or AggregationSettings()
        self.logger = logger.bind(component="aggregator")

    def aggregate(
        self,
        quotes: Iterable[BookmakerQuote],
        event_key: Optional[str] = None,
    ) -> AggregatedMarket:
        """
        Aggregate quotes for one event.

        Raises:
            DegenerateMarket: fewer than two outcomes, or overround <= 0.
                The caller must not escalate or score the event.
        """
        # outcome -> source -> [implied]
        implied: dict[str, dict[str, list[float]]] = defaultdict(lambda: defaultdict(list))
        weights: dict[str, list[float]] = defaultdict(list)

        for quote in quotes:
            if quote.decimal_odds <= 1.0:
                continue
            implied[quote.outcome_id][quote.source_id].append(1.0 / quote.decimal_odds)
            weights[quote.source_id].append(quote.sharpness_weight)

        if len(implied) < 2:
            raise DegenerateMarket(event_key, f"{len(implied)} distinct outcome(s)")

        source_weight = {s: statistics.fmean(w) for s, w in weights.items()}
        sharp = {s for s, w in source_weight.items() if w >= self.settings.sharp_weight_floor}
        all_sharp = len(sharp) == len(source_weight)

        # Average duplicates first
        per_source: dict[str, dict[str, float]] = {
            outcome: {source: statistics.fmean(vals) for source, vals in by_source.items()}
            for outcome, by_source in implied.items()
        }

        raw_means: dict[str, float] = {}
        dropped = 0
        for outcome, by_source in per_source.items():
            kept = by_source if all_sharp else self._drop_outliers(by_source)
            dropped += len(by_source) - len(kept)
            raw_means[outcome] = self._mean(kept, source_weight)

        overround = sum(raw_means.values())
        if overround <= 0 or not math.isfinite(overround):
            raise DegenerateMarket(event_key, f"overround {overround}")

        fair = {outcome: mean / overround for outcome, mean in raw_means.items()}

        source_fair = self._source_fair(per_source)
        dispersion = {}
        for outcome in fair:
            values = [line[outcome] for line in source_fair.values()]
            dispersion[outcome] = statistics.pstdev(values) * 100 if len(values) > 1 else 0.0

        if dropped:
            self.logger.debug("Outlier quotes dropped", event_key=event_key, dropped=dropped)

        return AggregatedMarket(
            fair=fair,
            raw_means=raw_means,
            overround=overround,
            source_fair=source_fair,
            dispersion=dispersion,
            source_count=len(source_weight),
            sharp_count=len(sharp),
            dropped_outliers=dropped,
        )

    def _drop_outliers(self, by_source: dict[str, float]) -> dict[str, float]:
        values = list(by_source.values())
        if len(values) < 3:
            return by_source
        mean = statistics.fmean(values)
        std = statistics.pstdev(values)
        if std == 0:
            return by_source
        limit = self.settings.outlier_sigma * std
        return {s: v for s, v in by_source.items() if abs(v - mean) <= limit}

    def _mean(self, by_source: dict[str, float], source_weight: dict[str, float]) -> float:
        if not self.settings.sharp_weighting_enabled:
            return statistics.fmean(by_source.values())
        total_weight = sum(source_weight[s] for s in by_source)
        if total_weight <= 0:
            return statistics.fmean(by_source.values())
        return sum(v * source_weight[s] for s, v in by_source.items()) / total_weight

    @staticmethod
    def _source_fair(per_source: dict[str, dict[str, float]]) -> dict[str, dict[str, float]]:
        outcomes = list(per_source)
        sources = set.intersection(*(set(by_source) for by_source in per_source.values()))
        result = {}
        for source in sorted(sources):
            line = {o: per_source[o][source] for o in outcomes}
            total = sum(line.values())
            if total > 0:
                result[source] = {o: p / total for o, p in line.items()}
        return result
