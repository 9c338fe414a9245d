"""
Edge & Confidence Scorer.

Compares the consensus fair probability with the matched market's price on
both sides:
    YES: fair(home outcome of the listing) vs price_yes
    NO:  fair(away outcome of the listing) vs price_no

Confidence is additive from a base of 30:
    edge magnitude      up to +35
    sharp confirmation  up to +15
    confirming sources  up to +15
    event proximity     up to +5
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from edgescan.config import ScoringSettings
from edgescan.engine.aggregator import AggregatedMarket
from edgescan.matching.index import MarketMatch
from edgescan.models.schemas import Side, SignalOpportunity, Tier, Urgency

logger = structlog.get_logger()


BASE_CONFIDENCE = 30

# (threshold, points), checked top-down
EDGE_POINTS = [(20.0, 35), (10.0, 25), (5.0, 15), (2.0, 5)]
CONFIRMING_POINTS = [(5, 15), (3, 10), (2, 5)]
PROXIMITY_POINTS = [(1.0, 5), (6.0, 3), (24.0, 1)]  # hours to start


@dataclass(frozen=True)
class EdgeScore:
    """One side of one matched market, scored."""
    side: Side
    outcome_id: str
    market_price: float
    fair_probability: float
    edge_pct: float
    tier: Optional[Tier]
    confidence: int
    urgency: Urgency

    @property
    def accepted(self) -> bool:
        return self.tier is not None


def hours_until(commence_time: Optional[datetime], now: datetime) -> Optional[float]:
    if commence_time is None:
        return None
    return (commence_time - now).total_seconds() / 3600


class EdgeScorer:
    """Scores matched events and builds SignalOpportunity records."""

    def __init__(self, settings: Optional[ScoringSettings] = None):
        self.settings = settings or ScoringSettings()
        self.logger = logger.bind(component="edge_scorer")

    @staticmethod
    def edge(fair_probability: float, market_price: float) -> float:
        return (fair_probability - market_price) * 100

    def tier(self, edge_pct: float) -> Optional[Tier]:
        if edge_pct >= self.settings.premium_edge_pct:
            return Tier.PREMIUM
        if edge_pct >= self.settings.good_edge_pct:
            return Tier.GOOD
        if edge_pct >= self.settings.marginal_edge_pct:
            return Tier.MARGINAL
        return None

    def confidence(
        self,
        edge_pct: float,
        sharp_sources: int,
        confirming_sources: int,
        hours_to_start: Optional[float],
    ) -> int:
        score = BASE_CONFIDENCE

        for threshold, points in EDGE_POINTS:
            if edge_pct >= threshold:
                score += points
                break

        if sharp_sources >= 2:
            score += 15
        elif sharp_sources == 1:
            score += 10

        for threshold, points in CONFIRMING_POINTS:
            if confirming_sources >= threshold:
                score += points
                break

        if hours_to_start is not None and hours_to_start >= 0:
            for threshold, points in PROXIMITY_POINTS:
                if hours_to_start <= threshold:
                    score += points
                    break

        return max(0, min(100, score))

    def urgency(self, edge_pct: float, hours_to_start: Optional[float]) -> Urgency:
        s = self.settings
        if hours_to_start is not None:
            if hours_to_start <= s.critical_hours and edge_pct >= s.critical_edge_pct:
                return Urgency.CRITICAL
            if hours_to_start <= s.high_hours and edge_pct >= s.high_edge_pct:
                return Urgency.HIGH
        if edge_pct >= s.high_edge_any_time_pct:
            return Urgency.HIGH
        if hours_to_start is not None and hours_to_start > s.low_urgency_hours:
            return Urgency.LOW
        return Urgency.NORMAL

    def score_side(
        self,
        side: Side,
        outcome_id: str,
        fair_probability: float,
        market_price: float,
        sharp_sources: int,
        confirming_sources: int,
        hours_to_start: Optional[float],
    ) -> EdgeScore:
        edge_pct = self.edge(fair_probability, market_price)
        return EdgeScore(
            side=side,
            outcome_id=outcome_id,
            market_price=market_price,
            fair_probability=fair_probability,
            edge_pct=edge_pct,
            tier=self.tier(edge_pct),
            confidence=self.confidence(edge_pct, sharp_sources, confirming_sources, hours_to_start),
            urgency=self.urgency(edge_pct, hours_to_start),
        )

    def score(
        self,
        aggregated: AggregatedMarket,
        match: MarketMatch,
        now: datetime,
        commence_time: Optional[datetime] = None,
        confirming_sources: Optional[int] = None,
    ) -> list[EdgeScore]:
        """
        Score both sides of a matched market.

        Sides priced outside [min_market_price, max_market_price] or whose
        outcome has no fair probability are skipped. Rejected sides (no
        tier) are still returned so callers can log them.
        """
        hours = hours_until(commence_time or match.market.end_date, now)
        confirming = (
            confirming_sources if confirming_sources is not None else aggregated.source_count
        )
        market = match.market

        scores = []
        for side, outcome, price in (
            (Side.YES, match.yes_outcome, market.price_yes),
            (Side.NO, match.no_outcome, market.price_no),
        ):
            fair = aggregated.probability(outcome)
            if fair is None:
                continue
            if not self.settings.min_market_price <= price <= self.settings.max_market_price:
                continue
            scores.append(
                self.score_side(
                    side, outcome, fair, price,
                    aggregated.sharp_count, confirming, hours,
                )
            )
        return scores

    def build_signal(
        self,
        score: EdgeScore,
        event_key: str,
        match: MarketMatch,
        now: datetime,
        commence_time: Optional[datetime] = None,
        stake_pct: float = 0.0,
        sport: str = "",
        event_name: str = "",
        existing: Optional[SignalOpportunity] = None,
    ) -> SignalOpportunity:
        """
        Signal for an accepted score.

        When `existing` is the current row for (event_key, side), its
        created_at is kept; everything else is refreshed.
        """
        expires_at = now + timedelta(minutes=self.settings.signal_ttl_minutes)
        if commence_time is not None and commence_time < expires_at:
            expires_at = commence_time

        return SignalOpportunity(
            event_key=event_key,
            side=score.side,
            market_price=score.market_price,
            fair_probability=score.fair_probability,
            edge_pct=score.edge_pct,
            confidence_score=score.confidence,
            urgency=score.urgency,
            tier=score.tier,
            created_at=existing.created_at if existing is not None else now,
            expires_at=expires_at,
            outcome_id=score.outcome_id,
            market_id=match.market.market_id,
            market_type=match.market.market_type,
            sport=sport or match.market.sport,
            event_name=event_name,
            recommended_stake_pct=stake_pct,
            updated_at=now,
        )
