"""
On-demand re-check of a single bet.

Recomputes the edge of one side of a candidate market from a fresh batch of
quotes using the same aggregator, scorer and staking engine as the ticks.
Pure: nothing is stored and no watch state changes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from edgescan.config import ScanConfig, get_settings
from edgescan.engine.aggregator import ProbabilityAggregator
from edgescan.engine.scorer import EdgeScorer, hours_until
from edgescan.engine.staking import StakingEngine
from edgescan.models.schemas import BookmakerQuote, CandidateMarket, Side, Tier, Urgency


@dataclass(frozen=True)
class RecheckResult:
    side: Side
    outcome_id: str
    market_price: float
    fair_probability: float
    edge_pct: float
    tier: Optional[Tier]
    confidence: int
    urgency: Urgency
    stake_pct: float
    source_count: int

    @property
    def still_valid(self) -> bool:
        return self.tier is not None and self.stake_pct > 0


def recheck(
    quotes: Iterable[BookmakerQuote],
    market: CandidateMarket,
    side: Side,
    now: datetime,
    config: Optional[ScanConfig] = None,
    commence_time: Optional[datetime] = None,
    yes_outcome: Optional[str] = None,
    no_outcome: Optional[str] = None,
) -> RecheckResult:
    """
    Re-score `side` of `market` against `quotes`.

    Quote outcome ids must name the same outcomes as the market; pass
    yes_outcome/no_outcome when the listing spells them differently.

    Raises:
        DegenerateMarket: the quotes do not form a usable market.
        KeyError: the quotes have no line for the requested outcome.
    """
    config = config or get_settings()
    aggregated = ProbabilityAggregator(config.aggregation).aggregate(quotes)
    scorer = EdgeScorer(config.scoring)
    staking = StakingEngine(config.staking)

    outcome = (
        (yes_outcome or market.outcome_id_home)
        if side == Side.YES
        else (no_outcome or market.outcome_id_away)
    )
    fair = aggregated.fair[outcome]
    price = market.price_for(side)

    score = scorer.score_side(
        side,
        outcome,
        fair,
        price,
        aggregated.sharp_count,
        aggregated.source_count,
        hours_until(commence_time or market.end_date, now),
    )
    stake = staking.single_leg(fair, price) if score.accepted else 0.0

    return RecheckResult(
        side=side,
        outcome_id=outcome,
        market_price=price,
        fair_probability=fair,
        edge_pct=score.edge_pct,
        tier=score.tier,
        confidence=score.confidence,
        urgency=score.urgency,
        stake_pct=stake,
        source_count=aggregated.source_count,
    )
