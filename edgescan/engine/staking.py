"""
Correlation-aware staking.

Single leg: quarter Kelly clamped to a narrow band of the bankroll.

Multi-leg: legs backing the same entity are not independent, so the joint
probability is nudged up by the market-type correlation while the edge and
the Kelly fraction are penalised for it. The combined fraction is capped
well below the sum of the single-leg caps.
"""

import math
from collections import defaultdict
from itertools import combinations
from typing import Iterable, Optional, Sequence

import structlog

from edgescan.config import StakingSettings
from edgescan.models.schemas import (
    CorrelatedOpportunity,
    Leg,
    MarketType,
    SignalOpportunity,
    utc_now,
)

logger = structlog.get_logger()


# Static correlation between market types on the same entity
CORRELATION_MATRIX: dict[frozenset, float] = {
    frozenset({MarketType.H2H.value, MarketType.SPREAD.value}): 0.85,
    frozenset({MarketType.H2H.value, MarketType.TOTAL.value}): 0.15,
    frozenset({MarketType.H2H.value, MarketType.FUTURES.value}): 0.90,
    frozenset({MarketType.SPREAD.value, MarketType.TOTAL.value}): 0.20,
    frozenset({MarketType.SPREAD.value, MarketType.FUTURES.value}): 0.75,
    frozenset({MarketType.TOTAL.value, MarketType.FUTURES.value}): 0.10,
}
UNKNOWN_CORRELATION = 0.5

# Combination adjustments
PROBABILITY_BOOST = 0.3       # combined P *= 1 + (c - 0.5) * 0.3
MAX_COMBINED_PROBABILITY = 0.95
CORRELATION_PENALTY = 0.15    # edge points per unit of c
COMPLEXITY_PENALTY = 0.02     # edge points per extra leg
KELLY_CORRELATION_DAMPING = 0.4

_MARKET_ALIASES = {
    "moneyline": MarketType.H2H.value,
    "spreads": MarketType.SPREAD.value,
    "totals": MarketType.TOTAL.value,
    "outrights": MarketType.FUTURES.value,
    "outright": MarketType.FUTURES.value,
}


def normalize_market_type(market_type: str) -> str:
    key = market_type.strip().lower()
    return _MARKET_ALIASES.get(key, key)


def correlation_between(type_a: str, type_b: str) -> float:
    a, b = normalize_market_type(type_a), normalize_market_type(type_b)
    if a == b:
        return 1.0
    return CORRELATION_MATRIX.get(frozenset({a, b}), UNKNOWN_CORRELATION)


def event_correlation(market_types: Sequence[str]) -> float:
    """Mean pairwise correlation over all leg pairs."""
    pairs = list(combinations(market_types, 2))
    if not pairs:
        return 0.0
    return sum(correlation_between(a, b) for a, b in pairs) / len(pairs)


def combined_probability(probabilities: Sequence[float], correlation: float) -> float:
    joint = math.prod(probabilities) * (1 + (correlation - 0.5) * PROBABILITY_BOOST)
    return min(MAX_COMBINED_PROBABILITY, joint)


def combined_edge(edges: Sequence[float], correlation: float) -> float:
    """Combined edge in percentage points, floored at 0."""
    penalty = correlation * CORRELATION_PENALTY + COMPLEXITY_PENALTY * (len(edges) - 1)
    return max(0.0, sum(edges) - penalty)


def _kelly_formula(probabilities: Sequence[float], edges: Sequence[float], correlation: float) -> float:
    edge = combined_edge(edges, correlation) / 100
    prob = combined_probability(probabilities, correlation)
    damping = 1 - KELLY_CORRELATION_DAMPING * correlation
    return edge / (1 - prob) * damping / math.sqrt(len(edges))


def _critical_correlations(
    probabilities: Sequence[float],
    edges: Sequence[float],
    upper: float,
) -> list[float]:
    """
    Points in (0, upper) where the Kelly formula can have a local minimum:
    the probability-cap and zero-edge breakpoints plus the stationary
    points of the smooth part.

    On the uncapped branch the formula is N(c) / D(c) with
        N = (alpha - beta c)(1 - 0.4 c) = n0 + n1 c + n2 c^2
        D = gamma - delta c
    and N'D - ND' = 0 reduces to -n2 delta c^2 + 2 n2 gamma c + (n1 gamma + n0 delta) = 0.
    """
    n = len(edges)
    joint = math.prod(probabilities)
    alpha = (sum(edges) - COMPLEXITY_PENALTY * (n - 1)) / 100
    beta = CORRELATION_PENALTY / 100

    points = []
    if beta > 0:
        points.append(alpha / beta)
    if joint > 0:
        base = 1 - 0.5 * PROBABILITY_BOOST
        points.append((MAX_COMBINED_PROBABILITY / joint - base) / PROBABILITY_BOOST)

        gamma = 1 - base * joint
        delta = PROBABILITY_BOOST * joint
        n0 = alpha
        n1 = -(KELLY_CORRELATION_DAMPING * alpha + beta)
        n2 = KELLY_CORRELATION_DAMPING * beta
        qa, qb, qc = -n2 * delta, 2 * n2 * gamma, n1 * gamma + n0 * delta
        if qa != 0:
            disc = qb * qb - 4 * qa * qc
            if disc >= 0:
                root = math.sqrt(disc)
                points.extend([(-qb + root) / (2 * qa), (-qb - root) / (2 * qa)])
        elif qb != 0:
            points.append(-qc / qb)

    return [p for p in points if 0 < p < upper]


def combined_kelly(
    probabilities: Sequence[float],
    edges: Sequence[float],
    correlation: float,
    cap: float = 0.08,
) -> float:
    """
    Kelly fraction for a correlated combination.

    (edge / (1 - P)) * (1 - 0.4c) / sqrt(legs), capped. Because the joint
    probability grows with c, the raw formula can turn upwards for very
    likely legs; the result is the running minimum over [0, c], so a higher
    correlation never yields a larger fraction.
    """
    if len(edges) < 2:
        return 0.0
    candidates = [0.0, correlation] + _critical_correlations(probabilities, edges, correlation)
    kelly = min(_kelly_formula(probabilities, edges, c) for c in candidates)
    return max(0.0, min(cap, kelly))


def risk_tier(correlation: float, edge_pct: float, legs: int) -> str:
    if correlation > 0.8 and legs >= 3:
        return "aggressive"
    if correlation > 0.6 and edge_pct > 8:
        return "moderate"
    return "conservative"


def correlation_type(correlation: float) -> str:
    if correlation >= 0.9:
        return "perfect"
    if correlation >= 0.7:
        return "high"
    if correlation >= 0.4:
        return "medium"
    return "low"


class StakingEngine:
    """Stake recommendations. Reads opportunities, never touches probabilities."""

    def __init__(self, settings: Optional[StakingSettings] = None):
        self.settings = settings or StakingSettings()
        self.logger = logger.bind(component="staking")

    # =========================================================================
    # Single leg
    # =========================================================================

    def single_leg(self, fair_probability: float, market_price: float) -> float:
        """
        Quarter-Kelly fraction of bankroll for buying at `market_price`.

        0 when there is no edge (b*p <= q) or no payout (b <= 0); otherwise
        clamped to [min_stake_pct, max_stake_pct].
        """
        if not 0 < market_price < 1:
            return 0.0
        b = 1 / market_price - 1
        if b <= 0:
            return 0.0
        p = fair_probability
        q = 1 - p
        if b * p <= q:
            return 0.0
        kelly = self.settings.kelly_multiplier * (b * p - q) / b
        return min(self.settings.max_stake_pct, max(self.settings.min_stake_pct, kelly))

    def stake_amount(self, fraction: float) -> float:
        return round(fraction * self.settings.bankroll, 2)

    # =========================================================================
    # Correlated legs
    # =========================================================================

    def correlated(
        self,
        legs: Sequence[Leg],
        entity: str,
        sport: str = "",
    ) -> Optional[CorrelatedOpportunity]:
        """Size a combination of legs on one entity, or None if rejected."""
        s = self.settings
        if len(legs) < 2:
            return None

        weakest = min(leg.edge_pct for leg in legs)
        if weakest < s.min_leg_edge_pct:
            self.logger.debug("Combination rejected", entity=entity, reason="weak_leg", edge=weakest)
            return None

        correlation = event_correlation([leg.market_type for leg in legs])
        probabilities = [leg.fair_probability for leg in legs]
        edges = [leg.edge_pct for leg in legs]

        edge = combined_edge(edges, correlation)
        if edge < s.min_combined_edge_pct:
            self.logger.debug("Combination rejected", entity=entity, reason="edge", edge=edge)
            return None

        max_loss = sum(leg.stake for leg in legs)
        if max_loss > s.max_loss:
            self.logger.debug("Combination rejected", entity=entity, reason="max_loss", max_loss=max_loss)
            return None

        kelly = combined_kelly(probabilities, edges, correlation, cap=s.multi_leg_kelly_cap)
        if round(kelly * 100, 2) < s.min_kelly_fraction * 100:
            self.logger.debug("Combination rejected", entity=entity, reason="kelly", kelly=kelly)
            return None

        return CorrelatedOpportunity(
            entity=entity,
            sport=sport,
            legs=list(legs),
            correlation_coefficient=correlation,
            combined_probability=combined_probability(probabilities, correlation),
            combined_edge=edge,
            kelly_fraction=kelly,
            max_loss=max_loss,
            expected_value=round(max_loss * edge / 100, 2),
            risk_tier=risk_tier(correlation, edge, len(legs)),
            correlation_type=correlation_type(correlation),
            created_at=utc_now(),
        )

    def leg_from_signal(self, signal: SignalOpportunity) -> Leg:
        fraction = self.single_leg(signal.fair_probability, signal.market_price)
        return Leg(
            event_key=signal.event_key,
            market_type=normalize_market_type(signal.market_type),
            entity=signal.outcome_id,
            side=signal.side,
            market_price=signal.market_price,
            fair_probability=signal.fair_probability,
            edge_pct=signal.edge_pct,
            stake=self.stake_amount(fraction),
            market_id=signal.market_id,
        )

    def detect_correlated(
        self,
        signals: Iterable[SignalOpportunity],
    ) -> list[CorrelatedOpportunity]:
        """
        Group active signals by (sport, backed entity) and size every group
        with two or more legs. Accepted combinations, best edge first.
        """
        groups: dict[tuple[str, str], dict[tuple, Leg]] = defaultdict(dict)
        for signal in signals:
            if signal.status != "active" or not signal.outcome_id:
                continue
            leg = self.leg_from_signal(signal)
            groups[(signal.sport, signal.outcome_id)][(leg.event_key, leg.market_type, leg.side)] = leg

        found = []
        for (sport, entity), legs in groups.items():
            if len(legs) < 2:
                continue
            opportunity = self.correlated(list(legs.values()), entity, sport)
            if opportunity is not None:
                found.append(opportunity)

        found.sort(key=lambda o: o.combined_edge, reverse=True)
        if found:
            self.logger.info("Correlated opportunities", count=len(found))
        return found
