"""
Core data models and schemas.

Defines the records that flow through the scanner:
- Bookmaker quotes and probability snapshots (inputs, append-only)
- Event watch state (the escalation control record)
- Candidate markets (prediction-market listings, read-only)
- Signals and correlated multi-leg opportunities (outputs)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


CONSENSUS_SOURCE = "consensus"


class MarketType(str, Enum):
    """Bet market types used for correlation lookups."""
    H2H = "h2h"
    SPREAD = "spread"
    TOTAL = "total"
    FUTURES = "futures"


class WatchState(str, Enum):
    """Escalation states for a single event."""
    WATCHING = "watching"
    ACTIVE = "active"
    CONFIRMED = "confirmed"
    SIGNAL = "signal"
    DROPPED = "dropped"


class MarketStatus(str, Enum):
    """Listing status as published by the venue."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class Side(str, Enum):
    """YES backs the home outcome, NO backs the away outcome."""
    YES = "YES"
    NO = "NO"


class Tier(str, Enum):
    PREMIUM = "premium"
    GOOD = "good"
    MARGINAL = "marginal"


class Urgency(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def decimal_to_probability(decimal_odds: float) -> float:
    """Convert decimal odds to raw implied probability (vig included)."""
    if decimal_odds <= 0:
        return 0.0
    return 1 / decimal_odds


# =============================================================================
# Inputs
# =============================================================================

@dataclass(frozen=True)
class BookmakerQuote:
    """
    One source's price for one outcome at one instant.

    Immutable once captured: a newer quote supersedes it, nothing edits it.
    The event context (sport, teams, start time) travels with the quote so
    the index can be rebuilt from quotes alone.
    """
    source_id: str
    sharpness_weight: float
    outcome_id: str
    decimal_odds: float
    implied_probability: float
    captured_at: datetime

    sport: str = ""
    home_team: str = ""
    away_team: str = ""
    commence_time: Optional[datetime] = None
    market_type: str = MarketType.H2H.value

    @classmethod
    def from_decimal(
        cls,
        source_id: str,
        outcome_id: str,
        decimal_odds: float,
        captured_at: datetime,
        sharpness_weight: float = 1.0,
        **kwargs,
    ) -> "BookmakerQuote":
        """Create a quote from decimal odds, deriving implied probability."""
        return cls(
            source_id=source_id,
            sharpness_weight=sharpness_weight,
            outcome_id=outcome_id,
            decimal_odds=decimal_odds,
            implied_probability=decimal_to_probability(decimal_odds),
            captured_at=captured_at,
            **kwargs,
        )

    @property
    def event_name(self) -> str:
        return f"{self.home_team} vs {self.away_team}"


@dataclass(frozen=True)
class ProbabilitySnapshot:
    """
    One fair-probability observation for one (event, outcome, source).

    source is CONSENSUS_SOURCE for the aggregated estimate, otherwise the id
    of the book whose own de-vigged line this is.
    """
    event_key: str
    outcome_id: str
    fair_probability: float
    captured_at: datetime
    source: str = CONSENSUS_SOURCE

    def __post_init__(self):
        if not 0.0 < self.fair_probability < 1.0:
            raise ValueError(
                f"fair_probability must be in (0, 1), got {self.fair_probability}"
            )


@dataclass(frozen=True)
class CandidateMarket:
    """
    A tradeable prediction-market listing for a two-way event.

    price_yes is the price of the home outcome winning, price_no the price
    of the away outcome. Owned by the ingestion side; the scanner only
    records annotations about it elsewhere.
    """
    market_id: str
    outcome_id_home: str
    outcome_id_away: str
    price_yes: float
    price_no: float
    volume: float = 0.0
    liquidity: float = 0.0
    status: MarketStatus = MarketStatus.ACTIVE
    sport: str = ""
    question: str = ""
    market_type: str = MarketType.H2H.value
    end_date: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == MarketStatus.ACTIVE

    def price_for(self, side: Side) -> float:
        return self.price_yes if side == Side.YES else self.price_no


# =============================================================================
# Control state
# =============================================================================

@dataclass(frozen=True)
class EventWatchState:
    """
    Escalation control record for one event.

    Exactly one per event_key. Only engine.escalation.transition() produces
    new versions of it.
    """
    event_key: str
    watch_state: WatchState = WatchState.WATCHING
    initial_probability: float = 0.0
    peak_probability: float = 0.0
    current_probability: float = 0.0
    movement_pct: float = 0.0
    movement_velocity: float = 0.0
    escalated_at: Optional[datetime] = None
    active_until: Optional[datetime] = None
    hold_start_at: Optional[datetime] = None
    samples_since_hold: int = 0
    reverted: bool = False
    matched_market_id: Optional[str] = None

    event_name: str = ""
    sport: str = ""
    primary_outcome: str = ""
    commence_time: Optional[datetime] = None
    drop_reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_hot(self) -> bool:
        """Occupies a slot in the high-frequency tier."""
        return self.watch_state in (WatchState.ACTIVE, WatchState.CONFIRMED)

    @property
    def direction(self) -> int:
        if self.movement_pct > 0:
            return 1
        if self.movement_pct < 0:
            return -1
        return 0


@dataclass(frozen=True)
class MovementLog:
    """Terminal outcome of one escalation, kept for model evaluation."""
    event_key: str
    final_state: str
    movement_pct: float
    velocity: float
    hold_duration_seconds: float
    samples_captured: int
    market_matched: bool
    logged_at: datetime
    edge_at_confirmation: Optional[float] = None


# =============================================================================
# Outputs
# =============================================================================

@dataclass
class SignalOpportunity:
    """
    A scored edge on one side of a matched market.

    At most one active signal exists per (event_key, side); re-detection
    refreshes the existing row.
    """
    event_key: str
    side: Side
    market_price: float
    fair_probability: float
    edge_pct: float
    confidence_score: int
    urgency: Urgency
    tier: Tier
    created_at: datetime
    expires_at: datetime

    outcome_id: str = ""
    market_id: str = ""
    market_type: str = MarketType.H2H.value
    sport: str = ""
    event_name: str = ""
    recommended_stake_pct: float = 0.0
    updated_at: Optional[datetime] = None
    status: str = "active"

    @property
    def decimal_odds(self) -> float:
        """Payout odds implied by the market price."""
        if self.market_price <= 0:
            return 0.0
        return 1 / self.market_price

    def to_log(self) -> dict:
        """Convert to loggable dict."""
        return {
            "event_key": self.event_key,
            "event_name": self.event_name,
            "side": self.side.value,
            "outcome": self.outcome_id,
            "market_id": self.market_id,
            "market_price": self.market_price,
            "fair_probability": round(self.fair_probability, 4),
            "edge_pct": round(self.edge_pct, 2),
            "tier": self.tier.value,
            "urgency": self.urgency.value,
            "confidence": self.confidence_score,
            "stake_pct": self.recommended_stake_pct,
        }


@dataclass(frozen=True)
class Leg:
    """One bet inside a correlated combination."""
    event_key: str
    market_type: str
    entity: str
    side: Side
    market_price: float
    fair_probability: float
    edge_pct: float
    stake: float = 0.0
    market_id: str = ""


@dataclass
class CorrelatedOpportunity:
    """Two or more legs backing the same entity, sized together."""
    entity: str
    sport: str
    legs: list[Leg]
    correlation_coefficient: float
    combined_probability: float
    combined_edge: float
    kelly_fraction: float
    max_loss: float = 0.0
    expected_value: float = 0.0
    risk_tier: str = "conservative"
    correlation_type: str = "low"
    created_at: datetime = field(default_factory=utc_now)

    @property
    def opportunity_key(self) -> str:
        """Natural key: entity plus the sorted leg identities."""
        legs = sorted(f"{leg.event_key}:{leg.market_type}:{leg.side.value}" for leg in self.legs)
        return f"{self.sport}|{self.entity}|{'+'.join(legs)}"
