"""Data models and schemas."""

from edgescan.models.schemas import (
    CONSENSUS_SOURCE,
    MarketType,
    WatchState,
    MarketStatus,
    Side,
    Tier,
    Urgency,
    BookmakerQuote,
    ProbabilitySnapshot,
    CandidateMarket,
    EventWatchState,
    MovementLog,
    SignalOpportunity,
    Leg,
    CorrelatedOpportunity,
)

__all__ = [
    "CONSENSUS_SOURCE",
    "MarketType",
    "WatchState",
    "MarketStatus",
    "Side",
    "Tier",
    "Urgency",
    "BookmakerQuote",
    "ProbabilitySnapshot",
    "CandidateMarket",
    "EventWatchState",
    "MovementLog",
    "SignalOpportunity",
    "Leg",
    "CorrelatedOpportunity",
]
