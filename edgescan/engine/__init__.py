"""Aggregation, movement detection, escalation, scoring and staking."""

from edgescan.engine.aggregator import AggregatedMarket, ProbabilityAggregator
from edgescan.engine.movement import MovementDetector, MovementReading
from edgescan.engine.escalation import (
    ALLOWED_TRANSITIONS,
    EscalationManager,
    new_watch_state,
    transition,
)
from edgescan.engine.scorer import EdgeScore, EdgeScorer
from edgescan.engine.staking import StakingEngine, CORRELATION_MATRIX
from edgescan.engine.recheck import RecheckResult, recheck

__all__ = [
    "AggregatedMarket",
    "ProbabilityAggregator",
    "MovementDetector",
    "MovementReading",
    "ALLOWED_TRANSITIONS",
    "EscalationManager",
    "new_watch_state",
    "transition",
    "EdgeScore",
    "EdgeScorer",
    "StakingEngine",
    "CORRELATION_MATRIX",
    "RecheckResult",
    "recheck",
]
