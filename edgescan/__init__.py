"""
Adaptive edge scanner for sports prediction markets.

Compares de-vigged bookmaker consensus probabilities against prediction-market
listings for the same event and decides which events deserve expensive,
high-frequency attention.

Architecture:
- feeds/: Quote sources (The Odds API) and candidate-market sources
- matching/: Team canonicalization and the bookmaker index
- engine/: Aggregation, movement detection, escalation, scoring, staking
- storage/: Idempotent persistence of snapshots, watch states and signals
- pipeline.py: Watch tick (low frequency) and active tick (high frequency)

External API quota is the scarcest resource: only a handful of events are
ever polled at high frequency, and only after several books agree that the
line has really moved.
"""

__version__ = "0.1.0"
