"""
Error taxonomy for the scanner.

Everything except StoreUnavailable is local to one source, one event or one
market and must never abort a tick.
"""

from typing import Optional


class EdgeScanError(Exception):
    """Base class for scanner errors."""


class SourceUnavailable(EdgeScanError):
    """An external quote source timed out or errored for this tick."""

    def __init__(self, source: str, reason: str = ""):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}" if reason else f"{source} unavailable")


class QuotaExhausted(SourceUnavailable):
    """The external API request quota is used up."""


class NoConsensus(EdgeScanError):
    """Too few sources agree on a movement. Suppresses escalation."""

    def __init__(self, event_key: str, confirming: int, spread_pts: float):
        self.event_key = event_key
        self.confirming = confirming
        self.spread_pts = spread_pts
        super().__init__(
            f"{event_key}: {confirming} confirming sources, spread {spread_pts:.2f} pts"
        )


class UnresolvedEntity(EdgeScanError):
    """A participant name could not be canonicalized."""

    def __init__(self, name: str, sport: str):
        self.name = name
        self.sport = sport
        super().__init__(f"unresolved {sport} participant: {name!r}")


class AmbiguousMatch(EdgeScanError):
    """More than one candidate market matches the same event."""

    def __init__(self, event_key: str, market_ids: list[str]):
        self.event_key = event_key
        self.market_ids = list(market_ids)
        super().__init__(f"{event_key} matches {len(market_ids)} markets: {', '.join(market_ids)}")


class DegenerateMarket(EdgeScanError):
    """Fewer than two outcomes, or a non-positive overround."""

    def __init__(self, event_key: Optional[str], reason: str):
        self.event_key = event_key
        self.reason = reason
        super().__init__(f"{event_key or '<unknown>'}: {reason}")


class IllegalTransition(EdgeScanError):
    """A watch-state change that the transition table does not allow."""

    def __init__(self, event_key: str, current: str, target: str):
        self.event_key = event_key
        self.current = current
        self.target = target
        super().__init__(f"{event_key}: {current} -> {target} is not allowed")


class StoreUnavailable(EdgeScanError):
    """The persistence layer cannot be reached. Fatal to the current tick."""
