"""Quote and candidate-market sources."""

from edgescan.feeds.odds_api import OddsAPIFeed
from edgescan.feeds.markets import (
    MarketSource,
    StaticMarketSource,
    FileMarketSource,
    market_from_dict,
)

__all__ = [
    "OddsAPIFeed",
    "MarketSource",
    "StaticMarketSource",
    "FileMarketSource",
    "market_from_dict",
]
