"""
Candidate-market sources.

The scanner only reads listings; whoever ingests them (a venue scraper, a
manual import) hands them over through a MarketSource. Two sources ship
here: an in-memory one and one that reads a JSON snapshot file written by
an external collector.
"""

from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol

import orjson
import structlog

from edgescan.errors import SourceUnavailable
from edgescan.matching.canonical import split_teams
from edgescan.models.schemas import CandidateMarket, MarketStatus, MarketType

logger = structlog.get_logger()


class MarketSource(Protocol):
    async def fetch_markets(self, sports: Iterable[str]) -> list[CandidateMarket]:
        ...


def _filter(markets: Iterable[CandidateMarket], sports: Iterable[str]) -> list[CandidateMarket]:
    wanted = set(sports)
    return [m for m in markets if not wanted or m.sport in wanted]


class StaticMarketSource:
    """Listings held in memory; replace() swaps the whole set."""

    def __init__(self, markets: Optional[Iterable[CandidateMarket]] = None):
        self._markets: tuple[CandidateMarket, ...] = tuple(markets or ())

    def replace(self, markets: Iterable[CandidateMarket]) -> None:
        self._markets = tuple(markets)

    async def fetch_markets(self, sports: Iterable[str]) -> list[CandidateMarket]:
        return _filter(self._markets, sports)


def market_from_dict(data: dict) -> Optional[CandidateMarket]:
    """
    Build a listing from a collector record.

    Accepts explicit home/away fields, or falls back to parsing a
    "Home vs Away" question.
    """
    home = data.get("outcome_id_home") or data.get("home")
    away = data.get("outcome_id_away") or data.get("away")
    if not (home and away):
        teams = split_teams(data.get("question", ""))
        if teams is None:
            return None
        home, away = teams

    end_date = data.get("end_date")
    return CandidateMarket(
        market_id=str(data["market_id"]),
        outcome_id_home=home,
        outcome_id_away=away,
        price_yes=float(data["price_yes"]),
        price_no=float(data["price_no"]),
        volume=float(data.get("volume") or 0.0),
        liquidity=float(data.get("liquidity") or 0.0),
        status=MarketStatus(data.get("status", MarketStatus.ACTIVE.value)),
        sport=data.get("sport", ""),
        question=data.get("question", ""),
        market_type=data.get("market_type", MarketType.H2H.value),
        end_date=datetime.fromisoformat(end_date.replace("Z", "+00:00")) if end_date else None,
    )


class FileMarketSource:
    """Reads a JSON array of listing records, re-read on every fetch."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.logger = logger.bind(component="market_source", path=str(self.path))

    async def fetch_markets(self, sports: Iterable[str]) -> list[CandidateMarket]:
        try:
            records = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise SourceUnavailable("markets_file", str(e)) from e
        if not isinstance(records, list):
            raise SourceUnavailable("markets_file", f"expected a list, got {type(records).__name__}")

        markets = []
        skipped = 0
        for record in records:
            try:
                market = market_from_dict(record)
            except (AttributeError, KeyError, TypeError, ValueError):
                market = None
            if market is None:
                skipped += 1
                continue
            markets.append(market)

        if skipped:
            self.logger.warning("Skipped malformed listings", skipped=skipped)
        return _filter(markets, sports)
