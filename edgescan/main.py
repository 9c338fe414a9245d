"""
Edge Scanner - Main Entry Point.

Runs the two scan cadences side by side:
1. Watch tick: every few minutes, a rotating subset of sports
2. Active tick: every minute, only the escalated events

Usage:
    python -m edgescan.main
    python -m edgescan.main --once     # one watch tick + one active tick

Environment Variables:
    ODDS_API_KEY                          - Required: The Odds API key
    EDGESCAN_ENABLED_SPORTS               - e.g. basketball_nba,icehockey_nhl
    EDGESCAN_MARKETS_FILE                 - JSON listings from the market collector
    EDGESCAN_MOVEMENT__MAX_SIMULTANEOUS_ACTIVE - hot-tier cap (default: 5)
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

import structlog

from edgescan.config import ScanConfig, get_settings
from edgescan.feeds.markets import FileMarketSource, MarketSource, StaticMarketSource
from edgescan.feeds.odds_api import OddsAPIFeed
from edgescan.pipeline import ScanPipeline, TickReport
from edgescan.storage.store import ScanStore
from edgescan.utils.logging import SignalJournal, setup_logging

logger = structlog.get_logger()


class EdgeScanBot:
    """
    Two-cadence scanner.

    The watch loop is cheap and broad; the active loop is expensive and
    narrow, bounded by max_simultaneous_active. Both share one pipeline so
    they see the same watch states.
    """

    def __init__(self, settings: Optional[ScanConfig] = None):
        self.settings = settings or get_settings()
        self.logger = logger.bind(component="edgescan_bot")

        if not self.settings.odds_api.api_key:
            self.logger.error("ODDS_API_KEY environment variable required")
            raise ValueError("Missing ODDS_API_KEY")

        self.feed = OddsAPIFeed(self.settings.odds_api, self.settings.aggregation)
        self.store = ScanStore(self.settings.db_path).init_db()
        self.journal = SignalJournal(self.settings.log_dir)

        market_source: MarketSource
        if self.settings.markets_file:
            market_source = FileMarketSource(self.settings.markets_file)
        else:
            self.logger.warning("No markets file configured, signals will not be emitted")
            market_source = StaticMarketSource()

        self.pipeline = ScanPipeline(
            quote_source=self.feed,
            market_source=market_source,
            store=self.store,
            config=self.settings,
            journal=self.journal,
        )

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._ticks = {"watch": 0, "active": 0}

    async def start(self) -> None:
        self.logger.info(
            "Starting edge scanner",
            sports=self.settings.sports,
            watch_interval_min=self.settings.watch_poll_interval_minutes,
            active_interval_s=self.settings.active_poll_interval_seconds,
            max_active=self.settings.movement.max_simultaneous_active,
        )
        self._running = True
        await self.feed.start()

        try:
            await asyncio.gather(
                self._loop(
                    "watch",
                    self.pipeline.watch_tick,
                    self.settings.watch_poll_interval_minutes * 60,
                ),
                self._loop(
                    "active",
                    self.pipeline.active_tick,
                    self.settings.active_poll_interval_seconds,
                ),
            )
        except asyncio.CancelledError:
            self.logger.info("Bot cancelled")

        await self.stop()

    async def run_once(self) -> list[TickReport]:
        await self.feed.start()
        try:
            return [await self.pipeline.watch_tick(), await self.pipeline.active_tick()]
        finally:
            await self.stop()

    async def stop(self) -> None:
        self.logger.info("Stopping edge scanner", ticks=self._ticks)
        self._running = False
        await self.feed.stop()
        self.pipeline.close()
        self.journal.close()
        self.store.close()

    def shutdown(self) -> None:
        """Trigger graceful shutdown."""
        self._running = False
        self._shutdown_event.set()

    async def _loop(self, name: str, tick, interval_seconds: float) -> None:
        while self._running:
            report = await tick()
            self._ticks[name] += 1
            if report.aborted:
                self.logger.warning("Tick aborted, retrying next schedule", tier=name)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue


def main() -> int:
    parser = argparse.ArgumentParser(description="Adaptive sports edge scanner")
    parser.add_argument("--once", action="store_true", help="run one watch and one active tick")
    args = parser.parse_args()

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)

    try:
        bot = EdgeScanBot(settings)
    except ValueError as e:
        logger.error("Configuration error", error=str(e))
        return 1

    if args.once:
        reports = asyncio.run(bot.run_once())
        return 1 if any(r.aborted for r in reports) else 0

    def signal_handler(sig, frame):
        logger.info("Shutdown requested")
        bot.shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(bot.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
