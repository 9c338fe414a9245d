"""
Logging setup and the signal journal.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import orjson
import structlog
from structlog.processors import TimeStamper

from edgescan.models.schemas import CorrelatedOpportunity, SignalOpportunity


def _dumps(obj, **kwargs) -> str:
    return orjson.dumps(obj, default=str).decode()


def setup_logging(log_level: str = "INFO", log_dir: Optional[str] = "logs") -> None:
    """
    Configure structlog for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for the signal journal, created if missing
    """
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(serializer=_dumps),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class SignalJournal:
    """
    Append-only daily JSONL file of emitted signals and combinations.

    One line per signal write, so re-scored signals appear once per tick;
    the store holds the deduplicated view.
    """

    def __init__(self, log_dir: str = "logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = structlog.get_logger("signal_journal")

        self._current_date: Optional[str] = None
        self._file_handle = None

    def _handle(self, now: datetime):
        today = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
        if today != self._current_date:
            if self._file_handle:
                self._file_handle.close()
            self._current_date = today
            self._file_handle = open(self.log_dir / f"signals_{today}.jsonl", "ab")
        return self._file_handle

    def _write(self, entry: dict, now: datetime) -> None:
        handle = self._handle(now)
        handle.write(orjson.dumps(entry, default=str) + b"\n")
        handle.flush()

    def log_signal(self, signal: SignalOpportunity, now: datetime) -> None:
        entry = {"type": "signal", "ts": now.isoformat(), **signal.to_log()}
        self._write(entry, now)
        self.logger.info("signal_logged", **signal.to_log())

    def log_correlated(self, opportunity: CorrelatedOpportunity, now: datetime) -> None:
        entry = {
            "type": "correlated",
            "ts": now.isoformat(),
            "key": opportunity.opportunity_key,
            "entity": opportunity.entity,
            "legs": len(opportunity.legs),
            "correlation": round(opportunity.correlation_coefficient, 3),
            "combined_edge": round(opportunity.combined_edge, 3),
            "kelly_fraction": round(opportunity.kelly_fraction, 4),
            "risk_tier": opportunity.risk_tier,
        }
        self._write(entry, now)

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
