"""
Configuration settings for the edge scanner.
Uses pydantic-settings for validation and environment variable loading.

Every tunable threshold lives here so ticks never hard-code a number.
Nested values can be overridden with EDGESCAN_<SECTION>__<FIELD>, e.g.
EDGESCAN_MOVEMENT__MAX_SIMULTANEOUS_ACTIVE=3.
"""

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Baseline weight for a regular retail book; sharp books carry >= 2x.
BASELINE_SOURCE_WEIGHT = 1.0


class OddsAPISettings(BaseSettings):
    """The Odds API connection and quota settings."""

    api_key: str = Field(
        default="",
        validation_alias=AliasChoices("ODDS_API_KEY", "api_key"),
        description="The Odds API key",
    )
    base_url: str = "https://api.the-odds-api.com/v4"

    regions: str = "us,us2,uk,eu,au"
    markets: str = "h2h"
    bookmakers: str = "pinnacle,betfair_ex_eu,betfair,matchbook,circa,draftkings,fanduel,betmgm"

    # Concurrency / timeouts
    timeout_seconds: float = 15.0
    max_concurrency: int = 2  # The Odds API throttles bursts hard
    requests_per_minute: int = 10

    # Quota (free tier is 500/month)
    max_daily_requests: int = 200
    max_monthly_requests: int = 5000


class AggregationSettings(BaseSettings):
    """De-vig and consensus weighting."""

    sharp_weighting_enabled: bool = True
    outlier_sigma: float = 2.0

    # Source reputation. Anything missing gets BASELINE_SOURCE_WEIGHT.
    source_weights: dict[str, float] = Field(default_factory=lambda: {
        "pinnacle": 2.5,       # Sharpest book
        "betfair_ex_eu": 2.2,  # Exchange
        "betfair_ex_uk": 2.2,
        "betfair": 2.0,
        "matchbook": 2.0,
        "circa": 2.0,
        "draftkings": 1.0,
        "fanduel": 1.0,
        "betmgm": 1.0,
    })
    sharp_weight_floor: float = 2.0  # weight >= floor counts as a sharp source

    def weight_for(self, source_id: str) -> float:
        return self.source_weights.get(source_id.lower(), BASELINE_SOURCE_WEIGHT)

    def is_sharp(self, source_id: str) -> bool:
        return self.weight_for(source_id) >= self.sharp_weight_floor


class MovementSettings(BaseSettings):
    """Movement detection, consensus gate and escalation thresholds."""

    lookback_minutes: float = 15.0
    movement_threshold_pct: float = 6.0
    min_velocity: float = 0.4  # probability points per minute

    # Consensus gate
    min_confirming_books: int = 2
    max_source_spread_pts: float = 5.0

    # Admission control
    max_simultaneous_active: int = 5
    active_window_minutes: float = 20.0

    # Confirmation
    hold_window_minutes: float = 3.0
    samples_required: int = 2
    # Dropped as reverted once the move falls below threshold - band
    reversal_band_pct: float = 1.5

    @field_validator("max_simultaneous_active", "samples_required", "min_confirming_books")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class ScoringSettings(BaseSettings):
    """Edge tiers and urgency bands."""

    premium_edge_pct: float = 8.0
    good_edge_pct: float = 5.0
    marginal_edge_pct: float = 3.0

    critical_hours: float = 1.0
    critical_edge_pct: float = 5.0
    high_hours: float = 6.0
    high_edge_pct: float = 3.5
    high_edge_any_time_pct: float = 10.0
    low_urgency_hours: float = 72.0

    signal_ttl_minutes: float = 120.0
    min_market_price: float = 0.01
    max_market_price: float = 0.99


class StakingSettings(BaseSettings):
    """Kelly sizing for single and correlated bets."""

    bankroll: float = 10_000.0
    kelly_multiplier: float = 0.25  # Quarter Kelly
    min_stake_pct: float = 0.0025   # 0.25% of bankroll
    max_stake_pct: float = 0.015    # 1.5% of bankroll

    multi_leg_kelly_cap: float = 0.08
    min_combined_edge_pct: float = 5.0
    min_leg_edge_pct: float = 2.0
    max_loss: float = 5_000.0
    min_kelly_fraction: float = 0.01


class ScanConfig(BaseSettings):
    """Main scanner settings."""

    model_config = SettingsConfigDict(
        env_prefix="EDGESCAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Sports to scan (comma-separated Odds API keys)
    enabled_sports: str = Field(
        default="basketball_nba,icehockey_nhl",
        description="Comma-separated list of sport keys",
    )
    max_sports_per_tick: int = 2

    # Cadences
    watch_poll_interval_minutes: float = 5.0
    active_poll_interval_seconds: float = 60.0

    # Retention
    index_lookback_hours: float = 24.0
    snapshot_retention_hours: float = 24.0

    # Worker pool for per-event aggregation/scoring
    event_workers: int = 4

    # Candidate-market listings written by an external collector (JSON array)
    markets_file: str = ""

    # Storage / logging
    db_path: str = "data/edgescan.db"
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Sub-settings
    odds_api: OddsAPISettings = Field(default_factory=OddsAPISettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    movement: MovementSettings = Field(default_factory=MovementSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    staking: StakingSettings = Field(default_factory=StakingSettings)

    @property
    def sports(self) -> list[str]:
        return [s.strip() for s in self.enabled_sports.split(",") if s.strip()]


# Singleton instance
_settings: Optional[ScanConfig] = None


def get_settings() -> ScanConfig:
    """Get settings singleton."""
    global _settings
    if _settings is None:
        _settings = ScanConfig()
    return _settings


def reload_settings() -> ScanConfig:
    """Reload settings from environment."""
    global _settings
    _settings = ScanConfig()
    return _settings
