"""
The Odds API quote source.

Fetches h2h odds for one sport per request and flattens them into
BookmakerQuote records, one per (bookmaker, outcome).

API Docs: https://the-odds-api.com/liveapi/guides/v4/

Quota is the scarcest resource: every odds request costs
(markets x regions) credits. The feed tracks daily and monthly usage and
refuses to call once a limit is reached, raising QuotaExhausted so the tick
can skip fetching instead of burning the remainder.
"""

import asyncio
import ssl
import time
from datetime import datetime, timezone
from typing import Optional

import certifi
import httpx
import structlog

from edgescan.config import AggregationSettings, OddsAPISettings
from edgescan.errors import QuotaExhausted, SourceUnavailable
from edgescan.models.schemas import BookmakerQuote, MarketType, utc_now

logger = structlog.get_logger()

SOURCE_NAME = "odds_api"


def _parse_time(value: str) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


class OddsAPIFeed:
    """
    Odds source backed by The Odds API.

    Usage:
        feed = OddsAPIFeed(settings.odds_api, settings.aggregation)
        await feed.start()
        quotes = await feed.fetch_odds("basketball_nba")
        await feed.stop()
    """

    def __init__(
        self,
        settings: Optional[OddsAPISettings] = None,
        aggregation: Optional[AggregationSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or OddsAPISettings()
        self.aggregation = aggregation or AggregationSettings()
        self._transport = transport

        self.logger = logger.bind(feed=SOURCE_NAME)

        # HTTP client
        self._http_client: Optional[httpx.AsyncClient] = None

        # Rate limiting
        self._request_timestamps: list[float] = []
        self._rate_lock = asyncio.Lock()

        # Quota
        self._requests_remaining: Optional[int] = None
        self._requests_used_total: Optional[int] = None
        self._used_today = 0
        self._used_month = 0
        self._quota_day = utc_now().date()

        # Health
        self._error_count = 0
        self._last_success: Optional[datetime] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self._http_client is not None:
            return
        self.logger.info("Starting Odds API feed")
        if self._transport is not None:
            self._http_client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.timeout_seconds,
                headers={"Accept": "application/json"},
            )
        else:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            self._http_client = httpx.AsyncClient(
                verify=ssl_context,
                timeout=self.settings.timeout_seconds,
                headers={"Accept": "application/json"},
            )

    async def stop(self) -> None:
        if self._http_client is not None:
            self.logger.info("Stopping Odds API feed")
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "OddsAPIFeed":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # =========================================================================
    # Rate limiting / quota
    # =========================================================================

    async def _wait_for_rate_limit(self) -> None:
        """Wait if we're hitting the per-minute request limit."""
        async with self._rate_lock:
            now = time.monotonic()
            self._request_timestamps = [ts for ts in self._request_timestamps if now - ts < 60]
            if len(self._request_timestamps) >= self.settings.requests_per_minute:
                wait_time = 60 - (now - self._request_timestamps[0])
                if wait_time > 0:
                    self.logger.debug("Rate limit reached, waiting", seconds=round(wait_time, 1))
                    await asyncio.sleep(wait_time)
            self._request_timestamps.append(time.monotonic())

    def _roll_quota_window(self, today) -> None:
        if today != self._quota_day:
            if (today.year, today.month) != (self._quota_day.year, self._quota_day.month):
                self._used_month = 0
            self._used_today = 0
            self._quota_day = today

    @property
    def request_cost(self) -> int:
        """Credits charged per odds request: markets x regions."""
        markets = len([m for m in self.settings.markets.split(",") if m.strip()])
        regions = len([r for r in self.settings.regions.split(",") if r.strip()])
        return max(1, markets * regions)

    def quota_available(self, requests: int = 1) -> bool:
        self._roll_quota_window(utc_now().date())
        cost = requests * self.request_cost
        if self._requests_remaining is not None and self._requests_remaining < cost:
            return False
        if self._used_today + cost > self.settings.max_daily_requests:
            return False
        if self._used_month + cost > self.settings.max_monthly_requests:
            return False
        return True

    def _track_usage(self, response: httpx.Response) -> None:
        headers = response.headers
        if "x-requests-remaining" in headers:
            self._requests_remaining = int(float(headers["x-requests-remaining"]))
        if "x-requests-used" in headers:
            self._requests_used_total = int(float(headers["x-requests-used"]))
        cost = int(float(headers.get("x-requests-last", self.request_cost)))
        self._used_today += cost
        self._used_month += cost

    # =========================================================================
    # API Calls
    # =========================================================================

    async def _make_request(self, endpoint: str, params: Optional[dict] = None) -> list | dict:
        if self._http_client is None:
            await self.start()

        if not self.quota_available():
            raise QuotaExhausted(
                SOURCE_NAME,
                f"used today {self._used_today}/{self.settings.max_daily_requests}, "
                f"month {self._used_month}/{self.settings.max_monthly_requests}, "
                f"remaining {self._requests_remaining}",
            )

        await self._wait_for_rate_limit()

        url = f"{self.settings.base_url}{endpoint}"
        full_params = {"apiKey": self.settings.api_key}
        if params:
            full_params.update(params)

        try:
            response = await self._http_client.get(url, params=full_params)
        except httpx.HTTPError as e:
            self._error_count += 1
            raise SourceUnavailable(SOURCE_NAME, f"{endpoint}: {type(e).__name__}") from e

        self._track_usage(response)

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as e:
                self._error_count += 1
                raise SourceUnavailable(SOURCE_NAME, f"{endpoint}: invalid JSON body") from e
            self._last_success = utc_now()
            self.logger.debug(
                "API request",
                endpoint=endpoint,
                remaining=self._requests_remaining,
                used_today=self._used_today,
            )
            return data

        self._error_count += 1
        if response.status_code == 401:
            raise SourceUnavailable(SOURCE_NAME, "invalid API key")
        if response.status_code == 429:
            raise QuotaExhausted(SOURCE_NAME, "rate limited by API")
        raise SourceUnavailable(
            SOURCE_NAME, f"HTTP {response.status_code}: {response.text[:200]}"
        )

    async def fetch_odds(
        self,
        sport: str,
        captured_at: Optional[datetime] = None,
    ) -> list[BookmakerQuote]:
        """
        Fetch current odds for one sport.

        Raises:
            SourceUnavailable: network error or non-200 response
            QuotaExhausted: daily/monthly budget used up, or HTTP 429
        """
        params = {
            "regions": self.settings.regions,
            "markets": self.settings.markets,
            "oddsFormat": "decimal",
            "dateFormat": "iso",
        }
        if self.settings.bookmakers:
            params["bookmakers"] = self.settings.bookmakers

        data = await self._make_request(f"/sports/{sport}/odds", params)
        if not isinstance(data, list):
            raise SourceUnavailable(SOURCE_NAME, f"unexpected payload for {sport}")

        quotes = self.parse_events(data, sport, captured_at)
        self.logger.info(
            "Fetched odds",
            sport=sport,
            events=len(data),
            quotes=len(quotes),
            requests_remaining=self._requests_remaining,
        )
        return quotes

    def parse_events(
        self,
        data: list[dict],
        sport: str,
        captured_at: Optional[datetime] = None,
    ) -> list[BookmakerQuote]:
        """Flatten an /odds payload into quotes. Malformed entries are skipped."""
        fallback_time = captured_at or utc_now()
        quotes: list[BookmakerQuote] = []

        for event in data:
            home = event.get("home_team", "")
            away = event.get("away_team", "")
            if not home or not away:
                continue
            try:
                commence = _parse_time(event.get("commence_time", ""))
            except ValueError:
                self.logger.debug("Bad commence_time", event_id=event.get("id"))
                continue

            for book in event.get("bookmakers", []):
                source_id = book.get("key", "")
                if not source_id:
                    continue
                book_time = captured_at
                if book_time is None:
                    try:
                        book_time = _parse_time(book.get("last_update", "")) or fallback_time
                    except ValueError:
                        book_time = fallback_time
                weight = self.aggregation.weight_for(source_id)

                for market in book.get("markets", []):
                    market_type = market.get("key", MarketType.H2H.value)
                    if market_type != MarketType.H2H.value:
                        continue
                    for outcome in market.get("outcomes", []):
                        price = outcome.get("price")
                        name = outcome.get("name", "")
                        if not name or not isinstance(price, (int, float)) or price <= 1.0:
                            continue
                        quotes.append(
                            BookmakerQuote.from_decimal(
                                source_id=source_id,
                                outcome_id=name,
                                decimal_odds=float(price),
                                captured_at=book_time,
                                sharpness_weight=weight,
                                sport=event.get("sport_key", sport),
                                home_team=home,
                                away_team=away,
                                commence_time=commence,
                                market_type=market_type,
                            )
                        )

        return quotes

    def get_metrics(self) -> dict:
        return {
            "requests_remaining": self._requests_remaining,
            "requests_used_total": self._requests_used_total,
            "used_today": self._used_today,
            "used_month": self._used_month,
            "error_count": self._error_count,
            "last_success": self._last_success.isoformat() if self._last_success else None,
        }
