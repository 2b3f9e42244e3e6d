"""
Sports data provider client (api-sports.io).

Jobs only depend on the ``SportsDataProvider`` interface:

- fetch_games_for_date(league, date) -> list of raw records
- fetch_live_games(league) -> list of raw records

``ApiSportsClient`` implements it over httpx with tenacity retries and a
pybreaker circuit breaker, so a provider outage fails fast instead of
stalling every date of a discovery window.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core import metrics
from app.core.config import settings
from app.core.logging import get_logger
from app.models.enums import LifecycleState
from app.services.lifecycle.exceptions import ProviderError
from app.services.lifecycle.payloads import PROVIDER_NAME, normalize_record
from app.services.lifecycle.status import normalize_status
from app.utils.timezone import season_for_date, utcnow

logger = get_logger(__name__)


class SportsDataProvider(Protocol):
    async def fetch_games_for_date(self, league: str, date: str) -> List[Dict[str, Any]]:
        ...

    async def fetch_live_games(self, league: str) -> List[Dict[str, Any]]:
        ...


# Per-league endpoint configuration
LEAGUE_CONFIG: Dict[str, Dict[str, Any]] = {
    "nfl": {
        "base_url": "https://v1.american-football.api-sports.io",
        "path": "games",
        "league_id": 1,
        "season_format": "YYYY",
        "supports_live": True,
    },
    "nba": {
        "base_url": "https://v1.basketball.api-sports.io",
        "path": "games",
        "league_id": 12,
        "season_format": "YYYY-YYYY",  # e.g. "2024-2025"
        "supports_live": False,
    },
    "nhl": {
        "base_url": "https://v1.hockey.api-sports.io",
        "path": "games",
        "league_id": 57,
        "season_format": "YYYY",
        "supports_live": False,
    },
    "mlb": {
        "base_url": "https://v1.baseball.api-sports.io",
        "path": "games",
        "league_id": 1,
        "season_format": "YYYY",
        "supports_live": False,
    },
    "soccer": {
        "base_url": "https://v3.football.api-sports.io",
        "path": "fixtures",
        "league_id": 39,  # Premier League
        "season_format": "YYYY",
        "supports_live": True,
    },
}

DEFAULT_FAIL_MAX = 5  # Failures before opening the circuit
DEFAULT_RESET_TIMEOUT = 60  # Seconds before a half-open trial request

api_sports_breaker = CircuitBreaker(
    fail_max=DEFAULT_FAIL_MAX,
    reset_timeout=DEFAULT_RESET_TIMEOUT,
    name="api_sports",
)


def format_season(league: str, date: str) -> str:
    """Season query parameter for a league and YYYY-MM-DD date."""
    season = season_for_date(league, datetime.fromisoformat(date))
    if LEAGUE_CONFIG[league]["season_format"] == "YYYY-YYYY":
        return f"{season}-{season + 1}"
    return str(season)


class ApiSportsClient:
    """
    Async api-sports client.

    Usage:
        async with ApiSportsClient(api_key=settings.API_SPORTS_KEY) as provider:
            games = await provider.fetch_games_for_date("nba", "2025-01-15")
    """

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: CircuitBreaker = api_sports_breaker,
    ):
        self.api_key = api_key
        self.breaker = breaker
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "ApiSportsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _config(self, league: str) -> Dict[str, Any]:
        try:
            return LEAGUE_CONFIG[league.lower()]
        except KeyError:
            raise ProviderError(f"League '{league}' is not configured for {PROVIDER_NAME}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.RequestError, httpx.TimeoutException)),
        reraise=True,
    )
    async def _fetch_with_retry(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._client.get(url, params=params, headers={"x-apisports-key": self.api_key})
        response.raise_for_status()
        return response.json()

    async def _request(self, league: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        config = self._config(league)
        url = f"{config['base_url']}/{config['path']}"
        query = {"league": config["league_id"], **params}

        try:
            with self.breaker.calling():
                data = await self._fetch_with_retry(url, query)
        except CircuitBreakerError:
            logger.warning(f"Circuit breaker '{self.breaker.name}' is OPEN - skipping {league} request")
            metrics.record_provider_request_failure(league, "circuit_open")
            raise ProviderError(f"{PROVIDER_NAME} circuit breaker is open", {"league": league})
        except httpx.HTTPStatusError as e:
            metrics.record_provider_request_failure(league, f"http_{e.response.status_code}")
            raise ProviderError(
                f"{PROVIDER_NAME} returned HTTP {e.response.status_code}",
                {"league": league, "params": params},
            )
        except (httpx.RequestError, ValueError) as e:
            logger.warning(f"⚠️ {PROVIDER_NAME} {league} request failed after retries: {e}")
            metrics.record_provider_request_failure(league, type(e).__name__)
            raise ProviderError(f"{PROVIDER_NAME} request failed: {e}", {"league": league, "params": params})
        finally:
            metrics.update_breaker_state(self.breaker.name, self.breaker.current_state)

        errors = data.get("errors") if isinstance(data, dict) else None
        if errors:
            metrics.record_provider_request_failure(league, "api_error")
            raise ProviderError(f"{PROVIDER_NAME} error: {errors}", {"league": league, "params": params})

        metrics.record_provider_request_success(league)
        response = data.get("response") if isinstance(data, dict) else None
        return response if isinstance(response, list) else []

    async def fetch_games_for_date(self, league: str, date: str) -> List[Dict[str, Any]]:
        league = league.lower()
        return await self._request(league, {"date": date, "season": format_season(league, date)})

    async def fetch_live_games(self, league: str) -> List[Dict[str, Any]]:
        """
        In-progress games for a league.

        Sports without a ``live=all`` filter are served from today's schedule
        filtered down to LIVE records.
        """
        league = league.lower()
        if self._config(league)["supports_live"]:
            return await self._request(league, {"live": "all"})

        today = utcnow().date().isoformat()
        games = await self.fetch_games_for_date(league, today)
        live = []
        for raw in games:
            event = normalize_record(league, raw)
            if event and normalize_status(
                PROVIDER_NAME, event.status_raw, event.home_score, event.away_score, event.starts_at
            ) == LifecycleState.LIVE:
                live.append(raw)
        return live


def create_provider() -> ApiSportsClient:
    """Client configured from settings; use as an async context manager."""
    return ApiSportsClient(api_key=settings.API_SPORTS_KEY, timeout=settings.API_SPORTS_TIMEOUT)
