"""
FPL Insights - Services Module

HTTP client, retry policy, cached FPL API fetchers, league snapshot loading,
player lookup, the async prediction entry point and fixture status utilities.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Callable, Awaitable, Any

import httpx
from fastapi import HTTPException

from fpl_insights.config import MODEL_CONFIG, RetryConfig
from fpl_insights.constants import (
    FPL_BASE_URL, USER_AGENT, BOOTSTRAP_ENDPOINT, FIXTURES_ENDPOINT,
    LEAGUE_SNAPSHOT_KEY, element_summary_endpoint, live_endpoint,
)
from fpl_insights.models import (
    LeagueSnapshot, PlayerPrediction, FixtureState, FixtureStatus,
)
from fpl_insights.cache import shared_cache, long_cache
from fpl_insights.calculators import build_league_snapshot
from fpl_insights.predictor import predict_player_points


logger = logging.getLogger("fpl_insights")


# ============ RETRY POLICY ============

@dataclass
class RetryPolicy:
    """
    Retry an async operation with linear backoff.

    Attempt n (1-based) that fails waits base_delay * n seconds before the next
    one. The last error is re-raised once max_attempts is reached. Upstream
    4xx responses other than 429 are raised at once.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    retry_on: tuple = (httpx.TransportError, httpx.HTTPStatusError, ValueError)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @classmethod
    def from_config(cls, config: RetryConfig = None) -> "RetryPolicy":
        config = config or MODEL_CONFIG["retry"]
        return cls(max_attempts=config.max_attempts, base_delay=config.base_delay)

    def backoff(self, attempt: int) -> float:
        return self.base_delay * attempt

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status == 429
        return True

    async def run(self, operation: Callable[[], Awaitable[Any]], description: str = "operation") -> Any:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except self.retry_on as e:
                if not self.is_retryable(e):
                    raise
                last_error = e
                if attempt < self.max_attempts:
                    delay = self.backoff(attempt)
                    logger.warning(f"{description} failed (attempt {attempt}/{self.max_attempts}), retry in {delay:.1f}s: {e}")
                    await self.sleep(delay)
        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_error}")
        raise last_error


retry_policy = RetryPolicy.from_config()


# ============ HTTP CLIENT ============

# Global HTTP client (initialized in lifespan)
http_client: Optional[httpx.AsyncClient] = None


def create_http_client(**kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=FPL_BASE_URL,
        timeout=MODEL_CONFIG["retry"].timeout,
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
        headers={"User-Agent": USER_AGENT},
        **kwargs,
    )


async def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client, creating one if needed."""
    global http_client
    if http_client is None:
        http_client = create_http_client()
    return http_client


async def fetch_with_retry(endpoint: str) -> Any:
    """GET an FPL endpoint and decode its JSON, retrying transient failures."""
    client = await get_http_client()

    async def _get():
        response = await client.get(endpoint)
        response.raise_for_status()
        return response.json()

    return await retry_policy.run(_get, description=f"GET {endpoint}")


# ============ FPL API FETCHERS ============

async def fetch_fpl(endpoint: str, ttl: Optional[float] = None) -> Any:
    """
    Cached upstream fetch keyed by endpoint path.

    Concurrent cold requests for the same endpoint share one upstream call.
    Exhausted retries surface as a 503 so callers know to try again later; an
    upstream 404 is passed on as a 404.
    """
    try:
        return await shared_cache.get_or_load(endpoint, lambda: fetch_with_retry(endpoint), ttl)
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            raise HTTPException(status_code=404, detail="Not found") from e
        raise HTTPException(status_code=503, detail="FPL servers busy") from e
    except (httpx.HTTPError, ValueError) as e:
        raise HTTPException(status_code=503, detail="FPL servers busy") from e


async def get_bootstrap_raw() -> Dict:
    return await fetch_fpl(BOOTSTRAP_ENDPOINT, MODEL_CONFIG["cache"].bootstrap_ttl)


async def get_fixtures_raw() -> List[Dict]:
    return await fetch_fpl(FIXTURES_ENDPOINT, MODEL_CONFIG["cache"].fixtures_ttl)


async def get_player_summary_raw(player_id: int) -> Dict:
    return await fetch_fpl(element_summary_endpoint(player_id), MODEL_CONFIG["cache"].element_summary_ttl)


async def get_live_gameweek_raw(gameweek: int) -> Dict:
    return await fetch_fpl(live_endpoint(gameweek), MODEL_CONFIG["cache"].live_ttl)


def get_current_gameweek(events: List[Dict]) -> int:
    for event in events:
        if event.get("is_current"):
            return event["id"]
    for event in events:
        if event.get("is_next"):
            return event["id"]
    return 1


# ============ LEAGUE SNAPSHOT ============

async def _rebuild_league_snapshot() -> LeagueSnapshot:
    bootstrap = await get_bootstrap_raw()
    fixtures = await get_fixtures_raw()
    snapshot = build_league_snapshot(bootstrap["teams"], fixtures)
    logger.info(f"League snapshot rebuilt for {len(snapshot.teams)} teams from {len(fixtures)} fixtures")
    return snapshot


async def load_league_snapshot() -> LeagueSnapshot:
    """Current league snapshot, rebuilt once per long-cache epoch."""
    return await long_cache.get_or_load(
        LEAGUE_SNAPSHOT_KEY, _rebuild_league_snapshot, MODEL_CONFIG["cache"].league_snapshot_ttl
    )


# ============ PLAYERS ============

def find_player(bootstrap: Dict, player_id: int) -> Optional[Dict]:
    for player in bootstrap.get("elements", []):
        if player["id"] == player_id:
            return player
    return None


async def get_player_or_404(player_id: int) -> Dict:
    bootstrap = await get_bootstrap_raw()
    player = find_player(bootstrap, player_id)
    if player is None:
        raise HTTPException(status_code=404, detail="Player not found")
    return player


async def predict(player: Dict, horizon: int = 5, snapshot: Optional[LeagueSnapshot] = None) -> PlayerPrediction:
    """Expected points prediction for a bootstrap player over `horizon` fixtures."""
    if snapshot is None:
        snapshot = await load_league_snapshot()
    summary = await get_player_summary_raw(player["id"])
    return predict_player_points(player, summary, snapshot, horizon)


# ============ FIXTURE STATUS ============

def get_fixture_status(fixture: Dict, live: Optional[Dict] = None) -> FixtureStatus:
    """
    Display state of a fixture. Live data, when given, wins over the fixture list.

    Half-time is inferred from the clock alone: a started match showing 45-47
    minutes is treated as HT. Long first-half stoppage time can misreport.
    """
    live = live or {}

    def pick(key, default):
        value = live.get(key)
        if value is None:
            value = fixture.get(key)
        return default if value is None else value

    started = pick("started", False)
    finished = live.get("finished")
    if finished is None:
        finished = fixture.get("finished") or fixture.get("finished_provisional") or False
    minutes = pick("minutes", 0)
    home_score = pick("team_h_score", 0)
    away_score = pick("team_a_score", 0)

    if finished:
        return FixtureStatus(FixtureState.FT, "FT", home_score, away_score)

    if started:
        if 45 <= minutes <= 47:
            return FixtureStatus(FixtureState.HT, "HT", home_score, away_score, minutes)
        return FixtureStatus(FixtureState.LIVE, f"{minutes}'", home_score, away_score, minutes)

    return FixtureStatus(FixtureState.UPCOMING, fixture.get("kickoff_time") or "TBD")
