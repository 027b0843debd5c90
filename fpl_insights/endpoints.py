"""
FPL Insights - Endpoints Module

FastAPI app initialization, CORS middleware, lifespan handler,
and the API endpoint handlers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Path, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware

from fpl_insights.config import FEATURES
from fpl_insights.constants import BOOTSTRAP_ENDPOINT, FIXTURES_ENDPOINT, LEAGUE_SNAPSHOT_KEY
from fpl_insights.models import RecommendationRequest, LeagueSnapshot
from fpl_insights.cache import shared_cache, long_cache, metrics_cache, provider_cache, insights_cache
from fpl_insights import services, metrics, planner, insights


logger = logging.getLogger("fpl_insights")

RETRY_AFTER_SECONDS = 5


# ============ LIFESPAN ============

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup - create shared HTTP client
    services.http_client = services.create_http_client()
    logger.info("FPL Insights API started")

    yield

    # Shutdown - close HTTP client
    if services.http_client:
        await services.http_client.aclose()
        services.http_client = None


# ============ APP INITIALIZATION ============

app = FastAPI(title="FPL Insights API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=FEATURES.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def fpl_http_exception_handler(request: Request, exc: HTTPException):
    """Upstream outages tell clients when to come back."""
    if exc.status_code == 503:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
        exc.headers = {**(exc.headers or {}), "Retry-After": str(RETRY_AFTER_SECONDS)}
    return await http_exception_handler(request, exc)


# ============ FPL PROXY ============

@app.get("/api/fpl/bootstrap")
async def fpl_bootstrap():
    return await services.get_bootstrap_raw()


@app.get("/api/fpl/fixtures")
async def fpl_fixtures():
    return await services.get_fixtures_raw()


@app.get("/api/fpl/event/{gw}/live")
async def fpl_event_live(gw: int = Path(..., ge=1, le=38)):
    return await services.get_live_gameweek_raw(gw)


@app.get("/api/fpl/element/{player_id}/summary")
async def fpl_element_summary(player_id: int = Path(..., ge=1)):
    return await services.get_player_summary_raw(player_id)


# ============ METRICS ============

@app.get("/api/metrics/player/{player_id}")
async def player_metrics(player_id: int = Path(..., ge=1)):
    return await metrics.build_player_metrics(player_id)


@app.get("/api/metrics/team/{team_id}")
async def team_metrics(team_id: int = Path(..., ge=1)):
    return await metrics.build_team_metrics(team_id)


@app.get("/api/metrics/fixture/{fixture_id}")
async def fixture_metrics(fixture_id: int = Path(..., ge=1)):
    return await metrics.build_fixture_context(fixture_id)


# ============ INSIGHTS ============

@app.get("/api/insights/player/{player_id}")
async def player_insights(
    player_id: int = Path(..., ge=1),
    horizon: int = Query(5, ge=1, le=10),
):
    """Fixture-by-fixture projection with a points breakdown."""
    return await insights.build_player_insights(player_id, horizon)


@app.get("/api/insights/team/{team_id}")
async def team_insights(
    team_id: int = Path(..., ge=1),
    horizon: int = Query(5, ge=1, le=10),
):
    return await insights.build_team_insights(team_id, horizon)


@app.get("/api/insights/fixture/{fixture_id}")
async def fixture_insights(
    fixture_id: int = Path(..., ge=1),
    horizon: int = Query(5, ge=1, le=10),
):
    return await insights.build_fixture_insights(fixture_id, horizon)


# ============ PREDICTIONS ============

@app.get("/api/bootstrap")
async def bootstrap():
    """Slim players/teams/gameweeks payload."""
    return await metrics.build_bootstrap_view()


@app.get("/api/player/{player_id}")
async def player_prediction(
    player_id: int = Path(..., ge=1),
    horizon: int = Query(5, ge=1, le=10),
):
    """Expected points over the next `horizon` fixtures, with the raw history."""
    player = await services.get_player_or_404(player_id)
    snapshot = await services.load_league_snapshot()
    summary = await services.get_player_summary_raw(player_id)
    prediction = await services.predict(player, horizon, snapshot)

    return {
        "player": {
            "id": player["id"],
            "web_name": player.get("web_name"),
            "first_name": player.get("first_name"),
            "second_name": player.get("second_name"),
            "team_id": player.get("team"),
            "cost": player.get("now_cost"),
            "total_points": player.get("total_points"),
            "selected_by_percent": player.get("selected_by_percent"),
        },
        "prediction": prediction,
        "history": summary.get("history") or [],
    }


@app.post("/api/recommendations")
async def recommendations(request: RecommendationRequest):
    return await planner.recommend(
        squad=request.squad,
        bank=request.bank,
        horizon=request.horizon,
        include_injured=request.include_injured,
        strategy=request.strategy,
    )


@app.get("/api/team-fixtures")
async def team_fixtures(weeks: int = Query(6, ge=1, le=38)):
    return await metrics.build_team_fixtures(weeks)


@app.get("/api/live/{gw}")
async def live_gameweek(gw: int = Path(..., ge=1, le=38)):
    return await metrics.build_live_gameweek(gw)


# ============ HEALTH ============

@app.get("/api/health")
async def health_check():
    """Health check endpoint with cache status."""
    snapshot: Optional[LeagueSnapshot] = long_cache.get(LEAGUE_SNAPSHOT_KEY)
    return {
        "status": "ok",
        "cache": {
            "bootstrap_data": BOOTSTRAP_ENDPOINT in shared_cache,
            "fixtures_data": FIXTURES_ENDPOINT in shared_cache,
            "upstream_entries": len(shared_cache),
            "metric_views": len(metrics_cache),
            "provider_snapshots": len(provider_cache),
            "insight_views": len(insights_cache),
        },
        "league_snapshot_built_at": snapshot.built_at.isoformat() if snapshot else None,
        "providers": {
            "understat": FEATURES.enable_understat,
            "fbref": FEATURES.enable_fbref,
            "odds": FEATURES.enable_odds,
        },
    }
