"""HTTP layer tests: routing, validation, error mapping and JSON shapes."""
import sys
import os
from unittest.mock import patch, AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from fpl_insights.config import FeatureConfig
from fpl_insights.endpoints import app


@pytest.fixture
def client(world):
    mocks = {
        "get_bootstrap_raw": AsyncMock(return_value=world["bootstrap"]),
        "get_fixtures_raw": AsyncMock(return_value=world["fixtures"]),
        "get_player_summary_raw": AsyncMock(return_value=world["summary"]),
        "load_league_snapshot": AsyncMock(return_value=world["snapshot"]),
        "get_live_gameweek_raw": AsyncMock(return_value={"elements": [
            {"id": 1, "stats": {"total_points": 6, "minutes": 90}},
        ]}),
    }
    with patch.multiple("fpl_insights.services", **mocks), \
            patch("fpl_insights.snapshots.FEATURES", FeatureConfig(enable_understat=False, enable_fbref=False, enable_odds=False)):
        yield TestClient(app)


# =============================================================================
# Health & proxy
# =============================================================================

class TestHealthAndProxy:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["league_snapshot_built_at"] is None

    def test_raw_bootstrap(self, client, world):
        response = client.get("/api/fpl/bootstrap")
        assert response.status_code == 200
        assert len(response.json()["elements"]) == len(world["bootstrap"]["elements"])

    def test_raw_fixtures(self, client):
        assert len(client.get("/api/fpl/fixtures").json()) == 6

    def test_upstream_outage_is_503_with_retry_after(self, client):
        busy = AsyncMock(side_effect=HTTPException(status_code=503, detail="FPL servers busy"))
        with patch("fpl_insights.services.get_bootstrap_raw", new=busy):
            response = client.get("/api/fpl/bootstrap")
        assert response.status_code == 503
        assert response.headers["retry-after"] == "5"
        assert response.json() == {"detail": "FPL servers busy"}

    def test_gameweek_range_validated(self, client):
        assert client.get("/api/fpl/event/0/live").status_code == 422
        assert client.get("/api/fpl/event/39/live").status_code == 422

    def test_upstream_not_found_passes_through(self, client):
        missing = AsyncMock(side_effect=HTTPException(status_code=404, detail="Not found"))
        with patch("fpl_insights.services.get_bootstrap_raw", new=missing):
            response = client.get("/api/fpl/bootstrap")
        assert response.status_code == 404
        assert "retry-after" not in response.headers


# =============================================================================
# Predictions
# =============================================================================

class TestPlayerEndpoint:
    def test_prediction_shape(self, client):
        response = client.get("/api/player/1?horizon=2")
        assert response.status_code == 200
        body = response.json()
        assert body["player"]["id"] == 1
        prediction = body["prediction"]
        assert prediction["player_id"] == 1
        assert len(prediction["fixtures"]) == 2
        assert 0 <= prediction["confidence"] <= 100
        assert prediction["form_trend"] in ("rising", "stable", "falling")
        assert len(body["history"]) == 7

    def test_unknown_player_404(self, client):
        response = client.get("/api/player/999")
        assert response.status_code == 404
        assert "retry-after" not in response.headers

    def test_horizon_bounds(self, client):
        assert client.get("/api/player/1?horizon=0").status_code == 422
        assert client.get("/api/player/1?horizon=11").status_code == 422


class TestRecommendationsEndpoint:
    def test_recommendations(self, client):
        body = {
            "squad": [
                {"id": 1, "cost": 70, "position": "MID"},
                {"id": 3, "cost": 70, "position": "FWD"},
            ],
            "bank": 0,
            "horizon": 3,
            "strategy": "safety",
        }
        response = client.post("/api/recommendations", json=body)
        assert response.status_code == 200
        result = response.json()
        assert set(result) == {
            "best_transfer", "top_transfers", "top_targets_by_position",
            "current_gameweek", "horizon", "squad_baseline",
        }
        assert result["current_gameweek"] == 24
        assert result["horizon"] == 3
        for transfer in result["top_transfers"]:
            assert transfer["player_in"]["position"] == transfer["player_out"]["position"]
            assert transfer["budget_after"] >= 0

    def test_invalid_position_rejected(self, client):
        body = {"squad": [{"id": 1, "cost": 70, "position": "STRIKER"}], "bank": 0}
        assert client.post("/api/recommendations", json=body).status_code == 422

    def test_missing_squad_rejected(self, client):
        assert client.post("/api/recommendations", json={"bank": 10}).status_code == 422


# =============================================================================
# Metrics & views
# =============================================================================

class TestMetricEndpoints:
    def test_player_metrics(self, client):
        body = client.get("/api/metrics/player/1").json()
        assert body["identity"]["team_name"] == "Arsenal"

    def test_team_metrics_404(self, client):
        assert client.get("/api/metrics/team/77").status_code == 404

    def test_fixture_metrics(self, client):
        body = client.get("/api/metrics/fixture/3").json()
        assert body["teams"]["home_id"] == 1

    def test_slim_bootstrap(self, client):
        body = client.get("/api/bootstrap").json()
        assert body["current_gameweek"] == 24
        assert body["players"][0]["position"] == "MID"
        assert body["teams"][0]["badge"].endswith("t101.png")

    def test_team_fixtures(self, client):
        body = client.get("/api/team-fixtures?weeks=1").json()
        assert {r["id"] for r in body["fixtures"]} == {3}

    def test_live(self, client):
        body = client.get("/api/live/24").json()
        assert body["players"][0]["live_points"] == 6
        assert body["fixtures"][0]["status"]["state"] == "UPCOMING"


# =============================================================================
# Insights
# =============================================================================

class TestInsightEndpoints:
    def test_player_insights(self, client):
        body = client.get("/api/insights/player/1?horizon=2").json()
        assert body["horizon"] == 2
        assert set(body["x_pts"]) == {"next_fixture", "next3", "next5", "low", "high"}
        assert body["estimated"] is True

    def test_team_insights(self, client):
        body = client.get("/api/insights/team/1?horizon=1").json()
        assert [f["fixture_id"] for f in body["fixtures"]] == [3]

    def test_team_insights_404(self, client):
        assert client.get("/api/insights/team/77").status_code == 404

    def test_fixture_insights(self, client):
        body = client.get("/api/insights/fixture/3").json()
        assert body["home_team_id"] == 1
        assert [p["id"] for p in body["away_key_players"]] == [6]

    def test_horizon_bounds(self, client):
        assert client.get("/api/insights/fixture/3?horizon=0").status_code == 422
        assert client.get("/api/insights/player/1?horizon=11").status_code == 422
