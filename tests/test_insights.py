"""Tests for the fixture projection engine and the player/team/fixture insight views."""
import asyncio
import json
import math
import sys
import os
from contextlib import contextmanager
from unittest.mock import patch, AsyncMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import HTTPException

from fpl_insights import insights
from fpl_insights.config import FeatureConfig
from fpl_insights.insights import (
    InsightsContext,
    poisson_clean_sheet_probability,
    provider_team_rates,
    build_team_indices,
    compute_implied_goals,
    project_fixture,
    calculate_expected_minutes,
    compute_attacking_outputs,
    map_expected_points,
    project_player,
    project_team,
)
from fpl_insights.models import LeagueSnapshot, TeamStats, TeamStrength, TeamIndices

import pytest


def _league(rates):
    """Snapshot whose teams score/concede the given (goals, conceded) per game."""
    teams = {i: {"id": i, "name": f"Team {i}", "short_name": f"T{i:02d}", "code": 100 + i} for i in rates}
    return LeagueSnapshot.create(
        teams=teams,
        team_stats={
            i: TeamStats(played=5, goals_per_game=g, conceded_per_game=c) for i, (g, c) in rates.items()
        },
        team_strength={i: TeamStrength() for i in rates},
        fixtures=[],
    )


def _context(snapshot, odds_map=None, provider_players=None):
    indices, avg_goals = build_team_indices(snapshot)
    return InsightsContext(
        snapshot=snapshot,
        indices=indices,
        avg_goals_per_game=avg_goals,
        odds_map=odds_map or {},
        provider_players=provider_players or [],
    )


def _fixture(fixture_id=10, opponent_id=2, is_home=True, difficulty=3):
    return {
        "fixture_id": fixture_id,
        "gameweek": 24,
        "opponent": f"T{opponent_id:02d}",
        "opponent_id": opponent_id,
        "opponent_badge": "",
        "is_home": is_home,
        "difficulty": difficulty,
    }


# =============================================================================
# Poisson clean sheets
# =============================================================================

class TestPoissonCleanSheet:
    def test_clamped_to_bounds(self):
        assert poisson_clean_sheet_probability(4) == 0.05
        assert poisson_clean_sheet_probability(0.05) == 0.65

    def test_e_to_minus_xg(self):
        assert poisson_clean_sheet_probability(1.0) == pytest.approx(math.exp(-1))

    def test_more_implied_goals_fewer_clean_sheets(self):
        probs = [poisson_clean_sheet_probability(x) for x in (0.5, 1.0, 1.5, 2.5)]
        assert probs == sorted(probs, reverse=True)


# =============================================================================
# Team indices
# =============================================================================

class TestTeamIndices:
    def test_relative_to_league_average(self):
        indices, avg_goals = build_team_indices(_league({1: (2.0, 1.0), 2: (1.0, 2.0)}))
        assert avg_goals == 1.5
        assert indices[1].attack_index == pytest.approx(2.0 / 1.5)
        assert indices[1].defence_index == pytest.approx(1.5)
        assert indices[2].attack_index == pytest.approx(1.0 / 1.5)
        assert indices[2].defence_index == pytest.approx(0.75)
        assert indices[1].source == "fpl"

    def test_clamped(self):
        indices, _ = build_team_indices(_league({1: (0.2, 1.0), 2: (1.0, 1.0), 3: (2.0, 1.0)}))
        assert indices[1].attack_index == 0.6
        assert indices[3].attack_index == 1.6

    def test_team_without_games_uses_default_rates(self, make_snapshot):
        indices, avg_goals = build_team_indices(make_snapshot())
        assert indices[1].xg_per_game == 1.2
        assert indices[1].attack_index == 1.0
        assert avg_goals == 1.2

    def test_clean_sheet_machine_gets_top_defence(self):
        indices, _ = build_team_indices(_league({1: (1.0, 0.0), 2: (1.0, 2.0)}))
        assert indices[1].defence_index == 1.6

    def test_provider_rates_win(self):
        snapshot = _league({1: (1.0, 1.0), 2: (1.0, 1.0)})
        indices, _ = build_team_indices(snapshot, {1: {"xg_per_game": 3.0, "xga_per_game": 0.5}})
        assert indices[1].source == "provider"
        assert indices[1].xg_per_game == 3.0
        assert indices[1].attack_index > indices[2].attack_index

    def test_provider_team_rates_per_game(self):
        team = {"id": 1, "name": "Arsenal", "short_name": "ARS"}
        rates = provider_team_rates(team, [{"name": "Arsenal", "xG": 40.0, "xGA": 20.0, "matches": 20}])
        assert rates == {"xg_per_game": 2.0, "xga_per_game": 1.0}
        assert provider_team_rates(team, [{"name": "Chelsea", "xG": 40.0, "xGA": 20.0}]) is None


# =============================================================================
# Implied goals & fixture projection
# =============================================================================

class TestImpliedGoals:
    def test_index_model_with_venue(self):
        indices = {1: TeamIndices(), 2: TeamIndices()}
        goals = compute_implied_goals(1, 2, indices, 1.5)
        assert goals["home_xg"] == pytest.approx(1.5 * 1.08)
        assert goals["away_xg"] == pytest.approx(1.5 * 0.92)
        assert goals["estimated"] is True

    def test_odds_preferred(self):
        odds = {"home_xg": 2.1, "away_xg": 0.7, "is_estimated": False}
        goals = compute_implied_goals(1, 2, {}, 1.5, odds)
        assert goals == {"home_xg": 2.1, "away_xg": 0.7, "estimated": False}

    def test_odds_clamped(self):
        goals = compute_implied_goals(1, 2, {}, 1.5, {"home_xg": 5.0, "away_xg": 0.1})
        assert goals["home_xg"] == 3.5
        assert goals["away_xg"] == 0.2

    def test_incomplete_odds_ignored(self):
        goals = compute_implied_goals(1, 2, {}, 1.5, {"home_xg": 2.0, "away_xg": None})
        assert goals["estimated"] is True

    def test_stronger_attack_more_goals(self):
        indices = {1: TeamIndices(attack_index=1.4), 2: TeamIndices(defence_index=0.8)}
        goals = compute_implied_goals(1, 2, indices, 1.3)
        assert goals["home_xg"] > goals["away_xg"]


class TestProjectFixture:
    def test_clean_sheets_from_opponent_goals(self):
        context = _context(_league({1: (1.5, 1.5), 2: (1.5, 1.5)}))
        result = project_fixture(10, 1, 2, context)
        assert result["home_team_name"] == "T01"
        assert result["home_cs"] == pytest.approx(math.exp(-result["away_xg"]) * 100)
        assert result["away_cs"] == pytest.approx(math.exp(-result["home_xg"]) * 100)
        # home advantage
        assert result["home_cs"] > result["away_cs"]

    def test_odds_map_by_fixture_id(self):
        context = _context(_league({1: (1.5, 1.5), 2: (1.5, 1.5)}), odds_map={10: {"home_xg": 2.4, "away_xg": 0.6}})
        assert project_fixture(10, 1, 2, context)["home_xg"] == 2.4
        assert project_fixture(11, 1, 2, context)["estimated"] is True


# =============================================================================
# Player building blocks
# =============================================================================

class TestExpectedMinutes:
    @pytest.mark.parametrize("minutes, expected", [(90, 90), (70, 63), (30, 24)])
    def test_role_factor(self, make_history, minutes, expected):
        history = make_history([{"minutes": minutes}] * 5)
        assert calculate_expected_minutes(history, 100)["expected_minutes"] == pytest.approx(expected)

    def test_defaults(self):
        # 75 minutes, regular role, 90% availability
        assert calculate_expected_minutes([], None)["expected_minutes"] == pytest.approx(75 * 0.9 * 0.9)

    def test_availability_scales(self, make_history):
        history = make_history([{"minutes": 90}] * 5)
        assert calculate_expected_minutes(history, 50)["expected_minutes"] == pytest.approx(45)


class TestAttackingOutputs:
    def test_provider_player_first(self, make_player):
        provider = {"xG": 9.0, "xA": 3.0, "minutes": 1800}
        result = compute_attacking_outputs(make_player(), 90, 1.0, 3, provider)
        assert result["xgi90"] == pytest.approx(0.6)
        # difficulty 3 -> 1.15 - 2 * 0.08
        assert result["expected_gi"] == pytest.approx(0.6 * 0.99)
        assert result["expected_goals"] == pytest.approx(0.6 * 0.99 * 0.75)
        assert result["estimated"] is False

    def test_fpl_season_xg(self, make_player):
        player = make_player(expected_goal_involvements="8.30")
        result = compute_attacking_outputs(player, 90, 1.0, 3)
        assert result["xgi90"] == pytest.approx((4.5 + 3.8) / 1800 * 90)
        assert result["estimated"] is True

    def test_ict_form_estimate_capped(self, make_player):
        result = compute_attacking_outputs(make_player(), 90, 1.0, 3)
        assert result["xgi90"] == 1.2
        assert result["expected_goals"] == pytest.approx(result["expected_gi"] * 0.6)

    def test_weak_defence_and_easy_fixture_boost(self, make_player):
        player = make_player(expected_goal_involvements="8.30")
        neutral = compute_attacking_outputs(player, 90, 1.0, 3)["expected_gi"]
        boosted = compute_attacking_outputs(player, 90, 0.5, 1)["expected_gi"]
        # opponent adjustment capped at 1.3, difficulty 1 -> 1.15
        assert boosted == pytest.approx(neutral / 0.99 * 1.3 * 1.15)


class TestMapExpectedPoints:
    def test_defender_breakdown(self):
        result = map_expected_points("DEF", 90, 0.2, 0.1, 0.4, 0.5)
        assert result["appearance_points"] == pytest.approx(2.0)
        assert result["goal_points"] == pytest.approx(1.2)
        assert result["assist_points"] == pytest.approx(0.3)
        assert result["clean_sheet_points"] == pytest.approx(1.6)
        assert result["total"] == pytest.approx(5.6)

    def test_forward_gets_nothing_for_clean_sheet(self):
        assert map_expected_points("FWD", 90, 0, 0, 0.5, 0)["clean_sheet_points"] == 0

    def test_short_cameo(self):
        result = map_expected_points("MID", 30, 0, 0, 0, 0)
        assert result["appearance_points"] == pytest.approx(30 / 90 + 30 / 60)


# =============================================================================
# Player & team projections
# =============================================================================

class TestProjectPlayer:
    def test_weighted_horizons(self, make_player, make_history):
        context = _context(_league({1: (1.5, 1.5), 2: (1.5, 1.5)}))
        history = make_history([{"minutes": 90}] * 5)
        fixtures = [_fixture(fixture_id=10 + i) for i in range(6)]
        result = project_player(make_player(), history, fixtures, context)

        per_fixture = result["fixtures"][0]["expected_points"]
        assert result["x_pts"]["next_fixture"] == per_fixture
        assert result["x_pts"]["next3"] == pytest.approx(per_fixture * 2.85)
        assert result["x_pts"]["next5"] == pytest.approx(per_fixture * 4.5)
        assert result["x_pts"]["low"] == pytest.approx(result["x_pts"]["next5"] * 0.85)
        assert result["x_pts"]["high"] == pytest.approx(result["x_pts"]["next5"] * 1.15)
        assert len(result["fixtures"]) == 6

    def test_forward_has_no_clean_sheet_points(self, make_player, make_history):
        context = _context(_league({1: (1.5, 1.5), 2: (1.5, 1.5)}))
        result = project_player(make_player(element_type=4), make_history([{}] * 5), [_fixture()], context)
        assert result["position"] == "FWD"
        assert result["breakdown"]["clean_sheet"] == 0

    def test_no_fixtures(self, make_player):
        context = _context(_league({1: (1.5, 1.5), 2: (1.5, 1.5)}))
        result = project_player(make_player(), [], [], context)
        assert result["x_pts"]["next5"] == 0
        assert result["advanced"]["xg"] == 0
        assert result["breakdown"]["appearance"] > 0
        assert result["estimated"] is False

    def test_provider_player_matched(self, make_player, make_history):
        snapshot = _league({1: (1.5, 1.5), 2: (1.5, 1.5)})
        provider_players = [
            {"id": 7, "playerName": "Test Player", "team": "Team 1", "xG": 9.0, "xA": 3.0,
             "minutes": 1800, "shots": 60, "bigChances": 12},
        ]
        context = _context(snapshot, provider_players=provider_players)
        player = make_player(web_name="Player")
        result = project_player(player, make_history([{}] * 5), [_fixture()], context)
        assert result["advanced"]["shots"] == 60
        assert result["advanced"]["big_chances"] == 12
        assert result["advanced"]["xgi90"] == pytest.approx(0.6)

    def test_easier_opponent_projects_more(self, make_player, make_history):
        context = _context(_league({1: (1.5, 1.5), 2: (1.0, 2.5), 3: (2.5, 0.8)}))
        history = make_history([{}] * 5)
        weak = project_player(make_player(), history, [_fixture(opponent_id=2)], context)
        strong = project_player(make_player(), history, [_fixture(opponent_id=3)], context)
        assert weak["x_pts"]["next_fixture"] > strong["x_pts"]["next_fixture"]


class TestProjectTeam:
    def test_outlook(self):
        context = _context(_league({1: (2.0, 1.0), 2: (1.0, 2.0)}))
        result = project_team(1, [_fixture(10, 2, True), _fixture(11, 2, False)], context)
        assert result["attack_index"] == pytest.approx(2.0 / 1.5)
        home, away = result["fixtures"]
        assert result["upcoming_cs_chance"] == home["cs_chance"]
        assert home["implied_goals"] > away["implied_goals"]
        assert result["estimated"] is True

    def test_no_fixtures_falls_back_to_league_average(self):
        context = _context(_league({1: (2.0, 1.0), 2: (1.0, 2.0)}))
        result = project_team(1, [], context)
        assert result["upcoming_cs_chance"] == 0
        assert result["implied_goals_next"] == 1.5


# =============================================================================
# Views
# =============================================================================

@contextmanager
def patched_services(world, features=None):
    mocks = {
        "get_bootstrap_raw": AsyncMock(return_value=world["bootstrap"]),
        "get_fixtures_raw": AsyncMock(return_value=world["fixtures"]),
        "get_player_summary_raw": AsyncMock(return_value=world["summary"]),
        "load_league_snapshot": AsyncMock(return_value=world["snapshot"]),
    }
    features = features or FeatureConfig(enable_understat=False, enable_fbref=False, enable_odds=False)
    with patch.multiple("fpl_insights.services", **mocks), \
            patch("fpl_insights.snapshots.FEATURES", features):
        yield mocks


class TestInsightViews:
    def test_player_view(self, world):
        with patched_services(world):
            result = asyncio.run(insights.build_player_insights(1, horizon=5))
        assert result["player_id"] == 1
        assert result["horizon"] == 5
        assert [f["opponent"] for f in result["fixtures"]] == ["EVE", "CHE"]
        assert result["fixtures"][0]["opponent_badge"].endswith("t103.png")
        assert result["estimated"] is True

    def test_player_view_cached(self, world):
        with patched_services(world) as mocks:
            first = asyncio.run(insights.build_player_insights(1))
            second = asyncio.run(insights.build_player_insights(1))
        assert first is second
        assert mocks["get_player_summary_raw"].call_count == 1

    def test_player_view_404(self, world):
        with patched_services(world):
            with pytest.raises(HTTPException) as exc_info:
                asyncio.run(insights.build_player_insights(999))
        assert exc_info.value.status_code == 404

    def test_team_view_window(self, world):
        with patched_services(world):
            result = asyncio.run(insights.build_team_insights(1, horizon=2))
        assert [f["fixture_id"] for f in result["fixtures"]] == [3, 4]
        assert [f["is_home"] for f in result["fixtures"]] == [True, False]

    def test_team_view_404(self, world):
        with patched_services(world):
            with pytest.raises(HTTPException) as exc_info:
                asyncio.run(insights.build_team_insights(77))
        assert exc_info.value.status_code == 404

    def test_fixture_view(self, world):
        with patched_services(world):
            result = asyncio.run(insights.build_fixture_insights(3))
        assert (result["home_team_id"], result["away_team_id"]) == (1, 3)
        # injured keeper left out, best projection first
        home_ids = [p["id"] for p in result["home_key_players"]]
        assert sorted(home_ids) == [1, 2, 3]
        xpts = [p["x_pts"] for p in result["home_key_players"]]
        assert xpts == sorted(xpts, reverse=True)
        assert [p["id"] for p in result["away_key_players"]] == [6]
        assert 5 <= result["home_cs"] <= 65

    def test_fixture_view_survives_missing_history(self, world):
        with patched_services(world) as mocks:
            mocks["get_player_summary_raw"].side_effect = HTTPException(status_code=503, detail="FPL servers busy")
            result = asyncio.run(insights.build_fixture_insights(3))
        assert len(result["home_key_players"]) == 3

    def test_fixture_view_404(self, world):
        with patched_services(world):
            with pytest.raises(HTTPException) as exc_info:
                asyncio.run(insights.build_fixture_insights(999))
        assert exc_info.value.status_code == 404

    def test_fixture_view_uses_odds_snapshot(self, world, tmp_path):
        os.makedirs(str(tmp_path / "odds"))
        with open(str(tmp_path / "odds" / "snapshot.json"), "w", encoding="utf-8") as f:
            json.dump({"fixtures": [{"fixtureId": 3, "homeXG": 2.4, "awayXG": 0.6}]}, f)
        features = FeatureConfig(enable_understat=False, enable_fbref=False, enable_odds=True, data_dir=str(tmp_path))

        with patched_services(world, features):
            result = asyncio.run(insights.build_fixture_insights(3))
        assert result["home_xg"] == 2.4
        assert result["away_xg"] == 0.6
        assert result["home_cs"] == pytest.approx(math.exp(-0.6) * 100)
