"""Shared fixtures for FPL Insights test suite."""
import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fpl_insights.cache import clear_all_caches
from fpl_insights.calculators import build_league_snapshot


@pytest.fixture(autouse=True)
def _fresh_caches():
    """Module-level caches must not leak between tests."""
    clear_all_caches()
    yield
    clear_all_caches()


@pytest.fixture
def make_player():
    """Factory for creating bootstrap element dicts matching FPL API shape."""
    def _make(**overrides):
        base = {
            "id": 1,
            "web_name": "TestPlayer",
            "first_name": "Test",
            "second_name": "Player",
            "team": 1,
            "element_type": 3,  # MID
            "now_cost": 70,  # £7.0m
            "status": "a",
            "chance_of_playing_next_round": None,
            "news": "",
            "minutes": 1800,
            "goals_scored": 5,
            "assists": 4,
            "clean_sheets": 6,
            "bonus": 12,
            "bps": 450,
            "form": "5.0",
            "ict_index": "95.3",
            "total_points": 104,
            "points_per_game": "5.2",
            "selected_by_percent": "12.5",
            "transfers_in_event": 1000,
            "transfers_out_event": 400,
            "expected_goals": "4.50",
            "expected_assists": "3.80",
            "expected_goals_per_90": "0.25",
            "expected_assists_per_90": "0.20",
            "penalties_order": None,
            "corners_and_indirect_freekicks_order": None,
        }
        base.update(overrides)
        return base
    return _make


@pytest.fixture
def make_history():
    """Factory for element-summary history rows. Pass one dict per match, oldest first."""
    def _make(entries=None):
        if entries is None:
            entries = []
        default_entry = {
            "round": 1,
            "minutes": 90,
            "total_points": 5,
            "bonus": 0,
            "goals_scored": 0,
            "assists": 0,
            "expected_goals": "0.25",
            "expected_assists": "0.20",
        }
        result = []
        for i, entry in enumerate(entries):
            row = dict(default_entry)
            row["round"] = i + 1
            row.update(entry)
            result.append(row)
        return result
    return _make


@pytest.fixture
def make_fixture():
    """Factory for creating fixture dicts (the /fixtures/ shape)."""
    def _make(**overrides):
        base = {
            "id": 1,
            "event": 24,
            "team_h": 1,
            "team_a": 2,
            "team_h_difficulty": 3,
            "team_a_difficulty": 3,
            "kickoff_time": "2025-02-01T15:00:00Z",
            "started": False,
            "finished": False,
            "minutes": 0,
            "team_h_score": None,
            "team_a_score": None,
        }
        base.update(overrides)
        return base
    return _make


@pytest.fixture
def make_summary_fixture():
    """Factory for element-summary upcoming fixtures (seen from the player's team)."""
    def _make(**overrides):
        base = {
            "id": 100,
            "event": 24,
            "team_h": 1,
            "team_a": 2,
            "is_home": True,
            "difficulty": 3,
            "kickoff_time": "2025-02-01T15:00:00Z",
        }
        base.update(overrides)
        return base
    return _make


@pytest.fixture
def make_team():
    """Factory for bootstrap team dicts."""
    def _make(team_id=1, **overrides):
        base = {
            "id": team_id,
            "code": 100 + team_id,
            "name": f"Team {team_id}",
            "short_name": f"T{team_id:02d}",
            "strength": 3,
            "strength_attack_home": 1100,
            "strength_attack_away": 1100,
            "strength_defence_home": 1100,
            "strength_defence_away": 1100,
        }
        base.update(overrides)
        return base
    return _make


@pytest.fixture
def make_snapshot(make_team):
    """Factory for a LeagueSnapshot built from teams and finished fixtures."""
    def _make(teams=None, fixtures=None):
        if teams is None:
            teams = [make_team(1), make_team(2)]
        return build_league_snapshot(teams, fixtures or [])
    return _make


@pytest.fixture
def world(make_player, make_team, make_fixture, make_history, make_summary_fixture):
    """A three-team league with two finished gameweeks and a few upcoming ones."""
    teams = [
        make_team(1, name="Arsenal", short_name="ARS"),
        make_team(2, name="Chelsea", short_name="CHE"),
        make_team(3, name="Everton", short_name="EVE"),
    ]
    fixtures = [
        make_fixture(id=1, event=22, team_h=1, team_a=2, finished=True, team_h_score=2, team_a_score=0),
        make_fixture(id=2, event=23, team_h=3, team_a=1, finished=True, team_h_score=1, team_a_score=1),
        make_fixture(id=3, event=24, team_h=1, team_a=3, team_h_difficulty=2, team_a_difficulty=4),
        make_fixture(id=4, event=25, team_h=2, team_a=1, team_h_difficulty=4, team_a_difficulty=3),
        make_fixture(id=5, event=30, team_h=1, team_a=2),
        make_fixture(id=6, event=None, team_h=2, team_a=3),
    ]
    elements = [
        make_player(id=1, team=1, element_type=3, selected_by_percent="45.0", total_points=150),
        make_player(id=2, team=1, element_type=2, selected_by_percent="20.0", total_points=90),
        make_player(id=3, team=1, element_type=4, selected_by_percent="5.0", total_points=60),
        make_player(id=4, team=1, element_type=1, selected_by_percent="1.0", total_points=70, status="i"),
        make_player(id=5, team=2, element_type=3, selected_by_percent="8.0", total_points=80),
        make_player(id=6, team=3, element_type=4, selected_by_percent="3.0", total_points=50),
    ]
    bootstrap = {
        "elements": elements,
        "teams": teams,
        "events": [
            {"id": 23, "name": "Gameweek 23", "is_current": False, "is_next": False, "finished": True},
            {"id": 24, "name": "Gameweek 24", "is_current": True, "is_next": False, "finished": False},
        ],
    }
    summary = {
        "history": make_history([{"minutes": m} for m in (90, 90, 90, 90, 60, 30, 0)]),
        "fixtures": [
            make_summary_fixture(id=3, event=24, team_h=1, team_a=3, is_home=True, difficulty=2),
            make_summary_fixture(id=4, event=25, team_h=2, team_a=1, is_home=False, difficulty=3),
        ],
    }
    snapshot = build_league_snapshot(teams, fixtures)
    return {"bootstrap": bootstrap, "fixtures": fixtures, "summary": summary, "snapshot": snapshot}
