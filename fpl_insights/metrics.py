"""
FPL Insights - Metrics Module

Read-mostly derived views: player, team and fixture metrics (each cached by
key), the team fixture ticker, the live gameweek view and the slim bootstrap.
"""

import logging
from datetime import datetime
from typing import List, Dict

from fastapi import HTTPException

from fpl_insights.config import MODEL_CONFIG
from fpl_insights.constants import (
    POSITION_MAP, AVAILABLE_STATUSES, get_team_badge_url, parse_float, round_half_up,
)
from fpl_insights.cache import metrics_cache
from fpl_insights.calculators import cs_model
from fpl_insights.predictor import predict_player_points
from fpl_insights import services, snapshots


logger = logging.getLogger("fpl_insights")

METRICS_FIXTURE_WINDOW = 5


def _upcoming_team_fixtures(fixtures, teams, team_id: int, start_gw: int, end_gw: int) -> List[Dict]:
    upcoming = []
    for f in fixtures:
        event = f.get("event")
        if event is None or event < start_gw or event >= end_gw:
            continue
        if team_id not in (f["team_h"], f["team_a"]):
            continue
        is_home = f["team_h"] == team_id
        opp_id = f["team_a"] if is_home else f["team_h"]
        opp = teams.get(opp_id)
        upcoming.append({
            "fixture_id": f["id"],
            "gameweek": event,
            "opponent": opp.get("short_name", "UNK") if opp else "UNK",
            "opponent_id": opp_id,
            "is_home": is_home,
            "difficulty": f["team_h_difficulty"] if is_home else f["team_a_difficulty"],
            "kickoff": f.get("kickoff_time"),
        })
    return upcoming


# ============ PLAYER METRICS ============

async def build_player_metrics(player_id: int) -> Dict:
    async def _build():
        player = await services.get_player_or_404(player_id)
        snapshot = await services.load_league_snapshot()
        summary = await services.get_player_summary_raw(player_id)
        team = snapshot.teams.get(player["team"])

        history = summary.get("history") or []
        recent = history[-5:]
        minutes_last5 = round_half_up(sum(h.get("minutes", 0) for h in recent) / len(recent)) if recent else 0
        minutes_trend = 0
        if len(recent) >= 4:
            minutes_trend = round_half_up(
                sum(h.get("minutes", 0) for h in recent[-2:]) / 2
                - sum(h.get("minutes", 0) for h in recent[:2]) / 2
            )

        next_fixtures = []
        for fix in (summary.get("fixtures") or [])[:METRICS_FIXTURE_WINDOW]:
            opp_id = fix["team_a"] if fix.get("is_home") else fix["team_h"]
            opp = snapshot.teams.get(opp_id)
            next_fixtures.append({
                "fixture_id": fix.get("id"),
                "opponent": opp.get("short_name", "UNK") if opp else "UNK",
                "opponent_id": opp_id,
                "is_home": bool(fix.get("is_home")),
                "difficulty": fix.get("difficulty"),
                "kickoff": fix.get("kickoff_time"),
            })

        prediction = predict_player_points(player, summary, snapshot, horizon=1)
        next_fixture = prediction.fixtures[0] if prediction.fixtures else None

        return {
            "identity": {
                "id": player["id"],
                "name": player.get("web_name"),
                "team_id": player["team"],
                "team_name": team.get("name", "Unknown") if team else "Unknown",
                "position": POSITION_MAP.get(player.get("element_type")),
            },
            "fantasy": {
                "price": player.get("now_cost"),
                "ownership": parse_float(player.get("selected_by_percent")),
                "form": parse_float(player.get("form")),
                "points": player.get("total_points"),
                "minutes": player.get("minutes"),
                "transfers_trend": (player.get("transfers_in_event") or 0) - (player.get("transfers_out_event") or 0),
                "ict_index": parse_float(player.get("ict_index")),
                "bps": player.get("bps"),
                "bonus": player.get("bonus"),
            },
            "role": {
                "starts": sum(1 for h in history if h.get("minutes", 0) > 0),
                "minutes_last5": int(minutes_last5),
                "minutes_trend": int(minutes_trend),
            },
            "fixtures": {"next_fixtures": next_fixtures},
            "advanced": await snapshots.get_advanced_player_stats(player, team),
            "derived": {
                "expected_points_next": next_fixture.expected_points if next_fixture else None,
                "expected_goals_next": next_fixture.goal_chance / 100 if next_fixture else None,
                "expected_clean_sheet_prob": next_fixture.cs_chance if next_fixture else None,
            },
        }

    return await metrics_cache.get_or_load(f"playerMetrics:{player_id}", _build, MODEL_CONFIG["cache"].metrics_ttl)


# ============ TEAM METRICS ============

async def build_team_metrics(team_id: int) -> Dict:
    async def _build():
        snapshot = await services.load_league_snapshot()
        team = snapshot.teams.get(team_id)
        if team is None:
            raise HTTPException(status_code=404, detail="Team not found")

        bootstrap = await services.get_bootstrap_raw()
        current_gw = services.get_current_gameweek(bootstrap.get("events", []))
        upcoming = _upcoming_team_fixtures(
            snapshot.fixtures, snapshot.teams, team_id, current_gw, current_gw + METRICS_FIXTURE_WINDOW
        )
        fdr_average = sum(f["difficulty"] for f in upcoming) / len(upcoming) if upcoming else 0

        stats = snapshot.team_stats.get(team_id)
        strength = snapshot.team_strength.get(team_id)

        return {
            "basic": {
                "id": team["id"],
                "name": team.get("name"),
                "short_name": team.get("short_name"),
                "badge": get_team_badge_url(team),
            },
            "fantasy": {
                "fdr_average": round_half_up(fdr_average, 1),
                "upcoming_fixtures": upcoming,
            },
            "advanced": await snapshots.get_advanced_team_stats(team),
            "derived": {
                "attack_strength": strength.home_attack if strength else None,
                "defence_strength": strength.home_defence if strength else None,
                "clean_sheet_rate_proxy": stats.clean_sheet_rate if stats else None,
                "momentum": int(round_half_up(stats.momentum * 100)) if stats else None,
            },
        }

    return await metrics_cache.get_or_load(f"teamMetrics:{team_id}", _build, MODEL_CONFIG["cache"].metrics_ttl)


# ============ FIXTURE CONTEXT ============

def _top_owned_players(elements: List[Dict], team_id: int, limit: int = 3) -> List[Dict]:
    players = sorted(
        (p for p in elements if p.get("team") == team_id),
        key=lambda p: parse_float(p.get("selected_by_percent")),
        reverse=True,
    )[:limit]
    return [{
        "id": p["id"],
        "name": p.get("web_name"),
        "position": POSITION_MAP.get(p.get("element_type")),
        "ownership": parse_float(p.get("selected_by_percent")),
    } for p in players]


async def build_fixture_context(fixture_id: int) -> Dict:
    async def _build():
        snapshot = await services.load_league_snapshot()
        fixture = next((f for f in snapshot.fixtures if f["id"] == fixture_id), None)
        if fixture is None:
            raise HTTPException(status_code=404, detail="Fixture not found")

        bootstrap = await services.get_bootstrap_raw()
        elements = bootstrap.get("elements", [])
        home_id, away_id = fixture["team_h"], fixture["team_a"]

        odds = snapshots.get_odds_provider(snapshot, odds_map=await snapshots.load_odds_map())
        if odds:
            implied_goals = odds.get_implied_goals(fixture)
            home_cs = odds.get_clean_sheet_prob(home_id, away_id, True)
            away_cs = odds.get_clean_sheet_prob(away_id, home_id, False)
        else:
            implied_goals = None
            home_cs = cs_model.calculate(snapshot, home_id, away_id, True)
            away_cs = cs_model.calculate(snapshot, away_id, home_id, False)

        cs_points = MODEL_CONFIG["points"].points_table["DEF"]["clean_sheet"]
        return {
            "id": fixture["id"],
            "kickoff": fixture.get("kickoff_time"),
            "teams": {
                "home_id": home_id,
                "away_id": away_id,
                "home_name": snapshot.team_short_name(home_id),
                "away_name": snapshot.team_short_name(away_id),
            },
            "difficulty": {
                "home": fixture.get("team_h_difficulty"),
                "away": fixture.get("team_a_difficulty"),
            },
            "implied_goals": implied_goals,
            "clean_sheet_prob": {"home_cs": home_cs, "away_cs": away_cs},
            "expected_clean_sheet_points": {
                "home": round_half_up(home_cs / 100 * cs_points, 1),
                "away": round_half_up(away_cs / 100 * cs_points, 1),
            },
            "key_players": {
                "home": _top_owned_players(elements, home_id),
                "away": _top_owned_players(elements, away_id),
            },
        }

    return await metrics_cache.get_or_load(f"fixtureContext:{fixture_id}", _build, MODEL_CONFIG["cache"].metrics_ttl)


# ============ TEAM FIXTURE TICKER ============

def _team_top_players(elements: List[Dict], team_id: int) -> Dict:
    team_players = sorted(
        (p for p in elements if p.get("team") == team_id and p.get("status") in AVAILABLE_STATUSES),
        key=lambda p: p.get("total_points") or 0,
        reverse=True,
    )
    attackers = [p for p in team_players if p.get("element_type") in (3, 4)][:3]
    defenders = [p for p in team_players if p.get("element_type") in (1, 2)][:2]

    return {
        "star_players": [{
            "id": p["id"],
            "name": p.get("web_name"),
            "position": POSITION_MAP.get(p.get("element_type")),
            "points": p.get("total_points"),
            "form": p.get("form"),
        } for p in team_players[:3]],
        "top_attackers": [{
            "id": p["id"],
            "name": p.get("web_name"),
            "position": POSITION_MAP.get(p.get("element_type")),
            "goals": p.get("goals_scored"),
            "assists": p.get("assists"),
            "xg": round_half_up(parse_float(p.get("expected_goals")), 1),
            "xa": round_half_up(parse_float(p.get("expected_assists")), 1),
            "goal_odds": int(round_half_up(parse_float(p.get("expected_goals_per_90")) * 100)),
        } for p in attackers],
        "top_defenders": [{
            "id": p["id"],
            "name": p.get("web_name"),
            "position": POSITION_MAP.get(p.get("element_type")),
            "clean_sheets": p.get("clean_sheets"),
        } for p in defenders],
    }


async def build_team_fixtures(weeks: int = 6) -> Dict:
    """Every team's form summary plus each fixture in the window, seen from both sides."""
    snapshot = await services.load_league_snapshot()
    bootstrap = await services.get_bootstrap_raw()
    elements = bootstrap.get("elements", [])
    current_gw = services.get_current_gameweek(bootstrap.get("events", []))

    teams = []
    for team_id, team in snapshot.teams.items():
        stats = snapshot.team_stats.get(team_id)
        teams.append({
            "id": team_id,
            "name": team.get("name"),
            "short_name": team.get("short_name"),
            "badge": get_team_badge_url(team),
            "momentum": int(round_half_up(snapshot.momentum(team_id) * 100)),
            "stats": {
                "clean_sheet_rate": stats.clean_sheet_rate if stats else 0,
                "home_clean_sheet_rate": stats.home_clean_sheet_rate if stats else 0,
                "away_clean_sheet_rate": stats.away_clean_sheet_rate if stats else 0,
                "goals_per_game": stats.goals_per_game if stats else 0,
                "conceded_per_game": stats.conceded_per_game if stats else 0,
                "form": stats.form if stats else 0,
                "last5": stats.last5_results if stats else "",
            },
            "top_players": _team_top_players(elements, team_id),
        })

    fixtures = []
    for f in snapshot.fixtures:
        event = f.get("event")
        if event is None or event < current_gw or event >= current_gw + weeks:
            continue
        for team_id, opp_id, is_home in ((f["team_h"], f["team_a"], True), (f["team_a"], f["team_h"], False)):
            opp = snapshot.teams.get(opp_id)
            fixtures.append({
                "id": f["id"],
                "team_id": team_id,
                "gameweek": event,
                "opponent": opp.get("short_name", "UNK") if opp else "UNK",
                "opponent_id": opp_id,
                "opponent_badge": get_team_badge_url(opp),
                "is_home": is_home,
                "difficulty": f["team_h_difficulty"] if is_home else f["team_a_difficulty"],
                "cs_chance": cs_model.calculate(snapshot, team_id, opp_id, is_home),
            })

    return {"teams": teams, "fixtures": fixtures, "current_gameweek": current_gw}


# ============ LIVE ============

async def build_live_gameweek(gameweek: int) -> Dict:
    live = await services.get_live_gameweek_raw(gameweek)
    bootstrap = await services.get_bootstrap_raw()
    fixtures = await services.get_fixtures_raw()
    elements = {p["id"]: p for p in bootstrap.get("elements", [])}

    players = []
    for e in live.get("elements", []):
        player = elements.get(e["id"])
        stats = e.get("stats", {})
        players.append({
            "id": e["id"],
            "web_name": player.get("web_name", "Unknown") if player else "Unknown",
            "team_id": player.get("team") if player else None,
            "live_points": stats.get("total_points", 0),
            "minutes": stats.get("minutes", 0),
            "goals": stats.get("goals_scored", 0),
            "assists": stats.get("assists", 0),
            "bonus": stats.get("bonus", 0),
            "bps": stats.get("bps", 0),
        })

    fixture_statuses = [
        {"fixture_id": f["id"], "status": services.get_fixture_status(f)}
        for f in fixtures if f.get("event") == gameweek
    ]

    return {
        "gameweek": gameweek,
        "players": players,
        "fixtures": fixture_statuses,
        "last_updated": datetime.now().isoformat(),
    }


# ============ BOOTSTRAP ============

async def build_bootstrap_view() -> Dict:
    """Slimmed bootstrap payload for clients."""
    data = await services.get_bootstrap_raw()
    events = data.get("events", [])
    return {
        "players": [{
            "id": p["id"],
            "web_name": p.get("web_name"),
            "first_name": p.get("first_name"),
            "second_name": p.get("second_name"),
            "team_id": p.get("team"),
            "position": POSITION_MAP.get(p.get("element_type")),
            "cost": p.get("now_cost"),
            "form": p.get("form"),
            "total_points": p.get("total_points"),
            "points_per_game": p.get("points_per_game"),
            "selected_by_percent": p.get("selected_by_percent"),
            "status": p.get("status"),
            "news": p.get("news"),
            "chance_of_playing": p.get("chance_of_playing_next_round"),
            "minutes": p.get("minutes"),
            "penalties_order": p.get("penalties_order"),
            "corners_order": p.get("corners_and_indirect_freekicks_order"),
            "expected_goals": p.get("expected_goals"),
            "expected_assists": p.get("expected_assists"),
        } for p in data.get("elements", [])],
        "teams": [{
            "id": t["id"],
            "name": t.get("name"),
            "short_name": t.get("short_name"),
            "strength": t.get("strength"),
            "badge": get_team_badge_url(t),
        } for t in data.get("teams", [])],
        "current_gameweek": services.get_current_gameweek(events),
        "gameweeks": [{
            "id": gw["id"],
            "name": gw.get("name"),
            "deadline_time": gw.get("deadline_time"),
            "finished": gw.get("finished"),
            "is_current": gw.get("is_current"),
            "is_next": gw.get("is_next"),
        } for gw in events],
    }
