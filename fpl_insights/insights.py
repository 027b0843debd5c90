"""
FPL Insights - Insights Module

Fixture projection engine and its cached views:
- Team attack/defence indices from xG per game (provider snapshot first)
- Implied goals per fixture (odds snapshot first) and Poisson clean sheets
- Per-player projections with a points breakdown over weighted fixtures
- Player, team and fixture insight views
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, Any

from fastapi import HTTPException

from fpl_insights.config import MODEL_CONFIG, InsightsConfig, PointsConfig
from fpl_insights.constants import (
    POSITION_MAP, AVAILABLE_STATUSES, clamp, get_team_badge_url, parse_float,
)
from fpl_insights.cache import insights_cache
from fpl_insights.models import LeagueSnapshot, TeamIndices
from fpl_insights import services, snapshots


logger = logging.getLogger("fpl_insights")

CLEAN_SHEET_POSITIONS = ("GK", "DEF", "MID")


@dataclass
class InsightsContext:
    """Everything a projection needs, built once per context epoch."""
    snapshot: LeagueSnapshot
    indices: Dict[int, TeamIndices]
    avg_goals_per_game: float
    odds_map: Dict[int, Dict] = field(default_factory=dict)
    provider_players: List[Dict] = field(default_factory=list)
    overrides: Dict[str, Any] = field(default_factory=dict)
    config: InsightsConfig = field(default_factory=lambda: MODEL_CONFIG["insights"])


# =============================================================================
# TEAM STRENGTH
# =============================================================================

def poisson_clean_sheet_probability(opponent_implied_goals: float, config: InsightsConfig = None) -> float:
    """P(opponent scores 0) = e^-xG, as a fraction."""
    config = config or MODEL_CONFIG["insights"]
    return clamp(math.exp(-opponent_implied_goals), config.cs_prob_min, config.cs_prob_max)


def provider_team_rates(team: Dict, provider_teams: List[Dict]) -> Optional[Dict[str, float]]:
    """Season xG totals from a provider snapshot, turned into per-game rates."""
    provider_team = snapshots.match_provider_team(team, provider_teams)
    if not provider_team or provider_team.get("xG") is None or provider_team.get("xGA") is None:
        return None
    matches = provider_team.get("matches") or provider_team.get("games") or 1
    return {
        "xg_per_game": provider_team["xG"] / matches,
        "xga_per_game": provider_team["xGA"] / matches,
    }


def build_team_indices(
    snapshot: LeagueSnapshot,
    provider_rates: Optional[Dict[int, Dict[str, float]]] = None,
    config: InsightsConfig = None,
) -> Tuple[Dict[int, TeamIndices], float]:
    """
    Attack index = team xG per game / league average.
    Defence index = league average xGA per game / team xGA per game.

    Provider rates win over the FPL goal rates. Returns the indices and the
    league average goals per game.
    """
    config = config or MODEL_CONFIG["insights"]
    provider_rates = provider_rates or {}

    values = {}
    for team_id in snapshot.teams:
        rates = provider_rates.get(team_id)
        stats = snapshot.team_stats.get(team_id)
        if rates:
            values[team_id] = (rates["xg_per_game"], rates["xga_per_game"], "provider")
        elif stats and stats.played:
            values[team_id] = (stats.goals_per_game, stats.conceded_per_game, "fpl")
        else:
            values[team_id] = (config.default_goals_per_game, config.default_goals_per_game, "fpl")

    count = max(len(values), 1)
    avg_xg = sum(v[0] for v in values.values()) / count
    avg_xga = sum(v[1] for v in values.values()) / count

    indices = {}
    for team_id, (xg, xga, source) in values.items():
        attack = clamp(xg / (avg_xg or 1), config.index_min, config.index_max)
        defence = clamp((avg_xga or 1) / xga, config.index_min, config.index_max) if xga > 0 else config.index_max
        indices[team_id] = TeamIndices(
            attack_index=attack,
            defence_index=defence,
            xg_per_game=xg,
            xga_per_game=xga,
            source=source,
        )

    return indices, avg_xg or config.default_league_goals


# =============================================================================
# FIXTURES
# =============================================================================

def compute_implied_goals(
    home_id: int,
    away_id: int,
    indices: Dict[int, TeamIndices],
    avg_goals_per_game: float,
    odds: Optional[Dict] = None,
    config: InsightsConfig = None,
) -> Dict[str, Any]:
    """Bookmaker implied goals when the odds snapshot has them, otherwise the index model."""
    config = config or MODEL_CONFIG["insights"]
    low, high = config.implied_goals_min, config.implied_goals_max

    if odds and odds.get("home_xg") and odds.get("away_xg"):
        return {
            "home_xg": clamp(odds["home_xg"], low, high),
            "away_xg": clamp(odds["away_xg"], low, high),
            "estimated": bool(odds.get("is_estimated", False)),
        }

    base = avg_goals_per_game or config.default_league_goals
    home = indices.get(home_id) or TeamIndices()
    away = indices.get(away_id) or TeamIndices()

    home_xg = clamp(base * home.attack_index / away.defence_index * config.home_advantage, low, high)
    away_xg = clamp(base * away.attack_index / home.defence_index * config.away_penalty, low, high)
    return {"home_xg": home_xg, "away_xg": away_xg, "estimated": True}


def project_fixture(
    fixture_id: int,
    home_id: int,
    away_id: int,
    context: InsightsContext,
) -> Dict[str, Any]:
    implied = compute_implied_goals(
        home_id, away_id, context.indices, context.avg_goals_per_game,
        context.odds_map.get(fixture_id), context.config,
    )
    home_cs = poisson_clean_sheet_probability(implied["away_xg"], context.config)
    away_cs = poisson_clean_sheet_probability(implied["home_xg"], context.config)

    return {
        "fixture_id": fixture_id,
        "home_team_id": home_id,
        "away_team_id": away_id,
        "home_team_name": context.snapshot.team_short_name(home_id),
        "away_team_name": context.snapshot.team_short_name(away_id),
        "home_xg": implied["home_xg"],
        "away_xg": implied["away_xg"],
        "home_cs": home_cs * 100,
        "away_cs": away_cs * 100,
        "estimated": implied["estimated"],
    }


# =============================================================================
# PLAYERS
# =============================================================================

def calculate_expected_minutes(history: List[Dict], availability: Optional[float], config: InsightsConfig = None) -> Dict[str, float]:
    config = config or MODEL_CONFIG["insights"]
    recent = (history or [])[-config.minutes_lookback:]
    if recent:
        avg_minutes = sum(h.get("minutes") or 0 for h in recent) / len(recent)
    else:
        avg_minutes = config.default_avg_minutes

    if avg_minutes >= config.nailed_minutes:
        role_factor = config.nailed_role_factor
    elif avg_minutes >= config.regular_minutes:
        role_factor = config.regular_role_factor
    else:
        role_factor = config.rotation_role_factor

    if availability is None:
        availability = config.default_availability
    expected = clamp(avg_minutes * role_factor * availability / 100, 0, 90)
    return {"expected_minutes": expected, "role_factor": role_factor, "avg_minutes": avg_minutes}


def compute_attacking_outputs(
    player: Dict,
    expected_minutes: float,
    opponent_defence_index: float,
    difficulty: Optional[int],
    provider_player: Optional[Dict] = None,
    config: InsightsConfig = None,
) -> Dict[str, Any]:
    """
    Expected goal involvements for one fixture, split into goals and assists.

    xGI per 90 comes from the provider snapshot, then the FPL season xG/xA,
    then an ICT/form estimate for players with neither.
    """
    config = config or MODEL_CONFIG["insights"]
    opponent_adjustment = clamp(
        1 / (opponent_defence_index or 1), config.opponent_adjustment_min, config.opponent_adjustment_max
    )
    minutes_factor = expected_minutes / 90

    xg = xa = 0.0
    estimated = False
    season_minutes = player.get("minutes") or 0

    if provider_player and (provider_player.get("minutes") or 0) > 0:
        xg = float(provider_player.get("xG") or 0)
        xa = float(provider_player.get("xA") or 0)
        xgi90 = (xg + xa) / provider_player["minutes"] * 90
    elif parse_float(player.get("expected_goal_involvements")) and season_minutes > 0:
        xg = parse_float(player.get("expected_goals"))
        xa = parse_float(player.get("expected_assists"))
        xgi90 = (xg + xa) / season_minutes * 90
        estimated = True
    else:
        ict = parse_float(player.get("ict_index"))
        form = parse_float(player.get("form"))
        xgi90 = clamp((ict + form * 2) / config.fallback_divisor, config.fallback_min, config.fallback_max)
        estimated = True

    if difficulty is None:
        difficulty = MODEL_CONFIG["points"].neutral_fdr
    difficulty_multiplier = clamp(
        config.difficulty_base - (difficulty - 1) * config.difficulty_step,
        config.difficulty_min, config.difficulty_max,
    )

    expected_gi = xgi90 * minutes_factor * opponent_adjustment * difficulty_multiplier
    goal_share = xg / (xg + xa) if xg + xa > 0 else config.default_goal_share

    return {
        "expected_gi": expected_gi,
        "expected_goals": expected_gi * goal_share,
        "expected_assists": expected_gi * (1 - goal_share),
        "xg": xg,
        "xa": xa,
        "xgi90": xgi90,
        "estimated": estimated,
    }


def map_expected_points(
    position: str,
    expected_minutes: float,
    expected_goals: float,
    expected_assists: float,
    clean_sheet_prob: float,
    bonus_expectation: float,
    config: PointsConfig = None,
) -> Dict[str, float]:
    """Points breakdown for one fixture. `clean_sheet_prob` is a fraction."""
    config = config or MODEL_CONFIG["points"]
    points = config.points_table.get(position, config.points_table["MID"])
    minutes_factor = expected_minutes / 90

    appearance = clamp(minutes_factor, 0, 1) + clamp(expected_minutes / 60, 0, 1)
    goals = expected_goals * points["goal"]
    assists = expected_assists * points["assist"]
    clean_sheet = clean_sheet_prob * points["clean_sheet"] * minutes_factor

    return {
        "appearance_points": appearance,
        "goal_points": goals,
        "assist_points": assists,
        "clean_sheet_points": clean_sheet,
        "bonus_points": bonus_expectation,
        "total": appearance + goals + assists + clean_sheet + bonus_expectation,
    }


def _weighted_sum(projections: List[Dict]) -> float:
    return sum(p["expected_points"] * p["weight"] for p in projections)


def project_player(player: Dict, history: List[Dict], fixtures: List[Dict], context: InsightsContext) -> Dict[str, Any]:
    """
    Project a player over `fixtures` (dicts with fixture_id, gameweek, opponent,
    opponent_id, is_home, difficulty). Later fixtures carry less weight.
    """
    config = context.config
    position = POSITION_MAP.get(player.get("element_type"), "MID")
    availability = player.get("chance_of_playing_next_round")
    expected_minutes = calculate_expected_minutes(history, availability, config)["expected_minutes"]

    team = context.snapshot.teams.get(player.get("team"))
    provider_player = snapshots.match_provider_player(player, team, context.provider_players, context.overrides)
    bonus_expectation = clamp(parse_float(player.get("ict_index")) / config.bonus_ict_divisor, 0, 1)

    projections = []
    for index, fixture in enumerate(fixtures):
        opponent = context.indices.get(fixture["opponent_id"]) or TeamIndices()
        attacking = compute_attacking_outputs(
            player, expected_minutes, opponent.defence_index, fixture.get("difficulty"), provider_player, config
        )

        is_home = fixture["is_home"]
        home_id = player["team"] if is_home else fixture["opponent_id"]
        away_id = fixture["opponent_id"] if is_home else player["team"]
        outlook = project_fixture(fixture["fixture_id"], home_id, away_id, context)

        clean_sheet_prob = 0.0
        if position in CLEAN_SHEET_POSITIONS:
            clean_sheet_prob = (outlook["home_cs"] if is_home else outlook["away_cs"]) / 100

        breakdown = map_expected_points(
            position, expected_minutes,
            attacking["expected_goals"], attacking["expected_assists"],
            clean_sheet_prob, bonus_expectation,
        )
        weights = config.fixture_weights
        projections.append({
            "fixture_id": fixture["fixture_id"],
            "gameweek": fixture.get("gameweek"),
            "opponent": fixture.get("opponent"),
            "opponent_id": fixture["opponent_id"],
            "opponent_badge": fixture.get("opponent_badge"),
            "is_home": is_home,
            "difficulty": fixture.get("difficulty"),
            "expected_points": breakdown["total"],
            "breakdown": breakdown,
            "xg": attacking["expected_goals"],
            "xa": attacking["expected_assists"],
            "xgi": attacking["expected_gi"],
            "xgi90": attacking["xgi90"],
            "shots": provider_player.get("shots") if provider_player else None,
            "big_chances": provider_player.get("bigChances") if provider_player else None,
            "estimated": attacking["estimated"] or outlook["estimated"],
            "weight": weights[index] if index < len(weights) else weights[-1],
        })

    next3 = _weighted_sum(projections[:3])
    next5 = _weighted_sum(projections[:5])
    base = next5 or _weighted_sum(projections)

    first = projections[0] if projections else None
    if first:
        base_breakdown = first["breakdown"]
        advanced = {k: first[k] for k in ("xg", "xa", "xgi", "xgi90", "shots", "big_chances")}
    else:
        base_breakdown = map_expected_points(position, expected_minutes, 0, 0, 0, 0)
        advanced = {"xg": 0, "xa": 0, "xgi": 0, "xgi90": 0, "shots": None, "big_chances": None}

    return {
        "player_id": player["id"],
        "position": position,
        "team_id": player.get("team"),
        "x_pts": {
            "next_fixture": first["expected_points"] if first else 0,
            "next3": next3,
            "next5": next5,
            "low": base * config.range_low,
            "high": base * config.range_high,
        },
        "breakdown": {
            "appearance": base_breakdown["appearance_points"],
            "goals": base_breakdown["goal_points"],
            "assists": base_breakdown["assist_points"],
            "clean_sheet": base_breakdown["clean_sheet_points"],
            "bonus": base_breakdown["bonus_points"],
        },
        "fixtures": [
            {k: p[k] for k in (
                "fixture_id", "gameweek", "opponent", "opponent_id",
                "opponent_badge", "is_home", "difficulty", "expected_points",
            )}
            for p in projections
        ],
        "advanced": advanced,
        "estimated": any(p["estimated"] for p in projections),
    }


def project_team(team_id: int, fixtures: List[Dict], context: InsightsContext) -> Dict[str, Any]:
    indices = context.indices.get(team_id) or TeamIndices()

    outlook = []
    for fixture in fixtures:
        is_home = fixture["is_home"]
        home_id = team_id if is_home else fixture["opponent_id"]
        away_id = fixture["opponent_id"] if is_home else team_id
        projection = project_fixture(fixture["fixture_id"], home_id, away_id, context)
        outlook.append({
            "fixture_id": fixture["fixture_id"],
            "gameweek": fixture.get("gameweek"),
            "opponent": fixture.get("opponent"),
            "is_home": is_home,
            "cs_chance": projection["home_cs"] if is_home else projection["away_cs"],
            "implied_goals": projection["home_xg"] if is_home else projection["away_xg"],
            "estimated": projection["estimated"],
        })

    return {
        "team_id": team_id,
        "attack_index": indices.attack_index,
        "defence_index": indices.defence_index,
        "upcoming_cs_chance": outlook[0]["cs_chance"] if outlook else 0,
        "implied_goals_next": outlook[0]["implied_goals"] if outlook else context.avg_goals_per_game,
        "fixtures": outlook,
        "estimated": any(o["estimated"] for o in outlook),
    }


# =============================================================================
# VIEWS
# =============================================================================

async def load_insights_context() -> InsightsContext:
    async def _build():
        snapshot = await services.load_league_snapshot()
        provider = await snapshots.load_advanced_snapshot()
        provider_teams = provider.get("teams", []) if provider else []

        rates = {}
        for team_id, team in snapshot.teams.items():
            team_rates = provider_team_rates(team, provider_teams)
            if team_rates:
                rates[team_id] = team_rates
        indices, avg_goals = build_team_indices(snapshot, rates)

        context = InsightsContext(
            snapshot=snapshot,
            indices=indices,
            avg_goals_per_game=avg_goals,
            odds_map=await snapshots.load_odds_map(),
            provider_players=provider.get("players", []) if provider else [],
            overrides=await snapshots.load_player_overrides(),
        )
        logger.info(
            f"Insights context built: {len(indices)} teams ({len(rates)} with provider xG), "
            f"{len(context.odds_map)} fixtures with odds"
        )
        return context

    return await insights_cache.get_or_load("context", _build, MODEL_CONFIG["cache"].insights_context_ttl)


def _summary_fixture(fix: Dict, snapshot: LeagueSnapshot) -> Dict:
    opponent_id = fix["team_a"] if fix.get("is_home") else fix["team_h"]
    opponent = snapshot.teams.get(opponent_id)
    return {
        "fixture_id": fix.get("id"),
        "gameweek": fix.get("event"),
        "opponent": opponent.get("short_name", "UNK") if opponent else "UNK",
        "opponent_id": opponent_id,
        "opponent_badge": get_team_badge_url(opponent),
        "is_home": bool(fix.get("is_home")),
        "difficulty": fix.get("difficulty"),
    }


async def build_player_insights(player_id: int, horizon: int = 5) -> Dict:
    async def _build():
        player = await services.get_player_or_404(player_id)
        summary = await services.get_player_summary_raw(player_id)
        context = await load_insights_context()

        fixtures = [_summary_fixture(f, context.snapshot) for f in (summary.get("fixtures") or [])[:horizon]]
        projection = project_player(player, summary.get("history") or [], fixtures, context)
        projection["horizon"] = horizon
        projection["estimated"] = projection["estimated"] or not context.provider_players
        return projection

    return await insights_cache.get_or_load(
        f"insights:player:{player_id}:{horizon}", _build, MODEL_CONFIG["cache"].insights_ttl
    )


async def build_team_insights(team_id: int, horizon: int = 5) -> Dict:
    async def _build():
        context = await load_insights_context()
        snapshot = context.snapshot
        if team_id not in snapshot.teams:
            raise HTTPException(status_code=404, detail="Team not found")

        bootstrap = await services.get_bootstrap_raw()
        current_gw = services.get_current_gameweek(bootstrap.get("events", []))

        upcoming = sorted(
            (
                f for f in snapshot.fixtures
                if f.get("event") is not None and f.get("event") >= current_gw
                and team_id in (f.get("team_h"), f.get("team_a"))
            ),
            key=lambda f: f["event"],
        )[:horizon]

        fixtures = []
        for f in upcoming:
            is_home = f["team_h"] == team_id
            opponent_id = f["team_a"] if is_home else f["team_h"]
            fixtures.append({
                "fixture_id": f["id"],
                "gameweek": f["event"],
                "opponent": snapshot.team_short_name(opponent_id),
                "opponent_id": opponent_id,
                "is_home": is_home,
                "difficulty": f["team_h_difficulty"] if is_home else f["team_a_difficulty"],
            })

        projection = project_team(team_id, fixtures, context)
        projection["horizon"] = horizon
        projection["estimated"] = projection["estimated"] or not context.provider_players
        return projection

    return await insights_cache.get_or_load(
        f"insights:team:{team_id}:{horizon}", _build, MODEL_CONFIG["cache"].insights_ttl
    )


async def _key_players(elements: List[Dict], team_id: int, fixture: Dict, context: InsightsContext) -> List[Dict]:
    """Best projected players for one side, from its top scorers by season points."""
    config = context.config
    considered = sorted(
        (p for p in elements if p.get("team") == team_id and p.get("status") in AVAILABLE_STATUSES),
        key=lambda p: p.get("total_points") or 0,
        reverse=True,
    )[:config.key_players_considered]

    async def _one(player: Dict) -> Dict:
        try:
            summary = await services.get_player_summary_raw(player["id"])
            history = summary.get("history") or []
        except HTTPException as e:
            logger.warning(f"No history for key player {player['id']}, projecting without it: {e.detail}")
            history = []

        is_home = player["team"] == fixture["team_h"]
        projection = project_player(player, history, [{
            "fixture_id": fixture["id"],
            "gameweek": fixture.get("event") or 1,
            "opponent": "",
            "opponent_id": fixture["team_a"] if is_home else fixture["team_h"],
            "opponent_badge": "",
            "is_home": is_home,
            "difficulty": fixture.get("team_h_difficulty") if is_home else fixture.get("team_a_difficulty"),
        }], context)

        return {
            "id": player["id"],
            "name": player.get("web_name"),
            "position": POSITION_MAP.get(player.get("element_type")),
            "photo_code": player.get("code"),
            "x_pts": projection["x_pts"]["next_fixture"],
        }

    results = await asyncio.gather(*[_one(p) for p in considered])
    return sorted(results, key=lambda r: r["x_pts"], reverse=True)[:config.key_players_shown]


async def build_fixture_insights(fixture_id: int, horizon: int = 5) -> Dict:
    async def _build():
        context = await load_insights_context()
        fixture = next((f for f in context.snapshot.fixtures if f["id"] == fixture_id), None)
        if fixture is None:
            raise HTTPException(status_code=404, detail="Fixture not found")

        bootstrap = await services.get_bootstrap_raw()
        elements = bootstrap.get("elements", [])
        home_id, away_id = fixture["team_h"], fixture["team_a"]
        projection = project_fixture(fixture_id, home_id, away_id, context)

        home_players, away_players = await asyncio.gather(
            _key_players(elements, home_id, fixture, context),
            _key_players(elements, away_id, fixture, context),
        )
        home_idx = context.indices.get(home_id) or TeamIndices()
        away_idx = context.indices.get(away_id) or TeamIndices()

        return {
            "fixture_id": fixture_id,
            "home_team_id": home_id,
            "away_team_id": away_id,
            "home_xg": projection["home_xg"],
            "away_xg": projection["away_xg"],
            "home_cs": projection["home_cs"],
            "away_cs": projection["away_cs"],
            "attack_index": {"home": home_idx.attack_index, "away": away_idx.attack_index},
            "defence_index": {"home": home_idx.defence_index, "away": away_idx.defence_index},
            "home_key_players": home_players,
            "away_key_players": away_players,
            "estimated": projection["estimated"] or not context.provider_players,
            "horizon": horizon,
        }

    return await insights_cache.get_or_load(
        f"insights:fixture:{fixture_id}:{horizon}", _build, MODEL_CONFIG["cache"].insights_ttl
    )
