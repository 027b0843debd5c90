"""
FPL Insights - Snapshots Module

Optional supplementary data: Understat and FBref snapshot files, name matching
onto FPL players/teams, and the odds-implied probability provider. Every
lookup degrades to None so callers fall back to the heuristic models.
"""

import json
import logging
import os
from typing import Optional, Dict, List, Any, Callable

from fpl_insights.config import FEATURES, FeatureConfig, MODEL_CONFIG
from fpl_insights.constants import UNDERSTAT_TEAM_NAMES, clamp, normalize_name, round_half_up
from fpl_insights.cache import provider_cache
from fpl_insights.models import LeagueSnapshot


logger = logging.getLogger("fpl_insights")


# ============ SNAPSHOT FILES ============

def read_json_if_exists(path: str, max_bytes: int = None) -> Optional[Any]:
    """
    Parsed JSON from `path`, or None when the file is missing, oversized or malformed.
    Malformed data means the provider is treated as disabled.
    """
    max_bytes = max_bytes or FEATURES.max_snapshot_bytes
    if not os.path.exists(path):
        return None
    if os.path.getsize(path) > max_bytes:
        logger.warning(f"Snapshot too large, skipping {path}")
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Snapshot load failed for {path}: {e}")
        return None


def _valid_snapshot(data: Any) -> bool:
    return isinstance(data, dict) and (
        isinstance(data.get("players", []), list) and isinstance(data.get("teams", []), list)
    )


async def _cached_file(cache_key: str, load: Callable[[], Optional[Any]]) -> Optional[Any]:
    """
    Disk reads cached in `provider_cache`. The result is wrapped in a tuple so a
    missing file is remembered as well and not re-read on every lookup.
    """
    async def _load():
        return (load(),)

    entry = await provider_cache.get_or_load(cache_key, _load, MODEL_CONFIG["cache"].provider_snapshot_ttl)
    return entry[0]


async def _load_provider_snapshot(provider: str, season: str, features: FeatureConfig) -> Optional[Dict]:
    path = os.path.join(features.data_dir, provider, f"{season}.json")

    def _read():
        data = read_json_if_exists(path, features.max_snapshot_bytes)
        if data is not None and not _valid_snapshot(data):
            logger.warning(f"Ignoring malformed {provider} snapshot at {path}")
            return None
        if data is not None:
            logger.info(
                f"Loaded {provider} snapshot {season}: "
                f"{len(data.get('teams', []))} teams, {len(data.get('players', []))} players"
            )
        return data

    return await _cached_file(f"{provider}:{path}", _read)


async def load_understat_snapshot(features: FeatureConfig = None) -> Optional[Dict]:
    features = features or FEATURES
    if not features.enable_understat:
        return None
    return await _load_provider_snapshot("understat", features.understat_season, features)


async def load_fbref_snapshot(features: FeatureConfig = None) -> Optional[Dict]:
    features = features or FEATURES
    if not features.enable_fbref:
        return None
    return await _load_provider_snapshot("fbref", features.fbref_season, features)


async def load_player_overrides(features: FeatureConfig = None) -> Dict[str, Any]:
    """FPL player id -> provider name (str) or {"understatName"|"understatId": ...}."""
    features = features or FEATURES
    path = os.path.join(features.data_dir, "mappings", "player_overrides.json")
    data = await _cached_file(f"overrides:{path}", lambda: read_json_if_exists(path, features.max_snapshot_bytes))
    return data if isinstance(data, dict) else {}


# ============ NAME MATCHING ============

def resolve_provider_team_name(team: Optional[Dict]) -> str:
    if not team:
        return ""
    key = (team.get("short_name") or team.get("name") or "").lower()
    return UNDERSTAT_TEAM_NAMES.get(key) or UNDERSTAT_TEAM_NAMES.get((team.get("name") or "").lower()) or team.get("name", "")


def match_provider_player(
    player: Dict,
    team: Optional[Dict],
    provider_players: List[Dict],
    overrides: Optional[Dict[str, Any]] = None,
) -> Optional[Dict]:
    """Override first, then exact normalized name, then surname suffix, within the same team."""
    if not provider_players:
        return None

    target_team = normalize_name(resolve_provider_team_name(team))
    candidates = provider_players
    if target_team:
        candidates = [p for p in candidates if normalize_name(p.get("team", "")) == target_team]

    override = (overrides or {}).get(str(player["id"]))
    if override:
        if isinstance(override, str):
            name = normalize_name(override)
            return next((p for p in candidates if normalize_name(p.get("playerName", "")) == name), None)
        if override.get("understatName"):
            name = normalize_name(override["understatName"])
            return next((p for p in candidates if normalize_name(p.get("playerName", "")) == name), None)
        if override.get("understatId"):
            return next((p for p in candidates if str(p.get("id")) == str(override["understatId"])), None)

    target = normalize_name(player.get("web_name", ""))
    if not target:
        return None
    exact = next((p for p in candidates if normalize_name(p.get("playerName", "")) == target), None)
    if exact:
        return exact
    return next((p for p in candidates if normalize_name(p.get("playerName", "")).endswith(target)), None)


def match_provider_team(team: Optional[Dict], provider_teams: List[Dict]) -> Optional[Dict]:
    if not provider_teams or not team:
        return None
    target = normalize_name(resolve_provider_team_name(team))
    return next((t for t in provider_teams if normalize_name(t.get("name", "")) == target), None)


# ============ ADVANCED STATS ============

async def load_advanced_snapshot(features: FeatureConfig = None) -> Optional[Dict]:
    features = features or FEATURES
    # Understat always wins when both are enabled and present
    snapshot = await load_understat_snapshot(features)
    if snapshot is not None:
        return snapshot
    return await load_fbref_snapshot(features)


async def get_advanced_player_stats(player: Dict, team: Optional[Dict], features: FeatureConfig = None) -> Optional[Dict]:
    features = features or FEATURES
    snapshot = await load_advanced_snapshot(features)
    if snapshot is None:
        return None

    provider_player = match_provider_player(player, team, snapshot.get("players", []), await load_player_overrides(features))
    provider_team = match_provider_team(team, snapshot.get("teams", []))
    if not provider_player and not provider_team:
        return None

    provider_player = provider_player or {}
    provider_team = provider_team or {}
    return {
        "xg": provider_player.get("xG"),
        "xa": provider_player.get("xA"),
        "xgi": provider_player.get("xGI"),
        "shots": provider_player.get("shots"),
        "big_chances": provider_player.get("bigChances"),
        "team_xg": provider_team.get("xG"),
        "opp_xga": None,
    }


async def get_advanced_team_stats(team: Dict, features: FeatureConfig = None) -> Optional[Dict]:
    features = features or FEATURES
    snapshot = await load_advanced_snapshot(features)
    if snapshot is None:
        return None

    provider_team = match_provider_team(team, snapshot.get("teams", []))
    if not provider_team:
        return None
    return {
        "xg_for": provider_team.get("xG"),
        "xg_against": provider_team.get("xGA"),
        "home_xg_for": provider_team.get("homeXG"),
        "away_xg_for": provider_team.get("awayXG"),
        "home_xg_against": provider_team.get("homeXGA"),
        "away_xg_against": provider_team.get("awayXGA"),
    }


# ============ ODDS SNAPSHOT ============

def odds_snapshot_paths(features: FeatureConfig) -> List[str]:
    return [
        os.path.join(features.data_dir, "odds", "snapshot.json"),
        os.path.join(features.data_dir, "odds.json"),
    ]


async def load_odds_snapshot(features: FeatureConfig = None) -> Optional[Dict]:
    """First odds snapshot found on disk. Only read when odds are enabled."""
    features = features or FEATURES
    if not features.enable_odds:
        return None

    def _read():
        for path in odds_snapshot_paths(features):
            data = read_json_if_exists(path, features.max_snapshot_bytes)
            if data is None:
                continue
            if not isinstance(data, dict) or not isinstance(data.get("fixtures", []), list):
                logger.warning(f"Ignoring malformed odds snapshot at {path}")
                continue
            logger.info(f"Loaded odds snapshot: {len(data.get('fixtures', []))} fixtures")
            return data
        return None

    return await _cached_file(f"odds:{features.data_dir}", _read)


def build_odds_map(snapshot: Optional[Dict]) -> Dict[int, Dict]:
    """FPL fixture id -> bookmaker implied goals from an odds snapshot."""
    odds_map = {}
    if not snapshot:
        return odds_map
    for fixture in snapshot.get("fixtures", []):
        fixture_id = fixture.get("fixtureId")
        if not fixture_id:
            continue
        odds_map[fixture_id] = {
            "home_xg": fixture.get("homeXG"),
            "away_xg": fixture.get("awayXG"),
            "is_estimated": bool(fixture.get("isEstimated", False)),
        }
    return odds_map


async def load_odds_map(features: FeatureConfig = None) -> Dict[int, Dict]:
    return build_odds_map(await load_odds_snapshot(features))


# ============ ODDS PROVIDER ============

class OddsProvider:
    """
    Odds-implied goals and clean sheet probabilities.

    Implied goals come from the odds snapshot when it has the fixture, otherwise
    they are derived from the league snapshot with the provider's own
    coefficients. Clean sheet probability is always derived.
    """

    def __init__(self, snapshot: LeagueSnapshot, odds_map: Optional[Dict[int, Dict]] = None):
        self.snapshot = snapshot
        self.odds_map = odds_map or {}

    def get_implied_goals(self, fixture: Dict) -> Dict[str, float]:
        odds = self.odds_map.get(fixture.get("id"))
        if odds and odds.get("home_xg") and odds.get("away_xg"):
            return {
                "home_xg": round_half_up(clamp(odds["home_xg"], 0.2, 3.5), 2),
                "away_xg": round_half_up(clamp(odds["away_xg"], 0.2, 3.5), 2),
            }

        stats = self.snapshot.team_stats
        strength = self.snapshot.team_strength
        home_stats, away_stats = stats.get(fixture["team_h"]), stats.get(fixture["team_a"])
        home_str, away_str = strength.get(fixture["team_h"]), strength.get(fixture["team_a"])

        home_base = home_stats.home_goals_per_game if home_stats else 1.4
        away_base = away_stats.away_goals_per_game if away_stats else 1.1
        home_concede = away_stats.away_conceded_per_game if away_stats else 1.3
        away_concede = home_stats.home_conceded_per_game if home_stats else 1.2

        home_attack = (home_str.home_attack if home_str else 100) / 100
        away_attack = (away_str.away_attack if away_str else 100) / 100
        home_def = (away_str.away_defence if away_str else 100) / 100 or 1
        away_def = (home_str.home_defence if home_str else 100) / 100 or 1

        home_xg = clamp(((home_base + home_concede) / 2) * (home_attack / home_def), 0.4, 3.5)
        away_xg = clamp(((away_base + away_concede) / 2) * (away_attack / away_def), 0.3, 3.0)
        return {"home_xg": round_half_up(home_xg, 2), "away_xg": round_half_up(away_xg, 2)}

    def get_clean_sheet_prob(self, team_id: int, opponent_id: int, is_home: bool) -> int:
        team_stats = self.snapshot.team_stats.get(team_id)
        opp_stats = self.snapshot.team_stats.get(opponent_id)
        team_str = self.snapshot.team_strength.get(team_id)
        opp_str = self.snapshot.team_strength.get(opponent_id)

        if team_stats:
            base_rate = team_stats.home_clean_sheet_rate if is_home else team_stats.away_clean_sheet_rate
        else:
            base_rate = 0.25
        opp_scoring = (opp_stats.away_goals_per_game if is_home else opp_stats.home_goals_per_game) if opp_stats else 1.0
        def_strength = (team_str.home_defence if is_home else team_str.away_defence) if team_str else 100
        opp_att_strength = (opp_str.away_attack if is_home else opp_str.home_attack) if opp_str else 100

        prob = base_rate * 100
        if opp_scoring > 2:
            prob *= 0.65
        elif opp_scoring > 1.5:
            prob *= 0.8
        elif opp_scoring < 0.9:
            prob *= 1.15
        prob += (def_strength - opp_att_strength) / 20

        return int(round_half_up(clamp(prob, 10, 65)))


def get_odds_provider(
    snapshot: LeagueSnapshot, features: FeatureConfig = None, odds_map: Optional[Dict[int, Dict]] = None
) -> Optional[OddsProvider]:
    features = features or FEATURES
    return OddsProvider(snapshot, odds_map) if features.enable_odds else None
