"""
FPL Insights - Constants Module

Upstream URLs, position mappings, provider name tables and small shared helpers.
"""

import unicodedata
import re
from typing import Optional, Dict


FPL_BASE_URL = "https://fantasy.premierleague.com/api"
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) FPL-Insights/2.0"
BADGE_URL_TEMPLATE = "https://resources.premierleague.com/premierleague/badges/50/t{code}.png"

POSITION_MAP = {1: "GK", 2: "DEF", 3: "MID", 4: "FWD"}
POSITION_ID_MAP = {"GK": 1, "DEF": 2, "MID": 3, "FWD": 4}
POSITIONS = ["GK", "DEF", "MID", "FWD"]

# Statuses eligible as transfer targets when injured players are excluded
AVAILABLE_STATUSES = {"a", "d"}

# Upstream endpoints (logical cache keys)
BOOTSTRAP_ENDPOINT = "/bootstrap-static/"
FIXTURES_ENDPOINT = "/fixtures/"

LEAGUE_SNAPSHOT_KEY = "league_snapshot_v3"

# FPL short name -> Understat team name
UNDERSTAT_TEAM_NAMES = {
    "man city": "Manchester City",
    "man utd": "Manchester United",
    "spurs": "Tottenham",
    "wolves": "Wolverhampton Wanderers",
    "nott'm forest": "Nottingham Forest",
    "west ham": "West Ham",
    "brighton": "Brighton",
    "newcastle": "Newcastle United",
}


def element_summary_endpoint(player_id: int) -> str:
    return f"/element-summary/{player_id}/"


def live_endpoint(gameweek: int) -> str:
    return f"/event/{gameweek}/live/"


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like the UI does (0.5 always away from zero), not banker's rounding."""
    factor = 10 ** digits
    if value >= 0:
        return int(value * factor + 0.5) / factor
    return -int(-value * factor + 0.5) / factor


def get_team_badge_url(team: Optional[Dict]) -> str:
    if not team or not team.get("code"):
        return ""
    return BADGE_URL_TEMPLATE.format(code=team["code"])


def normalize_name(value: str) -> str:
    """Lowercase, strip accents and drop anything that is not a-z/0-9."""
    decomposed = unicodedata.normalize("NFD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]", "", stripped)


def parse_float(value, default: float = 0.0) -> float:
    """FPL sends most decimals as strings ("4.50"); tolerate None/blank."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
