"""
FPL Insights - Calculators Module

Team form aggregation (league snapshot), the clean sheet and goal/assist
outcome models, and the fixture difficulty / form / momentum multipliers.
"""

from collections import defaultdict
from typing import Dict, List

from fpl_insights.config import (
    MODEL_CONFIG, CleanSheetConfig, GoalConfig, AssistConfig,
    FDRConfig, FormConfig, MomentumConfig,
)
from fpl_insights.constants import clamp, round_half_up, parse_float
from fpl_insights.models import LeagueSnapshot, TeamStats, TeamStrength, FormTrend

__all__ = [
    # Team form aggregation
    "collect_team_results",
    "calculate_momentum",
    "calculate_team_stats",
    "build_team_strength",
    "build_league_snapshot",
    # Outcome models
    "CleanSheetModel",
    "GoalAssistModel",
    "cs_model",
    "goal_assist_model",
    # Multipliers
    "get_fdr_multiplier",
    "calculate_form_trend",
    "get_form_multiplier",
    "get_momentum_multiplier",
]


# =============================================================================
# TEAM FORM AGGREGATION
# =============================================================================

def _match_points(scored: int, conceded: int) -> int:
    if scored > conceded:
        return 3
    if scored == conceded:
        return 1
    return 0


def collect_team_results(fixtures: List[Dict], config: MomentumConfig = None) -> Dict[int, List[Dict]]:
    """
    Per-team results from finished fixtures, most recent first.

    Only the newest `max_finished_fixtures` finished fixtures are considered.
    """
    config = config or MODEL_CONFIG["momentum"]
    finished = [
        f for f in fixtures
        if f.get("finished") and f.get("team_h_score") is not None and f.get("team_a_score") is not None
    ]
    # Stable sort keeps upstream order within a gameweek
    finished.sort(key=lambda f: f.get("event") or 0, reverse=True)

    results: Dict[int, List[Dict]] = defaultdict(list)
    for f in finished[:config.max_finished_fixtures]:
        home_score, away_score = f["team_h_score"], f["team_a_score"]
        results[f["team_h"]].append({
            "points": _match_points(home_score, away_score),
            "scored": home_score,
            "conceded": away_score,
            "is_home": True,
            "opponent": f["team_a"],
            "gw": f.get("event"),
        })
        results[f["team_a"]].append({
            "points": _match_points(away_score, home_score),
            "scored": away_score,
            "conceded": home_score,
            "is_home": False,
            "opponent": f["team_h"],
            "gw": f.get("event"),
        })
    return dict(results)


def calculate_momentum(results: List[Dict], config: MomentumConfig = None) -> float:
    """Recency-weighted points over the last 5 results, normalized to [0, 1]."""
    config = config or MODEL_CONFIG["momentum"]
    recent = results[:config.momentum_window]
    if not recent:
        return config.default_momentum
    weighted = sum(r["points"] * (config.momentum_window - i) for i, r in enumerate(recent))
    return weighted / config.max_weighted_sum


def _per_game(games: List[Dict], key: str) -> float:
    return sum(g[key] for g in games) / len(games) if games else 0.0


def _cs_rate(games: List[Dict]) -> float:
    return sum(1 for g in games if g["conceded"] == 0) / len(games) if games else 0.0


def calculate_team_stats(results: List[Dict], config: MomentumConfig = None) -> TeamStats:
    """Rolling rates over the last 10 results; zeros when a split has no games."""
    config = config or MODEL_CONFIG["momentum"]
    last5 = results[:config.momentum_window]
    last10 = results[:config.rolling_window]
    home_games = [r for r in last10 if r["is_home"]]
    away_games = [r for r in last10 if not r["is_home"]]

    return TeamStats(
        played=len(last10),
        clean_sheets=sum(1 for r in last10 if r["conceded"] == 0),
        clean_sheet_rate=_cs_rate(last10),
        home_clean_sheet_rate=_cs_rate(home_games),
        away_clean_sheet_rate=_cs_rate(away_games),
        goals_per_game=_per_game(last10, "scored"),
        conceded_per_game=_per_game(last10, "conceded"),
        home_goals_per_game=_per_game(home_games, "scored"),
        away_goals_per_game=_per_game(away_games, "scored"),
        home_conceded_per_game=_per_game(home_games, "conceded"),
        away_conceded_per_game=_per_game(away_games, "conceded"),
        momentum=calculate_momentum(results, config),
        form=sum(r["points"] for r in last5),
        last5_results="".join("W" if r["points"] == 3 else "D" if r["points"] == 1 else "L" for r in last5),
    )


def build_team_strength(team: Dict) -> TeamStrength:
    return TeamStrength(
        overall=team.get("strength") or 0,
        home_attack=team.get("strength_attack_home") or 0,
        home_defence=team.get("strength_defence_home") or 0,
        away_attack=team.get("strength_attack_away") or 0,
        away_defence=team.get("strength_defence_away") or 0,
    )


def build_league_snapshot(teams: List[Dict], fixtures: List[Dict], config: MomentumConfig = None) -> LeagueSnapshot:
    """Build a fresh snapshot from the bootstrap teams and the full fixture list."""
    results = collect_team_results(fixtures, config)
    return LeagueSnapshot.create(
        teams={t["id"]: t for t in teams},
        team_stats={t["id"]: calculate_team_stats(results.get(t["id"], []), config) for t in teams},
        team_strength={t["id"]: build_team_strength(t) for t in teams},
        fixtures=fixtures,
    )


# =============================================================================
# OUTCOME MODELS
# =============================================================================

class CleanSheetModel:
    """
    Fixture clean sheet probability (percent, 5-60).

    Starts from the team's own venue clean sheet rate, scales by how often the
    opponent scores at the mirrored venue and adds a strength differential.
    """

    def __init__(self, config: CleanSheetConfig = None):
        self.config = config or MODEL_CONFIG["clean_sheet"]

    def opponent_scoring_multiplier(self, scoring_rate: float) -> float:
        for threshold, multiplier in self.config.scoring_rate_multipliers:
            if scoring_rate > threshold:
                return multiplier
        if scoring_rate < self.config.low_scoring_threshold:
            return self.config.low_scoring_multiplier
        return 1.0

    def raw_probability(
        self,
        team_stats: TeamStats,
        team_strength: TeamStrength,
        opp_stats: TeamStats,
        opp_strength: TeamStrength,
        is_home: bool,
    ) -> float:
        """Unclamped, unrounded probability in percent."""
        base_rate = team_stats.home_clean_sheet_rate if is_home else team_stats.away_clean_sheet_rate
        opp_scoring_rate = opp_stats.away_goals_per_game if is_home else opp_stats.home_goals_per_game
        def_strength = team_strength.home_defence if is_home else team_strength.away_defence
        opp_att_strength = opp_strength.away_attack if is_home else opp_strength.home_attack

        prob = base_rate * 100
        prob *= self.opponent_scoring_multiplier(opp_scoring_rate)
        prob += (def_strength - opp_att_strength) / self.config.strength_divisor
        return prob

    def calculate(self, snapshot: LeagueSnapshot, team_id: int, opponent_id: int, is_home: bool) -> int:
        team_stats = snapshot.team_stats.get(team_id)
        opp_stats = snapshot.team_stats.get(opponent_id)
        team_strength = snapshot.team_strength.get(team_id)
        opp_strength = snapshot.team_strength.get(opponent_id)

        if not team_stats or not opp_stats or not team_strength or not opp_strength:
            return int(self.config.default_cs_prob)

        prob = self.raw_probability(team_stats, team_strength, opp_stats, opp_strength, is_home)
        return int(round_half_up(clamp(prob, self.config.cs_prob_min, self.config.cs_prob_max)))


class GoalAssistModel:
    """Per-fixture goal probability (percent, 0-80) and assist probability (fraction)."""

    def __init__(self, goal_config: GoalConfig = None, assist_config: AssistConfig = None):
        self.goal_config = goal_config or MODEL_CONFIG["goal"]
        self.assist_config = assist_config or MODEL_CONFIG["assist"]

    def opponent_conceding_multiplier(self, conceded_rate: float) -> float:
        for threshold, multiplier in self.goal_config.leaky_multipliers:
            if conceded_rate > threshold:
                return multiplier
        for threshold, multiplier in self.goal_config.tight_multipliers:
            if conceded_rate < threshold:
                return multiplier
        return 1.0

    def is_penalty_taker(self, player: Dict) -> bool:
        order = player.get("penalties_order")
        return order is not None and order <= self.goal_config.primary_penalty_order

    def goal_probability(self, player: Dict, snapshot: LeagueSnapshot, opponent_id: int, is_home: bool) -> int:
        cfg = self.goal_config
        xg90 = parse_float(player.get("expected_goals_per_90"))
        opp_stats = snapshot.team_stats.get(opponent_id)
        opp_strength = snapshot.team_strength.get(opponent_id)

        if not opp_stats or not opp_strength:
            return int(round_half_up(clamp(xg90 * 100, cfg.goal_prob_min, cfg.goal_prob_max)))

        prob = xg90 * 100
        conceded_rate = opp_stats.away_conceded_per_game if is_home else opp_stats.home_conceded_per_game
        prob *= self.opponent_conceding_multiplier(conceded_rate)

        if self.is_penalty_taker(player):
            prob += cfg.penalty_taker_bonus

        return int(round_half_up(clamp(prob, cfg.goal_prob_min, cfg.goal_prob_max)))

    def assist_probability(self, player: Dict, snapshot: LeagueSnapshot, opponent_id: int, is_home: bool) -> float:
        """
        Not clamped. Always reads the opponent's away conceded rate, whatever
        the venue.
        """
        cfg = self.assist_config
        xa90 = parse_float(player.get("expected_assists_per_90"))
        venue = cfg.home_multiplier if is_home else cfg.away_multiplier
        opp_stats = snapshot.team_stats.get(opponent_id)
        leaky = opp_stats is not None and opp_stats.away_conceded_per_game > cfg.leaky_opponent_threshold
        return xa90 * venue * (cfg.leaky_opponent_multiplier if leaky else 1.0)


cs_model = CleanSheetModel()
goal_assist_model = GoalAssistModel()


# =============================================================================
# MULTIPLIERS
# =============================================================================

def get_fdr_multiplier(fdr: int, position: str, config: FDRConfig = None) -> float:
    """1 + base delta for the difficulty, dampened for attackers. Unknown FDR is neutral."""
    config = config or MODEL_CONFIG["fdr"]
    delta = config.base_deltas.get(fdr)
    if delta is None:
        return 1.0
    return 1.0 + delta * config.position_dampening.get(position, 1.0)


def calculate_form_trend(history: List[Dict], config: FormConfig = None) -> FormTrend:
    """
    Compare the mean points of the last 3 matches with the up-to-3 before them.
    Needs at least 4 matches, otherwise stable.
    """
    config = config or MODEL_CONFIG["form"]
    if len(history) < config.min_matches:
        return FormTrend.STABLE

    window = config.window
    recent = sum(h.get("total_points", 0) for h in history[-window:]) / window
    earlier_rows = history[-2 * window:-window]
    earlier = sum(h.get("total_points", 0) for h in earlier_rows) / max(1, min(window, len(earlier_rows)))

    diff = recent - earlier
    if diff > config.rising_threshold:
        return FormTrend.RISING
    if diff < config.falling_threshold:
        return FormTrend.FALLING
    return FormTrend.STABLE


def get_form_multiplier(trend: FormTrend, config: FormConfig = None) -> float:
    config = config or MODEL_CONFIG["form"]
    if trend == FormTrend.RISING:
        return config.rising_multiplier
    if trend == FormTrend.FALLING:
        return config.falling_multiplier
    return 1.0


def get_momentum_multiplier(momentum: float, config: MomentumConfig = None) -> float:
    """Linear map of team momentum [0, 1] onto [0.92, 1.08]."""
    config = config or MODEL_CONFIG["momentum"]
    return config.multiplier_floor + momentum * config.multiplier_range
