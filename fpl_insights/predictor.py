"""
FPL Insights - Predictor Module

Expected points over a gameweek horizon and the confidence score that goes
with it. Pure functions of (player, element summary, league snapshot).
"""

from typing import Optional, Dict, List

from fpl_insights.config import MODEL_CONFIG, PointsConfig, ConfidenceConfig, MomentumConfig
from fpl_insights.constants import (
    POSITION_MAP, clamp, round_half_up, parse_float, get_team_badge_url,
)
from fpl_insights.models import (
    LeagueSnapshot, PlayerPrediction, FixturePrediction,
    ConfidenceFactor, ConfidenceResult, FormTrend,
)
from fpl_insights.calculators import (
    cs_model, goal_assist_model, CleanSheetModel, GoalAssistModel,
    get_fdr_multiplier, calculate_form_trend, get_form_multiplier, get_momentum_multiplier,
)


# ============ MINUTES & FORM INPUTS ============

def average_recent_minutes(history: List[Dict], config: PointsConfig = None) -> float:
    """Mean minutes over the last 5 history rows; 45 when there is no history."""
    config = config or MODEL_CONFIG["points"]
    recent = history[-config.minutes_lookback:]
    if not recent:
        return config.default_avg_minutes
    return sum(h.get("minutes", 0) for h in recent) / len(recent)


def get_availability(player: Dict, config: PointsConfig = None) -> int:
    config = config or MODEL_CONFIG["points"]
    chance = player.get("chance_of_playing_next_round")
    return config.default_availability if chance is None else chance


def calculate_minutes_probability(avg_minutes: float, availability: float, config: PointsConfig = None) -> float:
    config = config or MODEL_CONFIG["points"]
    return clamp(min(avg_minutes / config.full_match_minutes, 1.0) * (availability / 100), 0.0, 1.0)


def average_recent_bonus(history: List[Dict], config: PointsConfig = None) -> float:
    config = config or MODEL_CONFIG["points"]
    recent = history[-config.bonus_lookback:]
    if not recent:
        return 0.0
    return sum(h.get("bonus", 0) for h in recent) / len(recent)


def average_recent_points(history: List[Dict], config: PointsConfig = None) -> float:
    config = config or MODEL_CONFIG["points"]
    recent = history[-config.form_lookback:]
    if not recent:
        return config.default_form
    return sum(h.get("total_points", 0) for h in recent) / len(recent)


# ============ CONFIDENCE ============

class ConfidenceScorer:
    """
    Prediction reliability, 0-100, from four additive components:

    - minutes reliability: min(avg minutes / 90, 1) * 35
    - sample size: min(matches / 15, 1) * 25
    - availability: chance of playing / 100 * 20
    - form stability: 20 stable, 18 rising, 8 falling

    Each component can also emit factor tags for display and transfer reasons.
    """

    def __init__(self, config: ConfidenceConfig = None, momentum_config: MomentumConfig = None):
        self.config = config or MODEL_CONFIG["confidence"]
        self.momentum_config = momentum_config or MODEL_CONFIG["momentum"]

    def label(self, score: int) -> str:
        if score >= self.config.high_threshold:
            return "High confidence"
        if score >= self.config.medium_threshold:
            return "Medium confidence"
        return "Higher risk"

    def score(
        self,
        avg_minutes: float,
        history_length: int,
        availability: float,
        form_trend: FormTrend,
        momentum: Optional[float] = None,
        news: Optional[str] = None,
    ) -> ConfidenceResult:
        cfg = self.config
        factors: List[ConfidenceFactor] = []
        total = 0.0

        total += min(avg_minutes / 90, 1.0) * cfg.minutes_weight
        if avg_minutes < cfg.rotation_risk_minutes:
            factors.append(ConfidenceFactor("Rotation risk", "warning"))

        total += min(history_length / cfg.sample_full_size, 1.0) * cfg.sample_weight
        if history_length < cfg.limited_sample:
            factors.append(ConfidenceFactor("Limited match data", "warning"))

        total += (availability / 100) * cfg.availability_weight
        if availability < 100:
            factors.append(ConfidenceFactor(
                f"{availability}% chance of playing",
                "danger" if availability < cfg.danger_availability else "warning",
            ))

        trend = FormTrend(form_trend)
        total += cfg.form_scores[trend.value]
        if trend == FormTrend.FALLING:
            factors.append(ConfidenceFactor("Form declining", "danger"))
        elif trend == FormTrend.RISING:
            factors.append(ConfidenceFactor("Form improving", "positive"))

        if momentum is not None:
            if momentum > self.momentum_config.good_form_threshold:
                factors.append(ConfidenceFactor("Team in good form", "positive"))
            if momentum < self.momentum_config.struggling_threshold:
                factors.append(ConfidenceFactor("Team struggling", "warning"))

        if news:
            factors.append(ConfidenceFactor(news[:cfg.news_max_length], "info"))

        score = int(round_half_up(clamp(total, 0, 100)))
        return ConfidenceResult(score=score, label=self.label(score), factors=factors)


confidence_scorer = ConfidenceScorer()


# ============ POINTS PREDICTION ============

class PointsPredictor:
    """Expected points per upcoming fixture and over the horizon."""

    def __init__(
        self,
        config: PointsConfig = None,
        clean_sheet_model: CleanSheetModel = None,
        attacking_model: GoalAssistModel = None,
        scorer: ConfidenceScorer = None,
    ):
        self.config = config or MODEL_CONFIG["points"]
        self.cs_model = clean_sheet_model or cs_model
        self.attacking_model = attacking_model or goal_assist_model
        self.scorer = scorer or confidence_scorer

    def fixture_points(
        self,
        position: str,
        minutes_prob: float,
        cs_prob: float,
        goal_prob: float,
        assist_prob: float,
        avg_bonus: float,
    ) -> float:
        """Expected points for one fixture before multipliers. Probabilities are fractions."""
        pts = self.config.points_table[position]
        total = self.config.appearance_points * minutes_prob
        total += pts["clean_sheet"] * cs_prob * minutes_prob
        total += pts["goal"] * goal_prob * minutes_prob
        total += pts["assist"] * assist_prob * minutes_prob
        total += avg_bonus * minutes_prob
        return total

    def predict(self, player: Dict, summary: Dict, snapshot: LeagueSnapshot, horizon: int = 5) -> PlayerPrediction:
        cfg = self.config
        history = summary.get("history") or []
        upcoming = (summary.get("fixtures") or [])[:horizon]
        position = POSITION_MAP.get(player.get("element_type"), "MID")
        team_id = player.get("team")

        avg_minutes = average_recent_minutes(history, cfg)
        availability = get_availability(player, cfg)
        minutes_prob = calculate_minutes_probability(avg_minutes, availability, cfg)
        avg_bonus = average_recent_bonus(history, cfg)

        form_trend = calculate_form_trend(history)
        form_mult = get_form_multiplier(form_trend)
        momentum = snapshot.momentum(team_id, MODEL_CONFIG["momentum"].default_momentum)
        momentum_mult = get_momentum_multiplier(momentum)

        total_points = 0.0
        fixture_details: List[FixturePrediction] = []

        for fix in upcoming:
            is_home = bool(fix.get("is_home"))
            opp_id = fix["team_a"] if is_home else fix["team_h"]
            difficulty = fix.get("difficulty")

            cs_prob = self.cs_model.calculate(snapshot, team_id, opp_id, is_home) / 100
            goal_prob = self.attacking_model.goal_probability(player, snapshot, opp_id, is_home) / 100
            assist_prob = self.attacking_model.assist_probability(player, snapshot, opp_id, is_home)

            fix_points = self.fixture_points(position, minutes_prob, cs_prob, goal_prob, assist_prob, avg_bonus)
            fix_points *= get_fdr_multiplier(difficulty, position) * form_mult * momentum_mult
            total_points += max(0.0, fix_points)

            opponent = snapshot.teams.get(opp_id)
            fixture_details.append(FixturePrediction(
                gameweek=fix.get("event"),
                opponent=opponent.get("short_name", "UNK") if opponent else "UNK",
                opponent_id=opp_id,
                opponent_badge=get_team_badge_url(opponent),
                is_home=is_home,
                difficulty=difficulty,
                expected_points=round_half_up(fix_points, 1),
                cs_chance=int(round_half_up(cs_prob * 100)),
                goal_chance=int(round_half_up(goal_prob * 100)),
                assist_chance=int(round_half_up(assist_prob * 100)),
            ))

        # Scale a short fixture list up to the full horizon
        if 0 < len(upcoming) < horizon:
            total_points = total_points / len(upcoming) * horizon

        avg_fdr = (
            sum(f.get("difficulty") or cfg.neutral_fdr for f in upcoming) / len(upcoming)
            if upcoming else cfg.neutral_fdr
        )

        confidence = self.scorer.score(
            avg_minutes=avg_minutes,
            history_length=len(history),
            availability=availability,
            form_trend=form_trend,
            momentum=momentum,
            news=player.get("news"),
        )

        cost = player.get("now_cost") or 0
        team = snapshot.teams.get(team_id)
        penalties_order = player.get("penalties_order")
        corners_order = player.get("corners_and_indirect_freekicks_order")

        return PlayerPrediction(
            player_id=player["id"],
            web_name=player.get("web_name", ""),
            team_id=team_id,
            team_short_name=team.get("short_name", "UNK") if team else "UNK",
            team_badge=get_team_badge_url(team),
            position=position,
            cost=cost,
            predicted_points=round_half_up(total_points, 1),
            predicted_points_per_gw=round_half_up(total_points / horizon, 1) if horizon else 0.0,
            confidence=confidence.score,
            confidence_label=confidence.label,
            confidence_factors=confidence.factors,
            form=round_half_up(average_recent_points(history, cfg), 1),
            form_trend=form_trend.value,
            avg_fdr=round_half_up(avg_fdr, 1),
            minutes_risk=int(round_half_up((1 - minutes_prob) * 100)),
            minutes_pct=int(round_half_up(minutes_prob * 100)),
            fixtures=fixture_details,
            value_score=round_half_up(total_points / (cost / 10), 2) if cost > 0 else 0.0,
            team_momentum=int(round_half_up(momentum * 100)),
            ownership=parse_float(player.get("selected_by_percent")),
            status=player.get("status"),
            chance_of_playing=player.get("chance_of_playing_next_round"),
            penalties_taker=penalties_order is not None and penalties_order <= 1,
            setpiece_taker=corners_order is not None and corners_order <= 1,
            total_points=player.get("total_points") or 0,
        )


points_predictor = PointsPredictor()


def predict_player_points(player: Dict, summary: Dict, snapshot: LeagueSnapshot, horizon: int = 5) -> PlayerPrediction:
    return points_predictor.predict(player, summary, snapshot, horizon)
