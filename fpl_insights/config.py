import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List


# =============================================================================
# MODEL CONFIGURATION - All heuristic coefficients in one place
# =============================================================================

@dataclass
class CleanSheetConfig:
    """
    Clean sheet probability configuration.

    Base rate is the team's own venue clean sheet rate. The opponent's scoring
    rate at the mirrored venue scales it, then a strength differential is added.
    """

    # (threshold, multiplier) checked in order against opponent goals per game
    scoring_rate_multipliers: List[tuple] = field(default_factory=lambda: [
        (2.0, 0.6),
        (1.5, 0.75),
        (1.0, 0.9),
    ])
    low_scoring_threshold: float = 0.8
    low_scoring_multiplier: float = 1.2

    strength_divisor: float = 20.0

    cs_prob_min: float = 5.0
    cs_prob_max: float = 60.0
    default_cs_prob: float = 25.0


@dataclass
class GoalConfig:
    """Goal probability configuration (percent per fixture)."""

    # Opponent conceded per game: leaky sides boost, tight sides dampen
    leaky_multipliers: List[tuple] = field(default_factory=lambda: [
        (2.0, 1.4),
        (1.5, 1.2),
    ])
    tight_multipliers: List[tuple] = field(default_factory=lambda: [
        (0.8, 0.7),
        (1.0, 0.85),
    ])

    penalty_taker_bonus: float = 8.0
    primary_penalty_order: int = 1

    goal_prob_min: float = 0.0
    goal_prob_max: float = 80.0


@dataclass
class AssistConfig:
    """Assist probability configuration (fraction, intentionally unclamped)."""

    home_multiplier: float = 1.1
    away_multiplier: float = 0.9
    leaky_opponent_threshold: float = 1.5
    leaky_opponent_multiplier: float = 1.2


@dataclass
class PointsConfig:
    """Standard FPL scoring rules and expected points inputs."""

    points_table: Dict[str, Dict[str, float]] = field(default_factory=lambda: {
        "GK": {"clean_sheet": 4, "goal": 6, "assist": 3, "save": 1 / 3, "goals_conceded": -0.5},
        "DEF": {"clean_sheet": 4, "goal": 6, "assist": 3, "save": 0, "goals_conceded": -0.5},
        "MID": {"clean_sheet": 1, "goal": 5, "assist": 3, "save": 0, "goals_conceded": 0},
        "FWD": {"clean_sheet": 0, "goal": 4, "assist": 3, "save": 0, "goals_conceded": 0},
    })

    appearance_points: float = 2.0

    minutes_lookback: int = 5
    default_avg_minutes: float = 45.0
    full_match_minutes: float = 90.0
    default_availability: int = 100

    bonus_lookback: int = 10

    form_lookback: int = 5
    default_form: float = 2.0

    neutral_fdr: float = 3.0


@dataclass
class FDRConfig:
    """
    Fixture difficulty multiplier.

    multiplier = 1 + base_delta[fdr] * position_dampening[position]
    Attackers are dampened: a good striker scores against anyone.
    """

    base_deltas: Dict[int, float] = field(default_factory=lambda: {
        1: 0.30,
        2: 0.12,
        3: 0.0,
        4: -0.10,
        5: -0.20,
    })

    position_dampening: Dict[str, float] = field(default_factory=lambda: {
        "GK": 1.0,
        "DEF": 1.0,
        "MID": 0.8,
        "FWD": 0.7,
    })


@dataclass
class FormConfig:
    """Player form trend classification."""

    min_matches: int = 4
    window: int = 3
    rising_threshold: float = 1.5
    falling_threshold: float = -1.5

    rising_multiplier: float = 1.08
    falling_multiplier: float = 0.92


@dataclass
class MomentumConfig:
    """Team momentum and rolling stat windows."""

    max_finished_fixtures: int = 200
    momentum_window: int = 5
    rolling_window: int = 10
    max_weighted_sum: float = 45.0  # 3 pts * (5+4+3+2+1)
    default_momentum: float = 0.5

    # Linear map of momentum [0, 1] -> [0.92, 1.08]
    multiplier_floor: float = 0.92
    multiplier_range: float = 0.16

    good_form_threshold: float = 0.65
    struggling_threshold: float = 0.35


@dataclass
class ConfidenceConfig:
    """Prediction confidence components (sum clamped to 100)."""

    minutes_weight: float = 35.0
    sample_weight: float = 25.0
    sample_full_size: int = 15
    availability_weight: float = 20.0

    form_scores: Dict[str, float] = field(default_factory=lambda: {
        "stable": 20.0,
        "rising": 18.0,
        "falling": 8.0,
    })

    rotation_risk_minutes: float = 60.0
    limited_sample: int = 5
    danger_availability: int = 75
    news_max_length: int = 60

    high_threshold: int = 80
    medium_threshold: int = 60


@dataclass
class TransferConfig:
    """Transfer recommendation thresholds."""

    candidate_pool_size: int = 40
    targets_per_position: int = 10
    max_per_club: int = 3
    min_reasons: int = 3
    top_transfers: int = 10

    fdr_improvement: float = 0.3
    minutes_improvement: float = 10.0
    momentum_improvement: float = 15.0
    value_improvement: float = 0.3
    confidence_improvement: float = 15.0

    max_concurrent_predictions: int = 10


@dataclass
class CacheConfig:
    """Cache TTLs in seconds."""

    bootstrap_ttl: float = 300.0
    fixtures_ttl: float = 300.0
    element_summary_ttl: float = 300.0
    live_ttl: float = 30.0
    league_snapshot_ttl: float = 1800.0
    metrics_ttl: float = 300.0
    provider_snapshot_ttl: float = 300.0
    insights_ttl: float = 90.0
    insights_context_ttl: float = 60.0


@dataclass
class InsightsConfig:
    """
    Fixture projection engine: attack/defence indices from xG per game,
    Poisson clean sheets from implied goals and a per-fixture points breakdown.
    """

    default_goals_per_game: float = 1.2
    default_league_goals: float = 1.3
    index_min: float = 0.6
    index_max: float = 1.6

    home_advantage: float = 1.08
    away_penalty: float = 0.92
    implied_goals_min: float = 0.2
    implied_goals_max: float = 3.5

    # Poisson P(0 goals) bounds, as fractions
    cs_prob_min: float = 0.05
    cs_prob_max: float = 0.65

    default_avg_minutes: float = 75.0
    minutes_lookback: int = 5
    default_availability: int = 90
    nailed_minutes: float = 80.0
    regular_minutes: float = 60.0
    nailed_role_factor: float = 1.0
    regular_role_factor: float = 0.9
    rotation_role_factor: float = 0.8

    opponent_adjustment_min: float = 0.7
    opponent_adjustment_max: float = 1.3
    difficulty_base: float = 1.15
    difficulty_step: float = 0.08
    difficulty_min: float = 0.8
    difficulty_max: float = 1.2
    default_goal_share: float = 0.6

    # Players without xG data: (ict + form * 2) / divisor, clamped
    fallback_divisor: float = 15.0
    fallback_min: float = 0.1
    fallback_max: float = 1.2

    bonus_ict_divisor: float = 20.0

    fixture_weights: List[float] = field(default_factory=lambda: [1.0, 0.95, 0.9, 0.85, 0.8])
    range_low: float = 0.85
    range_high: float = 1.15

    key_players_considered: int = 10
    key_players_shown: int = 5


@dataclass
class RetryConfig:
    """Upstream retry policy: linear backoff of base_delay * attempt seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    timeout: float = 30.0


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() == "true"


@dataclass
class FeatureConfig:
    """Environment-driven settings for the optional data providers and the API."""

    enable_understat: bool = field(default_factory=lambda: _env_flag("ENABLE_UNDERSTAT"))
    enable_fbref: bool = field(default_factory=lambda: _env_flag("ENABLE_FBREF"))
    enable_odds: bool = field(default_factory=lambda: _env_flag("ENABLE_ODDS"))

    understat_season: str = field(
        default_factory=lambda: os.environ.get("UNDERSTAT_SEASON", str(datetime.now().year))
    )
    fbref_season: str = field(
        default_factory=lambda: os.environ.get("FBREF_SEASON", str(datetime.now().year))
    )
    data_dir: str = field(
        default_factory=lambda: os.environ.get("FPL_INSIGHTS_DATA_DIR", os.path.join(os.getcwd(), "data"))
    )
    max_snapshot_bytes: int = 50 * 1024 * 1024

    cors_origins: List[str] = field(
        default_factory=lambda: os.environ.get("CORS_ORIGINS", "*").split(",")
    )


# Initialize global config
MODEL_CONFIG = {
    "clean_sheet": CleanSheetConfig(),
    "goal": GoalConfig(),
    "assist": AssistConfig(),
    "points": PointsConfig(),
    "fdr": FDRConfig(),
    "form": FormConfig(),
    "momentum": MomentumConfig(),
    "confidence": ConfidenceConfig(),
    "transfer": TransferConfig(),
    "cache": CacheConfig(),
    "insights": InsightsConfig(),
    "retry": RetryConfig(),
}

FEATURES = FeatureConfig()
