from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Mapping
from enum import Enum
from pydantic import BaseModel, Field


# ============ ENUMS & MODELS ============

class Position(str, Enum):
    GK = "GK"
    DEF = "DEF"
    MID = "MID"
    FWD = "FWD"


class Strategy(str, Enum):
    MAX_POINTS = "maxPoints"
    VALUE = "value"
    SAFETY = "safety"
    DIFFERENTIAL = "differential"


class FormTrend(str, Enum):
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"


class FixtureState(str, Enum):
    UPCOMING = "UPCOMING"
    LIVE = "LIVE"
    HT = "HT"
    FT = "FT"


# ============ REQUEST SCHEMAS ============

class SquadPick(BaseModel):
    """A player in the user's current squad."""
    id: int
    cost: int  # tenths of £m, the sale price
    position: Position


class RecommendationRequest(BaseModel):
    """Request body for transfer recommendations."""
    squad: List[SquadPick]
    bank: int = 0  # tenths of £m
    horizon: int = Field(5, ge=1, le=10)
    include_injured: bool = False
    strategy: str = Strategy.MAX_POINTS.value


# =============================================================================
# LEAGUE SNAPSHOT - rebuilt wholesale, never mutated
# =============================================================================

@dataclass(frozen=True)
class TeamStrength:
    """Static strength ratings from the bootstrap payload."""
    overall: int = 0
    home_attack: int = 0
    home_defence: int = 0
    away_attack: int = 0
    away_defence: int = 0


@dataclass(frozen=True)
class TeamStats:
    """Rolling team statistics from recent finished fixtures."""
    played: int = 0
    clean_sheets: int = 0
    clean_sheet_rate: float = 0.0
    home_clean_sheet_rate: float = 0.0
    away_clean_sheet_rate: float = 0.0
    goals_per_game: float = 0.0
    conceded_per_game: float = 0.0
    home_goals_per_game: float = 0.0
    away_goals_per_game: float = 0.0
    home_conceded_per_game: float = 0.0
    away_conceded_per_game: float = 0.0
    momentum: float = 0.5
    form: int = 0  # points out of 15
    last5_results: str = ""


@dataclass(frozen=True)
class LeagueSnapshot:
    """
    Immutable view of the league used by every prediction.

    A refresh builds a brand new snapshot; computations hold a reference to the
    one they started with.
    """
    teams: Mapping[int, Dict[str, Any]]
    team_stats: Mapping[int, TeamStats]
    team_strength: Mapping[int, TeamStrength]
    fixtures: tuple
    built_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(
        cls,
        teams: Dict[int, Dict],
        team_stats: Dict[int, TeamStats],
        team_strength: Dict[int, TeamStrength],
        fixtures: List[Dict],
    ) -> "LeagueSnapshot":
        return cls(
            teams=MappingProxyType(dict(teams)),
            team_stats=MappingProxyType(dict(team_stats)),
            team_strength=MappingProxyType(dict(team_strength)),
            fixtures=tuple(fixtures),
        )

    def momentum(self, team_id: int, default: float = 0.5) -> float:
        stats = self.team_stats.get(team_id)
        return stats.momentum if stats else default

    def team_short_name(self, team_id: int) -> str:
        team = self.teams.get(team_id)
        return team.get("short_name", "UNK") if team else "UNK"


# =============================================================================
# PREDICTION RESULTS
# =============================================================================

@dataclass
class ConfidenceFactor:
    """A human-readable tag explaining the confidence score."""
    text: str
    type: str  # positive, warning, danger, info


@dataclass
class ConfidenceResult:
    score: int
    label: str
    factors: List[ConfidenceFactor] = field(default_factory=list)


@dataclass
class FixturePrediction:
    """Expected points breakdown for one upcoming fixture."""
    gameweek: Optional[int]
    opponent: str
    opponent_id: int
    opponent_badge: str
    is_home: bool
    difficulty: int
    expected_points: float
    cs_chance: int
    goal_chance: int
    assist_chance: int


@dataclass
class PlayerPrediction:
    """Derived per-request prediction; never persisted."""
    player_id: int
    web_name: str
    team_id: int
    team_short_name: str
    team_badge: str
    position: str
    cost: int
    predicted_points: float
    predicted_points_per_gw: float
    confidence: int
    confidence_label: str
    confidence_factors: List[ConfidenceFactor]
    form: float
    form_trend: str
    avg_fdr: float
    minutes_risk: int
    minutes_pct: int
    fixtures: List[FixturePrediction]
    value_score: float
    team_momentum: int
    ownership: float
    status: Optional[str] = None
    chance_of_playing: Optional[int] = None
    penalties_taker: bool = False
    setpiece_taker: bool = False
    total_points: int = 0


@dataclass
class TransferReason:
    """Why a swap is suggested."""
    code: str  # points_gain, easier_fixtures, minutes, momentum, value, form, confidence
    text: str
    type: str = "positive"


@dataclass
class TransferCandidate:
    """A single (out, in) swap within the same position."""
    player_out: PlayerPrediction
    player_in: PlayerPrediction
    net_gain: float
    cost_change: int
    budget_after: int
    reasons: List[TransferReason]
    new_squad_total: float


@dataclass(frozen=True)
class TeamIndices:
    """Attack and defence indices relative to the league average (1.0 = average)."""
    attack_index: float = 1.0
    defence_index: float = 1.0
    xg_per_game: float = 1.2
    xga_per_game: float = 1.2
    source: str = "fpl"


@dataclass
class FixtureStatus:
    """Display state of a fixture, from fixture data plus optional live data."""
    state: FixtureState
    display: str
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    minutes: Optional[int] = None
