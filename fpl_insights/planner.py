"""
FPL Insights - Planner Module

Transfer recommendations: candidate pools per position, swap validation
(budget and club cap), justification reasons and strategy-based ranking.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional, List, Dict, Callable, Awaitable, Iterable

from fastapi import HTTPException

from fpl_insights.config import MODEL_CONFIG, TransferConfig
from fpl_insights.constants import (
    POSITIONS, POSITION_MAP, POSITION_ID_MAP, AVAILABLE_STATUSES, round_half_up, parse_float,
)
from fpl_insights.models import (
    LeagueSnapshot, PlayerPrediction, TransferCandidate, TransferReason,
    Strategy, FormTrend, SquadPick,
)
from fpl_insights import services


logger = logging.getLogger("fpl_insights")

PredictFn = Callable[[Dict], Awaitable[PlayerPrediction]]


def parse_strategy(strategy) -> Strategy:
    """Unknown strategies rank like maxPoints."""
    try:
        return Strategy(strategy)
    except ValueError:
        return Strategy.MAX_POINTS


# ============ ORDERING ============

def _pool_proxy_key(strategy: Strategy):
    """Season-level ordering used to pick which players get a full prediction."""
    if strategy == Strategy.VALUE:
        return lambda p: -((p.get("total_points") or 0) / max(p.get("now_cost") or 1, 1))
    if strategy == Strategy.SAFETY:
        return lambda p: -(p.get("minutes") or 0)
    if strategy == Strategy.DIFFERENTIAL:
        return lambda p: parse_float(p.get("selected_by_percent"))
    return lambda p: -(p.get("total_points") or 0)


def sort_predictions(predictions: List[PlayerPrediction], strategy: Strategy) -> List[PlayerPrediction]:
    if strategy == Strategy.VALUE:
        return sorted(predictions, key=lambda p: -p.value_score)
    if strategy == Strategy.SAFETY:
        return sorted(predictions, key=lambda p: -p.confidence)
    if strategy == Strategy.DIFFERENTIAL:
        return sorted(predictions, key=lambda p: p.ownership)
    return sorted(predictions, key=lambda p: -p.predicted_points)


def sort_transfers(transfers: List[TransferCandidate], strategy: Strategy) -> List[TransferCandidate]:
    if strategy == Strategy.VALUE:
        return sorted(transfers, key=lambda t: -t.player_in.value_score)
    if strategy == Strategy.SAFETY:
        return sorted(transfers, key=lambda t: -t.player_in.confidence)
    if strategy == Strategy.DIFFERENTIAL:
        # Ties on ownership fall back to the default net gain order
        return sorted(transfers, key=lambda t: (t.player_in.ownership, -t.net_gain))
    return sorted(transfers, key=lambda t: -t.net_gain)


# ============ REASONS ============

def build_transfer_reasons(
    current: PlayerPrediction,
    candidate: PlayerPrediction,
    net_gain: float,
    horizon: int,
    config: TransferConfig = None,
) -> List[TransferReason]:
    """Positive justifications for swapping `current` for `candidate`, in display order."""
    config = config or MODEL_CONFIG["transfer"]
    reasons = []
    if net_gain > 0:
        reasons.append(TransferReason("points_gain", f"+{net_gain:.1f} predicted points over {horizon} GWs"))
    if candidate.avg_fdr < current.avg_fdr - config.fdr_improvement:
        reasons.append(TransferReason(
            "easier_fixtures", f"Easier fixtures (FDR {candidate.avg_fdr} vs {current.avg_fdr})"
        ))
    if candidate.minutes_pct > current.minutes_pct + config.minutes_improvement:
        reasons.append(TransferReason(
            "minutes", f"Better minutes security ({candidate.minutes_pct}% vs {current.minutes_pct}%)"
        ))
    if candidate.team_momentum > current.team_momentum + config.momentum_improvement:
        reasons.append(TransferReason(
            "momentum", f"Team in better form ({candidate.team_momentum}% momentum)"
        ))
    if candidate.value_score > current.value_score + config.value_improvement:
        reasons.append(TransferReason(
            "value", f"Better value ({candidate.value_score} vs {current.value_score} pts/£m)"
        ))
    if candidate.form_trend == FormTrend.RISING.value and current.form_trend != FormTrend.RISING.value:
        reasons.append(TransferReason("form", "Form improving"))
    if candidate.confidence > current.confidence + config.confidence_improvement:
        reasons.append(TransferReason(
            "confidence", f"More reliable ({candidate.confidence}% confidence)"
        ))
    return reasons


# ============ RECOMMENDER ============

class TransferRecommender:
    """
    Rank same-position swaps for a squad.

    `predict_fn` turns a bootstrap element into a PlayerPrediction; the async
    entry point `recommend` wires it to the cached FPL fetchers.
    """

    def __init__(self, predict_fn: PredictFn, config: TransferConfig = None):
        self.predict_fn = predict_fn
        self.config = config or MODEL_CONFIG["transfer"]

    async def _predict_many(self, players: Iterable[Dict], skip_failures: bool = False) -> List[PlayerPrediction]:
        """Predict players concurrently. Failures propagate unless `skip_failures` is set."""
        sem = asyncio.Semaphore(self.config.max_concurrent_predictions)

        async def _one(player):
            async with sem:
                if not skip_failures:
                    return await self.predict_fn(player)
                try:
                    return await self.predict_fn(player)
                except HTTPException as e:
                    logger.warning(f"Skipping transfer target {player.get('id')}: {e.detail}")
                    return None

        results = await asyncio.gather(*[_one(p) for p in players])
        return [r for r in results if r is not None]

    def candidate_pool(self, elements: List[Dict], position: str, include_injured: bool, strategy: Strategy) -> List[Dict]:
        pos_id = POSITION_ID_MAP[position]
        eligible = [
            p for p in elements
            if p.get("element_type") == pos_id and (include_injured or p.get("status") in AVAILABLE_STATUSES)
        ]
        eligible.sort(key=_pool_proxy_key(strategy))
        return eligible[:self.config.candidate_pool_size]

    async def top_targets_by_position(
        self, elements: List[Dict], include_injured: bool, strategy: Strategy
    ) -> List[Dict]:
        targets = []
        for position in POSITIONS:
            pool = self.candidate_pool(elements, position, include_injured, strategy)
            predictions = await self._predict_many(pool, skip_failures=True)
            ranked = sort_predictions(predictions, strategy)
            targets.append({"position": position, "targets": ranked[:self.config.targets_per_position]})
        return targets

    def evaluate_swaps(
        self,
        squad: List[SquadPick],
        bank: int,
        horizon: int,
        squad_predictions: Dict[int, PlayerPrediction],
        targets_by_position: Dict[str, List[PlayerPrediction]],
        elements_by_id: Dict[int, Dict],
    ) -> List[TransferCandidate]:
        """Every valid (out, in) pair worth suggesting, unsorted."""
        cfg = self.config
        squad_ids = {p.id for p in squad}
        team_counts = defaultdict(int)
        for pick in squad:
            element = elements_by_id.get(pick.id)
            if element:
                team_counts[element["team"]] += 1

        total_squad_points = sum(p.predicted_points for p in squad_predictions.values())

        transfers = []
        for pick in squad:
            current = squad_predictions.get(pick.id)
            if current is None:
                continue

            available = bank + pick.cost
            out_team = elements_by_id[pick.id]["team"]

            # Position comes from the element itself, not the client label
            position = POSITION_MAP[elements_by_id[pick.id]["element_type"]]
            for candidate in targets_by_position.get(position, []):
                if candidate.player_id in squad_ids:
                    continue
                if candidate.cost > available:
                    continue
                if candidate.team_id != out_team and team_counts[candidate.team_id] >= cfg.max_per_club:
                    continue

                net_gain = candidate.predicted_points - current.predicted_points
                reasons = build_transfer_reasons(current, candidate, net_gain, horizon, cfg)

                if net_gain > 0 or len(reasons) >= cfg.min_reasons:
                    transfers.append(TransferCandidate(
                        player_out=current,
                        player_in=candidate,
                        net_gain=round_half_up(net_gain, 1),
                        cost_change=pick.cost - candidate.cost,
                        budget_after=available - candidate.cost,
                        reasons=reasons,
                        new_squad_total=round_half_up(
                            total_squad_points - current.predicted_points + candidate.predicted_points, 1
                        ),
                    ))
        return transfers

    async def recommend(
        self,
        squad: List[SquadPick],
        bank: int,
        horizon: int,
        include_injured: bool,
        strategy,
        elements: List[Dict],
        current_gameweek: Optional[int] = None,
    ) -> Dict:
        strategy = parse_strategy(strategy)
        elements_by_id = {p["id"]: p for p in elements}

        squad_elements = [elements_by_id[p.id] for p in squad if p.id in elements_by_id]
        squad_predictions = {pred.player_id: pred for pred in await self._predict_many(squad_elements)}

        top_targets = await self.top_targets_by_position(elements, include_injured, strategy)
        targets_by_position = {t["position"]: t["targets"] for t in top_targets}

        transfers = self.evaluate_swaps(
            squad, bank, horizon, squad_predictions, targets_by_position, elements_by_id
        )
        transfers = sort_transfers(transfers, strategy)

        total_points = sum(p.predicted_points for p in squad_predictions.values())
        average_confidence = (
            round_half_up(sum(p.confidence for p in squad_predictions.values()) / len(squad_predictions))
            if squad_predictions else 0
        )

        logger.info(
            f"Recommendations: {len(transfers)} transfers for {len(squad)} players "
            f"(strategy={strategy.value}, horizon={horizon})"
        )

        return {
            "best_transfer": transfers[0] if transfers else None,
            "top_transfers": transfers[:self.config.top_transfers],
            "top_targets_by_position": top_targets,
            "current_gameweek": current_gameweek,
            "horizon": horizon,
            "squad_baseline": {
                "total_predicted_points": round_half_up(total_points, 1),
                "average_confidence": int(average_confidence),
            },
        }


async def recommend(
    squad: List[SquadPick],
    bank: int,
    horizon: int = 5,
    include_injured: bool = False,
    strategy: str = Strategy.MAX_POINTS.value,
) -> Dict:
    """Recommend transfers for a squad using live FPL data."""
    bootstrap = await services.get_bootstrap_raw()
    snapshot: LeagueSnapshot = await services.load_league_snapshot()
    current_gw = services.get_current_gameweek(bootstrap.get("events", []))

    async def _predict(player: Dict) -> PlayerPrediction:
        return await services.predict(player, horizon, snapshot)

    recommender = TransferRecommender(_predict)
    return await recommender.recommend(
        squad, bank, horizon, include_injured, strategy,
        elements=bootstrap.get("elements", []),
        current_gameweek=current_gw,
    )
