"""
FPL Insights Backend - entry point and re-exports.

Code lives in fpl_insights/ modules:
- config.py:      MODEL_CONFIG dataclass configs + environment feature flags
- constants.py:   Upstream endpoints, position maps, small numeric helpers
- models.py:      Request schemas, enums, snapshot and result dataclasses
- cache.py:       TTLCache with single-flight loading
- calculators.py: Team form aggregation, outcome models, multipliers
- predictor.py:   Expected points and confidence scoring
- services.py:    HTTP client, retry policy, cached FPL fetchers
- planner.py:     Transfer recommendations
- snapshots.py:   Optional Understat/FBref snapshots and the odds provider
- metrics.py:     Player/team/fixture metric views, ticker, live gameweek
- insights.py:    Fixture projection engine (xG indices, Poisson clean sheets)
- endpoints.py:   FastAPI app + API endpoints

Tests import from `main` or the package modules directly.
"""

from fpl_insights.config import *       # noqa: F401,F403
from fpl_insights.constants import *    # noqa: F401,F403
from fpl_insights.models import *       # noqa: F401,F403
from fpl_insights.cache import *        # noqa: F401,F403
from fpl_insights.calculators import *  # noqa: F401,F403
from fpl_insights.predictor import *    # noqa: F401,F403
from fpl_insights.services import *     # noqa: F401,F403
from fpl_insights.planner import *      # noqa: F401,F403
from fpl_insights.insights import *     # noqa: F401,F403
from fpl_insights.endpoints import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
