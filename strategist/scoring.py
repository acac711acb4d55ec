"""Deterministic strategy scoring: weighted total plus gate-then-threshold judgment.

Each strategy carries six 1-5 axis scores produced by the generation oracle.
Nothing derived from them is stored as authoritative:

- ``compute_total_score`` -- weighted arithmetic mean over the six axes
- ``classify``            -- gates on single axes first, then thresholds on the total

Gates exist because some axis values disqualify a strategy whatever its
aggregate: a strategy that cannot make money, cannot win, or cannot be
executed is declined even with a high weighted total.
"""
from __future__ import annotations

from strategist.schemas import StrategyScores, WeightVector

AXES: tuple[str, ...] = (
    "revenue_potential",
    "time_to_revenue",
    "competitive_advantage",
    "execution_feasibility",
    "hq_contribution",
    "merger_synergy",
)

AXIS_LABELS: dict[str, str] = {
    "revenue_potential": "Revenue potential",
    "time_to_revenue": "Time to revenue",
    "competitive_advantage": "Competitive advantage",
    "execution_feasibility": "Execution feasibility",
    "hq_contribution": "HQ contribution",
    "merger_synergy": "Merger synergy",
}

DEFAULT_WEIGHTS = WeightVector()

PRIORITY = "priority"
CONDITIONAL = "conditional"
DECLINE = "decline"
JUDGMENTS = (PRIORITY, CONDITIONAL, DECLINE)

# Labels used by the strategy team's reports
JUDGMENT_LABELS: dict[str, str] = {
    PRIORITY: "優先投資",
    CONDITIONAL: "条件付き",
    DECLINE: "見送り",
}

PRIORITY_THRESHOLD = 4.0
CONDITIONAL_THRESHOLD = 3.0

# Archival and "high score" use different bars; they are not the same setting.
ARCHIVE_MIN_SCORE = 4.0
HIGH_SCORE_THRESHOLD = 3.5


def compute_total_score(scores: StrategyScores, weights: WeightVector | None = None) -> float:
    """Weighted mean of the six axes.  Returns 0.0 when all weights are zero."""
    w = weights or DEFAULT_WEIGHTS
    total_weight = sum(getattr(w, axis) for axis in AXES)
    if total_weight == 0:
        return 0.0
    weighted = sum(getattr(scores, axis) * getattr(w, axis) for axis in AXES)
    return weighted / total_weight


def classify(scores: StrategyScores, weights: WeightVector | None = None) -> str:
    """Map a score vector to ``priority`` / ``conditional`` / ``decline``."""
    if scores.revenue_potential <= 2:
        return DECLINE
    if scores.competitive_advantage <= 2:
        return DECLINE
    if scores.execution_feasibility == 1:
        return DECLINE

    total = compute_total_score(scores, weights)
    if total >= PRIORITY_THRESHOLD:
        return PRIORITY
    if total >= CONDITIONAL_THRESHOLD:
        return CONDITIONAL
    return DECLINE
