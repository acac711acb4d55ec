from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict

from mcp.server.fastmcp import FastMCP

from strategist import services
from strategist.db import init_db, session_scope
from strategist.scoring import ARCHIVE_MIN_SCORE, AXIS_LABELS, HIGH_SCORE_THRESHOLD, JUDGMENT_LABELS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def strategist_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Strategist",
    instructions=(
        "Strategist generates and scores business strategies and keeps the best of them. "
        "Start with get_ranking() to see every scored strategy, get_current_baseline() "
        "for the latest score snapshot, and list_top_strategies() for the archive. "
        "Record adopt/reject decisions with record_decision(); adopted strategies seed evolution."
    ),
    lifespan=strategist_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("strategist://overview")
def strategist_overview() -> str:
    """Overview of Strategist: data model, scoring, and workflow."""
    return json.dumps({
        "system": "Strategist: LLM strategy brainstorming with scoring and self-improvement",
        "data_model": {
            "exploration": "One question answered by the LLM with a list of strategies, each scored on six axes (1-5).",
            "decision": "A curator's adopt / reject / pending call on a strategy.",
            "baseline": "Snapshot of top and average total score over all strategies at a point in time.",
            "top_strategy": "Archived strategy that scored highly and was not declined. Never removed automatically.",
            "learning_pattern": "Success or failure pattern extracted from decisions and fed back into prompts.",
        },
        "axes": AXIS_LABELS,
        "judgments": JUDGMENT_LABELS,
        "thresholds": {
            "archive_min_score": ARCHIVE_MIN_SCORE,
            "high_score": HIGH_SCORE_THRESHOLD,
        },
        "workflow": [
            "1. get_ranking() -- all scored strategies ranked by weighted total.",
            "2. record_decision(exploration_id, strategy_name, decision) -- adopt or reject.",
            "3. record_baseline() -- snapshot scores to measure improvement.",
            "4. archive_top_strategies() -- keep the best for reuse.",
            "5. list_seed_strategies() -- what the next evolution round will start from.",
        ],
    }, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Tools: Scores
# ---------------------------------------------------------------------------


@mcp.tool()
def get_ranking(
    limit: int = 20, min_score: float = 0.0, judgment: str | None = None, user_id: str = "default",
) -> dict:
    """Rank every scored strategy by weighted total score.

    Args:
        limit: Maximum strategies to return (stats still cover all matches).
        min_score: Only include strategies with total score >= this (0-5).
        judgment: Optional filter: priority, conditional, or decline.
        user_id: Whose score weights to apply.
    """
    if judgment is not None and judgment not in JUDGMENT_LABELS:
        return {"error": f"judgment must be one of {', '.join(JUDGMENT_LABELS)}"}
    with session_scope() as session:
        weights, _ = services.get_weights(session, user_id)
        return services.get_ranking(session, limit=limit, min_score=min_score, judgment=judgment, weights=weights)


@mcp.tool()
def get_score_weights(user_id: str = "default") -> dict:
    """Score weights applied for a user, and whether they are the defaults."""
    with session_scope() as session:
        weights, is_default = services.get_weights(session, user_id)
        return {"user_id": user_id, "weights": weights.model_dump(), "is_default": is_default}


# ---------------------------------------------------------------------------
# Tools: Baselines & archive
# ---------------------------------------------------------------------------


@mcp.tool()
def get_current_baseline() -> dict:
    """Most recent score baseline."""
    with session_scope() as session:
        baseline = services.get_current_baseline(session)
        if baseline is None:
            return {"error": "No baseline recorded yet"}
        return services.baseline_dict(baseline)


@mcp.tool()
def record_baseline() -> dict:
    """Snapshot top/average score over all strategies, with improvement vs. the previous snapshot."""
    with session_scope() as session:
        baseline = services.record_baseline(session)
        if baseline is None:
            return {"error": "No scored strategies to measure"}
        return services.baseline_dict(baseline)


@mcp.tool()
def archive_top_strategies(min_score: float = ARCHIVE_MIN_SCORE) -> dict:
    """Archive strategies scoring at least min_score that were not declined. Safe to repeat."""
    if not 0 <= min_score <= 5:
        return {"error": "min_score must be between 0 and 5"}
    with session_scope() as session:
        return services.archive_top_strategies(session, min_score=min_score)


@mcp.tool()
def list_top_strategies(limit: int = 20) -> list[dict]:
    """Archived top strategies, best first."""
    with session_scope() as session:
        return [services.top_strategy_dict(t) for t in services.get_top_strategies(session, limit)]


# ---------------------------------------------------------------------------
# Tools: Decisions & evolution
# ---------------------------------------------------------------------------


@mcp.tool()
def record_decision(
    exploration_id: str, strategy_name: str, decision: str,
    reason: str | None = None, feasibility_note: str | None = None,
) -> dict:
    """Adopt, reject, or mark pending a strategy. Replaces any earlier decision on it.

    Args:
        exploration_id: Exploration the strategy came from (or "ranking-..." when
                        deciding from the ranking view).
        strategy_name: Exact strategy name.
        decision: adopt, reject, or pending.
        reason: Why; rejection reasons feed pattern learning.
        feasibility_note: Optional note on how realistic execution is.
    """
    with session_scope() as session:
        try:
            row = services.upsert_decision(
                session, exploration_id, strategy_name, decision,
                reason=reason, feasibility_note=feasibility_note,
            )
        except ValueError as exc:
            return {"error": str(exc)}
        return services.decision_dict(row)


@mcp.tool()
def list_seed_strategies(limit: int = 5) -> list[dict]:
    """Strategies the next evolution round would start from."""
    with session_scope() as session:
        return [asdict(s) for s in services.select_seed_strategies(session, limit)]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Strategist MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
