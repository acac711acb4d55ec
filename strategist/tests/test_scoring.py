"""Tests for weighted total scores, judgments, and the score schemas."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from strategist.schemas import ExplorationResult, Strategy, StrategyScores, WeightVector
from strategist.scoring import (
    AXES,
    CONDITIONAL,
    DECLINE,
    DEFAULT_WEIGHTS,
    JUDGMENT_LABELS,
    PRIORITY,
    classify,
    compute_total_score,
)


def _scores(**overrides) -> StrategyScores:
    values = {axis: 5 for axis in AXES}
    values.update(overrides)
    return StrategyScores(**values)


def _uniform(value: int) -> StrategyScores:
    return StrategyScores(**{axis: value for axis in AXES})


# ---------------------------------------------------------------------------
# Tests: compute_total_score
# ---------------------------------------------------------------------------


class TestComputeTotalScore:
    def test_uniform_scores_give_that_score(self):
        for value in range(1, 6):
            assert compute_total_score(_uniform(value)) == pytest.approx(value)

    def test_default_weights_are_applied(self):
        scores = _scores(revenue_potential=1)
        # (1*30 + 5*70) / 100
        assert compute_total_score(scores) == pytest.approx(3.8)

    def test_custom_weights(self):
        weights = WeightVector(
            revenue_potential=100, time_to_revenue=0, competitive_advantage=0,
            execution_feasibility=0, hq_contribution=0, merger_synergy=0,
        )
        assert compute_total_score(_scores(revenue_potential=2), weights) == pytest.approx(2.0)

    def test_weights_need_not_sum_to_100(self):
        weights = WeightVector(**{axis: 1 for axis in AXES})
        scores = StrategyScores(**dict(zip(AXES, (1, 2, 3, 4, 5, 3))))
        assert compute_total_score(scores, weights) == pytest.approx(3.0)

    def test_zero_weights_return_zero(self):
        weights = WeightVector(**{axis: 0 for axis in AXES})
        assert compute_total_score(_uniform(5), weights) == 0.0

    def test_none_means_default_weights(self):
        scores = _scores(time_to_revenue=2, merger_synergy=1)
        assert compute_total_score(scores, None) == compute_total_score(scores, DEFAULT_WEIGHTS)

    def test_result_stays_within_axis_range(self):
        scores = StrategyScores(**dict(zip(AXES, (1, 5, 2, 4, 3, 1))))
        total = compute_total_score(scores)
        assert 1.0 <= total <= 5.0
        assert compute_total_score(scores) == total

    def test_default_weights_uniform_three_is_exact(self):
        assert compute_total_score(_uniform(3)) == 3.0


# ---------------------------------------------------------------------------
# Tests: classify
# ---------------------------------------------------------------------------


class TestClassify:
    def test_priority_at_threshold(self):
        assert classify(_uniform(4)) == PRIORITY

    def test_conditional_at_threshold(self):
        assert classify(_uniform(3)) == CONDITIONAL

    def test_low_total_declines(self):
        assert classify(StrategyScores(**dict(zip(AXES, (3, 3, 3, 2, 2, 2))))) == DECLINE

    def test_low_revenue_potential_gates(self):
        scores = _scores(revenue_potential=2)
        assert compute_total_score(scores) >= 4.0
        assert classify(scores) == DECLINE

    def test_low_competitive_advantage_gates(self):
        scores = _scores(competitive_advantage=2)
        assert compute_total_score(scores) >= 4.0
        assert classify(scores) == DECLINE

    def test_unexecutable_gates(self):
        scores = _scores(execution_feasibility=1)
        assert compute_total_score(scores) >= 4.0
        assert classify(scores) == DECLINE

    def test_just_below_priority_is_conditional(self):
        weights = WeightVector(
            revenue_potential=49.995, time_to_revenue=50.005, competitive_advantage=0,
            execution_feasibility=0, hq_contribution=0, merger_synergy=0,
        )
        scores = _scores(revenue_potential=5, time_to_revenue=3, competitive_advantage=3)
        assert compute_total_score(scores, weights) == pytest.approx(3.9999)
        assert classify(scores, weights) == CONDITIONAL

    def test_just_below_conditional_declines(self):
        weights = WeightVector(
            revenue_potential=49.995, time_to_revenue=50.005, competitive_advantage=0,
            execution_feasibility=0, hq_contribution=0, merger_synergy=0,
        )
        scores = _scores(revenue_potential=4, time_to_revenue=2, competitive_advantage=3)
        assert compute_total_score(scores, weights) == pytest.approx(2.9999)
        assert classify(scores, weights) == DECLINE

    def test_feasibility_two_is_not_gated(self):
        assert classify(_scores(execution_feasibility=2)) == PRIORITY

    def test_weights_change_judgment(self):
        scores = _scores(time_to_revenue=1, hq_contribution=1, merger_synergy=1)
        assert classify(scores) == CONDITIONAL
        heavy = WeightVector(
            revenue_potential=50, time_to_revenue=0, competitive_advantage=50,
            execution_feasibility=0, hq_contribution=0, merger_synergy=0,
        )
        assert classify(scores, heavy) == PRIORITY

    def test_every_judgment_has_label(self):
        assert set(JUDGMENT_LABELS) == {PRIORITY, CONDITIONAL, DECLINE}


# ---------------------------------------------------------------------------
# Tests: schemas
# ---------------------------------------------------------------------------


class TestSchemas:
    def test_scores_accept_camel_case(self):
        scores = StrategyScores.model_validate({
            "revenuePotential": 5, "timeToRevenue": 4, "competitiveAdvantage": 3,
            "executionFeasibility": 2, "hqContribution": 1, "mergerSynergy": 5,
        })
        assert scores.time_to_revenue == 4
        assert scores.model_dump(by_alias=True)["hqContribution"] == 1

    def test_scores_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            _scores(revenue_potential=6)
        with pytest.raises(ValidationError):
            _scores(merger_synergy=0)

    def test_scores_are_frozen(self):
        scores = _uniform(3)
        with pytest.raises(ValidationError):
            scores.revenue_potential = 5

    def test_weights_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            WeightVector(revenue_potential=101)
        with pytest.raises(ValidationError):
            WeightVector(merger_synergy=-1)

    def test_strategy_defaults(self):
        s = Strategy.model_validate({"name": "  Bundle  ", "confidence": "VERY"})
        assert s.name == "Bundle"
        assert s.reason == ""
        assert s.how_to_obtain == ""
        assert s.confidence == "medium"
        assert s.tags == []
        assert s.scores is None

    def test_malformed_scores_become_none(self):
        s = Strategy.model_validate({"name": "X", "scores": {"revenuePotential": 9}})
        assert s.scores is None

    def test_list_fields_joined(self):
        s = Strategy.model_validate({"name": "X", "howToObtain": ["step one", "step two"]})
        assert s.how_to_obtain == "step one\nstep two"

    def test_result_drops_nameless_strategies(self):
        result = ExplorationResult.model_validate({
            "strategies": [{"name": "Keep"}, {"reason": "no name"}, {"name": "  "}, "junk"],
        })
        assert [s.name for s in result.strategies] == ["Keep"]
        assert result.thinking_process == ""
        assert result.follow_up_questions == []
