"""Tests for the scoring loop services: collection, baselines, archive, ranking,
decisions, weights, seed selection, and learned patterns.
"""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from strategist import services
from strategist.models import (
    Base,
    Exploration,
    LearningMemory,
    ScoreBaseline,
    StrategyDecision,
    TopStrategy,
)
from strategist.schemas import ExtractedPattern, WeightVector
from strategist.scoring import AXES

BASE_TIME = datetime(2025, 1, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Fixtures & helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


def _strategy(name: str, rp=5, ttr=5, ca=5, ef=5, hq=5, ms=5, **extra) -> dict:
    return {
        "name": name,
        "reason": f"why {name}",
        "howToObtain": f"how {name}",
        "scores": {
            "revenuePotential": rp, "timeToRevenue": ttr, "competitiveAdvantage": ca,
            "executionFeasibility": ef, "hqContribution": hq, "mergerSynergy": ms,
        },
        **extra,
    }


def _add_exploration(
    session: Session, strategies: list[dict], minutes: int = 0,
    question: str = "How do we grow?", status: str = "completed", raw: str | None = None,
) -> Exploration:
    exploration = Exploration(
        question=question,
        status=status,
        result_json=raw if raw is not None else json.dumps({"strategies": strategies}),
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )
    session.add(exploration)
    session.commit()
    return exploration


def _top_count(session: Session) -> int:
    return session.execute(select(func.count()).select_from(TopStrategy)).scalar_one()


# ---------------------------------------------------------------------------
# Tests: collect_all_strategies
# ---------------------------------------------------------------------------


class TestCollectAllStrategies:
    def test_newest_exploration_first_then_strategy_order(self, session):
        _add_exploration(session, [_strategy("old-1"), _strategy("old-2")], minutes=0)
        _add_exploration(session, [_strategy("new-1"), _strategy("new-2")], minutes=5)
        names = [s.name for s in services.collect_all_strategies(session)]
        assert names == ["new-1", "new-2", "old-1", "old-2"]

    def test_skips_unscored_and_incomplete(self, session):
        _add_exploration(session, [_strategy("scored"), {"name": "unscored"}])
        _add_exploration(session, [_strategy("pending")], minutes=1, status="processing")
        names = [s.name for s in services.collect_all_strategies(session)]
        assert names == ["scored"]

    def test_unreadable_payload_is_skipped(self, session):
        _add_exploration(session, [_strategy("a")], minutes=0)
        _add_exploration(session, [], minutes=1, raw="{not json")
        _add_exploration(session, [_strategy("c")], minutes=2)
        names = [s.name for s in services.collect_all_strategies(session)]
        assert names == ["c", "a"]

    def test_enriched_fields(self, session):
        exploration = _add_exploration(session, [_strategy("a", rp=3)], question="Where next?")
        [s] = services.collect_all_strategies(session)
        assert s.exploration_id == exploration.id
        assert s.question == "Where next?"
        assert s.how_to_obtain == "how a"
        assert s.total_score == pytest.approx(4.4)
        assert s.judgment == "priority"


# ---------------------------------------------------------------------------
# Tests: baselines
# ---------------------------------------------------------------------------


class TestBaselines:
    def test_no_strategies_records_nothing(self, session):
        assert services.record_baseline(session) is None
        assert services.get_current_baseline(session) is None

    def test_first_baseline_has_no_improvement(self, session):
        _add_exploration(session, [_strategy("a"), _strategy("b", rp=3, ca=3, ttr=3, ef=3, hq=3, ms=3)])
        baseline = services.record_baseline(session, run_id="run-1")
        assert baseline.top_score == pytest.approx(5.0)
        assert baseline.avg_score == pytest.approx(4.0)
        assert baseline.total_strategies == 2
        assert baseline.high_score_count == 1
        assert baseline.improvement is None
        assert baseline.run_id == "run-1"

    def test_improvement_percent(self, session):
        session.add(ScoreBaseline(
            date=BASE_TIME, top_score=3.0, avg_score=3.0, total_strategies=1, high_score_count=0,
        ))
        session.commit()
        # (5*30 + 1*20 + 5*20 + 5*15 + 1*10 + 1*5) / 100 = 3.6
        _add_exploration(session, [_strategy("a", ttr=1, hq=1, ms=1)])
        baseline = services.record_baseline(session)
        assert baseline.top_score == pytest.approx(3.6)
        assert baseline.improvement == 20.0

    def test_prior_zero_top_score_gives_null_improvement(self, session):
        session.add(ScoreBaseline(
            date=BASE_TIME, top_score=0.0, avg_score=0.0, total_strategies=0, high_score_count=0,
        ))
        session.commit()
        _add_exploration(session, [_strategy("a")])
        assert services.record_baseline(session).improvement is None

    def test_current_is_latest(self, session):
        _add_exploration(session, [_strategy("a", rp=3, ca=3, ttr=3, ef=3, hq=3, ms=3)])
        first = services.record_baseline(session)
        _add_exploration(session, [_strategy("b")], minutes=1)
        second = services.record_baseline(session)
        assert services.get_current_baseline(session).id == second.id
        assert [b.id for b in services.get_baseline_history(session)] == [second.id, first.id]
        assert second.improvement == pytest.approx(round((5.0 - 3.0) / 3.0 * 100, 6))


# ---------------------------------------------------------------------------
# Tests: archive
# ---------------------------------------------------------------------------


class TestArchive:
    def test_archive_is_idempotent(self, session):
        _add_exploration(session, [_strategy("a"), _strategy("b", rp=3, ca=3, ttr=3, ef=3, hq=3, ms=3)])
        _add_exploration(session, [_strategy("c")], minutes=1)
        assert services.archive_top_strategies(session, 4.0) == {"archived": 2, "total": 2}
        assert services.archive_top_strategies(session, 4.0) == {"archived": 0, "total": 2}
        assert _top_count(session) == 2

    def test_default_min_score(self, session):
        _add_exploration(session, [_strategy("a", rp=4, ca=4, ttr=4, ef=4, hq=4, ms=4),
                                   _strategy("b", rp=4, ca=4, ttr=3, ef=4, hq=4, ms=4)])
        result = services.archive_top_strategies(session)
        assert result == {"archived": 1, "total": 1}

    def test_declined_never_archived(self, session):
        # total 4.1, but revenue potential 2 is a gate
        _add_exploration(session, [_strategy("gated", rp=2)])
        assert services.archive_top_strategies(session, 4.0) == {"archived": 0, "total": 0}

    def test_dedup_is_by_key_not_score(self, session):
        exploration = _add_exploration(session, [_strategy("S")])
        session.add(TopStrategy(
            exploration_id=exploration.id, name="S", reason="", total_score=1.0,
            scores_json="{}", question="", judgment="decline",
        ))
        session.commit()
        weights = WeightVector(**{axis: 1 for axis in AXES})
        assert services.archive_top_strategies(session, 4.0, weights=weights) == {"archived": 0, "total": 1}
        assert _top_count(session) == 1

    def test_duplicate_names_in_one_exploration_archived_once(self, session):
        _add_exploration(session, [_strategy("S"), _strategy("S", ttr=4)])
        assert services.archive_top_strategies(session, 4.0)["archived"] == 1

    def test_top_strategies_best_first_with_scores(self, session):
        _add_exploration(session, [_strategy("good", hq=1), _strategy("best")])
        services.archive_top_strategies(session, 4.0)
        rows = services.get_top_strategies(session)
        assert [t.name for t in rows] == ["best", "good"]
        out = services.top_strategy_dict(rows[1])
        assert out["scores"]["hq_contribution"] == 1
        assert out["how_to_obtain"] == "how good"

    def test_delete_top_strategy(self, session):
        _add_exploration(session, [_strategy("a")])
        services.archive_top_strategies(session)
        [row] = services.get_top_strategies(session)
        assert services.delete_top_strategy(session, row.id) is True
        assert services.delete_top_strategy(session, row.id) is False


# ---------------------------------------------------------------------------
# Tests: ranking
# ---------------------------------------------------------------------------


class TestRanking:
    def test_priority_and_gated_strategy(self, session):
        _add_exploration(session, [_strategy("A"), _strategy("B", rp=1, ttr=3, ca=3, ef=3, hq=3, ms=3)])
        ranking = services.get_ranking(session, limit=10)
        first, second = ranking["strategies"]
        assert (first["rank"], first["name"], first["judgment"]) == (1, "A", "priority")
        assert (second["rank"], second["name"], second["judgment"]) == (2, "B", "decline")
        assert ranking["stats"]["top_score"] == 5.0
        assert ranking["stats"]["decline_count"] == 1

    def test_ties_keep_collection_order(self, session):
        _add_exploration(session, [_strategy("x", hq=1), _strategy("old-tie")], minutes=0)
        _add_exploration(session, [_strategy("new-tie"), _strategy("other-tie")], minutes=1)
        ranking = services.get_ranking(session)
        assert [s["name"] for s in ranking["strategies"]] == ["new-tie", "other-tie", "old-tie", "x"]
        assert [s["rank"] for s in ranking["strategies"]] == [1, 2, 3, 4]

    def test_stats_cover_all_matches_before_limit(self, session):
        _add_exploration(session, [_strategy("a"), _strategy("b", rp=3, ca=3, ttr=3, ef=3, hq=3, ms=3)])
        ranking = services.get_ranking(session, limit=1)
        assert len(ranking["strategies"]) == 1
        assert ranking["stats"]["total_strategies"] == 2
        assert ranking["stats"]["avg_score"] == pytest.approx(4.0)
        assert ranking["stats"]["priority_count"] == 1
        assert ranking["stats"]["conditional_count"] == 1

    def test_filters(self, session):
        _add_exploration(session, [_strategy("a"), _strategy("b", rp=3, ca=3, ttr=3, ef=3, hq=3, ms=3)])
        assert [s["name"] for s in services.get_ranking(session, min_score=4.5)["strategies"]] == ["a"]
        assert [s["name"] for s in services.get_ranking(session, judgment="conditional")["strategies"]] == ["b"]

    def test_weights_are_applied(self, session):
        _add_exploration(session, [_strategy("a", ttr=1), _strategy("b", hq=1)])
        only_ttr = WeightVector(
            revenue_potential=0, time_to_revenue=100, competitive_advantage=0,
            execution_feasibility=0, hq_contribution=0, merger_synergy=0,
        )
        ranking = services.get_ranking(session, weights=only_ttr)
        assert [s["name"] for s in ranking["strategies"]] == ["b", "a"]
        assert ranking["strategies"][1]["total_score"] == pytest.approx(1.0)

    def test_empty(self, session):
        ranking = services.get_ranking(session)
        assert ranking["strategies"] == []
        assert ranking["stats"]["top_score"] == 0.0
        assert ranking["stats"]["avg_score"] == 0.0


# ---------------------------------------------------------------------------
# Tests: decisions
# ---------------------------------------------------------------------------


class TestDecisions:
    def test_upsert_keeps_one_row(self, session):
        services.upsert_decision(session, "e1", "S", "pending")
        row = services.upsert_decision(session, "e1", "S", "adopt", reason="fits")
        assert row.decision == "adopt"
        assert row.reason == "fits"
        assert len(services.list_decisions(session)) == 1

    def test_invalid_decision_rejected(self, session):
        with pytest.raises(ValueError):
            services.upsert_decision(session, "e1", "S", "maybe")
        with pytest.raises(ValueError):
            services.upsert_decision(session, "", "S", "adopt")

    def test_list_filters(self, session):
        services.upsert_decision(session, "e1", "A", "adopt")
        services.upsert_decision(session, "e1", "B", "reject")
        services.upsert_decision(session, "e2", "C", "adopt")
        assert {d.strategy_name for d in services.list_decisions(session, exploration_id="e1")} == {"A", "B"}
        assert [d.strategy_name for d in services.list_decisions(session, decision="adopt")] == ["C", "A"]

    def test_stats(self, session):
        services.upsert_decision(session, "e1", "A", "adopt")
        services.upsert_decision(session, "e1", "B", "reject", reason="too slow")
        services.upsert_decision(session, "e1", "C", "reject", reason="too slow")
        services.upsert_decision(session, "e1", "D", "pending")
        stats = services.decision_stats(session)
        assert stats["total"] == 4
        assert stats["adopted"] == 1
        assert stats["rejected"] == 2
        assert stats["pending"] == 1
        assert stats["adoption_rate"] == 25.0
        assert stats["top_reject_reasons"] == [{"reason": "too slow", "count": 2}]

    def test_delete(self, session):
        row = services.upsert_decision(session, "e1", "A", "adopt")
        assert services.delete_decision(session, row.id) is True
        assert services.delete_decision(session, row.id) is False


# ---------------------------------------------------------------------------
# Tests: weights
# ---------------------------------------------------------------------------


class TestWeights:
    def test_defaults_until_set(self, session):
        weights, is_default = services.get_weights(session, "alice")
        assert is_default is True
        assert weights.revenue_potential == 30

    def test_set_and_reset(self, session):
        services.set_weights(session, "alice", WeightVector(revenue_potential=60))
        weights, is_default = services.get_weights(session, "alice")
        assert is_default is False
        assert weights.revenue_potential == 60
        assert services.get_weights(session, "bob")[1] is True

        assert services.reset_weights(session, "alice") is True
        assert services.get_weights(session, "alice")[1] is True
        assert services.reset_weights(session, "alice") is False


# ---------------------------------------------------------------------------
# Tests: seed selection
# ---------------------------------------------------------------------------


class TestSeedSelection:
    def test_falls_back_to_archive(self, session):
        _add_exploration(session, [_strategy("good", hq=1), _strategy("best")])
        services.archive_top_strategies(session)
        seeds = services.select_seed_strategies(session, limit=5)
        assert [s.name for s in seeds] == ["best", "good"]
        assert seeds[0].scores["revenue_potential"] == 5

    def test_empty_without_decisions_or_archive(self, session):
        assert services.select_seed_strategies(session) == []

    def test_adopted_most_recent_first(self, session):
        exploration = _add_exploration(session, [_strategy("A"), _strategy("B"), _strategy("C")])
        services.archive_top_strategies(session)
        services.upsert_decision(session, exploration.id, "A", "adopt")
        services.upsert_decision(session, exploration.id, "B", "reject")
        services.upsert_decision(session, exploration.id, "C", "adopt")
        seeds = services.select_seed_strategies(session, limit=5)
        assert [s.name for s in seeds] == ["C", "A"]
        assert seeds[0].how_to_obtain == "how C"
        assert seeds[0].question == "How do we grow?"

    def test_limit_and_name_dedup(self, session):
        e1 = _add_exploration(session, [_strategy("A"), _strategy("B")])
        e2 = _add_exploration(session, [_strategy("A")], minutes=1)
        services.upsert_decision(session, e1.id, "A", "adopt")
        services.upsert_decision(session, e1.id, "B", "adopt")
        services.upsert_decision(session, e2.id, "A", "adopt")
        assert [s.name for s in services.select_seed_strategies(session, limit=5)] == ["A", "B"]
        assert [s.name for s in services.select_seed_strategies(session, limit=1)] == ["A"]

    def test_ranking_decisions_resolve_from_archive(self, session):
        _add_exploration(session, [_strategy("Ranked")])
        services.archive_top_strategies(session)
        services.upsert_decision(session, "ranking-1", "Ranked", "adopt")
        [seed] = services.select_seed_strategies(session)
        assert seed.name == "Ranked"
        assert seed.reason == "why Ranked"


# ---------------------------------------------------------------------------
# Tests: learned patterns
# ---------------------------------------------------------------------------


class TestLearningPatterns:
    def _pattern(self, text: str, confidence: float = 0.6, **extra) -> ExtractedPattern:
        return ExtractedPattern(
            type=extra.pop("type", "success_pattern"), category="synergy",
            pattern=text, examples=extra.pop("examples", ["A"]), confidence=confidence,
        )

    def test_similar_pattern_is_reinforced(self, session):
        text = "Strategies that reuse the existing customer base get adopted"
        assert services.save_learned_patterns(session, [self._pattern(text)]) == (1, 0)
        assert services.save_learned_patterns(
            session, [self._pattern(text + " quickly", examples=["B"])]
        ) == (0, 1)
        [row] = session.execute(select(LearningMemory)).scalars().all()
        assert row.validation_count == 2
        assert row.confidence == pytest.approx(0.7)
        assert json.loads(row.examples_json) == ["A", "B"]

    def test_confidence_capped_and_examples_trimmed(self, session):
        text = "Bundling with core services works well"
        services.save_learned_patterns(session, [self._pattern(text, confidence=0.95)])
        for i in range(12):
            services.save_learned_patterns(session, [self._pattern(text, examples=[f"S{i}"])])
        [row] = session.execute(select(LearningMemory)).scalars().all()
        assert row.confidence == 1.0
        examples = json.loads(row.examples_json)
        assert len(examples) == 10
        assert examples[-1] == "S11"

    def test_different_type_is_not_merged(self, session):
        text = "Long payback periods are rejected"
        services.save_learned_patterns(session, [self._pattern(text)])
        services.save_learned_patterns(session, [self._pattern(text, type="failure_pattern")])
        assert session.execute(select(func.count()).select_from(LearningMemory)).scalar_one() == 2

    def test_active_patterns_respect_floor_and_mark_used(self, session):
        services.save_learned_patterns(session, [
            self._pattern("Reuse the customer base", confidence=0.9),
            self._pattern("Avoid heavy capex", confidence=0.8, type="failure_pattern"),
            self._pattern("Low confidence idea here", confidence=0.3),
        ])
        success, failure = services.active_learning_patterns(session)
        assert success == ["- [synergy] Reuse the customer base"]
        assert failure == ["- [synergy] Avoid heavy capex"]
        used = session.execute(
            select(LearningMemory).where(LearningMemory.used_count == 1)
        ).scalars().all()
        assert len(used) == 2
        assert all(p.last_used_at is not None for p in used)

    def test_inactive_patterns_excluded(self, session):
        services.save_learned_patterns(session, [self._pattern("Reuse the customer base", confidence=0.9)])
        [row] = session.execute(select(LearningMemory)).scalars().all()
        services.set_pattern_active(session, row.id, False)
        assert services.active_learning_patterns(session) == ([], [])
        listing = services.list_learning_patterns(session, active_only=False)
        assert listing["patterns"][0]["is_active"] is False
        assert listing["stats"]["success_patterns"] == 0

    def test_decided_strategies(self, session):
        exploration = _add_exploration(session, [_strategy("A"), _strategy("B")])
        services.upsert_decision(session, exploration.id, "A", "adopt", reason="fits")
        services.upsert_decision(session, exploration.id, "B", "reject", reason="slow")
        services.upsert_decision(session, exploration.id, "Gone", "reject")
        adopted, rejected, count = services.collect_decided_strategies(session)
        assert [s.name for s in adopted] == ["A"]
        assert [(s.name, s.decision_reason) for s in rejected] == [("B", "slow")]
        assert count == 3


# ---------------------------------------------------------------------------
# Tests: evolution overview
# ---------------------------------------------------------------------------


class TestEvolutionOverview:
    def test_nothing_to_evolve(self, session):
        overview = services.evolution_overview(session)
        assert overview["can_evolve"] is False
        assert overview["recent_evolutions"] == []

    def test_lists_recent_evolutions(self, session):
        _add_exploration(session, [_strategy("base")])
        _add_exploration(
            session,
            [_strategy("evolved", evolveType="mutation", sourceStrategies=["base"])],
            minutes=1, question=f"{services.EVOLUTION_QUESTION_PREFIX} mutation: 1 source strategies",
        )
        services.archive_top_strategies(session)
        overview = services.evolution_overview(session)
        assert overview["can_evolve"] is True
        assert overview["top_strategy_count"] == 2
        [evolution] = overview["recent_evolutions"]
        assert evolution["strategies"][0]["evolve_type"] == "mutation"
        assert evolution["strategies"][0]["source_strategies"] == ["base"]
