"""Shared business logic for the Strategist API and MCP server.

Everything here is synchronous and works on a caller-provided SQLAlchemy
session.  Functions that change state commit before returning.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import func, insert, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from strategist.generator import DecidedStrategy, SeedStrategy, format_pattern
from strategist.models import (
    AutoExploreRun,
    Exploration,
    LearningMemory,
    ScoreBaseline,
    StrategyDecision,
    TopStrategy,
    UserScoreConfig,
)
from strategist.schemas import ExplorationResult, ExtractedPattern, StrategyScores, WeightVector
from strategist.scoring import (
    ARCHIVE_MIN_SCORE,
    AXES,
    CONDITIONAL,
    DECLINE,
    DEFAULT_WEIGHTS,
    HIGH_SCORE_THRESHOLD,
    JUDGMENT_LABELS,
    PRIORITY,
    classify,
    compute_total_score,
)
from strategist.utils import isoformat, json_dump, json_parse, utcnow

log = logging.getLogger(__name__)

VALID_DECISIONS = ("adopt", "reject", "pending")

# Decisions made from the ranking view reference archive entries, not explorations.
RANKING_DECISION_PREFIX = "ranking-"

EVOLUTION_QUESTION_PREFIX = "[Evolution]"

PATTERN_CONFIDENCE_FLOOR = 0.5
MAX_PROMPT_PATTERNS = 10
MAX_PATTERN_EXAMPLES = 10

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def load_result(exploration: Exploration) -> ExplorationResult | None:
    """Decode an exploration's stored result.  Raises ValueError if it is corrupt."""
    if not exploration.result_json:
        return None
    try:
        return ExplorationResult.model_validate_json(exploration.result_json)
    except ValidationError as exc:
        raise ValueError(f"unreadable result payload ({exc.error_count()} errors)") from exc


def dump_result(result: ExplorationResult) -> str:
    return result.model_dump_json(by_alias=True, exclude_none=True)


def decode_scores(value: str | None) -> StrategyScores | None:
    try:
        return StrategyScores.model_validate(json_parse(value, {}))
    except ValidationError:
        return None


def encode_scores(scores: StrategyScores) -> str:
    return json_dump(scores.model_dump(by_alias=True))


def row_dict(obj) -> dict[str, Any]:
    """Plain column dict for simple ORM rows (datetimes as ISO strings)."""
    out: dict[str, Any] = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key)
        out[col.key] = isoformat(val) if isinstance(val, datetime) else val
    return out


def exploration_summary(e: Exploration) -> dict:
    return {
        "id": e.id, "question": e.question, "context": e.context,
        "status": e.status, "error": e.error, "created_at": isoformat(e.created_at),
    }


def exploration_detail(e: Exploration) -> dict:
    base = exploration_summary(e)
    base["constraint_ids"] = json_parse(e.constraints_json, [])
    try:
        result = load_result(e)
    except ValueError as exc:
        log.warning("Exploration %s has an unreadable result: %s", e.id, exc)
        result = None
    base["result"] = result.model_dump() if result else None
    return base


def baseline_dict(b: ScoreBaseline) -> dict:
    return {
        "id": b.id, "date": isoformat(b.date), "top_score": b.top_score,
        "avg_score": b.avg_score, "total_strategies": b.total_strategies,
        "high_score_count": b.high_score_count, "improvement": b.improvement,
        "run_id": b.run_id,
    }


def top_strategy_dict(t: TopStrategy) -> dict:
    scores = decode_scores(t.scores_json)
    return {
        "id": t.id, "exploration_id": t.exploration_id, "name": t.name,
        "reason": t.reason, "how_to_obtain": t.how_to_obtain,
        "total_score": t.total_score,
        "scores": scores.model_dump() if scores else None,
        "question": t.question, "judgment": t.judgment,
        "created_at": isoformat(t.created_at),
    }


def decision_dict(d: StrategyDecision) -> dict:
    return {
        "id": d.id, "exploration_id": d.exploration_id, "strategy_name": d.strategy_name,
        "decision": d.decision, "reason": d.reason, "feasibility_note": d.feasibility_note,
        "created_at": isoformat(d.created_at), "updated_at": isoformat(d.updated_at),
    }


def pattern_dict(p: LearningMemory) -> dict:
    return {
        "id": p.id, "type": p.type, "category": p.category, "pattern": p.pattern,
        "examples": json_parse(p.examples_json, []), "evidence": p.evidence,
        "confidence": p.confidence, "validation_count": p.validation_count,
        "used_count": p.used_count, "last_used_at": isoformat(p.last_used_at),
        "is_active": p.is_active, "created_at": isoformat(p.created_at),
    }


def run_dict(r: AutoExploreRun) -> dict:
    return {
        "id": r.id, "status": r.status, "trigger_type": r.trigger_type,
        "questions_generated": r.questions_generated,
        "explorations_completed": r.explorations_completed,
        "high_scores_found": r.high_scores_found, "top_score": r.top_score,
        "top_strategy_name": r.top_strategy_name, "baseline_score": r.baseline_score,
        "achieved_score": r.achieved_score, "improvement": r.improvement,
        "errors": json_parse(r.errors_json, []),
        "started_at": isoformat(r.started_at), "completed_at": isoformat(r.completed_at),
        "duration": r.duration,
    }


def get_entity(session: Session, model, entity_id: int | str):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def delete_entity(session: Session, model, entity_id: int | str) -> bool:
    obj = get_entity(session, model, entity_id)
    if obj is None:
        return False
    session.delete(obj)
    session.commit()
    return True


# ---------------------------------------------------------------------------
# Strategy collection
# ---------------------------------------------------------------------------


@dataclass
class CollectedStrategy:
    """A stored strategy with its score and judgment computed for the active weights."""
    exploration_id: str
    name: str
    reason: str
    how_to_obtain: str
    metrics: str
    confidence: str
    tags: list[str]
    scores: StrategyScores
    total_score: float
    judgment: str
    question: str
    exploration_date: datetime | None

    def to_dict(self) -> dict:
        return {
            "exploration_id": self.exploration_id, "name": self.name,
            "reason": self.reason, "how_to_obtain": self.how_to_obtain,
            "metrics": self.metrics, "confidence": self.confidence, "tags": list(self.tags),
            "scores": self.scores.model_dump(), "total_score": self.total_score,
            "judgment": self.judgment, "judgment_label": JUDGMENT_LABELS[self.judgment],
            "question": self.question, "exploration_date": isoformat(self.exploration_date),
        }


def collect_all_strategies(
    session: Session, weights: WeightVector | None = None,
) -> list[CollectedStrategy]:
    """Every scored strategy across completed explorations, newest exploration first.

    Strategies without scores are skipped.  An exploration whose payload cannot
    be decoded is logged and skipped; the rest of history is still collected.
    """
    explorations = session.execute(
        select(Exploration)
        .where(Exploration.status == "completed")
        .order_by(Exploration.created_at.desc())
    ).scalars().all()

    collected: list[CollectedStrategy] = []
    for exploration in explorations:
        try:
            result = load_result(exploration)
        except ValueError as exc:
            log.warning("Skipping exploration %s: %s", exploration.id, exc)
            continue
        if result is None:
            continue
        for strategy in result.strategies:
            if strategy.scores is None:
                continue
            collected.append(CollectedStrategy(
                exploration_id=exploration.id,
                name=strategy.name,
                reason=strategy.reason,
                how_to_obtain=strategy.how_to_obtain,
                metrics=strategy.metrics,
                confidence=strategy.confidence,
                tags=strategy.tags,
                scores=strategy.scores,
                total_score=compute_total_score(strategy.scores, weights),
                judgment=classify(strategy.scores, weights),
                question=exploration.question,
                exploration_date=exploration.created_at,
            ))
    return collected


# ---------------------------------------------------------------------------
# Baselines
# ---------------------------------------------------------------------------


def get_current_baseline(session: Session) -> ScoreBaseline | None:
    return session.execute(
        select(ScoreBaseline).order_by(ScoreBaseline.date.desc(), ScoreBaseline.id.desc()).limit(1)
    ).scalars().first()


def get_baseline_history(session: Session, limit: int = 30) -> list[ScoreBaseline]:
    return list(session.execute(
        select(ScoreBaseline).order_by(ScoreBaseline.date.desc(), ScoreBaseline.id.desc()).limit(limit)
    ).scalars().all())


def record_baseline(
    session: Session, run_id: str | None = None, weights: WeightVector | None = None,
) -> ScoreBaseline | None:
    """Snapshot aggregate score statistics.  Returns None when there is nothing to measure."""
    strategies = collect_all_strategies(session, weights)
    if not strategies:
        return None

    totals = [s.total_score for s in strategies]
    top_score = max(totals)
    previous = get_current_baseline(session)
    improvement: float | None = None
    if previous is not None and previous.top_score > 0:
        # percent, rounded to absorb float noise (3.0 -> 3.6 is 20.0)
        improvement = round((top_score - previous.top_score) / previous.top_score * 100, 6)

    baseline = ScoreBaseline(
        date=utcnow(),
        top_score=top_score,
        avg_score=sum(totals) / len(totals),
        total_strategies=len(totals),
        high_score_count=sum(1 for t in totals if t >= HIGH_SCORE_THRESHOLD),
        improvement=improvement,
        run_id=run_id,
    )
    session.add(baseline)
    session.commit()
    log.info("Recorded baseline: top=%.2f avg=%.2f n=%d", top_score, baseline.avg_score, len(totals))
    return baseline


# ---------------------------------------------------------------------------
# Top-strategy archive
# ---------------------------------------------------------------------------


def archive_top_strategies(
    session: Session, min_score: float | None = None, weights: WeightVector | None = None,
) -> dict[str, int]:
    """Archive strategies scoring at least *min_score* that were not declined.

    Deduplication is by ``(exploration_id, name)`` only; an already archived
    pair is never inserted again, whatever its current score.  Returns
    ``archived`` (new rows) and ``total`` (all qualifying strategies).
    """
    if min_score is None:
        min_score = ARCHIVE_MIN_SCORE
    qualifying = [
        s for s in collect_all_strategies(session, weights)
        if s.total_score >= min_score and s.judgment != DECLINE
    ]
    seen = {tuple(row) for row in session.execute(select(TopStrategy.exploration_id, TopStrategy.name)).all()}

    rows: list[dict[str, Any]] = []
    for s in qualifying:
        key = (s.exploration_id, s.name)
        if key in seen:
            continue
        seen.add(key)
        rows.append({
            "exploration_id": s.exploration_id, "name": s.name, "reason": s.reason,
            "how_to_obtain": s.how_to_obtain or None, "total_score": s.total_score,
            "scores_json": encode_scores(s.scores), "question": s.question,
            "judgment": s.judgment,
        })

    if not rows:
        return {"archived": 0, "total": len(qualifying)}

    try:
        session.execute(insert(TopStrategy), rows)
        session.commit()
        archived = len(rows)
    except IntegrityError:
        # A concurrent pass archived some of these; insert the rest one by one.
        session.rollback()
        archived = 0
        for row in rows:
            try:
                with session.begin_nested():
                    session.execute(insert(TopStrategy), [row])
                archived += 1
            except IntegrityError:
                log.info("Already archived: %s / %s", row["exploration_id"], row["name"])
        session.commit()

    log.info("Archived %d new top strategies (%d qualifying)", archived, len(qualifying))
    return {"archived": archived, "total": len(qualifying)}


def get_top_strategies(session: Session, limit: int = 50) -> list[TopStrategy]:
    return list(session.execute(
        select(TopStrategy).order_by(TopStrategy.total_score.desc(), TopStrategy.id).limit(limit)
    ).scalars().all())


def delete_top_strategy(session: Session, strategy_id: int) -> bool:
    return delete_entity(session, TopStrategy, strategy_id)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def get_ranking(
    session: Session,
    limit: int = 50,
    min_score: float = 0.0,
    judgment: str | None = None,
    weights: WeightVector | None = None,
) -> dict:
    """Rank every scored strategy by total score, recomputed for *weights*.

    Equal scores keep collection order.  Ranks are assigned before truncation;
    ``stats`` describe the filtered population, not just the returned page.
    """
    filtered = [
        s for s in collect_all_strategies(session, weights)
        if s.total_score >= min_score and (judgment is None or s.judgment == judgment)
    ]
    ranked = sorted(filtered, key=lambda s: s.total_score, reverse=True)

    counts = Counter(s.judgment for s in ranked)
    stats = {
        "total_strategies": len(ranked),
        "priority_count": counts[PRIORITY],
        "conditional_count": counts[CONDITIONAL],
        "decline_count": counts[DECLINE],
        "avg_score": sum(s.total_score for s in ranked) / len(ranked) if ranked else 0.0,
        "top_score": ranked[0].total_score if ranked else 0.0,
    }
    strategies = [{"rank": i, **s.to_dict()} for i, s in enumerate(ranked[:limit], start=1)]
    return {"strategies": strategies, "stats": stats}


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def upsert_decision(
    session: Session,
    exploration_id: str,
    strategy_name: str,
    decision: str,
    reason: str | None = None,
    feasibility_note: str | None = None,
) -> StrategyDecision:
    """Record a curator's decision, replacing any earlier one for the same strategy."""
    if not exploration_id or not strategy_name:
        raise ValueError("exploration_id and strategy_name are required")
    if decision not in VALID_DECISIONS:
        raise ValueError(f"decision must be one of {', '.join(VALID_DECISIONS)} (got {decision!r})")

    values = {"decision": decision, "reason": reason or None, "feasibility_note": feasibility_note or None}
    stmt = sqlite_insert(StrategyDecision).values(
        exploration_id=exploration_id, strategy_name=strategy_name, **values,
    ).on_conflict_do_update(
        index_elements=["exploration_id", "strategy_name"],
        set_={**values, "updated_at": utcnow()},
    )
    session.execute(stmt)
    session.commit()
    row = session.execute(
        select(StrategyDecision).where(
            StrategyDecision.exploration_id == exploration_id,
            StrategyDecision.strategy_name == strategy_name,
        )
    ).scalars().one()
    session.refresh(row)
    return row


def list_decisions(
    session: Session,
    exploration_id: str | None = None,
    decision: str | None = None,
    limit: int = 100,
) -> list[StrategyDecision]:
    query = select(StrategyDecision)
    if exploration_id:
        query = query.where(StrategyDecision.exploration_id == exploration_id)
    if decision:
        query = query.where(StrategyDecision.decision == decision)
    query = query.order_by(StrategyDecision.created_at.desc(), StrategyDecision.id.desc()).limit(limit)
    return list(session.execute(query).scalars().all())


def decision_stats(session: Session) -> dict:
    counts = dict(session.execute(
        select(StrategyDecision.decision, func.count()).group_by(StrategyDecision.decision)
    ).all())
    total = sum(counts.values())
    adopted = counts.get("adopt", 0)

    reasons = session.execute(
        select(StrategyDecision.reason)
        .where(StrategyDecision.decision == "reject", StrategyDecision.reason.is_not(None))
        .limit(100)
    ).scalars().all()
    top_reasons = Counter(r for r in reasons if r).most_common(5)

    return {
        "total": total,
        "adopted": adopted,
        "rejected": counts.get("reject", 0),
        "pending": counts.get("pending", 0),
        "adoption_rate": round(adopted / total * 100, 1) if total else 0.0,
        "top_reject_reasons": [{"reason": r, "count": c} for r, c in top_reasons],
    }


def delete_decision(session: Session, decision_id: int) -> bool:
    return delete_entity(session, StrategyDecision, decision_id)


def _find_strategy(exploration: Exploration, name: str):
    try:
        result = load_result(exploration)
    except ValueError as exc:
        log.warning("Skipping exploration %s: %s", exploration.id, exc)
        return None
    if result is None:
        return None
    return next((s for s in result.strategies if s.name == name), None)


def collect_decided_strategies(
    session: Session,
) -> tuple[list[DecidedStrategy], list[DecidedStrategy], int]:
    """Adopted and rejected strategies resolved against their explorations.

    Returns ``(adopted, rejected, decision_count)`` where the count includes
    decisions whose strategy could not be found.
    """
    decisions = session.execute(
        select(StrategyDecision)
        .where(StrategyDecision.decision.in_(("adopt", "reject")))
        .order_by(StrategyDecision.created_at.desc(), StrategyDecision.id.desc())
    ).scalars().all()
    ids = {d.exploration_id for d in decisions}
    explorations = {
        e.id: e for e in session.execute(select(Exploration).where(Exploration.id.in_(list(ids)))).scalars()
    } if ids else {}

    adopted: list[DecidedStrategy] = []
    rejected: list[DecidedStrategy] = []
    for d in decisions:
        exploration = explorations.get(d.exploration_id)
        strategy = _find_strategy(exploration, d.strategy_name) if exploration else None
        if strategy is None:
            continue
        item = DecidedStrategy(
            name=strategy.name, reason=strategy.reason,
            question=exploration.question, decision_reason=d.reason,
        )
        (adopted if d.decision == "adopt" else rejected).append(item)
    return adopted, rejected, len(decisions)


# ---------------------------------------------------------------------------
# Evolution seeds
# ---------------------------------------------------------------------------


def _seed_from_top(t: TopStrategy) -> SeedStrategy:
    scores = decode_scores(t.scores_json)
    return SeedStrategy(
        name=t.name, reason=t.reason, how_to_obtain=t.how_to_obtain or "",
        question=t.question, scores=scores.model_dump() if scores else None,
    )


def select_seed_strategies(session: Session, limit: int = 5) -> list[SeedStrategy]:
    """Pick starting strategies for evolution.

    Adopted strategies come first (most recent decision first, one per name).
    Only when nobody has adopted anything does the archive stand in, best
    total score first.
    """
    adopted = session.execute(
        select(StrategyDecision)
        .where(StrategyDecision.decision == "adopt")
        .order_by(StrategyDecision.created_at.desc(), StrategyDecision.id.desc())
    ).scalars().all()

    if not adopted:
        return [_seed_from_top(t) for t in get_top_strategies(session, limit)]

    ids = {d.exploration_id for d in adopted if not d.exploration_id.startswith(RANKING_DECISION_PREFIX)}
    explorations = {
        e.id: e for e in session.execute(select(Exploration).where(Exploration.id.in_(list(ids)))).scalars()
    } if ids else {}

    seeds: list[SeedStrategy] = []
    names: set[str] = set()
    for d in adopted:
        if len(seeds) >= limit:
            break
        if d.strategy_name in names:
            continue
        seed: SeedStrategy | None = None
        if d.exploration_id.startswith(RANKING_DECISION_PREFIX):
            top = session.execute(
                select(TopStrategy).where(TopStrategy.name == d.strategy_name)
                .order_by(TopStrategy.total_score.desc())
            ).scalars().first()
            if top is not None:
                seed = _seed_from_top(top)
        elif (exploration := explorations.get(d.exploration_id)) is not None:
            strategy = _find_strategy(exploration, d.strategy_name)
            if strategy is not None:
                seed = SeedStrategy(
                    name=strategy.name, reason=strategy.reason,
                    how_to_obtain=strategy.how_to_obtain, question=exploration.question,
                    scores=strategy.scores.model_dump() if strategy.scores else None,
                )
        if seed is not None:
            seeds.append(seed)
            names.add(seed.name)
    return seeds


def evolution_overview(session: Session) -> dict:
    adopted_count = session.execute(
        select(func.count()).select_from(StrategyDecision).where(StrategyDecision.decision == "adopt")
    ).scalar_one()
    top_count = session.execute(select(func.count()).select_from(TopStrategy)).scalar_one()
    recent = session.execute(
        select(Exploration)
        .where(Exploration.question.startswith(EVOLUTION_QUESTION_PREFIX))
        .order_by(Exploration.created_at.desc())
        .limit(5)
    ).scalars().all()

    evolutions = []
    for e in recent:
        try:
            result = load_result(e)
        except ValueError as exc:
            log.warning("Skipping evolution %s: %s", e.id, exc)
            result = None
        sources = result.evolve_metadata.source_strategies if result and result.evolve_metadata else []
        evolutions.append({
            "id": e.id, "question": e.question, "created_at": isoformat(e.created_at),
            "strategies": [
                {
                    "name": s.name,
                    "evolve_type": s.evolve_type or "unknown",
                    "source_strategies": s.source_strategies or sources,
                    "total_score": compute_total_score(s.scores) if s.scores else None,
                }
                for s in (result.strategies if result else [])
            ],
        })
    return {
        "can_evolve": adopted_count > 0 or top_count > 0,
        "adopted_count": adopted_count,
        "top_strategy_count": top_count,
        "recent_evolutions": evolutions,
    }


# ---------------------------------------------------------------------------
# Score weights
# ---------------------------------------------------------------------------


def get_weights(session: Session, user_id: str) -> tuple[WeightVector, bool]:
    """Return ``(weights, is_default)`` for *user_id*."""
    config = session.execute(
        select(UserScoreConfig).where(UserScoreConfig.user_id == user_id)
    ).scalars().first()
    if config is None:
        return DEFAULT_WEIGHTS, True
    return WeightVector(**{axis: getattr(config, axis) for axis in AXES}), False


def set_weights(session: Session, user_id: str, weights: WeightVector) -> UserScoreConfig:
    config = session.execute(
        select(UserScoreConfig).where(UserScoreConfig.user_id == user_id)
    ).scalars().first()
    if config is None:
        config = UserScoreConfig(user_id=user_id)
        session.add(config)
    for axis in AXES:
        setattr(config, axis, getattr(weights, axis))
    session.commit()
    return config


def reset_weights(session: Session, user_id: str) -> bool:
    config = session.execute(
        select(UserScoreConfig).where(UserScoreConfig.user_id == user_id)
    ).scalars().first()
    if config is None:
        return False
    session.delete(config)
    session.commit()
    return True


# ---------------------------------------------------------------------------
# Learned patterns
# ---------------------------------------------------------------------------


def active_learning_patterns(
    session: Session, limit: int = MAX_PROMPT_PATTERNS, min_confidence: float = PATTERN_CONFIDENCE_FLOOR,
) -> tuple[list[str], list[str]]:
    """Prompt-ready success and failure patterns; marks the returned ones as used."""
    patterns = session.execute(
        select(LearningMemory)
        .where(LearningMemory.is_active.is_(True), LearningMemory.confidence >= min_confidence)
        .order_by(LearningMemory.confidence.desc(), LearningMemory.validation_count.desc())
        .limit(limit)
    ).scalars().all()

    now = utcnow()
    for p in patterns:
        p.used_count = (p.used_count or 0) + 1
        p.last_used_at = now
    if patterns:
        session.commit()

    success = [format_pattern(p.category, p.pattern) for p in patterns if p.type == "success_pattern"]
    failure = [format_pattern(p.category, p.pattern) for p in patterns if p.type == "failure_pattern"]
    return success, failure


def save_learned_patterns(session: Session, patterns: list[ExtractedPattern]) -> tuple[int, int]:
    """Store extracted patterns, reinforcing similar existing ones.  Returns ``(saved, updated)``."""
    saved = updated = 0
    for pattern in patterns:
        existing = session.execute(
            select(LearningMemory).where(
                LearningMemory.type == pattern.type,
                LearningMemory.category == pattern.category,
                LearningMemory.pattern.contains(pattern.pattern[:20], autoescape=True),
            )
        ).scalars().first()

        if existing is not None:
            examples = json_parse(existing.examples_json, []) + pattern.examples
            existing.examples_json = json_dump(examples[-MAX_PATTERN_EXAMPLES:])
            existing.validation_count = (existing.validation_count or 0) + 1
            existing.confidence = min(1.0, round(existing.confidence + 0.1, 6))
            updated += 1
        else:
            session.add(LearningMemory(
                type=pattern.type,
                category=pattern.category,
                pattern=pattern.pattern,
                examples_json=json_dump(pattern.examples[-MAX_PATTERN_EXAMPLES:]),
                evidence=pattern.evidence,
                confidence=pattern.confidence,
                is_active=True,
            ))
            saved += 1
        session.flush()
    session.commit()
    return saved, updated


def list_learning_patterns(
    session: Session, pattern_type: str | None = None, active_only: bool = True, limit: int = 50,
) -> dict:
    query = select(LearningMemory)
    if pattern_type:
        query = query.where(LearningMemory.type == pattern_type)
    if active_only:
        query = query.where(LearningMemory.is_active.is_(True))
    query = query.order_by(LearningMemory.confidence.desc(), LearningMemory.validation_count.desc()).limit(limit)
    patterns = session.execute(query).scalars().all()

    by_type = dict(session.execute(
        select(LearningMemory.type, func.count())
        .where(LearningMemory.is_active.is_(True))
        .group_by(LearningMemory.type)
    ).all())
    return {
        "patterns": [pattern_dict(p) for p in patterns],
        "stats": {
            "success_patterns": by_type.get("success_pattern", 0),
            "failure_patterns": by_type.get("failure_pattern", 0),
            "total": len(patterns),
        },
    }


def set_pattern_active(session: Session, pattern_id: int, is_active: bool) -> LearningMemory | None:
    pattern = get_entity(session, LearningMemory, pattern_id)
    if pattern is None:
        return None
    pattern.is_active = is_active
    session.commit()
    return pattern


def delete_learning_pattern(session: Session, pattern_id: int) -> bool:
    return delete_entity(session, LearningMemory, pattern_id)


# ---------------------------------------------------------------------------
# Auto-explore runs
# ---------------------------------------------------------------------------


def list_auto_explore_runs(session: Session, limit: int = 10) -> list[AutoExploreRun]:
    return list(session.execute(
        select(AutoExploreRun).order_by(AutoExploreRun.started_at.desc()).limit(limit)
    ).scalars().all())
