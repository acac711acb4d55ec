"""Async pipelines around the generation oracle.

Database work runs in worker threads, each call with its own session from
*session_factory*; only the oracle round trip is awaited on the event loop.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from strategist import services
from strategist.generator import (
    PromptContext,
    evolve_strategies,
    extract_patterns,
    format_assets,
    format_constraints,
    format_references,
    format_services,
    generate_questions,
    generate_strategies,
)
from strategist.llm import LLMCallError, LLMClient
from strategist.models import (
    AutoExploreRun,
    Constraint,
    CoreAsset,
    CoreService,
    Exploration,
    ReferenceDocument,
)
from strategist.schemas import EvolveMetadata, ExplorationResult
from strategist.scoring import HIGH_SCORE_THRESHOLD, compute_total_score
from strategist.utils import json_dump, utcnow

log = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
T = TypeVar("T")

MIN_DECISIONS_FOR_LEARNING = 10
MAX_AUTO_QUESTIONS = 5


class NoSeedStrategiesError(Exception):
    """Nothing has been adopted or archived yet, so there is nothing to evolve."""


class NotEnoughDecisionsError(Exception):
    def __init__(self, count: int, required: int):
        super().__init__(f"At least {required} adopt/reject decisions are needed (have {count})")
        self.count = count
        self.required = required


def _in_session(session_factory: SessionFactory, fn: Callable[[Session], T]) -> T:
    with session_factory() as session:
        return fn(session)


async def _run(session_factory: SessionFactory, fn: Callable[[Session], T]) -> T:
    return await asyncio.to_thread(_in_session, session_factory, fn)


def _rows(model, *where, order_by=None) -> Callable[[Session], list]:
    def query(session: Session) -> list:
        stmt = select(model)
        if where:
            stmt = stmt.where(*where)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        return list(session.execute(stmt).scalars().all())
    return query


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


async def load_company_context(session_factory: SessionFactory) -> tuple[str, str]:
    """Formatted (services, assets) blocks."""
    service_rows, asset_rows = await asyncio.gather(
        _run(session_factory, _rows(CoreService)),
        _run(session_factory, _rows(CoreAsset)),
    )
    return format_services(service_rows), format_assets(asset_rows)


async def load_prompt_context(
    session_factory: SessionFactory, constraint_ids: list[int] | None = None,
) -> PromptContext:
    """Read everything a generation prompt needs with independent concurrent reads.

    Explicit *constraint_ids* replace the default constraint set.
    """
    if constraint_ids:
        constraint_query = _rows(Constraint, Constraint.id.in_(constraint_ids))
    else:
        constraint_query = _rows(Constraint, Constraint.is_default.is_(True))

    service_rows, asset_rows, constraint_rows, doc_rows, (success, failure) = await asyncio.gather(
        _run(session_factory, _rows(CoreService)),
        _run(session_factory, _rows(CoreAsset)),
        _run(session_factory, constraint_query),
        _run(session_factory, _rows(ReferenceDocument, order_by=ReferenceDocument.created_at.desc())),
        _run(session_factory, services.active_learning_patterns),
    )
    return PromptContext(
        services=format_services(service_rows),
        assets=format_assets(asset_rows),
        constraints=format_constraints(constraint_rows),
        references=format_references(doc_rows),
        success_patterns=success,
        failure_patterns=failure,
    )


# ---------------------------------------------------------------------------
# Explorations
# ---------------------------------------------------------------------------


async def create_exploration(
    session_factory: SessionFactory,
    question: str,
    context: str = "",
    constraint_ids: list[int] | None = None,
) -> str:
    """Insert a ``processing`` exploration row and return its id."""
    def _create(session: Session) -> str:
        exploration = Exploration(
            question=question,
            context=context or None,
            constraints_json=json_dump(constraint_ids or []),
            status="processing",
        )
        session.add(exploration)
        session.commit()
        return exploration.id

    return await _run(session_factory, _create)


def _finish_exploration(
    session: Session, exploration_id: str,
    result: ExplorationResult | None = None, error: str | None = None,
) -> None:
    exploration = session.get(Exploration, exploration_id)
    if exploration is None:
        log.warning("Exploration %s disappeared before it finished", exploration_id)
        return
    if result is not None:
        exploration.status = "completed"
        exploration.result_json = services.dump_result(result)
        exploration.error = None
    else:
        exploration.status = "failed"
        exploration.error = error
    session.commit()


async def execute_exploration(
    session_factory: SessionFactory,
    client: LLMClient,
    exploration_id: str,
    question: str,
    context: str = "",
    constraint_ids: list[int] | None = None,
) -> ExplorationResult:
    """Generate strategies for an existing ``processing`` row.

    The row always ends ``completed`` or ``failed``; the error is re-raised.
    """
    try:
        ctx = await load_prompt_context(session_factory, constraint_ids)
        result = await generate_strategies(client, question, context, ctx)
    except Exception as exc:
        log.warning("Exploration %s failed: %s", exploration_id, exc)
        await _run(session_factory, lambda s: _finish_exploration(s, exploration_id, error=str(exc)))
        raise
    await _run(session_factory, lambda s: _finish_exploration(s, exploration_id, result=result))
    return result


async def run_exploration(
    session_factory: SessionFactory,
    client: LLMClient,
    question: str,
    context: str = "",
    constraint_ids: list[int] | None = None,
) -> tuple[str, ExplorationResult]:
    exploration_id = await create_exploration(session_factory, question, context, constraint_ids)
    result = await execute_exploration(
        session_factory, client, exploration_id, question, context, constraint_ids,
    )
    return exploration_id, result


async def run_exploration_background(
    session_factory: SessionFactory,
    client: LLMClient,
    exploration_id: str,
    question: str,
    context: str = "",
    constraint_ids: list[int] | None = None,
) -> None:
    """Detached entry point for ``BackgroundTasks``; the row records the outcome."""
    try:
        await execute_exploration(
            session_factory, client, exploration_id, question, context, constraint_ids,
        )
    except Exception:
        log.exception("Background exploration %s failed", exploration_id)


# ---------------------------------------------------------------------------
# Evolution
# ---------------------------------------------------------------------------


async def run_evolution(
    session_factory: SessionFactory, client: LLMClient, mode: str = "all", limit: int = 5,
) -> dict[str, Any]:
    """Run one evolution round from the current seeds and archive what scores well."""
    seeds = await _run(session_factory, lambda s: services.select_seed_strategies(s, limit))
    if not seeds:
        raise NoSeedStrategiesError("No adopted or archived strategies to evolve from")

    services_text, assets_text = await load_company_context(session_factory)
    generated = await evolve_strategies(client, seeds, mode, services_text, assets_text)

    source_names = [s.name for s in seeds]
    strategies = []
    for strategy in generated.strategies:
        evolve_type = strategy.evolve_type or (mode if mode != "all" else None)
        strategies.append(strategy.model_copy(update={
            "evolve_type": evolve_type,
            "tags": [t for t in (evolve_type, "evolution") if t],
        }))
    result = generated.model_copy(update={
        "strategies": strategies,
        "evolve_metadata": EvolveMetadata(mode=mode, source_strategies=source_names),
    })

    def _store(session: Session) -> tuple[str, dict[str, int]]:
        exploration = Exploration(
            question=f"{services.EVOLUTION_QUESTION_PREFIX} {mode}: {len(seeds)} source strategies",
            context=", ".join(source_names),
            status="completed",
            result_json=services.dump_result(result),
        )
        session.add(exploration)
        session.commit()
        return exploration.id, services.archive_top_strategies(session)

    exploration_id, archive = await _run(session_factory, _store)
    log.info("Evolution (%s) produced %d strategies, archived %d",
             mode, len(strategies), archive["archived"])
    return {
        "exploration_id": exploration_id,
        "mode": mode,
        "source_count": len(seeds),
        "generated_count": len(strategies),
        "archived_count": archive["archived"],
        "strategies": [s.model_dump() for s in strategies],
        "thinking_process": result.thinking_process,
    }


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


async def extract_learning_patterns(
    session_factory: SessionFactory,
    client: LLMClient,
    min_decisions: int = MIN_DECISIONS_FOR_LEARNING,
) -> dict[str, int]:
    """Distil adopt/reject history into reusable prompt patterns."""
    adopted, rejected, count = await _run(session_factory, services.collect_decided_strategies)
    if count < min_decisions:
        raise NotEnoughDecisionsError(count, min_decisions)

    patterns = await extract_patterns(client, adopted, rejected)
    saved, updated = await _run(session_factory, lambda s: services.save_learned_patterns(s, patterns))
    log.info("Learning: %d patterns extracted (%d new, %d reinforced)", len(patterns), saved, updated)
    return {
        "extracted": len(patterns),
        "saved": saved,
        "updated": updated,
        "adopted_count": len(adopted),
        "rejected_count": len(rejected),
    }


# ---------------------------------------------------------------------------
# Auto-explore
# ---------------------------------------------------------------------------


async def run_auto_explore(
    session_factory: SessionFactory,
    client: LLMClient,
    trigger_type: str = "manual",
    max_questions: int = MAX_AUTO_QUESTIONS,
) -> dict[str, Any]:
    """Generate questions, explore each, then record a baseline and archive.

    Per-question oracle failures are collected on the run; anything else
    marks the run ``failed`` and propagates.
    """
    started = time.monotonic()

    def _start(session: Session) -> tuple[str, float | None]:
        baseline = services.get_current_baseline(session)
        run = AutoExploreRun(
            status="running", trigger_type=trigger_type,
            baseline_score=baseline.top_score if baseline else None,
        )
        session.add(run)
        session.commit()
        return run.id, run.baseline_score

    run_id, baseline_score = await _run(session_factory, _start)
    errors: list[str] = []

    try:
        services_text, assets_text = await load_company_context(session_factory)
        questions = (await generate_questions(client, services_text, assets_text))[:max_questions]
        log.info("Auto-explore %s: %d questions", run_id, len(questions))

        completed = high_scores = 0
        top_score = 0.0
        top_name: str | None = None
        for question in questions:
            try:
                _, result = await run_exploration(session_factory, client, question)
            except LLMCallError as exc:
                errors.append(f"{question[:50]}: {exc}")
                continue
            completed += 1
            for strategy in result.strategies:
                if strategy.scores is None:
                    continue
                total = compute_total_score(strategy.scores)
                if total >= HIGH_SCORE_THRESHOLD:
                    high_scores += 1
                if total > top_score:
                    top_score, top_name = total, strategy.name

        def _finish(session: Session) -> tuple[dict, dict[str, int]]:
            services.record_baseline(session, run_id=run_id)
            archive = services.archive_top_strategies(session)
            run = session.get(AutoExploreRun, run_id)
            run.status = "completed"
            run.questions_generated = len(questions)
            run.explorations_completed = completed
            run.high_scores_found = high_scores
            run.top_score = top_score
            run.top_strategy_name = top_name
            run.achieved_score = top_score
            if baseline_score and top_score > baseline_score:
                run.improvement = round((top_score - baseline_score) / baseline_score * 100, 6)
            run.errors_json = json_dump(errors)
            run.completed_at = utcnow()
            run.duration = int(time.monotonic() - started)
            session.commit()
            return services.run_dict(run), archive

        summary, archive = await _run(session_factory, _finish)
    except Exception as exc:
        log.exception("Auto-explore run %s failed", run_id)

        def _fail(session: Session) -> None:
            run = session.get(AutoExploreRun, run_id)
            run.status = "failed"
            run.errors_json = json_dump(errors + [str(exc)])
            run.completed_at = utcnow()
            run.duration = int(time.monotonic() - started)
            session.commit()

        await _run(session_factory, _fail)
        raise

    return {**summary, "archived": archive["archived"]}
