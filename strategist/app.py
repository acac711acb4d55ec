from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Generator, Literal

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from strategist import explorer, services
from strategist.db import get_session_factory, init_db, session_generator
from strategist.explorer import NoSeedStrategiesError, NotEnoughDecisionsError, SessionFactory
from strategist.llm import LLMCallError, LLMClient
from strategist.models import (
    Constraint,
    CoreAsset,
    CoreService,
    Exploration,
    LearningMemory,
    ReferenceDocument,
)
from strategist.schemas import (
    ArchiveRequest,
    ConstraintCreate,
    CoreAssetCreate,
    CoreServiceCreate,
    DecisionCreate,
    DocumentCreate,
    EvolveRequest,
    ExploreRequest,
    LearningExtractRequest,
    PatternUpdate,
    WeightVector,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Strategist",
    version="0.1.0",
    description=(
        "Strategy brainstorming API. Generates scored business strategies with an LLM, "
        "ranks them, tracks score baselines over time, archives the best, and evolves "
        "adopted strategies into new generations. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Explore", "description": "Generate scored strategies for a question. Requires an LLM API key."},
        {"name": "Ranking", "description": "Rank every scored strategy with the caller's weights."},
        {"name": "Baselines", "description": "Score snapshots used to measure improvement over time."},
        {"name": "Archive", "description": "Top strategies kept for reuse as evolution seeds."},
        {"name": "Decisions", "description": "Adopt / reject / pending decisions on strategies."},
        {"name": "Scoring", "description": "Per-user score weights."},
        {"name": "Evolution", "description": "Mutate, cross over, or refute adopted strategies."},
        {"name": "Learning", "description": "Success/failure patterns learned from decisions."},
        {"name": "Auto-explore", "description": "Unattended explore -> baseline -> archive runs."},
        {"name": "Context", "description": "Company services, assets, constraints, and reference documents."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def session_factory() -> SessionFactory:
    return get_session_factory()


_llm_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client


def current_user(x_user_id: str | None = Header(None)) -> str:
    return (x_user_id or "").strip() or "default"


def require_auto_explore_key(x_api_key: str | None = Header(None)) -> None:
    expected = os.environ.get("AUTO_EXPLORE_API_KEY")
    if expected and not secrets.compare_digest(x_api_key or "", expected):
        raise HTTPException(401, "Invalid API key")


def _get_or_404(session: Session, model, entity_id: int | str, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _weights_out(user_id: str, weights: WeightVector, is_default: bool) -> dict:
    return {"user_id": user_id, "weights": weights.model_dump(), "is_default": is_default}


# ---------------------------------------------------------------------------
# Routes: Explore
# ---------------------------------------------------------------------------


@app.post("/api/explore", tags=["Explore"],
          summary="Generate strategies for a question (set background=true to return immediately)")
async def explore(
    body: ExploreRequest,
    background_tasks: BackgroundTasks,
    factory: SessionFactory = Depends(session_factory),
    client: LLMClient = Depends(get_llm_client),
):
    if body.background:
        exploration_id = await explorer.create_exploration(
            factory, body.question, body.context, body.constraint_ids,
        )
        background_tasks.add_task(
            explorer.run_exploration_background, factory, client,
            exploration_id, body.question, body.context, body.constraint_ids,
        )
        return JSONResponse({"id": exploration_id, "status": "processing"}, status_code=202)

    try:
        exploration_id, result = await explorer.run_exploration(
            factory, client, body.question, body.context, body.constraint_ids,
        )
    except LLMCallError as exc:
        raise HTTPException(502, f"Generation failed: {exc}") from exc
    return {"id": exploration_id, "status": "completed", "result": result.model_dump()}


@app.get("/api/explore/{exploration_id}", tags=["Explore"], summary="Get exploration status and result")
async def get_exploration(exploration_id: str, session: Session = Depends(db_session)):
    return services.exploration_detail(_get_or_404(session, Exploration, exploration_id, "Exploration"))


@app.get("/api/explorations", tags=["Explore"], summary="List recent explorations")
async def list_explorations(
    status: Literal["processing", "completed", "failed"] | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(db_session),
):
    query = select(Exploration)
    if status:
        query = query.where(Exploration.status == status)
    rows = session.execute(query.order_by(Exploration.created_at.desc()).limit(limit)).scalars().all()
    return [services.exploration_summary(e) for e in rows]


# ---------------------------------------------------------------------------
# Routes: Ranking
# ---------------------------------------------------------------------------


@app.get("/api/ranking", tags=["Ranking"], summary="Rank all scored strategies using the caller's weights")
async def get_ranking(
    limit: int = Query(50, ge=1, le=500),
    min_score: float = Query(0.0, ge=0, le=5),
    judgment: Literal["priority", "conditional", "decline"] | None = Query(None),
    user_id: str = Depends(current_user),
    session: Session = Depends(db_session),
):
    weights, _ = services.get_weights(session, user_id)
    return services.get_ranking(session, limit=limit, min_score=min_score, judgment=judgment, weights=weights)


# ---------------------------------------------------------------------------
# Routes: Baselines
# ---------------------------------------------------------------------------


@app.get("/api/baselines", tags=["Baselines"], summary="Current baseline and history, newest first")
async def list_baselines(limit: int = Query(30, ge=1, le=365), session: Session = Depends(db_session)):
    history = services.get_baseline_history(session, limit)
    return {
        "current": services.baseline_dict(history[0]) if history else None,
        "history": [services.baseline_dict(b) for b in history],
    }


@app.get("/api/baselines/current", tags=["Baselines"], summary="Most recent baseline")
async def current_baseline(session: Session = Depends(db_session)):
    baseline = services.get_current_baseline(session)
    if baseline is None:
        raise HTTPException(404, "No baseline recorded yet")
    return services.baseline_dict(baseline)


@app.post("/api/baselines", status_code=201, tags=["Baselines"],
          summary="Record a baseline from all current strategies")
async def record_baseline(session: Session = Depends(db_session)):
    baseline = services.record_baseline(session)
    if baseline is None:
        raise HTTPException(400, "No scored strategies to measure")
    return services.baseline_dict(baseline)


# ---------------------------------------------------------------------------
# Routes: Top-strategy archive
# ---------------------------------------------------------------------------


@app.get("/api/top-strategies", tags=["Archive"], summary="List archived top strategies, best first")
async def list_top_strategies(limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session)):
    rows = services.get_top_strategies(session, limit)
    return {"strategies": [services.top_strategy_dict(t) for t in rows], "count": len(rows)}


@app.post("/api/top-strategies", tags=["Archive"],
          summary="Archive strategies at or above min_score (default 4.0) that are not declined")
async def archive_top_strategies(body: ArchiveRequest | None = None, session: Session = Depends(db_session)):
    return services.archive_top_strategies(session, min_score=body.min_score if body else None)


@app.delete("/api/top-strategies/{strategy_id}", tags=["Archive"], summary="Remove an archived strategy")
async def delete_top_strategy(strategy_id: int, session: Session = Depends(db_session)):
    if not services.delete_top_strategy(session, strategy_id):
        raise HTTPException(404, "Top strategy not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Decisions (stats before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.post("/api/decisions", tags=["Decisions"], summary="Record or replace a decision on a strategy")
async def upsert_decision(body: DecisionCreate, session: Session = Depends(db_session)):
    try:
        decision = services.upsert_decision(
            session, body.exploration_id, body.strategy_name, body.decision,
            reason=body.reason, feasibility_note=body.feasibility_note,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return services.decision_dict(decision)


@app.get("/api/decisions", tags=["Decisions"], summary="List decisions, newest first")
async def list_decisions(
    exploration_id: str | None = Query(None),
    decision: Literal["adopt", "reject", "pending"] | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    rows = services.list_decisions(session, exploration_id=exploration_id, decision=decision, limit=limit)
    return [services.decision_dict(d) for d in rows]


@app.get("/api/decisions/stats", tags=["Decisions"], summary="Adoption rate and top rejection reasons")
async def decision_stats(session: Session = Depends(db_session)):
    return services.decision_stats(session)


@app.delete("/api/decisions/{decision_id}", tags=["Decisions"], summary="Delete a decision")
async def delete_decision(decision_id: int, session: Session = Depends(db_session)):
    if not services.delete_decision(session, decision_id):
        raise HTTPException(404, "Decision not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Score weights
# ---------------------------------------------------------------------------


@app.get("/api/score-config", tags=["Scoring"], summary="Score weights for the calling user")
async def get_score_config(user_id: str = Depends(current_user), session: Session = Depends(db_session)):
    return _weights_out(user_id, *services.get_weights(session, user_id))


@app.put("/api/score-config", tags=["Scoring"], summary="Set score weights for the calling user (each 0-100)")
async def set_score_config(
    body: WeightVector, user_id: str = Depends(current_user), session: Session = Depends(db_session),
):
    services.set_weights(session, user_id, body)
    return _weights_out(user_id, *services.get_weights(session, user_id))


@app.delete("/api/score-config", tags=["Scoring"], summary="Reset the calling user's weights to the defaults")
async def reset_score_config(user_id: str = Depends(current_user), session: Session = Depends(db_session)):
    services.reset_weights(session, user_id)
    return _weights_out(user_id, *services.get_weights(session, user_id))


# ---------------------------------------------------------------------------
# Routes: Evolution
# ---------------------------------------------------------------------------


@app.post("/api/evolve", tags=["Evolution"], summary="Evolve adopted (or archived) strategies into a new generation")
async def evolve(
    body: EvolveRequest | None = None,
    factory: SessionFactory = Depends(session_factory),
    client: LLMClient = Depends(get_llm_client),
):
    body = body or EvolveRequest()
    try:
        return await explorer.run_evolution(factory, client, mode=body.mode, limit=body.limit)
    except NoSeedStrategiesError as exc:
        raise HTTPException(400, str(exc)) from exc
    except LLMCallError as exc:
        raise HTTPException(502, f"Evolution failed: {exc}") from exc


@app.get("/api/evolve", tags=["Evolution"], summary="Whether evolution can run, plus recent evolutions")
async def evolution_overview(session: Session = Depends(db_session)):
    return services.evolution_overview(session)


# ---------------------------------------------------------------------------
# Routes: Learning
# ---------------------------------------------------------------------------


@app.post("/api/learning", tags=["Learning"], summary="Extract success/failure patterns from decisions")
async def extract_learning(
    body: LearningExtractRequest | None = None,
    factory: SessionFactory = Depends(session_factory),
    client: LLMClient = Depends(get_llm_client),
):
    body = body or LearningExtractRequest()
    try:
        return await explorer.extract_learning_patterns(factory, client, min_decisions=body.min_decisions)
    except NotEnoughDecisionsError as exc:
        raise HTTPException(400, str(exc)) from exc
    except LLMCallError as exc:
        raise HTTPException(502, f"Pattern extraction failed: {exc}") from exc


@app.get("/api/learning", tags=["Learning"], summary="List learned patterns")
async def list_learning(
    type: Literal["success_pattern", "failure_pattern"] | None = Query(None),
    active_only: bool = Query(True),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_learning_patterns(session, pattern_type=type, active_only=active_only, limit=limit)


@app.patch("/api/learning/{pattern_id}", tags=["Learning"], summary="Enable or disable a pattern")
async def update_pattern(pattern_id: int, body: PatternUpdate, session: Session = Depends(db_session)):
    pattern = services.set_pattern_active(session, pattern_id, body.is_active)
    if pattern is None:
        raise HTTPException(404, "Pattern not found")
    return services.pattern_dict(pattern)


@app.delete("/api/learning/{pattern_id}", tags=["Learning"], summary="Delete a pattern")
async def delete_pattern(pattern_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, LearningMemory, pattern_id, "Pattern")
    services.delete_learning_pattern(session, pattern_id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Auto-explore
# ---------------------------------------------------------------------------


@app.post("/api/auto-explore", tags=["Auto-explore"], dependencies=[Depends(require_auto_explore_key)],
          summary="Generate questions, explore each, then record a baseline and archive")
async def auto_explore(
    trigger_type: Literal["manual", "scheduled"] = Query("manual"),
    factory: SessionFactory = Depends(session_factory),
    client: LLMClient = Depends(get_llm_client),
):
    try:
        return await explorer.run_auto_explore(factory, client, trigger_type=trigger_type)
    except LLMCallError as exc:
        raise HTTPException(502, f"Auto-explore failed: {exc}") from exc


@app.get("/api/auto-explore", tags=["Auto-explore"], dependencies=[Depends(require_auto_explore_key)],
         summary="Recent auto-explore runs")
async def list_auto_explore_runs(limit: int = Query(10, ge=1, le=100), session: Session = Depends(db_session)):
    return [services.run_dict(r) for r in services.list_auto_explore_runs(session, limit)]


# ---------------------------------------------------------------------------
# Routes: Company context
# ---------------------------------------------------------------------------


def _list_rows(session: Session, model) -> list[dict]:
    return [services.row_dict(r) for r in session.execute(select(model).order_by(model.id)).scalars()]


def _create_row(session: Session, model, body) -> dict:
    obj = model(**body.model_dump())
    session.add(obj)
    session.commit()
    session.refresh(obj)
    return services.row_dict(obj)


def _delete_row(session: Session, model, entity_id: int, label: str) -> dict:
    _get_or_404(session, model, entity_id, label)
    services.delete_entity(session, model, entity_id)
    return {"ok": True}


@app.get("/api/core-services", tags=["Context"], summary="List core services")
async def list_core_services(session: Session = Depends(db_session)):
    return _list_rows(session, CoreService)


@app.post("/api/core-services", status_code=201, tags=["Context"], summary="Add a core service")
async def create_core_service(body: CoreServiceCreate, session: Session = Depends(db_session)):
    return _create_row(session, CoreService, body)


@app.delete("/api/core-services/{entity_id}", tags=["Context"], summary="Delete a core service")
async def delete_core_service(entity_id: int, session: Session = Depends(db_session)):
    return _delete_row(session, CoreService, entity_id, "Core service")


@app.get("/api/core-assets", tags=["Context"], summary="List core assets")
async def list_core_assets(session: Session = Depends(db_session)):
    return _list_rows(session, CoreAsset)


@app.post("/api/core-assets", status_code=201, tags=["Context"], summary="Add a core asset")
async def create_core_asset(body: CoreAssetCreate, session: Session = Depends(db_session)):
    return _create_row(session, CoreAsset, body)


@app.delete("/api/core-assets/{entity_id}", tags=["Context"], summary="Delete a core asset")
async def delete_core_asset(entity_id: int, session: Session = Depends(db_session)):
    return _delete_row(session, CoreAsset, entity_id, "Core asset")


@app.get("/api/constraints", tags=["Context"], summary="List constraints")
async def list_constraints(session: Session = Depends(db_session)):
    return _list_rows(session, Constraint)


@app.post("/api/constraints", status_code=201, tags=["Context"], summary="Add a constraint")
async def create_constraint(body: ConstraintCreate, session: Session = Depends(db_session)):
    return _create_row(session, Constraint, body)


@app.delete("/api/constraints/{entity_id}", tags=["Context"], summary="Delete a constraint")
async def delete_constraint(entity_id: int, session: Session = Depends(db_session)):
    return _delete_row(session, Constraint, entity_id, "Constraint")


@app.get("/api/documents", tags=["Context"], summary="List reference documents")
async def list_documents(session: Session = Depends(db_session)):
    return _list_rows(session, ReferenceDocument)


@app.post("/api/documents", status_code=201, tags=["Context"], summary="Add a reference document")
async def create_document(body: DocumentCreate, session: Session = Depends(db_session)):
    return _create_row(session, ReferenceDocument, body)


@app.delete("/api/documents/{entity_id}", tags=["Context"], summary="Delete a reference document")
async def delete_document(entity_id: int, session: Session = Depends(db_session)):
    return _delete_row(session, ReferenceDocument, entity_id, "Document")


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("strategist.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
