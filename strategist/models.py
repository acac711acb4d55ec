from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _now() -> datetime:
    return datetime.now(UTC)


def _uuid() -> str:
    return str(uuid.uuid4())


class Exploration(Base):
    __tablename__ = "explorations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)
    constraints_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(20), default="processing")  # processing | completed | failed
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


class StrategyDecision(Base):
    __tablename__ = "strategy_decisions"
    __table_args__ = (UniqueConstraint("exploration_id", "strategy_name", name="uq_decision_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exploration_id: Mapped[str] = mapped_column(String(100), nullable=False)
    strategy_name: Mapped[str] = mapped_column(String(500), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)  # adopt | reject | pending
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    feasibility_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class ScoreBaseline(Base):
    __tablename__ = "score_baselines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime] = mapped_column(DateTime, default=_now)
    top_score: Mapped[float] = mapped_column(Float, nullable=False)
    avg_score: Mapped[float] = mapped_column(Float, nullable=False)
    total_strategies: Mapped[int] = mapped_column(Integer, nullable=False)
    high_score_count: Mapped[int] = mapped_column(Integer, default=0)
    improvement: Mapped[float | None] = mapped_column(Float, nullable=True)
    run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class TopStrategy(Base):
    __tablename__ = "top_strategies"
    __table_args__ = (UniqueConstraint("exploration_id", "name", name="uq_top_strategy_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exploration_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    reason: Mapped[str] = mapped_column(Text, default="")
    how_to_obtain: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    scores_json: Mapped[str] = mapped_column(Text, default="{}")
    question: Mapped[str] = mapped_column(Text, default="")
    judgment: Mapped[str] = mapped_column(String(20), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class UserScoreConfig(Base):
    __tablename__ = "user_score_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    revenue_potential: Mapped[float] = mapped_column(Float, default=30)
    time_to_revenue: Mapped[float] = mapped_column(Float, default=20)
    competitive_advantage: Mapped[float] = mapped_column(Float, default=20)
    execution_feasibility: Mapped[float] = mapped_column(Float, default=15)
    hq_contribution: Mapped[float] = mapped_column(Float, default=10)
    merger_synergy: Mapped[float] = mapped_column(Float, default=5)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class LearningMemory(Base):
    __tablename__ = "learning_memories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # success_pattern | failure_pattern
    category: Mapped[str] = mapped_column(String(100), default="")
    pattern: Mapped[str] = mapped_column(Text, nullable=False)
    examples_json: Mapped[str] = mapped_column(Text, default="[]")
    evidence: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[float] = mapped_column(Float, default=0.5)
    validation_count: Mapped[int] = mapped_column(Integer, default=1)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class AutoExploreRun(Base):
    __tablename__ = "auto_explore_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running | completed | failed
    trigger_type: Mapped[str] = mapped_column(String(20), default="manual")
    questions_generated: Mapped[int] = mapped_column(Integer, default=0)
    explorations_completed: Mapped[int] = mapped_column(Integer, default=0)
    high_scores_found: Mapped[int] = mapped_column(Integer, default=0)
    top_score: Mapped[float] = mapped_column(Float, default=0.0)
    top_strategy_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    baseline_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    achieved_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    improvement: Mapped[float | None] = mapped_column(Float, nullable=True)
    errors_json: Mapped[str] = mapped_column(Text, default="[]")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)


# ---------------------------------------------------------------------------
# Company context used to build prompts
# ---------------------------------------------------------------------------


class CoreService(Base):
    __tablename__ = "core_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="")
    description: Mapped[str] = mapped_column(Text, default="")


class CoreAsset(Base):
    __tablename__ = "core_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    type: Mapped[str] = mapped_column(String(100), default="")  # data | technology | network | know-how ...
    description: Mapped[str] = mapped_column(Text, default="")


class Constraint(Base):
    __tablename__ = "constraints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    is_default: Mapped[bool] = mapped_column(Boolean, default=True)


class ReferenceDocument(Base):
    __tablename__ = "reference_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    source: Mapped[str] = mapped_column(String(500), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
