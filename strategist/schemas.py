"""Pydantic schemas: scoring value objects, oracle result shapes, and API request bodies.

Stored exploration payloads and oracle output use camelCase keys
(``howToObtain``, ``revenuePotential``).  Those names are declared as aliases
so the models read either form, while everything inside Python works with
snake_case attributes.  ``model_dump(by_alias=True)`` is only used when
writing back to the database.
"""
from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

log = logging.getLogger(__name__)

Confidence = Literal["high", "medium", "low"]
DecisionValue = Literal["adopt", "reject", "pending"]
EvolveMode = Literal["mutation", "crossover", "refutation", "all"]
PatternType = Literal["success_pattern", "failure_pattern"]


# ---------------------------------------------------------------------------
# Scoring value objects
# ---------------------------------------------------------------------------


class StrategyScores(BaseModel):
    """Six-axis score vector, each axis an integer from 1 to 5."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    revenue_potential: int = Field(ge=1, le=5, alias="revenuePotential")
    time_to_revenue: int = Field(ge=1, le=5, alias="timeToRevenue")
    competitive_advantage: int = Field(ge=1, le=5, alias="competitiveAdvantage")
    execution_feasibility: int = Field(ge=1, le=5, alias="executionFeasibility")
    hq_contribution: int = Field(ge=1, le=5, alias="hqContribution")
    merger_synergy: int = Field(ge=1, le=5, alias="mergerSynergy")


class WeightVector(BaseModel):
    """Per-axis weights.  Any non-negative total is allowed; scoring normalizes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    revenue_potential: float = Field(30, ge=0, le=100, alias="revenuePotential")
    time_to_revenue: float = Field(20, ge=0, le=100, alias="timeToRevenue")
    competitive_advantage: float = Field(20, ge=0, le=100, alias="competitiveAdvantage")
    execution_feasibility: float = Field(15, ge=0, le=100, alias="executionFeasibility")
    hq_contribution: float = Field(10, ge=0, le=100, alias="hqContribution")
    merger_synergy: float = Field(5, ge=0, le=100, alias="mergerSynergy")


# ---------------------------------------------------------------------------
# Oracle result schema
# ---------------------------------------------------------------------------


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(str(v) for v in value)
    return str(value)


class Strategy(BaseModel):
    """One generated strategy candidate.

    Defaulting rules for loosely-shaped oracle output:

    - ``reason`` / ``how_to_obtain`` / ``metrics``: missing -> ``""``; lists are joined by newlines
    - ``confidence``: missing or unrecognized -> ``"medium"``
    - ``tags``: missing or not a list -> ``[]``
    - ``scores``: missing or invalid -> ``None`` (kept, but cannot be ranked)
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    reason: str = ""
    how_to_obtain: str = Field("", alias="howToObtain")
    metrics: str = ""
    confidence: Confidence = "medium"
    tags: list[str] = Field(default_factory=list)
    scores: StrategyScores | None = None
    # Only present on evolved strategies
    evolve_type: str | None = Field(None, alias="evolveType")
    source_strategies: list[str] = Field(default_factory=list, alias="sourceStrategies")
    improvement: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v: Any) -> Any:
        return str(v).strip() if v is not None else v

    @field_validator("reason", "how_to_obtain", "metrics", "improvement", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        return _as_text(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> str:
        c = str(v or "").strip().lower()
        return c if c in ("high", "medium", "low") else "medium"

    @field_validator("tags", "source_strategies", mode="before")
    @classmethod
    def _string_list(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(t) for t in v if t is not None]

    @field_validator("scores", mode="before")
    @classmethod
    def _scores(cls, v: Any) -> Any:
        if v is None or isinstance(v, StrategyScores):
            return v
        try:
            return StrategyScores.model_validate(v)
        except ValidationError:
            log.warning("Discarding malformed scores: %r", v)
            return None


class EvolveMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: str
    source_strategies: list[str] = Field(default_factory=list, alias="sourceStrategies")


class ExplorationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    strategies: list[Strategy] = Field(default_factory=list)
    thinking_process: str = Field("", alias="thinkingProcess")
    follow_up_questions: list[str] = Field(default_factory=list, alias="followUpQuestions")
    evolve_metadata: EvolveMetadata | None = Field(None, alias="evolveMetadata")

    @field_validator("strategies", mode="before")
    @classmethod
    def _named_only(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        return [s for s in v if isinstance(s, (dict, Strategy)) and (
            isinstance(s, Strategy) or str(s.get("name") or "").strip()
        )]

    @field_validator("thinking_process", mode="before")
    @classmethod
    def _thinking(cls, v: Any) -> str:
        return _as_text(v)

    @field_validator("follow_up_questions", mode="before")
    @classmethod
    def _questions(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(q) for q in v if q]


class ExtractedPattern(BaseModel):
    type: PatternType
    category: str = ""
    pattern: str
    examples: list[str] = Field(default_factory=list)
    evidence: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.5

    @field_validator("examples", mode="before")
    @classmethod
    def _examples(cls, v: Any) -> list[str]:
        return [str(e) for e in v] if isinstance(v, list) else []


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ExploreRequest(BaseModel):
    question: str
    context: str = ""
    constraint_ids: list[int] = Field(default_factory=list)
    background: bool = False

    @field_validator("question")
    @classmethod
    def question_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("question must not be empty")
        return v.strip()


class DecisionCreate(BaseModel):
    exploration_id: str = Field(min_length=1)
    strategy_name: str = Field(min_length=1)
    decision: DecisionValue
    reason: str | None = None
    feasibility_note: str | None = None


class ArchiveRequest(BaseModel):
    min_score: float | None = Field(None, ge=0, le=5)


class EvolveRequest(BaseModel):
    mode: EvolveMode = "all"
    limit: int = Field(5, ge=1, le=20)


class LearningExtractRequest(BaseModel):
    min_decisions: int = Field(10, ge=1)


class PatternUpdate(BaseModel):
    is_active: bool


class CoreServiceCreate(BaseModel):
    name: str = Field(min_length=1)
    category: str = ""
    description: str = ""


class CoreAssetCreate(BaseModel):
    name: str = Field(min_length=1)
    type: str = ""
    description: str = ""


class ConstraintCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    is_default: bool = True


class DocumentCreate(BaseModel):
    title: str = Field(min_length=1)
    source: str = ""
    content: str = ""

