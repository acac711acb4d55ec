"""Prompt construction and oracle calls for strategy generation.

Four prompts talk to the oracle:

- **Exploration** -- answer a strategic question with 10-20 scored strategies,
  steered by company context and learned success/failure patterns.
- **Questions** -- propose exploration questions for unattended auto-explore runs.
- **Evolution** -- mutate, cross over, or refute seed strategies into a new generation.
- **Learning** -- distil success/failure patterns from adopt/reject decisions.

All responses are validated into schema objects here; callers never handle
raw oracle dicts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from strategist.llm import LLMCallError, LLMClient
from strategist.schemas import ExplorationResult, ExtractedPattern

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt texts
# ---------------------------------------------------------------------------

SCORING_RUBRIC = """\
## Scoring criteria (1-5 each)
Score every strategy on these six axes:

A. revenuePotential -- how much money it can make
- 5: large market, both price and volume work; could become a pillar of the company
- 3: solid profit in a specific domain; a pillar for one division
- 1: nice idea, but the ceiling is too low to become a business

B. timeToRevenue -- how soon it makes money
- 5: paid validation within 3-12 months
- 3: 12-24 months
- 1: more than 3 years; depends on regulation or large investment

C. competitiveAdvantage -- why we win
- 5: assets only we have are decisive
- 3: an advantage exists but can be copied
- 1: anyone can do it; drifts into price competition

D. executionFeasibility -- can we build, sell and run it
- 5: data, systems, team and decision rights are all in place
- 3: gaps exist but can be closed within six months
- 1: blocked by missing authority, data or operations

E. hqContribution -- does it matter for the group
- 5: directly serves headquarters' strategic themes or revenue and can be rolled out
- 3: indirect benefit, not the main battlefield
- 1: local optimum, hard to justify

F. mergerSynergy -- does it create value no single company could
- 5: the merged companies' assets multiply each other
- 3: additive efficiency only
- 1: little synergy; coordination cost dominates
"""

SCORES_SCHEMA = """\
      "scores": {
        "revenuePotential": <1-5>,
        "timeToRevenue": <1-5>,
        "competitiveAdvantage": <1-5>,
        "executionFeasibility": <1-5>,
        "hqContribution": <1-5>,
        "mergerSynergy": <1-5>
      }"""

EXPLORATION_SYSTEM_PROMPT = f"""\
You are the assistant of a strategy-finding tool that supports strategic \
planning for a group of recently merged companies.

## Your role
Amplify what the front line already has (track record, technology, know-how) \
and turn it into concrete strategic options ("winning strategies").

## Principles
1. Prefer leveraging existing resources
2. Only propose what can actually be executed
3. Be concrete, not abstract
4. Keep the synergy of the merged companies in mind

{SCORING_RUBRIC}
## Output format
Respond with ONLY valid JSON:
{{
  "strategies": [
    {{
      "name": "<short strategy name>",
      "reason": "<why this wins, tied to existing strengths>",
      "howToObtain": "<concrete steps and actions>",
      "metrics": "<example success metrics>",
      "confidence": "<high|medium|low>",
      "tags": ["<tag>", "<tag>"],
{SCORES_SCHEMA}
    }}
  ],
  "thinkingProcess": "<how you arrived at these strategies>",
  "followUpQuestions": ["<questions worth asking next, if any>"]
}}

Generate 10 to 20 strategies. Score strictly and realistically; not every \
strategy deserves high marks.
"""

QUESTION_PROMPT = """\
You are a strategy consultant. Based on the company information below, propose \
five exploration questions likely to surface high-scoring winning strategies.

## Registered services
{services}

## Registered assets and strengths
{assets}

## Rules
- Make each question concrete and close to revenue
- Include questions that look for new uses of existing assets
- Include questions that exploit the synergy of the merged companies

Respond with ONLY valid JSON:
{{"questions": ["<question 1>", "<question 2>", "<question 3>", "<question 4>", "<question 5>"]}}
"""

EVOLVE_MODE_INSTRUCTIONS: dict[str, str] = {
    "mutation": """\
## Mutation
Change only some elements of each strategy to create new ones, for example:
- customer segment (B2B -> B2C, enterprise -> SMB)
- pricing model (subscription -> usage-based, purchase -> rental)
- value proposition (cost reduction -> revenue growth, efficiency -> quality)
- technical base (on-premise -> cloud, manual -> automated)

Create one or two mutations per source strategy.""",
    "crossover": """\
## Crossover
Combine the strongest elements of several strategies, for example:
- strategy A's customer segment x strategy B's revenue model
- strategy A's technical base x strategy B's value proposition
- strategy A's strength x strategy B's channel

Create three to five crossover strategies.""",
    "refutation": """\
## Refutation
Identify each strategy's weaknesses and risks and produce an improved version \
that overcomes them. Consider:
- fragile competitive advantage
- execution bottlenecks
- market uncertainty
- technical limits
- organisational barriers

Create one improved version per source strategy.""",
    "all": """\
## Run all three kinds of evolution
1. Mutation: change some elements of a strategy
2. Crossover: combine elements of several strategies
3. Refutation: overcome the weaknesses of a strategy

Create two or three of each kind, six to nine strategies in total.""",
}

EVOLVE_PROMPT = """\
You are a strategy consultant. Using the adopted strategies below as a base, \
generate an evolved next generation of strategies.

## Adopted strategies (proven starting points)
{seeds}

## Company assets and strengths
{services}
{assets}

{instructions}

Respond with ONLY valid JSON:
{{
  "strategies": [
    {{
      "name": "<new strategy name>",
      "reason": "<why the new strategy wins>",
      "howToObtain": "<concrete steps>",
      "metrics": "<success metrics>",
      "sourceStrategies": ["<source strategy name>"],
      "evolveType": "<mutation|crossover|refutation>",
      "improvement": "<what improved relative to the source>",
{scores_schema}
    }}
  ],
  "thinkingProcess": "<how you evolved the strategies>"
}}

{rubric}
Important:
- Keep what was good about the sources while adding a clear improvement
- Stay executable; no castles in the air
- Always name the source strategies
- Always score all six axes
"""

LEARNING_PROMPT = """\
You are a strategy analyst. Analyse the adopted and rejected strategies below \
and extract success and failure patterns.

## Adopted strategies ({adopted_count})
{adopted}

## Rejected strategies ({rejected_count})
{rejected}

## Instructions
1. Extract 3-5 traits shared by adopted strategies (success patterns)
2. Extract 3-5 traits shared by rejected strategies (failure patterns)
3. Give each pattern a category (synergy, DX, cost, new business, ...)
4. Rate your confidence from 0.0 to 1.0

Respond with ONLY valid JSON:
{{
  "patterns": [
    {{
      "type": "<success_pattern|failure_pattern>",
      "category": "<category>",
      "pattern": "<one or two sentences>",
      "examples": ["<related strategy name>"],
      "evidence": "<why this pattern holds>",
      "confidence": <0.0-1.0>
    }}
  ]
}}
"""


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


@dataclass
class PromptContext:
    """Company context and learned patterns assembled before a generation call."""
    services: str = ""
    assets: str = ""
    constraints: str = ""
    references: str = ""
    success_patterns: list[str] = field(default_factory=list)
    failure_patterns: list[str] = field(default_factory=list)


@dataclass
class SeedStrategy:
    """A strategy chosen as the starting point for an evolution round."""
    name: str
    reason: str = ""
    how_to_obtain: str = ""
    question: str = ""
    scores: dict[str, int] | None = None


@dataclass
class DecidedStrategy:
    """A strategy with a curator's adopt/reject decision, fed to pattern extraction."""
    name: str
    reason: str
    question: str
    decision_reason: str | None = None


def format_services(rows) -> str:
    return "\n".join(
        f"- {s.name}" + (f" ({s.category})" if s.category else "")
        + (f": {s.description}" if s.description else "")
        for s in rows
    )


def format_assets(rows) -> str:
    return "\n".join(
        f"- {a.name} [{a.type}]" + (f": {a.description}" if a.description else "")
        for a in rows
    )


def format_constraints(rows) -> str:
    return "\n".join(
        f"- {c.name}" + (f": {c.description}" if c.description else "")
        for c in rows
    )


def format_references(rows, max_chars: int = 8000) -> str:
    """Concatenate reference documents into a bounded context block."""
    parts: list[str] = []
    remaining = max_chars
    for doc in rows:
        if remaining <= 0:
            break
        header = f"### {doc.title}" + (f" ({doc.source})" if doc.source else "")
        body = (doc.content or "")[: max(0, remaining - len(header) - 1)]
        parts.append(f"{header}\n{body}")
        remaining -= len(header) + len(body) + 2
    return "\n\n".join(parts)


def format_pattern(category: str, pattern: str) -> str:
    return f"- [{category or 'general'}] {pattern}"


def build_learning_section(ctx: PromptContext) -> str:
    if not ctx.success_patterns and not ctx.failure_patterns:
        return ""
    lines = ["", "## Lessons learned from past adopt/reject decisions"]
    if ctx.success_patterns:
        lines += ["", "### Success patterns (strategies like these tend to be adopted)"]
        lines += ctx.success_patterns
    if ctx.failure_patterns:
        lines += ["", "### Failure patterns (strategies like these tend to be rejected)"]
        lines += ctx.failure_patterns
    lines += [
        "",
        "Favour strategies that follow the success patterns and avoid those "
        "matching the failure patterns.",
    ]
    return "\n".join(lines)


def build_exploration_prompt(question: str, context: str, ctx: PromptContext) -> str:
    return "\n".join([
        "## Question",
        question,
        "",
        "## Additional context",
        context or "None",
        "",
        "## Registered services",
        ctx.services or "None registered",
        "",
        "## Registered assets and strengths",
        ctx.assets or "None registered",
        "",
        "## Constraints",
        ctx.constraints or "None",
        "",
        "## Reference material",
        ctx.references or "None available",
        build_learning_section(ctx),
        "",
        "Propose winning strategies based on the information above.",
    ])


def build_seed_list(seeds: list[SeedStrategy]) -> str:
    blocks = []
    for i, s in enumerate(seeds, 1):
        lines = [f"{i}. {s.name}", f"   Original question: {s.question}", f"   Why it wins: {s.reason}"]
        if s.how_to_obtain:
            lines.append(f"   Steps: {s.how_to_obtain}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _decided_list(items: list[DecidedStrategy], reason_label: str) -> str:
    blocks = []
    for i, s in enumerate(items, 1):
        lines = [f"{i}. {s.name}", f"   Question: {s.question}", f"   Reason: {s.reason}"]
        if s.decision_reason:
            lines.append(f"   {reason_label}: {s.decision_reason}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) or "None"


# ---------------------------------------------------------------------------
# Oracle calls
# ---------------------------------------------------------------------------


def _validate_result(raw: Any) -> ExplorationResult:
    if not isinstance(raw, dict):
        raise LLMCallError("LLM returned JSON that is not an object")
    try:
        return ExplorationResult.model_validate(raw)
    except ValidationError as exc:
        raise LLMCallError(f"LLM returned an unexpected result shape: {exc}") from exc


async def generate_strategies(
    client: LLMClient, question: str, context: str, ctx: PromptContext,
) -> ExplorationResult:
    """Ask the oracle for scored strategies answering *question*."""
    user = build_exploration_prompt(question, context, ctx)
    raw = await client.call(EXPLORATION_SYSTEM_PROMPT, user, temperature=0.7, max_tokens=16000)
    result = _validate_result(raw)
    log.info("Generated %d strategies for %r", len(result.strategies), question[:60])
    return result


async def generate_questions(client: LLMClient, services: str, assets: str) -> list[str]:
    """Ask the oracle for exploration questions.  Accepts a bare list or ``{"questions": [...]}``."""
    prompt = QUESTION_PROMPT.format(services=services or "None", assets=assets or "None")
    raw = await client.call("", prompt, temperature=0.8, max_tokens=1000)
    if isinstance(raw, dict):
        raw = raw.get("questions", [])
    if not isinstance(raw, list):
        return []
    return [str(q).strip() for q in raw if str(q).strip()]


async def evolve_strategies(
    client: LLMClient, seeds: list[SeedStrategy], mode: str, services: str, assets: str,
) -> ExplorationResult:
    """Ask the oracle for the next generation of strategies derived from *seeds*."""
    prompt = EVOLVE_PROMPT.format(
        seeds=build_seed_list(seeds),
        services=services or "None registered",
        assets=assets or "None registered",
        instructions=EVOLVE_MODE_INSTRUCTIONS[mode],
        scores_schema=SCORES_SCHEMA,
        rubric=SCORING_RUBRIC,
    )
    raw = await client.call("", prompt, temperature=0.8, max_tokens=8000)
    return _validate_result(raw)


async def extract_patterns(
    client: LLMClient, adopted: list[DecidedStrategy], rejected: list[DecidedStrategy],
) -> list[ExtractedPattern]:
    """Ask the oracle for success/failure patterns.  Malformed entries are dropped."""
    prompt = LEARNING_PROMPT.format(
        adopted_count=len(adopted),
        adopted=_decided_list(adopted, "Adoption reason"),
        rejected_count=len(rejected),
        rejected=_decided_list(rejected, "Rejection reason"),
    )
    raw = await client.call("", prompt, temperature=0.3, max_tokens=2000)
    items = raw.get("patterns", []) if isinstance(raw, dict) else []
    patterns: list[ExtractedPattern] = []
    for item in items if isinstance(items, list) else []:
        try:
            patterns.append(ExtractedPattern.model_validate(item))
        except ValidationError as exc:
            log.warning("Skipping malformed pattern %r: %s", item, exc)
    return patterns
