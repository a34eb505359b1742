"""Manager analysis stages: debate, arbiter, guidance.

Each stage renders a prompt from the frozen analysis input, calls the
generator under the ``manager-analysis`` limiter key, validates the reply
against a strict contract and applies policy checks. Stages never touch
storage; the orchestrator persists their results.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from cadence.config import get_settings
from cadence.contracts import ArbiterDecisionOutput, CombinedDebate, CombinedGuidance
from cadence.domain import ConfidenceLevel, DataSufficiency, ManagerAnalysisInput
from cadence.errors import ErrorKind, StageValidationError
from cadence.llm import GenerationResult, TokenUsage
from cadence.rate_limiter import MANAGER_ANALYSIS_KEY, LLMRateLimiter
from cadence.validation import (
    ensure_citation_tokens,
    ensure_refs_exist,
    has_compensation_language,
    parse_citation_refs,
    parse_stage_json,
    sanitize_peer_comparison,
    validate_contract,
)

log = logging.getLogger(__name__)


@dataclass
class StageResult:
    output: Any
    model: str
    model_version: str
    usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Prompt parts
# ---------------------------------------------------------------------------

MANAGER_ANALYSIS_SYSTEM_PROMPT = """\
You are an analysis engine for manager guidance in an HR intelligence system.
Use only the provided evidence artifacts.
Do not invent facts.
Do not use numeric scoring.
Do not reference peer comparisons.
Do not make HR decisions.
If evidence is partial or insufficient, state uncertainty.
Return JSON only."""

CONSTRAINTS_BLOCK = """\
Global constraints:
- Use only provided quarterly/monthly artifacts and evidenceCatalog.
- Do not reprocess weekly data.
- Do not invent facts.
- Do not use numeric scoring.
- Do not make HR decisions.
- Do not use peer comparisons.
- If data is partial or insufficient, lower confidence and state uncertainty.
- Every claim must be evidence-backed.
- Output JSON only."""


def _kpi(kpi: str, expectation: str, managed: str, above: str, below: str) -> dict[str, str]:
    return {
        "kpi": kpi,
        "expectation": expectation,
        "managedDefinition": managed,
        "aboveDefinition": above,
        "belowDefinition": below,
    }


DEFAULT_KPI_BASELINES: dict[str, list[dict[str, str]]] = {
    "AI_ENGINEER": [
        _kpi(
            "Execution",
            "Delivers planned features/fixes with consistent closure across the period.",
            "Delivery is reliable with normal guidance and predictable follow-through.",
            "Delivery is consistently high impact and expands scope without quality drop.",
            "Delivery is inconsistent, blocked, or lacks sustained follow-through.",
        ),
        _kpi(
            "Collaboration",
            "Provides effective cross-team communication and actionable review/support behavior.",
            "Collaboration is clear and dependable in routine work.",
            "Acts as a force multiplier across teams and proactively unblocks others.",
            "Coordination gaps or low responsiveness create repeated friction.",
        ),
        _kpi(
            "QualityAndReliability",
            "Addresses defects/risk areas and maintains production-safe delivery habits.",
            "Quality is generally sound with routine fixes and risk handling.",
            "Prevents recurrent issues and improves reliability patterns systemically.",
            "Repeated avoidable defects or unresolved reliability concerns persist.",
        ),
        _kpi(
            "GrowthAndOwnership",
            "Shows learning momentum and ownership progression in technical decision areas.",
            "Owns expected scope and grows steadily with normal coaching support.",
            "Expands ownership into strategic/leadership space with durable influence.",
            "Limited growth progression or unclear ownership across the period.",
        ),
        _kpi(
            "SustainableWorkPattern",
            "Maintains sustainable working patterns while meeting expected outcomes.",
            "Workload pattern appears stable for current scope over the period.",
            "Sustains higher scope while preserving healthy and stable work patterns.",
            "Work pattern shows elevated sustainability risk or declining stability.",
        ),
    ],
}

FALLBACK_KPI_BASELINE: list[dict[str, str]] = [
    _kpi(
        "Execution",
        "Meets role outcomes with reliable delivery.",
        "Delivery is stable for expected scope.",
        "Delivery consistently exceeds expected scope or impact.",
        "Delivery falls short or is inconsistent for expected scope.",
    ),
    _kpi(
        "Collaboration",
        "Collaborates effectively with relevant stakeholders.",
        "Communication and coordination are dependable.",
        "Collaboration improves outcomes beyond normal expectations.",
        "Coordination issues repeatedly hinder outcomes.",
    ),
    _kpi(
        "Sustainability",
        "Maintains sustainable work habits for role scope.",
        "Work pattern appears sustainable for current scope.",
        "Sustains elevated scope without destabilizing work patterns.",
        "Work pattern indicates sustained risk or instability.",
    ),
]


def role_kpi_baseline(role: str) -> list[dict[str, str]]:
    """KPI baseline for a role; YAML overrides win over the built-in tables."""
    overrides = get_settings().load_kpi_baselines()
    if role in overrides:
        return overrides[role]
    return DEFAULT_KPI_BASELINES.get(role, FALLBACK_KPI_BASELINE)


def kpi_prompt_block(role: str) -> str:
    return "\n".join([
        "KPI baseline and expectation mapping (qualitative only):",
        '- Use exactly one label per KPI: "above", "managed", or "below".',
        '- "managed" means meeting expectations (on target).',
        "- Do not use numeric scores or percentages for KPI judgments.",
        "- Include one text graph line where possible in string fields using this format:",
        "  SkillVsExpectation: Execution[managed] -> Collaboration[above] -> "
        "QualityAndReliability[managed] -> GrowthAndOwnership[above] -> SustainableWorkPattern[managed]",
        f"Role baseline: {json.dumps(role_kpi_baseline(role), indent=2)}",
    ])


DEBATE_TASK = """\
Task: Produce two independent assessments from the same evidence.

{constraints}

{kpi_block}

Role A (Employee Advocate):
- Assume good faith and contextual constraints.
- Do not deny facts.
- Do not reference Role B.
- stance must be "support_reward".
- Include KPI expectation labels in arguments where relevant (above/managed/below).

Role B (Performance Examiner):
- Assume organizational expectations are reasonable.
- Sustained gaps matter.
- Do not deny facts.
- Do not reference Role A.
- stance must be "caution_reward".
- Include KPI expectation labels in arguments where relevant (above/managed/below).

Return exactly this JSON shape:
{{
  "advocateAssessment": {{
    "stance": "support_reward",
    "arguments": [{{ "claim": "string", "evidenceRefs": ["E1"] }}],
    "recommendation": {{ "bonus": "yes|no|defer", "promotion": "yes|no|not_ready" }},
    "confidence": "low|medium|high"
  }},
  "examinerAssessment": {{
    "stance": "caution_reward",
    "arguments": [{{ "claim": "string", "evidenceRefs": ["E1"] }}],
    "risks": ["string"],
    "recommendation": {{ "bonus": "yes|no|defer", "promotion": "yes|no|not_ready" }},
    "confidence": "low|medium|high"
  }}
}}

Input JSON:
{input_json}"""

ARBITER_TASK = """\
Task: Arbitrate between advocate/examiner assessments and produce manager-safe recommendations.

{constraints}

{kpi_block}

Rules:
- Explicitly compare both assessments and penalize weak/speculative arguments.
- Must reference unresolved ambiguity via unresolvedQuestions.
- rationale and notesForHR must contain citation tokens like refs:[E1,E2].
- Include at least one KPI summary string using above/managed/below labels.
- Include one SkillVsExpectation text graph line in rationale or notesForHR.
- Respect eligibility constraints:
  - If eligibility.bonus is false, finalRecommendation.bonus must not be "approve".
  - If eligibility.promotion is false, finalRecommendation.promotion must not be "approve".

Return exactly this JSON shape:
{{
  "finalRecommendation": {{
    "bonus": "approve|defer|deny",
    "promotion": "approve|defer|deny"
  }},
  "rationale": ["string with refs:[E1]"],
  "unresolvedQuestions": ["string"],
  "confidence": "low|medium|high",
  "notesForHR": ["string with refs:[E1]"]
}}

Input JSON:
{input_json}"""

GUIDANCE_TASK = """\
Task: Generate employee-facing prompts and manager coaching in one response.

{constraints}

{kpi_block}

Employee prompts rules:
- Never mention bonus or promotion.
- Supportive, non-judgmental tone.
- No peer comparisons.
- Every prompt must include evidenceRefs.
- At least one employee prompt should reflect KPI expectation framing in plain language.

Manager coaching rules:
- Focus on conversation framing.
- Include doNotAssume list.
- Cite evidence via evidenceRefs.
- Avoid definitive labels.
- Include KPI expectation checks (above/managed/below) in focusAreas.
- Include one SkillVsExpectation text graph line in managerCoaching.focusAreas.

Return exactly this JSON shape:
{{
  "employeePings": [
    {{
      "theme": "workload|growth|collaboration|focus",
      "message": "string",
      "evidenceRefs": ["E1"],
      "confidence": "low|medium|high"
    }}
  ],
  "managerCoaching": {{
    "focusAreas": ["string"],
    "suggestedQuestions": ["string"],
    "doNotAssume": ["string"],
    "evidenceRefs": ["E1"],
    "confidence": "low|medium|high"
  }}
}}

Input JSON:
{input_json}"""


def _render(template: str, role: str, payload: dict[str, Any]) -> str:
    return template.format(
        constraints=CONSTRAINTS_BLOCK,
        kpi_block=kpi_prompt_block(role),
        input_json=json.dumps(payload, indent=2),
    )


def _core_payload(inp: ManagerAnalysisInput) -> dict[str, Any]:
    data = inp.dump()
    return {
        "quarterly": data["quarterly"],
        "monthlyHistory": data["monthlyHistory"],
        "dataSufficiency": data["dataSufficiency"],
        "role": inp.role,
        "kpiBaseline": role_kpi_baseline(inp.role),
        "evidenceCatalog": data["evidenceCatalog"],
    }


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def cap_confidence(value: ConfidenceLevel, sufficiency: DataSufficiency) -> ConfidenceLevel:
    if sufficiency.level == "insufficient":
        return "low"
    if sufficiency.level == "partial" and value == "high":
        return "medium"
    return value


async def _generate(prompt: str, client: Any, limiter: LLMRateLimiter) -> GenerationResult:
    return await limiter.run(
        MANAGER_ANALYSIS_KEY, lambda: client.generate(prompt, MANAGER_ANALYSIS_SYSTEM_PROMPT),
    )


def _stage_result(output: Any, result: GenerationResult) -> StageResult:
    return StageResult(
        output=output, model=result.model, model_version=get_settings().model_version, usage=result.usage,
    )


# ---------------------------------------------------------------------------
# Debate
# ---------------------------------------------------------------------------

ADVOCATE_CLAIM_FALLBACK = "Evidence indicates stable positive impact against expected role outcomes."
EXAMINER_CLAIM_FALLBACK = "Evidence indicates potential risk that should be validated with manager context."
EXAMINER_RISK_FALLBACK = "Potential risk requires manager clarification using direct period evidence."


def check_debate(raw: Any, inp: ManagerAnalysisInput) -> CombinedDebate:
    debate = validate_contract(CombinedDebate, raw, "Combined debate")
    valid = inp.evidence_ids
    advocate, examiner = debate.advocate_assessment, debate.examiner_assessment

    for arg in advocate.arguments:
        ensure_refs_exist(arg.evidence_refs, valid, "advocateAssessment.arguments.evidenceRefs")
        arg.claim = sanitize_peer_comparison(arg.claim, ADVOCATE_CLAIM_FALLBACK)
    for arg in examiner.arguments:
        ensure_refs_exist(arg.evidence_refs, valid, "examinerAssessment.arguments.evidenceRefs")
        arg.claim = sanitize_peer_comparison(arg.claim, EXAMINER_CLAIM_FALLBACK)
    examiner.risks = [sanitize_peer_comparison(r, EXAMINER_RISK_FALLBACK) for r in examiner.risks]

    advocate.confidence = cap_confidence(advocate.confidence, inp.data_sufficiency)
    examiner.confidence = cap_confidence(examiner.confidence, inp.data_sufficiency)
    return debate


async def generate_combined_debate(
    inp: ManagerAnalysisInput, client: Any, limiter: LLMRateLimiter,
) -> StageResult:
    payload = {**inp.dump(), "kpiBaseline": role_kpi_baseline(inp.role)}
    result = await _generate(_render(DEBATE_TASK, inp.role, payload), client, limiter)
    try:
        debate = check_debate(parse_stage_json(result.text, "generate_combined_debate"), inp)
    except StageValidationError as exc:
        exc.usage = result.usage
        raise
    return _stage_result(debate, result)


# ---------------------------------------------------------------------------
# Arbiter
# ---------------------------------------------------------------------------

QUESTION_FALLBACK = "What additional context is needed to interpret this evidence reliably?"


def check_arbiter(raw: Any, inp: ManagerAnalysisInput) -> ArbiterDecisionOutput:
    decision = validate_contract(ArbiterDecisionOutput, raw, "Arbiter")
    valid = inp.evidence_ids
    first_ref = inp.evidence_catalog[0].id if inp.evidence_catalog else None

    # Citation closure is checked on the raw lines, before any rewriting.
    for line in decision.rationale:
        ensure_citation_tokens(line, valid, "arbiter.rationale")
    for line in decision.notes_for_hr:
        ensure_citation_tokens(line, valid, "arbiter.notesForHR")

    def cited(line: str, template: str) -> str:
        ref = (parse_citation_refs(line) or [first_ref or "E1"])[0]
        return sanitize_peer_comparison(line, f"{template} refs:[{ref}]")

    decision.rationale = [
        cited(line, "Evidence indicates uncertainty that needs manager clarification")
        for line in decision.rationale
    ]
    decision.notes_for_hr = [
        cited(line, "Document the observed evidence and open questions without comparative framing")
        for line in decision.notes_for_hr
    ]
    decision.unresolved_questions = [
        sanitize_peer_comparison(q, QUESTION_FALLBACK) for q in decision.unresolved_questions
    ]
    decision.confidence = cap_confidence(decision.confidence, inp.data_sufficiency)

    final = decision.final_recommendation
    for kind, eligible in (("bonus", inp.eligibility.bonus), ("promotion", inp.eligibility.promotion)):
        if not eligible and getattr(final, kind) == "approve":
            setattr(final, kind, "defer")
            log.warning("Arbiter approved %s for an ineligible employee; coerced to defer", kind)
            if first_ref:
                decision.notes_for_hr.append(
                    f"{kind.capitalize()} recommendation coerced to defer due to ineligibility refs:[{first_ref}]"
                )
    return decision


async def generate_arbiter_decision(
    inp: ManagerAnalysisInput, debate: CombinedDebate, client: Any, limiter: LLMRateLimiter,
) -> StageResult:
    debate_data = debate.dump()
    payload = {
        **_core_payload(inp),
        "eligibility": inp.eligibility.dump(),
        "advocateAssessment": debate_data["advocateAssessment"],
        "examinerAssessment": debate_data["examinerAssessment"],
    }
    result = await _generate(_render(ARBITER_TASK, inp.role, payload), client, limiter)
    try:
        decision = check_arbiter(parse_stage_json(result.text, "generate_arbiter_decision"), inp)
    except StageValidationError as exc:
        exc.usage = result.usage
        raise
    return _stage_result(decision, result)


# ---------------------------------------------------------------------------
# Guidance
# ---------------------------------------------------------------------------

FOCUS_FALLBACK = "Center the conversation on observed patterns and concrete support needs."
SUGGESTED_QUESTION_FALLBACK = "What does the current evidence suggest about support or clarity needed next?"
DO_NOT_ASSUME_FALLBACK = "Do not assume performance based on comparisons; stay with direct evidence."


def check_guidance(raw: Any, inp: ManagerAnalysisInput) -> CombinedGuidance:
    guidance = validate_contract(CombinedGuidance, raw, "Guidance")
    valid = inp.evidence_ids

    for ping in guidance.employee_pings:
        if has_compensation_language(ping.message):
            raise StageValidationError(
                "Employee ping includes compensation language.", ErrorKind.PROHIBITED_CONTENT,
            )
        ensure_refs_exist(ping.evidence_refs, valid, "employeePings.evidenceRefs")
        ping.message = sanitize_peer_comparison(
            ping.message,
            f"Let's focus on your recent evidence patterns and choose one concrete next step in {ping.theme}.",
        )
        ping.confidence = cap_confidence(ping.confidence, inp.data_sufficiency)

    coaching = guidance.manager_coaching
    ensure_refs_exist(coaching.evidence_refs, valid, "managerCoaching.evidenceRefs")
    coaching.focus_areas = [sanitize_peer_comparison(s, FOCUS_FALLBACK) for s in coaching.focus_areas]
    coaching.suggested_questions = [
        sanitize_peer_comparison(s, SUGGESTED_QUESTION_FALLBACK) for s in coaching.suggested_questions
    ]
    coaching.do_not_assume = [sanitize_peer_comparison(s, DO_NOT_ASSUME_FALLBACK) for s in coaching.do_not_assume]
    coaching.confidence = cap_confidence(coaching.confidence, inp.data_sufficiency)
    return guidance


async def generate_combined_guidance(
    inp: ManagerAnalysisInput,
    debate: CombinedDebate,
    arbiter: ArbiterDecisionOutput,
    client: Any,
    limiter: LLMRateLimiter,
) -> StageResult:
    payload = {**_core_payload(inp), "debate": debate.dump(), "arbiter": arbiter.dump()}
    result = await _generate(_render(GUIDANCE_TASK, inp.role, payload), client, limiter)
    try:
        guidance = check_guidance(parse_stage_json(result.text, "generate_combined_guidance"), inp)
    except StageValidationError as exc:
        exc.usage = result.usage
        raise
    return _stage_result(guidance, result)
