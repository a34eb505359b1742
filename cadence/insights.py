"""Monthly and quarterly insight generation from weekly activity.

Two flavours share the same normalization rules:

- the three-call pipeline (``extract_signals`` -> ``reason_by_dimension`` ->
  ``synthesize_insights``), and
- the single-pass generators used by report generation, which ask for all
  three steps in one JSON reply.

Generator output is never trusted: evidence without a source, week, fields
or summary is dropped, signals without evidence are dropped, supporting ids
are filtered to known signals and confidence is capped by data sufficiency.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from cadence.config import get_settings
from cadence.domain import (
    DIMENSIONS,
    ConfidenceLevel,
    DataSufficiency,
    Dimension,
    DimensionInsight,
    EvidenceRef,
    EvidenceSnapshot,
    MonthlySynthesis,
    PeriodType,
    QuarterlySynthesis,
    Signal,
)
from cadence.errors import ErrorKind, InsightGenerationError, LLMCallError
from cadence.llm import GenerationResult
from cadence.rate_limiter import INSIGHTS_KEY, LLMRateLimiter
from cadence.sufficiency import assess_data_sufficiency
from cadence.utils import as_string_list, json_parse, parse_llm_json, to_iso_date

log = logging.getLogger(__name__)

EVIDENCE_SOURCES = ("github_weekly_activity", "slack_weekly_activity")
UNCERTAINTY_MARKERS = ("insufficient", "limited", "uncertain")
UNCERTAINTY_NOTE = " Data coverage is insufficient, so this insight is uncertain."
BLANK_STATEMENT = "Insufficient data to derive a specific signal."


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

INSIGHT_SYSTEM_PROMPT = (
    "You are an insight generation engine for HR-facing performance intelligence. "
    "Use only the provided data. Do not invent facts. If data is insufficient, state "
    "uncertainty and set confidence to low. Output JSON only with the requested schema."
)

_EVIDENCE_SHAPE = """\
          {
            "source": "github_weekly_activity | slack_weekly_activity",
            "weekStart": "YYYY-MM-DD",
            "fields": ["string"],
            "summary": "string"
          }"""

_DIMENSION_INSIGHTS_SHAPE = """\
  "dimensionInsights": {
    "Execution": {"insight": "string", "supportingSignalIds": ["S1"], "confidence": "low | medium | high"},
    "Engagement": {"insight": "string", "supportingSignalIds": [], "confidence": "low | medium | high"},
    "Collaboration": {"insight": "string", "supportingSignalIds": [], "confidence": "low | medium | high"},
    "Growth": {"insight": "string", "supportingSignalIds": [], "confidence": "low | medium | high"}
  },"""

_QUARTERLY_FIELDS_SHAPE = """\
  "trajectorySummary": "string",
  "keyStrengths": ["string"],
  "keyConcerns": ["string"],
  "burnoutAssessment": "string",
  "growthAssessment": "string",
  "retentionAssessment": "string",
  "recommendedActions": ["string"],
  "evidenceSnapshots": [
    {
      "signalId": "S1",
      "dimension": "Execution | Engagement | Collaboration | Growth",
      "evidence": [
""" + _EVIDENCE_SHAPE + """
      ]
    }
  ],
  "confidence": "low | medium | high\""""

EXTRACT_SIGNALS_PROMPT = """\
Task: Extract atomic signals with evidence from weekly activity data. Signals must be grouped \
into the dimensions: Execution, Engagement, Collaboration, Growth.

Rules:
- Use only the provided data.
- Each signal is a single, observable statement grounded in the data.
- Each signal must include evidence that cites weekStart, source, and relevant fields.
- If data is insufficient, return empty arrays for all dimensions.
- Do NOT include numeric scores or rankings.

Return JSON only with this exact shape:
{
  "dimensions": {
    "Execution": [
      {
        "statement": "string",
        "evidence": [
""" + _EVIDENCE_SHAPE + """
        ]
      }
    ],
    "Engagement": [ ... ],
    "Collaboration": [ ... ],
    "Growth": [ ... ]
  }
}

Input JSON:
{{INPUT_JSON}}"""

REASON_DIMENSION_PROMPT = """\
Task: For each dimension, write a 2-3 sentence insight using only the signals provided. \
Provide supporting signal IDs and a confidence level.

Rules:
- Use only the provided signals for that dimension.
- If no signals exist for a dimension, say so explicitly and set confidence to low.
- If dataSufficiency is partial or insufficient, bias confidence toward low.
- Do NOT add facts that are not present in the signals.
- Do NOT include numeric scores.

Return JSON only with this exact shape:
{
  "dimensions": {
    "Execution": {"insight": "string", "supportingSignalIds": ["S1"], "confidence": "low | medium | high"},
    "Engagement": { ... },
    "Collaboration": { ... },
    "Growth": { ... }
  }
}

Input JSON:
{{INPUT_JSON}}"""

SYNTHESIZE_MONTHLY_PROMPT = """\
Task: Synthesize monthly insights into an overall summary, risks, and opportunities. \
Explicitly reconcile conflicting signals if present.

Rules:
- Use only the provided dimension insights and signals.
- If data is insufficient, state uncertainty explicitly and set confidence to low.
- Risks and opportunities must be grounded in the signals.
- Do NOT include numeric scores.

Return JSON only with this exact shape:
{
  "overallSummary": "string",
  "identifiedRisks": ["string"],
  "identifiedOpportunities": ["string"],
  "confidence": "low | medium | high"
}

Input JSON:
{{INPUT_JSON}}"""

SYNTHESIZE_QUARTERLY_PROMPT = """\
Task: Synthesize quarterly insights into trajectory, strengths, concerns, and assessments. \
Explicitly reconcile conflicting signals if present.

Rules:
- Use only the provided dimension insights and signals.
- If data is insufficient, state uncertainty explicitly and set confidence to low.
- Evidence snapshots must reference signal IDs and include their evidence.
- Do NOT include numeric scores.

Return JSON only with this exact shape:
{
""" + _QUARTERLY_FIELDS_SHAPE + """
}

Input JSON:
{{INPUT_JSON}}"""

_SINGLE_PASS_RULES = """\
Rules:
- Use only provided data. Do not invent facts.
- Do not generate numeric scores.
- Every claim must be grounded in observed signals.
- If data is insufficient, keep confidence low and state uncertainty.

Return JSON only with this exact shape:
{
  "signalsByDimension": {
    "Execution": [
      {
        "signalId": "S1",
        "statement": "string",
        "evidence": [
""" + _EVIDENCE_SHAPE + """
        ]
      }
    ],
    "Engagement": [],
    "Collaboration": [],
    "Growth": []
  },
""" + _DIMENSION_INSIGHTS_SHAPE

MONTHLY_SINGLE_PASS_PROMPT = """\
Task: Execute this full workflow in one pass for the given month:
1) Signal Extraction
- Extract atomic signals with evidence from weekly GitHub + Slack data
- Group signals into Execution, Engagement, Collaboration, Growth
2) Dimension Reasoning
- For each dimension, write a short 2-3 sentence insight
- Include supporting signal IDs and dimension confidence
3) Insight Synthesis
- Produce overall summary, identified risks, identified opportunities, and overall confidence
- Explicitly reconcile conflicting signals if present

""" + _SINGLE_PASS_RULES + """
  "overallSummary": "string",
  "identifiedRisks": ["string"],
  "identifiedOpportunities": ["string"],
  "confidence": "low | medium | high"
}

Input JSON:
{{INPUT_JSON}}"""

QUARTERLY_SINGLE_PASS_PROMPT = """\
Task: Execute this full workflow in one pass for the given quarter:
1) Signal Extraction
- Extract atomic signals with evidence from weekly GitHub + Slack data
- Group signals into Execution, Engagement, Collaboration, Growth
2) Dimension Reasoning
- For each dimension, write a short 2-3 sentence insight
- Include supporting signal IDs and dimension confidence
3) Insight Synthesis
- Produce trajectory summary, strengths, concerns, burnout/growth/retention assessments, and recommended actions
- Include evidence snapshots
- Explicitly reconcile conflicting signals if present

""" + _SINGLE_PASS_RULES + "\n" + _QUARTERLY_FIELDS_SHAPE + """
}

Input JSON:
{{INPUT_JSON}}"""


def render_prompt(template: str, payload: dict[str, Any]) -> str:
    return template.replace("{{INPUT_JSON}}", json.dumps(payload, indent=2))


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass
class SignalExtraction:
    period_key: str
    period_type: PeriodType
    signals_by_dimension: dict[Dimension, list[Signal]]
    data_sufficiency: DataSufficiency
    model: str
    model_version: str

    @property
    def all_signals(self) -> list[Signal]:
        return flatten_signals(self.signals_by_dimension)


@dataclass
class DimensionReasoning:
    period_key: str
    period_type: PeriodType
    dimensions: dict[Dimension, DimensionInsight]
    model: str
    model_version: str


@dataclass
class SinglePassResult:
    period_key: str
    signals_by_dimension: dict[Dimension, list[Signal]]
    dimension_insights: dict[Dimension, DimensionInsight]
    synthesis: MonthlySynthesis | QuarterlySynthesis
    data_sufficiency: DataSufficiency
    model: str
    model_version: str
    usage: Any = field(default=None, repr=False)

    @property
    def all_signals(self) -> list[Signal]:
        return flatten_signals(self.signals_by_dimension)


def flatten_signals(signals_by_dimension: dict[Dimension, list[Signal]]) -> list[Signal]:
    return [s for dim in DIMENSIONS for s in signals_by_dimension.get(dim, [])]


# ---------------------------------------------------------------------------
# Weekly payload normalization
# ---------------------------------------------------------------------------


def _read(record: Any, snake: str, camel: str, default: Any) -> Any:
    """Read a weekly field from an ORM row or a (snake or camel keyed) dict."""
    if isinstance(record, dict):
        value = record.get(snake, record.get(camel))
    elif hasattr(record, f"{snake}_json"):
        value = json_parse(getattr(record, f"{snake}_json"), default)
    else:
        value = getattr(record, snake, None)
    return default if value is None else value


def normalize_weekly_github(weekly: Iterable[Any]) -> list[dict[str, Any]]:
    return [
        {
            "weekStart": to_iso_date(_read(w, "week_start", "weekStart", "")),
            "pullRequestSummaries": _read(w, "pull_request_summaries", "pullRequestSummaries", []),
            "issueSummaries": _read(w, "issue_summaries", "issueSummaries", []),
            "prsMerged": _read(w, "prs_merged", "prsMerged", 0),
            "prReviewsGiven": _read(w, "pr_reviews_given", "prReviewsGiven", 0),
            "afterHoursRatio": _read(w, "after_hours_ratio", "afterHoursRatio", 0),
            "weekendRatio": _read(w, "weekend_ratio", "weekendRatio", 0),
        }
        for w in weekly
    ]


def normalize_weekly_slack(weekly: Iterable[Any]) -> list[dict[str, Any]]:
    return [
        {
            "weekStart": to_iso_date(_read(w, "week_start", "weekStart", "")),
            "messageSummaries": _read(w, "message_summaries", "messageSummaries", []),
            "messageCount": _read(w, "message_count", "messageCount", 0),
            "replyCount": _read(w, "reply_count", "replyCount", 0),
            "reactionsReceived": _read(w, "reactions_received", "reactionsReceived", 0),
            "afterHoursRatio": _read(w, "after_hours_ratio", "afterHoursRatio", 0),
            "weekendRatio": _read(w, "weekend_ratio", "weekendRatio", 0),
        }
        for w in weekly
    ]


def _weekly_payload(
    period_key: str,
    period_type: PeriodType,
    sufficiency: DataSufficiency,
    github_weekly: list[Any],
    slack_weekly: list[Any],
) -> dict[str, Any]:
    return {
        "periodKey": period_key,
        "periodType": period_type,
        "dataSufficiency": sufficiency.dump(),
        "githubWeekly": normalize_weekly_github(github_weekly),
        "slackWeekly": normalize_weekly_slack(slack_weekly),
    }


# ---------------------------------------------------------------------------
# Output normalization
# ---------------------------------------------------------------------------


def sanitize_evidence(raw: Any) -> list[EvidenceRef]:
    """Keep only evidence entries with a known source, week, fields and summary."""
    if not isinstance(raw, list):
        return []
    out: list[EvidenceRef] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        source = entry.get("source")
        week_start = entry.get("weekStart")
        summary = entry.get("summary")
        fields = as_string_list(entry.get("fields"))
        if source not in EVIDENCE_SOURCES:
            continue
        if not isinstance(week_start, str) or not week_start.strip():
            continue
        if not isinstance(summary, str) or not summary.strip() or not fields:
            continue
        out.append(EvidenceRef(
            source=source, week_start=week_start.strip()[:10], fields=fields, summary=summary.strip(),
        ))
    return out


def normalize_confidence(value: Any, sufficiency: DataSufficiency, has_grounding: bool) -> ConfidenceLevel:
    """Cap a generator-supplied confidence by data coverage and grounding."""
    if sufficiency.level == "insufficient" or not has_grounding:
        return "low"
    if value in ("low", "medium", "high"):
        if sufficiency.level == "partial" and value == "high":
            return "medium"
        return value
    return "medium"


def ensure_uncertainty_note(text: str, sufficiency: DataSufficiency) -> str:
    if sufficiency.level != "insufficient":
        return text
    lower = text.lower()
    if any(marker in lower for marker in UNCERTAINTY_MARKERS):
        return text
    return f"{text}{UNCERTAINTY_NOTE}"


def insufficient_dimension_insight(dimension: Dimension) -> str:
    return f"Insufficient data to generate a reliable {dimension.lower()} insight for this period."


def _text(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def _statement(value: Any) -> str:
    return _text(value, BLANK_STATEMENT)


def _empty_by_dimension() -> dict[Dimension, list[Signal]]:
    return {dim: [] for dim in DIMENSIONS}


def normalize_signals(raw: Any, keep_ids: bool) -> dict[Dimension, list[Signal]]:
    """Turn a raw ``{dimension: [signal, ...]}`` mapping into validated signals.

    With ``keep_ids`` a generator-supplied ``signalId`` survives when unused;
    otherwise, and for missing or duplicate ids, the next free ``S<n>`` is
    assigned.
    """
    by_dimension = _empty_by_dimension()
    record = raw if isinstance(raw, dict) else {}
    seen: set[str] = set()
    counter = 1
    for dimension in DIMENSIONS:
        raw_signals = record.get(dimension)
        if not isinstance(raw_signals, list):
            continue
        for raw_signal in raw_signals:
            if not isinstance(raw_signal, dict):
                continue
            evidence = sanitize_evidence(raw_signal.get("evidence"))
            if not evidence:
                continue
            candidate = raw_signal.get("signalId") if keep_ids else None
            candidate = candidate.strip() if isinstance(candidate, str) else ""
            if not candidate or candidate in seen:
                while f"S{counter}" in seen:
                    counter += 1
                candidate = f"S{counter}"
                counter += 1
            seen.add(candidate)
            by_dimension[dimension].append(Signal(
                id=candidate,
                dimension=dimension,
                statement=_statement(raw_signal.get("statement")),
                evidence=evidence,
            ))
    return by_dimension


def normalize_dimension_insights(
    raw: Any,
    signals_by_dimension: dict[Dimension, list[Signal]],
    sufficiency: DataSufficiency,
) -> dict[Dimension, DimensionInsight]:
    record = raw if isinstance(raw, dict) else {}
    out: dict[Dimension, DimensionInsight] = {}
    for dimension in DIMENSIONS:
        signals = signals_by_dimension.get(dimension, [])
        entry = record.get(dimension) if isinstance(record.get(dimension), dict) else {}
        if not signals:
            out[dimension] = DimensionInsight(
                insight=insufficient_dimension_insight(dimension),
                supporting_signal_ids=[],
                confidence="low",
            )
            continue
        valid_ids = [s.id for s in signals]
        raw_ids = entry.get("supportingSignalIds")
        supporting = [str(i) for i in raw_ids if str(i) in valid_ids] if isinstance(raw_ids, list) else []
        insight = _text(
            entry.get("insight"),
            f"{dimension} signals were observed but require manual review for narrative synthesis.",
        )
        out[dimension] = DimensionInsight(
            insight=ensure_uncertainty_note(insight, sufficiency),
            supporting_signal_ids=supporting or valid_ids,
            confidence=normalize_confidence(entry.get("confidence"), sufficiency, True),
        )
    return out


def insufficient_monthly_synthesis(model: str, model_version: str) -> MonthlySynthesis:
    return MonthlySynthesis(
        overall_summary="Insufficient data to generate a reliable monthly summary for this period.",
        identified_risks=[],
        identified_opportunities=[],
        confidence="low",
        model=model,
        model_version=model_version,
    )


def insufficient_quarterly_synthesis(model: str, model_version: str) -> QuarterlySynthesis:
    return QuarterlySynthesis(
        trajectory_summary="Insufficient data to generate a reliable quarterly trajectory summary for this period.",
        key_strengths=[],
        key_concerns=[],
        burnout_assessment="Insufficient data to assess burnout risk for this period.",
        growth_assessment="Insufficient data to assess growth trends for this period.",
        retention_assessment="Insufficient data to assess retention risk for this period.",
        recommended_actions=[],
        evidence_snapshots=[],
        confidence="low",
        model=model,
        model_version=model_version,
    )


def normalize_monthly_synthesis(
    raw: dict[str, Any],
    sufficiency: DataSufficiency,
    signal_count: int,
    model: str,
    model_version: str,
) -> MonthlySynthesis:
    if signal_count == 0:
        return insufficient_monthly_synthesis(model, model_version)
    summary = _text(raw.get("overallSummary"), "Summary unavailable due to insufficient or unclear signals.")
    return MonthlySynthesis(
        overall_summary=ensure_uncertainty_note(summary, sufficiency),
        identified_risks=as_string_list(raw.get("identifiedRisks")),
        identified_opportunities=as_string_list(raw.get("identifiedOpportunities")),
        confidence=normalize_confidence(raw.get("confidence"), sufficiency, True),
        model=model,
        model_version=model_version,
    )


def _evidence_snapshots(raw: Any) -> list[EvidenceSnapshot]:
    if not isinstance(raw, list):
        return []
    out: list[EvidenceSnapshot] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        signal_id = entry.get("signalId")
        dimension = entry.get("dimension")
        if not isinstance(signal_id, str) or not signal_id.strip() or dimension not in DIMENSIONS:
            continue
        out.append(EvidenceSnapshot(
            signal_id=signal_id.strip(), dimension=dimension, evidence=sanitize_evidence(entry.get("evidence")),
        ))
    return out


def normalize_quarterly_synthesis(
    raw: dict[str, Any],
    sufficiency: DataSufficiency,
    signal_count: int,
    model: str,
    model_version: str,
) -> QuarterlySynthesis:
    if signal_count == 0:
        return insufficient_quarterly_synthesis(model, model_version)

    def assessment(key: str, label: str) -> str:
        text = _text(raw.get(key), f"{label} unavailable due to insufficient or unclear signals.")
        return ensure_uncertainty_note(text, sufficiency)

    return QuarterlySynthesis(
        trajectory_summary=assessment("trajectorySummary", "Trajectory summary"),
        key_strengths=as_string_list(raw.get("keyStrengths")),
        key_concerns=as_string_list(raw.get("keyConcerns")),
        burnout_assessment=assessment("burnoutAssessment", "Burnout assessment"),
        growth_assessment=assessment("growthAssessment", "Growth assessment"),
        retention_assessment=assessment("retentionAssessment", "Retention assessment"),
        recommended_actions=as_string_list(raw.get("recommendedActions")),
        evidence_snapshots=_evidence_snapshots(raw.get("evidenceSnapshots")),
        confidence=normalize_confidence(raw.get("confidence"), sufficiency, True),
        model=model,
        model_version=model_version,
    )


# ---------------------------------------------------------------------------
# Generator calls
# ---------------------------------------------------------------------------


def _model_name(client: Any) -> str:
    model = getattr(client, "model", None)
    return model if isinstance(model, str) else get_settings().llm_model


async def _generate(stage: str, prompt: str, client: Any, limiter: LLMRateLimiter) -> GenerationResult:
    try:
        return await limiter.run(INSIGHTS_KEY, lambda: client.generate(prompt, INSIGHT_SYSTEM_PROMPT))
    except LLMCallError as exc:
        log.warning("Insight stage %s: generator call failed: %s", stage, exc)
        raise InsightGenerationError(str(exc), stage, "llm_call_failed") from exc


def _parse(stage: str, text: str) -> dict[str, Any]:
    try:
        parsed = parse_llm_json(text)
    except ValueError as exc:
        log.warning("Insight stage %s: unparseable output (%s)", stage, exc)
        raise InsightGenerationError(f"Failed to parse JSON for {stage}.", stage, ErrorKind.INVALID_JSON) from exc
    if not isinstance(parsed, dict):
        raise InsightGenerationError(f"Expected a JSON object for {stage}.", stage, ErrorKind.INVALID_JSON)
    return parsed


# ---------------------------------------------------------------------------
# Three-call pipeline
# ---------------------------------------------------------------------------


async def extract_signals(
    period_key: str,
    period_type: PeriodType,
    github_weekly: Iterable[Any],
    slack_weekly: Iterable[Any],
    client: Any,
    limiter: LLMRateLimiter,
) -> SignalExtraction:
    github_weekly, slack_weekly = list(github_weekly), list(slack_weekly)
    sufficiency = assess_data_sufficiency(period_type, github_weekly, slack_weekly)
    payload = _weekly_payload(period_key, period_type, sufficiency, github_weekly, slack_weekly)
    result = await _generate("extract_signals", render_prompt(EXTRACT_SIGNALS_PROMPT, payload), client, limiter)
    parsed = _parse("extract_signals", result.text)
    return SignalExtraction(
        period_key=period_key,
        period_type=period_type,
        signals_by_dimension=normalize_signals(parsed.get("dimensions"), keep_ids=False),
        data_sufficiency=sufficiency,
        model=result.model,
        model_version=get_settings().model_version,
    )


async def reason_by_dimension(
    period_key: str,
    period_type: PeriodType,
    signals_by_dimension: dict[Dimension, list[Signal]],
    data_sufficiency: DataSufficiency,
    client: Any,
    limiter: LLMRateLimiter,
) -> DimensionReasoning:
    payload = {
        "periodKey": period_key,
        "periodType": period_type,
        "dataSufficiency": data_sufficiency.dump(),
        "signalsByDimension": {
            dim: [s.dump() for s in signals_by_dimension.get(dim, [])] for dim in DIMENSIONS
        },
    }
    result = await _generate("reason_by_dimension", render_prompt(REASON_DIMENSION_PROMPT, payload), client, limiter)
    parsed = _parse("reason_by_dimension", result.text)
    return DimensionReasoning(
        period_key=period_key,
        period_type=period_type,
        dimensions=normalize_dimension_insights(parsed.get("dimensions"), signals_by_dimension, data_sufficiency),
        model=result.model,
        model_version=get_settings().model_version,
    )


async def synthesize_insights(
    period_key: str,
    period_type: PeriodType,
    dimension_insights: dict[Dimension, DimensionInsight],
    signals_by_dimension: dict[Dimension, list[Signal]],
    data_sufficiency: DataSufficiency,
    client: Any,
    limiter: LLMRateLimiter,
) -> MonthlySynthesis | QuarterlySynthesis:
    model_version = get_settings().model_version
    all_signals = flatten_signals(signals_by_dimension)
    if not all_signals:
        log.info("No signals for %s %s; returning insufficient-data synthesis", period_type, period_key)
        if period_type == "month":
            return insufficient_monthly_synthesis(_model_name(client), model_version)
        return insufficient_quarterly_synthesis(_model_name(client), model_version)

    payload = {
        "periodKey": period_key,
        "periodType": period_type,
        "dataSufficiency": data_sufficiency.dump(),
        "dimensionInsights": {dim: ins.dump() for dim, ins in dimension_insights.items()},
        "signals": [s.dump() for s in all_signals],
    }
    if period_type == "month":
        result = await _generate(
            "synthesize_insights", render_prompt(SYNTHESIZE_MONTHLY_PROMPT, payload), client, limiter,
        )
        parsed = _parse("synthesize_insights", result.text)
        return normalize_monthly_synthesis(parsed, data_sufficiency, len(all_signals), result.model, model_version)

    result = await _generate(
        "synthesize_insights", render_prompt(SYNTHESIZE_QUARTERLY_PROMPT, payload), client, limiter,
    )
    parsed = _parse("synthesize_insights", result.text)
    return normalize_quarterly_synthesis(parsed, data_sufficiency, len(all_signals), result.model, model_version)


# ---------------------------------------------------------------------------
# Single-pass generators
# ---------------------------------------------------------------------------


async def _single_pass(
    stage: str,
    period_key: str,
    period_type: PeriodType,
    github_weekly: Iterable[Any],
    slack_weekly: Iterable[Any],
    client: Any,
    limiter: LLMRateLimiter,
) -> SinglePassResult:
    github_weekly, slack_weekly = list(github_weekly), list(slack_weekly)
    sufficiency = assess_data_sufficiency(period_type, github_weekly, slack_weekly)
    payload = _weekly_payload(period_key, period_type, sufficiency, github_weekly, slack_weekly)
    template = MONTHLY_SINGLE_PASS_PROMPT if period_type == "month" else QUARTERLY_SINGLE_PASS_PROMPT
    result = await _generate(stage, render_prompt(template, payload), client, limiter)
    parsed = _parse(stage, result.text)

    model_version = get_settings().model_version
    signals = normalize_signals(parsed.get("signalsByDimension"), keep_ids=True)
    signal_count = len(flatten_signals(signals))
    if period_type == "month":
        synthesis = normalize_monthly_synthesis(parsed, sufficiency, signal_count, result.model, model_version)
    else:
        synthesis = normalize_quarterly_synthesis(parsed, sufficiency, signal_count, result.model, model_version)

    log.info(
        "Generated %s insights for %s: %d signals, sufficiency=%s, confidence=%s",
        period_type, period_key, signal_count, sufficiency.level, synthesis.confidence,
    )
    return SinglePassResult(
        period_key=period_key,
        signals_by_dimension=signals,
        dimension_insights=normalize_dimension_insights(parsed.get("dimensionInsights"), signals, sufficiency),
        synthesis=synthesis,
        data_sufficiency=sufficiency,
        model=result.model,
        model_version=model_version,
        usage=result.usage,
    )


async def generate_monthly_insights_single_pass(
    period_key: str,
    github_weekly: Iterable[Any],
    slack_weekly: Iterable[Any],
    client: Any,
    limiter: LLMRateLimiter,
) -> SinglePassResult:
    return await _single_pass(
        "monthly_single_pass", period_key, "month", github_weekly, slack_weekly, client, limiter,
    )


async def generate_quarterly_insights_single_pass(
    period_key: str,
    github_weekly: Iterable[Any],
    slack_weekly: Iterable[Any],
    client: Any,
    limiter: LLMRateLimiter,
) -> SinglePassResult:
    return await _single_pass(
        "quarterly_single_pass", period_key, "quarter", github_weekly, slack_weekly, client, limiter,
    )
