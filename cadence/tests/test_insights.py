"""Tests for the insight pipeline: normalization, three-call stages and single-pass generators."""
from __future__ import annotations

from datetime import date

import pytest

from cadence.domain import DataSufficiency, DimensionInsight, Signal
from cadence.errors import LLMCallError, InsightGenerationError
from cadence.insights import (
    UNCERTAINTY_NOTE,
    ensure_uncertainty_note,
    extract_signals,
    generate_monthly_insights_single_pass,
    generate_quarterly_insights_single_pass,
    normalize_confidence,
    normalize_signals,
    reason_by_dimension,
    render_prompt,
    sanitize_evidence,
    synthesize_insights,
)
from conftest import make_client, weeks_from


def _sufficiency(level: str) -> DataSufficiency:
    return DataSufficiency(level=level, notes="test", weeks=4, months=1)


def _evidence(week="2026-01-05", summary="3 PRs merged"):
    return {"source": "github_weekly_activity", "weekStart": week, "fields": ["prsMerged"], "summary": summary}


def _github_weeks(count: int, start: date = date(2026, 1, 5)) -> list[dict]:
    return [{"weekStart": w.isoformat(), "prsMerged": 2} for w in weeks_from(start, count)]


def _slack_weeks(count: int, start: date = date(2026, 1, 5)) -> list[dict]:
    return [{"weekStart": w.isoformat(), "messageCount": 30} for w in weeks_from(start, count)]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestSanitizeEvidence:
    def test_keeps_valid_entries(self):
        result = sanitize_evidence([_evidence()])
        assert len(result) == 1
        assert result[0].week_start == "2026-01-05"

    def test_drops_malformed_entries(self):
        raw = [
            {**_evidence(), "source": "jira"},
            {**_evidence(), "summary": "   "},
            {**_evidence(), "fields": []},
            {**_evidence(), "weekStart": ""},
            "not a dict",
        ]
        assert sanitize_evidence(raw) == []

    def test_non_list_is_empty(self):
        assert sanitize_evidence({"source": "github_weekly_activity"}) == []


class TestConfidence:
    def test_insufficient_forces_low(self):
        assert normalize_confidence("high", _sufficiency("insufficient"), True) == "low"

    def test_partial_caps_high(self):
        assert normalize_confidence("high", _sufficiency("partial"), True) == "medium"

    def test_no_grounding_forces_low(self):
        assert normalize_confidence("high", _sufficiency("sufficient"), False) == "low"

    def test_unknown_value_defaults_to_medium(self):
        assert normalize_confidence("very high", _sufficiency("sufficient"), True) == "medium"

    def test_uncertainty_note_appended_once(self):
        text = ensure_uncertainty_note("Delivery was steady.", _sufficiency("insufficient"))
        assert text.endswith(UNCERTAINTY_NOTE)
        assert ensure_uncertainty_note("Limited data this month.", _sufficiency("insufficient")) == \
            "Limited data this month."
        assert ensure_uncertainty_note("Delivery was steady.", _sufficiency("partial")) == "Delivery was steady."


class TestNormalizeSignals:
    def test_signal_without_evidence_is_dropped(self):
        raw = {"Execution": [
            {"signalId": "S1", "statement": "Merged PRs", "evidence": [_evidence()]},
            {"signalId": "S2", "statement": "Ungrounded claim", "evidence": []},
        ]}
        result = normalize_signals(raw, keep_ids=True)
        assert [s.id for s in result["Execution"]] == ["S1"]
        assert result["Growth"] == []

    def test_duplicate_ids_are_reassigned(self):
        raw = {
            "Execution": [{"signalId": "S1", "statement": "a", "evidence": [_evidence()]}],
            "Engagement": [{"signalId": "S1", "statement": "b", "evidence": [_evidence()]}],
        }
        result = normalize_signals(raw, keep_ids=True)
        assert result["Execution"][0].id == "S1"
        assert result["Engagement"][0].id == "S2"

    def test_sequential_ids_ignore_generator_ids(self):
        raw = {"Execution": [
            {"signalId": "X9", "statement": "a", "evidence": [_evidence()]},
            {"signalId": "X7", "statement": "b", "evidence": [_evidence()]},
        ]}
        result = normalize_signals(raw, keep_ids=False)
        assert [s.id for s in result["Execution"]] == ["S1", "S2"]

    def test_blank_statement_gets_placeholder(self):
        raw = {"Growth": [{"statement": "  ", "evidence": [_evidence()]}]}
        result = normalize_signals(raw, keep_ids=True)
        assert result["Growth"][0].statement.startswith("Insufficient data")


def test_render_prompt_inlines_payload():
    prompt = render_prompt("Input:\n{{INPUT_JSON}}", {"periodKey": "2026-01"})
    assert '"periodKey": "2026-01"' in prompt
    assert "{{INPUT_JSON}}" not in prompt


# ---------------------------------------------------------------------------
# Three-call pipeline
# ---------------------------------------------------------------------------


class TestThreeCallPipeline:
    @pytest.mark.asyncio
    async def test_extract_signals_assesses_sufficiency_and_numbers_signals(self, limiter):
        client = make_client({"dimensions": {
            "Execution": [{"signalId": "abc", "statement": "Merged PRs", "evidence": [_evidence()]}],
        }})
        result = await extract_signals("2026-01", "month", _github_weeks(3), _slack_weeks(3), client, limiter)
        assert result.data_sufficiency.level == "insufficient"
        assert [s.id for s in result.all_signals] == ["S1"]
        assert result.model == "test-model"
        client.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reason_by_dimension_filters_unknown_signal_ids(self, limiter):
        signals = {
            "Execution": [Signal(id="S1", dimension="Execution", statement="Merged PRs", evidence=sanitize_evidence([_evidence()]))],
            "Engagement": [], "Collaboration": [], "Growth": [],
        }
        client = make_client({"dimensions": {
            "Execution": {"insight": "Consistent delivery.", "supportingSignalIds": ["S1", "S42"], "confidence": "high"},
        }})
        result = await reason_by_dimension("2026-01", "month", signals, _sufficiency("partial"), client, limiter)
        execution = result.dimensions["Execution"]
        assert execution.supporting_signal_ids == ["S1"]
        assert execution.confidence == "medium"
        assert result.dimensions["Growth"].insight.startswith("Insufficient data")
        assert result.dimensions["Growth"].confidence == "low"

    @pytest.mark.asyncio
    async def test_synthesize_with_zero_signals_skips_generator(self, limiter):
        client = make_client()
        empty = {"Execution": [], "Engagement": [], "Collaboration": [], "Growth": []}
        insights = {d: DimensionInsight(insight="n/a") for d in empty}
        result = await synthesize_insights(
            "2026-Q1", "quarter", insights, empty, _sufficiency("insufficient"), client, limiter,
        )
        client.generate.assert_not_called()
        assert result.confidence == "low"
        assert result.key_strengths == []
        assert result.trajectory_summary.startswith("Insufficient data")

    @pytest.mark.asyncio
    async def test_synthesize_monthly_normalizes_output(self, limiter):
        signals = {
            "Execution": [Signal(id="S1", dimension="Execution", statement="Merged PRs", evidence=sanitize_evidence([_evidence()]))],
            "Engagement": [], "Collaboration": [], "Growth": [],
        }
        client = make_client({
            "overallSummary": "Steady month.", "identifiedRisks": ["", "On-call load"],
            "identifiedOpportunities": ["Mentoring"], "confidence": "high",
        })
        insights = {d: DimensionInsight(insight="x") for d in signals}
        result = await synthesize_insights(
            "2026-01", "month", insights, signals, _sufficiency("sufficient"), client, limiter,
        )
        assert result.overall_summary == "Steady month."
        assert result.identified_risks == ["On-call load"]
        assert result.confidence == "high"


# ---------------------------------------------------------------------------
# Single-pass generators
# ---------------------------------------------------------------------------


def _monthly_reply(**overrides) -> dict:
    reply = {
        "signalsByDimension": {
            "Execution": [
                {"signalId": "S1", "statement": "Merged three PRs weekly.", "evidence": [_evidence()]},
                {"signalId": "S2", "statement": "Claimed without evidence.", "evidence": [
                    {"source": "github_weekly_activity", "weekStart": "2026-01-05", "fields": [], "summary": "x"},
                ]},
            ],
        },
        "dimensionInsights": {
            "Execution": {"insight": "Consistent delivery.", "supportingSignalIds": ["S1"], "confidence": "high"},
        },
        "overallSummary": "Steady delivery with healthy review activity.",
        "identifiedRisks": [],
        "identifiedOpportunities": ["Pair on evaluation tooling"],
        "confidence": "high",
    }
    reply.update(overrides)
    return reply


class TestSinglePass:
    @pytest.mark.asyncio
    async def test_monthly_caps_confidence_and_drops_ungrounded_signals(self, limiter):
        client = make_client(_monthly_reply())
        result = await generate_monthly_insights_single_pass(
            "2026-01", _github_weeks(4), _slack_weeks(4), client, limiter,
        )
        assert result.data_sufficiency.level == "partial"
        assert result.synthesis.confidence == "medium"
        assert [s.id for s in result.all_signals] == ["S1"]
        assert result.dimension_insights["Execution"].confidence == "medium"
        assert result.dimension_insights["Engagement"].supporting_signal_ids == []
        assert result.usage.total_tokens == 150

    @pytest.mark.asyncio
    async def test_monthly_without_signals_uses_insufficient_template(self, limiter):
        client = make_client(_monthly_reply(signalsByDimension={}))
        result = await generate_monthly_insights_single_pass(
            "2026-01", _github_weeks(5), _slack_weeks(5), client, limiter,
        )
        assert result.synthesis.confidence == "low"
        assert result.synthesis.identified_opportunities == []
        assert result.synthesis.overall_summary.startswith("Insufficient data")

    @pytest.mark.asyncio
    async def test_quarterly_insufficient_adds_uncertainty_note(self, limiter):
        client = make_client({
            "signalsByDimension": {"Growth": [
                {"signalId": "S1", "statement": "Led a design review.", "evidence": [_evidence()]},
            ]},
            "trajectorySummary": "Improving ownership.",
            "burnoutAssessment": "No burnout signals.",
            "growthAssessment": "Growing design scope.",
            "retentionAssessment": "Stable.",
            "keyStrengths": ["Design reviews"],
            "evidenceSnapshots": [
                {"signalId": "S1", "dimension": "Growth", "evidence": [_evidence()]},
                {"signalId": "S2", "dimension": "Morale", "evidence": [_evidence()]},
            ],
            "confidence": "high",
        })
        result = await generate_quarterly_insights_single_pass(
            "2026-Q1", _github_weeks(4), _slack_weeks(4), client, limiter,
        )
        synthesis = result.synthesis
        assert result.data_sufficiency.level == "insufficient"
        assert synthesis.confidence == "low"
        assert synthesis.trajectory_summary.endswith(UNCERTAINTY_NOTE)
        assert [s.signal_id for s in synthesis.evidence_snapshots] == ["S1"]

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, limiter):
        client = make_client("I could not produce JSON for this month.")
        with pytest.raises(InsightGenerationError) as exc_info:
            await generate_monthly_insights_single_pass("2026-01", _github_weeks(4), [], client, limiter)
        assert exc_info.value.stage == "monthly_single_pass"
        assert exc_info.value.code == "invalid_json"

    @pytest.mark.asyncio
    async def test_json_wrapped_in_prose_is_recovered(self, limiter):
        client = make_client('Here you go:\n```json\n{"overallSummary": "Quiet month.", "confidence": "low"}\n```')
        result = await generate_monthly_insights_single_pass("2026-01", _github_weeks(4), [], client, limiter)
        assert result.synthesis.overall_summary.startswith("Insufficient data")

    @pytest.mark.asyncio
    async def test_generator_failure_is_wrapped(self, limiter):
        client = make_client()
        client.generate.side_effect = LLMCallError("upstream timeout", retryable=True)
        with pytest.raises(InsightGenerationError) as exc_info:
            await generate_quarterly_insights_single_pass("2026-Q1", _github_weeks(4), [], client, limiter)
        assert exc_info.value.code == "llm_call_failed"
        assert isinstance(exc_info.value.__cause__, LLMCallError)
