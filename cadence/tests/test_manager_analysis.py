"""Tests for debate, arbiter and guidance stage validation and policy checks."""
from __future__ import annotations

import pytest

from cadence.errors import ErrorKind, StageValidationError
from cadence.manager_analysis import (
    ADVOCATE_CLAIM_FALLBACK,
    DO_NOT_ASSUME_FALLBACK,
    FALLBACK_KPI_BASELINE,
    QUESTION_FALLBACK,
    cap_confidence,
    check_arbiter,
    check_debate,
    check_guidance,
    generate_arbiter_decision,
    generate_combined_debate,
    generate_combined_guidance,
    kpi_prompt_block,
    role_kpi_baseline,
)
from cadence.validation import parse_citation_refs
from conftest import arbiter_reply, debate_reply, guidance_reply, make_analysis_input, make_client


# ---------------------------------------------------------------------------
# Debate
# ---------------------------------------------------------------------------


class TestDebate:
    def test_valid_debate_passes(self):
        debate = check_debate(debate_reply(), make_analysis_input())
        assert debate.advocate_assessment.arguments[0].evidence_refs == ["E1", "E2"]
        assert debate.advocate_assessment.confidence == "high"

    def test_unknown_evidence_ref_rejected(self):
        with pytest.raises(StageValidationError) as exc_info:
            check_debate(debate_reply(refs=("E1", "E99")), make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_EVIDENCE_REFS
        assert "E99" in str(exc_info.value)

    def test_unknown_key_rejected(self):
        reply = debate_reply()
        reply["advocateAssessment"]["score"] = 4
        with pytest.raises(StageValidationError) as exc_info:
            check_debate(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_empty_arguments_rejected(self):
        reply = debate_reply()
        reply["examinerAssessment"]["arguments"] = []
        with pytest.raises(StageValidationError) as exc_info:
            check_debate(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_snake_case_keys_rejected(self):
        reply = debate_reply()
        reply = {
            "advocate_assessment": reply["advocateAssessment"],
            "examiner_assessment": reply["examinerAssessment"],
        }
        with pytest.raises(StageValidationError) as exc_info:
            check_debate(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_snake_case_nested_key_rejected(self):
        reply = debate_reply()
        argument = reply["advocateAssessment"]["arguments"][0]
        argument["evidence_refs"] = argument.pop("evidenceRefs")
        with pytest.raises(StageValidationError) as exc_info:
            check_debate(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_malformed_ref_rejected_by_schema(self):
        with pytest.raises(StageValidationError) as exc_info:
            check_debate(debate_reply(refs=("evidence-1",)), make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_peer_comparison_claim_sanitized(self):
        reply = debate_reply()
        reply["advocateAssessment"]["arguments"][0]["claim"] = "Ships faster compared to the team average."
        debate = check_debate(reply, make_analysis_input())
        assert debate.advocate_assessment.arguments[0].claim == ADVOCATE_CLAIM_FALLBACK

    def test_partial_sufficiency_caps_confidence(self):
        debate = check_debate(debate_reply(), make_analysis_input(level="partial"))
        assert debate.advocate_assessment.confidence == "medium"
        assert debate.examiner_assessment.confidence == "medium"

    @pytest.mark.asyncio
    async def test_invalid_json_carries_usage(self, limiter):
        client = make_client("not json at all")
        with pytest.raises(StageValidationError) as exc_info:
            await generate_combined_debate(make_analysis_input(), client, limiter)
        assert exc_info.value.code == ErrorKind.INVALID_JSON
        assert exc_info.value.usage.total_tokens == 150

    @pytest.mark.asyncio
    async def test_prompt_contains_catalog_and_kpis(self, limiter):
        client = make_client(debate_reply())
        stage = await generate_combined_debate(make_analysis_input(), client, limiter)
        prompt, system = client.generate.await_args.args
        assert '"evidenceCatalog"' in prompt
        assert "SustainableWorkPattern" in prompt
        assert "Return JSON only." in system
        assert stage.model == "test-model"


# ---------------------------------------------------------------------------
# Arbiter
# ---------------------------------------------------------------------------


class TestArbiter:
    def test_ineligible_bonus_approval_coerced_to_defer(self):
        decision = check_arbiter(arbiter_reply(bonus="approve"), make_analysis_input(bonus=False))
        assert decision.final_recommendation.bonus == "defer"
        assert decision.final_recommendation.promotion == "defer"
        assert any("coerced to defer due to ineligibility" in n for n in decision.notes_for_hr)
        assert all(parse_citation_refs(n) for n in decision.notes_for_hr)

    def test_eligible_approval_kept(self):
        decision = check_arbiter(arbiter_reply(bonus="approve"), make_analysis_input(bonus=True))
        assert decision.final_recommendation.bonus == "approve"
        assert len(decision.notes_for_hr) == 1

    @pytest.mark.parametrize("camel, snake", [
        ("finalRecommendation", "final_recommendation"),
        ("unresolvedQuestions", "unresolved_questions"),
        ("notesForHR", "notes_for_hr"),
    ])
    def test_snake_case_keys_rejected(self, camel, snake):
        reply = arbiter_reply()
        reply[snake] = reply.pop(camel)
        with pytest.raises(StageValidationError) as exc_info:
            check_arbiter(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_missing_citation_rejected(self):
        reply = arbiter_reply(rationale=["Delivery is consistent across the quarter"])
        with pytest.raises(StageValidationError) as exc_info:
            check_arbiter(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_CITATIONS

    def test_missing_citation_checked_before_coercion(self):
        reply = arbiter_reply(bonus="approve", rationale=["No citation here"])
        with pytest.raises(StageValidationError) as exc_info:
            check_arbiter(reply, make_analysis_input(bonus=False))
        assert exc_info.value.code == ErrorKind.INVALID_CITATIONS

    def test_unknown_citation_rejected(self):
        reply = arbiter_reply(rationale=["Consistent delivery refs:[E1, E99]"])
        with pytest.raises(StageValidationError) as exc_info:
            check_arbiter(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_EVIDENCE_REFS

    def test_peer_comparison_rationale_keeps_citation(self):
        reply = arbiter_reply(rationale=["Stronger than peers this quarter refs:[E2]"])
        decision = check_arbiter(reply, make_analysis_input())
        line = decision.rationale[0]
        assert "peers" not in line
        assert parse_citation_refs(line) == ["E2"]

    def test_peer_comparison_question_sanitized(self):
        reply = arbiter_reply()
        reply["unresolvedQuestions"] = ["How does this compare relative to other employees?"]
        decision = check_arbiter(reply, make_analysis_input())
        assert decision.unresolved_questions == [QUESTION_FALLBACK]

    def test_notes_for_hr_may_be_empty(self):
        reply = arbiter_reply(bonus="deny")
        reply["notesForHR"] = []
        decision = check_arbiter(reply, make_analysis_input())
        assert decision.notes_for_hr == []
        assert decision.dump()["notesForHR"] == []

    def test_insufficient_data_forces_low_confidence(self):
        decision = check_arbiter(arbiter_reply(), make_analysis_input(level="insufficient"))
        assert decision.confidence == "low"

    @pytest.mark.asyncio
    async def test_generate_arbiter_decision(self, limiter):
        inp = make_analysis_input(bonus=False)
        debate = check_debate(debate_reply(), inp)
        client = make_client(arbiter_reply())
        stage = await generate_arbiter_decision(inp, debate, client, limiter)
        assert stage.output.final_recommendation.bonus == "defer"
        assert stage.usage.input_tokens == 100
        prompt, _ = client.generate.await_args.args
        assert '"eligibility"' in prompt
        assert '"advocateAssessment"' in prompt


# ---------------------------------------------------------------------------
# Guidance
# ---------------------------------------------------------------------------


class TestGuidance:
    def test_valid_guidance_passes(self):
        guidance = check_guidance(guidance_reply(), make_analysis_input())
        assert guidance.employee_pings[0].theme == "workload"
        assert guidance.manager_coaching.evidence_refs == ["E3", "E4"]

    def test_compensation_language_in_ping_rejected(self):
        reply = guidance_reply(message="Great quarter, a bonus may follow.")
        with pytest.raises(StageValidationError) as exc_info:
            check_guidance(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.PROHIBITED_CONTENT

    def test_unknown_theme_rejected(self):
        reply = guidance_reply()
        reply["employeePings"][0]["theme"] = "compensation"
        with pytest.raises(StageValidationError) as exc_info:
            check_guidance(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_SCHEMA

    def test_unknown_coaching_ref_rejected(self):
        reply = guidance_reply()
        reply["managerCoaching"]["evidenceRefs"] = ["E42"]
        with pytest.raises(StageValidationError) as exc_info:
            check_guidance(reply, make_analysis_input())
        assert exc_info.value.code == ErrorKind.INVALID_EVIDENCE_REFS

    def test_peer_comparison_sanitized(self):
        reply = guidance_reply(message="Your output trails your peers.")
        reply["managerCoaching"]["doNotAssume"] = ["Relative to the team average they are slow."]
        guidance = check_guidance(reply, make_analysis_input())
        assert "peers" not in guidance.employee_pings[0].message
        assert "workload" in guidance.employee_pings[0].message
        assert guidance.manager_coaching.do_not_assume == [DO_NOT_ASSUME_FALLBACK]

    def test_partial_data_caps_ping_confidence(self):
        guidance = check_guidance(guidance_reply(), make_analysis_input(level="partial"))
        assert guidance.employee_pings[0].confidence == "medium"

    @pytest.mark.asyncio
    async def test_generate_combined_guidance_attaches_usage_on_failure(self, limiter):
        inp = make_analysis_input()
        debate = check_debate(debate_reply(), inp)
        arbiter = check_arbiter(arbiter_reply(), inp)
        client = make_client(guidance_reply(message="Let's talk about your salary."))
        with pytest.raises(StageValidationError) as exc_info:
            await generate_combined_guidance(inp, debate, arbiter, client, limiter)
        assert exc_info.value.usage is not None


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def test_cap_confidence():
    inp = make_analysis_input(level="partial")
    assert cap_confidence("high", inp.data_sufficiency) == "medium"
    assert cap_confidence("low", inp.data_sufficiency) == "low"


def test_unknown_role_uses_fallback_baseline():
    assert role_kpi_baseline("DESIGNER") == FALLBACK_KPI_BASELINE
    assert "QualityAndReliability\"" not in kpi_prompt_block("DESIGNER")
    assert "\"Sustainability\"" in kpi_prompt_block("DESIGNER")


def test_kpi_overrides_from_yaml(tmp_path, monkeypatch):
    from cadence.config import Settings

    path = tmp_path / "kpi_baselines.yaml"
    path.write_text(
        "roles:\n"
        "  DESIGNER:\n"
        "    - kpi: Craft\n"
        "      expectation: Ships polished flows.\n",
        encoding="utf-8",
    )
    settings = Settings(kpi_baselines_file=path)
    monkeypatch.setattr("cadence.manager_analysis.get_settings", lambda: settings)
    assert [row["kpi"] for row in role_kpi_baseline("DESIGNER")] == ["Craft"]
