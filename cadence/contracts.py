"""Strict output contracts for the debate, arbiter and guidance stages.

Unknown keys, wrong types, empty required lists and malformed evidence ids
are all rejected. Wire names are camelCase.
"""
from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr, StringConstraints
from pydantic.alias_generators import to_camel

from cadence.domain import ConfidenceLevel

EvidenceId = Annotated[StrictStr, StringConstraints(pattern=r"^E\d+$")]
NonEmptyStr = Annotated[StrictStr, StringConstraints(min_length=1)]


class StrictContract(BaseModel):
    # Only the camelCase wire names validate.
    model_config = ConfigDict(alias_generator=to_camel, extra="forbid")

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Debate
# ---------------------------------------------------------------------------


class DebateArgument(StrictContract):
    claim: NonEmptyStr
    evidence_refs: list[EvidenceId] = Field(min_length=1)


class DebateRecommendation(StrictContract):
    bonus: Literal["yes", "no", "defer"]
    promotion: Literal["yes", "no", "not_ready"]


class AdvocateAssessment(StrictContract):
    stance: Literal["support_reward"]
    arguments: list[DebateArgument] = Field(min_length=1)
    recommendation: DebateRecommendation
    confidence: ConfidenceLevel


class ExaminerAssessment(StrictContract):
    stance: Literal["caution_reward"]
    arguments: list[DebateArgument] = Field(min_length=1)
    risks: list[NonEmptyStr] = Field(min_length=1)
    recommendation: DebateRecommendation
    confidence: ConfidenceLevel


class CombinedDebate(StrictContract):
    advocate_assessment: AdvocateAssessment
    examiner_assessment: ExaminerAssessment


# ---------------------------------------------------------------------------
# Arbiter
# ---------------------------------------------------------------------------


class FinalRecommendation(StrictContract):
    bonus: Literal["approve", "defer", "deny"]
    promotion: Literal["approve", "defer", "deny"]


class ArbiterDecisionOutput(StrictContract):
    final_recommendation: FinalRecommendation
    rationale: list[NonEmptyStr] = Field(min_length=1)
    unresolved_questions: list[NonEmptyStr] = Field(min_length=1)
    confidence: ConfidenceLevel
    notes_for_hr: list[NonEmptyStr] = Field(alias="notesForHR")


# ---------------------------------------------------------------------------
# Guidance
# ---------------------------------------------------------------------------


class EmployeePing(StrictContract):
    theme: Literal["workload", "growth", "collaboration", "focus"]
    message: NonEmptyStr
    evidence_refs: list[EvidenceId] = Field(min_length=1)
    confidence: ConfidenceLevel


class ManagerCoaching(StrictContract):
    focus_areas: list[NonEmptyStr] = Field(min_length=1)
    suggested_questions: list[NonEmptyStr] = Field(min_length=1)
    do_not_assume: list[NonEmptyStr] = Field(min_length=1)
    evidence_refs: list[EvidenceId] = Field(min_length=1)
    confidence: ConfidenceLevel


class CombinedGuidance(StrictContract):
    employee_pings: list[EmployeePing] = Field(min_length=1)
    manager_coaching: ManagerCoaching
