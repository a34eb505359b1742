"""Pydantic request/response schemas for the Cadence API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class _CamelSchema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateReportRequest(_CamelSchema):
    employee_email: str
    start_date: str | None = None
    end_date: str | None = None

    @field_validator("employee_email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("employeeEmail must not be empty")
        return v


class GenerateReportOut(_CamelSchema):
    status: str
    monthly_generated: int
    quarterly_generated: int


class RunSummaryOut(_CamelSchema):
    id: int
    employee_email: str
    manager_email: str
    quarter: str
    status: str
    checkpoint: str | None = None
    failed_stage: str | None = None
    failure_reason: str | None = None
    stage_usage: dict[str, Any] = {}
    data_sufficiency: dict[str, Any] = {}
    evidence_catalog_size: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str | None = None


class RunDetailOut(RunSummaryOut):
    request_payload: dict[str, Any] = {}
    evidence_catalog: list[dict[str, Any]] = []
    debate: dict[str, Any] = {}
    arbiter: dict[str, Any] | None = None
    employee_prompts: list[dict[str, Any]] = []
    manager_feedback: dict[str, Any] | None = None


class EligibilityOut(_CamelSchema):
    bonus_eligible: bool
    promotion_eligible: bool


class ProfileRunOut(_CamelSchema):
    id: int
    quarter: str
    status: str


class ManagerProfileOut(_CamelSchema):
    context: EligibilityOut | None = None
    latest_run: ProfileRunOut | None = None
    bonus_recommendation: Literal["approve", "defer", "deny"] | None = None
    promotion_recommendation: Literal["approve", "defer", "deny"] | None = None
    unresolved_questions: list[str] = []
    suggested_questions: list[str] = []
    focus_areas: list[str] = []
