"""Persistence helpers: synthesis row conversion and analysis-run writes."""
from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from cadence.domain import (
    DIMENSIONS,
    CONFIDENCE_LEVELS,
    ConfidenceLevel,
    DataSufficiency,
    EvidenceRef,
    EvidenceSnapshot,
    MonthlySynthesis,
    QuarterlySynthesis,
)
from cadence.insights import SinglePassResult
from cadence.models import (
    AnalysisRun,
    ArbiterDecision,
    DebateResponse,
    Employee,
    EmployeeAnalysisContext,
    EmployeePrompt,
    ManagerFeedback,
    MonthlyInsight,
    QuarterlyInsight,
)
from cadence.sufficiency import parse_data_sufficiency
from cadence.utils import as_string_list, json_parse

log = logging.getLogger(__name__)

EVIDENCE_SOURCES = ("github_weekly_activity", "slack_weekly_activity")


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_employee(session: Session, email: str) -> Employee | None:
    return session.execute(select(Employee).where(Employee.email == email)).scalar_one_or_none()


def get_analysis_context(session: Session, email: str) -> EmployeeAnalysisContext | None:
    return session.execute(
        select(EmployeeAnalysisContext).where(EmployeeAnalysisContext.employee_email == email)
    ).scalar_one_or_none()


def find_running_run(session: Session, email: str, quarter: str) -> AnalysisRun | None:
    return session.execute(
        select(AnalysisRun)
        .where(AnalysisRun.employee_email == email, AnalysisRun.quarter == quarter, AnalysisRun.status == "running")
        .limit(1)
    ).scalar_one_or_none()


def latest_quarterly_row(session: Session, email: str, quarter: str) -> QuarterlyInsight | None:
    return session.execute(
        select(QuarterlyInsight)
        .where(QuarterlyInsight.employee_email == email, QuarterlyInsight.quarter == quarter)
        .order_by(QuarterlyInsight.created_at.desc(), QuarterlyInsight.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def latest_monthly_rows(session: Session, email: str, months: Iterable[str]) -> dict[str, MonthlyInsight]:
    rows = session.execute(
        select(MonthlyInsight)
        .where(MonthlyInsight.employee_email == email, MonthlyInsight.month.in_(list(months)))
        .order_by(MonthlyInsight.created_at.desc(), MonthlyInsight.id.desc())
    ).scalars()
    latest: dict[str, MonthlyInsight] = {}
    for row in rows:
        latest.setdefault(row.month, row)
    return latest


# ---------------------------------------------------------------------------
# Row -> domain
# ---------------------------------------------------------------------------


def _confidence(raw: Any) -> ConfidenceLevel:
    return raw if raw in CONFIDENCE_LEVELS else "low"


def _stored_evidence(raw: Any) -> list[EvidenceRef]:
    if not isinstance(raw, list):
        return []
    out = []
    for entry in raw:
        if (
            isinstance(entry, dict)
            and entry.get("source") in EVIDENCE_SOURCES
            and isinstance(entry.get("weekStart"), str)
            and isinstance(entry.get("fields"), list)
            and isinstance(entry.get("summary"), str)
        ):
            out.append(EvidenceRef(
                source=entry["source"],
                week_start=entry["weekStart"],
                fields=[str(f) for f in entry["fields"]],
                summary=entry["summary"],
            ))
    return out


def _stored_snapshots(raw: Any) -> list[EvidenceSnapshot]:
    if not isinstance(raw, list):
        return []
    return [
        EvidenceSnapshot(
            signal_id=entry["signalId"], dimension=entry["dimension"],
            evidence=_stored_evidence(entry.get("evidence")),
        )
        for entry in raw
        if isinstance(entry, dict) and isinstance(entry.get("signalId"), str) and entry.get("dimension") in DIMENSIONS
    ]


def monthly_from_row(row: MonthlyInsight) -> MonthlySynthesis:
    return MonthlySynthesis(
        overall_summary=row.overall_summary or "",
        identified_risks=as_string_list(json_parse(row.identified_risks_json, [])),
        identified_opportunities=as_string_list(json_parse(row.identified_opportunities_json, [])),
        confidence=_confidence(row.confidence_level),
        model=row.generated_by_model or "",
        model_version=row.model_version or "",
    )


def quarterly_from_row(row: QuarterlyInsight) -> QuarterlySynthesis:
    return QuarterlySynthesis(
        trajectory_summary=row.trajectory_summary or "",
        key_strengths=as_string_list(json_parse(row.key_strengths_json, [])),
        key_concerns=as_string_list(json_parse(row.key_concerns_json, [])),
        burnout_assessment=row.burnout_assessment or "",
        growth_assessment=row.growth_assessment or "",
        retention_assessment=row.retention_assessment or "",
        recommended_actions=as_string_list(json_parse(row.recommended_actions_json, [])),
        evidence_snapshots=_stored_snapshots(json_parse(row.evidence_snapshots_json, [])),
        confidence=_confidence(row.confidence_level),
        model=row.generated_by_model or "",
        model_version=row.model_version or "",
    )


def quarterly_sufficiency(row: QuarterlyInsight) -> DataSufficiency:
    return parse_data_sufficiency(json_parse(row.data_sufficiency_json, None), _confidence(row.confidence_level))


# ---------------------------------------------------------------------------
# Synthesis writes (append-only)
# ---------------------------------------------------------------------------


def add_monthly_insight(session: Session, email: str, result: SinglePassResult) -> MonthlyInsight:
    s = result.synthesis
    insights = result.dimension_insights
    row = MonthlyInsight(
        employee_email=email,
        month=result.period_key,
        execution_insight=insights["Execution"].insight,
        engagement_insight=insights["Engagement"].insight,
        collaboration_insight=insights["Collaboration"].insight,
        growth_insight=insights["Growth"].insight,
        overall_summary=s.overall_summary,
        identified_risks_json=json.dumps(s.identified_risks),
        identified_opportunities_json=json.dumps(s.identified_opportunities),
        supporting_signals_json=json.dumps([sig.dump() for sig in result.all_signals]),
        data_sufficiency_json=json.dumps(result.data_sufficiency.dump()),
        confidence_level=s.confidence,
        generated_by_model=s.model,
        model_version=s.model_version,
        created_at=utcnow(),
    )
    session.add(row)
    return row


def add_quarterly_insight(session: Session, email: str, result: SinglePassResult) -> QuarterlyInsight:
    s = result.synthesis
    row = QuarterlyInsight(
        employee_email=email,
        quarter=result.period_key,
        trajectory_summary=s.trajectory_summary,
        key_strengths_json=json.dumps(s.key_strengths),
        key_concerns_json=json.dumps(s.key_concerns),
        burnout_assessment=s.burnout_assessment,
        growth_assessment=s.growth_assessment,
        retention_assessment=s.retention_assessment,
        recommended_actions_json=json.dumps(s.recommended_actions),
        evidence_snapshots_json=json.dumps([snap.dump() for snap in s.evidence_snapshots]),
        data_sufficiency_json=json.dumps(result.data_sufficiency.dump()),
        confidence_level=s.confidence,
        generated_by_model=s.model,
        model_version=s.model_version,
        created_at=utcnow(),
    )
    session.add(row)
    return row


# ---------------------------------------------------------------------------
# Analysis-run writes
# ---------------------------------------------------------------------------


def insert_run(
    session: Session,
    *,
    employee_email: str,
    manager_email: str,
    quarter: str,
    request_payload: dict[str, Any],
    evidence_catalog: list[dict[str, Any]],
    data_sufficiency: dict[str, Any],
    stage_usage: dict[str, Any],
) -> AnalysisRun:
    now = utcnow()
    run = AnalysisRun(
        employee_email=employee_email,
        manager_email=manager_email,
        quarter=quarter,
        status="running",
        checkpoint="running",
        request_payload_json=json.dumps(request_payload),
        evidence_catalog_json=json.dumps(evidence_catalog),
        data_sufficiency_json=json.dumps(data_sufficiency),
        stage_usage_json=json.dumps(stage_usage),
        started_at=now,
        created_at=now,
    )
    session.add(run)
    session.commit()
    return run


def save_stage_usage(session: Session, run: AnalysisRun, stage_usage: dict[str, Any]) -> None:
    run.stage_usage_json = json.dumps(stage_usage)
    session.commit()


def save_checkpoint(session: Session, run: AnalysisRun, checkpoint: str) -> None:
    run.checkpoint = checkpoint
    session.commit()


def save_debate(session: Session, run: AnalysisRun, stage: Any, checkpoint: str) -> None:
    """Write both debate responses and the checkpoint in one commit."""
    output = stage.output
    for role, assessment in (
        ("advocate", output.advocate_assessment),
        ("examiner", output.examiner_assessment),
    ):
        session.add(DebateResponse(
            run_id=run.id,
            agent_role=role,
            payload_json=json.dumps(assessment.dump()),
            confidence_level=assessment.confidence,
            generated_by_model=stage.model,
            model_version=stage.model_version,
            created_at=utcnow(),
        ))
    run.checkpoint = checkpoint
    session.commit()


def save_arbiter(session: Session, run: AnalysisRun, stage: Any, checkpoint: str) -> None:
    session.add(ArbiterDecision(
        run_id=run.id,
        payload_json=json.dumps(stage.output.dump()),
        confidence_level=stage.output.confidence,
        generated_by_model=stage.model,
        model_version=stage.model_version,
        created_at=utcnow(),
    ))
    run.checkpoint = checkpoint
    session.commit()


def complete_run_with_guidance(
    session: Session, run: AnalysisRun, stage: Any, stage_usage: dict[str, Any], checkpoint: str,
) -> None:
    """Write prompts, manager feedback and the completed status in one commit."""
    guidance = stage.output
    for ping in guidance.employee_pings:
        session.add(EmployeePrompt(
            run_id=run.id,
            employee_email=run.employee_email,
            quarter=run.quarter,
            theme=ping.theme,
            message=ping.message,
            evidence_refs_json=json.dumps(ping.evidence_refs),
            confidence_level=ping.confidence,
            created_at=utcnow(),
        ))
    coaching = guidance.manager_coaching
    session.add(ManagerFeedback(
        run_id=run.id,
        manager_email=run.manager_email,
        focus_areas_json=json.dumps(coaching.focus_areas),
        suggested_questions_json=json.dumps(coaching.suggested_questions),
        do_not_assume_json=json.dumps(coaching.do_not_assume),
        evidence_refs_json=json.dumps(coaching.evidence_refs),
        confidence_level=coaching.confidence,
        created_at=utcnow(),
    ))
    run.status = "completed"
    run.checkpoint = checkpoint
    run.stage_usage_json = json.dumps(stage_usage)
    run.completed_at = utcnow()
    session.commit()


def mark_run_failed(
    session: Session, run: AnalysisRun, failed_stage: str, reason: str, stage_usage: dict[str, Any],
) -> None:
    session.rollback()
    run.status = "failed"
    run.checkpoint = "failed"
    run.failed_stage = failed_stage
    run.failure_reason = reason
    run.stage_usage_json = json.dumps(stage_usage)
    run.completed_at = utcnow()
    session.commit()
