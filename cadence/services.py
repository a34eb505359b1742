"""Shared business logic for the Cadence API and MCP server."""
from __future__ import annotations

import logging
import re
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from cadence import store
from cadence.config import get_settings
from cadence.insights import generate_monthly_insights_single_pass, generate_quarterly_insights_single_pass
from cadence.models import (
    AnalysisRun,
    DebateResponse,
    Employee,
    GithubWeeklyActivity,
    MonthlyInsight,
    SlackWeeklyActivity,
)
from cadence.rate_limiter import LLMRateLimiter
from cadence.utils import as_string_list, json_parse, month_key, quarter_key, to_iso_date

log = logging.getLogger(__name__)

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
RECENT_RUN_LIMIT = 20
STALE_MESSAGE = "No monthly report generated yet in the last week."


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Report generation
# ---------------------------------------------------------------------------


def _parse_date(value: str) -> date | None:
    if not DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def resolve_report_window(
    start_date: str | None, end_date: str | None, today: date | None = None,
) -> tuple[date, date | None]:
    """Validate an optional backfill window; default to the lookback period."""
    if (start_date is None) != (end_date is None):
        raise ValueError("Both `startDate` and `endDate` are required when using a backfill window.")
    if start_date is None:
        today = today or date.today()
        return today - timedelta(weeks=get_settings().insight_lookback_weeks), None
    start, end = _parse_date(start_date.strip()), _parse_date(end_date.strip())
    if start is None or end is None:
        raise ValueError("`startDate` and `endDate` must be in YYYY-MM-DD format.")
    if start > end:
        raise ValueError("`startDate` must be less than or equal to `endDate`.")
    return start, end


def _weekly_rows(session: Session, model, email: str, start: date, end: date | None) -> list:
    stmt = select(model).where(model.employee_email == email, model.week_start >= start)
    if end is not None:
        stmt = stmt.where(model.week_start <= end)
    return list(session.execute(stmt.order_by(model.week_start)).scalars())


def group_by_period(github_weekly: list, slack_weekly: list, period_type: str) -> dict[str, dict[str, list]]:
    keyfn = month_key if period_type == "month" else quarter_key
    buckets: dict[str, dict[str, list]] = defaultdict(lambda: {"github": [], "slack": []})
    for week in github_weekly:
        buckets[keyfn(to_iso_date(week.week_start))]["github"].append(week)
    for week in slack_weekly:
        buckets[keyfn(to_iso_date(week.week_start))]["slack"].append(week)
    return dict(buckets)


async def generate_report(
    session: Session,
    employee_email: str,
    client: Any,
    limiter: LLMRateLimiter,
    start_date: str | None = None,
    end_date: str | None = None,
    today: date | None = None,
) -> dict[str, Any]:
    """Generate monthly then quarterly single-pass insights for every period in the window.

    Raises ``ValueError`` for bad input and ``LookupError`` for an unknown employee.
    Each synthesis row is appended and committed as soon as it is generated.
    """
    email = normalize_email(employee_email)
    if not email:
        raise ValueError("Missing `employeeEmail` string.")
    start, end = resolve_report_window(start_date, end_date, today)
    if store.get_employee(session, email) is None:
        raise LookupError("Employee not found.")

    github = _weekly_rows(session, GithubWeeklyActivity, email, start, end)
    slack = _weekly_rows(session, SlackWeeklyActivity, email, start, end)

    monthly_generated = 0
    monthly = group_by_period(github, slack, "month")
    for key in sorted(monthly):
        bucket = monthly[key]
        result = await generate_monthly_insights_single_pass(key, bucket["github"], bucket["slack"], client, limiter)
        store.add_monthly_insight(session, email, result)
        session.commit()
        monthly_generated += 1

    quarterly_generated = 0
    quarterly = group_by_period(github, slack, "quarter")
    for key in sorted(quarterly):
        bucket = quarterly[key]
        result = await generate_quarterly_insights_single_pass(key, bucket["github"], bucket["slack"], client, limiter)
        store.add_quarterly_insight(session, email, result)
        session.commit()
        quarterly_generated += 1

    log.info("Report for %s: %d monthly, %d quarterly", email, monthly_generated, quarterly_generated)
    return {"status": "success", "monthlyGenerated": monthly_generated, "quarterlyGenerated": quarterly_generated}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def existing_monthly_report(session: Session, employee_email: str, now: datetime | None = None) -> dict[str, Any]:
    email = normalize_email(employee_email)
    missing = {"status": "missing", "stale": True, "message": STALE_MESSAGE, "lastGeneratedAt": None, "month": None}
    if not email:
        return missing
    latest = session.execute(
        select(MonthlyInsight)
        .where(MonthlyInsight.employee_email == email)
        .order_by(MonthlyInsight.created_at.desc(), MonthlyInsight.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is None:
        return missing

    now = now or store.utcnow()
    window = timedelta(days=get_settings().monthly_report_stale_after_days)
    if now - latest.created_at > window:
        return {
            "status": "stale", "stale": True, "message": STALE_MESSAGE,
            "lastGeneratedAt": _iso(latest.created_at), "month": latest.month,
        }
    return {
        "status": "ready",
        "stale": False,
        "month": latest.month,
        "generatedAt": _iso(latest.created_at),
        "report": {
            "executionInsight": latest.execution_insight,
            "engagementInsight": latest.engagement_insight,
            "collaborationInsight": latest.collaboration_insight,
            "growthInsight": latest.growth_insight,
            "overallSummary": latest.overall_summary,
            "identifiedRisks": as_string_list(json_parse(latest.identified_risks_json, [])),
            "identifiedOpportunities": as_string_list(json_parse(latest.identified_opportunities_json, [])),
        },
    }


def _debate_message(employee_id: int, row: DebateResponse) -> dict[str, Any]:
    payload = json_parse(row.payload_json, {})
    payload = payload if isinstance(payload, dict) else {}
    arguments = [
        {"claim": str(a.get("claim", "")).strip(), "evidenceRefs": as_string_list(a.get("evidenceRefs"))}
        for a in payload.get("arguments") or []
        if isinstance(a, dict) and str(a.get("claim", "")).strip()
    ]
    rec = payload.get("recommendation")
    recommendation = None
    if isinstance(rec, dict) and (rec.get("bonus") or rec.get("promotion")):
        recommendation = {"bonus": str(rec.get("bonus") or ""), "promotion": str(rec.get("promotion") or "")}
    return {
        "employeeId": employee_id,
        "agentRole": row.agent_role,
        "stance": str(payload.get("stance") or ""),
        "confidenceLevel": row.confidence_level,
        "arguments": arguments,
        "risks": as_string_list(payload.get("risks")),
        "recommendation": recommendation,
        "createdAt": _iso(row.created_at),
    }


def _recent_runs(session: Session, email: str) -> list[AnalysisRun]:
    return list(session.execute(
        select(AnalysisRun)
        .where(AnalysisRun.employee_email == email)
        .order_by(AnalysisRun.created_at.desc(), AnalysisRun.id.desc())
        .limit(RECENT_RUN_LIMIT)
    ).scalars().all())


def latest_debate_feed(session: Session, employee_email: str) -> dict[str, Any] | None:
    """Debate messages of the most recent run (among the last 20) that stored any."""
    email = normalize_email(employee_email)
    if not email:
        return None
    employee = store.get_employee(session, email)
    if employee is None:
        return None
    for run in _recent_runs(session, email):
        rows = [r for r in run.debate_responses if r.agent_role in ("advocate", "examiner")]
        if not rows:
            continue
        rows.sort(key=lambda r: (r.created_at, r.id))
        return {
            "run": {
                "id": run.id,
                "employeeId": employee.id,
                "quarter": run.quarter,
                "status": run.status,
                "createdAt": _iso(run.created_at),
                "completedAt": _iso(run.completed_at),
            },
            "messages": [_debate_message(employee.id, r) for r in rows],
        }
    return None


DECISIONS = ("approve", "defer", "deny")


def manager_profile_insights(session: Session, employee_email: str) -> dict[str, Any]:
    """Manager-facing summary: eligibility, latest arbiter recommendation and coaching.

    Picks the most recent of the last 20 runs that stored manager feedback or
    an arbiter decision, falling back to the most recent run.
    """
    profile: dict[str, Any] = {
        "context": None,
        "latestRun": None,
        "bonusRecommendation": None,
        "promotionRecommendation": None,
        "unresolvedQuestions": [],
        "suggestedQuestions": [],
        "focusAreas": [],
    }
    email = normalize_email(employee_email)
    if not email:
        return profile

    context = store.get_analysis_context(session, email)
    if context is not None:
        profile["context"] = {
            "bonusEligible": bool(context.bonus_eligible),
            "promotionEligible": bool(context.promotion_eligible),
        }
    runs = _recent_runs(session, email)
    if not runs:
        return profile

    run = next((r for r in runs if r.manager_feedback or r.arbiter_decision), runs[0])
    profile["latestRun"] = {"id": run.id, "quarter": run.quarter, "status": run.status}

    if run.arbiter_decision is not None:
        payload = json_parse(run.arbiter_decision.payload_json, {})
        final = payload.get("finalRecommendation") if isinstance(payload, dict) else None
        if isinstance(final, dict):
            profile["bonusRecommendation"] = final.get("bonus") if final.get("bonus") in DECISIONS else None
            profile["promotionRecommendation"] = (
                final.get("promotion") if final.get("promotion") in DECISIONS else None
            )
        if isinstance(payload, dict):
            profile["unresolvedQuestions"] = as_string_list(payload.get("unresolvedQuestions"))
    if run.manager_feedback is not None:
        profile["suggestedQuestions"] = as_string_list(json_parse(run.manager_feedback.suggested_questions_json, []))
        profile["focusAreas"] = as_string_list(json_parse(run.manager_feedback.focus_areas_json, []))
    return profile


def run_summary(run: AnalysisRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "employeeEmail": run.employee_email,
        "managerEmail": run.manager_email,
        "quarter": run.quarter,
        "status": run.status,
        "checkpoint": run.checkpoint,
        "failedStage": run.failed_stage,
        "failureReason": run.failure_reason,
        "stageUsage": json_parse(run.stage_usage_json, {}),
        "dataSufficiency": json_parse(run.data_sufficiency_json, {}),
        "evidenceCatalogSize": len(json_parse(run.evidence_catalog_json, [])),
        "startedAt": _iso(run.started_at),
        "completedAt": _iso(run.completed_at),
        "createdAt": _iso(run.created_at),
    }


def run_detail(run: AnalysisRun) -> dict[str, Any]:
    base = run_summary(run)
    base["requestPayload"] = json_parse(run.request_payload_json, {})
    base["evidenceCatalog"] = json_parse(run.evidence_catalog_json, [])
    base["debate"] = {r.agent_role: json_parse(r.payload_json, {}) for r in run.debate_responses}
    base["arbiter"] = json_parse(run.arbiter_decision.payload_json, {}) if run.arbiter_decision else None
    base["employeePrompts"] = [
        {
            "theme": p.theme, "message": p.message,
            "evidenceRefs": json_parse(p.evidence_refs_json, []), "confidence": p.confidence_level,
        }
        for p in run.employee_prompts
    ]
    fb = run.manager_feedback
    base["managerFeedback"] = {
        "focusAreas": json_parse(fb.focus_areas_json, []),
        "suggestedQuestions": json_parse(fb.suggested_questions_json, []),
        "doNotAssume": json_parse(fb.do_not_assume_json, []),
        "evidenceRefs": json_parse(fb.evidence_refs_json, []),
        "confidence": fb.confidence_level,
    } if fb else None
    return base


def list_runs(session: Session, employee_email: str, quarter: str | None = None) -> list[dict[str, Any]]:
    stmt = select(AnalysisRun).where(AnalysisRun.employee_email == normalize_email(employee_email))
    if quarter:
        stmt = stmt.where(AnalysisRun.quarter == quarter.strip())
    stmt = stmt.order_by(AnalysisRun.created_at.desc(), AnalysisRun.id.desc())
    return [run_summary(r) for r in session.execute(stmt).scalars()]


def employee_overview(session: Session) -> dict[str, Any]:
    employees = session.execute(select(Employee).order_by(Employee.email)).scalars().all()
    runs = session.execute(select(AnalysisRun.status)).scalars().all()
    by_status: dict[str, int] = defaultdict(int)
    for status in runs:
        by_status[status] += 1
    return {
        "employees": [{"email": e.email, "name": e.name, "role": e.role} for e in employees],
        "runsByStatus": dict(by_status),
    }
