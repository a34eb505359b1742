"""Manager-analysis run orchestration.

A run is driven through an explicit state machine::

    validating -> evidence_load -> running -> debate_done -> arbiter_done
               -> guidance_done -> completed
    (any state) -> failed

Validation and evidence-load failures return before a run row exists.
Once the run is inserted every failure marks it ``failed`` with the stage,
reason and the token usage gathered so far. Rows persisted by earlier
stages stay in place. From the insert on, every transition records its
state in ``analysis_run.checkpoint``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cadence import store
from cadence.domain import Eligibility, ManagerAnalysisInput
from cadence.errors import FailedStage, LLMCallError, StageValidationError
from cadence.evidence import build_evidence_catalog
from cadence.llm import usage_dict
from cadence.manager_analysis import (
    StageResult,
    generate_arbiter_decision,
    generate_combined_debate,
    generate_combined_guidance,
)
from cadence.models import AnalysisRun
from cadence.rate_limiter import LLMRateLimiter

log = logging.getLogger(__name__)

QUARTER_PATTERN = re.compile(r"^(\d{4})-Q([1-4])$")
MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class RunState(str, Enum):
    VALIDATING = "validating"
    EVIDENCE_LOAD = "evidence_load"
    RUNNING = "running"
    DEBATE_DONE = "debate_done"
    ARBITER_DONE = "arbiter_done"
    GUIDANCE_DONE = "guidance_done"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (RunState.COMPLETED, RunState.FAILED)


@dataclass
class OrchestrationResult:
    ok: bool
    http_status: int
    body: dict[str, Any]


@dataclass
class RunContext:
    """Mutable state carried between handlers for one invocation."""
    session: Session
    request: dict[str, Any]
    client: Any
    limiter: LLMRateLimiter
    state: RunState = RunState.VALIDATING
    employee_email: str = ""
    quarter: str = ""
    month_keys: list[str] = field(default_factory=list)
    manager_email: str = ""
    analysis_input: ManagerAnalysisInput | None = None
    run: AnalysisRun | None = None
    stage_usage: dict[str, Any] = field(
        default_factory=lambda: {"debate": None, "arbiter": None, "guidance": None}
    )
    debate: StageResult | None = None
    arbiter: StageResult | None = None
    guidance: StageResult | None = None
    result: OrchestrationResult | None = None

    @property
    def run_id(self) -> int | None:
        return self.run.id if self.run is not None else None

    def fail(self, http_status: int, failed_stage: FailedStage, error_code: str, message: str,
             run_id: int | None = None) -> RunState:
        self.result = OrchestrationResult(False, http_status, {
            "status": "failed",
            "runId": run_id if run_id is not None else self.run_id,
            "failedStage": failed_stage.value,
            "errorCode": error_code,
            "message": message,
        })
        return RunState.FAILED


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def expected_months(quarter: str) -> list[str] | None:
    m = QUARTER_PATTERN.match(quarter)
    if not m:
        return None
    year, q = m.group(1), int(m.group(2))
    base = (q - 1) * 3 + 1
    return [f"{year}-{month:02d}" for month in (base, base + 1, base + 2)]


def validate_month_keys(quarter: str, month_keys: Any) -> tuple[list[str] | None, str]:
    """Return ``(sorted months, "")`` or ``(None, error message)``."""
    if not isinstance(month_keys, list) or len(month_keys) != 3:
        return None, "monthKeys must be an array of three YYYY-MM values."
    normalized = sorted(str(m).strip() for m in month_keys)
    if len(set(normalized)) != 3:
        return None, "monthKeys must contain three unique months."
    if not all(MONTH_PATTERN.match(m) for m in normalized):
        return None, "monthKeys entries must match YYYY-MM."
    expected = expected_months(quarter)
    if expected is None:
        return None, "quarter must match YYYY-Q1 to YYYY-Q4."
    if normalized != sorted(expected):
        return None, "monthKeys must match the exact months for the selected quarter."
    return normalized, ""


async def _validate(ctx: RunContext) -> RunState:
    email = ctx.request.get("employeeEmail")
    quarter = ctx.request.get("quarter")
    ctx.employee_email = email.strip().lower() if isinstance(email, str) else ""
    ctx.quarter = quarter.strip() if isinstance(quarter, str) else ""

    if not ctx.employee_email:
        return ctx.fail(400, FailedStage.INPUT_VALIDATION, "invalid_employee_email", "employeeEmail is required.")
    if not QUARTER_PATTERN.match(ctx.quarter):
        return ctx.fail(
            400, FailedStage.INPUT_VALIDATION, "invalid_quarter", "quarter must match YYYY-Q1 to YYYY-Q4.",
        )
    months, message = validate_month_keys(ctx.quarter, ctx.request.get("monthKeys"))
    if months is None:
        return ctx.fail(400, FailedStage.INPUT_VALIDATION, "invalid_month_keys", message)
    ctx.month_keys = months
    return RunState.EVIDENCE_LOAD


# ---------------------------------------------------------------------------
# Evidence load
# ---------------------------------------------------------------------------


async def _load_evidence(ctx: RunContext) -> RunState:
    session = ctx.session
    existing = store.find_running_run(session, ctx.employee_email, ctx.quarter)
    if existing is not None:
        return ctx.fail(
            409, FailedStage.EVIDENCE_LOAD, "run_already_in_progress",
            "A manager analysis run is already in progress for this employee and quarter.",
            run_id=existing.id,
        )

    employee = store.get_employee(session, ctx.employee_email)
    if employee is None:
        return ctx.fail(404, FailedStage.EVIDENCE_LOAD, "employee_not_found", "Employee not found.")

    context = store.get_analysis_context(session, ctx.employee_email)
    if context is None:
        return ctx.fail(
            422, FailedStage.EVIDENCE_LOAD, "missing_analysis_context",
            "Missing employee_analysis_context row for this employee.",
        )

    quarterly_row = store.latest_quarterly_row(session, ctx.employee_email, ctx.quarter)
    if quarterly_row is None:
        return ctx.fail(
            409, FailedStage.EVIDENCE_LOAD, "missing_quarterly_evidence",
            "Required quarterly synthesis evidence was not found.",
        )

    monthly_rows = store.latest_monthly_rows(session, ctx.employee_email, ctx.month_keys)
    missing = [m for m in ctx.month_keys if m not in monthly_rows]
    if missing:
        return ctx.fail(
            409, FailedStage.EVIDENCE_LOAD, "missing_monthly_evidence",
            f"Required monthly synthesis evidence missing for: {', '.join(missing)}.",
        )

    quarterly = store.quarterly_from_row(quarterly_row)
    monthly_history = [(m, store.monthly_from_row(monthly_rows[m])) for m in ctx.month_keys]
    catalog = build_evidence_catalog(ctx.quarter, quarterly, monthly_history)
    if not catalog:
        return ctx.fail(
            409, FailedStage.EVIDENCE_LOAD, "empty_evidence_catalog",
            "Evidence catalog is empty; cannot run manager analysis.",
        )

    ctx.manager_email = context.manager_email
    ctx.analysis_input = ManagerAnalysisInput(
        employee_id=ctx.employee_email,
        manager_id=context.manager_email,
        role=employee.role,
        quarterly=quarterly,
        monthly_history=[synthesis for _, synthesis in monthly_history],
        data_sufficiency=store.quarterly_sufficiency(quarterly_row),
        eligibility=Eligibility(bonus=bool(context.bonus_eligible), promotion=bool(context.promotion_eligible)),
        evidence_catalog=catalog,
    )

    try:
        ctx.run = store.insert_run(
            session,
            employee_email=ctx.employee_email,
            manager_email=ctx.manager_email,
            quarter=ctx.quarter,
            request_payload={
                "employeeEmail": ctx.employee_email, "quarter": ctx.quarter, "monthKeys": ctx.month_keys,
            },
            evidence_catalog=[entry.dump() for entry in catalog],
            data_sufficiency=ctx.analysis_input.data_sufficiency.dump(),
            stage_usage=ctx.stage_usage,
        )
    except IntegrityError as exc:
        session.rollback()
        log.warning("Run insert conflict for %s %s: %s", ctx.employee_email, ctx.quarter, exc.orig)
        return ctx.fail(409, FailedStage.EVIDENCE_LOAD, "run_insert_conflict", str(exc.orig))

    log.info(
        "Analysis run %d created for %s %s (%d evidence entries)",
        ctx.run.id, ctx.employee_email, ctx.quarter, len(catalog),
    )
    return RunState.RUNNING


# ---------------------------------------------------------------------------
# Stage execution
# ---------------------------------------------------------------------------


def _fail_run(ctx: RunContext, failed_stage: FailedStage, error_code: str, message: str) -> RunState:
    log.warning("Analysis run %s failed at %s (%s): %s", ctx.run_id, failed_stage.value, error_code, message)
    try:
        store.mark_run_failed(ctx.session, ctx.run, failed_stage.value, message, ctx.stage_usage)
    except SQLAlchemyError:
        ctx.session.rollback()
        log.exception("Could not mark analysis run %s as failed", ctx.run_id)
    return ctx.fail(500, failed_stage, error_code, message)


async def _run_stage(
    ctx: RunContext, name: str, failed_stage: FailedStage, call: Callable[[], Awaitable[StageResult]],
) -> StageResult | None:
    """Run one generator stage; record usage; return None after marking the run failed."""
    try:
        stage = await call()
    except StageValidationError as exc:
        ctx.stage_usage[name] = usage_dict(exc.usage)
        _record_usage_best_effort(ctx)
        _fail_run(ctx, failed_stage, f"{name}_generation_failed", f"[{exc.code.value}] {exc}")
        return None
    except LLMCallError as exc:
        _fail_run(ctx, failed_stage, f"{name}_generation_failed", str(exc))
        return None
    except Exception as exc:
        # Runs never stay running after an unexpected error.
        log.exception("Unexpected error in %s stage of run %s", name, ctx.run_id)
        _fail_run(ctx, failed_stage, f"{name}_generation_failed", f"Unexpected error: {exc}")
        return None

    ctx.stage_usage[name] = usage_dict(stage.usage)
    try:
        store.save_stage_usage(ctx.session, ctx.run, ctx.stage_usage)
    except SQLAlchemyError as exc:
        _fail_run(ctx, FailedStage.PERSISTENCE, f"{name}_persistence_failed", str(exc))
        return None
    return stage


def _record_usage_best_effort(ctx: RunContext) -> None:
    # mark_run_failed writes stage usage again, so a failure here only loses the interim write.
    try:
        store.save_stage_usage(ctx.session, ctx.run, ctx.stage_usage)
    except SQLAlchemyError:
        ctx.session.rollback()
        log.warning("Could not record stage usage for run %s", ctx.run_id)


async def _debate(ctx: RunContext) -> RunState:
    stage = await _run_stage(
        ctx, "debate", FailedStage.DEBATE,
        lambda: generate_combined_debate(ctx.analysis_input, ctx.client, ctx.limiter),
    )
    if stage is None:
        return RunState.FAILED
    try:
        store.save_debate(ctx.session, ctx.run, stage, RunState.DEBATE_DONE.value)
    except SQLAlchemyError as exc:
        return _fail_run(ctx, FailedStage.PERSISTENCE, "debate_persistence_failed", str(exc))
    ctx.debate = stage
    log.info("Analysis run %d: debate stored", ctx.run.id)
    return RunState.DEBATE_DONE


async def _arbiter(ctx: RunContext) -> RunState:
    stage = await _run_stage(
        ctx, "arbiter", FailedStage.ARBITER,
        lambda: generate_arbiter_decision(ctx.analysis_input, ctx.debate.output, ctx.client, ctx.limiter),
    )
    if stage is None:
        return RunState.FAILED
    try:
        store.save_arbiter(ctx.session, ctx.run, stage, RunState.ARBITER_DONE.value)
    except SQLAlchemyError as exc:
        return _fail_run(ctx, FailedStage.PERSISTENCE, "arbiter_persistence_failed", str(exc))
    ctx.arbiter = stage
    log.info("Analysis run %d: arbiter decision stored", ctx.run.id)
    return RunState.ARBITER_DONE


async def _guidance(ctx: RunContext) -> RunState:
    stage = await _run_stage(
        ctx, "guidance", FailedStage.GUIDANCE,
        lambda: generate_combined_guidance(
            ctx.analysis_input, ctx.debate.output, ctx.arbiter.output, ctx.client, ctx.limiter,
        ),
    )
    if stage is None:
        return RunState.FAILED
    # Guidance rows are written together with the completed status.
    try:
        store.save_checkpoint(ctx.session, ctx.run, RunState.GUIDANCE_DONE.value)
    except SQLAlchemyError as exc:
        return _fail_run(ctx, FailedStage.PERSISTENCE, "guidance_persistence_failed", str(exc))
    ctx.guidance = stage
    return RunState.GUIDANCE_DONE


async def _complete(ctx: RunContext) -> RunState:
    try:
        store.complete_run_with_guidance(
            ctx.session, ctx.run, ctx.guidance, ctx.stage_usage, RunState.COMPLETED.value,
        )
    except SQLAlchemyError as exc:
        return _fail_run(ctx, FailedStage.PERSISTENCE, "guidance_persistence_failed", str(exc))
    log.info("Analysis run %d completed", ctx.run.id)
    ctx.result = OrchestrationResult(True, 200, {
        "status": "success",
        "runId": ctx.run.id,
        "employeeEmail": ctx.employee_email,
        "quarter": ctx.quarter,
        "outputs": {
            "debate": ctx.debate.output.dump(),
            "arbiter": ctx.arbiter.output.dump(),
            "guidance": ctx.guidance.output.dump(),
        },
    })
    return RunState.COMPLETED


HANDLERS: dict[RunState, Callable[[RunContext], Awaitable[RunState]]] = {
    RunState.VALIDATING: _validate,
    RunState.EVIDENCE_LOAD: _load_evidence,
    RunState.RUNNING: _debate,
    RunState.DEBATE_DONE: _arbiter,
    RunState.ARBITER_DONE: _guidance,
    RunState.GUIDANCE_DONE: _complete,
}


async def generate_manager_analysis(
    session: Session,
    request: dict[str, Any],
    client: Any,
    limiter: LLMRateLimiter,
) -> OrchestrationResult:
    """Validate, load evidence, then run debate, arbiter and guidance for one employee-quarter."""
    ctx = RunContext(session=session, request=request or {}, client=client, limiter=limiter)
    while ctx.state not in TERMINAL_STATES:
        ctx.state = await HANDLERS[ctx.state](ctx)
    if ctx.result is None:
        raise RuntimeError(f"run reached {ctx.state.value} without a result")
    return ctx.result
