from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from cadence import services
from cadence.config import get_settings
from cadence.db import init_db, session_generator
from cadence.errors import InsightGenerationError
from cadence.llm import LLMClient
from cadence.models import AnalysisRun
from cadence.orchestrator import generate_manager_analysis
from cadence.rate_limiter import LLMRateLimiter
from cadence.schemas import (
    GenerateReportOut,
    GenerateReportRequest,
    ManagerProfileOut,
    RunDetailOut,
    RunSummaryOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.limiter = LLMRateLimiter.from_settings(get_settings())
    yield


app = FastAPI(
    title="Cadence",
    version="0.1.0",
    description=(
        "Evidence-grounded performance insights and manager analysis. "
        "Generates monthly/quarterly syntheses from weekly GitHub and Slack activity, "
        "then runs a debate, arbiter and guidance workflow per employee-quarter. "
        "All outputs are advisory. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Insights", "description": "Monthly and quarterly insight generation and lookup."},
        {"name": "Manager analysis", "description": "Debate, arbiter and guidance runs. Requires an LLM API key."},
        {"name": "Runs", "description": "Analysis run status and history."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def llm_client() -> LLMClient:
    return LLMClient()


def rate_limiter(request: Request) -> LLMRateLimiter:
    return request.app.state.limiter


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Insights
# ---------------------------------------------------------------------------


@app.post("/api/insights/generate-report", response_model=GenerateReportOut, response_model_by_alias=True,
          tags=["Insights"], summary="Generate monthly and quarterly insights for an employee")
async def generate_report(
    body: GenerateReportRequest,
    session: Session = Depends(db_session),
    client: Any = Depends(llm_client),
    limiter: LLMRateLimiter = Depends(rate_limiter),
):
    try:
        return await services.generate_report(
            session, body.employee_email, client, limiter, start_date=body.start_date, end_date=body.end_date,
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except LookupError as exc:
        raise HTTPException(404, str(exc)) from exc
    except InsightGenerationError as exc:
        raise HTTPException(500, f"Insight generation failed at {exc.stage}: {exc}") from exc


@app.get("/api/insights/existing-monthly-report", tags=["Insights"],
         summary="Latest monthly report and whether it is still fresh")
async def existing_monthly_report(
    employee_email: str = Query("", alias="employeeEmail"),
    session: Session = Depends(db_session),
):
    return services.existing_monthly_report(session, employee_email)


# ---------------------------------------------------------------------------
# Routes: Manager analysis
# ---------------------------------------------------------------------------


@app.post("/api/insights/generate-manager-analysis", tags=["Manager analysis"],
          summary="Run debate, arbiter and guidance for one employee-quarter")
async def generate_manager_analysis_route(
    body: dict[str, Any],
    session: Session = Depends(db_session),
    client: Any = Depends(llm_client),
    limiter: LLMRateLimiter = Depends(rate_limiter),
):
    result = await generate_manager_analysis(session, body, client, limiter)
    return JSONResponse(status_code=result.http_status, content=result.body)


@app.get("/api/insights/manager-analysis/debate", tags=["Manager analysis"],
         summary="Debate messages from the latest run that produced them")
async def manager_debate_feed(
    employee_email: str = Query("", alias="employeeEmail"),
    session: Session = Depends(db_session),
):
    if not services.normalize_email(employee_email):
        raise HTTPException(400, "Missing `employeeEmail` query parameter.")
    return {"feed": services.latest_debate_feed(session, employee_email)}


@app.get("/api/insights/manager-profile", response_model=ManagerProfileOut, response_model_by_alias=True,
         tags=["Manager analysis"], summary="Eligibility, latest recommendation and coaching for an employee")
async def manager_profile(
    employee_email: str = Query("", alias="employeeEmail"),
    session: Session = Depends(db_session),
):
    if not services.normalize_email(employee_email):
        raise HTTPException(400, "Missing `employeeEmail` query parameter.")
    return services.manager_profile_insights(session, employee_email)


# ---------------------------------------------------------------------------
# Routes: Runs
# ---------------------------------------------------------------------------


@app.get("/api/analysis-runs/{run_id}", response_model=RunDetailOut, response_model_by_alias=True,
         tags=["Runs"], summary="Full detail of one analysis run")
async def get_analysis_run(run_id: int, session: Session = Depends(db_session)):
    run = _get_or_404(session, AnalysisRun, run_id, "Analysis run")
    return services.run_detail(run)


@app.get("/api/employees/{email}/analysis-runs", response_model=list[RunSummaryOut], response_model_by_alias=True,
         tags=["Runs"], summary="Analysis runs for an employee, newest first")
async def list_analysis_runs(
    email: str,
    quarter: str | None = Query(None),
    session: Session = Depends(db_session),
):
    return services.list_runs(session, email, quarter)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("cadence.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
