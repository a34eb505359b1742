"""Cadence MCP server.

Annotations are evaluated eagerly here; FastMCP injects ``Context`` by type.
"""
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP
from sqlalchemy import select

from cadence import services
from cadence.config import get_settings
from cadence.db import current_db_path, init_db, session_scope
from cadence.errors import InsightGenerationError
from cadence.llm import LLMClient
from cadence.models import AnalysisRun
from cadence.orchestrator import generate_manager_analysis
from cadence.rate_limiter import LLMRateLimiter

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@dataclass
class CadenceContext:
    limiter: LLMRateLimiter


@asynccontextmanager
async def cadence_lifespan(server: FastMCP) -> AsyncIterator[CadenceContext]:
    init_db()
    yield CadenceContext(limiter=LLMRateLimiter.from_settings(get_settings()))


mcp = FastMCP(
    "Cadence",
    instructions=(
        "Cadence produces evidence-grounded monthly and quarterly insights for employees and "
        "runs an advisory manager analysis (debate, arbiter, guidance) per employee-quarter. "
        "Start with the cadence://overview resource, then list_analysis_runs(email) to browse, "
        "then get_analysis_run(id) for full details."
    ),
    lifespan=cadence_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _limiter(ctx: Context) -> LLMRateLimiter:
    return ctx.request_context.lifespan_context.limiter


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("cadence://overview")
def cadence_overview() -> str:
    """Overview of Cadence: data model, workflow, employees and run counts."""
    with session_scope() as session:
        overview = services.employee_overview(session)
    return json.dumps({
        "system": "Cadence: evidence-grounded performance insights",
        "description": (
            "Weekly GitHub and Slack activity is synthesized into monthly and quarterly insights. "
            "Manager analysis runs read those syntheses through a numbered evidence catalog and "
            "produce a debate, an arbiter decision and conversation guidance. Outputs are advisory."
        ),
        "data_model": {
            "monthly_insight": "Append-only monthly synthesis per employee; the latest row per month wins.",
            "quarterly_insight": "Append-only quarterly synthesis with evidence snapshots.",
            "analysis_run": "One manager-analysis attempt: running, completed or failed, with stage usage.",
            "evidence_catalog": "E1..En fragments of prior syntheses that every analysis claim must cite.",
        },
        "workflow": [
            "1. generate_report(email): build monthly and quarterly insights from weekly activity.",
            "2. get_monthly_report_status(email): check the latest monthly report is fresh.",
            "3. generate_manager_analysis_tool(email, quarter, month_keys): debate, arbiter and guidance.",
            "4. list_analysis_runs(email) / get_analysis_run(id): inspect results and failures.",
            "5. get_debate_feed(email): advocate and examiner messages from the latest run.",
            "6. get_manager_profile(email): eligibility, latest recommendation and coaching points.",
        ],
        "sufficiency_levels": ["sufficient", "partial", "insufficient"],
        "confidence_levels": ["low", "medium", "high"],
        "database": str(current_db_path()),
        **overview,
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Insights
# ---------------------------------------------------------------------------


@mcp.tool()
async def generate_report(
    email: str, ctx: Context, start_date: str | None = None, end_date: str | None = None,
) -> dict:
    """Generate monthly then quarterly insights for an employee.

    Args:
        email: Employee email.
        start_date: Optional backfill start (YYYY-MM-DD). Requires end_date.
        end_date: Optional backfill end (YYYY-MM-DD). Requires start_date.
    """
    with session_scope() as session:
        try:
            return await services.generate_report(
                session, email, LLMClient(), _limiter(ctx), start_date=start_date, end_date=end_date,
            )
        except (ValueError, LookupError) as exc:
            return {"error": str(exc)}
        except InsightGenerationError as exc:
            return {"error": f"Insight generation failed at {exc.stage}: {exc}", "code": exc.code}


@mcp.tool()
def get_monthly_report_status(email: str) -> dict:
    """Latest monthly report for an employee and whether it is still fresh."""
    with session_scope() as session:
        return services.existing_monthly_report(session, email)


# ---------------------------------------------------------------------------
# Tools: Manager analysis
# ---------------------------------------------------------------------------


@mcp.tool()
async def generate_manager_analysis_tool(email: str, quarter: str, month_keys: list[str], ctx: Context) -> dict:
    """Run debate, arbiter and guidance for one employee-quarter.

    Args:
        email: Employee email.
        quarter: Quarter key, e.g. 2026-Q1.
        month_keys: The three months of the quarter, e.g. ["2026-01", "2026-02", "2026-03"].
    """
    request = {"employeeEmail": email, "quarter": quarter, "monthKeys": month_keys}
    with session_scope() as session:
        result = await generate_manager_analysis(session, request, LLMClient(), _limiter(ctx))
    return {"httpStatus": result.http_status, **result.body}


@mcp.tool()
def get_debate_feed(email: str) -> dict:
    """Advocate and examiner messages from the latest run that stored a debate."""
    with session_scope() as session:
        return {"feed": services.latest_debate_feed(session, email)}



@mcp.tool()
def get_manager_profile(email: str) -> dict:
    """Eligibility, the latest arbiter recommendation and coaching points for an employee."""
    with session_scope() as session:
        return services.manager_profile_insights(session, email)


# ---------------------------------------------------------------------------
# Tools: Runs
# ---------------------------------------------------------------------------


@mcp.tool()
def list_analysis_runs(email: str, quarter: str | None = None) -> list[dict]:
    """List analysis runs for an employee, newest first, optionally for one quarter."""
    with session_scope() as session:
        return services.list_runs(session, email, quarter)


@mcp.tool()
def get_analysis_run(run_id: int) -> dict:
    """Full detail of one analysis run, including stored stage outputs."""
    with session_scope() as session:
        run, err = _get_or_error(session, AnalysisRun, run_id, "Analysis run")
        if err:
            return err
        return services.run_detail(run)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Cadence MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
