"""Tests for the MCP server tools, called directly with a stand-in request context."""
from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from cadence import mcp_server
from cadence.rate_limiter import LLMRateLimiter
from conftest import (
    EMAIL,
    MONTHS,
    QUARTER,
    arbiter_reply,
    debate_reply,
    guidance_reply,
    make_client,
    seed_employee,
    seed_syntheses,
)


def _ctx(limiter: LLMRateLimiter) -> SimpleNamespace:
    context = mcp_server.CadenceContext(limiter=limiter)
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=context))


@pytest.fixture()
def mcp_session(session):
    """Route the tools' ``session_scope`` to the test session."""
    @contextmanager
    def scope():
        yield session

    with patch("cadence.mcp_server.session_scope", scope):
        yield session


def test_no_module_level_limiter():
    assert not any(isinstance(v, LLMRateLimiter) for v in vars(mcp_server).values())


@pytest.mark.asyncio
async def test_lifespan_yields_limiter():
    with patch("cadence.mcp_server.init_db") as init_db:
        async with mcp_server.cadence_lifespan(mcp_server.mcp) as state:
            assert isinstance(state.limiter, LLMRateLimiter)
    init_db.assert_called_once_with()


@pytest.mark.asyncio
async def test_manager_analysis_uses_context_limiter(mcp_session):
    seed_employee(mcp_session)
    seed_syntheses(mcp_session)
    limiter = LLMRateLimiter()
    client = make_client(debate_reply(), arbiter_reply(), guidance_reply())

    with patch("cadence.mcp_server.LLMClient", return_value=client), \
            patch.object(limiter, "run", wraps=limiter.run) as run:
        result = await mcp_server.generate_manager_analysis_tool(EMAIL, QUARTER, list(MONTHS), _ctx(limiter))

    assert result["httpStatus"] == 200
    assert result["status"] == "success"
    assert [c.args[0] for c in run.call_args_list] == ["manager-analysis"] * 3


@pytest.mark.asyncio
async def test_generate_report_unknown_employee(mcp_session):
    result = await mcp_server.generate_report("nobody@example.com", _ctx(LLMRateLimiter()))
    assert "error" in result


@pytest.mark.asyncio
async def test_manager_profile_tool(mcp_session):
    seed_employee(mcp_session)
    seed_syntheses(mcp_session)
    client = make_client(debate_reply(), arbiter_reply(), guidance_reply())
    with patch("cadence.mcp_server.LLMClient", return_value=client):
        await mcp_server.generate_manager_analysis_tool(EMAIL, QUARTER, list(MONTHS), _ctx(LLMRateLimiter()))

    profile = mcp_server.get_manager_profile(EMAIL)
    assert profile["latestRun"]["status"] == "completed"
    assert profile["suggestedQuestions"] == ["What would make the March load lighter?"]


def test_missing_run(mcp_session):
    assert mcp_server.get_analysis_run(999) == {"error": "Analysis run 999 not found"}
