"""Shared fixtures: in-memory database, seeded evidence and a scripted LLM client."""
from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cadence.domain import (
    DataSufficiency,
    Eligibility,
    ManagerAnalysisInput,
    MonthlySynthesis,
    QuarterlySynthesis,
    SourceFlags,
)
from cadence.evidence import build_evidence_catalog
from cadence.llm import GenerationResult, TokenUsage
from cadence.models import (
    Base,
    Employee,
    EmployeeAnalysisContext,
    GithubWeeklyActivity,
    MonthlyInsight,
    QuarterlyInsight,
    SlackWeeklyActivity,
)
from cadence.rate_limiter import LLMRateLimiter

EMAIL = "ada@example.com"
MANAGER = "grace@example.com"
QUARTER = "2026-Q1"
MONTHS = ["2026-01", "2026-02", "2026-03"]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def session(test_db):
    _, TestSession = test_db
    s = TestSession()
    yield s
    s.close()


def seed_employee(session, *, bonus=False, promotion=True, context=True):
    session.add(Employee(email=EMAIL, name="Ada Lovelace", role="AI_ENGINEER"))
    if context:
        session.add(EmployeeAnalysisContext(
            employee_email=EMAIL, manager_email=MANAGER,
            bonus_eligible=bonus, promotion_eligible=promotion,
        ))
    session.commit()


def seed_syntheses(session, *, months=MONTHS, level="sufficient"):
    session.add(QuarterlyInsight(
        employee_email=EMAIL,
        quarter=QUARTER,
        trajectory_summary="Delivery stayed steady across the quarter.",
        key_strengths_json=json.dumps(["Ships the ingestion service on schedule"]),
        key_concerns_json=json.dumps(["After-hours work rose in March"]),
        burnout_assessment="Moderate after-hours load late in the quarter.",
        growth_assessment="Took ownership of evaluation tooling.",
        retention_assessment="No retention signals observed.",
        recommended_actions_json=json.dumps(["Agree on an on-call rotation"]),
        evidence_snapshots_json="[]",
        data_sufficiency_json=json.dumps({
            "level": level, "notes": "Seeded.", "weeks": 13, "months": 3,
            "sources": {"github": True, "slack": True},
        }),
        confidence_level="high",
        generated_by_model="test-model",
        model_version="v1",
        created_at=datetime(2026, 4, 1),
    ))
    for idx, month in enumerate(months):
        session.add(MonthlyInsight(
            employee_email=EMAIL,
            month=month,
            overall_summary=f"Summary for {month}.",
            identified_risks_json="[]",
            identified_opportunities_json="[]",
            confidence_level="medium",
            generated_by_model="test-model",
            model_version="v1",
            created_at=datetime(2026, 4, 1) + timedelta(minutes=idx),
        ))
    session.commit()


def seed_weekly(session, weeks: list[date], *, github=True, slack=True):
    for week in weeks:
        if github:
            session.add(GithubWeeklyActivity(
                employee_email=EMAIL, week_start=week,
                pull_request_summaries_json=json.dumps(["Refactored the ingestion job"]),
                prs_merged=3, pr_reviews_given=2,
            ))
        if slack:
            session.add(SlackWeeklyActivity(
                employee_email=EMAIL, week_start=week,
                message_summaries_json=json.dumps(["Answered questions in #platform"]),
                message_count=40, reply_count=12,
            ))
    session.commit()


def weeks_from(start: date, count: int) -> list[date]:
    return [start + timedelta(weeks=i) for i in range(count)]


# ---------------------------------------------------------------------------
# Domain inputs
# ---------------------------------------------------------------------------


def sample_quarterly() -> QuarterlySynthesis:
    return QuarterlySynthesis(
        trajectory_summary="Delivery stayed steady across the quarter.",
        key_strengths=["Ships the ingestion service on schedule"],
        key_concerns=["After-hours work rose in March"],
        burnout_assessment="Moderate after-hours load late in the quarter.",
        growth_assessment="Took ownership of evaluation tooling.",
        retention_assessment="No retention signals observed.",
        recommended_actions=["Agree on an on-call rotation"],
        confidence="high",
    )


def make_analysis_input(level="sufficient", bonus=False, promotion=True) -> ManagerAnalysisInput:
    quarterly = sample_quarterly()
    history = [(m, MonthlySynthesis(overall_summary=f"Summary for {m}.", confidence="medium")) for m in MONTHS]
    return ManagerAnalysisInput(
        employee_id=EMAIL,
        manager_id=MANAGER,
        role="AI_ENGINEER",
        quarterly=quarterly,
        monthly_history=[s for _, s in history],
        data_sufficiency=DataSufficiency(
            level=level, notes="Seeded.", weeks=13, months=3, sources=SourceFlags(github=True, slack=True),
        ),
        eligibility=Eligibility(bonus=bonus, promotion=promotion),
        evidence_catalog=build_evidence_catalog(QUARTER, quarterly, history),
    )


# ---------------------------------------------------------------------------
# Stage replies
# ---------------------------------------------------------------------------


def debate_reply(refs=("E1", "E2")) -> dict:
    return {
        "advocateAssessment": {
            "stance": "support_reward",
            "arguments": [{"claim": "Shipped the ingestion rewrite on schedule.", "evidenceRefs": list(refs)}],
            "recommendation": {"bonus": "yes", "promotion": "not_ready"},
            "confidence": "high",
        },
        "examinerAssessment": {
            "stance": "caution_reward",
            "arguments": [{"claim": "After-hours work rose in March.", "evidenceRefs": ["E3"]}],
            "risks": ["Sustained after-hours load."],
            "recommendation": {"bonus": "defer", "promotion": "no"},
            "confidence": "medium",
        },
    }


def arbiter_reply(bonus="approve", rationale=None) -> dict:
    return {
        "finalRecommendation": {"bonus": bonus, "promotion": "defer"},
        "rationale": rationale or ["Delivery is consistent across the quarter refs:[E1,E2]"],
        "unresolvedQuestions": ["Is the after-hours load temporary?"],
        "confidence": "high",
        "notesForHR": ["Advisory only; confirm workload context refs:[E3]"],
    }


def guidance_reply(message="How is the after-hours load feeling lately?") -> dict:
    return {
        "employeePings": [
            {"theme": "workload", "message": message, "evidenceRefs": ["E3"], "confidence": "high"},
        ],
        "managerCoaching": {
            "focusAreas": ["Workload sustainability"],
            "suggestedQuestions": ["What would make the March load lighter?"],
            "doNotAssume": ["Do not assume disengagement."],
            "evidenceRefs": ["E3", "E4"],
            "confidence": "medium",
        },
    }


def make_client(*replies, model="test-model") -> AsyncMock:
    """An LLM client whose ``generate`` answers with *replies* in order.

    Dict replies are JSON-encoded; strings are returned as-is.
    """
    client = AsyncMock()
    client.model = model
    client.generate.side_effect = [
        GenerationResult(
            text=r if isinstance(r, str) else json.dumps(r),
            model=model,
            usage=TokenUsage(input_tokens=100, output_tokens=50, total_tokens=150),
        )
        for r in replies
    ]
    return client


@pytest.fixture()
def limiter():
    return LLMRateLimiter()
