from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class GithubWeeklyActivity(Base):
    __tablename__ = "github_weekly_activity"
    __table_args__ = (UniqueConstraint("employee_email", "week_start", name="github_weekly_employee_idx"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_email: Mapped[str] = mapped_column(String(100), ForeignKey("employees.email"), nullable=False)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    pull_request_summaries_json: Mapped[str] = mapped_column(Text, default="[]")
    issue_summaries_json: Mapped[str] = mapped_column(Text, default="[]")
    prs_merged: Mapped[int] = mapped_column(Integer, default=0)
    pr_reviews_given: Mapped[int] = mapped_column(Integer, default=0)
    after_hours_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    weekend_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class SlackWeeklyActivity(Base):
    __tablename__ = "slack_weekly_activity"
    __table_args__ = (UniqueConstraint("employee_email", "week_start", name="slack_weekly_employee_idx"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_email: Mapped[str] = mapped_column(String(100), ForeignKey("employees.email"), nullable=False)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    message_summaries_json: Mapped[str] = mapped_column(Text, default="[]")
    message_count: Mapped[int] = mapped_column(Integer, default=0)
    reply_count: Mapped[int] = mapped_column(Integer, default=0)
    reactions_received: Mapped[int] = mapped_column(Integer, default=0)
    after_hours_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    weekend_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class EmployeeAnalysisContext(Base):
    __tablename__ = "employee_analysis_context"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_email: Mapped[str] = mapped_column(
        String(100), ForeignKey("employees.email"), nullable=False, unique=True,
    )
    manager_email: Mapped[str] = mapped_column(String(100), nullable=False)
    bonus_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    promotion_eligible: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class MonthlyInsight(Base):
    """Append-only monthly synthesis; readers take the latest row per month."""
    __tablename__ = "employee_monthly_insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_email: Mapped[str] = mapped_column(String(100), ForeignKey("employees.email"), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    execution_insight: Mapped[str] = mapped_column(Text, default="")
    engagement_insight: Mapped[str] = mapped_column(Text, default="")
    collaboration_insight: Mapped[str] = mapped_column(Text, default="")
    growth_insight: Mapped[str] = mapped_column(Text, default="")
    overall_summary: Mapped[str] = mapped_column(Text, default="")
    identified_risks_json: Mapped[str] = mapped_column(Text, default="[]")
    identified_opportunities_json: Mapped[str] = mapped_column(Text, default="[]")
    supporting_signals_json: Mapped[str] = mapped_column(Text, default="[]")
    data_sufficiency_json: Mapped[str] = mapped_column(Text, default="{}")
    confidence_level: Mapped[str] = mapped_column(String(16), default="low")
    generated_by_model: Mapped[str] = mapped_column(String(64), default="")
    model_version: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class QuarterlyInsight(Base):
    """Append-only quarterly synthesis with the evidence snapshot trail."""
    __tablename__ = "employee_quarterly_insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_email: Mapped[str] = mapped_column(String(100), ForeignKey("employees.email"), nullable=False)
    quarter: Mapped[str] = mapped_column(String(7), nullable=False)
    trajectory_summary: Mapped[str] = mapped_column(Text, default="")
    key_strengths_json: Mapped[str] = mapped_column(Text, default="[]")
    key_concerns_json: Mapped[str] = mapped_column(Text, default="[]")
    burnout_assessment: Mapped[str] = mapped_column(Text, default="")
    growth_assessment: Mapped[str] = mapped_column(Text, default="")
    retention_assessment: Mapped[str] = mapped_column(Text, default="")
    recommended_actions_json: Mapped[str] = mapped_column(Text, default="[]")
    evidence_snapshots_json: Mapped[str] = mapped_column(Text, default="[]")
    data_sufficiency_json: Mapped[str] = mapped_column(Text, default="{}")
    confidence_level: Mapped[str] = mapped_column(String(16), default="low")
    generated_by_model: Mapped[str] = mapped_column(String(64), default="")
    model_version: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class AnalysisRun(Base):
    __tablename__ = "analysis_run"
    __table_args__ = (
        Index("analysis_run_employee_quarter_created_idx", "employee_email", "quarter", "created_at"),
        # At most one running run per (employee, quarter).
        Index(
            "analysis_run_active_employee_quarter_idx", "employee_email", "quarter",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_email: Mapped[str] = mapped_column(String(100), ForeignKey("employees.email"), nullable=False)
    manager_email: Mapped[str] = mapped_column(String(100), nullable=False)
    quarter: Mapped[str] = mapped_column(String(7), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")  # running | completed | failed
    checkpoint: Mapped[str] = mapped_column(String(32), default="running")
    failed_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_payload_json: Mapped[str] = mapped_column(Text, default="{}")
    evidence_catalog_json: Mapped[str] = mapped_column(Text, default="[]")
    data_sufficiency_json: Mapped[str] = mapped_column(Text, default="{}")
    stage_usage_json: Mapped[str] = mapped_column(Text, default="{}")
    started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    debate_responses: Mapped[list[DebateResponse]] = relationship(
        "DebateResponse", back_populates="run", cascade="all, delete-orphan",
    )
    arbiter_decision: Mapped[ArbiterDecision | None] = relationship(
        "ArbiterDecision", back_populates="run", cascade="all, delete-orphan", uselist=False,
    )
    employee_prompts: Mapped[list[EmployeePrompt]] = relationship(
        "EmployeePrompt", back_populates="run", cascade="all, delete-orphan",
    )
    manager_feedback: Mapped[ManagerFeedback | None] = relationship(
        "ManagerFeedback", back_populates="run", cascade="all, delete-orphan", uselist=False,
    )


class DebateResponse(Base):
    __tablename__ = "analysis_debate_response"
    __table_args__ = (UniqueConstraint("run_id", "agent_role", name="analysis_debate_response_run_agent_idx"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_run.id"), nullable=False)
    agent_role: Mapped[str] = mapped_column(String(16), nullable=False)  # advocate | examiner
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    confidence_level: Mapped[str] = mapped_column(String(16), nullable=False)
    generated_by_model: Mapped[str] = mapped_column(String(64), nullable=False)
    model_version: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="debate_responses")


class ArbiterDecision(Base):
    __tablename__ = "analysis_arbiter_decision"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_run.id"), nullable=False, unique=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    confidence_level: Mapped[str] = mapped_column(String(16), nullable=False)
    generated_by_model: Mapped[str] = mapped_column(String(64), nullable=False)
    model_version: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="arbiter_decision")


class EmployeePrompt(Base):
    __tablename__ = "employee_prompt"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_run.id"), nullable=False, index=True)
    employee_email: Mapped[str] = mapped_column(String(100), ForeignKey("employees.email"), nullable=False)
    quarter: Mapped[str] = mapped_column(String(7), nullable=False)
    theme: Mapped[str] = mapped_column(String(32), nullable=False)  # workload | growth | collaboration | focus
    message: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_refs_json: Mapped[str] = mapped_column(Text, default="[]")
    confidence_level: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="employee_prompts")


class ManagerFeedback(Base):
    __tablename__ = "manager_feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_run.id"), nullable=False, unique=True)
    manager_email: Mapped[str] = mapped_column(String(100), nullable=False)
    focus_areas_json: Mapped[str] = mapped_column(Text, default="[]")
    suggested_questions_json: Mapped[str] = mapped_column(Text, default="[]")
    do_not_assume_json: Mapped[str] = mapped_column(Text, default="[]")
    evidence_refs_json: Mapped[str] = mapped_column(Text, default="[]")
    confidence_level: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    run: Mapped[AnalysisRun] = relationship("AnalysisRun", back_populates="manager_feedback")
