"""Domain records passed between pipeline stages.

Field names are snake_case in Python and camelCase on the wire (prompts,
persisted JSON, API bodies); dump with ``by_alias=True``.
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Dimension = Literal["Execution", "Engagement", "Collaboration", "Growth"]
ConfidenceLevel = Literal["low", "medium", "high"]
SufficiencyLevel = Literal["sufficient", "partial", "insufficient"]
PeriodType = Literal["month", "quarter"]
EvidenceSource = Literal["github_weekly_activity", "slack_weekly_activity"]

DIMENSIONS: tuple[Dimension, ...] = ("Execution", "Engagement", "Collaboration", "Growth")
CONFIDENCE_LEVELS = ("low", "medium", "high")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class SourceFlags(CamelModel):
    github: bool = False
    slack: bool = False


class DataSufficiency(CamelModel):
    level: SufficiencyLevel
    notes: str
    weeks: int
    months: int
    sources: SourceFlags = Field(default_factory=SourceFlags)


class EvidenceRef(CamelModel):
    source: EvidenceSource
    week_start: str
    fields: list[str]
    summary: str


class Signal(CamelModel):
    id: str
    dimension: Dimension
    statement: str
    evidence: list[EvidenceRef]


class DimensionInsight(CamelModel):
    insight: str
    supporting_signal_ids: list[str] = Field(default_factory=list)
    confidence: ConfidenceLevel = "low"


class EvidenceSnapshot(CamelModel):
    signal_id: str
    dimension: Dimension
    evidence: list[EvidenceRef] = Field(default_factory=list)


class MonthlySynthesis(CamelModel):
    overall_summary: str
    identified_risks: list[str] = Field(default_factory=list)
    identified_opportunities: list[str] = Field(default_factory=list)
    confidence: ConfidenceLevel = "low"
    model: str = ""
    model_version: str = ""


class QuarterlySynthesis(CamelModel):
    trajectory_summary: str
    key_strengths: list[str] = Field(default_factory=list)
    key_concerns: list[str] = Field(default_factory=list)
    burnout_assessment: str = ""
    growth_assessment: str = ""
    retention_assessment: str = ""
    recommended_actions: list[str] = Field(default_factory=list)
    evidence_snapshots: list[EvidenceSnapshot] = Field(default_factory=list)
    confidence: ConfidenceLevel = "low"
    model: str = ""
    model_version: str = ""


class EvidenceCatalogEntry(CamelModel):
    id: str
    source_type: Literal["quarterly_synthesis", "monthly_synthesis"]
    source_key: str
    field: str
    summary: str


class Eligibility(CamelModel):
    bonus: bool = False
    promotion: bool = False


class ManagerAnalysisInput(CamelModel):
    """Everything the debate, arbiter and guidance stages may read."""
    employee_id: str
    manager_id: str
    role: str
    quarterly: QuarterlySynthesis
    monthly_history: list[MonthlySynthesis]
    data_sufficiency: DataSufficiency
    eligibility: Eligibility
    evidence_catalog: list[EvidenceCatalogEntry]

    @property
    def evidence_ids(self) -> set[str]:
        return {entry.id for entry in self.evidence_catalog}
