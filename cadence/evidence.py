"""Evidence catalog: numbered, citable fragments of prior synthesis rows.

Ids are ``E1``, ``E2``, ... in the order entries are pushed, fresh per run.
Blank fragments are skipped without consuming an id.
"""
from __future__ import annotations

from typing import Iterable

from cadence.domain import EvidenceCatalogEntry, MonthlySynthesis, QuarterlySynthesis


class _CatalogBuilder:
    def __init__(self) -> None:
        self.entries: list[EvidenceCatalogEntry] = []

    def push(self, source_type: str, source_key: str, field: str, summary: str) -> None:
        trimmed = (summary or "").strip()
        if not trimmed:
            return
        self.entries.append(EvidenceCatalogEntry(
            id=f"E{len(self.entries) + 1}",
            source_type=source_type,
            source_key=source_key,
            field=field,
            summary=trimmed,
        ))

    def push_list(self, source_type: str, source_key: str, name: str, items: list[str]) -> None:
        for idx, item in enumerate(items):
            self.push(source_type, source_key, f"{name}[{idx}]", item)


def build_evidence_catalog(
    quarter: str,
    quarterly: QuarterlySynthesis,
    monthly_history: Iterable[tuple[str, MonthlySynthesis]],
) -> list[EvidenceCatalogEntry]:
    b = _CatalogBuilder()
    q = "quarterly_synthesis"

    b.push(q, quarter, "trajectorySummary", quarterly.trajectory_summary)
    b.push_list(q, quarter, "keyStrengths", quarterly.key_strengths)
    b.push_list(q, quarter, "keyConcerns", quarterly.key_concerns)
    b.push(q, quarter, "burnoutAssessment", quarterly.burnout_assessment)
    b.push(q, quarter, "growthAssessment", quarterly.growth_assessment)
    b.push(q, quarter, "retentionAssessment", quarterly.retention_assessment)
    b.push_list(q, quarter, "recommendedActions", quarterly.recommended_actions)
    for snapshot in quarterly.evidence_snapshots:
        for idx, evidence in enumerate(snapshot.evidence):
            b.push(q, quarter, f"evidenceSnapshots.{snapshot.signal_id}.evidence[{idx}]", evidence.summary)

    for month, synthesis in monthly_history:
        m = "monthly_synthesis"
        b.push(m, month, "overallSummary", synthesis.overall_summary)
        b.push_list(m, month, "identifiedRisks", synthesis.identified_risks)
        b.push_list(m, month, "identifiedOpportunities", synthesis.identified_opportunities)

    return b.entries
