"""Data sufficiency: how much weekly coverage backs a month or quarter.

A month nominally has 4-5 weekly snapshots and a quarter 12-13. The
thresholds flag gappy or one-sided ingestion without hard-failing on edge
weeks. The resulting level caps every downstream confidence value.
"""
from __future__ import annotations

import re
from typing import Any, Iterable

from cadence.domain import ConfidenceLevel, DataSufficiency, PeriodType, SourceFlags
from cadence.utils import month_key, to_iso_date

SUFFICIENCY_ORDER = {"insufficient": 0, "partial": 1, "sufficient": 2}
ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _week_start(record: Any) -> str | None:
    if isinstance(record, dict):
        value = record.get("week_start", record.get("weekStart"))
    else:
        value = getattr(record, "week_start", None)
    if value is None:
        return None
    iso = to_iso_date(value)
    return iso if ISO_DATE_PREFIX.match(iso) else None


def assess_data_sufficiency(
    period_type: PeriodType,
    github_weekly: Iterable[Any],
    slack_weekly: Iterable[Any],
) -> DataSufficiency:
    # Records without a usable week start carry no coverage.
    github_weekly = [w for w in github_weekly if _week_start(w)]
    slack_weekly = [w for w in slack_weekly if _week_start(w)]
    week_set = {_week_start(w) for w in github_weekly} | {_week_start(w) for w in slack_weekly}
    weeks = len(week_set)
    months = len({month_key(w) for w in week_set})
    sources = SourceFlags(github=bool(github_weekly), slack=bool(slack_weekly))

    def result(level: str, notes: str) -> DataSufficiency:
        return DataSufficiency(level=level, notes=notes, weeks=weeks, months=months, sources=sources)

    if weeks == 0:
        return result("insufficient", "No weekly data available for this period.")

    if period_type == "month":
        if weeks < 4:
            return result("insufficient", "Fewer than four weekly snapshots for this month.")
        if not sources.github or not sources.slack or weeks < 5:
            return result("partial", "Monthly coverage is partial or missing one of the data sources.")
        return result("sufficient", "Monthly coverage includes both sources with at least four weeks.")

    if months < 3 or weeks < 10:
        return result("insufficient", "Quarterly coverage is incomplete or missing enough weekly data.")
    if not sources.github or not sources.slack or weeks < 12:
        return result("partial", "Quarterly coverage is partial or missing one of the data sources.")
    return result("sufficient", "Quarterly coverage includes both sources with full weekly coverage.")


def infer_data_sufficiency(confidence: ConfidenceLevel) -> DataSufficiency:
    """Derive a sufficiency level for legacy rows that predate stored snapshots."""
    level = {"high": "sufficient", "medium": "partial"}.get(confidence, "insufficient")
    return DataSufficiency(
        level=level, notes="Inferred from legacy confidence level.", weeks=0, months=0,
    )


def parse_data_sufficiency(raw: Any, confidence: ConfidenceLevel) -> DataSufficiency:
    """Validate a stored sufficiency snapshot, falling back to inference from confidence."""
    if isinstance(raw, dict):
        sources = raw.get("sources") if isinstance(raw.get("sources"), dict) else {}
        if (
            raw.get("level") in SUFFICIENCY_ORDER
            and isinstance(raw.get("notes"), str)
            and isinstance(raw.get("weeks"), int)
            and isinstance(raw.get("months"), int)
            and isinstance(sources.get("github"), bool)
            and isinstance(sources.get("slack"), bool)
        ):
            return DataSufficiency.model_validate(raw)
    return infer_data_sufficiency(confidence)
