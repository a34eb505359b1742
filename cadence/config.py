from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("CADENCE_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_database_path() -> Path:
    override = os.getenv("CADENCE_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "data" / "cadence.db"


def _ms_env(name: str, fallback: str | None = None, default: str = "30000") -> float:
    raw = os.getenv(name)
    if raw is None and fallback:
        raw = os.getenv(fallback)
    return float(raw if raw is not None else default) / 1000.0


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")

    database_path: Path = Field(default_factory=_resolve_database_path)

    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "openai"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))
    model_version: str = Field(default_factory=lambda: os.getenv("LLM_MODEL_VERSION", "unspecified"))

    insight_min_interval_seconds: float = Field(
        default_factory=lambda: _ms_env("INSIGHT_LLM_MIN_INTERVAL_MS")
    )
    manager_analysis_min_interval_seconds: float = Field(
        default_factory=lambda: _ms_env(
            "MANAGER_ANALYSIS_LLM_MIN_INTERVAL_MS", fallback="INSIGHT_LLM_MIN_INTERVAL_MS",
        )
    )

    insight_lookback_weeks: int = 12
    monthly_report_stale_after_days: int = 7

    kpi_baselines_file: Path = Field(
        default_factory=lambda: _resolve_project_root() / "config" / "kpi_baselines.yaml"
    )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_kpi_baselines(self) -> dict[str, list[dict[str, str]]]:
        """Role -> KPI baseline overrides from ``kpi_baselines.yaml``.

        Expected shape::

            roles:
              AI_ENGINEER:
                - kpi: Execution
                  expectation: ...
                  managedDefinition: ...
                  aboveDefinition: ...
                  belowDefinition: ...
        """
        raw = self.load_yaml(self.kpi_baselines_file)
        roles = raw.get("roles", {})
        if not isinstance(roles, dict):
            return {}
        out: dict[str, list[dict[str, str]]] = {}
        for role, entries in roles.items():
            if not isinstance(role, str) or not isinstance(entries, list):
                continue
            rows = [
                {str(k): str(v) for k, v in entry.items()}
                for entry in entries
                if isinstance(entry, dict) and entry.get("kpi")
            ]
            if rows:
                out[role] = rows
        return out


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
