"""Error taxonomy shared by the insight pipeline, analysis stages and orchestrator."""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INVALID_JSON = "invalid_json"
    INVALID_SCHEMA = "invalid_schema"
    INVALID_EVIDENCE_REFS = "invalid_evidence_refs"
    INVALID_CITATIONS = "invalid_citations"
    PROHIBITED_CONTENT = "prohibited_content"
    # Declared for API stability; peer-comparison text is always sanitized in place.
    INVALID_PEER_COMPARISON = "invalid_peer_comparison"


class FailedStage(str, Enum):
    INPUT_VALIDATION = "input_validation"
    EVIDENCE_LOAD = "evidence_load"
    DEBATE = "debate"
    ARBITER = "arbiter"
    GUIDANCE = "guidance"
    PERSISTENCE = "persistence"


class LLMCallError(Exception):
    """LLM call failed or returned nothing usable."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class StageValidationError(Exception):
    """Manager-analysis stage output rejected by validation or policy checks.

    ``usage`` is attached by the stage once the generator call has returned,
    so token usage survives a validation failure.
    """
    def __init__(self, message: str, code: ErrorKind, usage: Any = None):
        super().__init__(message)
        self.code = code
        self.usage = usage


class InsightGenerationError(Exception):
    """An insight-pipeline stage could not produce a usable result."""
    def __init__(self, message: str, stage: str, code: ErrorKind | str = ErrorKind.INVALID_JSON):
        super().__init__(message)
        self.stage = stage
        self.code = code.value if isinstance(code, ErrorKind) else code
