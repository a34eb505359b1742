"""Policy checks applied to manager-analysis stage outputs."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable, TypeVar

from pydantic import BaseModel, ValidationError

from cadence.errors import ErrorKind, StageValidationError
from cadence.utils import parse_llm_json

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PEER_COMPARISON_PATTERN = re.compile(
    r"\b(peer|peers|compared to|relative to|team average|other employees)\b", re.IGNORECASE,
)
COMPENSATION_PATTERN = re.compile(
    r"\b(bonus|promotion|promote|compensation|salary|raise)\b", re.IGNORECASE,
)
CITATION_PATTERN = re.compile(r"refs:\[([^\]]+)\]")


def parse_stage_json(text: str, context: str) -> Any:
    try:
        return parse_llm_json(text)
    except ValueError as exc:
        raise StageValidationError(f"Failed to parse JSON for {context}: {exc}", ErrorKind.INVALID_JSON) from exc


def validate_contract(model: type[M], data: Any, label: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise StageValidationError(
            f"{label} schema mismatch: {exc.error_count()} error(s), first: {exc.errors()[0]['msg']}",
            ErrorKind.INVALID_SCHEMA,
        ) from exc


def has_peer_comparison(text: str) -> bool:
    return bool(PEER_COMPARISON_PATTERN.search(text))


def sanitize_peer_comparison(text: str, fallback: str) -> str:
    """Swap a line that compares against others for a neutral fallback."""
    if not has_peer_comparison(text):
        return text
    log.warning("Replaced peer-comparison text: %.80r", text)
    return fallback


def has_compensation_language(text: str) -> bool:
    return bool(COMPENSATION_PATTERN.search(text))


def parse_citation_refs(text: str) -> list[str]:
    """All ids inside every ``refs:[...]`` token, in order."""
    refs: list[str] = []
    for match in CITATION_PATTERN.finditer(text):
        refs.extend(part.strip() for part in match.group(1).split(",") if part.strip())
    return refs


def ensure_refs_exist(refs: Iterable[str], valid: set[str], context: str) -> None:
    for ref in refs:
        if ref not in valid:
            raise StageValidationError(
                f"{context} references unknown evidence ref {ref}.", ErrorKind.INVALID_EVIDENCE_REFS,
            )


def ensure_citation_tokens(text: str, valid: set[str], context: str) -> None:
    refs = parse_citation_refs(text)
    if not refs:
        raise StageValidationError(
            f"{context} must include citation tokens using refs:[E#].", ErrorKind.INVALID_CITATIONS,
        )
    ensure_refs_exist(refs, valid, context)
