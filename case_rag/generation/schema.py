"""Schema for model output: tolerant JSON extraction, strict field validation.

:func:`parse_model_output` never raises; it returns a tagged result so the
orchestrator can count a malformed reply as one failed attempt.  Field
validation is done with pydantic models whose enum fields accept only the
exact enum values (no case folding, no aliases).
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from case_rag.models import Category, Priority, Severity

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_WRAPPER_KEYS = ("testCases", "test_cases", "items", "rules")


# ── Tagged parse result ──────────────────────────────────────────


@dataclass
class ParseOk:
    items: list[dict[str, Any]]
    skipped: int = 0  # array elements that were not JSON objects


@dataclass
class ParseError:
    reason: str
    raw: str = field(default="", repr=False)


ParseResult = Union[ParseOk, ParseError]


def _loads_lenient(text: str) -> Any:
    """json.loads, falling back to the outermost array/object substring."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    for open_ch, close_ch in (("{", "}"), ("[", "]")):
        start, end = text.find(open_ch), text.rfind(close_ch)
        if start != -1 and end > start:
            try:
                return json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                continue
    raise ValueError("no JSON value found")


def parse_model_output(text: str | None) -> ParseResult:
    """Extract a list of JSON objects from a model completion.

    Accepts a bare array, an object wrapping an array under one of
    ``testCases``, ``test_cases``, ``items`` or ``rules``, a single item
    object, or any of these inside a Markdown code fence.
    """
    if not text or not text.strip():
        return ParseError("empty response", raw=text or "")

    body = text.strip()
    fence = _FENCE_RE.search(body)
    if fence:
        body = fence.group(1).strip()

    try:
        data = _loads_lenient(body)
    except ValueError as exc:
        return ParseError(f"invalid JSON: {exc}", raw=text)

    if isinstance(data, dict):
        for key in _WRAPPER_KEYS:
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            if "title" in data or "rule" in data:
                data = [data]
            else:
                return ParseError(
                    f"JSON object has no item list (keys: {sorted(data)[:5]})", raw=text,
                )

    if not isinstance(data, list):
        return ParseError(f"expected a JSON array, got {type(data).__name__}", raw=text)

    items = [item for item in data if isinstance(item, dict)]
    return ParseOk(items=items, skipped=len(data) - len(items))


# ── Item models ──────────────────────────────────────────────────


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "item"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class CandidateTestCase(BaseModel):
    """One test case as proposed by the model, before assembly."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    category: Category | None = None
    priority: Priority | None = None
    severity: Severity | None = None
    persona: str | None = None
    steps: list[str] = Field(default_factory=list)
    expected_result: str = Field(
        default="",
        validation_alias=AliasChoices("expectedResults", "expectedResult", "expected_result"),
    )
    tags: list[str] = Field(default_factory=list)
    source_chunks: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("source_chunks", "sourceChunks"),
    )
    confidence: float | None = Field(
        default=None,
        validation_alias=AliasChoices("confidence", "confidence_score", "confidenceScore"),
    )

    @field_validator("steps", "tags")
    @classmethod
    def _drop_blank(cls, values: list[str]) -> list[str]:
        return [v.strip() for v in values if v and v.strip()]


class CandidateRule(BaseModel):
    """One business rule cited from the document."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    rule: str = Field(min_length=1)
    source_chunks: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("source_chunks", "sourceChunks", "chunks"),
    )


def validate_item(model: type[ModelT], item: dict[str, Any]) -> Union[ModelT, str]:
    """Validate one item; return the model or a human-readable rejection reason."""
    try:
        return model.model_validate(item)
    except ValidationError as exc:
        return _format_validation_error(exc)
