"""Tolerant parsing of loosely-structured LLM responses.

Models are asked for JSON but routinely wrap it in markdown fences, prepend
prose, drop fields or invent severity labels. Everything here either returns
a cleaned value or raises `LLMParseError`; callers decide on the fallback.
"""
from __future__ import annotations

import json
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from research_reflection.models.reflection import GapSeverity


MAX_GAP_FIELD_CHARS = 200
NO_ASSESSMENT_PLACEHOLDER = "No overall assessment provided"

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class LLMParseError(ValueError):
    """Raised when a model response holds no usable JSON payload."""


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def normalize_severity(value: Any) -> GapSeverity:
    normalized = str(value).strip().lower()
    if normalized == "critical":
        return "critical"
    if normalized in ("major", "high"):
        return "major"
    return "minor"


class GapSuggestion(BaseModel):
    """One unaddressed aspect reported by the missing-information prompt."""

    model_config = ConfigDict(populate_by_name=True)

    description: str
    severity: GapSeverity
    suggested_action: str = Field(alias="suggestedAction")

    @field_validator("description", "suggested_action", mode="before")
    @classmethod
    def _clip_text(cls, value: Any) -> str:
        if value is None or value == "" or value is False:
            raise ValueError("field is required")
        return str(value)[:MAX_GAP_FIELD_CHARS]

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> GapSeverity:
        if value is None or value == "":
            raise ValueError("severity is required")
        return normalize_severity(value)


class CritiquePayload(BaseModel):
    """The five fields of a self-critique; missing lists become empty."""

    model_config = ConfigDict(populate_by_name=True)

    overall_assessment: str = Field(default=NO_ASSESSMENT_PLACEHOLDER, alias="overallAssessment")
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    critical_issues: list[str] = Field(default_factory=list, alias="criticalIssues")
    suggested_improvements: list[str] = Field(default_factory=list, alias="suggestedImprovements")

    @field_validator("overall_assessment", mode="before")
    @classmethod
    def _assessment(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return NO_ASSESSMENT_PLACEHOLDER
        return value

    @field_validator(
        "strengths", "weaknesses", "critical_issues", "suggested_improvements", mode="before"
    )
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item if isinstance(item, str) else json.dumps(item) for item in value if item is not None]


def parse_gap_suggestions(raw_text: str) -> list[GapSuggestion]:
    """Parse a JSON array of gap suggestions, dropping malformed items."""
    cleaned = strip_code_fences(raw_text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise LLMParseError(f"Invalid JSON in gap response: {exc}") from exc
    if not isinstance(parsed, list):
        raise LLMParseError("Gap response is not a JSON array")

    suggestions: list[GapSuggestion] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        try:
            suggestions.append(GapSuggestion.model_validate(item))
        except ValidationError:
            continue
    return suggestions


def extract_json_object(raw_text: str) -> dict[str, Any]:
    """Return the outermost `{...}` block of a response, tolerating surrounding prose."""
    text = strip_code_fences(raw_text)
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise LLMParseError("no JSON object detected")
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise LLMParseError(f"JSON parsing failed: {exc}") from exc
    if not isinstance(parsed, dict):
        raise LLMParseError("JSON payload is not an object")
    return parsed


def parse_critique_payload(raw_text: str) -> CritiquePayload:
    return CritiquePayload.model_validate(extract_json_object(raw_text))
