"""Analysis contracts.

The analysis capability answers twice per document: a summarize payload and a
citation self-check payload. Both are stored (in corrected form) on the
`analyses` table, so this module defines:
- JSON Schemas for both responses (for validation)
- Helpers that normalize citations into a stable shape
"""

from __future__ import annotations

from typing import Any, Dict, List

from jsonschema import Draft202012Validator


CLASSIFICATIONS = ["Approval", "Guidance", "Safety Alert", "Other"]

NOT_RELEVANT_IMPACT = "Not applicable - document not relevant to pediatric oncology"

_CITATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["url"],
    "properties": {
        "url": {"type": "string", "minLength": 1},
        "locator": {"type": ["string", "null"]},
        "quote": {"type": ["string", "null"]},
    },
    "additionalProperties": True,
}


SUMMARY_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["pediatric_relevant", "summary_md"],
    "properties": {
        "pediatric_relevant": {"type": "boolean"},
        "classification": {"enum": CLASSIFICATIONS + [None]},
        "summary_md": {"type": "string"},
        "impact_md": {"type": ["string", "null"]},
        "pediatric_details": {
            "type": ["object", "null"],
            "properties": {
                "age_groups": {"type": "array", "items": {"type": "string"}},
                "dosing": {"type": ["string", "null"]},
                "safety_outcomes": {"type": ["string", "null"]},
                "efficacy_data": {"type": ["string", "null"]},
            },
            "additionalProperties": True,
        },
        "citations": {"type": "array", "items": _CITATION_SCHEMA},
        "needs_more_context": {"type": "boolean"},
    },
    "additionalProperties": True,
}


SELF_CHECK_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["corrected_summary_md", "corrected_impact_md", "corrected_citations", "validation"],
    "properties": {
        "corrected_summary_md": {"type": "string"},
        "corrected_impact_md": {"type": "string"},
        "corrected_citations": {"type": "array", "items": _CITATION_SCHEMA},
        "validation": {
            "type": "object",
            "required": ["passed"],
            "properties": {
                "passed": {"type": "boolean"},
                "notes": {"type": "array", "items": {"type": "string"}},
            },
            "additionalProperties": True,
        },
    },
    "additionalProperties": True,
}


_SUMMARY_VALIDATOR = Draft202012Validator(SUMMARY_SCHEMA)
_SELF_CHECK_VALIDATOR = Draft202012Validator(SELF_CHECK_SCHEMA)


def _errors(validator: Draft202012Validator, payload: Any) -> List[str]:
    errors = []
    for e in sorted(validator.iter_errors(payload), key=lambda x: list(x.path)):
        path = ".".join(str(p) for p in e.path) if e.path else "<root>"
        errors.append(f"{path}: {e.message}")
    return errors


def validate_summary(payload: Dict[str, Any]) -> List[str]:
    """Return a list of human-readable validation errors (empty means valid)."""
    return _errors(_SUMMARY_VALIDATOR, payload)


def validate_self_check(payload: Dict[str, Any]) -> List[str]:
    return _errors(_SELF_CHECK_VALIDATOR, payload)


def normalize_citations(citations: Any) -> List[Dict[str, str]]:
    """Keep citations with a URL; coerce locator/quote to strings."""
    out: List[Dict[str, str]] = []
    if not isinstance(citations, list):
        return out
    for c in citations:
        if not isinstance(c, dict):
            continue
        url = str(c.get("url") or "").strip()
        if not url:
            continue
        item = {"url": url, "locator": str(c.get("locator") or "").strip()}
        quote = str(c.get("quote") or "").strip()
        if quote:
            item["quote"] = quote
        out.append(item)
    return out
