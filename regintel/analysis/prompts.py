"""Prompt templates for pediatric oncology regulatory analysis."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional


SUMMARIZE_SYSTEM_PROMPT = """You are a regulatory intelligence assistant for a biopharmaceutical company specializing in pediatric oncology. You review curated regulatory documents from agencies such as the FDA, EMA and PMDA.

Only summarize new information relevant to pediatric oncology (drug approvals, label expansions, safety warnings and regulatory guidance). Ignore adult-only oncology unless pediatric implications are mentioned.

Classify each finding as one of: Approval, Guidance, Safety Alert, Other.

Extract pediatric-specific details:
- Age groups (neonates, infants, children, adolescents)
- Dosing recommendations
- Safety outcomes and adverse events
- Efficacy data in pediatric populations

Cite every non-obvious statement with URL + section/page. If unsure, or if the document has no pediatric relevance, say so clearly."""


SELF_CHECK_SYSTEM_PROMPT = (
    "Verify each sentence in summary_md/impact_md maps to at least one citation. "
    "Remove or rewrite uncited sentences. Output corrected JSON; include validation: {passed, notes[]}."
)


def build_summarize_prompt(*, title: str, url: str, text: str, pdf_url: Optional[str] = None) -> str:
    pdf_line = f"PDF: {pdf_url}\n" if pdf_url else ""
    return f"""Document: {title}
URL: {url}
{pdf_line}
Extracted text (truncated): {text}

Analyze this document for pediatric oncology relevance and return JSON with:
{{
  "pediatric_relevant": boolean,
  "classification": "Approval" | "Guidance" | "Safety Alert" | "Other" | null,
  "summary_md": "Brief summary focusing on pediatric oncology implications (200 words max)",
  "impact_md": "Impact on pediatric oncology programs (200 words max)",
  "pediatric_details": {{
    "age_groups": ["neonates", "infants", "children", "adolescents"],
    "dosing": "Pediatric dosing information if available",
    "safety_outcomes": "Key safety findings for pediatric populations",
    "efficacy_data": "Efficacy results in pediatric studies"
  }},
  "citations": [{{"url": "string", "locator": "page/section", "quote": "optional direct quote"}}],
  "needs_more_context": boolean
}}

If the document is NOT relevant to pediatric oncology, set pediatric_relevant to false and explain briefly in summary_md.
Prefer PDF citations if available. If context is insufficient, set needs_more_context: true."""


def build_self_check_prompt(*, summary_md: str, impact_md: str, citations: List[Dict[str, Any]]) -> str:
    return f"""Summary: {summary_md}

Impact: {impact_md}

Citations: {json.dumps(citations, indent=2)}

Return JSON with:
- corrected_summary_md
- corrected_impact_md
- corrected_citations
- validation: {{"passed": boolean, "notes": [string]}}"""
