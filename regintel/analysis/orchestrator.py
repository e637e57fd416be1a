"""Analysis orchestration: stored item -> summary/impact record.

Usage:
    orchestrator = AnalysisOrchestrator(repo, analyses, LLMClient.from_settings(settings))
    outcome = orchestrator.analyze(item_id)   # AnalysisCreated | AnalysisFailed

Every successful call writes exactly one new analysis row; earlier rows are
kept and the newest one is authoritative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from regintel.analysis.llm_client import LLMClient
from regintel.analysis.prompts import (
    SELF_CHECK_SYSTEM_PROMPT,
    SUMMARIZE_SYSTEM_PROMPT,
    build_self_check_prompt,
    build_summarize_prompt,
)
from regintel.contracts.analysis import (
    NOT_RELEVANT_IMPACT,
    normalize_citations,
    validate_self_check,
    validate_summary,
)
from regintel.errors import InvalidResponseError, JobError, NotFoundError, ServiceUnavailable, failure_reason
from regintel.ingestion.types import AnalysisRecord, SourceItem


logger = logging.getLogger(__name__)

MAX_ANALYSIS_CHARS = 12000


@dataclass(frozen=True)
class AnalysisCreated:
    analysis_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "created", "analysis_id": self.analysis_id}


@dataclass(frozen=True)
class AnalysisFailed:
    reason: str
    error: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "failed", "reason": self.reason}


AnalysisOutcome = Union[AnalysisCreated, AnalysisFailed]


def truncate_text(text: str, limit: int = MAX_ANALYSIS_CHARS) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + "\n\n[... truncated]"


class AnalysisOrchestrator:
    def __init__(
        self,
        repo,
        analyses,
        llm: LLMClient,
        *,
        fetcher=None,
        pdf_extractor=None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.analyses = analyses
        self.llm = llm
        self.fetcher = fetcher
        self.pdf_extractor = pdf_extractor
        self.clock = clock

    def is_available(self) -> bool:
        return self.llm.is_available()

    def analyze(self, item_id: int) -> AnalysisOutcome:
        try:
            record = self.run(item_id)
        except JobError as e:
            logger.error(f"Analysis of item {item_id} failed: {e}")
            return AnalysisFailed(reason=failure_reason(e), error=e)
        return AnalysisCreated(analysis_id=record.id)

    def run(self, item_id: int, report_progress: Optional[Callable[[int], None]] = None) -> AnalysisRecord:
        """Analyze one item and persist a new record; raises JobError subclasses."""
        progress = report_progress or (lambda _p: None)
        if not self.llm.is_available():
            raise ServiceUnavailable("analysis capability is not configured (no LLM API key)")

        item = self.repo.get_item(item_id)
        if item is None:
            raise NotFoundError(f"source item {item_id} not found")
        progress(10)

        text = truncate_text(self._document_text(item))
        logger.info(f"Analyzing source item {item.id} ({len(text)} chars) with {self.llm.provider}")

        summary = self.llm.complete_json(
            SUMMARIZE_SYSTEM_PROMPT,
            build_summarize_prompt(title=item.title, url=item.url, text=text, pdf_url=item.canonical_pdf_url),
        )
        errors = validate_summary(summary)
        if errors:
            raise InvalidResponseError(f"summary response failed validation: {errors[:3]}")
        progress(50)

        meta: Dict[str, Any] = {
            "provider": self.llm.provider,
            "model": self.llm.model,
            "pediatric_relevant": bool(summary["pediatric_relevant"]),
            "classification": summary.get("classification"),
            "needs_more_context": bool(summary.get("needs_more_context", False)),
        }

        if not summary["pediatric_relevant"]:
            logger.info(f"Source item {item.id} not relevant to pediatric oncology")
            meta["timestamp"] = self.clock().isoformat()
            record = self.analyses.insert_analysis(
                source_item_id=item.id,
                summary_md=summary["summary_md"],
                impact_md=NOT_RELEVANT_IMPACT,
                citations=[],
                model_meta=meta,
            )
            progress(100)
            return record

        citations = normalize_citations(summary.get("citations"))
        check = self.llm.complete_json(
            SELF_CHECK_SYSTEM_PROMPT,
            build_self_check_prompt(
                summary_md=summary["summary_md"],
                impact_md=summary.get("impact_md") or "",
                citations=citations,
            ),
        )
        errors = validate_self_check(check)
        if errors:
            raise InvalidResponseError(f"self-check response failed validation: {errors[:3]}")
        progress(80)

        validation = check["validation"]
        meta.update(
            {
                "pediatric_details": summary.get("pediatric_details"),
                "validation_passed": bool(validation["passed"]),
                "validation_notes": list(validation.get("notes") or []),
                "timestamp": self.clock().isoformat(),
            }
        )
        record = self.analyses.insert_analysis(
            source_item_id=item.id,
            summary_md=check["corrected_summary_md"],
            impact_md=check["corrected_impact_md"],
            citations=normalize_citations(check["corrected_citations"]),
            model_meta=meta,
        )
        logger.info(f"Created analysis {record.id} for source item {item.id}")
        progress(100)
        return record

    def _document_text(self, item: SourceItem) -> str:
        if item.text:
            return item.text
        if self.fetcher is None:
            return ""
        # Nothing stored: fetch again (PDF text wins when it is available).
        doc = self.fetcher.fetch(item.url)
        text = doc.text
        pdf_url = item.canonical_pdf_url or doc.canonical_secondary_url
        if pdf_url and self.pdf_extractor is not None:
            result = self.pdf_extractor.extract_from_url(pdf_url)
            if result.ok:
                text = result.value.text
            else:
                logger.warning(f"PDF extraction failed, using HTML text: {result.error}")
        return text


def analysis_job_handler(orchestrator: AnalysisOrchestrator):
    """Job handler for the analysis class; payload: {"source_item_id": int}."""

    def handle(payload: Dict[str, Any], report_progress: Callable[[int], None]) -> AnalysisCreated:
        record = orchestrator.run(int(payload["source_item_id"]), report_progress)
        return AnalysisCreated(analysis_id=record.id)

    return handle
