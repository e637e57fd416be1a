"""Ingestion state machine: one URL -> stored, classified Source Item.

States:
    authorizing -> fetching -> dedup_checking -> duplicate
                                              -> secondary_extracting -> classifying
                                                 -> persisting -> side_effecting -> created
    any of authorizing/fetching may end in failed

Secondary extraction and the bookmark mirror are optional: their failures are
logged and the item is still created.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from regintel.capability import CapabilityResult
from regintel.errors import JobError, PersistenceConflict, failure_reason
from regintel.ingestion.classifier import resolve_category
from regintel.ingestion.dedup import DedupIndex
from regintel.ingestion.tagging import build_tags, iso_week
from regintel.ingestion.types import (
    Created,
    Duplicate,
    Failed,
    IngestOutcome,
    IngestRequest,
    ItemStatus,
    NewSourceItem,
    SecondaryText,
    SourceItem,
)
from regintel.ingestion.url_utils import extract_domain, infer_source
from regintel.jobs.dispatcher import JobClass, JobDispatcher
from regintel.jobs.identity import ingest_identity


logger = logging.getLogger(__name__)

EXCERPT_CHARS = 500


class IngestState(str, Enum):
    AUTHORIZING = "authorizing"
    FETCHING = "fetching"
    DEDUP_CHECKING = "dedup_checking"
    SECONDARY_EXTRACTING = "secondary_extracting"
    CLASSIFYING = "classifying"
    PERSISTING = "persisting"
    SIDE_EFFECTING = "side_effecting"
    CREATED = "created"
    DUPLICATE = "duplicate"
    FAILED = "failed"


_PROGRESS = {
    IngestState.AUTHORIZING: 5,
    IngestState.FETCHING: 15,
    IngestState.DEDUP_CHECKING: 40,
    IngestState.SECONDARY_EXTRACTING: 50,
    IngestState.CLASSIFYING: 65,
    IngestState.PERSISTING: 75,
    IngestState.SIDE_EFFECTING: 90,
}


class IngestionStateMachine:
    """Drives one ingestion attempt to a terminal outcome.

    Collaborators are injected: `fetcher` (SourceFetcher), `dedup` (DedupIndex),
    `repo` (item store), optional `pdf_extractor` and `bookmarks` clients and an
    optional `on_created(item)` hook used for automatic analysis enqueueing.
    """

    def __init__(
        self,
        fetcher,
        dedup: DedupIndex,
        repo,
        *,
        pdf_extractor=None,
        bookmarks=None,
        on_created: Optional[Callable[[SourceItem], Any]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.fetcher = fetcher
        self.dedup = dedup
        self.repo = repo
        self.pdf_extractor = pdf_extractor
        self.bookmarks = bookmarks
        self.on_created = on_created
        self.clock = clock

    def process(
        self,
        request: IngestRequest,
        report_progress: Optional[Callable[[int], None]] = None,
    ) -> IngestOutcome:
        url = request.url.strip()

        def enter(state: IngestState) -> None:
            logger.debug(f"[{state.value}] {url}")
            if report_progress is not None and state in _PROGRESS:
                report_progress(_PROGRESS[state])

        enter(IngestState.AUTHORIZING)
        try:
            self.fetcher.ensure_allowed(url)
        except JobError as e:
            return self._failed(url, e)

        enter(IngestState.FETCHING)
        try:
            doc = self.fetcher.fetch(url)
        except JobError as e:
            return self._failed(url, e)

        enter(IngestState.DEDUP_CHECKING)
        existing = self.dedup.find(doc.fingerprint)
        if existing is not None:
            logger.info(f"Duplicate content for {url} (item {existing.id})")
            return Duplicate(item_id=existing.id)

        text = doc.text
        title = doc.title
        if doc.canonical_secondary_url and self.pdf_extractor is not None:
            enter(IngestState.SECONDARY_EXTRACTING)
            secondary = self._extract_secondary(doc.canonical_secondary_url)
            if secondary.ok:
                text = secondary.value.text or text
                title = secondary.value.title or title
            else:
                logger.warning(f"Secondary extraction degraded for {url}: {secondary.error}")

        enter(IngestState.CLASSIFYING)
        category = resolve_category(url, title, request.category)
        source = request.source or infer_source(url)
        now = self.clock()
        tags = build_tags(
            source=source,
            category=category.value,
            week=iso_week(now),
            status=ItemStatus.INTAKE.value,
        )

        enter(IngestState.PERSISTING)
        try:
            item = self.repo.insert_source_item(
                NewSourceItem(
                    url=url,
                    source_domain=extract_domain(url),
                    category=category,
                    title=title,
                    fingerprint=doc.fingerprint,
                    text=text,
                    canonical_pdf_url=doc.canonical_secondary_url,
                    published_at=doc.published_at,
                    tags=tags,
                    rss_feed_id=request.rss_feed_id,
                ),
                fetched_at=now,
            )
        except PersistenceConflict as e:
            winner = self.dedup.find(e.fingerprint)
            if winner is None:
                # Conflicting row vanished before we could read it; let the job retry.
                return self._failed(url, JobError(str(e)))
            logger.info(f"Concurrent insert for {url}; reporting duplicate of item {winner.id}")
            return Duplicate(item_id=winner.id)

        enter(IngestState.SIDE_EFFECTING)
        bookmark_id = self._mirror_bookmark(item, tags)

        logger.info(f"Created source item {item.id} ({category.value}) from {url}")
        if self.on_created is not None:
            try:
                self.on_created(item)
            except Exception as e:
                logger.warning(f"Post-create hook failed for item {item.id}: {e}")
        return Created(item_id=item.id, external_bookmark_id=bookmark_id)

    def _failed(self, url: str, error: JobError) -> Failed:
        reason = failure_reason(error)
        logger.warning(f"Ingestion of {url} failed: {reason}")
        return Failed(reason=reason, retryable=error.retryable, error=error)

    def _extract_secondary(self, pdf_url: str) -> CapabilityResult[SecondaryText]:
        try:
            return self.pdf_extractor.extract_from_url(pdf_url)
        except Exception as e:
            return CapabilityResult.degraded("pdf_extraction", failure_reason(e))

    def _mirror_bookmark(self, item: SourceItem, tags) -> Optional[str]:
        if self.bookmarks is None:
            return None
        try:
            result = self.bookmarks.create_bookmark(
                url=item.url,
                title=item.title,
                excerpt=(item.text or "")[:EXCERPT_CHARS] or None,
                tags=tags,
                collection="intake",
            )
        except Exception as e:
            result = CapabilityResult.degraded("bookmark", failure_reason(e))
        if not result.ok:
            logger.warning(f"Bookmark mirror skipped for item {item.id}: {result.error}")
            return None
        try:
            self.repo.set_raindrop_id(item.id, result.value)
        except Exception as e:
            logger.warning(f"Could not record bookmark id for item {item.id}: {e}")
        return result.value


def ingest_job_handler(machine: IngestionStateMachine):
    """Job handler for the ingest class; payload is `IngestRequest.to_payload()`."""

    def handle(payload: Dict[str, Any], report_progress: Callable[[int], None]) -> IngestOutcome:
        outcome = machine.process(IngestRequest.from_payload(payload), report_progress)
        if isinstance(outcome, Failed):
            raise outcome.error if outcome.error is not None else JobError(outcome.reason)
        return outcome

    return handle


def submit_ingestion(dispatcher: JobDispatcher, request: IngestRequest) -> str:
    """Enqueue an ingest job keyed by the URL; returns the job id."""
    record = dispatcher.enqueue(JobClass.INGEST, ingest_identity(request.url.strip()), request.to_payload())
    return record.identity
