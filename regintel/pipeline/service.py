"""Producer-facing facade and component wiring.

Usage:
    settings = Settings.from_env()
    service = build_pipeline(settings)
    job_id = service.submit_ingestion("https://www.fda.gov/...")
    service.get_job_status(job_id)

Workers: `service.worker_pool().start()` (see pipeline_worker.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from regintel.analysis.llm_client import LLMClient
from regintel.analysis.orchestrator import AnalysisOrchestrator, analysis_job_handler
from regintel.bookmarks.raindrop import RaindropClient
from regintel.config import Settings
from regintel.errors import NotFoundError
from regintel.extraction.fetcher import SourceFetcher
from regintel.extraction.pdf import PdfExtractor
from regintel.ingestion.dedup import DedupIndex
from regintel.ingestion.types import Category, IngestRequest, SourceItem
from regintel.jobs.dispatcher import InMemoryJobStore, JobClass, JobDispatcher, JobStatus, WorkerPool
from regintel.jobs.identity import analysis_identity, discovery_identity, feed_poll_identity, reanalysis_identity
from regintel.pipeline.discovery import DiscoveryScheduler, LinkCrawler, discovery_job_handler
from regintel.pipeline.feeds import FeedPollScheduler, FeedReader, feed_poll_job_handler
from regintel.pipeline.ingestion import IngestionStateMachine, ingest_job_handler, submit_ingestion
from regintel.storage.postgres_analyses import PostgresAnalysesStore
from regintel.storage.postgres_jobs import PostgresJobStore
from regintel.storage.postgres_repo import PostgresRepo
from regintel.storage.postgres_schema import ensure_postgres_schema


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisSubmission:
    """Either a queued job or a reference to an analysis that already exists."""

    job_id: Optional[str] = None
    existing_analysis_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "existing_analysis_id": self.existing_analysis_id}


class PipelineService:
    def __init__(
        self,
        *,
        dispatcher: JobDispatcher,
        repo,
        analyses,
        orchestrator: AnalysisOrchestrator,
        discovery: DiscoveryScheduler,
        feeds: FeedPollScheduler,
        concurrency: Optional[Dict[JobClass, int]] = None,
        feed_tick_seconds: int = 300,
        discovery_slot_seconds: int = 3600,
        auto_analyze: bool = True,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.dispatcher = dispatcher
        self.repo = repo
        self.analyses = analyses
        self.orchestrator = orchestrator
        self.discovery = discovery
        self.feeds = feeds
        self.concurrency = concurrency or {cls: 1 for cls in JobClass}
        self.feed_tick_seconds = feed_tick_seconds
        self.discovery_slot_seconds = discovery_slot_seconds
        self.auto_analyze = auto_analyze
        self.clock = clock

    # -----------------------------
    # Ingestion
    # -----------------------------
    def submit_ingestion(self, url: str, source: Optional[str] = None, category: Optional[Category] = None) -> str:
        return submit_ingestion(self.dispatcher, IngestRequest(url=url.strip(), source=source, category=category))

    # -----------------------------
    # Analysis
    # -----------------------------
    def submit_analysis(self, source_item_id: int) -> AnalysisSubmission:
        existing = self.analyses.latest_for_item(source_item_id)
        if existing is not None:
            logger.info(f"Item {source_item_id} already analyzed (analysis {existing.id}); not queued")
            return AnalysisSubmission(existing_analysis_id=existing.id)
        if self.repo.get_item(source_item_id) is None:
            raise NotFoundError(f"source item {source_item_id} not found")
        record = self.dispatcher.enqueue(
            JobClass.ANALYSIS,
            analysis_identity(source_item_id),
            {"source_item_id": int(source_item_id)},
        )
        return AnalysisSubmission(job_id=record.identity)

    def reanalyze(self, source_item_id: int) -> str:
        """Queue a fresh analysis even when one exists."""
        if self.repo.get_item(source_item_id) is None:
            raise NotFoundError(f"source item {source_item_id} not found")
        record = self.dispatcher.enqueue(
            JobClass.ANALYSIS,
            reanalysis_identity(source_item_id, self.clock()),
            {"source_item_id": int(source_item_id)},
        )
        return record.identity

    def submit_analysis_batch(self, *, limit: int = 1000) -> List[str]:
        """Queue analysis for every intake item that has none yet."""
        job_ids = []
        for item_id in self.repo.list_intake_items_without_analysis(limit=limit):
            submission = self.submit_analysis(item_id)
            if submission.job_id:
                job_ids.append(submission.job_id)
        logger.info(f"Queued {len(job_ids)} analysis jobs")
        return job_ids

    def auto_analyze_item(self, item: SourceItem) -> None:
        """Post-create hook for the ingestion state machine."""
        if not self.auto_analyze:
            return
        if not self.orchestrator.is_available():
            logger.debug(f"Analysis unavailable; item {item.id} left for a later batch")
            return
        self.submit_analysis(item.id)

    # -----------------------------
    # Status
    # -----------------------------
    def get_job_status(self, job_id: str) -> JobStatus:
        status = self.dispatcher.get_status(job_id)
        if status is None:
            raise NotFoundError(f"job {job_id} not found (never queued or already evicted)")
        return status

    # -----------------------------
    # Schedulers
    # -----------------------------
    def trigger_discovery(self, domain: Optional[str] = None) -> List[str]:
        now = self.clock()
        if domain:
            policy = self.repo.get_domain(domain)
            if policy is None or not policy.active:
                raise NotFoundError(f"no active domain policy for {domain}")
            policies = [policy]
        else:
            policies = self.discovery.domains_due(now)
        job_ids = []
        for p in policies:
            record = self.dispatcher.enqueue(
                JobClass.DISCOVERY,
                discovery_identity(p.domain, now, slot_seconds=self.discovery_slot_seconds),
                {"domain": p.domain},
            )
            job_ids.append(record.identity)
        return job_ids

    def trigger_feed_poll(self, feed_id: Optional[int] = None) -> List[str]:
        now = self.clock()
        if feed_id is not None:
            feed = self.repo.get_feed(feed_id)
            if feed is None:
                raise NotFoundError(f"feed {feed_id} not found")
            feeds = [feed]
        else:
            feeds = self.feeds.feeds_due(now)
        job_ids = []
        for f in feeds:
            record = self.dispatcher.enqueue(
                JobClass.FEED_POLL,
                feed_poll_identity(f.id, now, slot_seconds=self.feed_tick_seconds),
                {"feed_id": f.id},
            )
            job_ids.append(record.identity)
        return job_ids

    def worker_pool(self, *, poll_interval: float = 1.0) -> WorkerPool:
        return WorkerPool(self.dispatcher, self.concurrency, poll_interval=poll_interval)


def build_pipeline(settings: Settings, *, job_store=None, ensure_schema: bool = True) -> PipelineService:
    """Wire every component from settings and register the job handlers."""
    if ensure_schema:
        ensure_postgres_schema(settings.pg_dsn)

    repo = PostgresRepo(settings.pg_dsn)
    analyses = PostgresAnalysesStore(settings.pg_dsn)
    if job_store is None:
        job_store = InMemoryJobStore() if settings.job_store == "memory" else PostgresJobStore(settings.pg_dsn)
    dispatcher = JobDispatcher(job_store, stall_timeout=settings.job_stall_timeout)

    fetcher = SourceFetcher(
        repo.active_domain_names,
        timeout=settings.request_timeout,
        max_bytes=settings.fetch_max_bytes,
        user_agent=settings.user_agent,
    )
    pdf_extractor = PdfExtractor(fetcher, timeout=settings.request_timeout, user_agent=settings.user_agent)
    bookmarks = RaindropClient(api_token=settings.raindrop_api_token, base_url=settings.raindrop_api_url)
    if not bookmarks.is_configured():
        logger.warning("RAINDROP_API_TOKEN not set - bookmark mirroring disabled")

    machine = IngestionStateMachine(
        fetcher,
        DedupIndex(repo),
        repo,
        pdf_extractor=pdf_extractor,
        bookmarks=bookmarks if bookmarks.is_configured() else None,
    )
    orchestrator = AnalysisOrchestrator(
        repo,
        analyses,
        LLMClient.from_settings(settings),
        fetcher=fetcher,
        pdf_extractor=pdf_extractor,
    )
    discovery = DiscoveryScheduler(
        repo,
        LinkCrawler(
            fetcher,
            max_links=settings.discovery_max_links,
            timeout=settings.request_timeout,
            user_agent=settings.user_agent,
        ),
        dispatcher,
        default_interval=settings.discovery_interval,
    )
    feeds = FeedPollScheduler(
        repo,
        FeedReader(timeout=settings.request_timeout, user_agent=settings.user_agent),
        dispatcher,
        allowed_domains=repo.active_domain_names,
        default_interval=settings.feed_poll_interval,
    )

    service = PipelineService(
        dispatcher=dispatcher,
        repo=repo,
        analyses=analyses,
        orchestrator=orchestrator,
        discovery=discovery,
        feeds=feeds,
        concurrency={
            JobClass.INGEST: settings.ingest_concurrency,
            JobClass.ANALYSIS: settings.analysis_concurrency,
            JobClass.DISCOVERY: settings.discovery_concurrency,
            JobClass.FEED_POLL: settings.feed_poll_concurrency,
        },
        feed_tick_seconds=settings.feed_poll_tick_minutes * 60,
        auto_analyze=settings.auto_analyze,
    )
    machine.on_created = service.auto_analyze_item

    dispatcher.register(JobClass.INGEST, ingest_job_handler(machine))
    dispatcher.register(JobClass.ANALYSIS, analysis_job_handler(orchestrator))
    dispatcher.register(JobClass.DISCOVERY, discovery_job_handler(discovery))
    dispatcher.register(JobClass.FEED_POLL, feed_poll_job_handler(feeds))
    return service
