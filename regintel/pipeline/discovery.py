"""Autonomous link discovery for allow-listed domains.

A domain is due when it is active and was never discovered or was last
discovered at least one cadence ago. Discovery is bounded: only the seed
pages are read (depth one) and at most `max_links` candidates are kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

import lxml.etree
import lxml.html

from regintel.errors import JobError, NotFoundError, failure_reason
from regintel.extraction.fetcher import DEFAULT_USER_AGENT, download
from regintel.ingestion.types import DomainPolicy, IngestRequest
from regintel.ingestion.url_utils import canonicalize_url, extract_domain, host_matches
from regintel.jobs.dispatcher import JobDispatcher
from regintel.pipeline.ingestion import submit_ingestion


logger = logging.getLogger(__name__)

# Path fragments that mark a link as a regulatory document worth ingesting.
DOCUMENT_PATH_PATTERNS: Tuple[str, ...] = (
    "/guidance",
    "guidance-documents",
    "warning-letter",
    "warningletters",
    "untitled-letter",
    "/meeting",
    "/advisory-committee",
    "approval",
    "/press",
    "/news-events",
    "/safety",
    "pediatric",
    "oncology",
    ".pdf",
)


@dataclass
class DomainResult:
    domain: str
    urls_found: List[str] = field(default_factory=list)
    urls_queued: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "urls_found": list(self.urls_found),
            "urls_queued": self.urls_queued,
            "errors": list(self.errors),
        }


def extract_links(page_url: str, html: str) -> List[str]:
    """Absolute, fragment-free http(s) links in document order."""
    try:
        tree = lxml.html.fromstring(html) if html.strip() else None
    except (lxml.etree.ParserError, lxml.etree.XMLSyntaxError, ValueError):
        return []
    if tree is None:
        return []
    out: List[str] = []
    for href in tree.xpath("//a/@href"):
        href = (href or "").strip()
        if not href or href.startswith(("mailto:", "javascript:", "tel:")):
            continue
        absolute = canonicalize_url(urljoin(page_url, href))
        if urlparse(absolute).scheme in ("http", "https"):
            out.append(absolute)
    return out


def looks_like_document(url: str, patterns: Sequence[str] = DOCUMENT_PATH_PATTERNS) -> bool:
    path = (urlparse(url).path or "").lower()
    return any(p in path for p in patterns)


class LinkCrawler:
    """Reads a domain's seed pages and returns candidate document URLs."""

    def __init__(
        self,
        fetcher,
        *,
        max_links: int = 50,
        patterns: Sequence[str] = DOCUMENT_PATH_PATTERNS,
        timeout: int = 30,
        max_bytes: int = 5_000_000,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.fetcher = fetcher
        self.max_links = max_links
        self.patterns = tuple(patterns)
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent

    @staticmethod
    def seed_urls(policy: DomainPolicy) -> List[str]:
        return list(policy.seed_urls) or [f"https://{policy.domain}/"]

    def crawl(self, policy: DomainPolicy) -> Tuple[List[str], List[str]]:
        """Returns (candidate urls, per-seed errors)."""
        found: List[str] = []
        seen = set()
        errors: List[str] = []
        for seed in self.seed_urls(policy):
            if len(found) >= self.max_links:
                break
            try:
                self.fetcher.ensure_allowed(seed)
                body, _, encoding = download(
                    self.fetcher.session,
                    seed,
                    timeout=self.timeout,
                    max_bytes=self.max_bytes,
                    user_agent=self.user_agent,
                    accept="text/html,application/xhtml+xml",
                    check_url=self.fetcher.ensure_allowed,
                )
            except JobError as e:
                errors.append(f"Failed to read {seed}: {failure_reason(e)}")
                continue
            html = body.decode(encoding or "utf-8", errors="replace")
            for link in extract_links(seed, html):
                if link in seen or not host_matches(extract_domain(link), policy.domain):
                    continue
                if not looks_like_document(link, self.patterns):
                    continue
                seen.add(link)
                found.append(link)
                if len(found) >= self.max_links:
                    break
        return found, errors


class DiscoveryScheduler:
    def __init__(
        self,
        repo,
        crawler: LinkCrawler,
        dispatcher: JobDispatcher,
        *,
        default_interval: int = 7 * 24 * 3600,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.crawler = crawler
        self.dispatcher = dispatcher
        self.default_interval = default_interval
        self.clock = clock

    def is_due(self, policy: DomainPolicy, now: datetime) -> bool:
        if not policy.active:
            return False
        if policy.last_discovered_at is None:
            return True
        interval = policy.discovery_interval or self.default_interval
        return now - policy.last_discovered_at >= timedelta(seconds=interval)

    def domains_due(self, now: Optional[datetime] = None) -> List[DomainPolicy]:
        now = now or self.clock()
        return [p for p in self.repo.list_domains(active_only=True) if self.is_due(p, now)]

    def discover_for_domain(self, policy: DomainPolicy) -> DomainResult:
        """Crawl one domain and enqueue ingestion for unseen candidates.

        Never raises for per-link problems; every error lands in `errors`.
        """
        result = DomainResult(domain=policy.domain)
        logger.info(f"Discovering documents on {policy.domain}")
        try:
            urls, crawl_errors = self.crawler.crawl(policy)
            result.urls_found = urls
            result.errors.extend(crawl_errors)
            for url in urls:
                try:
                    if self.repo.url_seen(url):
                        continue
                    submit_ingestion(self.dispatcher, IngestRequest(url=url))
                    result.urls_queued += 1
                except Exception as e:
                    result.errors.append(f"Error queuing {url}: {failure_reason(e)}")
        except Exception as e:
            result.errors.append(failure_reason(e))
        finally:
            try:
                self.repo.mark_domain_discovered(policy.domain, self.clock())
            except Exception as e:
                result.errors.append(f"Could not stamp discovery time: {failure_reason(e)}")
        logger.info(
            f"Discovery on {policy.domain}: {len(result.urls_found)} found, "
            f"{result.urls_queued} queued, {len(result.errors)} errors"
        )
        return result

    def run_due(self, now: Optional[datetime] = None) -> List[DomainResult]:
        return [self.discover_for_domain(p) for p in self.domains_due(now)]


def discovery_job_handler(scheduler: DiscoveryScheduler):
    """Job handler for the discovery class; payload: {"domain": str}."""

    def handle(payload: Dict[str, Any], report_progress: Callable[[int], None]) -> DomainResult:
        policy = scheduler.repo.get_domain(str(payload["domain"]))
        if policy is None or not policy.active:
            raise NotFoundError(f"no active domain policy for {payload['domain']}")
        report_progress(10)
        return scheduler.discover_for_domain(policy)

    return handle
