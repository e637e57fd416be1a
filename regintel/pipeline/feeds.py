"""Feed polling: subscribed RSS/Atom feeds -> ingestion jobs.

The poll timestamp is written once per attempt, whether the feed could be read
or not. A failed poll is retried by the next due cycle, never inside this one.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import feedparser
import requests

from regintel.errors import AuthorizationError, JobError, NotFoundError, TransientFetchError, failure_reason
from regintel.extraction.fetcher import DEFAULT_USER_AGENT, download, parse_datetime, validate_fetch_url
from regintel.ingestion.types import FeedEntry, FeedSubscription, IngestRequest
from regintel.ingestion.url_utils import domain_allowed
from regintel.jobs.dispatcher import JobDispatcher
from regintel.pipeline.ingestion import submit_ingestion


logger = logging.getLogger(__name__)

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"


@dataclass
class PollResult:
    feed_id: int
    feed_url: str
    items_found: int = 0
    items_ingested: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feed_id": self.feed_id,
            "feed_url": self.feed_url,
            "items_found": self.items_found,
            "items_ingested": self.items_ingested,
            "errors": list(self.errors),
        }


def _entry_published(entry) -> Optional[datetime]:
    for key in ("published_parsed", "updated_parsed"):
        tm = entry.get(key)
        if tm:
            return datetime.fromtimestamp(calendar.timegm(tm), tz=timezone.utc)
    return parse_datetime(entry.get("published") or entry.get("updated"))


def parse_feed(content: bytes) -> List[FeedEntry]:
    parsed = feedparser.parse(content)
    if parsed.bozo and not parsed.entries:
        raise TransientFetchError(f"unparseable feed: {parsed.get('bozo_exception')}")
    out: List[FeedEntry] = []
    for entry in parsed.entries or []:
        link = (entry.get("link") or "").strip()
        title = (entry.get("title") or "").strip()
        if not link or not title:
            continue
        out.append(FeedEntry(url=link, title=title, published_at=_entry_published(entry)))
    return out


def _ensure_fetchable(url: str) -> None:
    err = validate_fetch_url(url)
    if err:
        raise AuthorizationError(f"feed URL rejected ({err}): {url}")


class FeedReader:
    def __init__(
        self,
        *,
        timeout: int = 30,
        max_bytes: int = 5_000_000,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self.session = session or requests.Session()

    def read(self, feed_url: str) -> List[FeedEntry]:
        _ensure_fetchable(feed_url)
        body, _, _ = download(
            self.session,
            feed_url,
            timeout=self.timeout,
            max_bytes=self.max_bytes,
            user_agent=self.user_agent,
            accept=FEED_ACCEPT,
            check_url=_ensure_fetchable,
        )
        return parse_feed(body)


class FeedPollScheduler:
    def __init__(
        self,
        repo,
        reader: FeedReader,
        dispatcher: JobDispatcher,
        *,
        allowed_domains: Callable[[], Iterable[str]],
        default_interval: int = 3600,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repo = repo
        self.reader = reader
        self.dispatcher = dispatcher
        self.allowed_domains = allowed_domains
        self.default_interval = default_interval
        self.clock = clock

    def is_due(self, feed: FeedSubscription, now: datetime) -> bool:
        if not feed.active:
            return False
        if feed.last_polled_at is None:
            return True
        interval = feed.poll_interval or self.default_interval
        return now - feed.last_polled_at >= timedelta(seconds=interval)

    def feeds_due(self, now: Optional[datetime] = None) -> List[FeedSubscription]:
        now = now or self.clock()
        return [f for f in self.repo.list_feeds(active_only=True) if self.is_due(f, now)]

    def poll_feed(self, feed: FeedSubscription) -> PollResult:
        result = PollResult(feed_id=feed.id, feed_url=feed.url)
        logger.info(f"Polling feed: {feed.title} ({feed.url})")
        try:
            try:
                entries = self.reader.read(feed.url)
            except JobError as e:
                result.errors.append(f"Failed to fetch feed: {failure_reason(e)}")
                return result
            result.items_found = len(entries)
            allowed = list(self.allowed_domains())
            for entry in entries:
                try:
                    if not domain_allowed(entry.url, allowed):
                        logger.debug(f"Skipping non-allowed domain: {entry.url}")
                        continue
                    if self.repo.url_seen(entry.url):
                        continue
                    submit_ingestion(self.dispatcher, IngestRequest(url=entry.url, rss_feed_id=feed.id))
                    result.items_ingested += 1
                except Exception as e:
                    result.errors.append(f"Error processing {entry.url}: {failure_reason(e)}")
        finally:
            try:
                self.repo.mark_feed_polled(feed.id, self.clock())
            except Exception as e:
                result.errors.append(f"Could not stamp poll time: {failure_reason(e)}")
            logger.info(
                f"Feed {feed.id}: {result.items_ingested}/{result.items_found} queued, {len(result.errors)} errors"
            )
        return result

    def run_due(self, now: Optional[datetime] = None) -> List[PollResult]:
        return [self.poll_feed(f) for f in self.feeds_due(now)]


def feed_poll_job_handler(scheduler: FeedPollScheduler):
    """Job handler for the feed-poll class; payload: {"feed_id": int}."""

    def handle(payload: Dict[str, Any], report_progress: Callable[[int], None]) -> PollResult:
        feed = scheduler.repo.get_feed(int(payload["feed_id"]))
        if feed is None:
            raise NotFoundError(f"feed {payload['feed_id']} not found")
        report_progress(10)
        return scheduler.poll_feed(feed)

    return handle
