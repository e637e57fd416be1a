import unittest
from datetime import timedelta
from unittest import mock

from regintel.errors import NotFoundError, TransientFetchError
from regintel.ingestion.types import Category, FeedEntry, FeedSubscription, NewSourceItem
from regintel.jobs.dispatcher import InMemoryJobStore, JobClass, JobDispatcher
from regintel.pipeline.feeds import FeedPollScheduler, feed_poll_job_handler, parse_feed

from fakes import FIXED_NOW, InMemoryRepo, MutableClock


RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>FDA Press Releases</title>
<item><title>FDA approves first pediatric therapy</title>
<link>https://www.fda.gov/news-events/press-announcements/first-pediatric</link>
<pubDate>Wed, 05 Jun 2024 10:00:00 GMT</pubDate></item>
<item><title>No link here</title></item>
</channel></rss>"""


def _feed(feed_id, *, minutes_ago=None, interval=None, active=True):
    last = FIXED_NOW - timedelta(minutes=minutes_ago) if minutes_ago is not None else None
    return FeedSubscription(
        id=feed_id,
        url=f"https://www.fda.gov/feeds/{feed_id}.xml",
        title=f"Feed {feed_id}",
        active=active,
        poll_interval=interval,
        last_polled_at=last,
    )


class TestFeedsDue(unittest.TestCase):
    def test_cadence(self):
        repo = InMemoryRepo(
            feeds=[
                _feed(1, minutes_ago=120),
                _feed(2, minutes_ago=10),
                _feed(3),
                _feed(4, active=False),
                _feed(5, minutes_ago=10, interval=300),
            ]
        )
        scheduler = FeedPollScheduler(
            repo, mock.Mock(), mock.Mock(), allowed_domains=lambda: ["fda.gov"], default_interval=3600
        )
        due = [f.id for f in scheduler.feeds_due(FIXED_NOW)]
        self.assertEqual(due, [1, 3, 5])


class TestPollFeed(unittest.TestCase):
    def setUp(self):
        self.repo = InMemoryRepo(domains=["fda.gov"], feeds=[_feed(1, minutes_ago=120)])
        self.reader = mock.Mock()
        self.clock = MutableClock()
        self.dispatcher = JobDispatcher(InMemoryJobStore(), clock=self.clock)
        self.scheduler = FeedPollScheduler(
            self.repo,
            self.reader,
            self.dispatcher,
            allowed_domains=self.repo.active_domain_names,
            clock=self.clock,
        )

    def test_queues_only_new_allowed_entries(self):
        self.repo.insert_source_item(
            NewSourceItem(
                url="https://www.fda.gov/old",
                source_domain="www.fda.gov",
                category=Category.PRESS,
                title="Old",
                fingerprint="f-old",
            )
        )
        self.reader.read.return_value = [
            FeedEntry(url="https://www.fda.gov/new", title="New"),
            FeedEntry(url="https://www.fda.gov/old", title="Old"),
            FeedEntry(url="https://example.com/elsewhere", title="Elsewhere"),
        ]
        result = self.scheduler.poll_feed(self.repo.get_feed(1))
        self.assertEqual((result.items_found, result.items_ingested, result.errors), (3, 1, []))
        self.assertEqual(self.dispatcher.stats(JobClass.INGEST)["waiting"], 1)
        self.assertEqual(self.repo.get_feed(1).last_polled_at, FIXED_NOW)

    def test_fetch_failure_still_stamps_poll_time(self):
        self.reader.read.side_effect = TransientFetchError("HTTP 502 for feed")
        result = self.scheduler.poll_feed(self.repo.get_feed(1))
        self.assertEqual(result.items_found, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Failed to fetch feed", result.errors[0])
        self.assertEqual(self.repo.polled_marks, [1])
        self.assertNotIn(self.repo.get_feed(1), self.scheduler.feeds_due(FIXED_NOW))

    def test_poll_time_write_failure_is_reported(self):
        self.reader.read.return_value = [FeedEntry(url="https://www.fda.gov/new", title="New")]
        with mock.patch.object(self.repo, "mark_feed_polled", side_effect=RuntimeError("connection reset")):
            result = self.scheduler.poll_feed(self.repo.get_feed(1))
        self.assertEqual(result.items_ingested, 1)
        self.assertEqual(result.errors, ["Could not stamp poll time: RuntimeError: connection reset"])

    def test_poll_time_write_failure_after_fetch_failure(self):
        self.reader.read.side_effect = TransientFetchError("HTTP 502 for feed")
        with mock.patch.object(self.repo, "mark_feed_polled", side_effect=RuntimeError("connection reset")):
            result = self.scheduler.poll_feed(self.repo.get_feed(1))
        self.assertEqual(len(result.errors), 2)
        self.assertIn("Failed to fetch feed", result.errors[0])
        self.assertIn("Could not stamp poll time", result.errors[1])

    def test_per_entry_errors_are_collected(self):
        self.reader.read.return_value = [
            FeedEntry(url="https://www.fda.gov/a", title="A"),
            FeedEntry(url="https://www.fda.gov/b", title="B"),
        ]
        self.scheduler.dispatcher = mock.Mock()
        self.scheduler.dispatcher.enqueue.side_effect = [RuntimeError("queue full"), mock.Mock(identity="ingest-b")]
        result = self.scheduler.poll_feed(self.repo.get_feed(1))
        self.assertEqual(result.items_ingested, 1)
        self.assertEqual(len(result.errors), 1)

    def test_job_handler(self):
        self.reader.read.return_value = []
        handler = feed_poll_job_handler(self.scheduler)
        result = handler({"feed_id": 1}, lambda p: None)
        self.assertEqual(result.to_dict()["feed_id"], 1)
        with self.assertRaises(NotFoundError):
            handler({"feed_id": 99}, lambda p: None)


class TestParseFeed(unittest.TestCase):
    def test_rss_entries(self):
        entries = parse_feed(RSS)
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].url, "https://www.fda.gov/news-events/press-announcements/first-pediatric")
        self.assertEqual(entries[0].published_at.year, 2024)


if __name__ == "__main__":
    unittest.main()
