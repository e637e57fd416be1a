import unittest
from datetime import timedelta
from unittest import mock

from regintel.errors import NotFoundError
from regintel.extraction.fetcher import SourceFetcher
from regintel.ingestion.types import Category, DomainPolicy, NewSourceItem
from regintel.jobs.dispatcher import InMemoryJobStore, JobClass, JobDispatcher
from regintel.pipeline.discovery import DiscoveryScheduler, LinkCrawler, discovery_job_handler, extract_links

from fakes import FIXED_NOW, InMemoryRepo, MutableClock


SEED = b"""<html><body>
<a href="/guidance/pediatric-study-plans">Guidance</a>
<a href="/guidance/pediatric-study-plans#top">Same guidance</a>
<a href="https://www.fda.gov/media/1/download.pdf">PDF</a>
<a href="/about-fda/contact">Contact</a>
<a href="https://other.example.com/guidance/x">Elsewhere</a>
<a href="mailto:druginfo@fda.hhs.gov">Mail</a>
<a href="/drugs/resources/oncology-approvals">Approvals</a>
</body></html>"""


def _response(body, url="https://www.fda.gov/"):
    resp = mock.Mock()
    resp.url = url
    resp.history = []
    resp.status_code = 200
    resp.headers = {"content-type": "text/html"}
    resp.encoding = "utf-8"
    resp.iter_content.return_value = [body]
    return resp


class TestDomainsDue(unittest.TestCase):
    def test_cadence(self):
        repo = InMemoryRepo()
        repo.upsert_domains(
            [
                DomainPolicy(domain="fda.gov"),
                DomainPolicy(domain="ema.europa.eu", last_discovered_at=FIXED_NOW - timedelta(days=1)),
                DomainPolicy(domain="pmda.go.jp", last_discovered_at=FIXED_NOW - timedelta(days=8)),
                DomainPolicy(domain="mhra.gov.uk", last_discovered_at=FIXED_NOW - timedelta(hours=2), discovery_interval=3600),
                DomainPolicy(domain="hc-sc.gc.ca", active=False),
            ]
        )
        scheduler = DiscoveryScheduler(repo, mock.Mock(), mock.Mock())
        due = sorted(p.domain for p in scheduler.domains_due(FIXED_NOW))
        self.assertEqual(due, ["fda.gov", "mhra.gov.uk", "pmda.go.jp"])


class TestLinkCrawler(unittest.TestCase):
    def test_extract_links(self):
        links = extract_links("https://www.fda.gov/", SEED.decode())
        self.assertIn("https://www.fda.gov/guidance/pediatric-study-plans", links)
        self.assertFalse(any(l.startswith("mailto:") for l in links))

    def test_crawl_keeps_same_domain_documents(self):
        session = mock.Mock()
        session.get.return_value = _response(SEED)
        crawler = LinkCrawler(SourceFetcher(lambda: ["fda.gov"], session=session), max_links=10)
        urls, errors = crawler.crawl(DomainPolicy(domain="fda.gov", seed_urls=["https://www.fda.gov/start"]))
        self.assertEqual(
            urls,
            [
                "https://www.fda.gov/guidance/pediatric-study-plans",
                "https://www.fda.gov/media/1/download.pdf",
                "https://www.fda.gov/drugs/resources/oncology-approvals",
            ],
        )
        self.assertEqual(errors, [])
        session.get.assert_called_once()

    def test_crawl_is_capped(self):
        session = mock.Mock()
        session.get.return_value = _response(SEED)
        crawler = LinkCrawler(SourceFetcher(lambda: ["fda.gov"], session=session), max_links=1)
        urls, _ = crawler.crawl(DomainPolicy(domain="fda.gov"))
        self.assertEqual(len(urls), 1)
        self.assertEqual(session.get.call_args[0][0], "https://fda.gov/")

    def test_seed_outside_allow_list_is_reported(self):
        session = mock.Mock()
        crawler = LinkCrawler(SourceFetcher(lambda: [], session=session))
        urls, errors = crawler.crawl(DomainPolicy(domain="fda.gov"))
        self.assertEqual(urls, [])
        self.assertEqual(len(errors), 1)
        session.get.assert_not_called()

    def test_seed_redirected_off_allow_list_is_reported(self):
        session = mock.Mock()
        session.get.return_value = _response(SEED, url="https://other.example.com/start")
        crawler = LinkCrawler(SourceFetcher(lambda: ["fda.gov"], session=session))
        urls, errors = crawler.crawl(DomainPolicy(domain="fda.gov", seed_urls=["https://www.fda.gov/start"]))
        self.assertEqual(urls, [])
        self.assertEqual(
            errors, ["Failed to read https://www.fda.gov/start: AuthorizationError: Domain not in allowlist: other.example.com"]
        )


class TestDiscoverForDomain(unittest.TestCase):
    def setUp(self):
        self.repo = InMemoryRepo(domains=["fda.gov"])
        self.crawler = mock.Mock()
        self.clock = MutableClock()
        self.dispatcher = JobDispatcher(InMemoryJobStore(), clock=self.clock)
        self.scheduler = DiscoveryScheduler(self.repo, self.crawler, self.dispatcher, clock=self.clock)

    def test_queues_unseen_urls_and_keeps_errors(self):
        self.repo.insert_source_item(
            NewSourceItem(
                url="https://www.fda.gov/a",
                source_domain="www.fda.gov",
                category=Category.GUIDANCE,
                title="A",
                fingerprint="f-a",
            )
        )
        self.crawler.crawl.return_value = (
            ["https://www.fda.gov/a", "https://www.fda.gov/b", "https://www.fda.gov/c"],
            ["Failed to read https://www.fda.gov/x: TransientFetchError: HTTP 500"],
        )
        result = self.scheduler.discover_for_domain(self.repo.get_domain("fda.gov"))
        self.assertEqual(result.urls_queued, 2)
        self.assertEqual(len(result.urls_found), 3)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(self.dispatcher.stats(JobClass.INGEST)["waiting"], 2)
        self.assertEqual(self.repo.get_domain("fda.gov").last_discovered_at, FIXED_NOW)

    def test_crawler_crash_still_returns_result(self):
        self.crawler.crawl.side_effect = RuntimeError("parser exploded")
        result = self.scheduler.discover_for_domain(self.repo.get_domain("fda.gov"))
        self.assertEqual(result.urls_queued, 0)
        self.assertEqual(result.errors, ["RuntimeError: parser exploded"])
        self.assertEqual(self.repo.discovered_marks, ["fda.gov"])

    def test_one_bad_link_does_not_abort(self):
        self.crawler.crawl.return_value = (["https://www.fda.gov/b", "https://www.fda.gov/c"], [])
        self.scheduler.dispatcher = mock.Mock()
        self.scheduler.dispatcher.enqueue.side_effect = [RuntimeError("boom"), mock.Mock(identity="ingest-c")]
        result = self.scheduler.discover_for_domain(self.repo.get_domain("fda.gov"))
        self.assertEqual(result.urls_queued, 1)
        self.assertEqual(len(result.errors), 1)

    def test_job_handler(self):
        self.crawler.crawl.return_value = ([], [])
        handler = discovery_job_handler(self.scheduler)
        self.assertEqual(handler({"domain": "fda.gov"}, lambda p: None).domain, "fda.gov")
        with self.assertRaises(NotFoundError):
            handler({"domain": "unknown.org"}, lambda p: None)


if __name__ == "__main__":
    unittest.main()
