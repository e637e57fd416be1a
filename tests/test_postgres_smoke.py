import os
import unittest
import uuid
from datetime import datetime, timezone

from regintel.errors import PersistenceConflict
from regintel.ingestion.types import Category, DomainPolicy, NewSourceItem
from regintel.jobs.dispatcher import JobClass, JobDispatcher, JobState
from regintel.storage.postgres_analyses import PostgresAnalysesStore
from regintel.storage.postgres_jobs import PostgresJobStore
from regintel.storage.postgres_repo import PostgresRepo
from regintel.storage.postgres_schema import ensure_postgres_schema


PG_DSN = os.environ.get("PG_DSN", "dbname=regintel user=regintel password=regintelpass host=localhost port=5432")


@unittest.skipUnless(os.environ.get("REGINTEL_PG_TESTS"), "set REGINTEL_PG_TESTS=1 with a reachable PG_DSN")
class TestPostgresSmoke(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        ensure_postgres_schema(PG_DSN)
        cls.repo = PostgresRepo(PG_DSN)
        cls.analyses = PostgresAnalysesStore(PG_DSN)
        cls.run_id = uuid.uuid4().hex[:12]

    def test_item_uniqueness_and_analysis(self):
        self.repo.upsert_domains([DomainPolicy(domain="fda.gov", seed_urls=["https://www.fda.gov/drugs"])])
        self.assertIn("fda.gov", self.repo.active_domain_names())

        new = NewSourceItem(
            url=f"https://www.fda.gov/smoke/{self.run_id}",
            source_domain="www.fda.gov",
            category=Category.GUIDANCE,
            title="Smoke guidance",
            fingerprint=f"smoke-{self.run_id}",
            text="Smoke text",
            tags=["source:fda", "type:guidance"],
        )
        item = self.repo.insert_source_item(new)
        self.assertEqual(self.repo.find_by_fingerprint(new.fingerprint).id, item.id)
        self.assertTrue(self.repo.url_seen(new.url))
        with self.assertRaises(PersistenceConflict):
            self.repo.insert_source_item(new)
        self.assertIn(item.id, self.repo.list_intake_items_without_analysis(limit=100000))

        record = self.analyses.insert_analysis(
            source_item_id=item.id,
            summary_md="s",
            impact_md="i",
            citations=[{"url": new.url, "locator": "p.1"}],
            model_meta={"provider": "openai"},
        )
        self.assertEqual(self.analyses.latest_for_item(item.id).id, record.id)
        self.assertNotIn(item.id, self.repo.list_intake_items_without_analysis(limit=100000))

    def test_feed_stamping(self):
        feed = self.repo.upsert_feed(f"https://www.fda.gov/feeds/{self.run_id}.xml", "Smoke feed")
        now = datetime.now(timezone.utc)
        self.repo.mark_feed_polled(feed.id, now)
        self.assertIsNotNone(self.repo.get_feed(feed.id).last_polled_at)

    def test_job_store_collapses_identity(self):
        dispatcher = JobDispatcher(PostgresJobStore(PG_DSN))
        dispatcher.register(JobClass.DISCOVERY, lambda payload, report: {"domain": payload["domain"]})
        identity = f"discover-smoke-{self.run_id}"
        first = dispatcher.enqueue(JobClass.DISCOVERY, identity, {"domain": "fda.gov"})
        second = dispatcher.enqueue(JobClass.DISCOVERY, identity, {"domain": "fda.gov"})
        self.assertEqual(first.identity, second.identity)
        dispatcher.drain(JobClass.DISCOVERY)
        status = dispatcher.get_status(identity)
        if status is not None:
            self.assertEqual(status.state, JobState.COMPLETED)


if __name__ == "__main__":
    unittest.main()
