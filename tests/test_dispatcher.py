import threading
import time
import unittest
from datetime import datetime, timedelta, timezone

from regintel.errors import AuthorizationError, TransientFetchError
from regintel.jobs.dispatcher import (
    InMemoryJobStore,
    JobClass,
    JobDispatcher,
    JobPolicy,
    JobState,
    WorkerPool,
)
from regintel.jobs.identity import discovery_identity, feed_poll_identity

from fakes import MutableClock


class TestJobPolicy(unittest.TestCase):
    def test_exponential_backoff(self):
        policy = JobPolicy(max_attempts=3, backoff_base=5)
        self.assertEqual([policy.backoff_delay(n) for n in (1, 2, 3)], [5, 10, 20])


class TestJobDispatcher(unittest.TestCase):
    def setUp(self):
        self.clock = MutableClock()
        self.dispatcher = JobDispatcher(InMemoryJobStore(), clock=self.clock)
        self.calls = []

    def test_same_identity_collapses(self):
        self.dispatcher.register(JobClass.INGEST, lambda payload, progress: self.calls.append(payload) or {"ok": 1})
        a = self.dispatcher.enqueue(JobClass.INGEST, "ingest-abc", {"url": "u"})
        b = self.dispatcher.enqueue(JobClass.INGEST, "ingest-abc", {"url": "u"})
        self.assertEqual(a.identity, b.identity)
        self.assertEqual(self.dispatcher.drain(JobClass.INGEST), 1)
        self.assertEqual(len(self.calls), 1)

        # Still collapses after completion while the record is retained.
        self.dispatcher.enqueue(JobClass.INGEST, "ingest-abc", {"url": "u"})
        self.assertEqual(self.dispatcher.drain(JobClass.INGEST), 0)
        status = self.dispatcher.get_status("ingest-abc")
        self.assertEqual(status.state, JobState.COMPLETED)
        self.assertEqual(status.result, {"ok": 1})
        self.assertEqual(status.progress, 100)

    def test_transient_failure_retries_then_fails(self):
        def handler(payload, progress):
            raise TransientFetchError("HTTP 503 for https://www.fda.gov/x")

        self.dispatcher.register(JobClass.INGEST, handler)
        self.dispatcher.enqueue(JobClass.INGEST, "ingest-x", {})

        self.dispatcher.drain(JobClass.INGEST)
        self.assertEqual(self.dispatcher.get_status("ingest-x").state, JobState.DELAYED)
        self.assertEqual(self.dispatcher.drain(JobClass.INGEST), 0)  # not due yet

        self.clock.advance(5)
        self.dispatcher.drain(JobClass.INGEST)
        self.assertEqual(self.dispatcher.get_status("ingest-x").state, JobState.DELAYED)

        self.clock.advance(10)
        self.dispatcher.drain(JobClass.INGEST)
        status = self.dispatcher.get_status("ingest-x")
        self.assertEqual(status.state, JobState.FAILED)
        self.assertEqual(status.attempts, 3)
        self.assertTrue(status.failure_reason.startswith("TransientFetchError:"))

    def test_non_retryable_error_fails_immediately(self):
        def handler(payload, progress):
            raise AuthorizationError("Domain not in allowlist: evil.com")

        self.dispatcher.register(JobClass.INGEST, handler)
        self.dispatcher.enqueue(JobClass.INGEST, "ingest-y", {})
        self.dispatcher.drain(JobClass.INGEST)
        status = self.dispatcher.get_status("ingest-y")
        self.assertEqual(status.state, JobState.FAILED)
        self.assertEqual(status.attempts, 1)
        self.assertEqual(status.failure_reason, "AuthorizationError: Domain not in allowlist: evil.com")

    def test_progress_is_visible_while_running(self):
        seen = []

        def handler(payload, progress):
            progress(40)
            seen.append(self.dispatcher.get_status("analyze-1").progress)

        self.dispatcher.register(JobClass.ANALYSIS, handler)
        self.dispatcher.enqueue(JobClass.ANALYSIS, "analyze-1", {})
        self.dispatcher.drain(JobClass.ANALYSIS)
        self.assertEqual(seen, [40])

    def test_retention_evicts_oldest_completed(self):
        self.dispatcher.policies[JobClass.FEED_POLL] = JobPolicy(max_attempts=1, keep_completed=2)
        self.dispatcher.register(JobClass.FEED_POLL, lambda payload, progress: None)
        for i in range(4):
            self.dispatcher.enqueue(JobClass.FEED_POLL, f"feed-poll-{i}", {})
            self.dispatcher.drain(JobClass.FEED_POLL)
            self.clock.advance(1)
        self.assertIsNone(self.dispatcher.get_status("feed-poll-0"))
        self.assertIsNone(self.dispatcher.get_status("feed-poll-1"))
        self.assertIsNotNone(self.dispatcher.get_status("feed-poll-3"))
        self.assertEqual(self.dispatcher.stats(JobClass.FEED_POLL)["completed"], 2)

    def test_missing_handler_fails_job(self):
        self.dispatcher.enqueue(JobClass.DISCOVERY, "discover-x", {})
        self.dispatcher.drain(JobClass.DISCOVERY)
        status = self.dispatcher.get_status("discover-x")
        self.assertEqual(status.state, JobState.FAILED)
        self.assertIn("No handler registered", status.failure_reason)

    def test_unknown_identity(self):
        self.assertIsNone(self.dispatcher.get_status("ingest-nope"))


class TestAbandonedJobs(unittest.TestCase):
    """A worker that dies mid-job leaves an active record with an expired lease."""

    def setUp(self):
        self.clock = MutableClock()
        self.store = InMemoryJobStore()
        self.dispatcher = JobDispatcher(self.store, clock=self.clock, stall_timeout=900)
        self.calls = []

    def _crash_mid_job(self, job_class, identity):
        self.dispatcher.enqueue(job_class, identity, {"url": "u"})
        claimed = self.store.claim_next(job_class, self.clock())
        self.assertEqual(claimed.state, JobState.ACTIVE)

    def test_expired_lease_is_claimed_again(self):
        self.dispatcher.register(JobClass.INGEST, lambda payload, progress: self.calls.append(payload) or {"ok": 1})
        self._crash_mid_job(JobClass.INGEST, "ingest-x")

        self.clock.advance(7 * 24 * 3600)
        self.dispatcher.enqueue(JobClass.INGEST, "ingest-x", {"url": "u"})
        self.assertEqual(self.dispatcher.drain(JobClass.INGEST), 1)
        self.assertEqual(len(self.calls), 1)
        status = self.dispatcher.get_status("ingest-x")
        self.assertEqual(status.state, JobState.COMPLETED)
        self.assertEqual(status.attempts, 2)

    def test_live_lease_is_left_alone(self):
        self.dispatcher.register(JobClass.INGEST, lambda payload, progress: self.calls.append(payload))
        self._crash_mid_job(JobClass.INGEST, "ingest-x")

        self.clock.advance(60)
        self.assertEqual(self.dispatcher.drain(JobClass.INGEST), 0)
        self.assertEqual(self.calls, [])
        self.assertEqual(self.dispatcher.get_status("ingest-x").state, JobState.ACTIVE)

    def test_abandoned_job_without_attempts_left_fails(self):
        self.dispatcher.register(JobClass.DISCOVERY, lambda payload, progress: self.calls.append(payload))
        self._crash_mid_job(JobClass.DISCOVERY, "discover-fda.gov-1")

        self.clock.advance(901)
        self.assertEqual(self.dispatcher.drain(JobClass.DISCOVERY), 1)
        self.assertEqual(self.calls, [])
        status = self.dispatcher.get_status("discover-fda.gov-1")
        self.assertEqual(status.state, JobState.FAILED)
        self.assertTrue(status.failure_reason.startswith("JobError: worker stopped responding"))

    def test_progress_report_renews_lease(self):
        self._crash_mid_job(JobClass.INGEST, "ingest-x")
        start = self.clock()
        self.clock.advance(800)
        self.store.set_progress("ingest-x", 40, at=self.clock())
        self.clock.advance(200)
        # Claimed 1000s ago, but the last progress report was 200s ago.
        stalled_before = self.clock() - timedelta(seconds=900)
        self.assertLess(stalled_before, start + timedelta(seconds=800))
        self.assertIsNone(self.store.claim_next(JobClass.INGEST, self.clock(), stalled_before=stalled_before))


class TestSlotIdentities(unittest.TestCase):
    def test_same_slot_collapses_next_slot_differs(self):
        t0 = datetime(2024, 6, 5, 12, 1, tzinfo=timezone.utc)
        t1 = datetime(2024, 6, 5, 12, 4, tzinfo=timezone.utc)
        t2 = datetime(2024, 6, 5, 12, 6, tzinfo=timezone.utc)
        self.assertEqual(feed_poll_identity(7, t0), feed_poll_identity(7, t1))
        self.assertNotEqual(feed_poll_identity(7, t1), feed_poll_identity(7, t2))
        self.assertEqual(discovery_identity("FDA.gov", t0), discovery_identity("fda.gov", t2))


class TestWorkerPool(unittest.TestCase):
    def test_runs_jobs_concurrently_and_stops(self):
        dispatcher = JobDispatcher(InMemoryJobStore())
        done = threading.Event()
        lock = threading.Lock()
        ran = []

        def handler(payload, progress):
            time.sleep(0.01)
            with lock:
                ran.append(payload["n"])
                if len(ran) == 5:
                    done.set()

        dispatcher.register(JobClass.INGEST, handler)
        for n in range(5):
            dispatcher.enqueue(JobClass.INGEST, f"ingest-{n}", {"n": n})
        pool = WorkerPool(dispatcher, {JobClass.INGEST: 2}, poll_interval=0.01)
        pool.start()
        try:
            self.assertTrue(done.wait(5))
        finally:
            pool.stop()
        self.assertEqual(sorted(ran), [0, 1, 2, 3, 4])
        self.assertEqual(dispatcher.stats(JobClass.INGEST)["completed"], 5)


if __name__ == "__main__":
    unittest.main()
