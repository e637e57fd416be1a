"""Idempotent job dispatch with per-class retry policies.

Usage:
    dispatcher = JobDispatcher(InMemoryJobStore())
    dispatcher.register(JobClass.INGEST, handler)
    record = dispatcher.enqueue(JobClass.INGEST, ingest_identity(url), {"url": url})
    dispatcher.drain(JobClass.INGEST)
    status = dispatcher.get_status(record.identity)

Handlers are plain callables `handler(payload, report_progress) -> result`.
Raising a non-retryable `JobError` fails the job at once; any other exception
is retried with exponential backoff until the class's attempt ceiling.

An active job whose lease (`claimed_at`, refreshed by progress reports) is
older than `stall_timeout` belongs to a worker that died; it is claimed again
as a new attempt, or failed once its attempts are used up.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from regintel.errors import JobError, failure_reason


logger = logging.getLogger(__name__)


class JobClass(str, Enum):
    INGEST = "ingest"
    ANALYSIS = "analysis"
    DISCOVERY = "discovery"
    FEED_POLL = "feed-poll"


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)
RUNNABLE_STATES = (JobState.WAITING, JobState.DELAYED)


@dataclass(frozen=True)
class JobPolicy:
    max_attempts: int = 1
    backoff_base: float = 0.0  # seconds; delay doubles per failed attempt
    keep_completed: int = 100
    keep_failed: int = 100

    def backoff_delay(self, attempts_made: int) -> float:
        return float(self.backoff_base) * (2 ** max(0, attempts_made - 1))


DEFAULT_POLICIES: Dict[JobClass, JobPolicy] = {
    JobClass.INGEST: JobPolicy(max_attempts=3, backoff_base=5.0, keep_completed=100, keep_failed=1000),
    JobClass.ANALYSIS: JobPolicy(max_attempts=2, backoff_base=10.0, keep_completed=100, keep_failed=1000),
    JobClass.DISCOVERY: JobPolicy(max_attempts=1, keep_completed=100, keep_failed=100),
    JobClass.FEED_POLL: JobPolicy(max_attempts=1, keep_completed=100, keep_failed=100),
}


# Seconds an active job may go without a progress report before it is reclaimed.
DEFAULT_STALL_TIMEOUT = 900.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobStatus:
    identity: str
    job_class: JobClass
    state: JobState
    progress: int
    attempts: int
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.identity,
            "job_class": self.job_class.value,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "result": self.result,
            "failure_reason": self.failure_reason,
        }


@dataclass
class JobRecord:
    identity: str
    job_class: JobClass
    payload: Dict[str, Any] = field(default_factory=dict)
    state: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 1
    backoff_base: float = 0.0
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    run_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None

    def status(self) -> JobStatus:
        return JobStatus(
            identity=self.identity,
            job_class=self.job_class,
            state=self.state,
            progress=self.progress,
            attempts=self.attempts,
            result=self.result,
            failure_reason=self.failure_reason,
        )


JobHandler = Callable[[Dict[str, Any], Callable[[int], None]], Any]


def _claimable(record: JobRecord, now: datetime, stalled_before: Optional[datetime]) -> bool:
    if record.state in RUNNABLE_STATES:
        return record.run_at <= now
    if record.state == JobState.ACTIVE and stalled_before is not None:
        return record.claimed_at is None or record.claimed_at <= stalled_before
    return False


class InMemoryJobStore:
    """Thread-safe queue store for a single process."""

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def add(self, record: JobRecord) -> Tuple[JobRecord, bool]:
        with self._lock:
            existing = self._jobs.get(record.identity)
            if existing is not None:
                return replace(existing), False
            self._jobs[record.identity] = replace(record)
            return replace(record), True

    def get(self, identity: str) -> Optional[JobRecord]:
        with self._lock:
            rec = self._jobs.get(identity)
            return replace(rec) if rec else None

    def claim_next(
        self, job_class: JobClass, now: datetime, *, stalled_before: Optional[datetime] = None
    ) -> Optional[JobRecord]:
        """Claim the oldest due job, or an active one whose lease expired before `stalled_before`."""
        with self._lock:
            due = [
                r
                for r in self._jobs.values()
                if r.job_class == job_class and _claimable(r, now, stalled_before)
            ]
            if not due:
                return None
            rec = min(due, key=lambda r: (r.run_at, r.created_at))
            rec.state = JobState.ACTIVE
            rec.attempts += 1
            rec.claimed_at = now
            return replace(rec)

    def update(self, record: JobRecord) -> None:
        with self._lock:
            if record.identity in self._jobs:
                self._jobs[record.identity] = replace(record)

    def set_progress(self, identity: str, progress: int, *, at: Optional[datetime] = None) -> None:
        with self._lock:
            rec = self._jobs.get(identity)
            if rec is not None:
                rec.progress = progress
                if at is not None:
                    rec.claimed_at = at

    def prune(self, job_class: JobClass, state: JobState, keep: int) -> int:
        with self._lock:
            finished = [r for r in self._jobs.values() if r.job_class == job_class and r.state == state]
            if len(finished) <= keep:
                return 0
            finished.sort(key=lambda r: r.finished_at or datetime.min.replace(tzinfo=timezone.utc))
            to_remove = finished[: len(finished) - keep]
            for rec in to_remove:
                del self._jobs[rec.identity]
            return len(to_remove)

    def counts(self, job_class: JobClass) -> Dict[str, int]:
        with self._lock:
            out = {s.value: 0 for s in JobState}
            for r in self._jobs.values():
                if r.job_class == job_class:
                    out[r.state.value] += 1
            return out


def _serialize_result(result: Any) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, dict):
        return result
    return {"value": result}


class JobDispatcher:
    """Enqueue/execute boundary shared by producers and workers."""

    def __init__(
        self,
        store,
        *,
        policies: Optional[Dict[JobClass, JobPolicy]] = None,
        clock: Callable[[], datetime] = utc_now,
        stall_timeout: float = DEFAULT_STALL_TIMEOUT,
    ):
        self.store = store
        self.stall_timeout = stall_timeout
        self.policies: Dict[JobClass, JobPolicy] = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self.clock = clock
        self._handlers: Dict[JobClass, JobHandler] = {}

    def register(self, job_class: JobClass, handler: JobHandler) -> None:
        self._handlers[job_class] = handler
        logger.debug(f"Registered handler for {job_class.value}")

    def policy_for(self, job_class: JobClass) -> JobPolicy:
        return self.policies.get(job_class, JobPolicy())

    def enqueue(
        self,
        job_class: JobClass,
        identity: str,
        payload: Optional[Dict[str, Any]] = None,
        policy: Optional[JobPolicy] = None,
    ) -> JobRecord:
        """Add a job unless one with the same identity is still retained."""
        policy = policy or self.policy_for(job_class)
        now = self.clock()
        record, created = self.store.add(
            JobRecord(
                identity=identity,
                job_class=job_class,
                payload=dict(payload or {}),
                max_attempts=max(1, policy.max_attempts),
                backoff_base=policy.backoff_base,
                run_at=now,
                created_at=now,
            )
        )
        if created:
            logger.info(f"Queued {job_class.value} job {identity}")
        else:
            logger.info(f"{job_class.value} job {identity} already {record.state.value}; not queued again")
        return record

    def get_status(self, identity: str) -> Optional[JobStatus]:
        rec = self.store.get(identity)
        return rec.status() if rec else None

    def run_next(self, job_class: JobClass) -> Optional[JobRecord]:
        """Claim and execute one due job of `job_class` in the calling thread."""
        now = self.clock()
        record = self.store.claim_next(
            job_class, now, stalled_before=now - timedelta(seconds=self.stall_timeout)
        )
        if record is None:
            return None
        if record.attempts > record.max_attempts:
            # Reclaimed from a dead worker with no attempts left.
            record.state = JobState.FAILED
            record.failure_reason = f"JobError: worker stopped responding after {record.attempts - 1} attempt(s)"
            record.finished_at = now
            logger.error(f"{record.job_class.value} job {record.identity} failed: {record.failure_reason}")
            return self._save(record)
        return self._execute(record)

    def drain(self, job_class: JobClass, *, max_jobs: Optional[int] = None) -> int:
        """Run due jobs until none are left (delayed retries that are not yet due stay queued)."""
        ran = 0
        while max_jobs is None or ran < max_jobs:
            if self.run_next(job_class) is None:
                break
            ran += 1
        return ran

    def stats(self, job_class: JobClass) -> Dict[str, int]:
        return self.store.counts(job_class)

    def _execute(self, record: JobRecord) -> JobRecord:
        handler = self._handlers.get(record.job_class)
        if handler is None:
            record.state = JobState.FAILED
            record.failure_reason = f"No handler registered for job class: {record.job_class.value}"
            record.finished_at = self.clock()
            return self._save(record)

        def report_progress(progress: int) -> None:
            record.progress = max(0, min(100, int(progress)))
            self.store.set_progress(record.identity, record.progress, at=self.clock())

        try:
            result = handler(dict(record.payload), report_progress)
        except Exception as e:
            reason = failure_reason(e)
            retryable = e.retryable if isinstance(e, JobError) else True
            if retryable and record.attempts < record.max_attempts:
                delay = JobPolicy(backoff_base=record.backoff_base).backoff_delay(record.attempts)
                record.state = JobState.DELAYED
                record.run_at = self.clock() + timedelta(seconds=delay)
                record.failure_reason = reason
                logger.warning(
                    f"{record.job_class.value} job {record.identity} attempt {record.attempts}/"
                    f"{record.max_attempts} failed: {reason}. Retrying in {delay:.1f}s"
                )
            else:
                record.state = JobState.FAILED
                record.failure_reason = reason
                record.finished_at = self.clock()
                logger.error(f"{record.job_class.value} job {record.identity} failed: {reason}")
        else:
            record.state = JobState.COMPLETED
            record.result = _serialize_result(result)
            record.failure_reason = None
            record.progress = 100
            record.finished_at = self.clock()
            logger.info(f"{record.job_class.value} job {record.identity} completed")

        return self._save(record)

    def _save(self, record: JobRecord) -> JobRecord:
        self.store.update(record)
        if record.state in TERMINAL_STATES:
            policy = self.policy_for(record.job_class)
            keep = policy.keep_completed if record.state == JobState.COMPLETED else policy.keep_failed
            self.store.prune(record.job_class, record.state, keep)
        return record


class WorkerPool:
    """One bounded thread pool per job class, each slot polling the store."""

    def __init__(self, dispatcher: JobDispatcher, concurrency: Dict[JobClass, int], *, poll_interval: float = 1.0):
        self.dispatcher = dispatcher
        self.concurrency = {cls: max(1, int(n)) for cls, n in concurrency.items()}
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._executors: List[ThreadPoolExecutor] = []

    def start(self) -> None:
        self._stop.clear()
        for job_class, n in self.concurrency.items():
            executor = ThreadPoolExecutor(max_workers=n, thread_name_prefix=f"worker-{job_class.value}")
            for _ in range(n):
                executor.submit(self._worker_loop, job_class)
            self._executors.append(executor)
            logger.info(f"Started {n} {job_class.value} worker(s)")

    def stop(self, *, wait: bool = True) -> None:
        self._stop.set()
        for executor in self._executors:
            executor.shutdown(wait=wait)
        self._executors = []
        logger.info("Worker pool stopped")

    def _worker_loop(self, job_class: JobClass) -> None:
        while not self._stop.is_set():
            try:
                record = self.dispatcher.run_next(job_class)
            except Exception as e:
                # Store outage: keep the worker alive and try again later.
                logger.error(f"{job_class.value} worker error: {e}")
                record = None
            if record is None:
                self._stop.wait(self.poll_interval)
