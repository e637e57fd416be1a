"""Postgres-backed job queue store.

Identity collapsing relies on the primary key (INSERT ... ON CONFLICT DO
NOTHING). Workers in separate processes claim jobs with FOR UPDATE SKIP LOCKED;
`claimed_at` is the lease that lets a job abandoned by a dead worker be claimed again.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Tuple

import psycopg
from psycopg.types.json import Jsonb

from regintel.jobs.dispatcher import JobClass, JobRecord, JobState, RUNNABLE_STATES


_JOB_COLUMNS = """
    identity, job_class, payload, state, attempts, max_attempts, backoff_base,
    progress, result, failure_reason, run_at, created_at, finished_at, claimed_at
"""


def _row_to_job(row) -> JobRecord:
    (
        identity,
        job_class,
        payload,
        state,
        attempts,
        max_attempts,
        backoff_base,
        progress,
        result,
        reason,
        run_at,
        created_at,
        finished_at,
        claimed_at,
    ) = row
    return JobRecord(
        identity=identity,
        job_class=JobClass(job_class),
        payload=dict(payload or {}),
        state=JobState(state),
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        backoff_base=float(backoff_base),
        progress=int(progress),
        result=result,
        failure_reason=reason,
        run_at=run_at,
        created_at=created_at,
        finished_at=finished_at,
        claimed_at=claimed_at,
    )


class PostgresJobStore:
    def __init__(self, pg_dsn: str):
        self.pg_dsn = pg_dsn

    def _connect(self):
        return psycopg.connect(self.pg_dsn, autocommit=True)

    def add(self, record: JobRecord) -> Tuple[JobRecord, bool]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO pipeline_jobs (
                      identity, job_class, payload, state, attempts, max_attempts, backoff_base,
                      progress, run_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, 0, %s, %s, 0, %s, %s)
                    ON CONFLICT (identity) DO NOTHING
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (
                        record.identity,
                        record.job_class.value,
                        Jsonb(record.payload),
                        record.state.value,
                        record.max_attempts,
                        record.backoff_base,
                        record.run_at,
                        record.created_at,
                    ),
                )
                row = cur.fetchone()
                if row:
                    return _row_to_job(row), True
                cur.execute(f"SELECT {_JOB_COLUMNS} FROM pipeline_jobs WHERE identity = %s", (record.identity,))
                return _row_to_job(cur.fetchone()), False

    def get(self, identity: str) -> Optional[JobRecord]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_JOB_COLUMNS} FROM pipeline_jobs WHERE identity = %s", (identity,))
                row = cur.fetchone()
        return _row_to_job(row) if row else None

    def claim_next(
        self, job_class: JobClass, now: datetime, *, stalled_before: Optional[datetime] = None
    ) -> Optional[JobRecord]:
        """Claim the oldest due job, or an active one whose lease expired before `stalled_before`."""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE pipeline_jobs
                    SET state = %s, attempts = attempts + 1, claimed_at = %s
                    WHERE identity = (
                      SELECT identity FROM pipeline_jobs
                      WHERE job_class = %s
                        AND (
                          (state = ANY(%s) AND run_at <= %s)
                          OR (state = %s AND %s::timestamptz IS NOT NULL
                              AND (claimed_at IS NULL OR claimed_at <= %s::timestamptz))
                        )
                      ORDER BY run_at ASC, created_at ASC
                      LIMIT 1
                      FOR UPDATE SKIP LOCKED
                    )
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (
                        JobState.ACTIVE.value,
                        now,
                        job_class.value,
                        [s.value for s in RUNNABLE_STATES],
                        now,
                        JobState.ACTIVE.value,
                        stalled_before,
                        stalled_before,
                    ),
                )
                row = cur.fetchone()
        return _row_to_job(row) if row else None

    def update(self, record: JobRecord) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE pipeline_jobs
                    SET state = %s, progress = %s, result = %s, failure_reason = %s,
                        run_at = %s, finished_at = %s
                    WHERE identity = %s
                    """,
                    (
                        record.state.value,
                        record.progress,
                        Jsonb(record.result) if record.result is not None else None,
                        record.failure_reason,
                        record.run_at,
                        record.finished_at,
                        record.identity,
                    ),
                )

    def set_progress(self, identity: str, progress: int, *, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE pipeline_jobs SET progress = %s, claimed_at = COALESCE(%s::timestamptz, claimed_at) WHERE identity = %s",
                    (int(progress), at, identity),
                )

    def prune(self, job_class: JobClass, state: JobState, keep: int) -> int:
        """Delete the oldest finished jobs beyond `keep` for one class/state."""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM pipeline_jobs
                    WHERE identity IN (
                      SELECT identity FROM pipeline_jobs
                      WHERE job_class = %s AND state = %s
                      ORDER BY finished_at DESC NULLS LAST
                      OFFSET %s
                    )
                    """,
                    (job_class.value, state.value, max(0, int(keep))),
                )
                return cur.rowcount or 0

    def counts(self, job_class: JobClass) -> Dict[str, int]:
        out = {s.value: 0 for s in JobState}
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT state, COUNT(*) FROM pipeline_jobs WHERE job_class = %s GROUP BY state",
                    (job_class.value,),
                )
                for state, n in cur.fetchall():
                    out[state] = int(n)
        return out
