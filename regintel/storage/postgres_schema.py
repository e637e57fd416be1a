"""Postgres schema management for RegIntel.

Schema creation is idempotent (CREATE IF NOT EXISTS) so every worker can run it
at startup.
"""

from __future__ import annotations

from typing import Iterable, Optional

import psycopg


SCHEMA_STATEMENTS: list[str] = [
    # Domain allow-list (the only authorization boundary for fetching)
    """
    CREATE TABLE IF NOT EXISTS allowed_domains (
      id BIGSERIAL PRIMARY KEY,
      domain TEXT UNIQUE NOT NULL,
      active BOOLEAN NOT NULL DEFAULT TRUE,
      description TEXT,
      discovery_interval INTEGER,
      last_discovered_at TIMESTAMPTZ,
      seed_urls TEXT[] NOT NULL DEFAULT '{}',
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Feed subscriptions
    """
    CREATE TABLE IF NOT EXISTS rss_feeds (
      id BIGSERIAL PRIMARY KEY,
      url TEXT UNIQUE NOT NULL,
      title TEXT NOT NULL,
      active BOOLEAN NOT NULL DEFAULT TRUE,
      poll_interval INTEGER,
      last_polled_at TIMESTAMPTZ,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Source items (unique per content fingerprint, not per URL)
    """
    CREATE TABLE IF NOT EXISTS source_items (
      id BIGSERIAL PRIMARY KEY,
      url TEXT NOT NULL,
      canonical_pdf_url TEXT,
      source_domain TEXT NOT NULL,
      category TEXT NOT NULL,
      title TEXT NOT NULL,
      published_at TIMESTAMPTZ,
      content_hash TEXT NOT NULL UNIQUE,
      extracted_text TEXT NOT NULL DEFAULT '',
      status TEXT NOT NULL DEFAULT 'intake',
      tags TEXT[] NOT NULL DEFAULT '{}',
      raindrop_id TEXT,
      rss_feed_id BIGINT REFERENCES rss_feeds(id) ON DELETE SET NULL,
      fetched_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    # Backward-compatible column adds (safe if table already exists)
    "ALTER TABLE source_items ADD COLUMN IF NOT EXISTS extracted_text TEXT NOT NULL DEFAULT '';",
    "ALTER TABLE source_items ADD COLUMN IF NOT EXISTS rss_feed_id BIGINT;",
    "CREATE INDEX IF NOT EXISTS idx_source_items_url ON source_items (url);",
    "CREATE INDEX IF NOT EXISTS idx_source_items_status ON source_items (status);",
    "CREATE INDEX IF NOT EXISTS idx_source_items_fetched_at ON source_items (fetched_at DESC);",
    # Analyses (append-only; latest per item is authoritative)
    """
    CREATE TABLE IF NOT EXISTS analyses (
      id BIGSERIAL PRIMARY KEY,
      source_item_id BIGINT NOT NULL REFERENCES source_items(id) ON DELETE CASCADE,
      summary_md TEXT NOT NULL,
      impact_md TEXT NOT NULL,
      citations JSONB NOT NULL DEFAULT '[]',
      model_meta JSONB NOT NULL DEFAULT '{}',
      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_analyses_item_created ON analyses (source_item_id, created_at DESC);",
    # Job queue bookkeeping keyed by deterministic identity
    """
    CREATE TABLE IF NOT EXISTS pipeline_jobs (
      identity TEXT PRIMARY KEY,
      job_class TEXT NOT NULL,
      payload JSONB NOT NULL DEFAULT '{}',
      state TEXT NOT NULL DEFAULT 'waiting', -- waiting|delayed|active|completed|failed
      attempts INTEGER NOT NULL DEFAULT 0,
      max_attempts INTEGER NOT NULL DEFAULT 1,
      backoff_base REAL NOT NULL DEFAULT 0,
      progress INTEGER NOT NULL DEFAULT 0,
      result JSONB,
      failure_reason TEXT,
      run_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      finished_at TIMESTAMPTZ,
      claimed_at TIMESTAMPTZ
    );
    """,
    "ALTER TABLE pipeline_jobs ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMPTZ;",
    "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_claim ON pipeline_jobs (job_class, state, run_at);",
    "CREATE INDEX IF NOT EXISTS idx_pipeline_jobs_finished ON pipeline_jobs (job_class, state, finished_at DESC);",
]


def ensure_postgres_schema(pg_dsn: str, *, statements: Optional[Iterable[str]] = None) -> None:
    """Ensure Postgres schema exists."""
    stmts = list(statements) if statements is not None else SCHEMA_STATEMENTS
    with psycopg.connect(pg_dsn, autocommit=True) as conn:
        with conn.cursor() as cur:
            for s in stmts:
                cur.execute(s)
