"""Deterministic job identities.

Two enqueue calls with the same identity collapse into one unit of work while
the first job is still retained by the queue store.
"""

from __future__ import annotations

from datetime import datetime

from regintel.ingestion.url_utils import url_token


def ingest_identity(url: str) -> str:
    return f"ingest-{url_token(url)}"


def analysis_identity(source_item_id: int) -> str:
    return f"analyze-{int(source_item_id)}"


def _slot(now: datetime, seconds: int) -> int:
    return int(now.timestamp()) // max(1, int(seconds))


def discovery_identity(domain: str, now: datetime, *, slot_seconds: int = 3600) -> str:
    return f"discover-{domain.strip().lower()}-{_slot(now, slot_seconds)}"


def feed_poll_identity(feed_id: int, now: datetime, *, slot_seconds: int = 300) -> str:
    return f"feed-poll-{int(feed_id)}-{_slot(now, slot_seconds)}"


def reanalysis_identity(source_item_id: int, now: datetime) -> str:
    """Distinct identity for an explicit re-analysis request."""
    return f"analyze-{int(source_item_id)}-r{int(now.timestamp())}"
