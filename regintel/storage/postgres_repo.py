"""Postgres repository for source items, domain policies and feed subscriptions.

Plain psycopg + SQL. Every method opens its own short-lived connection so the
repo can be shared across worker threads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional

import psycopg
from psycopg import errors as pg_errors

from regintel.errors import PersistenceConflict
from regintel.ingestion.types import (
    Category,
    DomainPolicy,
    FeedSubscription,
    ItemStatus,
    NewSourceItem,
    SourceItem,
)


_ITEM_COLUMNS = """
    id, url, source_domain, category, title, content_hash, status, fetched_at,
    extracted_text, canonical_pdf_url, published_at, tags, raindrop_id, rss_feed_id
"""

_DOMAIN_COLUMNS = "id, domain, active, description, discovery_interval, last_discovered_at, seed_urls"

_FEED_COLUMNS = "id, url, title, active, poll_interval, last_polled_at"


def _row_to_item(row) -> SourceItem:
    (
        iid,
        url,
        source_domain,
        category,
        title,
        content_hash,
        status,
        fetched_at,
        extracted_text,
        canonical_pdf_url,
        published_at,
        tags,
        raindrop_id,
        rss_feed_id,
    ) = row
    return SourceItem(
        id=int(iid),
        url=url,
        source_domain=source_domain,
        category=Category(category),
        title=title,
        fingerprint=content_hash,
        status=ItemStatus(status),
        fetched_at=fetched_at,
        text=extracted_text or "",
        canonical_pdf_url=canonical_pdf_url,
        published_at=published_at,
        tags=list(tags or []),
        raindrop_id=raindrop_id,
        rss_feed_id=int(rss_feed_id) if rss_feed_id is not None else None,
    )


def _row_to_domain(row) -> DomainPolicy:
    did, domain, active, description, interval, last_discovered_at, seed_urls = row
    return DomainPolicy(
        id=int(did),
        domain=domain,
        active=bool(active),
        description=description,
        discovery_interval=int(interval) if interval is not None else None,
        last_discovered_at=last_discovered_at,
        seed_urls=list(seed_urls or []),
    )


def _row_to_feed(row) -> FeedSubscription:
    fid, url, title, active, poll_interval, last_polled_at = row
    return FeedSubscription(
        id=int(fid),
        url=url,
        title=title,
        active=bool(active),
        poll_interval=int(poll_interval) if poll_interval is not None else None,
        last_polled_at=last_polled_at,
    )


class PostgresRepo:
    def __init__(self, pg_dsn: str):
        self.pg_dsn = pg_dsn

    def _connect(self):
        return psycopg.connect(self.pg_dsn, autocommit=True)

    # -----------------------------
    # Source items
    # -----------------------------
    def find_by_fingerprint(self, fingerprint: str) -> Optional[SourceItem]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_ITEM_COLUMNS} FROM source_items WHERE content_hash = %s", (fingerprint,))
                row = cur.fetchone()
        return _row_to_item(row) if row else None

    def get_item(self, item_id: int) -> Optional[SourceItem]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_ITEM_COLUMNS} FROM source_items WHERE id = %s", (int(item_id),))
                row = cur.fetchone()
        return _row_to_item(row) if row else None

    def url_seen(self, url: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM source_items WHERE url = %s LIMIT 1", (url,))
                return cur.fetchone() is not None

    def insert_source_item(self, item: NewSourceItem, *, fetched_at: Optional[datetime] = None) -> SourceItem:
        """Insert with status intake; raises PersistenceConflict if the fingerprint exists."""
        fetched_at = fetched_at or datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO source_items (
                          url, canonical_pdf_url, source_domain, category, title, published_at,
                          content_hash, extracted_text, status, tags, rss_feed_id, fetched_at
                        )
                        VALUES (
                          %(url)s, %(canonical_pdf_url)s, %(source_domain)s, %(category)s, %(title)s, %(published_at)s,
                          %(content_hash)s, %(extracted_text)s, %(status)s, %(tags)s, %(rss_feed_id)s, %(fetched_at)s
                        )
                        RETURNING {_ITEM_COLUMNS}
                        """,
                        {
                            "url": item.url,
                            "canonical_pdf_url": item.canonical_pdf_url,
                            "source_domain": item.source_domain,
                            "category": item.category.value,
                            "title": item.title,
                            "published_at": item.published_at,
                            "content_hash": item.fingerprint,
                            "extracted_text": item.text or "",
                            "status": ItemStatus.INTAKE.value,
                            "tags": list(item.tags),
                            "rss_feed_id": item.rss_feed_id,
                            "fetched_at": fetched_at,
                        },
                    )
                    row = cur.fetchone()
        except pg_errors.UniqueViolation as e:
            raise PersistenceConflict(item.fingerprint) from e
        return _row_to_item(row)

    def set_raindrop_id(self, item_id: int, raindrop_id: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("UPDATE source_items SET raindrop_id = %s WHERE id = %s", (raindrop_id, int(item_id)))

    def list_intake_items_without_analysis(self, *, limit: int = 1000) -> List[int]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT s.id
                    FROM source_items s
                    WHERE s.status = %s
                      AND NOT EXISTS (SELECT 1 FROM analyses a WHERE a.source_item_id = s.id)
                    ORDER BY s.fetched_at ASC
                    LIMIT %s
                    """,
                    (ItemStatus.INTAKE.value, int(limit)),
                )
                return [int(r[0]) for r in cur.fetchall()]

    # -----------------------------
    # Domain policies
    # -----------------------------
    def list_domains(self, *, active_only: bool = True) -> List[DomainPolicy]:
        where = "WHERE active" if active_only else ""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_DOMAIN_COLUMNS} FROM allowed_domains {where} ORDER BY domain")
                return [_row_to_domain(r) for r in cur.fetchall()]

    def active_domain_names(self) -> List[str]:
        return [d.domain for d in self.list_domains(active_only=True)]

    def get_domain(self, domain: str) -> Optional[DomainPolicy]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_DOMAIN_COLUMNS} FROM allowed_domains WHERE domain = %s",
                    ((domain or "").strip().lower(),),
                )
                row = cur.fetchone()
        return _row_to_domain(row) if row else None

    def upsert_domains(self, policies: Iterable[DomainPolicy]) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                for p in policies:
                    cur.execute(
                        """
                        INSERT INTO allowed_domains (domain, active, description, discovery_interval, seed_urls)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (domain) DO UPDATE SET
                          active = EXCLUDED.active,
                          description = COALESCE(EXCLUDED.description, allowed_domains.description),
                          discovery_interval = COALESCE(EXCLUDED.discovery_interval, allowed_domains.discovery_interval),
                          seed_urls = EXCLUDED.seed_urls
                        """,
                        (p.domain.strip().lower(), p.active, p.description, p.discovery_interval, list(p.seed_urls)),
                    )

    def mark_domain_discovered(self, domain: str, at: datetime) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE allowed_domains SET last_discovered_at = %s WHERE domain = %s",
                    (at, domain.strip().lower()),
                )

    # -----------------------------
    # Feed subscriptions
    # -----------------------------
    def list_feeds(self, *, active_only: bool = True) -> List[FeedSubscription]:
        where = "WHERE active" if active_only else ""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_FEED_COLUMNS} FROM rss_feeds {where} ORDER BY id")
                return [_row_to_feed(r) for r in cur.fetchall()]

    def get_feed(self, feed_id: int) -> Optional[FeedSubscription]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_FEED_COLUMNS} FROM rss_feeds WHERE id = %s", (int(feed_id),))
                row = cur.fetchone()
        return _row_to_feed(row) if row else None

    def upsert_feed(self, url: str, title: str, *, poll_interval: Optional[int] = None) -> FeedSubscription:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO rss_feeds (url, title, poll_interval)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (url) DO UPDATE SET
                      title = EXCLUDED.title,
                      poll_interval = COALESCE(EXCLUDED.poll_interval, rss_feeds.poll_interval)
                    RETURNING {_FEED_COLUMNS}
                    """,
                    (url.strip(), title.strip(), poll_interval),
                )
                return _row_to_feed(cur.fetchone())

    def mark_feed_polled(self, feed_id: int, at: datetime) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("UPDATE rss_feeds SET last_polled_at = %s WHERE id = %s", (at, int(feed_id)))
