"""Postgres-backed Analysis Record storage (append-only)."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import psycopg
from psycopg.types.json import Jsonb

from regintel.ingestion.types import AnalysisRecord


_COLUMNS = "id, source_item_id, summary_md, impact_md, citations, model_meta, created_at"


def _row_to_record(row) -> AnalysisRecord:
    aid, item_id, summary_md, impact_md, citations, model_meta, created_at = row
    return AnalysisRecord(
        id=int(aid),
        source_item_id=int(item_id),
        summary_md=summary_md,
        impact_md=impact_md,
        citations=list(citations or []),
        model_meta=dict(model_meta or {}),
        created_at=created_at,
    )


class PostgresAnalysesStore:
    def __init__(self, pg_dsn: str):
        self.pg_dsn = pg_dsn

    def insert_analysis(
        self,
        *,
        source_item_id: int,
        summary_md: str,
        impact_md: str,
        citations: Sequence[Dict[str, Any]],
        model_meta: Dict[str, Any],
    ) -> AnalysisRecord:
        with psycopg.connect(self.pg_dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO analyses (source_item_id, summary_md, impact_md, citations, model_meta, created_at)
                    VALUES (%s, %s, %s, %s, %s, now())
                    RETURNING {_COLUMNS}
                    """,
                    (int(source_item_id), summary_md, impact_md, Jsonb(list(citations)), Jsonb(model_meta)),
                )
                return _row_to_record(cur.fetchone())

    def latest_for_item(self, source_item_id: int) -> Optional[AnalysisRecord]:
        with psycopg.connect(self.pg_dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM analyses
                    WHERE source_item_id = %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT 1
                    """,
                    (int(source_item_id),),
                )
                row = cur.fetchone()
        return _row_to_record(row) if row else None

    def list_for_item(self, source_item_id: int, *, limit: int = 20) -> List[AnalysisRecord]:
        limit = max(1, min(int(limit), 100))
        with psycopg.connect(self.pg_dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM analyses
                    WHERE source_item_id = %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                    """,
                    (int(source_item_id), limit),
                )
                return [_row_to_record(r) for r in cur.fetchall()]
