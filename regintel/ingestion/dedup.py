"""Content fingerprinting and the deduplication index."""

from __future__ import annotations

import hashlib
import re
from typing import Optional

from regintel.ingestion.types import SourceItem


_WS = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    return _WS.sub(" ", text or "").strip()


def fingerprint(text: Optional[str], raw: bytes = b"") -> str:
    """SHA-256 of the normalized text.

    Documents with no extractable text fall back to the raw body so that
    unrelated empty pages do not collapse onto one fingerprint.
    """
    norm = normalize_text(text)
    payload = norm.encode("utf-8") if norm else raw
    return hashlib.sha256(payload).hexdigest()


class DedupIndex:
    """Query view over the store's unique fingerprint constraint."""

    def __init__(self, repo):
        self.repo = repo

    def find(self, content_fingerprint: str) -> Optional[SourceItem]:
        if not content_fingerprint:
            return None
        return self.repo.find_by_fingerprint(content_fingerprint)
