"""Secondary-document (PDF) text extraction.

Failures never raise: they come back as a degraded `CapabilityResult` so the
caller keeps the primary HTML text.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from regintel.capability import CapabilityResult
from regintel.errors import AuthorizationError, TransientFetchError
from regintel.extraction.fetcher import DEFAULT_USER_AGENT, SourceFetcher, download
from regintel.ingestion.types import SecondaryText


logger = logging.getLogger(__name__)

CAPABILITY = "pdf_extraction"


def clean_text(text: str) -> str:
    """Normalize extracted PDF text (form feeds, runs of spaces, blank lines)."""
    text = (text or "").replace("\f", "\n")
    text = re.sub(r" {2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def extract_pdf_bytes(data: bytes) -> SecondaryText:
    reader = PdfReader(io.BytesIO(data))
    pages = []
    for page in reader.pages:
        pages.append(page.extract_text() or "")
    title: Optional[str] = None
    meta = reader.metadata
    if meta is not None and meta.title:
        candidate = str(meta.title).strip()
        if candidate and candidate.lower() != "untitled":
            title = candidate
    return SecondaryText(text=clean_text("\n".join(pages)), title=title)


class PdfExtractor:
    """Fetches a canonical PDF (through the same allow-list) and extracts text."""

    def __init__(
        self,
        fetcher: SourceFetcher,
        *,
        timeout: int = 30,
        max_bytes: int = 25_000_000,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.fetcher = fetcher
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent

    def extract_from_url(self, url: str) -> CapabilityResult[SecondaryText]:
        try:
            self.fetcher.ensure_allowed(url)
            body, _, _ = download(
                self.fetcher.session,
                url,
                timeout=self.timeout,
                max_bytes=self.max_bytes,
                user_agent=self.user_agent,
                accept="application/pdf",
                check_url=self.fetcher.ensure_allowed,
            )
        except (AuthorizationError, TransientFetchError) as e:
            return CapabilityResult.degraded(CAPABILITY, str(e))
        try:
            result = extract_pdf_bytes(body)
        except (PyPdfError, ValueError, KeyError, OSError) as e:
            return CapabilityResult.degraded(CAPABILITY, f"unreadable PDF {url}: {e}")
        if not result.text:
            return CapabilityResult.degraded(CAPABILITY, f"no text layer in {url}")
        return CapabilityResult.success(result)
