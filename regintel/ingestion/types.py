"""Shared data types for the acquisition pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Category(str, Enum):
    GUIDANCE = "guidance"
    WARNING_LETTER = "warning_letter"
    UNTITLED_LETTER = "untitled_letter"
    MEETING = "meeting"
    APPROVAL = "approval"
    PRESS = "press"


class ItemStatus(str, Enum):
    INTAKE = "intake"
    REVIEW = "review"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DomainPolicy:
    """One allow-listed source domain."""

    domain: str
    active: bool = True
    description: Optional[str] = None
    discovery_interval: Optional[int] = None  # seconds; None means the configured default
    last_discovered_at: Optional[datetime] = None
    seed_urls: List[str] = field(default_factory=list)
    id: Optional[int] = None


@dataclass(frozen=True)
class FeedSubscription:
    url: str
    title: str
    active: bool = True
    poll_interval: Optional[int] = None  # seconds
    last_polled_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class FetchedDocument:
    """Result of fetching and normalizing one URL."""

    url: str
    title: str
    text: str
    fingerprint: str
    canonical_secondary_url: Optional[str] = None
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class SecondaryText:
    text: str
    title: Optional[str] = None


@dataclass(frozen=True)
class FeedEntry:
    url: str
    title: str
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewSourceItem:
    """Insert payload for a Source Item."""

    url: str
    source_domain: str
    category: Category
    title: str
    fingerprint: str
    text: str = ""
    canonical_pdf_url: Optional[str] = None
    published_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    rss_feed_id: Optional[int] = None


@dataclass(frozen=True)
class SourceItem:
    id: int
    url: str
    source_domain: str
    category: Category
    title: str
    fingerprint: str
    status: ItemStatus
    fetched_at: datetime
    text: str = ""
    canonical_pdf_url: Optional[str] = None
    published_at: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    raindrop_id: Optional[str] = None
    rss_feed_id: Optional[int] = None


@dataclass(frozen=True)
class AnalysisRecord:
    id: int
    source_item_id: int
    summary_md: str
    impact_md: str
    citations: List[Dict[str, Any]]
    model_meta: Dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class IngestRequest:
    url: str
    source: Optional[str] = None
    category: Optional[Category] = None
    rss_feed_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "source": self.source,
            "category": self.category.value if self.category else None,
            "rss_feed_id": self.rss_feed_id,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IngestRequest":
        cat = payload.get("category")
        return cls(
            url=str(payload["url"]),
            source=payload.get("source") or None,
            category=Category(cat) if cat else None,
            rss_feed_id=payload.get("rss_feed_id"),
        )


# -----------------------------
# Terminal ingestion outcomes
# -----------------------------
@dataclass(frozen=True)
class Created:
    item_id: int
    external_bookmark_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "created", "item_id": self.item_id, "external_bookmark_id": self.external_bookmark_id}


@dataclass(frozen=True)
class Duplicate:
    item_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "duplicate", "item_id": self.item_id}


@dataclass(frozen=True)
class Failed:
    reason: str
    retryable: bool = False
    error: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": "failed", "reason": self.reason}


IngestOutcome = Union[Created, Duplicate, Failed]
