"""Raindrop.io bookmark mirror.

Collections: RegIntel / Intake, RegIntel / Approved, RegIntel / Rejected
Tags: source:<source>, type:<category>, week:YYYY-WW, status:<status>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import requests

from regintel.capability import CapabilityResult


logger = logging.getLogger(__name__)

CAPABILITY = "bookmark"

COLLECTIONS = {
    "intake": "RegIntel / Intake",
    "approved": "RegIntel / Approved",
    "rejected": "RegIntel / Rejected",
}


@dataclass(frozen=True)
class RaindropClient:
    api_token: str = ""
    base_url: str = "https://api.raindrop.io/rest/v1"
    timeout: int = 15

    def is_configured(self) -> bool:
        return bool(self.api_token)

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "User-Agent": "RegIntel/1.0",
        }

    def create_bookmark(
        self,
        *,
        url: str,
        title: str,
        excerpt: Optional[str],
        tags: Sequence[str],
        collection: str = "intake",
    ) -> CapabilityResult[str]:
        """Create a bookmark; the value is the new bookmark id."""
        if not self.api_token:
            return CapabilityResult.degraded(CAPABILITY, "RAINDROP_API_TOKEN not set")
        body = {
            "link": url,
            "title": title,
            "excerpt": excerpt,
            "tags": list(tags),
            "collection": {"$ref": COLLECTIONS.get(collection, COLLECTIONS["intake"])},
        }
        try:
            resp = requests.post(
                f"{self.base_url}/raindrop",
                json=body,
                headers=self._headers(),
                timeout=(5, self.timeout),
            )
        except requests.RequestException as e:
            return CapabilityResult.degraded(CAPABILITY, f"{type(e).__name__}: {e}")
        if resp.status_code >= 400:
            return CapabilityResult.degraded(CAPABILITY, f"Raindrop API error: HTTP {resp.status_code}")
        try:
            data = resp.json() or {}
        except ValueError:
            return CapabilityResult.degraded(CAPABILITY, "Raindrop API returned non-JSON")
        item = data.get("item") if isinstance(data, dict) else None
        bookmark_id = (item or {}).get("_id") or (item or {}).get("id")
        if bookmark_id is None:
            return CapabilityResult.degraded(CAPABILITY, "Raindrop API response missing item id")
        return CapabilityResult.success(str(bookmark_id))
