"""URL helpers for allow-list checks, dedup and job identities."""

from __future__ import annotations

import base64
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


TRACKING_QUERY_PARAMS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "gclid",
    "fbclid",
    "mc_cid",
    "mc_eid",
}


def canonicalize_url(url: str, *, strip_params: Optional[Iterable[str]] = None) -> str:
    """Canonicalize a URL for link dedup during crawling.

    - Lowercase scheme + hostname
    - Remove fragments
    - Strip common tracking query parameters
    - Sort remaining query params
    """
    if not url:
        return ""
    strip = set(strip_params) if strip_params is not None else TRACKING_QUERY_PARAMS
    p = urlparse(url.strip())
    scheme = (p.scheme or "https").lower()
    netloc = (p.netloc or "").lower()
    path = p.path or "/"

    kept = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if k.lower() not in strip]
    kept.sort(key=lambda kv: (kv[0].lower(), kv[1]))
    query = urlencode(kept, doseq=True)
    return urlunparse((scheme, netloc, path, "", query, ""))


def extract_domain(url: str) -> str:
    try:
        host = (urlparse(url or "").hostname or "").lower().strip()
    except ValueError:
        host = ""
    return host or "unknown"


def host_matches(host: str, domain: str) -> bool:
    """True if `host` is `domain` or one of its subdomains."""
    host = (host or "").lower().strip(".")
    domain = (domain or "").lower().strip(".")
    if not host or not domain:
        return False
    return host == domain or host.endswith("." + domain)


def domain_allowed(url: str, allowed_domains: Iterable[str]) -> bool:
    host = extract_domain(url)
    if host == "unknown":
        return False
    return any(host_matches(host, d) for d in allowed_domains)


def infer_source(url: str) -> str:
    """Short source label used in tags."""
    domain = extract_domain(url)
    if host_matches(domain, "fda.gov"):
        return "fda"
    return domain[4:] if domain.startswith("www.") else domain


def url_token(url: str) -> str:
    """URL-safe base64 of the raw URL without padding (reversible, deterministic)."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")
