"""Source fetch + extraction.

Policy:
- Only allow-listed domains are fetched; the check happens before any request.
- Network/HTTP failures raise TransientFetchError so the job is retried.
- Pages with no extractable text still produce a document (empty text).
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse

import lxml.etree
import lxml.html
import requests
import trafilatura

from regintel.errors import AuthorizationError, TransientFetchError
from regintel.ingestion.dedup import fingerprint, normalize_text
from regintel.ingestion.types import FetchedDocument
from regintel.ingestion.url_utils import domain_allowed, extract_domain


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "RegIntel/1.0 (Regulatory Intelligence Bot)"
UNTITLED = "Untitled Document"

_PRIVATE_NETS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]

_DATE_XPATHS = (
    "//meta[@name='published']/@content",
    "//meta[@name='DC.date']/@content",
    "//meta[@property='article:published_time']/@content",
    "//time[@datetime]/@datetime",
)


def _is_private_ip(hostname: str) -> bool:
    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return any(ip in net for net in _PRIVATE_NETS)


def validate_fetch_url(url: str) -> Optional[str]:
    """Return error string if URL should not be fetched (SSRF/abuse protections)."""
    try:
        p = urlparse(url)
    except ValueError:
        return "invalid_url"
    if p.scheme not in ("http", "https"):
        return "bad_scheme"
    host = (p.hostname or "").strip().lower()
    if not host:
        return "missing_host"
    if host in ("localhost", "localhost.localdomain"):
        return "blocked_host"
    if _is_private_ip(host):
        return "blocked_private_ip"
    return None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    s = (value or "").strip()
    if not s:
        return None
    s = s.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(s)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def download(
    session: requests.Session,
    url: str,
    *,
    timeout: int,
    max_bytes: int,
    user_agent: str,
    accept: str = "text/html,application/pdf,application/xhtml+xml",
    check_url: Optional[Callable[[str], None]] = None,
) -> Tuple[bytes, str, Optional[str]]:
    """GET with a size guardrail. Returns (body, content_type, encoding).

    `check_url` is called for every redirect hop and the final URL before the
    body is read; it raises to refuse the response.
    """
    try:
        resp = session.get(
            url,
            headers={"User-Agent": user_agent, "Accept": accept},
            timeout=(5, timeout),
            allow_redirects=True,
            stream=True,
        )
    except requests.RequestException as e:
        raise TransientFetchError(f"{type(e).__name__} fetching {url}: {e}") from e
    try:
        if check_url is not None:
            for hop in [r.url for r in resp.history] + [resp.url]:
                check_url(hop)
        if resp.status_code >= 400:
            raise TransientFetchError(f"HTTP {resp.status_code} for {url}")
        content = b""
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            if not chunk:
                continue
            content += chunk
            if len(content) > max_bytes:
                raise TransientFetchError(f"response larger than {max_bytes} bytes for {url}")
    except requests.RequestException as e:
        raise TransientFetchError(f"{type(e).__name__} reading {url}: {e}") from e
    finally:
        resp.close()
    content_type = (resp.headers.get("content-type") or "").lower()
    return content, content_type, resp.encoding


class SourceFetcher:
    """Fetches one allow-listed URL and normalizes it into a FetchedDocument."""

    def __init__(
        self,
        allowed_domains: Callable[[], Iterable[str]],
        *,
        timeout: int = 30,
        max_bytes: int = 10_000_000,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[requests.Session] = None,
    ):
        self.allowed_domains = allowed_domains
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self.session = session or requests.Session()

    def ensure_allowed(self, url: str) -> None:
        err = validate_fetch_url(url)
        if err:
            raise AuthorizationError(f"URL rejected ({err}): {url}")
        if not domain_allowed(url, self.allowed_domains()):
            raise AuthorizationError(f"Domain not in allowlist: {extract_domain(url)}")

    def fetch(self, url: str) -> FetchedDocument:
        self.ensure_allowed(url)
        body, content_type, encoding = download(
            self.session,
            url,
            timeout=self.timeout,
            max_bytes=self.max_bytes,
            user_agent=self.user_agent,
            check_url=self.ensure_allowed,
        )
        if "application/pdf" in content_type or (not content_type and url.lower().endswith(".pdf")):
            return self._from_pdf(url, body)
        try:
            html = body.decode(encoding or "utf-8", errors="replace")
        except LookupError:
            html = body.decode("utf-8", errors="replace")
        if "html" in content_type or not content_type:
            return parse_html(url, html, raw=body)
        # Plain text and friends: keep the body as-is.
        text = normalize_text(html) if content_type.startswith("text/") else ""
        return FetchedDocument(
            url=url,
            title=_title_from_path(url),
            text=text,
            fingerprint=fingerprint(text, body),
        )

    def _from_pdf(self, url: str, body: bytes) -> FetchedDocument:
        # Text comes from secondary extraction; the raw bytes identify the document.
        return FetchedDocument(
            url=url,
            title=_title_from_path(url),
            text="",
            fingerprint=fingerprint("", body),
            canonical_secondary_url=url,
        )


def _title_from_path(url: str) -> str:
    name = unquote(urlparse(url).path.rstrip("/").rsplit("/", 1)[-1])
    if name.lower().endswith(".pdf"):
        name = name[:-4]
    name = name.replace("-", " ").replace("_", " ").strip()
    return name or UNTITLED


def parse_html(url: str, html: str, *, raw: bytes = b"") -> FetchedDocument:
    """Extract title, main text, first PDF link and published date from HTML."""
    title = UNTITLED
    pdf_url = None
    published_at = None
    try:
        tree = lxml.html.fromstring(html) if html.strip() else None
    except (lxml.etree.ParserError, lxml.etree.XMLSyntaxError, ValueError) as e:
        logger.warning(f"Unparseable HTML for {url}: {e}")
        tree = None

    if tree is not None:
        title = (
            normalize_text(" ".join(tree.xpath("//title//text()")))
            or normalize_text(" ".join(tree.xpath("(//h1)[1]//text()")))
            or UNTITLED
        )[:500]
        for href in tree.xpath("//a/@href"):
            href = (href or "").strip()
            if href.lower().split("?", 1)[0].split("#", 1)[0].endswith(".pdf"):
                pdf_url = urljoin(url, href)
                break
        for xp in _DATE_XPATHS:
            for value in tree.xpath(xp):
                published_at = parse_datetime(value)
                if published_at:
                    break
            if published_at:
                break

    text = ""
    if html.strip():
        extracted = trafilatura.extract(html, include_comments=False, include_tables=False)
        text = normalize_text(extracted)

    return FetchedDocument(
        url=url,
        title=title,
        text=text,
        fingerprint=fingerprint(text, raw or html.encode("utf-8")),
        canonical_secondary_url=pdf_url,
        published_at=published_at,
    )
