"""Candidate links and URL normalization."""

import html as html_lib
import re
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

# Only entities terminated by ';' are decoded, so query strings such as
# "?a=1&copy=2" survive untouched.
_ENTITY_RE = re.compile(r"&(#\d+|#[xX][0-9a-fA-F]+|[A-Za-z][A-Za-z0-9]*);")

_NON_NAVIGABLE_PREFIXES = ("#", "mailto:", "javascript:", "tel:", "data:", "about:")

CONTEXT_CHARS = 100

# Returns raw href attributes (not the resolved a.href property) so that
# normalization stays under our control.
ANCHOR_EXTRACTION_SCRIPT = """
(limit) => {
    const anchors = Array.from(document.querySelectorAll('a[href]'));
    const picked = limit ? anchors.slice(0, limit) : anchors;
    return picked.map(a => ({
        href: a.getAttribute('href') || '',
        text: (a.textContent || '').trim(),
        context: ((a.parentElement && a.parentElement.textContent) || '').trim().substring(0, 100),
    }));
}
"""


@dataclass(frozen=True)
class CandidateLink:
    """An anchor found on a page that has not been confirmed as an article."""

    href: str
    anchor_text: str = ""
    surrounding_context: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> "CandidateLink":
        """Build from the dict shape returned by ``ANCHOR_EXTRACTION_SCRIPT``."""
        return cls(
            href=str(payload.get("href") or ""),
            anchor_text=str(payload.get("text") or ""),
            surrounding_context=str(payload.get("context") or ""),
        )


def decode_entities(value: str) -> str:
    """Decode ';'-terminated HTML entities until the string is stable."""
    previous = None
    while previous != value:
        previous = value
        value = _ENTITY_RE.sub(lambda m: html_lib.unescape(m.group(0)), value)
    return value


def is_absolute_http(url: str) -> bool:
    return url[:7].lower() == "http://" or url[:8].lower() == "https://"


def is_navigable(href: str) -> bool:
    """False for fragments, mail/phone links and script pseudo-URLs."""
    stripped = href.strip()
    if not stripped:
        return False
    return not stripped.lower().startswith(_NON_NAVIGABLE_PREFIXES)


def normalize_url(href: str, base_url: str | None = None) -> str:
    """Resolve ``href`` against ``base_url``.

    Absolute http(s) URLs come back unchanged apart from entity decoding and
    surrounding whitespace. Protocol-relative URLs take the base scheme
    (https when there is no base), relative ones are joined onto the base.
    The function is idempotent.
    """
    url = decode_entities(href.strip())
    if not url or is_absolute_http(url):
        return url

    if url.startswith("//"):
        scheme = urlparse(base_url).scheme if base_url else ""
        return f"{scheme or 'https'}:{url}"

    if base_url and is_navigable(url):
        return urljoin(base_url, url)

    return url


def extract_candidates_from_html(html: str, limit: int | None = None) -> list[CandidateLink]:
    """Static anchor extraction for pages fetched without a browser."""
    soup = BeautifulSoup(html, "html.parser")
    candidates: list[CandidateLink] = []
    for anchor in soup.select("a[href]"):
        parent = anchor.parent
        context = parent.get_text(" ", strip=True)[:CONTEXT_CHARS] if parent else ""
        candidates.append(
            CandidateLink(
                href=str(anchor.get("href") or ""),
                anchor_text=anchor.get_text(" ", strip=True),
                surrounding_context=context,
            )
        )
        if limit and len(candidates) >= limit:
            break
    return candidates
