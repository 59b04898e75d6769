"""Link discovery - from a listing page's anchors to vetted article URLs."""

import asyncio
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from acap.core.acquisition.links import (
    ANCHOR_EXTRACTION_SCRIPT,
    CandidateLink,
    extract_candidates_from_html,
    is_absolute_http,
    is_navigable,
    normalize_url,
)
from acap.core.acquisition.redirect_resolver import RedirectResolution, is_interstitial_url
from acap.core.browser import PageSession
from acap.utils.exceptions import ClassifierError

logger = structlog.get_logger(__name__)

HTMX_DETECTION_SCRIPT = """
() => !!(
    window.htmx
    || document.querySelector('script[src*="htmx"]')
    || document.querySelector('[hx-get], [hx-post], [hx-trigger]')
)
"""

# Fetches hx-get endpoints the way htmx would and appends the fragments to
# the document so that a second anchor pass sees them.
HTMX_LOAD_SCRIPT = """
async (limit) => {
    const elements = Array.from(document.querySelectorAll('[hx-get]')).slice(0, limit);
    let loaded = 0;
    for (const el of elements) {
        const endpoint = el.getAttribute('hx-get');
        if (!endpoint) continue;
        try {
            const response = await fetch(endpoint, {
                headers: {
                    'HX-Request': 'true',
                    'HX-Current-URL': window.location.href,
                    'HX-Trigger': el.id || '',
                },
                credentials: 'include',
            });
            if (!response.ok) continue;
            const holder = document.createElement('div');
            holder.setAttribute('data-htmx-source', endpoint);
            holder.innerHTML = await response.text();
            document.body.appendChild(holder);
            loaded += 1;
        } catch (e) {
            continue;
        }
    }
    return loaded;
}
"""


class LinkClassifier(Protocol):
    async def classify_links(self, candidates: Sequence[CandidateLink]) -> list[str]: ...


class RedirectResolver(Protocol):
    async def resolve(self, url: str) -> RedirectResolution: ...


@dataclass
class DiscoveryConfig:
    """Configuration for link discovery."""

    max_links: int = 50
    max_candidates: int = 200
    exclude_patterns: list[str] = field(
        default_factory=lambda: [
            "/tag/",
            "/tags/",
            "/category/",
            "/author/",
            "/login",
            "/signin",
            "/signup",
            "/register",
            "/subscribe",
            "/search",
            "/privacy",
            "/terms",
            "/contact",
            "facebook.com/sharer",
            "twitter.com/intent",
            "linkedin.com/share",
        ]
    )
    auto_include_patterns: list[str] = field(default_factory=lambda: [r"/media/items/.*-\d+/?$"])
    auto_include_short_circuit: int = 5
    redirect_concurrency: int = 5
    redirect_stagger_seconds: float = 0.1
    htmx_max_endpoints: int = 20


class LinkDiscovery:
    """
    Turn the anchors of a listing page into article URLs.

    Steps: extract and normalize anchors, apply exclude and auto-include
    patterns, resolve redirects, then ask the classifier which of the
    resolved links are articles.

    Example:
        ```python
        discovery = LinkDiscovery(classifier, resolver)
        urls = await discovery.discover(page, source.url)
        ```
    """

    def __init__(
        self,
        classifier: LinkClassifier,
        resolver: RedirectResolver | None = None,
        config: DiscoveryConfig | None = None,
    ):
        self.classifier = classifier
        self.resolver = resolver
        self.config = config or DiscoveryConfig()
        self._auto_include = [re.compile(p) for p in self.config.auto_include_patterns]

    async def extract_candidates(self, page: PageSession, limit: int | None = None) -> list[CandidateLink]:
        """Anchors on the live page, after loading HTMX fragments when present."""
        if await page.evaluate(HTMX_DETECTION_SCRIPT):
            loaded = await page.evaluate(HTMX_LOAD_SCRIPT, self.config.htmx_max_endpoints)
            logger.debug("htmx_fragments_loaded", url=page.url, fragments=loaded)

        payload = await page.evaluate(ANCHOR_EXTRACTION_SCRIPT, limit or 0)
        return [CandidateLink.from_payload(item) for item in payload or []]

    async def discover(
        self, page: PageSession, base_url: str, candidates: Sequence[CandidateLink] | None = None
    ) -> list[str]:
        """Article URLs on ``page``; pass ``candidates`` when the page was already extracted."""
        if candidates is None:
            candidates = await self.extract_candidates(page)
        return await self.select_articles(candidates, base_url)

    async def discover_from_html(self, html: str, base_url: str) -> list[str]:
        return await self.select_articles(extract_candidates_from_html(html), base_url)

    def _is_excluded(self, url: str) -> bool:
        lower = url.lower()
        return any(pattern in lower for pattern in self.config.exclude_patterns)

    def normalize_candidates(self, candidates: Sequence[CandidateLink], base_url: str) -> list[CandidateLink]:
        """Absolute, de-duplicated, non-excluded candidates in page order."""
        seen: set[str] = set()
        result: list[CandidateLink] = []
        for link in candidates:
            if not is_navigable(link.href):
                continue
            url = normalize_url(link.href, base_url)
            if not is_absolute_http(url) or url in seen or self._is_excluded(url):
                continue
            if url.rstrip("/") == base_url.rstrip("/"):
                continue
            seen.add(url)
            result.append(CandidateLink(url, link.anchor_text, link.surrounding_context))
            if len(result) >= self.config.max_candidates:
                break
        return result

    async def select_articles(self, candidates: Sequence[CandidateLink], base_url: str) -> list[str]:
        config = self.config
        links = self.normalize_candidates(candidates, base_url)
        if not links:
            logger.info("discovery_no_candidates", base_url=base_url)
            return []

        auto_included = [link.href for link in links if any(p.search(link.href) for p in self._auto_include)]
        if len(auto_included) >= config.auto_include_short_circuit:
            logger.info("discovery_pattern_short_circuit", base_url=base_url, links=len(auto_included))
            return auto_included[: config.max_links]

        resolved = await self.resolve_candidates(links)
        resolved_urls = [link.href for link in resolved]

        try:
            classified = await self.classifier.classify_links(resolved)
        except ClassifierError as e:
            logger.warning("link_classification_failed", base_url=base_url, error=str(e))
            classified = []

        allowed = set(resolved_urls)
        accepted = [url for url in classified if url in allowed]
        dropped = len(classified) - len(accepted)
        if dropped:
            logger.debug("classifier_urls_discarded", base_url=base_url, discarded=dropped)

        if not accepted:
            logger.info("discovery_classifier_fallback", base_url=base_url, links=len(resolved_urls))
            accepted = resolved_urls

        ordered: list[str] = []
        for url in auto_included + accepted:
            if url not in ordered:
                ordered.append(url)

        logger.info(
            "links_discovered",
            base_url=base_url,
            candidates=len(links),
            articles=min(len(ordered), config.max_links),
        )
        return ordered[: config.max_links]

    async def resolve_candidates(self, links: list[CandidateLink]) -> list[CandidateLink]:
        """Replace each href with its redirect destination.

        Resolution runs with bounded concurrency and a small per-index stagger.
        Results are cached for this call only. An interstitial destination or
        a resolver failure keeps the original URL.
        """
        if self.resolver is None:
            return links

        resolver = self.resolver
        semaphore = asyncio.Semaphore(self.config.redirect_concurrency)
        cache: dict[str, str] = {}

        async def resolve_one(index: int, url: str) -> str:
            await asyncio.sleep(index * self.config.redirect_stagger_seconds)
            async with semaphore:
                if url in cache:
                    return cache[url]
                resolution = await resolver.resolve(url)
                final = resolution.final_url
                if resolution.has_redirects and is_interstitial_url(final):
                    logger.debug("redirect_interstitial_ignored", url=url, final_url=final)
                    final = url
                cache[url] = final
                return final

        results = await asyncio.gather(
            *(resolve_one(i, link.href) for i, link in enumerate(links)),
            return_exceptions=True,
        )

        seen: set[str] = set()
        resolved: list[CandidateLink] = []
        for link, result in zip(links, results):
            if isinstance(result, BaseException):
                logger.debug("redirect_resolution_failed", url=link.href, error=str(result))
                final = link.href
            else:
                final = result
            if final in seen:
                continue
            seen.add(final)
            resolved.append(CandidateLink(final, link.anchor_text, link.surrounding_context))
        return resolved
