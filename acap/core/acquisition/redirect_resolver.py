"""Redirect resolution for candidate article links.

Aggregators and shorteners hide the real article behind one or more hops.
``TwoStageRedirectDetector`` first scores a URL with cheap heuristics (URL
shape, then one plain HTTP fetch) and only pays for a real browser
navigation when the heuristic verdict is ambiguous.
"""

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urljoin

import httpx
import structlog
from playwright.async_api import Error as PlaywrightError

from acap.config import settings
from acap.core.acquisition.corruption import decode_html
from acap.core.browser import BrowserManager
from acap.utils.exceptions import FetchError

logger = structlog.get_logger(__name__)


class ResolutionMethod(str, Enum):
    """Which stage produced the final answer."""

    HEURISTIC = "heuristic"
    CONFIRMED = "confirmed"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class RedirectPolicy:
    """Weights and thresholds for both stages."""

    redirect_threshold: float = 0.6
    trust_threshold: float = 0.8
    http_timeout_seconds: float = 10.0
    small_body_bytes: int = 2000
    http_error_weight: float = 0.4
    small_body_weight: float = 0.3
    script_redirect_weight: float = 0.4
    meta_refresh_weight: float = 0.5
    location_header_weight: float = 0.5
    http_failure_weight: float = 0.3
    browser_timeout_ms: int = 15000
    browser_settle_seconds: float = 2.0
    confirmed_redirect_confidence: float = 0.9
    confirmed_direct_confidence: float = 0.1
    max_hops: int = 5
    chain_timeout_seconds: float = 15.0


DEFAULT_REDIRECT_POLICY = RedirectPolicy()

# First matching pattern sets the URL-shape score.
URL_PATTERNS: tuple[tuple[re.Pattern[str], float], ...] = tuple(
    (re.compile(p, re.IGNORECASE), w)
    for p, w in (
        (r"news\.google\.com/read/", 0.9),
        (r"news\.google\.com/articles/", 0.9),
        (r"news\.google\.com/stories/", 0.8),
        (r"//(www\.)?bit\.ly/", 0.8),
        (r"//(www\.)?t\.co/", 0.8),
        (r"//(www\.)?tinyurl\.com/", 0.8),
        (r"//(www\.)?short\.link/", 0.8),
        (r"//(www\.)?is\.gd/", 0.8),
        (r"/redirect", 0.7),
        (r"[?&]url=", 0.7),
        (r"[?&]link=", 0.6),
        (r"[?&]redir", 0.6),
    )
)

SCRIPT_REDIRECT_PATTERNS = (
    re.compile(r"""window\.location(?:\.href)?\s*=\s*["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""location\.replace\(\s*["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""document\.location(?:\.href)?\s*=\s*["']([^"']+)["']""", re.IGNORECASE),
    re.compile(r"""url\s*:\s*["'](https?://[^"']+)["']""", re.IGNORECASE),
)

META_REFRESH = re.compile(
    r"""<meta[^>]*http-equiv=["']refresh["'][^>]*content=["'](\d+)\s*;\s*url=([^"']+)["']""",
    re.IGNORECASE,
)

INTERSTITIAL_MARKERS = (
    "sorry/index",
    "captcha",
    "blocked",
    "verify",
    "challenge",
    "access-denied",
    "error",
    "forbidden",
)


def clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def is_interstitial_url(url: str) -> bool:
    """True when a redirect landed on a CAPTCHA/error page instead of content."""
    lower = url.lower()
    return any(marker in lower for marker in INTERSTITIAL_MARKERS)


def url_pattern_score(url: str) -> float:
    for pattern, weight in URL_PATTERNS:
        if pattern.search(url):
            return weight
    return 0.0


def find_meta_refresh(html: str) -> str | None:
    match = META_REFRESH.search(html)
    return match.group(2).strip() if match else None


def find_script_redirect(html: str) -> str | None:
    for pattern in SCRIPT_REDIRECT_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1).strip()
    return None


@dataclass(frozen=True)
class RedirectResolution:
    """Final destination of a candidate URL. ``confidence`` is the redirect likelihood."""

    original_url: str
    final_url: str
    has_redirects: bool
    confidence: float
    method: ResolutionMethod
    signals: tuple[str, ...] = ()


@dataclass
class HeuristicVerdict:
    """Stage-1 outcome."""

    confidence: float = 0.0
    signals: list[str] = field(default_factory=list)
    target_url: str | None = None
    policy: RedirectPolicy = DEFAULT_REDIRECT_POLICY

    @property
    def is_likely_redirect(self) -> bool:
        return self.confidence >= self.policy.redirect_threshold


@dataclass
class RedirectChain:
    final_url: str
    hops: list[str] = field(default_factory=list)
    circular: bool = False


async def resolve_redirect_chain(
    url: str,
    client: httpx.AsyncClient,
    max_hops: int = 5,
    timeout: float = 15.0,
) -> RedirectChain:
    """Walk Location, meta-refresh and script redirects hop by hop over plain HTTP.

    Stops at ``max_hops``, at the first page that does not redirect, on any
    HTTP error, or when a URL repeats.
    """
    chain = RedirectChain(final_url=url, hops=[url])
    current = url

    for _ in range(max_hops):
        try:
            response = await client.get(current, follow_redirects=False, timeout=timeout)
        except httpx.HTTPError as e:
            logger.debug("redirect_chain_fetch_failed", url=current, error=str(e))
            break

        next_url: str | None = None
        if response.is_redirect and response.headers.get("location"):
            next_url = response.headers["location"]
        elif response.status_code == 200:
            html = decode_html(response.content, response.headers.get("content-type"))
            next_url = find_meta_refresh(html) or find_script_redirect(html)

        if not next_url:
            break

        next_url = urljoin(current, next_url)
        if next_url in chain.hops:
            chain.circular = True
            logger.warning("redirect_chain_circular", url=url, repeated=next_url)
            break

        chain.hops.append(next_url)
        current = next_url

    chain.final_url = current
    return chain


class TwoStageRedirectDetector:
    """Resolve the true destination of a URL in at most two stages.

    Stage 1 is cheap and runs for every URL. Stage 2 drives a real browser
    and only runs for the ambiguous middle band, or for a likely redirect
    whose destination Stage 1 could not read. A failed Stage 2 falls back to
    the Stage-1 verdict.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        browser: BrowserManager | None = None,
        policy: RedirectPolicy = DEFAULT_REDIRECT_POLICY,
    ):
        self.policy = policy
        self.browser = browser
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            headers={"User-Agent": settings.user_agent},
            timeout=policy.http_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def resolve(self, url: str) -> RedirectResolution:
        verdict = await self.heuristic_stage(url)
        signals = tuple(verdict.signals)

        if not verdict.is_likely_redirect:
            return RedirectResolution(
                original_url=url,
                final_url=url,
                has_redirects=False,
                confidence=clamp(verdict.confidence),
                method=ResolutionMethod.HEURISTIC,
                signals=signals,
            )

        if verdict.confidence >= self.policy.trust_threshold and verdict.target_url:
            return RedirectResolution(
                original_url=url,
                final_url=verdict.target_url,
                has_redirects=verdict.target_url != url,
                confidence=clamp(verdict.confidence),
                method=ResolutionMethod.HEURISTIC,
                signals=signals,
            )

        try:
            return await self.browser_stage(url, signals)
        except (FetchError, PlaywrightError, RuntimeError) as e:
            logger.info("redirect_browser_stage_failed", url=url, error=str(e))
            final_url = verdict.target_url or url
            return RedirectResolution(
                original_url=url,
                final_url=final_url,
                has_redirects=final_url != url,
                confidence=clamp(verdict.confidence),
                method=ResolutionMethod.FALLBACK,
                signals=signals,
            )

    async def heuristic_stage(self, url: str) -> HeuristicVerdict:
        """URL-shape scoring, then one plain HTTP fetch if the shape is inconclusive."""
        policy = self.policy
        verdict = HeuristicVerdict(policy=policy)

        pattern_score = url_pattern_score(url)
        if pattern_score:
            verdict.confidence = pattern_score
            verdict.signals.append("url_pattern")
        if pattern_score >= policy.redirect_threshold:
            return verdict

        try:
            response = await self.http_client.get(
                url, follow_redirects=False, timeout=policy.http_timeout_seconds
            )
        except httpx.HTTPError as e:
            logger.debug("redirect_check_failed", url=url, error=str(e))
            if pattern_score:
                verdict.confidence += policy.http_failure_weight
                verdict.signals.append("http_failure")
            verdict.confidence = clamp(verdict.confidence)
            return verdict

        if response.status_code >= 400 and pattern_score:
            verdict.confidence += policy.http_error_weight
            verdict.signals.append("http_error")

        if response.is_redirect and response.headers.get("location"):
            verdict.confidence += policy.location_header_weight
            verdict.signals.append("location_header")
            verdict.target_url = urljoin(url, response.headers["location"])

        body = response.content
        if len(body) < policy.small_body_bytes:
            verdict.confidence += policy.small_body_weight
            verdict.signals.append("small_body")

        html = decode_html(body, response.headers.get("content-type"))
        script_target = find_script_redirect(html)
        if script_target:
            verdict.confidence += policy.script_redirect_weight
            verdict.signals.append("script_redirect")
            verdict.target_url = verdict.target_url or urljoin(url, script_target)

        meta_target = find_meta_refresh(html)
        if meta_target:
            verdict.confidence += policy.meta_refresh_weight
            verdict.signals.append("meta_refresh")
            verdict.target_url = urljoin(url, meta_target)

        if verdict.target_url:
            chain = await resolve_redirect_chain(
                verdict.target_url,
                self.http_client,
                max_hops=policy.max_hops,
                timeout=policy.chain_timeout_seconds,
            )
            verdict.target_url = chain.final_url

        verdict.confidence = clamp(verdict.confidence)
        logger.debug(
            "redirect_heuristic",
            url=url,
            confidence=round(verdict.confidence, 2),
            signals=verdict.signals,
        )
        return verdict

    async def browser_stage(self, url: str, signals: tuple[str, ...] = ()) -> RedirectResolution:
        """Navigate for real and compare the start and settled URL."""
        if self.browser is None:
            raise RuntimeError("no browser available for redirect confirmation")

        page = await self.browser.new_page()
        try:
            await page.navigate(url, wait_until="networkidle", timeout_ms=self.policy.browser_timeout_ms)
            await asyncio.sleep(self.policy.browser_settle_seconds)
            final_url = page.url
        finally:
            await page.close()

        redirected = final_url.rstrip("/") != url.rstrip("/")
        return RedirectResolution(
            original_url=url,
            final_url=final_url,
            has_redirects=redirected,
            confidence=(
                self.policy.confirmed_redirect_confidence
                if redirected
                else self.policy.confirmed_direct_confidence
            ),
            method=ResolutionMethod.CONFIRMED,
            signals=signals + ("browser_navigation",),
        )
