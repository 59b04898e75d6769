"""Scrape orchestrator - coordinates one pass over all active sources.

Per source: load the listing page, check it is genuine (bypassing bot
protection when it is not), discover article links, then fetch, extract,
de-duplicate and store each article and hand it to the classification
queue. Failures stay inside the source or article that caused them.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlparse
from uuid import UUID

import httpx
import structlog

from acap.config import Settings
from acap.core.acquisition.content_extractor import ContentExtractor
from acap.core.acquisition.content_validator import (
    ValidationVerdict,
    looks_like_challenge_page,
    validate_content_legitimacy,
)
from acap.core.acquisition.corruption import decode_html
from acap.core.acquisition.link_discovery import LinkDiscovery
from acap.core.acquisition.protection_bypass import (
    ProtectionBypassEngine,
    StrategyKind,
    page_text,
)
from acap.core.acquisition.protection_detection import detect_protection
from acap.core.acquisition.structure_detector import ExtractionRule, StructureDetector
from acap.core.browser import BrowserManager
from acap.db.models.source import Source
from acap.db.store import ArticleStore
from acap.utils.exceptions import (
    ConfigurationError,
    FetchError,
    InvalidExtractionRuleError,
    InvalidSourceError,
)
from acap.utils.logging import bind_source_context, clear_source_context

logger = structlog.get_logger(__name__)

QUALITY_LINK_SAMPLE = 50


class ArticleQueue(Protocol):
    async def enqueue(self, article_id: UUID, priority: int | None = None) -> bool: ...


@dataclass
class OrchestratorConfig:
    """Concurrency, pacing and timeouts for a scrape pass."""

    source_concurrency: int = 5
    article_concurrency: int = 5
    batch_pause_seconds: float = 1.0
    navigation_timeout_ms: int = 30000
    http_timeout_seconds: float = 10.0
    min_http_html_bytes: int = 2000
    article_delay_seconds: float = 0.2
    queue_priority: int = 50

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            source_concurrency=settings.source_concurrency,
            article_concurrency=settings.article_concurrency,
            batch_pause_seconds=settings.batch_pause_seconds,
            navigation_timeout_ms=settings.navigation_timeout_ms,
            http_timeout_seconds=settings.http_timeout_seconds,
        )


@dataclass
class FailedArticle:
    url: str
    error: str


@dataclass
class SourceScrapeResult:
    """Outcome of scraping one source."""

    source_id: UUID
    source_url: str
    success: bool = False
    links_found: int = 0
    articles_saved: int = 0
    articles_skipped: int = 0
    failures: list[FailedArticle] = field(default_factory=list)
    error: str | None = None
    bypass_strategy: StrategyKind | None = None
    verdict: ValidationVerdict | None = None

    @property
    def error_rate(self) -> float:
        """Share of attempted articles that failed, for adaptive pacing."""
        total = self.articles_saved + self.articles_skipped + len(self.failures)
        return len(self.failures) / total if total > 0 else 0.0


@dataclass
class PassResult:
    results: list[SourceScrapeResult] = field(default_factory=list)
    stopped: bool = False

    @property
    def sources_succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def sources_failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def articles_saved(self) -> int:
        return sum(r.articles_saved for r in self.results)


class ScrapeOrchestrator:
    """
    Run scrape passes over the active sources.

    Example:
        ```python
        async with BrowserManager() as browser:
            orchestrator = ScrapeOrchestrator(store, browser, discovery, detector, bypass)
            result = await orchestrator.run_pass()
        ```
    """

    def __init__(
        self,
        store: ArticleStore,
        browser: BrowserManager,
        discovery: LinkDiscovery,
        detector: StructureDetector,
        bypass_engine: ProtectionBypassEngine,
        extractor: ContentExtractor | None = None,
        queue: ArticleQueue | None = None,
        http_client: httpx.AsyncClient | None = None,
        config: OrchestratorConfig | None = None,
    ):
        self.store = store
        self.browser = browser
        self.discovery = discovery
        self.detector = detector
        self.bypass_engine = bypass_engine
        self.extractor = extractor or ContentExtractor()
        self.queue = queue
        self.config = config or OrchestratorConfig()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.config.http_timeout_seconds,
        )
        self._stopped = False
        self._rules: dict[UUID, ExtractionRule] = {}
        self._rule_locks: dict[UUID, asyncio.Lock] = {}

    def stop(self) -> None:
        """No new batch or article starts after this; in-flight work completes."""
        self._stopped = True
        logger.info("scrape_stop_requested")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def run_pass(self, source_id: UUID | None = None) -> PassResult:
        """
        Scrape active sources by priority in batches of ``source_concurrency``.

        A failing source is recorded and the pass continues.

        Raises:
            ConfigurationError: If any source is misconfigured (e.g. an invalid URL)
        """
        self._stopped = False
        sources = await self.store.list_active_sources()
        if source_id is not None:
            sources = [s for s in sources if s.id == source_id]

        result = PassResult()
        batch_size = self.config.source_concurrency
        logger.info("scrape_pass_started", sources=len(sources), batch_size=batch_size)

        for start in range(0, len(sources), batch_size):
            if self._stopped:
                result.stopped = True
                break

            batch = sources[start : start + batch_size]
            outcomes = await asyncio.gather(
                *(self.scrape_source(source) for source in batch),
                return_exceptions=True,
            )
            config_errors = [o for o in outcomes if isinstance(o, ConfigurationError)]
            if config_errors:
                logger.error("scrape_pass_configuration_error", error=str(config_errors[0]))
                raise config_errors[0]

            for source, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "source_scrape_raised",
                        source_id=str(source.id),
                        url=source.url,
                        error=str(outcome),
                        error_type=type(outcome).__name__,
                    )
                    result.results.append(
                        SourceScrapeResult(source.id, source.url, success=False, error=str(outcome))
                    )
                else:
                    result.results.append(outcome)

            if start + batch_size < len(sources) and not self._stopped:
                await asyncio.sleep(self.config.batch_pause_seconds)

        logger.info(
            "scrape_pass_completed",
            sources_succeeded=result.sources_succeeded,
            sources_failed=result.sources_failed,
            articles_saved=result.articles_saved,
            stopped=result.stopped,
        )
        return result

    async def scrape_source(self, source: Source) -> SourceScrapeResult:
        """
        Scrape one source end to end and record its health.

        Raises:
            InvalidSourceError: If the source URL cannot be scraped at all
        """
        result = SourceScrapeResult(source.id, source.url)
        parsed = urlparse(source.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidSourceError(f"Source {source.id} has an invalid URL: {source.url!r}")

        bind_source_context(str(source.id), source.url)
        logger.info("source_scrape_started", priority=source.priority)
        try:
            urls = await self._discover_articles(source, result)
            result.links_found = len(urls)

            semaphore = asyncio.Semaphore(self.config.article_concurrency)
            outcomes = await asyncio.gather(
                *(self._process_article(source, url, semaphore, result) for url in urls),
                return_exceptions=True,
            )
            for url, outcome in zip(urls, outcomes):
                if isinstance(outcome, BaseException):
                    result.failures.append(FailedArticle(url=url, error=str(outcome)))
                    logger.warning("article_failed", url=url, error=str(outcome), error_type=type(outcome).__name__)

            result.success = True
            await self.store.update_source_health(source.id, success=True)
            logger.info(
                "source_scrape_completed",
                links=result.links_found,
                saved=result.articles_saved,
                skipped=result.articles_skipped,
                failed=len(result.failures),
            )
        except ConfigurationError:
            await self.store.update_source_health(source.id, success=False, error="configuration error")
            raise
        except Exception as e:
            result.success = False
            result.error = str(e)
            logger.error("source_scrape_failed", error=str(e), error_type=type(e).__name__)
            await self.store.update_source_health(source.id, success=False, error=str(e))
        finally:
            clear_source_context()

        return result

    async def _discover_articles(self, source: Source, result: SourceScrapeResult) -> list[str]:
        """Load the listing page, bypassing protection if needed, and discover links."""
        page = await self.browser.new_page()
        try:
            nav = await page.navigate(source.url, timeout_ms=self.config.navigation_timeout_ms)
            candidates = await self.discovery.extract_candidates(page)
            title, text = page_text(nav.html)
            verdict = validate_content_legitimacy(nav.html, title, text, candidates[:QUALITY_LINK_SAMPLE])
            result.verdict = verdict

            if verdict.is_legitimate:
                return await self.discovery.discover(page, nav.final_url, candidates=candidates)

            protection = detect_protection(nav.html, nav.status, nav.headers)
            logger.info(
                "listing_not_legitimate",
                confidence=round(verdict.confidence, 2),
                protection=verdict.protection_type.value,
                vendor=protection.vendor.value,
                issues=verdict.issues,
            )
        finally:
            await page.close()

        bypass = await self.bypass_engine.bypass(source.url, protection)
        if not bypass.success:
            raise FetchError(f"Bypass aborted after {len(bypass.attempts)} attempts: {'; '.join(bypass.issues[:3])}")

        result.bypass_strategy = bypass.strategy
        result.verdict = bypass.verdict or result.verdict
        return await self.discovery.discover_from_html(bypass.html, bypass.final_url or source.url)

    async def _process_article(
        self,
        source: Source,
        url: str,
        semaphore: asyncio.Semaphore,
        result: SourceScrapeResult,
    ) -> None:
        async with semaphore:
            if self._stopped:
                return

            if await self.store.find_by_url(url):
                result.articles_skipped += 1
                logger.debug("article_skipped", url=url, reason="known_url")
                return

            html, final_url = await self._fetch_article(url)
            rule = await self._ensure_rule(source, html, final_url)
            article = self.extractor.extract(final_url, html, rule)

            if article is None:
                result.articles_skipped += 1
                logger.info("article_skipped", url=url, reason="no_valid_content")
            elif looks_like_challenge_page(article.title) or looks_like_challenge_page(article.content[:2000]):
                result.articles_skipped += 1
                logger.info("article_skipped", url=url, reason="challenge_page")
            else:
                record, created = await self.store.insert_article_if_absent(
                    source.id,
                    url,
                    article.title,
                    article.content,
                    author=article.author,
                    publish_date=article.published_date,
                )
                if created:
                    result.articles_saved += 1
                    logger.info("article_saved", article_id=str(record.id), url=url, method=article.method)
                    if self.queue is not None:
                        await self.queue.enqueue(record.id, self.config.queue_priority)
                else:
                    result.articles_skipped += 1
                    logger.debug("article_skipped", url=url, reason="duplicate")

            await asyncio.sleep(self._article_delay(result.error_rate))

    def _article_delay(self, error_rate: float) -> float:
        """Slow down when a source keeps failing."""
        if error_rate > 0.2:
            return self.config.article_delay_seconds * 10
        if error_rate > 0.1:
            return self.config.article_delay_seconds * 5
        return self.config.article_delay_seconds

    async def _fetch_article(self, url: str) -> tuple[str, str]:
        """
        Fetch over plain HTTP, falling back to the browser.

        Returns:
            Tuple of (html, final_url)

        Raises:
            NavigationError: If the browser fallback fails as well
        """
        try:
            response = await self.http_client.get(url)
            html = decode_html(response.content, response.headers.get("content-type"))
            content_type = response.headers.get("content-type", "text/html")
            if (
                response.status_code == 200
                and "html" in content_type
                and len(response.content) >= self.config.min_http_html_bytes
                and not detect_protection(html, response.status_code, response.headers).has_protection
            ):
                return html, str(response.url)
            logger.debug("article_http_insufficient", url=url, status=response.status_code)
        except httpx.HTTPError as e:
            logger.debug("article_http_failed", url=url, error=str(e))

        page = await self.browser.new_page()
        try:
            nav = await page.navigate(url, wait_until="domcontentloaded", timeout_ms=self.config.navigation_timeout_ms)
            await page.wait_for_network_idle()
            return await page.content(), nav.final_url
        finally:
            await page.close()

    async def _ensure_rule(self, source: Source, html: str, url: str) -> ExtractionRule:
        """Stored rule for the source, detecting and saving one the first time."""
        if source.id in self._rules:
            return self._rules[source.id]

        lock = self._rule_locks.setdefault(source.id, asyncio.Lock())
        async with lock:
            if source.id in self._rules:
                return self._rules[source.id]

            rule: ExtractionRule | None = None
            if source.scraping_config:
                try:
                    rule = ExtractionRule.from_dict(source.scraping_config)
                except InvalidExtractionRuleError as e:
                    logger.warning("stored_rule_invalid", error=str(e))

            if rule is None:
                rule = await self.detector.detect(html, url)
                await self.store.save_scraping_config(source.id, rule.to_dict())
                source.scraping_config = rule.to_dict()

            self._rules[source.id] = rule
            return rule
