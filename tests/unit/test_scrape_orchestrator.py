"""Unit tests for the scrape orchestrator."""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest

from acap.core.acquisition.links import extract_candidates_from_html
from acap.core.acquisition.protection_bypass import BypassResult, BypassState, StrategyKind
from acap.core.acquisition.scrape_orchestrator import OrchestratorConfig, ScrapeOrchestrator
from acap.core.acquisition.structure_detector import ExtractionRule
from acap.db.models.source import Source
from acap.utils.exceptions import InvalidSourceError, NavigationError
from conftest import FakeBrowser, make_article_html

SOURCE_URL = "https://news.example.com/latest"
CHALLENGE_HTML = "<html><head><title>Security check</title></head><body>Verify you are human</body></html>"
FAST = OrchestratorConfig(source_concurrency=2, batch_pause_seconds=0.0, article_delay_seconds=0.0)
RULE = ExtractionRule("h1.article-title", ".article-body", ".author", "time", confidence=0.9)


def article_url(i: int) -> str:
    return f"https://news.example.com/news/2024/05/14/story-{i}"


def make_source(url: str = SOURCE_URL, **kwargs) -> Source:
    return Source(id=uuid4(), name="City News", url=url, **kwargs)


def make_store(sources: list[Source]) -> MagicMock:
    store = MagicMock()
    store.list_active_sources = AsyncMock(return_value=sources)
    store.find_by_url = AsyncMock(return_value=None)
    store.update_source_health = AsyncMock()
    store.save_scraping_config = AsyncMock()

    async def insert(source_id, url, title, content, author=None, publish_date=None):
        return MagicMock(id=uuid4(), url=url), True

    store.insert_article_if_absent = AsyncMock(side_effect=insert)
    return store


def make_http_client(status: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        slug = str(request.url).rsplit("/", 1)[-1]
        return httpx.Response(status, html=make_article_html(f"Transit update {slug}"))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def discovery(listing_html):
    discovery = MagicMock()
    discovery.extract_candidates = AsyncMock(return_value=extract_candidates_from_html(listing_html))
    discovery.discover = AsyncMock(return_value=[article_url(i) for i in range(3)])
    discovery.discover_from_html = AsyncMock(return_value=[article_url(9)])
    return discovery


@pytest.fixture
def detector():
    detector = MagicMock()
    detector.detect = AsyncMock(return_value=RULE)
    return detector


@pytest.fixture
def bypass_engine():
    engine = MagicMock()
    engine.bypass = AsyncMock()
    return engine


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.enqueue = AsyncMock(return_value=True)
    return queue


def build(store, discovery, detector, bypass_engine, queue=None, browser=None, http_client=None, config=FAST):
    return ScrapeOrchestrator(
        store=store,
        browser=browser,
        discovery=discovery,
        detector=detector,
        bypass_engine=bypass_engine,
        queue=queue,
        http_client=http_client or make_http_client(),
        config=config,
    )


@pytest.mark.asyncio
async def test_scrape_source_saves_and_enqueues(listing_html, discovery, detector, bypass_engine, queue):
    source = make_source()
    store = make_store([source])
    orchestrator = build(store, discovery, detector, bypass_engine, queue, FakeBrowser(default_html=listing_html))

    result = await orchestrator.scrape_source(source)

    assert result.success is True
    assert result.links_found == 3
    assert result.articles_saved == 3
    assert result.failures == []
    assert queue.enqueue.await_count == 3
    assert all(call.args[1] == 50 for call in queue.enqueue.await_args_list)
    detector.detect.assert_awaited_once()
    store.save_scraping_config.assert_awaited_once_with(source.id, RULE.to_dict())
    store.update_source_health.assert_awaited_once_with(source.id, success=True)
    bypass_engine.bypass.assert_not_called()

    saved = store.insert_article_if_absent.await_args_list[0]
    assert saved.args[2].startswith("Transit update story-")
    assert saved.kwargs["author"] == "Jane Reporter"


@pytest.mark.asyncio
async def test_known_urls_are_skipped(listing_html, discovery, detector, bypass_engine, queue):
    source = make_source()
    store = make_store([source])
    store.find_by_url = AsyncMock(side_effect=lambda url: MagicMock() if url == article_url(1) else None)
    orchestrator = build(store, discovery, detector, bypass_engine, queue, FakeBrowser(default_html=listing_html))

    result = await orchestrator.scrape_source(source)

    assert result.articles_saved == 2
    assert result.articles_skipped == 1
    urls = [call.args[1] for call in store.insert_article_if_absent.await_args_list]
    assert article_url(1) not in urls


@pytest.mark.asyncio
async def test_lost_insert_race_is_not_enqueued(listing_html, discovery, detector, bypass_engine, queue):
    source = make_source()
    store = make_store([source])
    store.insert_article_if_absent = AsyncMock(return_value=(MagicMock(id=uuid4()), False))
    orchestrator = build(store, discovery, detector, bypass_engine, queue, FakeBrowser(default_html=listing_html))

    result = await orchestrator.scrape_source(source)

    assert result.articles_saved == 0
    assert result.articles_skipped == 3
    queue.enqueue.assert_not_called()


@pytest.mark.asyncio
async def test_stored_rule_is_reused(listing_html, discovery, detector, bypass_engine):
    source = make_source(scraping_config=RULE.to_dict())
    store = make_store([source])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html))

    await orchestrator.scrape_source(source)

    detector.detect.assert_not_called()
    store.save_scraping_config.assert_not_called()


@pytest.mark.asyncio
async def test_invalid_stored_rule_is_redetected(listing_html, discovery, detector, bypass_engine):
    source = make_source(scraping_config={"title_selector": "h1"})
    store = make_store([source])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html))

    result = await orchestrator.scrape_source(source)

    assert result.success is True
    detector.detect.assert_awaited_once()


@pytest.mark.asyncio
async def test_protected_listing_goes_through_bypass(listing_html, discovery, detector, bypass_engine):
    discovery.extract_candidates = AsyncMock(return_value=[])
    bypass_engine.bypass.return_value = BypassResult(
        success=True,
        state=BypassState.SUCCESS,
        url=SOURCE_URL,
        html=listing_html,
        final_url=SOURCE_URL,
        strategy=StrategyKind.STEALTH,
        confidence=0.9,
    )
    source = make_source()
    store = make_store([source])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=CHALLENGE_HTML))

    result = await orchestrator.scrape_source(source)

    assert result.success is True
    assert result.bypass_strategy == StrategyKind.STEALTH
    assert result.articles_saved == 1
    discovery.discover.assert_not_called()
    discovery.discover_from_html.assert_awaited_once_with(listing_html, SOURCE_URL)


@pytest.mark.asyncio
async def test_failed_bypass_marks_source_failed(discovery, detector, bypass_engine):
    discovery.extract_candidates = AsyncMock(return_value=[])
    bypass_engine.bypass.return_value = BypassResult(
        success=False,
        state=BypassState.ABORTED,
        url=SOURCE_URL,
        issues=["targeted_failed: captcha_challenge_unresolved"],
    )
    source = make_source()
    store = make_store([source])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=CHALLENGE_HTML))

    result = await orchestrator.scrape_source(source)

    assert result.success is False
    assert "Bypass aborted" in result.error
    assert result.verdict is not None and result.verdict.is_legitimate is False
    store.update_source_health.assert_awaited_once_with(source.id, success=False, error=result.error)


@pytest.mark.asyncio
async def test_article_failure_does_not_fail_source(listing_html, discovery, detector, bypass_engine):
    discovery.discover = AsyncMock(return_value=[article_url(0)])
    browser = FakeBrowser(default_html=listing_html)
    source = make_source()
    store = make_store([source])
    orchestrator = build(
        store, discovery, detector, bypass_engine, browser=browser, http_client=make_http_client(status=503)
    )

    original_new_page = browser.new_page
    pages = 0

    async def new_page(profile=None):
        nonlocal pages
        pages += 1
        page = await original_new_page(profile)
        if pages > 1:
            page.navigate_error = NavigationError("timeout")
        return page

    browser.new_page = new_page

    result = await orchestrator.scrape_source(source)

    assert result.success is True
    assert len(result.failures) == 1
    assert result.failures[0].url == article_url(0)
    assert "timeout" in result.failures[0].error
    assert result.error_rate == 1.0


@pytest.mark.asyncio
async def test_invalid_source_url_raises_before_any_work(discovery, detector, bypass_engine):
    source = make_source(url="ftp://news.example.com/")
    store = make_store([source])
    browser = FakeBrowser()
    orchestrator = build(store, discovery, detector, bypass_engine, browser=browser)

    with pytest.raises(InvalidSourceError):
        await orchestrator.scrape_source(source)

    assert browser.opened == []
    store.update_source_health.assert_not_called()


@pytest.mark.asyncio
async def test_run_pass_isolates_source_failures(listing_html, discovery, detector, bypass_engine):
    good, bad = make_source(), make_source(url="https://broken.example.com/")
    store = make_store([bad, good])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html))

    async def discover(page, base_url, candidates=None):
        if "broken" in base_url:
            raise NavigationError("listing unavailable")
        return [article_url(i) for i in range(3)]

    discovery.discover = AsyncMock(side_effect=discover)

    result = await orchestrator.run_pass()

    assert result.sources_succeeded == 1
    assert result.sources_failed == 1
    assert result.articles_saved == 3
    failed = next(r for r in result.results if not r.success)
    assert failed.source_id == bad.id
    assert "listing unavailable" in failed.error


@pytest.mark.asyncio
async def test_run_pass_raises_configuration_errors(listing_html, discovery, detector, bypass_engine):
    good, bad = make_source(), make_source(url="ftp://bad")
    store = make_store([good, bad])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html))

    with pytest.raises(InvalidSourceError):
        await orchestrator.run_pass()


@pytest.mark.asyncio
async def test_listing_anchors_extracted_once(listing_html, discovery, detector, bypass_engine):
    orchestrator = build(
        make_store([make_source()]), discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html)
    )

    await orchestrator.run_pass()

    discovery.extract_candidates.assert_awaited_once()
    candidates = discovery.discover.await_args.kwargs["candidates"]
    assert candidates == extract_candidates_from_html(listing_html)


@pytest.mark.asyncio
async def test_run_pass_filters_by_source_id(listing_html, discovery, detector, bypass_engine):
    first, second = make_source(), make_source(url="https://other.example.com/")
    store = make_store([first, second])
    orchestrator = build(store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html))

    result = await orchestrator.run_pass(source_id=second.id)

    assert [r.source_id for r in result.results] == [second.id]


@pytest.mark.asyncio
async def test_stop_prevents_next_batch(listing_html, discovery, detector, bypass_engine):
    sources = [make_source(url=f"https://site{i}.example.com/") for i in range(3)]
    store = make_store(sources)
    config = OrchestratorConfig(source_concurrency=1, batch_pause_seconds=0.0, article_delay_seconds=0.0)
    orchestrator = build(
        store, discovery, detector, bypass_engine, browser=FakeBrowser(default_html=listing_html), config=config
    )

    async def discover_and_stop(page, base_url, candidates=None):
        orchestrator.stop()
        return []

    discovery.discover = AsyncMock(side_effect=discover_and_stop)

    result = await orchestrator.run_pass()

    assert result.stopped is True
    assert len(result.results) == 1


def test_article_delay_grows_with_error_rate():
    orchestrator = ScrapeOrchestrator(
        MagicMock(), None, MagicMock(), MagicMock(), MagicMock(),
        http_client=MagicMock(), config=OrchestratorConfig(article_delay_seconds=0.2),
    )

    assert orchestrator._article_delay(0.0) == pytest.approx(0.2)
    assert orchestrator._article_delay(0.15) == pytest.approx(1.0)
    assert orchestrator._article_delay(0.5) == pytest.approx(2.0)
