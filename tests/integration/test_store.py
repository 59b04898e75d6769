"""Integration tests for the article store against SQLite."""

import asyncio
from datetime import datetime
from uuid import uuid4

import pytest

from acap.core.classification.response_parser import ArticleAnalysis
from acap.utils.exceptions import ArticleNotFoundError, InvalidSourceError

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_add_source_is_idempotent(sqlite_store):
    source, created = await sqlite_store.add_source("https://news.example.com/latest", priority=5)
    again, created_again = await sqlite_store.add_source("https://news.example.com/latest")

    assert created is True
    assert created_again is False
    assert again.id == source.id
    assert source.name == "news.example.com"


@pytest.mark.asyncio
async def test_add_source_rejects_non_http(sqlite_store):
    with pytest.raises(InvalidSourceError):
        await sqlite_store.add_source("ftp://news.example.com/")


@pytest.mark.asyncio
async def test_active_sources_ordered_by_priority(sqlite_store):
    await sqlite_store.add_source("https://low.example.com/", priority=1)
    await sqlite_store.add_source("https://high.example.com/", priority=9)
    await sqlite_store.add_source("https://mid.example.com/", priority=5)

    sources = await sqlite_store.list_active_sources()

    assert [s.priority for s in sources] == [9, 5, 1]


@pytest.mark.asyncio
async def test_concurrent_inserts_of_same_url_create_one_row(sqlite_store):
    source, _ = await sqlite_store.add_source("https://news.example.com/")
    url = "https://news.example.com/news/story-1"

    results = await asyncio.gather(
        *(sqlite_store.insert_article_if_absent(source.id, url, f"Title {i}", "Body text") for i in range(5))
    )

    created = [article for article, was_created in results if was_created]
    assert len(created) == 1
    assert len({article.id for article, _ in results}) == 1
    stored = await sqlite_store.find_by_url(url)
    assert stored.id == created[0].id


@pytest.mark.asyncio
async def test_insert_keeps_metadata(sqlite_store):
    source, _ = await sqlite_store.add_source("https://news.example.com/")
    published = datetime(2024, 5, 14, 9, 30)

    article, created = await sqlite_store.insert_article_if_absent(
        source.id, "https://news.example.com/a", "Title", "Body", author="Jane Reporter", publish_date=published
    )

    fetched = await sqlite_store.get_article(article.id)
    assert created is True
    assert fetched.author == "Jane Reporter"
    assert fetched.publish_date == published
    assert fetched.analyzed_at is None


@pytest.mark.asyncio
async def test_failures_increment_and_success_resets(sqlite_store):
    source, _ = await sqlite_store.add_source("https://news.example.com/")

    await asyncio.gather(*(sqlite_store.update_source_health(source.id, False, "boom") for _ in range(3)))
    failing = await sqlite_store.get_source(source.id)

    assert failing.consecutive_failures == 3
    assert failing.last_error == "boom"
    assert failing.last_successful_scrape is None

    await sqlite_store.update_source_health(source.id, True)
    healthy = await sqlite_store.get_source(source.id)

    assert healthy.consecutive_failures == 0
    assert healthy.last_error is None
    assert healthy.last_successful_scrape is not None


@pytest.mark.asyncio
async def test_scraping_config_saved(sqlite_store):
    source, _ = await sqlite_store.add_source("https://news.example.com/")
    config = {"title_selector": "h1", "content_selector": "article", "confidence": 0.8}

    await sqlite_store.save_scraping_config(source.id, config)

    assert (await sqlite_store.get_source(source.id)).scraping_config == config


@pytest.mark.asyncio
async def test_update_classification(sqlite_store):
    source, _ = await sqlite_store.add_source("https://news.example.com/")
    article, _ = await sqlite_store.insert_article_if_absent(source.id, "https://news.example.com/a", "T", "B")
    analysis = ArticleAnalysis(is_flagged=True, score=77, categories=["transport"], summary="S", keywords=["bus"])

    assert await sqlite_store.list_unclassified_article_ids() == [article.id]

    updated = await sqlite_store.update_classification(article.id, analysis, "v1.0")

    assert updated.is_flagged is True
    assert updated.score == 77
    assert updated.categories == ["transport"]
    assert updated.analysis_version == "v1.0"
    assert updated.analyzed_at is not None
    assert await sqlite_store.list_unclassified_article_ids() == []


@pytest.mark.asyncio
async def test_missing_article_raises(sqlite_store):
    with pytest.raises(ArticleNotFoundError):
        await sqlite_store.get_article(uuid4())

    with pytest.raises(ArticleNotFoundError):
        await sqlite_store.update_classification(uuid4(), ArticleAnalysis(), "v1.0")
