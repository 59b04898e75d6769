"""Unit tests for the article analyzer (classification queue handler)."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from acap.core.classification.article_analyzer import ANALYSIS_VERSION, ArticleAnalyzer
from acap.core.classification.response_parser import ArticleAnalysis
from acap.utils.exceptions import ArticleNotFoundError, ClassifierError

ANALYSIS = ArticleAnalysis(is_flagged=True, score=88, categories=["transport"], summary="s", keywords=["k"])


def make_article(**kwargs):
    values = {"id": uuid4(), "title": "Budget", "content": "Body text", "analyzed_at": None, "analysis_version": None}
    values.update(kwargs)
    return MagicMock(**values)


@pytest.fixture
def store():
    store = MagicMock()
    store.get_article = AsyncMock()
    store.update_classification = AsyncMock()
    return store


@pytest.fixture
def classifier():
    classifier = MagicMock()
    classifier.classify_article = AsyncMock(return_value=ANALYSIS)
    return classifier


@pytest.mark.asyncio
async def test_analyze_persists_classification(store, classifier):
    article = make_article()
    store.get_article.return_value = article

    result = await ArticleAnalyzer(store, classifier).analyze(article.id)

    assert result == ANALYSIS
    classifier.classify_article.assert_awaited_once_with("Budget", "Body text")
    store.update_classification.assert_awaited_once_with(article.id, ANALYSIS, ANALYSIS_VERSION)


@pytest.mark.asyncio
async def test_already_analyzed_with_current_version_is_skipped(store, classifier):
    article = make_article(analyzed_at=datetime(2024, 5, 14), analysis_version=ANALYSIS_VERSION)
    store.get_article.return_value = article

    assert await ArticleAnalyzer(store, classifier).analyze(article.id) is None
    classifier.classify_article.assert_not_called()


@pytest.mark.asyncio
async def test_older_version_is_reanalyzed(store, classifier):
    article = make_article(analyzed_at=datetime(2024, 5, 14), analysis_version="v0.9")
    store.get_article.return_value = article

    assert await ArticleAnalyzer(store, classifier).analyze(article.id) == ANALYSIS


@pytest.mark.asyncio
async def test_classifier_error_propagates_for_retry(store, classifier):
    store.get_article.return_value = make_article()
    classifier.classify_article.side_effect = ClassifierError("down")

    with pytest.raises(ClassifierError):
        await ArticleAnalyzer(store, classifier).analyze(uuid4())

    store.update_classification.assert_not_called()


@pytest.mark.asyncio
async def test_missing_article_propagates(store, classifier):
    store.get_article.side_effect = ArticleNotFoundError("missing")

    with pytest.raises(ArticleNotFoundError):
        await ArticleAnalyzer(store, classifier).analyze(uuid4())
