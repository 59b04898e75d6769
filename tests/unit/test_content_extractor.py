"""Unit tests for article content extraction."""

from datetime import datetime

import pytest

from acap.core.acquisition.content_extractor import ContentExtractor, ExtractedArticle
from acap.core.acquisition.structure_detector import ExtractionRule
from conftest import ARTICLE_PARAGRAPH, make_article_html

URL = "https://news.example.com/news/2024/05/14/council-approves-transit-budget-991"


@pytest.fixture
def extractor():
    return ContentExtractor()


@pytest.fixture
def rule():
    return ExtractionRule(
        title_selector="h1.article-title",
        content_selector=".article-body",
        author_selector=".author",
        date_selector="time",
        confidence=0.9,
    )


def test_extract_with_rule(extractor, rule, article_html):
    article = extractor.extract(URL, article_html, rule)

    assert isinstance(article, ExtractedArticle)
    assert article.method == "rule"
    assert article.title == "Council approves transit budget"
    assert article.content.startswith("The city council approved")
    assert article.author == "Jane Reporter"
    assert article.published_date == datetime(2024, 5, 14, 9, 30)
    assert article.word_count > 50


def test_rule_alternatives_used_when_primary_misses(extractor, article_html):
    rule = ExtractionRule("h1", ".missing-body", alternatives={"content": [".article-body"]})

    article = extractor.extract(URL, article_html, rule)

    assert article is not None
    assert article.method == "rule"
    assert "transit budget" in article.content


def test_extract_without_rule_uses_library_cascade(extractor, article_html):
    article = extractor.extract(URL, article_html)

    assert article is not None
    assert article.method in {"trafilatura", "readability", "basic"}
    assert "city council approved" in article.content
    assert article.title == "Council approves transit budget"
    assert article.author == "Jane Reporter"
    assert article.published_date == datetime(2024, 5, 14, 9, 30)


def test_failing_rule_falls_back_to_cascade(extractor, article_html):
    rule = ExtractionRule("h1", ".does-not-exist")

    article = extractor.extract(URL, article_html, rule)

    assert article is not None
    assert article.method != "rule"


def test_challenge_page_yields_nothing(extractor):
    html = "<html><head><title>Just a moment</title></head><body><p>Verify you are human.</p></body></html>"

    assert extractor.extract(URL, html) is None


def test_title_falls_back_to_url_slug(extractor):
    body = "".join(f"<p>{ARTICLE_PARAGRAPH}</p>" for _ in range(6))
    html = f"<html><body><div class='body'>{body}</div></body></html>"

    article = extractor.extract(URL, html, ExtractionRule("h2.none", ".body"))

    assert article is not None
    assert article.title == "Council Approves Transit Budget"


def test_invalid_page_title_skipped_for_h1(extractor):
    html = make_article_html().replace(
        '<meta property="og:title" content="Council approves transit budget">',
        '<meta property="og:title" content="404 Not Found">',
    )

    article = extractor.extract(URL, html)

    assert article.title == "Council approves transit budget"


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-05-14T09:30:00Z", datetime(2024, 5, 14, 9, 30)),
        ("2024-05-14T11:30:00+02:00", datetime(2024, 5, 14, 9, 30)),
        ("2024-05-14", datetime(2024, 5, 14)),
        ("May 14, 2024", datetime(2024, 5, 14)),
        ("14 May 2024", datetime(2024, 5, 14)),
        ("last Tuesday", None),
    ],
)
def test_parse_date_string(extractor, value, expected):
    assert extractor._parse_date_string(value) == expected
