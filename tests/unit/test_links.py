"""Unit tests for candidate link normalization."""

import pytest

from acap.core.acquisition.links import (
    CandidateLink,
    decode_entities,
    extract_candidates_from_html,
    is_navigable,
    normalize_url,
)

BASE = "https://news.example.com/latest/"


class TestNormalizeUrl:
    def test_absolute_url_is_unchanged(self):
        url = "https://other.example.org/story?id=5"
        assert normalize_url(url, BASE) == url

    def test_relative_url_joined_onto_base(self):
        assert normalize_url("/news/a-story", BASE) == "https://news.example.com/news/a-story"
        assert normalize_url("a-story", BASE) == "https://news.example.com/latest/a-story"

    def test_protocol_relative_takes_base_scheme(self):
        assert normalize_url("//cdn.example.com/x", "http://example.com/") == "http://cdn.example.com/x"

    def test_protocol_relative_without_base_defaults_to_https(self):
        assert normalize_url("//cdn.example.com/x") == "https://cdn.example.com/x"

    def test_entities_are_decoded(self):
        assert normalize_url("/search?a=1&amp;b=2", BASE) == "https://news.example.com/search?a=1&b=2"

    def test_double_encoded_entities_are_decoded(self):
        assert decode_entities("a&amp;amp;b") == "a&b"

    def test_unterminated_entity_left_alone(self):
        assert decode_entities("?a=1&copy=2") == "?a=1&copy=2"

    @pytest.mark.parametrize(
        "href",
        [
            "/news/a-story",
            "https://news.example.com/x?a=1&amp;b=2",
            "//cdn.example.com/img",
            "relative/path.html",
            "  https://news.example.com/padded  ",
        ],
    )
    def test_idempotent(self, href):
        once = normalize_url(href, BASE)
        assert normalize_url(once, BASE) == once

    def test_non_navigable_returned_as_is(self):
        assert normalize_url("mailto:desk@example.com", BASE) == "mailto:desk@example.com"


@pytest.mark.parametrize(
    "href,expected",
    [
        ("#top", False),
        ("mailto:a@b.c", False),
        ("javascript:void(0)", False),
        ("tel:+15551234", False),
        ("   ", False),
        ("/news/story", True),
        ("https://example.com", True),
    ],
)
def test_is_navigable(href, expected):
    assert is_navigable(href) is expected


def test_extract_candidates_from_html_captures_context(listing_html):
    candidates = extract_candidates_from_html(listing_html)

    assert len(candidates) == 12
    first = candidates[0]
    assert isinstance(first, CandidateLink)
    assert first.href == "/news/2024/05/14/transit-story-0"
    assert first.anchor_text == "Transit story number 0 explained"
    assert first.surrounding_context.startswith("Transit story number 0")
    assert len(first.surrounding_context) <= 100


def test_extract_candidates_respects_limit(listing_html):
    assert len(extract_candidates_from_html(listing_html, limit=5)) == 5


def test_candidate_from_payload_tolerates_missing_keys():
    link = CandidateLink.from_payload({"href": "/x", "text": None})

    assert link == CandidateLink(href="/x", anchor_text="", surrounding_context="")
