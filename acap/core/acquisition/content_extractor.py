"""Article extraction - title, body and metadata from an article page."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
import trafilatura
from bs4 import BeautifulSoup
from readability import Document
from soupsieve import SelectorSyntaxError

from acap.core.acquisition.content_validator import (
    extract_title_from_url,
    is_valid_article_content,
    is_valid_title,
)
from acap.core.acquisition.corruption import is_corrupted_text, sanitize_content
from acap.core.acquisition.structure_detector import ExtractionRule

logger = structlog.get_logger(__name__)


def as_naive_utc(value: datetime) -> datetime:
    # The articles table stores timezone-naive UTC timestamps
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class ExtractedArticle:
    """An article page reduced to what the store keeps."""

    url: str
    title: str
    content: str
    author: Optional[str] = None
    published_date: Optional[datetime] = None
    description: Optional[str] = None
    method: str = "rule"
    word_count: int = 0

    def __post_init__(self):
        if not self.word_count and self.content:
            self.word_count = len(self.content.split())


@dataclass
class ExtractionConfig:
    """Thresholds for accepting extracted text."""

    min_content_length: int = 200
    min_word_count: int = 50
    min_text_to_html_ratio: float = 0.02


class ContentExtractor:
    """Extract an article using the source's rule, then a library cascade.

    Order:
    1. Rule selectors (primary, then ranked alternatives)
    2. Trafilatura
    3. Readability
    4. Basic tag stripping
    """

    def __init__(self, config: Optional[ExtractionConfig] = None):
        self.config = config or ExtractionConfig()

    def extract(self, url: str, html: str, rule: Optional[ExtractionRule] = None) -> Optional[ExtractedArticle]:
        """Extract an article or return None when nothing usable is on the page.

        Args:
            url: Final URL of the article page
            html: Page markup
            rule: Source extraction rule, if one has been detected

        Returns:
            ExtractedArticle, or None if no stage produced valid content
        """
        soup = BeautifulSoup(html, "lxml")
        metadata = self._extract_metadata(soup)

        content, method = None, None
        if rule is not None:
            content = self._select_text(soup, rule.candidates_for("content"))
            method = "rule"
            if content and not self._quality_check(content, html):
                content = None

        if not content:
            for method, extractor in (
                ("trafilatura", self._extract_with_trafilatura),
                ("readability", self._extract_with_readability),
                ("basic", self._extract_basic),
            ):
                text = extractor(html)
                if text and self._quality_check(text, html):
                    content = text
                    break

        if not content:
            logger.info("article_extraction_empty", url=url)
            return None

        content = sanitize_content(content)
        if not is_valid_article_content(content, self.config.min_content_length) or is_corrupted_text(content):
            logger.info("article_content_rejected", url=url, method=method, length=len(content))
            return None

        title = self._resolve_title(soup, rule, metadata.get("title"), url)
        if not title:
            logger.info("article_title_missing", url=url)
            return None

        author = metadata.get("author")
        published = metadata.get("published_date")
        if rule is not None:
            author = self._select_text(soup, rule.candidates_for("author"), max_chars=200) or author
            date_text = self._select_date(soup, rule.candidates_for("date"))
            published = date_text or published

        if method != "rule":
            logger.debug("article_extracted_with_fallback", url=url, method=method)

        return ExtractedArticle(
            url=url,
            title=title,
            content=content,
            author=author,
            published_date=published,
            description=metadata.get("description"),
            method=method or "rule",
        )

    def _select_text(self, soup: BeautifulSoup, selectors: list[str], max_chars: int | None = None) -> Optional[str]:
        """Text of the first selector that matches something non-empty."""
        for selector in selectors:
            try:
                elements = soup.select(selector)
            except (SelectorSyntaxError, ValueError, NotImplementedError):
                logger.debug("selector_invalid", selector=selector)
                continue
            text = "\n".join(el.get_text(separator="\n", strip=True) for el in elements).strip()
            if text:
                return text[:max_chars] if max_chars else text
        return None

    def _select_date(self, soup: BeautifulSoup, selectors: list[str]) -> Optional[datetime]:
        for selector in selectors:
            try:
                element = soup.select_one(selector)
            except (SelectorSyntaxError, ValueError, NotImplementedError):
                continue
            if element is None:
                continue
            value = element.get("datetime") or element.get("content") or element.get_text(strip=True)
            parsed = self._parse_date_string(str(value)) if value else None
            if parsed:
                return parsed
        return None

    def _resolve_title(
        self,
        soup: BeautifulSoup,
        rule: Optional[ExtractionRule],
        meta_title: Optional[str],
        url: str,
    ) -> Optional[str]:
        """First valid title among rule, metadata and URL slug."""
        candidates: list[Optional[str]] = []
        if rule is not None:
            candidates.append(self._select_text(soup, rule.candidates_for("title"), max_chars=500))
        candidates.append(meta_title)
        h1 = soup.find("h1")
        if h1:
            candidates.append(h1.get_text(" ", strip=True))

        for candidate in candidates:
            if candidate:
                cleaned = " ".join(candidate.split())
                if is_valid_title(cleaned):
                    return cleaned

        return extract_title_from_url(url)

    def _extract_with_trafilatura(self, html: str) -> Optional[str]:
        try:
            return trafilatura.extract(
                html,
                include_comments=False,
                include_tables=True,
                no_fallback=False,
                favor_precision=True,
            )
        except Exception as e:
            logger.debug("trafilatura_failed", error=str(e))
            return None

    def _extract_with_readability(self, html: str) -> Optional[str]:
        try:
            summary_html = Document(html).summary()
            return BeautifulSoup(summary_html, "lxml").get_text(separator="\n", strip=True)
        except Exception as e:
            logger.debug("readability_failed", error=str(e))
            return None

    def _extract_basic(self, html: str) -> Optional[str]:
        soup = BeautifulSoup(html, "lxml")
        for tag in soup(["script", "style", "nav", "footer", "header", "aside", "form"]):
            tag.decompose()
        text = soup.get_text(separator="\n", strip=True)
        return re.sub(r"\n\s*\n+", "\n\n", text)

    def _extract_metadata(self, soup: BeautifulSoup) -> dict:
        """OpenGraph first, then standard meta tags, then the document title."""
        metadata: dict = {}

        for key, attrs in (
            ("title", {"property": "og:title"}),
            ("description", {"property": "og:description"}),
            ("author", {"property": "article:author"}),
            ("author", {"property": "og:author"}),
            ("description", {"name": "description"}),
            ("author", {"name": "author"}),
        ):
            if metadata.get(key):
                continue
            tag = soup.find("meta", attrs=attrs)
            if tag and tag.get("content"):
                metadata[key] = str(tag.get("content")).strip()

        if not metadata.get("title") and soup.title:
            metadata["title"] = soup.title.get_text(strip=True)

        published_date = self._extract_published_date(soup)
        if published_date:
            metadata["published_date"] = published_date

        return metadata

    def _extract_published_date(self, soup: BeautifulSoup) -> Optional[datetime]:
        date_patterns = [
            ("meta", {"property": "article:published_time"}),
            ("meta", {"name": "publishdate"}),
            ("meta", {"name": "date"}),
            ("meta", {"property": "og:published_time"}),
            ("time", {"class": "published"}),
            ("time", {"class": "entry-date"}),
            ("time", {}),
        ]

        for tag_name, attrs in date_patterns:
            tag = soup.find(tag_name, attrs=attrs)
            if tag:
                date_str = tag.get("content") or tag.get("datetime") or tag.get_text()
                if date_str:
                    parsed_date = self._parse_date_string(str(date_str))
                    if parsed_date:
                        return parsed_date

        return None

    def _parse_date_string(self, date_str: str) -> Optional[datetime]:
        """Parse a date string into a naive UTC datetime."""
        value = date_str.strip()
        try:
            return as_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            pass

        for fmt in (
            "%Y-%m-%d %H:%M:%S",
            "%Y-%m-%d",
            "%B %d, %Y",
            "%b %d, %Y",
            "%d %B %Y",
            "%a, %d %b %Y %H:%M:%S %z",
        ):
            try:
                return as_naive_utc(datetime.strptime(value, fmt))
            except ValueError:
                continue

        return None

    def _quality_check(self, text: str, html: str) -> bool:
        word_count = len(text.split())
        if word_count < self.config.min_word_count:
            return False

        if html and len(text) / len(html) < self.config.min_text_to_html_ratio:
            logger.debug("extraction_low_text_ratio", ratio=round(len(text) / len(html), 3))
            return False

        return True
