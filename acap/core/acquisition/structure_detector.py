"""Extraction-rule inference for a source's article pages.

The classifier proposes CSS selectors for one sample page. Its answer is
sanitised, checked against the parsed document, and every field that does
not hold up is swapped for a hand-authored fallback. Fields that work are
kept. A rule always comes back, with a confidence that says how much of it
is guesswork.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from bs4 import BeautifulSoup, Comment
from soupsieve import SelectorSyntaxError

from acap.core.classification.response_parser import SelectorSuggestion
from acap.utils.exceptions import InvalidExtractionRuleError

logger = structlog.get_logger(__name__)

FIELDS = ("title", "content", "author", "date")
REQUIRED_FIELDS = ("title", "content")

FALLBACK_SELECTORS: dict[str, tuple[str, ...]] = {
    "title": ("h1", ".article-title", ".entry-title", ".post-title", "header h1", "title"),
    "content": (
        "article",
        ".article-content",
        ".article-body",
        "main .content",
        ".post-content",
        "#article-content",
        ".story-content",
        ".entry-content",
        "main",
    ),
    "author": (".author", "[rel=author]", ".byline", ".author-name"),
    "date": ("time", ".date", ".published", ".post-date"),
}

BROAD_SELECTORS = frozenset({"body", "html", "div", "span", "p", "*"})

_TEXT_LIKE = (
    re.compile(r"^by\s+\w+", re.IGNORECASE),
    re.compile(r"^(published|updated|posted)\s*:?", re.IGNORECASE),
    re.compile(r"\b\d{1,2}:\d{2}\s*(am|pm)?\b", re.IGNORECASE),
    re.compile(
        r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+\d{1,2}",
        re.IGNORECASE,
    ),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{2,4}\b"),
)


class SelectorInferrer(Protocol):
    async def infer_selectors(self, html: str, url: str) -> SelectorSuggestion: ...


@dataclass(frozen=True)
class StructurePolicy:
    """Penalties and limits for rule validation."""

    max_html_chars: int = 45_000
    missing_title_penalty: float = 0.3
    missing_content_penalty: float = 0.4
    broad_selector_penalty: float = 0.2
    title_no_match_penalty: float = 0.2
    title_many_matches_penalty: float = 0.1
    title_many_matches_limit: int = 3
    content_no_match_penalty: float = 0.3
    fallback_penalty: float = 0.15
    fallback_floor: float = 0.35
    generic_confidence: float = 0.3
    min_ai_confidence: float = 0.1
    max_alternatives: int = 3


DEFAULT_STRUCTURE_POLICY = StructurePolicy()


@dataclass
class ExtractionRule:
    """Selectors for one source, persisted on ``Source.scraping_config``."""

    title_selector: str
    content_selector: str
    author_selector: str | None = None
    date_selector: str | None = None
    confidence: float = 0.0
    alternatives: dict[str, list[str]] = field(default_factory=dict)
    fallback_fields: list[str] = field(default_factory=list)

    def selector_for(self, name: str) -> str | None:
        return getattr(self, f"{name}_selector")

    def candidates_for(self, name: str) -> list[str]:
        """Primary selector followed by ranked alternatives, without duplicates."""
        ordered: list[str] = []
        primary = self.selector_for(name)
        if primary:
            ordered.append(primary)
        for selector in self.alternatives.get(name, []):
            if selector not in ordered:
                ordered.append(selector)
        return ordered

    def to_dict(self) -> dict[str, Any]:
        return {
            "title_selector": self.title_selector,
            "content_selector": self.content_selector,
            "author_selector": self.author_selector,
            "date_selector": self.date_selector,
            "confidence": self.confidence,
            "alternatives": {k: list(v) for k, v in self.alternatives.items()},
            "fallback_fields": list(self.fallback_fields),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractionRule":
        """
        Rebuild a stored rule.

        Raises:
            InvalidExtractionRuleError: If title or content selector is missing
        """
        title = data.get("title_selector")
        content = data.get("content_selector")
        if not title or not content:
            raise InvalidExtractionRuleError(
                f"Stored extraction rule lacks required selectors: {sorted(data)}"
            )
        return cls(
            title_selector=title,
            content_selector=content,
            author_selector=data.get("author_selector"),
            date_selector=data.get("date_selector"),
            confidence=float(data.get("confidence", 0.0)),
            alternatives={k: list(v) for k, v in (data.get("alternatives") or {}).items()},
            fallback_fields=list(data.get("fallback_fields") or []),
        )


def generic_rule(policy: StructurePolicy = DEFAULT_STRUCTURE_POLICY) -> ExtractionRule:
    """Rule made only of fallbacks, used when inference is impossible."""
    return ExtractionRule(
        title_selector=FALLBACK_SELECTORS["title"][0],
        content_selector=FALLBACK_SELECTORS["content"][0],
        author_selector=FALLBACK_SELECTORS["author"][0],
        date_selector=FALLBACK_SELECTORS["date"][0],
        confidence=policy.generic_confidence,
        alternatives={name: list(FALLBACK_SELECTORS[name][1:]) for name in FIELDS},
        fallback_fields=list(FIELDS),
    )


def preprocess_html(html: str, max_chars: int = DEFAULT_STRUCTURE_POLICY.max_html_chars) -> str:
    """Body markup without scripts, styles or comments, capped at ``max_chars``."""
    soup = BeautifulSoup(html, "lxml")
    root = soup.body or soup
    for tag in root.find_all(["script", "style", "noscript", "svg"]):
        tag.decompose()
    for comment in root.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    cleaned = re.sub(r"\s+", " ", str(root))
    return cleaned[:max_chars]


def sanitize_selector(selector: str | None) -> str | None:
    """Strip jQuery-only pseudo classes the CSS engine would reject."""
    if selector is None:
        return None
    value = selector.strip()
    if not value or value.lower() in {"null", "none", "n/a", "undefined"}:
        return None

    value = re.sub(r""":contains\((?:"[^"]*"|'[^']*'|[^)]*)\)""", "", value)
    value = re.sub(r":eq\(\s*\d+\s*\)", "", value)
    value = re.sub(r":first(?![-\w])", ":first-child", value)
    value = re.sub(r":last(?![-\w])", ":last-child", value)
    value = re.sub(r":not\(\s*\)", "", value)
    value = re.sub(r"\s+", " ", value).strip().rstrip(",").strip()
    return value or None


def looks_like_text(value: str) -> bool:
    """True when the model returned page text instead of a selector."""
    return any(pattern.search(value) for pattern in _TEXT_LIKE)


def is_broad_selector(selector: str) -> bool:
    return selector.strip().lower() in BROAD_SELECTORS


def count_matches(soup: BeautifulSoup, selector: str) -> int | None:
    """Number of elements matched, or None when the selector does not parse."""
    try:
        return len(soup.select(selector))
    except (SelectorSyntaxError, ValueError, NotImplementedError):
        return None


def first_working_fallback(soup: BeautifulSoup, name: str) -> str | None:
    for selector in FALLBACK_SELECTORS[name]:
        if count_matches(soup, selector):
            return selector
    return None


class StructureDetector:
    """
    Infer an ``ExtractionRule`` from a sample article page.

    Example:
        ```python
        detector = StructureDetector(classifier)
        rule = await detector.detect(html, "https://example.com/news/1")
        source.scraping_config = rule.to_dict()
        ```
    """

    def __init__(
        self,
        classifier: SelectorInferrer,
        policy: StructurePolicy = DEFAULT_STRUCTURE_POLICY,
    ) -> None:
        self.classifier = classifier
        self.policy = policy

    async def detect(self, html: str, url: str) -> ExtractionRule:
        """Never raises: inference failure returns the generic rule."""
        try:
            suggestion = await self.classifier.infer_selectors(
                preprocess_html(html, self.policy.max_html_chars), url
            )
            rule = self.build_rule(suggestion, BeautifulSoup(html, "lxml"))
        except Exception as e:
            logger.warning("structure_detection_failed", url=url, error=str(e))
            return generic_rule(self.policy)

        logger.info(
            "structure_detected",
            url=url,
            confidence=round(rule.confidence, 2),
            fallback_fields=rule.fallback_fields,
        )
        return rule

    def clean_suggestion(self, suggestion: SelectorSuggestion) -> dict[str, str | None]:
        cleaned: dict[str, str | None] = {}
        for name in FIELDS:
            selector = sanitize_selector(getattr(suggestion, f"{name}_selector"))
            if selector and looks_like_text(selector):
                logger.debug("selector_rejected_text_like", field=name, value=selector[:80])
                selector = None
            cleaned[name] = selector
        return cleaned

    def score_selectors(self, selectors: dict[str, str | None], soup: BeautifulSoup) -> tuple[float, set[str]]:
        """Validation penalty and the set of fields that failed."""
        policy = self.policy
        penalty = 0.0
        failed: set[str] = set()

        title, content = selectors["title"], selectors["content"]
        if not title:
            penalty += policy.missing_title_penalty
            failed.add("title")
        if not content:
            penalty += policy.missing_content_penalty
            failed.add("content")

        for name in FIELDS:
            selector = selectors[name]
            if selector and is_broad_selector(selector):
                penalty += policy.broad_selector_penalty
                failed.add(name)

        if title and "title" not in failed:
            matches = count_matches(soup, title)
            if not matches:
                penalty += policy.title_no_match_penalty
                failed.add("title")
            elif matches > policy.title_many_matches_limit:
                penalty += policy.title_many_matches_penalty

        if content and "content" not in failed:
            if not count_matches(soup, content):
                penalty += policy.content_no_match_penalty
                failed.add("content")

        for name in ("author", "date"):
            selector = selectors[name]
            if selector and name not in failed and not count_matches(soup, selector):
                failed.add(name)

        return penalty, failed

    def build_rule(self, suggestion: SelectorSuggestion, soup: BeautifulSoup) -> ExtractionRule:
        policy = self.policy
        selectors = self.clean_suggestion(suggestion)
        penalty, failed = self.score_selectors(selectors, soup)

        confidence = max(policy.min_ai_confidence, min(1.0, suggestion.confidence))
        confidence = max(policy.min_ai_confidence, confidence - penalty)

        replaced: list[str] = []
        for name in FIELDS:
            if name not in failed:
                continue
            fallback = first_working_fallback(soup, name)
            if name in REQUIRED_FIELDS:
                selectors[name] = fallback or FALLBACK_SELECTORS[name][0]
                replaced.append(name)
            else:
                # Optional fields are only replaced when a fallback actually matches
                selectors[name] = fallback
                if fallback:
                    replaced.append(name)

        if replaced:
            confidence = max(
                policy.fallback_floor,
                confidence - policy.fallback_penalty * len(replaced),
            )

        alternatives: dict[str, list[str]] = {}
        for name in FIELDS:
            ranked = [
                s for s in FALLBACK_SELECTORS[name]
                if s != selectors[name] and count_matches(soup, s)
            ]
            if ranked:
                alternatives[name] = ranked[: policy.max_alternatives]

        return ExtractionRule(
            title_selector=selectors["title"] or FALLBACK_SELECTORS["title"][0],
            content_selector=selectors["content"] or FALLBACK_SELECTORS["content"][0],
            author_selector=selectors["author"],
            date_selector=selectors["date"],
            confidence=min(1.0, max(0.0, confidence)),
            alternatives=alternatives,
            fallback_fields=replaced,
        )
