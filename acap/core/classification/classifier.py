"""OpenAI-backed classification collaborator.

Three structured calls are made against the chat completions API in JSON
mode: picking article links out of a page's anchors, proposing CSS
selectors for a source, and judging a stored article. All response bodies
go through :func:`parse_structured`, so malformed model output never raises.
Transport failures do, as ``ClassifierError``.
"""

from collections.abc import Sequence

import structlog
from openai import APIError, AsyncOpenAI, RateLimitError

from acap.config import settings
from acap.core.acquisition.links import CandidateLink
from acap.core.classification.response_parser import (
    ArticleAnalysis,
    LinkClassification,
    SelectorSuggestion,
    parse_structured,
)
from acap.utils.exceptions import ClassifierError, ClassifierRateLimitError
from acap.utils.openai_client import get_openai_client
from acap.utils.retry import RetryPolicy, retry_with_exponential_backoff

logger = structlog.get_logger(__name__)

MAX_LINK_INPUT_CHARS = 75_000
MAX_ARTICLE_CHARS = 15_000

LINK_CLASSIFICATION_PROMPT = """You identify news and blog ARTICLE links on a web page.

You receive one link per line as: URL | anchor text | surrounding text.
Return JSON: {"articleUrls": ["..."]}

Rules:
1. Include links to individual articles, stories, posts or press releases.
2. Exclude navigation, category, tag, author, login, search, pagination, social and advertising links.
3. Echo every URL EXACTLY as given, character for character. Never rewrite, shorten or complete a URL.
4. If no link is an article, return {"articleUrls": []}."""

SELECTOR_PROMPT = """You are a CSS selector expert analysing the HTML of an article page.

Return JSON with CSS selectors (NOT text) that locate each element:
{"titleSelector": "...", "contentSelector": "...", "authorSelector": "... or null",
 "dateSelector": "... or null", "confidence": 0.0-1.0}

Rules:
1. Return CSS selectors only, never the literal text of the page.
   Good: "h1.article-title", ".byline .author", "time[datetime]"
   Bad: "By John Smith", "Published: March 3", "10:45 AM"
2. Do not use jQuery-only syntax such as :contains(), :eq(), :first or :last.
3. Avoid bare tag selectors such as "div", "span", "p" or "body".
4. The content selector must match the element that wraps the article body.
5. Use null for elements that do not exist."""

ARTICLE_PROMPT = """You screen articles for a monitoring team.

Return JSON:
{"isFlagged": true|false, "score": 0-100, "categories": ["..."],
 "summary": "two sentence summary", "keywords": ["..."]}

score reflects how noteworthy the article is; isFlagged is true when score >= 70."""

EMPTY_LINKS = LinkClassification()
EMPTY_SELECTORS = SelectorSuggestion()
NEUTRAL_ANALYSIS = ArticleAnalysis()


def format_link_lines(candidates: Sequence[CandidateLink], max_chars: int = MAX_LINK_INPUT_CHARS) -> str:
    """Render candidates one per line, stopping before ``max_chars``."""
    lines: list[str] = []
    total = 0
    for link in candidates:
        context = " ".join(link.surrounding_context.split())[:100]
        line = f"{link.href} | {link.anchor_text.strip()[:120]} | {context}"
        if total + len(line) + 1 > max_chars:
            break
        lines.append(line)
        total += len(line) + 1
    return "\n".join(lines)


class OpenAIClassifier:
    """
    Structured classification calls against the OpenAI chat completions API.

    Example:
        ```python
        classifier = OpenAIClassifier()
        urls = await classifier.classify_links(candidates)
        ```
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_retries: int = 3,
    ) -> None:
        self.client = client or get_openai_client()
        self.model = model or settings.classifier_model
        self.timeout = timeout or settings.classifier_timeout_seconds
        self.retry_policy = RetryPolicy(max_retries=max_retries, initial_delay=1.0)

    async def _complete(self, system_prompt: str, user_content: str, temperature: float = 0.0) -> str | None:
        """
        Run one JSON-mode chat completion.

        Raises:
            ClassifierRateLimitError: If rate limiting persists through all retries
            ClassifierError: On any other API or transport failure
        """
        try:
            response = await retry_with_exponential_backoff(
                lambda: self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_content},
                    ],
                    response_format={"type": "json_object"},
                    temperature=temperature,
                    timeout=self.timeout,
                ),
                self.retry_policy,
                retry_on=(RateLimitError,),
                operation="chat_completion",
            )
        except RateLimitError as e:
            raise ClassifierRateLimitError(f"Classifier rate limit persisted: {e}") from e
        except APIError as e:
            raise ClassifierError(f"Classifier request failed: {e}") from e

        usage = response.usage
        if usage:
            logger.debug(
                "classifier_usage",
                model=self.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        return response.choices[0].message.content

    async def classify_links(self, candidates: Sequence[CandidateLink]) -> list[str]:
        """Return the candidate URLs the model considers articles.

        Unparseable output yields an empty list; the caller decides what an
        empty answer means.
        """
        if not candidates:
            return []
        payload = format_link_lines(candidates)
        raw = await self._complete(LINK_CLASSIFICATION_PROMPT, payload)
        result = parse_structured(raw, LinkClassification, EMPTY_LINKS)
        logger.info(
            "links_classified",
            candidates=len(candidates),
            articles=len(result.article_urls),
        )
        return result.article_urls

    async def infer_selectors(self, html: str, url: str) -> SelectorSuggestion:
        raw = await self._complete(
            SELECTOR_PROMPT,
            f"URL: {url}\n\nHTML:\n{html}",
            temperature=0.2,
        )
        return parse_structured(raw, SelectorSuggestion, EMPTY_SELECTORS)

    async def classify_article(self, title: str, content: str) -> ArticleAnalysis:
        raw = await self._complete(
            ARTICLE_PROMPT,
            f"Title: {title}\n\n{content[:MAX_ARTICLE_CHARS]}",
        )
        return parse_structured(raw, ArticleAnalysis, NEUTRAL_ANALYSIS)
