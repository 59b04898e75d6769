"""Classify stored articles; used as the classification queue handler."""

from typing import Protocol
from uuid import UUID

import structlog

from acap.core.classification.response_parser import ArticleAnalysis
from acap.db.store import ArticleStore

logger = structlog.get_logger(__name__)

ANALYSIS_VERSION = "v1.0"


class ArticleClassifier(Protocol):
    async def classify_article(self, title: str, content: str) -> ArticleAnalysis: ...


class ArticleAnalyzer:
    """Load an article, classify it, and persist the verdict."""

    def __init__(
        self,
        store: ArticleStore,
        classifier: ArticleClassifier,
        version: str = ANALYSIS_VERSION,
    ):
        self.store = store
        self.classifier = classifier
        self.version = version

    async def analyze(self, article_id: UUID) -> ArticleAnalysis | None:
        """
        Classify one article.

        Returns:
            The new analysis, or None when the article was already analysed
            with the current version

        Raises:
            ArticleNotFoundError: If the article does not exist
            ClassifierError: If the classifier cannot be reached (the queue retries)
        """
        article = await self.store.get_article(article_id)
        if article.analyzed_at is not None and article.analysis_version == self.version:
            logger.debug("article_already_analyzed", article_id=str(article_id))
            return None

        analysis = await self.classifier.classify_article(article.title, article.content)
        await self.store.update_classification(article_id, analysis, self.version)

        logger.info(
            "article_analyzed",
            article_id=str(article_id),
            flagged=analysis.is_flagged,
            score=analysis.score,
        )
        return analysis
