"""Article store - the persistence boundary used by the pipeline.

Each call opens its own session from the factory and commits before
returning, so concurrent scraper tasks never share a session.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from acap.core.classification.response_parser import ArticleAnalysis
from acap.db.models.article import Article
from acap.db.models.source import Source
from acap.db.repositories.article_repository import ArticleRepository
from acap.db.repositories.source_repository import SourceRepository
from acap.utils.exceptions import ArticleNotFoundError, InvalidSourceError, StoreError

logger = structlog.get_logger(__name__)


class ArticleStore:
    """
    Sources, articles and their classification state.

    ``insert_article_if_absent`` is atomic per URL: writers inside this
    process serialise on a per-URL lock, and the unique index on
    ``articles.url`` settles races with other processes.

    Example:
        ```python
        store = ArticleStore(AsyncSessionLocal)
        article, created = await store.insert_article_if_absent(
            source_id, url, title, content
        )
        ```
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._url_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                raise StoreError(f"Database operation failed: {e}") from e

    def _lock_for(self, url: str) -> asyncio.Lock:
        lock = self._url_locks.get(url)
        if lock is None:
            lock = asyncio.Lock()
            self._url_locks[url] = lock
        return lock

    # Sources

    async def add_source(self, url: str, name: str | None = None, priority: int = 0) -> tuple[Source, bool]:
        """
        Register a source, or return the existing one for ``url``.

        Raises:
            InvalidSourceError: If ``url`` is not an absolute http(s) URL
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidSourceError(f"Source URL must be absolute http(s): {url!r}")

        try:
            async with self._transaction() as session:
                repo = SourceRepository(session)
                existing = await repo.get_by_url(url)
                if existing:
                    return existing, False
                source = await repo.create(Source(url=url, name=name or parsed.netloc, priority=priority))
        except IntegrityError as e:
            raise StoreError(f"Source {url} was added concurrently") from e

        logger.info("source_added", source_id=str(source.id), url=url, priority=priority)
        return source, True

    async def get_source(self, source_id: UUID) -> Source | None:
        async with self._transaction() as session:
            return await SourceRepository(session).get_by_id(source_id)

    async def list_sources(self) -> list[Source]:
        async with self._transaction() as session:
            return await SourceRepository(session).get_all(limit=1000)

    async def list_active_sources(self) -> list[Source]:
        async with self._transaction() as session:
            return await SourceRepository(session).list_active()

    async def update_source_health(self, source_id: UUID, success: bool, error: str | None = None) -> None:
        """Reset the failure counter on success, increment it atomically on failure."""
        now = datetime.utcnow()
        async with self._transaction() as session:
            repo = SourceRepository(session)
            if success:
                await repo.record_success(source_id, now)
            else:
                await repo.record_failure(source_id, now, error)

    async def save_scraping_config(self, source_id: UUID, config: dict[str, Any]) -> None:
        async with self._transaction() as session:
            await SourceRepository(session).set_scraping_config(source_id, config)
        logger.info("scraping_config_saved", source_id=str(source_id))

    # Articles

    async def find_by_url(self, url: str) -> Article | None:
        async with self._transaction() as session:
            return await ArticleRepository(session).get_by_url(url)

    async def insert_article_if_absent(
        self,
        source_id: UUID,
        url: str,
        title: str,
        content: str,
        author: str | None = None,
        publish_date: datetime | None = None,
    ) -> tuple[Article, bool]:
        """
        Insert an article unless one with ``url`` already exists.

        Returns:
            Tuple of (article, created). ``created`` is False when the URL was
            already stored, including when another writer won a race.
        """
        async with self._lock_for(url):
            existing = await self.find_by_url(url)
            if existing:
                return existing, False

            try:
                async with self._transaction() as session:
                    article = await ArticleRepository(session).create(
                        Article(
                            source_id=source_id,
                            url=url,
                            title=title,
                            content=content,
                            author=author,
                            publish_date=publish_date,
                        )
                    )
            except IntegrityError:
                existing = await self.find_by_url(url)
                if existing is None:
                    raise StoreError(f"Article insert for {url} conflicted but no row exists")
                logger.debug("article_insert_race_resolved", url=url)
                return existing, False

        return article, True

    async def get_article(self, article_id: UUID) -> Article:
        """
        Raises:
            ArticleNotFoundError: If no article has ``article_id``
        """
        async with self._transaction() as session:
            article = await ArticleRepository(session).get_by_id(article_id)
        if article is None:
            raise ArticleNotFoundError(f"Article {article_id} not found")
        return article

    async def update_classification(self, article_id: UUID, analysis: ArticleAnalysis, version: str) -> Article:
        async with self._transaction() as session:
            repo = ArticleRepository(session)
            article = await repo.get_by_id(article_id)
            if article is None:
                raise ArticleNotFoundError(f"Article {article_id} not found")
            article.is_flagged = analysis.is_flagged
            article.score = analysis.score
            article.categories = list(analysis.categories)
            article.summary = analysis.summary
            article.keywords = list(analysis.keywords)
            article.analyzed_at = datetime.utcnow()
            article.analysis_version = version
            return await repo.update(article)

    async def list_unclassified_article_ids(self, limit: int = 100) -> list[UUID]:
        async with self._transaction() as session:
            return await ArticleRepository(session).list_unclassified_ids(limit)
