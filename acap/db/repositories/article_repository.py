"""Article repository for database operations."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from acap.db.models.article import Article
from acap.db.repositories.base_repository import BaseRepository


class ArticleRepository(BaseRepository[Article]):
    """Repository for Article model operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Article, session)

    async def get_by_url(self, url: str) -> Article | None:
        return await self.get_one_by(url=url)

    async def list_unclassified_ids(self, limit: int = 100) -> list[UUID]:
        """Ids of articles never analysed, oldest first."""
        result = await self.session.execute(
            select(Article.id)
            .where(Article.analyzed_at == None)  # noqa: E711
            .order_by(Article.scraped_at)  # type: ignore[arg-type]
            .limit(limit)
        )
        return list(result.scalars().all())
