"""Source repository for database operations."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from acap.db.models.source import Source
from acap.db.repositories.base_repository import BaseRepository


class SourceRepository(BaseRepository[Source]):
    """Repository for Source model operations."""

    def __init__(self, session: AsyncSession):
        super().__init__(Source, session)

    async def get_by_url(self, url: str) -> Source | None:
        return await self.get_one_by(url=url)

    async def list_active(self) -> list[Source]:
        """Active sources, highest priority first."""
        result = await self.session.execute(
            select(Source)
            .where(Source.is_active == True)  # noqa: E712
            .order_by(Source.priority.desc(), Source.created_at)  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def record_success(self, source_id: UUID, when: datetime) -> None:
        await self.session.execute(
            update(Source)
            .where(Source.id == source_id)  # type: ignore[arg-type]
            .values(
                consecutive_failures=0,
                last_scraped=when,
                last_successful_scrape=when,
                last_error=None,
                updated_at=when,
            )
        )

    async def record_failure(self, source_id: UUID, when: datetime, error: str | None = None) -> None:
        """Increment the failure counter in the database, not in Python."""
        await self.session.execute(
            update(Source)
            .where(Source.id == source_id)  # type: ignore[arg-type]
            .values(
                consecutive_failures=Source.consecutive_failures + 1,
                last_scraped=when,
                last_error=error[:1000] if error else None,
                updated_at=when,
            )
        )

    async def set_scraping_config(self, source_id: UUID, config: dict[str, Any]) -> None:
        await self.session.execute(
            update(Source)
            .where(Source.id == source_id)  # type: ignore[arg-type]
            .values(scraping_config=config, updated_at=datetime.utcnow())
        )
