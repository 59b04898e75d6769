"""Generic repository over a SQLModel table."""

from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel

ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """CRUD helpers shared by the model repositories.

    Repositories flush but never commit; the caller owns the transaction.
    """

    def __init__(self, model: type[ModelType], session: AsyncSession):
        self.model = model
        self.session = session

    async def create(self, obj: ModelType) -> ModelType:
        """Insert ``obj`` and return it with database defaults loaded."""
        self.session.add(obj)
        await self.session.flush()
        await self.session.refresh(obj)
        return obj

    async def get_by_id(self, id: UUID) -> ModelType | None:
        return await self.session.get(self.model, id)

    async def get_one_by(self, **filters: Any) -> ModelType | None:
        """First row whose columns equal ``filters``."""
        statement = select(self.model)
        for column, value in filters.items():
            statement = statement.where(getattr(self.model, column) == value)
        result = await self.session.execute(statement.limit(1))
        return result.scalar_one_or_none()

    async def get_all(self, limit: int = 100) -> list[ModelType]:
        result = await self.session.execute(select(self.model).limit(limit))
        return list(result.scalars().all())

    async def update(self, obj: ModelType) -> ModelType:
        """Persist changes to ``obj`` and reload it."""
        self.session.add(obj)
        await self.session.flush()
        await self.session.refresh(obj)
        return obj
