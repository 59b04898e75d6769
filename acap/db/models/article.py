"""Article model - extracted article content and its classification."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Article(SQLModel, table=True):
    """An article page. URLs are unique across all sources.

    Classification fields stay NULL until the article has been analysed.
    """

    __tablename__ = "articles"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        nullable=False,
    )
    source_id: UUID = Field(foreign_key="sources.id", nullable=False, index=True)

    url: str = Field(nullable=False, unique=True, index=True)
    title: str = Field(nullable=False)
    content: str = Field(nullable=False)
    author: str | None = Field(default=None)
    publish_date: datetime | None = Field(default=None)
    scraped_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
    )

    # Classification
    is_flagged: bool | None = Field(default=None, index=True)
    score: int | None = Field(default=None)
    categories: list[str] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    summary: str | None = Field(default=None)
    keywords: list[str] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    analyzed_at: datetime | None = Field(default=None)
    analysis_version: str | None = Field(default=None)
