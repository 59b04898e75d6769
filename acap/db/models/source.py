"""Source model - a website the pipeline scrapes for articles."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class Source(SQLModel, table=True):
    """A listing page scraped on every pass.

    ``consecutive_failures`` is only ever incremented with a single UPDATE
    statement so concurrent passes cannot lose a failure.
    """

    __tablename__ = "sources"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        nullable=False,
    )
    name: str = Field(nullable=False)
    url: str = Field(nullable=False, unique=True, index=True)
    priority: int = Field(default=0, nullable=False, index=True)
    is_active: bool = Field(default=True, nullable=False, index=True)

    # Health
    consecutive_failures: int = Field(default=0, nullable=False)
    last_scraped: datetime | None = Field(default=None)
    last_successful_scrape: datetime | None = Field(default=None)
    last_error: str | None = Field(default=None)

    # Serialized ExtractionRule, set after the first successful detection
    scraping_config: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )

    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        nullable=False,
    )
