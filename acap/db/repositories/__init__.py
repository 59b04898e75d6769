"""Database repositories for ACAP."""

from acap.db.repositories.article_repository import ArticleRepository
from acap.db.repositories.base_repository import BaseRepository
from acap.db.repositories.source_repository import SourceRepository

__all__ = [
    "ArticleRepository",
    "BaseRepository",
    "SourceRepository",
]
