"""Database models for ACAP."""

from acap.db.models.article import Article
from acap.db.models.source import Source

__all__ = [
    "Article",
    "Source",
]
