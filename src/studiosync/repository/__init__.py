"""Local-first repositories, one per entity collection."""

from studiosync.repository.base import EntityRepository
from studiosync.repository.collections import (
    ActivityRepository,
    FavoriteRepository,
    PageStateRepository,
)
from studiosync.repository.history import HistoryRepository

__all__ = [
    "ActivityRepository",
    "EntityRepository",
    "FavoriteRepository",
    "HistoryRepository",
    "PageStateRepository",
]
