"""Data access repositories."""

from .base import BaseRepository
from .page_repository import CasResult, PageRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "CasResult",
    "PageRepository",
    "UserRepository",
]
