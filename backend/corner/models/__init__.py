"""Database models."""

from .page import Page, ANONYMOUS_TOKEN_PREFIX
from .user import User

__all__ = ["Page", "User", "ANONYMOUS_TOKEN_PREFIX"]
