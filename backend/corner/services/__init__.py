"""Business logic services."""

from .page_service import PageService
from .publish_service import PublishOrchestrator, PublishResult

__all__ = ["PageService", "PublishOrchestrator", "PublishResult"]
