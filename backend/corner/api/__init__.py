"""API routes."""

from .auth_routes import router as auth_router
from .maintenance import router as maintenance_router
from .pages import router as pages_router
from .public import router as public_router
from .publish import router as publish_router

__all__ = [
    "auth_router",
    "maintenance_router",
    "pages_router",
    "public_router",
    "publish_router",
]
