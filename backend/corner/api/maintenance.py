"""Maintenance endpoints, meant for cron jobs rather than browsers."""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..core.config import settings
from ..database import get_db
from ..exceptions import AuthenticationError, CornerException, ErrorCode
from ..schemas.publish import CleanupRequest, CleanupResponse
from ..services import PageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/maintenance", tags=["maintenance"])

_bearer_scheme = HTTPBearer(auto_error=False)


def _require_cleanup_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> None:
    """In production the caller must present ``Bearer <CLEANUP_SECRET>``."""
    if not settings.is_production:
        return
    if not settings.cleanup_secret:
        logger.error("CLEANUP_SECRET not configured")
        raise CornerException("Cleanup not configured", ErrorCode.INTERNAL_ERROR, status_code=503)
    presented = credentials.credentials if credentials else ""
    if not hmac.compare_digest(presented.encode(), settings.cleanup_secret.encode()):
        raise AuthenticationError("Invalid cleanup secret")


@router.post("/cleanup-anonymous", response_model=CleanupResponse)
def cleanup_anonymous_pages(
    body: Optional[CleanupRequest] = Body(None),
    db: Session = Depends(get_db),
    _: None = Depends(_require_cleanup_secret),
):
    """Delete unclaimed anonymous drafts idle longer than ``max_age_minutes``."""
    max_age = body.max_age_minutes if body else None
    result = PageService(db).cleanup_stale(max_age)
    logger.info(
        f"Cleanup deleted {result.deleted} stale anonymous pages",
        extra={"max_age_minutes": result.max_age_minutes, "remaining": result.remaining},
    )
    return CleanupResponse(
        deleted=result.deleted,
        remaining=result.remaining,
        max_age_minutes=result.max_age_minutes,
    )
