"""Identity endpoints.

    POST /api/auth/dev-login  development stand-in for the external login
                               callback: upsert user, claim drafts, issue token
    POST /api/auth/claim      re-run the ownership claim (retried callbacks)
    GET  /api/me              who the server thinks the caller is
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.auth import CallerIdentity, get_caller
from ..core.components import admit
from ..core.config import settings
from ..database import get_db
from ..exceptions import ForbiddenError
from ..schemas.publish import ClaimResponse, DevLoginRequest, DevLoginResponse, MeResponse
from ..services import auth_service
from ..services.admission import OP_AUTH
from ..services.claim_service import claim_anonymous_pages

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


@router.post("/auth/dev-login", response_model=DevLoginResponse)
def dev_login(
    body: DevLoginRequest,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_AUTH)),
):
    """Log in as an arbitrary subject. Disabled in production."""
    if settings.is_production:
        raise ForbiddenError("Development login is disabled in production")

    result = auth_service.complete_login(
        db,
        body.subject,
        anonymous_token=caller.anonymous_token,
        email=body.email,
        display_name=body.display_name,
    )
    return DevLoginResponse(
        user_id=result.user.id,
        token=result.token,
        claimed=result.claim.claimed,
        claimed_page_ids=result.claim.page_ids,
    )


@router.post("/auth/claim", response_model=ClaimResponse)
def claim(
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_AUTH, authenticated=True)),
):
    """Claim the caller's anonymous drafts. Succeeds with 0 when nothing is left."""
    result = claim_anonymous_pages(db, caller.anonymous_token, caller.user_id)
    return ClaimResponse(claimed=result.claimed, page_ids=result.page_ids)


@router.get("/me", response_model=MeResponse)
def me(caller: CallerIdentity = Depends(get_caller)):
    return MeResponse(
        authenticated=caller.is_authenticated,
        user_id=caller.user_id,
        anonymous_token=caller.anonymous_token,
    )
