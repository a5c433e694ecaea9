"""Page and draft endpoints.

Endpoints are thin. PageService owns ownership checks and the revision
CAS. Every draft write is charged to the ``save`` quota.
"""

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ..core.auth import (
    ANONYMOUS_COOKIE_MAX_AGE,
    ANONYMOUS_COOKIE_NAME,
    CallerIdentity,
    get_caller,
    issue_anonymous_token,
)
from ..core.components import admit
from ..core.config import settings
from ..database import get_db
from ..schemas.publish import (
    AnonymousDraftRequest,
    AnonymousDraftResponse,
    DraftSaveRequest,
    DraftSaveResponse,
    PageCreate,
    PageResponse,
)
from ..services import PageService
from ..services.admission import OP_SAVE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["pages"])


def _set_anonymous_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        ANONYMOUS_COOKIE_NAME,
        token,
        max_age=ANONYMOUS_COOKIE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )


@router.post("/pages", response_model=PageResponse, status_code=201)
def create_page(
    body: PageCreate,
    response: Response,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_SAVE)),
):
    """Create an empty draft page. Anonymous callers without a token get one."""
    if not caller.is_authenticated and not caller.anonymous_token:
        caller = CallerIdentity(
            anonymous_token=issue_anonymous_token(),
            client_ip=caller.client_ip,
        )
        _set_anonymous_cookie(response, caller.anonymous_token)
    return PageService(db).create_page(caller, title=body.title)


@router.get("/pages/{page_id}", response_model=PageResponse)
def get_page(
    page_id: str,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(get_caller),
):
    """Owner view of a page: draft and published snapshot side by side."""
    return PageService(db).get_page_for_caller(page_id, caller)


@router.put("/pages/{page_id}/draft", response_model=DraftSaveResponse)
def save_draft(
    page_id: str,
    body: DraftSaveRequest,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_SAVE)),
):
    """Save the working document.

    With ``base_server_revision`` the save is rejected with 409 when the
    page has moved on; the body then carries ``current_revision``.
    """
    result = PageService(db).save_draft(
        page_id, body.doc, caller, base_server_revision=body.base_server_revision
    )
    return DraftSaveResponse(
        page_id=page_id,
        server_revision=result.current_revision,
        accepted_local_revision=body.local_revision,
        updated_at=result.page.updated_at,
    )


@router.post("/drafts/anonymous", response_model=AnonymousDraftResponse)
def save_anonymous_draft(
    body: AnonymousDraftRequest,
    response: Response,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_SAVE)),
):
    """Store a pre-login draft under the caller's anonymous token.

    The token is issued on first use and returned both in a cookie and in
    the body, so the ownership claim can find the page after login.
    """
    token = caller.anonymous_token or issue_anonymous_token()
    page, created = PageService(db).save_anonymous_draft(body.doc, token)
    _set_anonymous_cookie(response, token)
    if created:
        response.status_code = 201
    return AnonymousDraftResponse(
        page_id=page.id,
        anonymous_token=token,
        server_revision=page.server_revision,
    )
