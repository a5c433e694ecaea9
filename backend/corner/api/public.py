"""Public, unauthenticated read endpoints for published pages.

Only the published snapshot is ever served here, never the draft.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from ..core.components import Components, get_components
from ..database import get_db
from ..exceptions import PageNotFoundError
from ..models.page import Page
from ..schemas.page import parse_page_doc
from ..schemas.publish import PublicPageResponse
from ..services import PageService
from ..services.artifact_publisher import CACHE_CONTROL_WITHOUT_PURGE

router = APIRouter(tags=["public"])


def _published_or_404(db: Session, slug: str) -> Page:
    page = PageService(db).get_published_page(slug)
    if page is None or page.published_content is None:
        raise PageNotFoundError(slug)
    return page


@router.get("/api/public/{slug}", response_model=PublicPageResponse)
def get_public_page(slug: str, db: Session = Depends(get_db)):
    """Published snapshot as JSON."""
    page = _published_or_404(db, slug)
    return PublicPageResponse(
        slug=page.slug,
        title=page.title,
        content=page.published_content,
        background=page.published_background,
        published_revision=page.published_revision,
        published_at=page.published_at,
    )


@router.get("/u/{slug}", response_class=HTMLResponse)
def render_public_page(
    slug: str,
    db: Session = Depends(get_db),
    components: Components = Depends(get_components),
):
    """Published snapshot rendered on the fly.

    Serves pages whose artifact is not in object storage (degraded mode).
    """
    page = _published_or_404(db, slug)
    data = dict(page.published_content)
    if page.published_background:
        data["background"] = page.published_background
    html = components.renderer(parse_page_doc(data))
    return HTMLResponse(html, headers={"Cache-Control": CACHE_CONTROL_WITHOUT_PURGE})
