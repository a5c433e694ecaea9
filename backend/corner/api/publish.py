"""Publish endpoints.

Both routes require an authenticated caller and are charged to the
``publish`` quota before the orchestrator runs.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.auth import CallerIdentity
from ..core.components import Components, admit, get_components
from ..database import get_db
from ..exceptions import ValidationError
from ..schemas.publish import PublishRequest, PublishResponse
from ..services import PageService, PublishOrchestrator, PublishResult
from ..services.admission import OP_PUBLISH

router = APIRouter(prefix="/api", tags=["publish"])


def _orchestrator(db: Session, components: Components) -> PublishOrchestrator:
    return PublishOrchestrator(
        db,
        publisher=components.publisher,
        invalidator=components.invalidator,
        renderer=components.renderer,
    )


def _response(result: PublishResult) -> PublishResponse:
    return PublishResponse(
        page_id=result.page_id,
        slug=result.slug,
        public_url=result.public_url,
        storage_key=result.storage_key,
        published_revision=result.published_revision,
        server_revision=result.server_revision,
        published_at=result.published_at,
        warnings=result.warnings,
    )


@router.post("/publish", response_model=PublishResponse)
def publish_own_page(
    body: PublishRequest,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_PUBLISH, authenticated=True)),
    components: Components = Depends(get_components),
):
    """Publish the caller's page, creating it on first publish.

    When ``base_server_revision`` is omitted the stored revision is used.
    """
    page = PageService(db).resolve_page_for_publish(caller)
    base = body.base_server_revision if body.base_server_revision is not None else page.server_revision
    result = _orchestrator(db, components).publish(page.id, body.doc, base, caller)
    return _response(result)


@router.post("/pages/{page_id}/publish", response_model=PublishResponse)
def publish_page(
    page_id: str,
    body: PublishRequest,
    db: Session = Depends(get_db),
    caller: CallerIdentity = Depends(admit(OP_PUBLISH, authenticated=True)),
    components: Components = Depends(get_components),
):
    """Publish a specific page against the revision the caller last saw."""
    if body.base_server_revision is None:
        raise ValidationError("base_server_revision is required", field="base_server_revision")
    result = _orchestrator(db, components).publish(page_id, body.doc, body.base_server_revision, caller)
    return _response(result)
