"""Long-lived collaborators shared by every request.

Built once at startup and stored on ``app.state.components``; routes reach
them through ``get_components``. Tests replace them with in-memory fakes by
assigning a different ``Components`` to ``app.state``.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request, Response

from .auth import CallerIdentity, get_caller, require_user
from .config import settings as default_settings
from ..render.html import render_page_html
from ..schemas.page import PageDoc
from ..services.admission import AdmissionController
from ..services.artifact_publisher import ArtifactPublisher
from ..services.cache_invalidator import CacheInvalidator


@dataclass
class Components:
    publisher: ArtifactPublisher
    invalidator: Optional[CacheInvalidator]
    admission: AdmissionController
    renderer: Callable[[PageDoc], str] = render_page_html

    def close(self) -> None:
        if self.invalidator is not None:
            self.invalidator.shutdown()
        store = self.publisher.store
        if store is not None and hasattr(store, "close"):
            store.close()


def build_components(config=None) -> Components:
    config = config or default_settings
    return Components(
        publisher=ArtifactPublisher.from_settings(config),
        invalidator=CacheInvalidator.from_settings(config),
        admission=AdmissionController.from_settings(config),
    )


def get_components(request: Request) -> Components:
    return request.app.state.components


def admit(operation: str, authenticated: bool = False):
    """Dependency factory: resolve the caller, then charge *operation* to it.

    Rejected requests raise RateLimitedError before the route body runs.
    Admitted responses carry the X-RateLimit-* headers.
    """
    identity_dependency = require_user if authenticated else get_caller

    def _admit(
        response: Response,
        caller: CallerIdentity = Depends(identity_dependency),
        components: Components = Depends(get_components),
    ) -> CallerIdentity:
        decision = components.admission.enforce(operation, caller.rate_limit_key)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return caller

    return _admit
