"""Publish orchestrator: drives one publish from document to live page.

Step order is fixed:

1. validate the document (no side effects before this passes)
2. resolve the slug (reuse the page's own, or allocate one)
3. render and upload the artifact
4. revision-gated commit, retried exactly once on conflict
5. cache invalidation, whose failures only become warnings

The orchestrator holds no shared mutable state. Concurrent publishes of the
same page coordinate only through the ``server_revision`` CAS, so any number
of instances can run against one database.
"""

import logging
import random
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.auth import CallerIdentity
from ..core.config import settings as default_settings
from ..exceptions import (
    ConflictError,
    CornerException,
    ForbiddenError,
    StorageUnavailableError,
    ValidationError,
)
from ..models.page import Page
from ..render.html import render_page_html
from ..repositories import CasResult, PageRepository
from ..schemas.page import PageDoc, validate_page_doc
from .artifact_publisher import ArtifactPublisher, ArtifactResult, StorageUploadError
from .cache_invalidator import CacheInvalidator
from .slug_allocator import SlugAllocation, allocate_slug, generate_base_slug, is_valid_slug

logger = logging.getLogger(__name__)

Renderer = Callable[[PageDoc], str]

DEGRADED_NOT_CONFIGURED_WARNING = (
    "Storage is not configured; the page is served dynamically instead of from a cached artifact."
)


@dataclass
class PublishResult:
    page_id: str
    slug: str
    public_url: str
    storage_key: Optional[str]
    published_revision: int
    server_revision: int
    published_at: datetime
    warnings: List[str] = field(default_factory=list)
    retried: bool = False
    slug_allocation: Optional[SlugAllocation] = None

    @property
    def success(self) -> bool:
        return True


class PublishOrchestrator:
    """Publishes a page under the upload-before-commit rule.

    Collaborators are injected so tests can substitute the object store, the
    purge backend and the renderer. ``config`` supplies limits and the
    degraded-mode policy.
    """

    def __init__(
        self,
        db: Session,
        publisher: ArtifactPublisher,
        invalidator: Optional[CacheInvalidator] = None,
        renderer: Renderer = render_page_html,
        config=None,
        invalidation_timeout: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.pages = PageRepository(db)
        self.publisher = publisher
        self.invalidator = invalidator
        self.renderer = renderer
        self.config = config or default_settings
        if invalidation_timeout is None and invalidator is not None:
            invalidation_timeout = invalidator.timeout + 1.0
        self.invalidation_timeout = invalidation_timeout
        self.rng = rng

    @property
    def degraded_allowed(self) -> bool:
        return self.config.degraded_publish_allowed()

    # -- Entry point ------------------------------------------------------------

    def publish(
        self,
        page_id: str,
        document: Any,
        base_server_revision: int,
        caller: CallerIdentity,
    ) -> PublishResult:
        """Publish *document* as page *page_id*.

        Raises:
            ValidationError: the document is malformed or over a limit.
            PageNotFoundError / ForbiddenError: the caller cannot publish this page.
            StorageUnavailableError: the artifact could not be stored and
                degraded mode is off. The page row is untouched.
            ConflictError: the CAS lost twice (initial attempt plus one retry).
        """
        start = time.monotonic()
        log = {
            "page_id": page_id,
            "user_id": caller.user_id,
            "slug": None,
            "blocks_count": 0,
            "doc_size": 0,
            "html_size": 0,
            "storage_configured": self.publisher.is_configured,
            "purge_configured": bool(self.invalidator and self.invalidator.is_configured),
        }
        try:
            # (a) validate
            doc = validate_page_doc(document, self.config.max_blocks, self.config.max_document_bytes)
            log["blocks_count"] = len(doc.blocks)
            log["doc_size"] = doc.serialized_size()

            page = self.pages.get_by_id(page_id)
            if not page.is_owned_by(caller.user_id, caller.anonymous_token):
                raise ForbiddenError("You can only publish your own page")

            # (b) slug
            slug, allocation = self.resolve_slug(page, caller)
            log["slug"] = slug

            # (c) render + upload
            html = self.renderer(doc)
            html_size = len(html.encode("utf-8"))
            log["html_size"] = html_size
            if html_size > self.config.max_artifact_bytes:
                raise ValidationError("Rendered page too large", field="doc")

            artifact, warnings = self._upload(slug, html)

            # (d) revision-gated commit
            published_at = datetime.now(timezone.utc)
            cas, retried = self._commit(page_id, base_server_revision, doc, slug, artifact, published_at)
        except CornerException as e:
            self._log_publish(log, start, success=False, error=e.message)
            raise

        # (e) best-effort invalidation
        warnings.extend(self._invalidate(slug))

        result = PublishResult(
            page_id=page_id,
            slug=slug,
            public_url=artifact.public_url if artifact else f"/api/public/{slug}",
            storage_key=artifact.key if artifact else None,
            published_revision=cas.current_revision,
            server_revision=cas.current_revision,
            published_at=published_at,
            warnings=warnings,
            retried=retried,
            slug_allocation=allocation,
        )
        self._log_publish(log, start, success=True, retried=retried, warnings=len(warnings))
        return result

    # -- Steps ---------------------------------------------------------------

    def resolve_slug(self, page: Page, caller: CallerIdentity) -> tuple[str, Optional[SlugAllocation]]:
        """Reuse the page's slug when it has a valid one, else allocate.

        Slugs are seeded from the owner's user id, never from a username.
        """
        if is_valid_slug(page.slug):
            return page.slug, None

        owner_id = page.user_id or caller.user_id or page.id.split("_", 1)[-1]
        allocation = allocate_slug(
            generate_base_slug(owner_id),
            lambda candidate: self.pages.slug_taken(candidate, exclude_page_id=page.id),
            rng=self.rng,
        )
        return allocation.slug, allocation

    def _upload(self, slug: str, html: str) -> tuple[Optional[ArtifactResult], List[str]]:
        """Store the artifact. Nothing is committed if this raises.

        Degraded mode only covers storage that is not configured. A configured
        store that fails is always fatal: a previous artifact may still sit at
        the slug's key and would keep being served over the new snapshot.
        """
        if not self.publisher.is_configured:
            if self.degraded_allowed:
                logger.warning("Publishing without storage (degraded mode)", extra={"slug": slug})
                return None, [DEGRADED_NOT_CONFIGURED_WARNING]
            raise StorageUnavailableError(
                "Service unavailable: storage not configured",
                missing=self.config.missing_storage_vars(),
            )

        try:
            return self.publisher.publish(slug, html), []
        except StorageUploadError as e:
            logger.error("Storage upload failed", extra={"slug": slug, "error": str(e)})
            raise StorageUnavailableError("Failed to upload page to storage") from e

    def _commit(
        self,
        page_id: str,
        base_server_revision: int,
        doc: PageDoc,
        slug: str,
        artifact: Optional[ArtifactResult],
        published_at: datetime,
    ) -> tuple[CasResult, bool]:
        """CAS commit with exactly one retry against the re-read revision.

        The retry reuses the artifact already uploaded: only the revision
        changed between attempts, not the document.
        """
        content = doc.content_json()
        background = doc.background_json()

        def patch_for(expected: int) -> dict:
            patch = {
                "slug": slug,
                "draft_content": content,
                "draft_background": background,
                "published_content": content,
                "published_background": background,
                "published_revision": expected + 1,
                "is_published": True,
                "published_at": published_at,
                "storage_key": artifact.key if artifact else None,
            }
            if doc.title is not None:
                patch["title"] = doc.title
            return patch

        result = self.pages.cas_update(page_id, base_server_revision, patch_for(base_server_revision))
        if result.applied:
            return result, False

        fresh = self.pages.get_by_id(page_id)
        if is_valid_slug(fresh.slug) and fresh.slug != slug:
            # A concurrent publish fixed a different slug; our artifact sits under the wrong key.
            raise ConflictError(page_id, fresh.server_revision)

        logger.info(
            "Publish conflict, retrying once",
            extra={"page_id": page_id, "base_revision": base_server_revision, "current_revision": fresh.server_revision},
        )
        retry = self.pages.cas_update(page_id, fresh.server_revision, patch_for(fresh.server_revision))
        if not retry.applied:
            raise ConflictError(page_id, retry.current_revision)
        return retry, True

    def _invalidate(self, slug: str) -> List[str]:
        """Purge caches for *slug*. Every failure comes back as a warning."""
        if self.invalidator is None:
            return []
        try:
            future = self.invalidator.submit(slug)
            result = future.result(timeout=self.invalidation_timeout)
        except FuturesTimeoutError:
            logger.warning("Cache purge did not finish in time", extra={"slug": slug})
            return [f"Cache purge did not finish within {self.invalidation_timeout}s; cached copies may be stale."]
        except Exception as e:
            logger.warning("Cache purge raised", extra={"slug": slug, "error": str(e)})
            return [f"Cache purge failed: {e}"]
        return result.warning_messages()

    @staticmethod
    def _log_publish(log: dict, start: float, success: bool, **extra) -> None:
        fields = dict(log, latency_ms=round((time.monotonic() - start) * 1000, 1), success=success, **extra)
        if success:
            logger.info(f"Publish succeeded: {log['slug']}", extra=fields)
        else:
            logger.error(f"Publish failed: {log['slug'] or 'unknown'}", extra=fields)
