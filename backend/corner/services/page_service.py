"""Page service: draft lifecycle and anonymous-draft housekeeping.

Every write to an existing page is a revision CAS through PageRepository.
Anonymous drafts are swept opportunistically: each anonymous save runs the
stale cleanup with a small probability instead of relying on a scheduler.
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..core.auth import CallerIdentity
from ..core.config import settings as default_settings
from ..exceptions import AuthenticationError, ConflictError, ForbiddenError, ValidationError
from ..models.page import Page
from ..repositories import CasResult, PageRepository
from ..schemas.page import PageDoc, empty_page_doc, validate_page_doc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    deleted: int
    remaining: int
    max_age_minutes: int


class PageService:
    """Draft operations on behalf of a caller.

    ``rng`` drives the cleanup coin flip and is injectable for tests.
    """

    def __init__(self, db: Session, config=None, rng: Optional[random.Random] = None):
        self.db = db
        self.pages = PageRepository(db)
        self.config = config or default_settings
        self.rng = rng or random.Random()

    def validate_document(self, data: Any) -> PageDoc:
        return validate_page_doc(data, self.config.max_blocks, self.config.max_document_bytes)

    def create_page(self, caller: CallerIdentity, title: Optional[str] = None) -> Page:
        """Create an empty draft page owned by the caller."""
        owner = caller.owner_token
        if not owner:
            raise AuthenticationError("A session or anonymous draft token is required")
        page = self.pages.create(
            owner_token=owner,
            user_id=caller.user_id,
            title=title,
            draft_content=empty_page_doc(title).content_json(),
        )
        self.db.commit()
        logger.info("Page created", extra={"page_id": page.id, "anonymous": not caller.is_authenticated})
        return page

    def get_page_for_caller(self, page_id: str, caller: CallerIdentity) -> Page:
        """Load a page the caller owns. Raises PageNotFoundError or ForbiddenError."""
        page = self.pages.get_by_id(page_id)
        if not page.is_owned_by(caller.user_id, caller.anonymous_token):
            raise ForbiddenError("You do not own this page")
        return page

    def get_published_page(self, slug: str) -> Optional[Page]:
        return self.pages.get_published_by_slug(slug)

    def save_draft(
        self,
        page_id: str,
        document: Any,
        caller: CallerIdentity,
        base_server_revision: Optional[int] = None,
    ) -> CasResult:
        """Replace the working document.

        With *base_server_revision* the save applies only if the page is
        still at that revision. Without it the stored revision is used, so
        the write is still a CAS against whatever was just read.

        Raises:
            ConflictError: the revision moved on; nothing was written.
        """
        doc = self.validate_document(document)
        page = self.get_page_for_caller(page_id, caller)
        expected = base_server_revision if base_server_revision is not None else page.server_revision

        result = self.pages.cas_update(page.id, expected, self._draft_patch(doc))
        if not result.applied:
            raise ConflictError(
                page.id,
                result.current_revision,
                message="Draft is out of date, refetch and retry",
            )
        return result

    def save_anonymous_draft(self, document: Any, anonymous_token: str) -> tuple[Page, bool]:
        """Store the working document under an anonymous token.

        A token holds at most one page; the first save creates it. Returns
        (page, created).
        """
        if not anonymous_token:
            raise ValidationError("Anonymous token is required", field="anonymous_token")
        doc = self.validate_document(document)

        page = self.pages.first_for_anonymous(anonymous_token)
        if page is None:
            page = self.pages.create(
                owner_token=anonymous_token,
                title=doc.title,
                draft_content=doc.content_json(),
                draft_background=doc.background_json(),
            )
            self.db.commit()
            created = True
        else:
            result = self.pages.cas_update(page.id, page.server_revision, self._draft_patch(doc))
            if not result.applied:
                raise ConflictError(page.id, result.current_revision)
            page = result.page
            created = False

        self.maybe_cleanup_stale()
        return page, created

    def resolve_page_for_publish(self, caller: CallerIdentity) -> Page:
        """The caller's page for the implicit publish endpoint, created on demand."""
        if caller.is_authenticated:
            page = self.pages.first_for_user(caller.user_id)
        elif caller.anonymous_token:
            page = self.pages.first_for_anonymous(caller.anonymous_token)
        else:
            raise AuthenticationError("A session or anonymous draft token is required")
        if page is not None:
            return page
        return self.create_page(caller)

    # -- Stale anonymous cleanup ------------------------------------------------

    def maybe_cleanup_stale(self) -> Optional[int]:
        """Run the stale sweep with probability ``cleanup_probability``.

        Returns the number of deleted pages, or None when the sweep did not
        run or failed. Never raises.
        """
        if self.rng.random() >= self.config.cleanup_probability:
            return None
        try:
            return self.cleanup_stale().deleted
        except Exception as e:
            self.db.rollback()
            logger.warning(f"Stale anonymous cleanup failed (non-fatal): {e}")
            return None

    def cleanup_stale(self, max_age_minutes: Optional[int] = None) -> CleanupResult:
        """Delete unclaimed, unpublished anonymous pages idle past the cutoff."""
        age = max_age_minutes or self.config.stale_anonymous_minutes
        deleted = self.pages.delete_stale_anonymous(age)
        self.db.commit()
        remaining = self.pages.count_stale_anonymous(age)
        if deleted:
            logger.info(
                f"Deleted {deleted} stale anonymous pages",
                extra={"max_age_minutes": age, "remaining": remaining},
            )
        return CleanupResult(deleted=deleted, remaining=remaining, max_age_minutes=age)

    @staticmethod
    def _draft_patch(doc: PageDoc) -> dict:
        patch = {
            "draft_content": doc.content_json(),
            "draft_background": doc.background_json(),
        }
        if doc.title is not None:
            patch["title"] = doc.title
        return patch
