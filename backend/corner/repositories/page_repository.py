"""Page repository: the revision store.

Every mutation of an existing page goes through ``cas_update``: a single
conditional UPDATE gated on ``server_revision``. Nothing else in the service
is allowed to decide whether a write is stale.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql import func

from ..exceptions import DatabaseError, PageNotFoundError
from ..models.page import ANONYMOUS_TOKEN_PREFIX, Page
from .base import BaseRepository

logger = logging.getLogger(__name__)

# Columns a CAS patch may set. server_revision and updated_at are managed here.
PATCHABLE_COLUMNS = frozenset({
    "title",
    "slug",
    "draft_content",
    "draft_background",
    "published_content",
    "published_background",
    "published_revision",
    "is_published",
    "published_at",
    "storage_key",
})


@dataclass(frozen=True)
class CasResult:
    """Outcome of a revision-gated write.

    ``current_revision`` is the new revision when applied, otherwise the
    revision the row actually holds.
    """
    applied: bool
    current_revision: int
    page: Optional[Page] = None


def new_page_id() -> str:
    return f"page_{uuid.uuid4().hex}"


class PageRepository(BaseRepository[Page]):
    """Repository for page persistence and the revision CAS."""

    model_class = Page
    not_found_error = PageNotFoundError

    def create(
        self,
        owner_token: str,
        user_id: Optional[str] = None,
        title: Optional[str] = None,
        draft_content: Optional[Dict[str, Any]] = None,
        draft_background: Optional[Dict[str, Any]] = None,
    ) -> Page:
        """Create an unpublished page at revision 1."""
        page = Page(
            id=new_page_id(),
            owner_token=owner_token,
            user_id=user_id,
            title=title,
            draft_content=draft_content or {},
            draft_background=draft_background,
            server_revision=1,
            is_published=False,
        )
        self.db.add(page)
        self.db.flush()
        self.db.refresh(page)
        return page

    def get_published_by_slug(self, slug: str) -> Optional[Page]:
        return (
            self.db.query(Page)
            .filter(Page.slug == slug, Page.is_published.is_(True))
            .first()
        )

    def slug_taken(self, slug: str, exclude_page_id: Optional[str] = None) -> bool:
        """Whether any page other than *exclude_page_id* holds *slug*."""
        query = self.db.query(Page.id).filter(Page.slug == slug)
        if exclude_page_id is not None:
            query = query.filter(Page.id != exclude_page_id)
        return query.first() is not None

    def first_for_user(self, user_id: str) -> Optional[Page]:
        """Oldest page owned by an authenticated user."""
        return (
            self.db.query(Page)
            .filter((Page.user_id == user_id) | (Page.owner_token == user_id))
            .order_by(Page.created_at.asc(), Page.id.asc())
            .first()
        )

    def first_for_anonymous(self, anonymous_token: str) -> Optional[Page]:
        """The page held by an anonymous token, if it has not been claimed."""
        return (
            self.db.query(Page)
            .filter(Page.owner_token == anonymous_token, Page.user_id.is_(None))
            .order_by(Page.created_at.asc(), Page.id.asc())
            .first()
        )

    def current_revision(self, page_id: str) -> Optional[int]:
        return self.db.execute(
            select(Page.server_revision).where(Page.id == page_id)
        ).scalar_one_or_none()

    # -- Revision CAS ---------------------------------------------------------

    def cas_update(self, page_id: str, expected_revision: int, patch: Dict[str, Any]) -> CasResult:
        """Apply *patch* only if the row is still at *expected_revision*.

        The UPDATE carries ``WHERE server_revision = :expected`` and sets
        ``server_revision = server_revision + 1``, so the check and the write
        are one atomic statement on every backend. When the patch assigns a
        slug, the slug is cleared from any other row inside the same
        transaction; the whole transaction is rolled back if the CAS does not
        apply.

        The CAS is a commit point: the session is committed on success and
        rolled back otherwise.

        Raises:
            PageNotFoundError: the page does not exist.
            DatabaseError: the database rejected the statement.
        """
        unknown = set(patch) - PATCHABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not patchable: {sorted(unknown)}")

        values = dict(patch)
        values["server_revision"] = Page.server_revision + 1
        values["updated_at"] = func.now()

        slug = patch.get("slug")
        try:
            if slug:
                self.db.execute(
                    update(Page)
                    .where(Page.slug == slug, Page.id != page_id)
                    .values(slug=None, updated_at=func.now())
                    .execution_options(synchronize_session=False)
                )

            result = self.db.execute(
                update(Page)
                .where(Page.id == page_id, Page.server_revision == expected_revision)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                return self._rejected(page_id, expected_revision)

            self.db.commit()
        except IntegrityError:
            # A concurrent writer assigned the same slug between our release
            # and our assignment. Report it as a lost race.
            self.db.rollback()
            logger.warning(
                "Slug assignment raced with another writer",
                extra={"page_id": page_id, "slug": slug},
            )
            return self._rejected(page_id, expected_revision)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("Revision update failed", e) from e

        # The WHERE clause pins the revision this write produced; the reloaded
        # row may already carry a later writer's revision.
        page = self.get_by_id(page_id)
        return CasResult(applied=True, current_revision=expected_revision + 1, page=page)

    def _rejected(self, page_id: str, expected_revision: int) -> CasResult:
        current = self.current_revision(page_id)
        if current is None:
            raise PageNotFoundError(page_id)
        logger.info(
            "Revision CAS rejected",
            extra={"page_id": page_id, "expected_revision": expected_revision, "current_revision": current},
        )
        return CasResult(applied=False, current_revision=current)

    # -- Ownership claim -------------------------------------------------------

    def claim_anonymous(self, anonymous_token: str, user_id: str) -> List[str]:
        """Reassign every unpublished, unclaimed page held by *anonymous_token*.

        One UPDATE with the eligibility predicate in its WHERE clause; a
        second call with the same token matches nothing. Returns the ids of
        the pages now owned by *user_id*. The caller commits.
        """
        eligible = (
            Page.owner_token == anonymous_token,
            Page.is_published.is_(False),
            Page.user_id.is_(None),
        )
        candidate_ids = [row[0] for row in self.db.query(Page.id).filter(*eligible).all()]
        if not candidate_ids:
            return []

        self.db.execute(
            update(Page)
            .where(Page.id.in_(candidate_ids), *eligible)
            .values(owner_token=user_id, user_id=user_id, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        self.db.expire_all()

        # Rows a concurrent publish took out of eligibility were not updated.
        return [
            row[0]
            for row in self.db.query(Page.id)
            .filter(Page.id.in_(candidate_ids), Page.user_id == user_id)
            .all()
        ]

    # -- Stale anonymous drafts ------------------------------------------------

    @staticmethod
    def _stale_filter(max_age_minutes: int):
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        return (
            Page.owner_token.startswith(ANONYMOUS_TOKEN_PREFIX, autoescape=True),
            Page.is_published.is_(False),
            Page.user_id.is_(None),
            Page.updated_at < cutoff,
        )

    def count_stale_anonymous(self, max_age_minutes: int) -> int:
        return self.db.query(Page).filter(*self._stale_filter(max_age_minutes)).count()

    def delete_stale_anonymous(self, max_age_minutes: int) -> int:
        """Delete unclaimed, unpublished anonymous pages idle past the cutoff.

        Returns the number of rows deleted. The caller commits.
        """
        return (
            self.db.query(Page)
            .filter(*self._stale_filter(max_age_minutes))
            .delete(synchronize_session=False)
        )
