"""Ownership claim: moves anonymous drafts to an authenticated user.

A page is eligible only while it still belongs to the presented anonymous
token, is unpublished and has no user. The eligibility check and the
reassignment are one UPDATE, so retried auth callbacks are harmless: the
second call finds nothing left to claim.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.auth import is_anonymous_token
from ..exceptions import DatabaseError, ValidationError
from ..repositories import PageRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    """``claimed == 0`` is a successful no-op, not an error."""
    claimed: int
    page_ids: List[str] = field(default_factory=list)


def claim_anonymous_pages(db: Session, anonymous_token: Optional[str], user_id: str) -> ClaimResult:
    """Assign every eligible page held by *anonymous_token* to *user_id*.

    Idempotent. Published pages and pages already owned by a user are never
    touched.

    Raises:
        ValidationError: *user_id* is empty.
        DatabaseError: the update failed; nothing was claimed.
    """
    if not user_id:
        raise ValidationError("user_id is required", field="user_id")
    if not is_anonymous_token(anonymous_token):
        return ClaimResult(claimed=0)

    try:
        page_ids = PageRepository(db).claim_anonymous(anonymous_token, user_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("Ownership claim failed", e) from e

    if page_ids:
        logger.info(
            f"Claimed {len(page_ids)} anonymous page(s)",
            extra={"user_id": user_id, "page_ids": page_ids},
        )
    return ClaimResult(claimed=len(page_ids), page_ids=page_ids)
