"""Login completion: runs once an external identity has been verified.

The credential exchange itself happens elsewhere; this module upserts the
user, claims the caller's anonymous drafts and issues a session token.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.token_factory import create_token
from ..exceptions import ValidationError
from ..models.user import User
from ..repositories import UserRepository
from .claim_service import ClaimResult, claim_anonymous_pages

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginResult:
    user: User
    token: str
    claim: ClaimResult
    is_new_user: bool


def complete_login(
    db: Session,
    auth_subject: str,
    anonymous_token: Optional[str] = None,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> LoginResult:
    """Upsert the user for *auth_subject*, claim drafts, issue a token."""
    auth_subject = auth_subject.strip()
    if not auth_subject:
        raise ValidationError("Identity subject required", field="subject")
    if email is not None:
        email = email.strip().lower() or None

    user, is_new = UserRepository(db).get_or_create_by_subject(auth_subject, email, display_name)
    db.commit()

    claim = claim_anonymous_pages(db, anonymous_token, user.id)
    token = create_token(
        user.id,
        settings.jwt_secret_key,
        settings.jwt_algorithm,
        expires_hours=settings.session_expires_hours,
    )
    logger.info(
        "Login completed",
        extra={"user_id": user.id, "new_user": is_new, "claimed": claim.claimed},
    )
    return LoginResult(user=user, token=token, claim=claim, is_new_user=is_new)
