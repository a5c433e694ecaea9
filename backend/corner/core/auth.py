"""Caller identity: FastAPI dependencies resolving who is making a request.

Public interface:
    ``get_caller``: always returns a CallerIdentity, never raises. The
                  identity carries the authenticated user id (from a
                  bearer session token), the anonymous draft token
                  (from a header or cookie) and the client IP.
    ``require_user``: returns a CallerIdentity, raises 401 when the
                  caller is not authenticated.

Services never read the request: routes resolve the identity here and pass
it down explicitly.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import settings
from .token_factory import decode_token
from ..database import get_db
from ..exceptions import AuthenticationError
from ..models.page import ANONYMOUS_TOKEN_PREFIX

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

ANONYMOUS_COOKIE_NAME = "draft_owner_token"
ANONYMOUS_HEADER_NAME = "X-Draft-Owner-Token"
# Cookie lifetime; cleanup removes the page long before this anyway.
ANONYMOUS_COOKIE_MAX_AGE = 7 * 24 * 3600

_ANONYMOUS_TOKEN_RE = re.compile(r"^anon_[A-Za-z0-9-]{8,64}$")


@dataclass(frozen=True)
class CallerIdentity:
    """Everything the services need to know about the caller."""

    user_id: Optional[str] = None
    anonymous_token: Optional[str] = None
    client_ip: str = "unknown"

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def owner_token(self) -> Optional[str]:
        """Value written to ``Page.owner_token`` for pages this caller creates."""
        return self.user_id or self.anonymous_token

    @property
    def rate_limit_key(self) -> str:
        """Network origin plus authenticated-or-anonymous id."""
        return f"{self.client_ip}:{self.user_id or 'anon'}"


def issue_anonymous_token() -> str:
    return f"{ANONYMOUS_TOKEN_PREFIX}{uuid.uuid4()}"


def is_anonymous_token(value: Optional[str]) -> bool:
    return bool(value) and bool(_ANONYMOUS_TOKEN_RE.match(value))


def client_ip(request: Request) -> str:
    """Derive the caller's network origin.

    Uses the ``X-Forwarded-For`` header when behind a proxy, otherwise the
    direct client IP.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _anonymous_token_from(request: Request) -> Optional[str]:
    token = request.headers.get(ANONYMOUS_HEADER_NAME) or request.cookies.get(ANONYMOUS_COOKIE_NAME)
    if token and not is_anonymous_token(token):
        logger.debug("Ignoring malformed anonymous token")
        return None
    return token or None


def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    db: Session = Depends(get_db),
) -> CallerIdentity:
    """Resolve the caller. An invalid or expired session token degrades to
    an anonymous caller rather than failing the request."""
    user_id = None
    if credentials is not None:
        payload = decode_token(
            credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm
        )
        if payload is not None:
            user_id = _load_user_id(payload.sub, db)

    return CallerIdentity(
        user_id=user_id,
        anonymous_token=_anonymous_token_from(request),
        client_ip=client_ip(request),
    )


def require_user(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
    """Require an authenticated caller. Raises 401 otherwise."""
    if not caller.is_authenticated:
        raise AuthenticationError("Missing or invalid session token")
    return caller


def _load_user_id(subject: str, db: Session) -> Optional[str]:
    from ..models.user import User

    user = db.query(User).filter(User.id == subject).first()
    if user is None:
        logger.info("Session token refers to an unknown user", extra={"user_id": subject})
        return None
    return user.id
