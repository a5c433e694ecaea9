"""Session tokens: HS256 JWTs carrying the internal user id as ``sub``.

Issued by the login flow after the external identity has been verified and
read back by the ``get_caller`` dependency.
"""

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

_ISSUER = "corner"
_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class TokenPayload:
    sub: str
    exp: datetime


def create_token(user_id: str, secret: str, algorithm: str = "HS256", expires_hours: int = 24) -> str:
    """Sign a session token for *user_id* valid for *expires_hours*."""
    if algorithm != "HS256":
        raise ValueError(f"Unsupported algorithm: {algorithm}")
    issued = int(time.time())
    claims = {"sub": user_id, "iat": issued, "exp": issued + expires_hours * 3600, "iss": _ISSUER}
    signing_input = _b64encode(json.dumps(_HEADER).encode()) + b"." + _b64encode(json.dumps(claims).encode())
    return (signing_input + b"." + _b64encode(_sign(signing_input, secret))).decode()


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Optional[TokenPayload]:
    """Return the payload of a valid token, or ``None`` for anything else.

    Rejects bad signatures, foreign issuers, expired tokens and tokens
    without a subject.
    """
    if algorithm != "HS256":
        return None
    try:
        header, claims, signature = token.encode().split(b".")
        if not hmac.compare_digest(_sign(header + b"." + claims, secret), _b64decode(signature)):
            return None
        payload = json.loads(_b64decode(claims))
    except (ValueError, TypeError):
        return None

    if not isinstance(payload, dict) or payload.get("iss") != _ISSUER:
        return None
    exp, sub = payload.get("exp"), payload.get("sub")
    if not isinstance(exp, (int, float)) or exp < time.time() or not sub:
        return None
    return TokenPayload(sub=str(sub), exp=datetime.fromtimestamp(exp, tz=timezone.utc))


def _sign(signing_input: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()


def _b64encode(data: bytes) -> bytes:
    return base64.urlsafe_b64encode(data).rstrip(b"=")


def _b64decode(data: bytes) -> bytes:
    return base64.urlsafe_b64decode(data + b"=" * (-len(data) % 4))
