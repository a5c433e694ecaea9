"""Slug allocation: pure functions, no database access.

The allocator receives an ``exists`` callable instead of a session so it can
be exercised with any uniqueness behavior, including one that always
collides. It always returns a valid slug after a bounded number of checks.
"""

import logging
import random
import re
import string
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SLUG_MIN_LENGTH = 3
SLUG_MAX_LENGTH = 64
# Numeric suffixes tried after the base: -2 .. -MAX_NUMERIC_SUFFIX.
MAX_NUMERIC_SUFFIX = 100
RANDOM_SUFFIX_LENGTH = 6

_SLUG_PATTERN = re.compile(r"^[a-z0-9-]{1,64}$")
_ALPHABET = string.ascii_lowercase + string.digits

# Paths the public site serves itself; never handed out as page slugs.
RESERVED_SLUGS = frozenset({
    "admin", "api", "auth", "edit", "new", "p", "u", "user", "users",
    "page", "pages", "public", "private", "settings", "profile",
    "login", "logout", "signup", "register", "signin", "signout",
    "help", "support", "about", "terms", "privacy", "legal",
    "blog", "docs", "faq", "status", "health",
    "corner", "official", "team", "staff",
    "test", "demo", "example", "null", "undefined",
    "root", "system", "bot", "anonymous",
    "www", "mail", "cdn", "assets", "static",
})


@dataclass(frozen=True)
class SlugAllocation:
    """Allocated slug plus how it was found.

    ``attempts`` counts uniqueness checks performed. ``used_fallback`` is set
    when every numeric suffix collided and a random suffix was accepted
    without a check.
    """
    slug: str
    attempts: int
    used_fallback: bool = False


def is_valid_slug(slug: Optional[str]) -> bool:
    return bool(slug) and bool(_SLUG_PATTERN.match(slug))


def sanitize_slug(value: str) -> str:
    """Map arbitrary text onto the slug alphabet.

    Lowercases, replaces anything outside ``[a-z0-9]`` with ``-``, collapses
    runs of ``-``, trims them from both ends and truncates to the maximum
    length. May return an empty string.
    """
    result = re.sub(r"[^a-z0-9]", "-", value.lower())
    result = re.sub(r"-+", "-", result).strip("-")
    if len(result) > SLUG_MAX_LENGTH:
        result = result[:SLUG_MAX_LENGTH].rstrip("-")
    return result


def generate_base_slug(user_id: str) -> str:
    """Seed slug for a user: ``user-`` plus the first 8 characters of the id.

    Derived from the stable internal id only, never from the username or any
    other profile field.
    """
    return sanitize_slug(f"user-{user_id[:8].lower()}")


def random_suffix(length: int = RANDOM_SUFFIX_LENGTH, rng: Optional[random.Random] = None) -> str:
    chooser = rng or random
    return "".join(chooser.choice(_ALPHABET) for _ in range(length))


def with_suffix(base: str, suffix: str) -> str:
    """Join base and suffix, truncating the base so the suffix always fits whole."""
    room = SLUG_MAX_LENGTH - len(suffix) - 1
    trimmed = base[:room].rstrip("-")
    return f"{trimmed}-{suffix}" if trimmed else suffix


def allocate_slug(
    seed: str,
    exists: Callable[[str], bool],
    rng: Optional[random.Random] = None,
) -> SlugAllocation:
    """Allocate a unique slug derived from *seed*.

    Tries the sanitized base, then ``base-2`` .. ``base-100``, calling
    *exists* once per candidate. When all of those collide, a random
    6-character suffix is appended and accepted unconditionally.

    Args:
        seed: Deterministic seed, usually ``generate_base_slug(user_id)``.
        exists: Returns True when a candidate is already taken.
        rng: Random source for padding and the fallback (injectable for tests).
    """
    base = sanitize_slug(seed)
    if not base:
        base = "page-" + random_suffix(rng=rng)
    if len(base) < SLUG_MIN_LENGTH:
        base = base + random_suffix(SLUG_MIN_LENGTH - len(base) + 2, rng=rng)

    attempts = 0

    def available(candidate: str) -> bool:
        nonlocal attempts
        if candidate in RESERVED_SLUGS:
            return False
        attempts += 1
        return not exists(candidate)

    if available(base):
        return SlugAllocation(slug=base, attempts=attempts)

    for n in range(2, MAX_NUMERIC_SUFFIX + 1):
        candidate = with_suffix(base, str(n))
        if available(candidate):
            return SlugAllocation(slug=candidate, attempts=attempts)

    fallback = with_suffix(base, random_suffix(rng=rng))
    logger.warning(
        "Numeric slug suffixes exhausted, using random suffix",
        extra={"base_slug": base, "slug": fallback, "attempts": attempts},
    )
    return SlugAllocation(slug=fallback, attempts=attempts, used_fallback=True)
