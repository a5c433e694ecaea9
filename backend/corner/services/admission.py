"""Admission controller: fixed-window rate limiting per operation and caller.

Counting lives behind a ``CounterStore`` so the controller runs against an
in-process store (single instance) or Upstash Redis over REST (many
instances) with the same contract. When the shared store is unreachable
the controller fails open.

``fixed_window_increment`` is a pure function that can be tested
independently with an injected ``now``.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import httpx

from ..exceptions import RateLimitedError

logger = logging.getLogger(__name__)

OP_PUBLISH = "publish"
# Quota for the asset upload service that shares this counter store. No
# route in this service charges it.
OP_UPLOAD = "upload"
OP_AUTH = "auth"
OP_SAVE = "save"

UPSTASH_KEY_PREFIX = "ratelimit:"


class CounterStoreError(Exception):
    """The counter backend could not be reached or answered nonsense."""
    pass


class CounterStore(Protocol):
    def increment(self, key: str, window_seconds: int) -> tuple[int, int]:
        """Count one hit for *key*. Returns (count in window, seconds until reset)."""
        ...

    def reset(self) -> None:
        ...


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------

# Window state: {key: (count, window_resets_at)}
WindowEntries = Dict[str, tuple[int, float]]

_EVICT_EVERY = 100       # sweep expired windows every N increments


def fixed_window_increment(
    entries: WindowEntries,
    key: str,
    window_seconds: int,
    now: float,
) -> tuple[int, int]:
    """Count a hit for *key* in its current fixed window.

    Args:
        entries: Mutable dict holding per-key windows. Modified in place.
        key: Counter key (operation plus caller identity).
        window_seconds: Window length.
        now: Current timestamp.

    Returns:
        ``(count, ttl)``: the hit count in the current window, including
        this one, and whole seconds until the window resets.
    """
    count, resets_at = entries.get(key, (0, 0.0))
    if resets_at <= now:
        count, resets_at = 0, now + window_seconds
    count += 1
    entries[key] = (count, resets_at)
    ttl = max(1, int(resets_at - now + 0.999))
    return count, ttl


class MemoryCounterStore:
    """Fixed-window counters in process memory; windows expire lazily.

    Only correct for a single instance. Pass ``clock`` to control time in tests.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._entries: WindowEntries = {}
        self._lock = threading.Lock()
        self._calls = 0

    def increment(self, key: str, window_seconds: int) -> tuple[int, int]:
        with self._lock:
            now = self._clock()
            self._calls += 1
            if self._calls % _EVICT_EVERY == 0:
                self._evict(now)
            return fixed_window_increment(self._entries, key, window_seconds, now)

    def _evict(self, now: float) -> None:
        expired = [k for k, (_, resets_at) in self._entries.items() if resets_at <= now]
        for k in expired:
            del self._entries[k]

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
            self._calls = 0

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Upstash Redis (REST) backend
# ---------------------------------------------------------------------------

class UpstashCounterStore:
    """Shared counters in Upstash Redis using INCR / EXPIRE / TTL over REST."""

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {token}"},
        )

    def _command(self, *args: str):
        try:
            response = self._client.post(self.url, json=list(args))
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CounterStoreError(f"upstash {args[0]} failed: {e}") from e
        if not isinstance(data, dict) or data.get("error"):
            raise CounterStoreError(f"upstash {args[0]} failed: {data}")
        return data.get("result")

    def increment(self, key: str, window_seconds: int) -> tuple[int, int]:
        full_key = UPSTASH_KEY_PREFIX + key
        count = int(self._command("INCR", full_key) or 1)
        if count == 1:
            self._command("EXPIRE", full_key, str(window_seconds))
        ttl = self._command("TTL", full_key)
        ttl = int(ttl) if ttl is not None else window_seconds
        # -1: key without expiry (EXPIRE lost), -2: key vanished.
        if ttl < 0:
            self._command("EXPIRE", full_key, str(window_seconds))
            ttl = window_seconds
        return count, ttl

    def reset(self) -> None:
        """Counters expire on their own in Redis; nothing is held locally."""
        return None

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Quota:
    operation: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_seconds)
        return headers


def build_quotas(settings) -> Dict[str, Quota]:
    """Per-operation quotas; development is ten times more lenient."""
    m = settings.rate_multiplier()
    return {
        OP_PUBLISH: Quota(OP_PUBLISH, settings.publish_rate_limit * m, settings.publish_rate_window_seconds),
        OP_UPLOAD: Quota(OP_UPLOAD, settings.upload_rate_limit * m, settings.upload_rate_window_seconds),
        OP_AUTH: Quota(OP_AUTH, settings.auth_rate_limit * m, settings.auth_rate_window_seconds),
        OP_SAVE: Quota(OP_SAVE, settings.save_rate_limit * m, settings.save_rate_window_seconds),
    }


def build_counter_store(settings, transport: Optional[httpx.BaseTransport] = None) -> CounterStore:
    if settings.rate_limit_provider == "upstash":
        if settings.upstash_redis_rest_url and settings.upstash_redis_rest_token:
            return UpstashCounterStore(
                settings.upstash_redis_rest_url,
                settings.upstash_redis_rest_token,
                timeout=settings.rate_limit_timeout_seconds,
                transport=transport,
            )
        logger.warning("RATE_LIMIT_PROVIDER=upstash but Upstash is not configured, using memory")
    return MemoryCounterStore()


class AdmissionController:
    """Gates operations under per-operation fixed-window quotas."""

    def __init__(self, store: CounterStore, quotas: Dict[str, Quota]):
        self.store = store
        self.quotas = quotas

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None) -> "AdmissionController":
        return cls(build_counter_store(settings, transport=transport), build_quotas(settings))

    def check(self, operation: str, identity: str) -> AdmissionDecision:
        """Count one attempt of *operation* by *identity* and decide.

        Fails open when the counter store raises.
        """
        quota = self.quotas[operation]
        if quota.limit <= 0:
            return AdmissionDecision(True, quota.limit, 0, quota.window_seconds)

        try:
            count, ttl = self.store.increment(f"{operation}:{identity}", quota.window_seconds)
        except Exception as e:
            logger.warning(
                "Rate limit backend error, allowing request",
                extra={"operation": operation, "error": str(e)},
            )
            return AdmissionDecision(True, quota.limit, quota.limit, quota.window_seconds)

        reset = ttl if ttl > 0 else quota.window_seconds
        if count > quota.limit:
            return AdmissionDecision(False, quota.limit, 0, reset)
        return AdmissionDecision(True, quota.limit, quota.limit - count, reset)

    def enforce(self, operation: str, identity: str) -> AdmissionDecision:
        """Like ``check`` but raises RateLimitedError when the quota is spent."""
        decision = self.check(operation, identity)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"operation": operation, "identity": identity, "retry_after": decision.reset_seconds},
            )
            raise RateLimitedError(operation, decision.reset_seconds, decision.limit)
        return decision

    def reset(self) -> None:
        self.store.reset()
