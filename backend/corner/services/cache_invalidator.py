"""Cache invalidator: best-effort CDN purge after a publish.

Supports Cloudflare zone purges (preferred) and a generic webhook. Nothing
in this module raises to its caller: every failure, partial failure or
missing configuration is reported through ``PurgeResult``.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from .artifact_publisher import artifact_key

logger = logging.getLogger(__name__)

CLOUDFLARE_PURGE_URL = "https://api.cloudflare.com/client/v4/zones/{zone_id}/purge_cache"

MISSING_ORIGINS_WARNING = (
    "APP_ORIGINS not set in production. User-facing URLs will not be purged. "
    "Set APP_ORIGINS to a comma-separated list of origins."
)
NOT_CONFIGURED_WARNING = (
    "No CDN purge configured. Cached copies may be stale for up to 5 minutes."
)


@dataclass
class PurgeResult:
    success: bool
    message: str
    purged_urls: List[str] = field(default_factory=list)
    skipped_urls: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def warning_messages(self) -> List[str]:
        """Everything the caller should surface as a warning."""
        messages = list(self.warnings)
        if not self.success:
            messages.append(f"Cache purge failed: {self.message}")
        return messages


def split_urls(urls: List[str]) -> tuple[List[str], List[str]]:
    """Separate absolute http(s) URLs from everything else."""
    valid: List[str] = []
    invalid: List[str] = []
    for url in urls:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            valid.append(url)
        else:
            invalid.append(url)
    return valid, invalid


class CacheInvalidator:
    """Purges the URLs a slug is reachable at.

    ``submit`` runs the purge on a small worker pool so the publish path can
    wait for it with a bounded timeout, or not at all.
    """

    def __init__(
        self,
        cloudflare_api_token: str = "",
        cloudflare_zone_id: str = "",
        webhook_url: str = "",
        webhook_secret: str = "",
        public_base_url: str = "",
        app_origins: Optional[List[str]] = None,
        production: bool = False,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
        max_workers: int = 2,
    ):
        self.cloudflare_api_token = cloudflare_api_token
        self.cloudflare_zone_id = cloudflare_zone_id
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.public_base_url = public_base_url.rstrip("/")
        self.app_origins = [o.rstrip("/") for o in (app_origins or [])]
        self.production = production
        self.timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cache-purge")

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None) -> "CacheInvalidator":
        return cls(
            cloudflare_api_token=settings.cloudflare_api_token,
            cloudflare_zone_id=settings.cloudflare_zone_id,
            webhook_url=settings.cdn_purge_webhook_url,
            webhook_secret=settings.cdn_purge_webhook_secret,
            public_base_url=settings.s3_public_base_url,
            app_origins=settings.get_app_origins(),
            production=settings.is_production,
            timeout=settings.purge_timeout_seconds,
            transport=transport,
        )

    @property
    def cloudflare_configured(self) -> bool:
        return bool(self.cloudflare_api_token and self.cloudflare_zone_id)

    @property
    def is_configured(self) -> bool:
        return self.cloudflare_configured or bool(self.webhook_url)

    def page_urls(self, slug: str) -> List[str]:
        """Storage artifact URL plus ``{origin}/u/{slug}`` for every origin."""
        urls: List[str] = []
        if self.public_base_url:
            urls.append(f"{self.public_base_url}/{artifact_key(slug)}")
        urls.extend(f"{origin}/u/{slug}" for origin in self.app_origins)
        return urls

    def purge_page(self, slug: str) -> PurgeResult:
        warnings: List[str] = []
        if not self.app_origins and self.is_configured and self.production:
            logger.warning(MISSING_ORIGINS_WARNING)
            warnings.append(MISSING_ORIGINS_WARNING)

        result = self.purge_urls(self.page_urls(slug))
        result.warnings = warnings + result.warnings
        return result

    def purge_urls(self, urls: List[str]) -> PurgeResult:
        """Purge *urls* through the first configured backend. Never raises."""
        if not urls:
            return PurgeResult(success=True, message="No URLs to purge")

        if self.cloudflare_configured:
            return self._purge(
                "cloudflare",
                CLOUDFLARE_PURGE_URL.format(zone_id=self.cloudflare_zone_id),
                urls,
                payload_key="files",
                authorization=f"Bearer {self.cloudflare_api_token}",
            )
        if self.webhook_url:
            return self._purge(
                "webhook",
                self.webhook_url,
                urls,
                payload_key="urls",
                authorization=self.webhook_secret,
            )

        warnings = [NOT_CONFIGURED_WARNING] if self.production else []
        if self.production:
            logger.warning(NOT_CONFIGURED_WARNING)
        return PurgeResult(
            success=True,
            message="No CDN configured, skipped purge",
            skipped_urls=list(urls),
            warnings=warnings,
        )

    def _purge(
        self,
        backend: str,
        endpoint: str,
        urls: List[str],
        payload_key: str,
        authorization: str,
    ) -> PurgeResult:
        valid, invalid = split_urls(urls)
        if invalid:
            logger.warning("Skipping invalid purge URLs", extra={"skipped_urls": invalid})
        if not valid:
            return PurgeResult(success=True, message="No valid URLs to purge", skipped_urls=invalid)

        headers = {"Content-Type": "application/json"}
        if authorization:
            headers["Authorization"] = authorization

        try:
            response = self._client.post(endpoint, json={payload_key: valid}, headers=headers)
        except httpx.TimeoutException:
            logger.warning("Cache purge timed out", extra={"backend": backend, "timeout": self.timeout})
            return PurgeResult(
                success=False,
                message=f"{backend} purge timed out after {self.timeout}s",
                skipped_urls=list(urls),
            )
        except httpx.HTTPError as e:
            logger.warning("Cache purge request failed", extra={"backend": backend, "error": str(e)})
            return PurgeResult(success=False, message=str(e), skipped_urls=list(urls))

        failure = self._failure_message(backend, response)
        if failure:
            logger.warning(
                "Cache purge rejected",
                extra={"backend": backend, "status_code": response.status_code, "error": failure},
            )
            return PurgeResult(success=False, message=failure, skipped_urls=list(urls))

        logger.info("Cache purged", extra={"backend": backend, "purged": len(valid)})
        return PurgeResult(
            success=True,
            message=f"Purged {len(valid)} URLs",
            purged_urls=valid,
            skipped_urls=invalid,
        )

    @staticmethod
    def _failure_message(backend: str, response: httpx.Response) -> Optional[str]:
        if backend != "cloudflare":
            if response.is_success:
                return None
            return f"Webhook failed: {response.status_code} {response.text[:200]}"

        try:
            data = response.json()
        except ValueError:
            return f"Invalid response from Cloudflare: {response.status_code}"
        if not isinstance(data, dict) or not data.get("success"):
            errors = data.get("errors") if isinstance(data, dict) else None
            details = "; ".join(
                f"{e.get('code')}: {e.get('message')}" for e in errors or [] if isinstance(e, dict)
            )
            return f"Cloudflare purge failed: {details or 'Unknown error'}"
        return None

    # -- Background execution -------------------------------------------------

    def submit(self, slug: str) -> "Future[PurgeResult]":
        """Run ``purge_page`` on the worker pool."""
        return self._executor.submit(self.purge_page, slug)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
        self._client.close()
