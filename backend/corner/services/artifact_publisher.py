"""Artifact publisher: writes rendered pages to object storage.

An artifact lives at ``pages/{slug}/index.html``. Publishing the same slug
again overwrites it. The publish orchestrator calls ``publish`` before the
revision CAS and never commits when it raises.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from .slug_allocator import is_valid_slug

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
# Long TTL when purges keep caches fresh; short TTL bounds staleness otherwise.
CACHE_CONTROL_WITH_PURGE = "public, max-age=3600"
CACHE_CONTROL_WITHOUT_PURGE = "public, max-age=300"


def artifact_key(slug: str) -> str:
    return f"pages/{slug}/index.html"


class StorageUploadError(Exception):
    """An object store write did not complete (network, credentials, size)."""
    pass


class ObjectStore(Protocol):
    """Minimal object storage contract: idempotent overwrite by key."""

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        """Store *data* under *key*. Returns the ETag when the backend reports one.

        Raises:
            StorageUploadError: the write failed or timed out.
        """
        ...


@dataclass
class StoredObject:
    data: bytes
    content_type: str
    cache_control: str
    metadata: Dict[str, str] = field(default_factory=dict)


class MemoryObjectStore:
    """In-process object store for single-instance development and tests."""

    def __init__(self):
        self.objects: Dict[str, StoredObject] = {}
        self._lock = threading.Lock()

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        with self._lock:
            self.objects[key] = StoredObject(data, content_type, cache_control, dict(metadata or {}))
        return None

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            stored = self.objects.get(key)
        return stored.data if stored else None

    def clear(self) -> None:
        with self._lock:
            self.objects.clear()


class S3ObjectStore:
    """S3-compatible object store (R2, S3, B2, MinIO) through boto3.

    Every call is bounded by ``timeout`` seconds and is not retried; a
    timeout surfaces as StorageUploadError exactly like any other failure.
    Pass ``client`` to use a preconfigured or stubbed boto3 S3 client.
    """

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        access_key_id: str,
        secret_access_key: str,
        region: str = "auto",
        timeout: float = 10.0,
        client=None,
    ):
        self.endpoint = endpoint
        self.bucket = bucket
        self.region = region or "auto"
        self.timeout = timeout
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=self.region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 1},
                s3={"addressing_style": "path"},
            ),
        )

    @classmethod
    def from_settings(cls, settings) -> "S3ObjectStore":
        return cls(
            endpoint=settings.s3_endpoint,
            bucket=settings.s3_bucket,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            region=settings.s3_region,
            timeout=settings.storage_timeout_seconds,
        )

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Optional[str]:
        try:
            response = self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl=cache_control,
                Metadata=dict(metadata or {}),
            )
        except (ReadTimeoutError, ConnectTimeoutError) as e:
            raise StorageUploadError(f"Storage upload timed out after {self.timeout}s") from e
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = e.response.get("Error", {}).get("Code", "Unknown")
            raise StorageUploadError(f"Storage upload failed: {status} {code}") from e
        except BotoCoreError as e:
            raise StorageUploadError(f"Storage upload failed: {e}") from e
        return response.get("ETag")

    def close(self) -> None:
        self._client.close()


@dataclass(frozen=True)
class ArtifactResult:
    key: str
    public_url: str
    etag: Optional[str] = None


class ArtifactPublisher:
    """Uploads rendered HTML for a slug and reports where it can be fetched."""

    def __init__(
        self,
        store: Optional[ObjectStore],
        public_base_url: str = "",
        purge_configured: bool = False,
        max_bytes: int = 1_000_000,
    ):
        self.store = store
        self.public_base_url = public_base_url.rstrip("/")
        self.purge_configured = purge_configured
        self.max_bytes = max_bytes

    @classmethod
    def from_settings(cls, settings) -> "ArtifactPublisher":
        """Build the publisher; storage stays unset unless fully configured."""
        store = None
        if settings.is_storage_configured():
            store = S3ObjectStore.from_settings(settings)
        return cls(
            store=store,
            public_base_url=settings.s3_public_base_url,
            purge_configured=settings.is_purge_configured(),
            max_bytes=settings.max_artifact_bytes,
        )

    @property
    def is_configured(self) -> bool:
        return self.store is not None

    @property
    def cache_control(self) -> str:
        return CACHE_CONTROL_WITH_PURGE if self.purge_configured else CACHE_CONTROL_WITHOUT_PURGE

    def public_url(self, slug: str) -> str:
        return f"{self.public_base_url}/{artifact_key(slug)}"

    def publish(self, slug: str, body: str) -> ArtifactResult:
        """Store *body* as the artifact for *slug*, overwriting any previous one.

        Raises:
            ValueError: *slug* is not a valid slug.
            StorageUploadError: storage is unconfigured, the body is too
                large, or the upload failed.
        """
        if not is_valid_slug(slug):
            raise ValueError(f"Invalid slug: {slug}")
        if self.store is None:
            raise StorageUploadError("Storage is not configured")

        data = body.encode("utf-8")
        if len(data) > self.max_bytes:
            raise StorageUploadError(
                f"Artifact is {len(data)} bytes, limit is {self.max_bytes}"
            )

        key = artifact_key(slug)
        etag = self.store.put(
            key,
            data,
            HTML_CONTENT_TYPE,
            self.cache_control,
            {"published-at": datetime.now(timezone.utc).isoformat()},
        )
        logger.info(
            "Artifact uploaded",
            extra={"slug": slug, "storage_key": key, "html_size": len(data)},
        )
        return ArtifactResult(key=key, public_url=self.public_url(slug), etag=etag)
