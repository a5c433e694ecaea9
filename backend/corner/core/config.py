"""Application configuration with validation."""

from enum import Enum
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when application configuration is invalid for the environment."""
    pass


_INSECURE_JWT_DEFAULT = "dev-insecure-key-change-me"

# Environment variable names reported when storage is incomplete.
REQUIRED_STORAGE_ENV_VARS = (
    "S3_ENDPOINT",
    "S3_BUCKET",
    "S3_ACCESS_KEY_ID",
    "S3_SECRET_ACCESS_KEY",
    "S3_PUBLIC_BASE_URL",
)


class Settings(BaseSettings):
    """
    Application settings with validation.

    Every value the publish pipeline depends on (storage credentials, purge
    backends, quotas, size limits, cleanup policy) is declared here so the
    services receive it explicitly instead of reading the environment.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # CORS Configuration
    cors_allowed_origins: str = Field(
        default="http://localhost:3000",
        description="Allowed CORS origins (comma-separated)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./corner.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(default=5, description="Number of persistent database connections")
    db_max_overflow: int = Field(default=10, description="Extra connections allowed during traffic bursts")
    db_pool_timeout: int = Field(default=30, description="Seconds to wait for a pooled connection")
    db_pool_recycle: int = Field(default=1800, description="Seconds before a connection is recycled")
    # Upper bound for any single statement, including the revision CAS.
    db_statement_timeout_ms: int = Field(
        default=5000,
        description="Statement timeout (PostgreSQL) / busy timeout (SQLite) in milliseconds"
    )

    # Sessions
    # JWT_SECRET_KEY: signing key for session tokens. Override in production.
    jwt_secret_key: str = Field(
        default=_INSECURE_JWT_DEFAULT,
        description="JWT signing secret (override in production)"
    )
    jwt_algorithm: str = Field(default="HS256")
    session_expires_hours: int = Field(default=24 * 30, description="Lifetime of issued session tokens")

    # Object storage (any S3-compatible provider: R2, S3, B2, MinIO)
    s3_endpoint: str = Field(default="", description="S3 endpoint origin, e.g. https://<account>.r2.cloudflarestorage.com")
    s3_bucket: str = Field(default="", description="Bucket holding published artifacts")
    s3_access_key_id: str = Field(default="")
    s3_secret_access_key: str = Field(default="")
    s3_region: str = Field(default="auto")
    s3_public_base_url: str = Field(default="", description="Public base URL the bucket is served from")
    storage_timeout_seconds: float = Field(default=10.0, description="Timeout for a single storage call")
    # None = allowed in development only. Production must opt in explicitly.
    allow_degraded_publish: Optional[bool] = Field(
        default=None,
        description="Publish to the database alone when storage is not configured"
    )

    # CDN purge
    cloudflare_api_token: str = Field(default="")
    cloudflare_zone_id: str = Field(default="")
    cdn_purge_webhook_url: str = Field(default="")
    cdn_purge_webhook_secret: str = Field(default="")
    app_origins: str = Field(
        default="",
        description="Public origins serving /u/{slug} (comma-separated)"
    )
    purge_timeout_seconds: float = Field(default=5.0, description="Timeout for a single purge call")

    # Rate limiting
    rate_limit_provider: str = Field(default="memory", description="memory | upstash")
    upstash_redis_rest_url: str = Field(default="")
    upstash_redis_rest_token: str = Field(default="")
    rate_limit_timeout_seconds: float = Field(default=2.0)
    publish_rate_limit: int = Field(default=10)
    publish_rate_window_seconds: int = Field(default=60)
    # Charged by the asset upload service, not by any route here.
    upload_rate_limit: int = Field(default=20)
    upload_rate_window_seconds: int = Field(default=60)
    auth_rate_limit: int = Field(default=20)
    auth_rate_window_seconds: int = Field(default=15 * 60)
    save_rate_limit: int = Field(default=30)
    save_rate_window_seconds: int = Field(default=60)

    # Document limits
    max_blocks: int = Field(default=50, description="Maximum blocks per document")
    max_document_bytes: int = Field(default=500_000, description="Maximum serialized document size")
    max_artifact_bytes: int = Field(default=1_000_000, description="Maximum rendered HTML size")

    # Anonymous draft cleanup
    stale_anonymous_minutes: int = Field(default=60, description="Idle time before an unclaimed draft is deleted")
    cleanup_probability: float = Field(default=0.05, description="Chance a draft save triggers the sweep")
    cleanup_secret: str = Field(default="", description="Bearer secret for the cleanup endpoint")

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    def get_cors_origins(self) -> List[str]:
        """
        Get CORS origins as a list.

        Parses comma-separated string and validates no wildcards.
        """
        origins = [origin.strip() for origin in self.cors_allowed_origins.split(',') if origin.strip()]

        # SECURITY: Prevent wildcard CORS
        if "*" in origins:
            raise ValueError(
                "Wildcard CORS (*) not allowed. "
                "Specify explicit origins in CORS_ALLOWED_ORIGINS"
            )

        return origins

    def get_app_origins(self) -> List[str]:
        """Public origins whose /u/{slug} URLs are purged after a publish."""
        return [o.strip().rstrip('/') for o in self.app_origins.split(',') if o.strip()]

    def missing_storage_vars(self) -> List[str]:
        """Names of storage environment variables that are not set."""
        values = (
            self.s3_endpoint,
            self.s3_bucket,
            self.s3_access_key_id,
            self.s3_secret_access_key,
            self.s3_public_base_url,
        )
        return [name for name, value in zip(REQUIRED_STORAGE_ENV_VARS, values) if not value]

    def is_storage_configured(self) -> bool:
        return not self.missing_storage_vars()

    def is_purge_configured(self) -> bool:
        return bool(
            (self.cloudflare_api_token and self.cloudflare_zone_id)
            or self.cdn_purge_webhook_url
        )

    def degraded_publish_allowed(self) -> bool:
        """Whether a publish may commit without a stored artifact."""
        if self.allow_degraded_publish is not None:
            return self.allow_degraded_publish
        return self.environment == Environment.DEVELOPMENT

    def rate_multiplier(self) -> int:
        """Quotas are ten times more lenient in development."""
        return 1 if self.is_production else 10

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('rate_limit_provider')
    @classmethod
    def validate_rate_limit_provider(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ('memory', 'upstash'):
            raise ValueError("RATE_LIMIT_PROVIDER must be 'memory' or 'upstash'")
        return v_lower

    @field_validator('cleanup_probability')
    @classmethod
    def validate_cleanup_probability(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("CLEANUP_PROBABILITY must be between 0 and 1")
        return v

    @field_validator('s3_endpoint', 's3_public_base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip('/')

    def validate_public_base_url(self) -> Optional[str]:
        """Return an error message when S3_PUBLIC_BASE_URL is set but not http(s)."""
        if not self.s3_public_base_url:
            return None
        parsed = urlparse(self.s3_public_base_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return f"S3_PUBLIC_BASE_URL is not a valid http(s) URL: {self.s3_public_base_url}"
        return None

    def collect_config_problems(self) -> List[str]:
        """List every insecure or incomplete setting, without raising."""
        errors: list[str] = []

        if self.jwt_secret_key == _INSECURE_JWT_DEFAULT:
            errors.append(
                "JWT_SECRET_KEY is using the default insecure value. "
                "Generate a secure key: openssl rand -hex 32"
            )

        missing = self.missing_storage_vars()
        if missing and not self.degraded_publish_allowed():
            errors.append(
                "Storage not configured. Missing environment variables: "
                + ", ".join(missing)
            )

        url_error = self.validate_public_base_url()
        if url_error:
            errors.append(url_error)

        if self.rate_limit_provider == "upstash" and not (
            self.upstash_redis_rest_url and self.upstash_redis_rest_token
        ):
            errors.append(
                "RATE_LIMIT_PROVIDER=upstash but UPSTASH_REDIS_REST_URL / "
                "UPSTASH_REDIS_REST_TOKEN are not set."
            )

        return errors

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        In production, fails startup if security-critical or storage settings
        are missing. In development, main.py logs the same problems as warnings.

        Raises:
            ConfigurationError: If production config is insecure or incomplete.
        """
        errors = self.collect_config_problems()
        if errors and self.environment == Environment.PRODUCTION:
            raise ConfigurationError(
                "Production configuration is invalid:\n  - " + "\n  - ".join(errors)
            )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        # Allow reading from environment variables with different case
        case_sensitive = False


# Global settings instance
settings = Settings()
