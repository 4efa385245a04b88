"""
Generator Service Configuration Module

Centralized configuration management with Pydantic validation.
All environment variables are validated at startup to catch misconfigurations early.
"""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class GeneratorSettings(BaseSettings):
    """
    PDF generator configuration with validation.

    All settings can be overridden via environment variables.
    Validation happens at startup to fail fast on misconfiguration.
    """

    # === Environment & Security ===
    environment: str = Field(
        default="development",
        description="Environment: development, staging, production"
    )
    api_secret: Optional[str] = Field(
        default=None,
        min_length=16,
        description="Bearer secret for admin endpoints (min 16 chars)"
    )
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    # === Render pages ===
    domain: str = Field(
        default="http://localhost:3000",
        description="Base URL of the CRM front-end that serves the PDF views"
    )

    # === Redis / Queue ===
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL backing the job queue"
    )
    queue_name: str = Field(
        default="pdf-generation",
        min_length=1,
        description="Queue name, used as the Redis key namespace"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Job-level attempts before a job is terminally failed"
    )
    backoff_base_ms: int = Field(
        default=3000,
        ge=0,
        description="Base delay for job retries: base * 2^(attempt-1)"
    )
    completed_retention_seconds: int = Field(
        default=60 * 60 * 24 * 2,
        ge=0,
        description="How long completed jobs are kept (0 = forever)"
    )
    failed_retention_seconds: Optional[int] = Field(
        default=None,
        ge=1,
        description="How long failed jobs are kept (unset = forever)"
    )
    limiter_max: int = Field(
        default=10,
        ge=1,
        description="Max job activations per limiter window"
    )
    limiter_duration_ms: int = Field(
        default=1000,
        ge=1,
        description="Limiter window length in milliseconds"
    )
    lock_duration_ms: int = Field(
        default=180000,
        ge=1000,
        description="Job lock duration; an expired lock marks the job stalled"
    )
    stalled_check_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How often the worker looks for stalled jobs"
    )
    worker_idle_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Worker sleep between polls when the queue is empty"
    )

    # === Submission API ===
    admission_ceiling: int = Field(
        default=50,
        ge=1,
        description="Outstanding jobs at which new submissions are rejected (count >= ceiling)"
    )
    admission_retry_after_seconds: int = Field(
        default=30,
        ge=1,
        description="Retry-After hint returned with 429 responses"
    )
    wait_poll_interval_seconds: float = Field(
        default=1.5,
        gt=0,
        description="Fallback poll interval for enqueue-and-wait requests"
    )
    wait_timeout_seconds: float = Field(
        default=240.0,
        gt=0,
        description="Max time an enqueue-and-wait request waits for a result"
    )

    # === Object storage (S3) ===
    storage_category: str = Field(
        default="crm-pdf",
        min_length=1,
        description="Top-level key prefix for stored PDFs"
    )
    s3_bucket: Optional[str] = Field(default=None, description="Target S3 bucket")
    aws_region: str = Field(default="us-east-1", description="AWS region of the bucket")
    aws_access_key_id: Optional[str] = Field(default=None, description="AWS access key")
    aws_secret_access_key: Optional[str] = Field(default=None, description="AWS secret key")
    cdn_url: Optional[str] = Field(
        default=None,
        description="CDN host fronting the bucket (e.g. d123.cloudfront.net)"
    )
    s3_object_acl: str = Field(
        default="public-read",
        description="Canned ACL for uploaded PDFs ('' disables)"
    )
    multipart_threshold_bytes: int = Field(
        default=5 * MB,
        ge=5 * MB,
        description="Payloads above this size use multipart upload"
    )
    multipart_concurrency: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Parallel part uploads for multipart uploads"
    )
    upload_retries: int = Field(default=3, ge=1, le=10, description="Upload attempts")
    upload_retry_base_ms: int = Field(
        default=1500,
        ge=0,
        description="Base delay between upload attempts: base * 2^(attempt-1)"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is a known value."""
        allowed = {"development", "staging", "production"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of: {', '.join(sorted(allowed))}")
        return v_lower

    @field_validator("api_secret")
    @classmethod
    def validate_secret_strength(cls, v: Optional[str]) -> Optional[str]:
        """Reject obviously weak secrets."""
        if v is None:
            return None
        weak_secrets = {"secret", "password", "changeme"}
        if v.lower() in weak_secrets or len(set(v)) < 4:
            raise ValueError("API secret is too weak - use a secure random string")
        return v

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Render pages must be reachable over HTTP(S)."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL format: {v}")
        return v.rstrip("/")

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Basic Redis URL format validation."""
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(f"Invalid Redis URL format: {v}")
        return v

    @field_validator("cdn_url")
    @classmethod
    def strip_cdn_scheme(cls, v: Optional[str]) -> Optional[str]:
        """CDN_URL is a bare host; tolerate a scheme or trailing slash."""
        if not v:
            return None
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        return v.rstrip("/")

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def auth_required(self) -> bool:
        """Admin endpoints require auth in production or when a secret is set."""
        return self.is_production or self.api_secret is not None

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration is suitable for production.

        Returns list of warning/error messages.
        """
        issues = []

        if self.is_production:
            if not self.s3_bucket:
                issues.append("CRITICAL: S3_BUCKET required in production")
            if not self.api_secret:
                issues.append("WARNING: API_SECRET not configured, admin endpoints are closed")
            if "localhost" in self.redis_url:
                issues.append("WARNING: Using localhost Redis in production")
            if "localhost" in self.domain:
                issues.append("WARNING: DOMAIN points at localhost in production")

        return issues

    class Config:
        env_prefix = ""  # No prefix, use exact env var names
        case_sensitive = False  # REDIS_URL = redis_url
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> GeneratorSettings:
    """
    Get cached settings instance.

    Settings are loaded once and cached for performance.
    """
    return GeneratorSettings()


def validate_config_on_startup(settings: Optional[GeneratorSettings] = None) -> GeneratorSettings:
    """
    Validate configuration at application startup.

    Raises ValueError with details if config is invalid.
    Logs warnings for non-critical issues.
    """
    if settings is None:
        try:
            settings = get_settings()
        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}")

    for issue in settings.validate_production_config():
        if issue.startswith("CRITICAL"):
            raise ValueError(issue)
        logger.warning(issue)

    # Log loaded configuration (redact secrets)
    logger.info(f"Configuration loaded: environment={settings.environment}")
    logger.info(f"  queue={settings.queue_name} max_attempts={settings.max_attempts} "
                f"backoff_base={settings.backoff_base_ms}ms")
    logger.info(f"  limiter={settings.limiter_max}/{settings.limiter_duration_ms}ms "
                f"admission_ceiling={settings.admission_ceiling}")
    logger.info(f"  redis_url={'*****' if '@' in settings.redis_url else settings.redis_url}")
    logger.info(f"  s3_bucket={settings.s3_bucket} cdn_url={settings.cdn_url}")
    logger.info(f"  auth_required={settings.auth_required}")

    return settings
