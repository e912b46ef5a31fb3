import os
import json
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024


class Settings:
    """Application settings"""
    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "Chunked Upload Service")
        self.app_version: str = os.getenv("APP_VERSION", "1.0.0")
        self.debug: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))

        # API settings
        self.api_v1_prefix: str = os.getenv("API_V1_PREFIX", "/v1")

        # Logging settings
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Development settings
        cors_origins_str = os.getenv("CORS_ORIGINS", '["http://localhost:3000", "http://localhost:8080"]')
        try:
            self.cors_origins = json.loads(cors_origins_str) if cors_origins_str.startswith('[') else ["*"]
        except (json.JSONDecodeError, ValueError):
            self.cors_origins = ["*"]

        # Storage backend settings
        self.storage_backend: str = os.getenv("STORAGE_BACKEND", "s3").lower()
        self.s3_bucket: str = os.getenv("S3_BUCKET", "")
        self.s3_region: str = os.getenv("S3_REGION", "us-east-1")
        self.s3_access_key: Optional[str] = os.getenv("S3_ACCESS_KEY") or None
        self.s3_secret_key: Optional[str] = os.getenv("S3_SECRET_KEY") or None
        self.s3_endpoint_url: Optional[str] = os.getenv("S3_ENDPOINT_URL") or None
        self.s3_key_prefix: str = os.getenv("S3_KEY_PREFIX", "")

        # Upload engine settings
        self.max_concurrent_uploads: int = int(os.getenv("MAX_CONCURRENT_UPLOADS", "3"))
        self.retry_attempts: int = int(os.getenv("RETRY_ATTEMPTS", "3"))
        self.retry_base_delay_seconds: float = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0"))
        self.max_retry_delay_seconds: float = float(os.getenv("MAX_RETRY_DELAY_SECONDS", "30.0"))
        self.part_timeout_seconds: float = float(os.getenv("PART_TIMEOUT_SECONDS", "300"))
        self.progress_interval_seconds: float = float(os.getenv("PROGRESS_INTERVAL_SECONDS", "1.0"))
        self.checksum_defer_threshold_bytes: int = int(
            os.getenv("CHECKSUM_DEFER_THRESHOLD_BYTES", str(1024 * 1024 * 1024))
        )
        self.validation_download_threshold_bytes: int = int(
            os.getenv("VALIDATION_DOWNLOAD_THRESHOLD_BYTES", str(100 * 1024 * 1024))
        )
        self.integrity_retry_delay_seconds: float = float(os.getenv("INTEGRITY_RETRY_DELAY_SECONDS", "2.0"))
        self.auto_resume_attempts: int = int(os.getenv("AUTO_RESUME_ATTEMPTS", "3"))
        self.download_url_ttl_seconds: int = int(os.getenv("DOWNLOAD_URL_TTL_SECONDS", "86400"))

        # Session persistence
        self.session_db_path: str = os.getenv("SESSION_DB_PATH", "chunked_uploader.db")


def validate_storage_settings(config: Settings) -> List[str]:
    """Return a list of configuration problems; empty when the settings are usable."""
    problems: List[str] = []

    if config.storage_backend not in ("s3", "memory"):
        problems.append(f"STORAGE_BACKEND must be 's3' or 'memory', got '{config.storage_backend}'")
    if config.storage_backend == "s3" and not config.s3_bucket:
        problems.append("S3_BUCKET is required for the s3 storage backend")
    if config.storage_backend == "s3" and bool(config.s3_access_key) != bool(config.s3_secret_key):
        problems.append("S3_ACCESS_KEY and S3_SECRET_KEY must be set together")
    if not 1 <= config.max_concurrent_uploads <= 10:
        problems.append(
            f"MAX_CONCURRENT_UPLOADS must be between 1 and 10, got {config.max_concurrent_uploads}"
        )
    if config.retry_attempts < 0:
        problems.append(f"RETRY_ATTEMPTS must not be negative, got {config.retry_attempts}")
    if config.auto_resume_attempts < 0:
        problems.append(f"AUTO_RESUME_ATTEMPTS must not be negative, got {config.auto_resume_attempts}")
    if config.retry_base_delay_seconds < 0 or config.max_retry_delay_seconds < 0:
        problems.append("Retry delays must not be negative")
    if config.checksum_defer_threshold_bytes < MIN_PART_SIZE:
        problems.append("CHECKSUM_DEFER_THRESHOLD_BYTES is below the 5MB minimum upload size")
    if config.progress_interval_seconds <= 0:
        problems.append("PROGRESS_INTERVAL_SECONDS must be positive")

    return problems


def _mask(value: Optional[str]) -> str:
    if not value:
        return "<default chain>"
    return value[:4] + "****"


def log_storage_settings(config: Settings) -> List[str]:
    """Log the effective storage configuration and any problems found in it."""
    logger.info("Storage backend: %s", config.storage_backend)
    if config.storage_backend == "s3":
        logger.info(
            "S3 bucket=%s region=%s endpoint=%s access_key=%s",
            config.s3_bucket or "<unset>",
            config.s3_region,
            config.s3_endpoint_url or "<aws>",
            _mask(config.s3_access_key),
        )
    logger.info(
        "Upload engine: concurrency=%s retries=%s base_delay=%ss part_timeout=%ss",
        config.max_concurrent_uploads,
        config.retry_attempts,
        config.retry_base_delay_seconds,
        config.part_timeout_seconds,
    )

    problems = validate_storage_settings(config)
    for problem in problems:
        logger.warning("Configuration problem: %s", problem)
    return problems


# Global settings instance
settings = Settings()
