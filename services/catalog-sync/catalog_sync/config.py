"""
Service configuration loaded from environment variables.

Secrets (exchange credentials, admin and sync keys, object store keys) have no
defaults: when they are absent the features that need them stay disabled.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from catalog_sync.exceptions import ConfigurationError

DEFAULT_FILE_LIMIT = 104857600


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(
            message=f"{key} must be an integer, got {raw!r}",
            config_key=key,
        )
    if value < 0:
        raise ConfigurationError(
            message=f"{key} must not be negative, got {value}",
            config_key=key,
        )
    return value


def _get_optional(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    return value if value else None


@dataclass
class Settings:
    """Runtime settings for the catalog sync service."""

    # CommerceML exchange
    exchange_username: Optional[str] = None
    exchange_password: Optional[str] = None
    exchange_session_cookie: str = "PHPSESSID"
    exchange_session_token: str = "catalog-sync-session"
    file_limit: int = DEFAULT_FILE_LIMIT
    exchange_dir: str = "1c_uploads"
    media_dir: str = "media"
    sale_export_statuses: tuple = ("pending",)

    # Shared secrets for operator and integration endpoints
    admin_api_key: Optional[str] = None
    sync_api_key: Optional[str] = None

    # Object storage (S3 compatible)
    object_store_endpoint: str = "https://storage.yandexcloud.net"
    object_store_region: str = "ru-central1"
    object_store_bucket: Optional[str] = None
    object_store_access_key: Optional[str] = None
    object_store_secret_key: Optional[str] = None
    object_store_prefix: str = "products"

    # Row backend
    backend: str = "memory"
    dynamodb_endpoint: Optional[str] = None
    dynamodb_table_prefix: str = "catalog_"
    aws_region: str = "ru-central1"

    # Caches and batch jobs
    cache_ttl_seconds: int = 300
    reconcile_interval_seconds: int = 1800
    batch_limit: int = 50
    webp_quality: int = 85
    thumbnail_width: int = 300
    thumbnail_quality: int = 70

    log_level: str = "INFO"
    log_format: str = "text"
    port: int = 8000

    @property
    def object_store_enabled(self) -> bool:
        return bool(self.object_store_bucket)

    @property
    def exchange_enabled(self) -> bool:
        return bool(self.exchange_username and self.exchange_password)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from (defaults to os.environ)

        Returns:
            Settings instance

        Raises:
            ConfigurationError: If a value is present but invalid
        """
        env = os.environ if env is None else env

        backend = env.get("BACKEND", "memory").lower()
        if backend not in ("memory", "dynamodb"):
            raise ConfigurationError(
                message=f"Unsupported BACKEND {backend!r}, expected 'memory' or 'dynamodb'",
                config_key="BACKEND",
            )

        statuses = env.get("SALE_EXPORT_STATUSES", "pending")
        sale_export_statuses = tuple(
            s.strip() for s in statuses.split(",") if s.strip()
        )

        return cls(
            exchange_username=_get_optional(env, "EXCHANGE_USERNAME"),
            exchange_password=_get_optional(env, "EXCHANGE_PASSWORD"),
            exchange_session_cookie=env.get("EXCHANGE_SESSION_COOKIE", "PHPSESSID"),
            exchange_session_token=env.get("EXCHANGE_SESSION_TOKEN", "catalog-sync-session"),
            file_limit=_get_int(env, "FILE_LIMIT", DEFAULT_FILE_LIMIT),
            exchange_dir=env.get("EXCHANGE_DIR", "1c_uploads"),
            media_dir=env.get("MEDIA_DIR", "media"),
            sale_export_statuses=sale_export_statuses,
            admin_api_key=_get_optional(env, "ADMIN_API_KEY"),
            sync_api_key=_get_optional(env, "SYNC_API_KEY"),
            object_store_endpoint=env.get("OBJECT_STORE_ENDPOINT", "https://storage.yandexcloud.net"),
            object_store_region=env.get("OBJECT_STORE_REGION", "ru-central1"),
            object_store_bucket=_get_optional(env, "OBJECT_STORE_BUCKET"),
            object_store_access_key=_get_optional(env, "OBJECT_STORE_ACCESS_KEY"),
            object_store_secret_key=_get_optional(env, "OBJECT_STORE_SECRET_KEY"),
            object_store_prefix=env.get("OBJECT_STORE_PREFIX", "products").strip("/"),
            backend=backend,
            dynamodb_endpoint=_get_optional(env, "DYNAMODB_ENDPOINT"),
            dynamodb_table_prefix=env.get("DYNAMODB_TABLE_PREFIX", "catalog_"),
            aws_region=env.get("AWS_REGION", "ru-central1"),
            cache_ttl_seconds=_get_int(env, "CACHE_TTL_SECONDS", 300),
            reconcile_interval_seconds=_get_int(env, "RECONCILE_INTERVAL_SECONDS", 1800),
            batch_limit=_get_int(env, "BATCH_LIMIT", 50),
            webp_quality=_get_int(env, "WEBP_QUALITY", 85),
            thumbnail_width=_get_int(env, "THUMBNAIL_WIDTH", 300),
            thumbnail_quality=_get_int(env, "THUMBNAIL_QUALITY", 70),
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_format=env.get("LOG_FORMAT", "text").lower(),
            port=_get_int(env, "PORT", 8000),
        )
