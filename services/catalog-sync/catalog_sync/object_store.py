"""
S3-compatible object store client.

Thin adapter for upload/download/list/delete of blobs by key, plus
public URL construction. Calls are blocking; async callers run them in a
worker thread.
"""

import logging
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config

from catalog_sync.config import Settings
from catalog_sync.exceptions import ObjectStoreError
from catalog_sync.retry import retry_with_backoff

logger = logging.getLogger(__name__)

boto_config = Config(
    retries={"max_attempts": 3, "mode": "adaptive"},
    connect_timeout=10,
    read_timeout=60,
)

CONTENT_TYPES = {
    ".webp": "image/webp",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".xml": "application/xml",
}

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"


def content_type_for(key: str) -> str:
    """Guess a content type from the key extension."""
    lowered = key.lower()
    for extension, content_type in CONTENT_TYPES.items():
        if lowered.endswith(extension):
            return content_type
    return "application/octet-stream"


class ClientFactory:
    """Creates boto3 clients from service settings, one per kind."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._s3_client = None
        self._dynamodb_client = None

    def get_s3_client(self):
        """Get or create the object store client."""
        if self._s3_client is None:
            kwargs = {
                "config": boto_config,
                "region_name": self.settings.object_store_region,
                "endpoint_url": self.settings.object_store_endpoint,
            }
            if self.settings.object_store_access_key:
                kwargs["aws_access_key_id"] = self.settings.object_store_access_key
                kwargs["aws_secret_access_key"] = self.settings.object_store_secret_key
            self._s3_client = boto3.client("s3", **kwargs)
        return self._s3_client

    def get_dynamodb_client(self):
        """Get or create the DynamoDB-compatible backend client."""
        if self._dynamodb_client is None:
            kwargs = {"config": boto_config, "region_name": self.settings.aws_region}
            if self.settings.dynamodb_endpoint:
                kwargs["endpoint_url"] = self.settings.dynamodb_endpoint
            self._dynamodb_client = boto3.client("dynamodb", **kwargs)
        return self._dynamodb_client


class ObjectStore:
    """
    Blob storage keyed by object key.

    Args:
        client: boto3 S3 client (or anything with the same methods)
        bucket: Bucket name
        endpoint: Public endpoint used to build object URLs
    """

    def __init__(self, client, bucket: str, endpoint: str):
        self.client = client
        self.bucket = bucket
        self.endpoint = endpoint.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings, factory: Optional[ClientFactory] = None) -> Optional["ObjectStore"]:
        """Build a store, or return None when no bucket is configured."""
        if not settings.object_store_enabled:
            logger.warning("OBJECT_STORE_BUCKET is not set, object storage disabled")
            return None
        factory = factory or ClientFactory(settings)
        return cls(
            client=factory.get_s3_client(),
            bucket=settings.object_store_bucket,
            endpoint=settings.object_store_endpoint,
        )

    def public_url(self, key: str) -> str:
        return f"{self.endpoint}/{self.bucket}/{key.lstrip('/')}"

    @retry_with_backoff(max_attempts=3, base_delay=0.5, max_delay=10.0)
    def upload(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
    ) -> str:
        """
        Upload a blob with public-read ACL.

        Returns:
            Public URL of the stored object

        Raises:
            ObjectStoreError: If the upload fails after retries
        """
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type or content_type_for(key),
            "ACL": "public-read",
        }
        if cache_control:
            params["CacheControl"] = cache_control
        try:
            self.client.put_object(**params)
        except Exception as e:
            raise ObjectStoreError(
                message=f"Failed to upload to object store: {e}",
                bucket=self.bucket,
                key=key,
                operation="PutObject",
                original_exception=e,
            )

        logger.info(
            f"Uploaded {len(data)} bytes to object store",
            extra={"bucket": self.bucket, "key": key},
        )
        return self.public_url(key)

    @retry_with_backoff(max_attempts=3, base_delay=0.5, max_delay=10.0)
    def download(self, key: str) -> bytes:
        """
        Download a blob.

        Raises:
            ObjectStoreError: If the download fails after retries
        """
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            data = response["Body"].read()
        except Exception as e:
            raise ObjectStoreError(
                message=f"Failed to download from object store: {e}",
                bucket=self.bucket,
                key=key,
                operation="GetObject",
                original_exception=e,
            )

        logger.debug(
            f"Downloaded {len(data)} bytes from object store",
            extra={"bucket": self.bucket, "key": key},
        )
        return data

    def list_keys(self, prefix: str = "") -> list[str]:
        """List every key under a prefix, following continuation tokens."""
        keys: list[str] = []
        kwargs = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            try:
                response = self.client.list_objects_v2(**kwargs)
            except Exception as e:
                raise ObjectStoreError(
                    message=f"Failed to list object store keys: {e}",
                    bucket=self.bucket,
                    key=prefix,
                    operation="ListObjectsV2",
                    original_exception=e,
                )
            keys.extend(obj["Key"] for obj in response.get("Contents", []) if obj.get("Key"))
            token = response.get("NextContinuationToken")
            if not response.get("IsTruncated") or not token:
                break
            kwargs["ContinuationToken"] = token
        return keys

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except Exception as e:
            raise ObjectStoreError(
                message=f"Failed to delete from object store: {e}",
                bucket=self.bucket,
                key=key,
                operation="DeleteObject",
                original_exception=e,
            )
        logger.info("Deleted object", extra={"bucket": self.bucket, "key": key})


class LocalObjectStore:
    """
    Filesystem stand-in for the object store, used when no bucket is
    configured. Objects live under ``root`` and are served from ``url_prefix``.
    """

    bucket = None

    def __init__(self, root: str, url_prefix: str = "/media"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key.lstrip("/")).resolve()
        if root != path and root not in path.parents:
            raise ObjectStoreError(
                message=f"Key escapes the media directory: {key}",
                bucket=None,
                key=key,
                operation="Resolve",
            )
        return path

    def public_url(self, key: str) -> str:
        return f"{self.url_prefix}/{key.lstrip('/')}"

    def upload(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
        cache_control: Optional[str] = None,
    ) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise ObjectStoreError(
                message=f"Failed to write media file: {e}",
                bucket=None,
                key=key,
                operation="PutObject",
                original_exception=e,
            )
        logger.info(f"Stored {len(data)} bytes locally", extra={"key": key})
        return self.public_url(key)

    def download(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as e:
            raise ObjectStoreError(
                message=f"Failed to read media file: {e}",
                bucket=None,
                key=key,
                operation="GetObject",
                original_exception=e,
            )

    def list_keys(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        keys = (
            path.relative_to(self.root).as_posix()
            for path in self.root.rglob("*")
            if path.is_file()
        )
        return sorted(key for key in keys if key.startswith(prefix))

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise ObjectStoreError(
                message=f"Failed to delete media file: {e}",
                bucket=None,
                key=key,
                operation="DeleteObject",
                original_exception=e,
            )


def build_media_store(settings: Settings, factory: Optional[ClientFactory] = None):
    """Object store when a bucket is configured, local media directory otherwise."""
    remote = ObjectStore.from_settings(settings, factory)
    if remote is not None:
        return remote
    return LocalObjectStore(settings.media_dir)
